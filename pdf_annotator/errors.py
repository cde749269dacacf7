"""
Error Taxonomy
==============
Exceptions raised across the annotator.

Per-item failures (one image, one text block, one OCR call) are logged and
recovered where they happen. Per-document failures propagate to the caller.
"""

from __future__ import annotations


class AnnotatorError(RuntimeError):
    """Base class for all annotator errors."""


class UnsupportedDocument(AnnotatorError):
    """The input is not a readable PDF or requires a password."""


class ExtractionWarning(UserWarning):
    """A single image or text block could not be extracted."""


class RecognitionUnavailable(AnnotatorError):
    """The OCR engine could not be initialized."""


class RecognitionFailure(AnnotatorError):
    """OCR failed for a single image."""


class StorageUnavailable(AnnotatorError):
    """The durable storage backend cannot be opened."""


class StorageError(AnnotatorError):
    """A read or write against an available backend failed."""


class InvalidStatusTransition(StorageError):
    """A document status update violates the analysis lifecycle."""

    def __init__(self, document_id: str, current: str, requested: str):
        self.document_id = document_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Document {document_id}: cannot move from "
            f"{current!r} to {requested!r}"
        )


class DocumentNotFound(AnnotatorError):
    """No stored document has the requested identifier."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")
