"""
Annotation Service
==================
Orchestrates parse → persist → report → validate for one document, and
serves stored annotations back as reports, hierarchies, exports and
visualization outlines.

Usage:
    store = AnnotationStore("annotations.sqlite")
    service = AnnotationService(store)
    outcome = service.annotate(pdf_bytes, "report.pdf")
    print(outcome.report.caption_percentage)
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any, Optional

from .database import AnnotationStore
from .engine import AnnotationOptions, ParserEngine
from .errors import DocumentNotFound, StorageError
from .models import (
    AnalysisStatus,
    AnnotationOutcome,
    AnnotationReport,
    Document,
    ImageAnnotation,
    ParseResult,
    Section,
    SectionType,
    TextAnnotation,
    ValidationReport,
    VisualizationData,
)
from .ocr import TesseractRecognizer
from .reporting import (
    SECTION_PREVIEW_CHARS,
    build_export,
    build_report,
    build_stored_report,
    build_visualization,
    export_json,
    image_preview,
)
from .validator import ValidationEngine

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def generate_document_id() -> str:
    """'doc_<epoch ms>_<9 random base-36 chars>'."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"doc_{int(time.time() * 1000)}_{suffix}"


class AnnotationService:
    """
    Ties the parser, the optional recognizer and the store together.

    All collaborators are injected; nothing here is process-global.
    """

    def __init__(
        self,
        store: AnnotationStore,
        engine: Optional[ParserEngine] = None,
        recognizer: Optional[TesseractRecognizer] = None,
    ):
        self.store = store
        self.engine = engine or ParserEngine()
        self.recognizer = recognizer
        self.validator = ValidationEngine()

    # ─── Annotate ─────────────────────────────────────────────────────────

    def annotate(
        self,
        data: bytes,
        file_name: str,
        session_id: Optional[str] = None,
        message_id: Optional[str] = None,
        options: Optional[AnnotationOptions] = None,
        file_type: str = "application/pdf",
    ) -> AnnotationOutcome:
        """
        Parse a document and persist its annotations.

        Raises:
            UnsupportedDocument: If the bytes are not a readable PDF.
            StorageError: If persisting fails. The document's writes are
                rolled back and its status is set to failed.
        """
        options = options or AnnotationOptions()

        # ── Step 1: Store + id ────────────────────────────────────────
        self.store.initialize()
        document_id = generate_document_id()
        logger.info(f"Annotating {file_name!r} as {document_id}")

        # ── Step 2: Parse ─────────────────────────────────────────────
        result = self.engine.parse(
            data, document_id, options,
            recognizer=self.recognizer, file_type=file_type,
        )
        total_sections = len(result.images) + len(result.text_sections)

        # ── Step 3: Document record ───────────────────────────────────
        self.store.create_document(Document(
            document_id=document_id,
            file_name=file_name,
            file_type=file_type,
            file_size=len(data),
            session_id=session_id,
            message_id=message_id,
            analysis_status=AnalysisStatus.ANALYZING,
            total_sections=total_sections,
            metadata=result.metadata,
        ))

        # ── Step 4: Sections + annotations, one transaction ───────────
        try:
            with self.store.batch():
                self._store_sections(result)
                self._store_image_annotations(result)
                self._store_text_annotations(result)
        except Exception as e:
            logger.error(f"Persisting {document_id} failed, writes rolled back: {e}")
            self._mark_failed(document_id)
            raise

        self.store.update_document_status(
            document_id, AnalysisStatus.COMPLETED, total_sections
        )

        # ── Step 5: Report + validation ───────────────────────────────
        report = build_report(file_name, result)
        validation = self.validate(document_id)

        logger.info(
            f"Annotated {document_id}: {report.total_images} images "
            f"({report.images_with_captions} captioned), "
            f"{report.total_text_sections} text sections"
        )

        return AnnotationOutcome(
            document_id=document_id,
            parse_result=result,
            report=report,
            validation=validation,
            degraded=self.store.is_fallback_mode,
        )

    def annotate_file(self, path: str, **kwargs: Any) -> AnnotationOutcome:
        """Annotate a PDF on disk. Keyword arguments go to annotate()."""
        path = os.path.abspath(path)
        if not os.path.exists(path):
            raise FileNotFoundError(f"PDF not found: {path}")
        data = Path(path).read_bytes()
        return self.annotate(data, os.path.basename(path), **kwargs)

    def _mark_failed(self, document_id: str):
        try:
            self.store.update_document_status(document_id, AnalysisStatus.FAILED)
        except StorageError as e:
            logger.error(f"Could not mark {document_id} as failed: {e}")

    def _store_sections(self, result: ParseResult):
        for image in result.images:
            self.store.create_section(Section(
                document_id=result.document_id,
                section_id=image.section_id,
                section_type=SectionType.IMAGE,
                section_index=image.index,
                page_number=image.page_number,
                content_preview=image_preview(image),
                content_length=0,
                metadata={
                    "dimensions": {
                        "width_cm": image.width_cm,
                        "height_cm": image.height_cm,
                        "width_inches": image.width_inches,
                        "height_inches": image.height_inches,
                    },
                    "has_caption": image.caption is not None,
                },
            ))

        for section in result.text_sections:
            self.store.create_section(Section(
                document_id=result.document_id,
                section_id=section.section_id,
                section_type=SectionType.TEXT,
                section_index=section.index,
                page_number=section.page_number,
                content_preview=section.text[:SECTION_PREVIEW_CHARS],
                content_length=section.char_count,
                metadata={
                    "type": section.content_type.value,
                    "level": section.level,
                    "word_count": section.word_count,
                },
            ))

    def _store_image_annotations(self, result: ParseResult):
        for image in result.images:
            caption = image.caption
            self.store.create_image_annotation(ImageAnnotation(
                document_id=result.document_id,
                section_id=image.section_id,
                page_number=image.page_number,
                image_index=image.index,
                width_px=image.width_px,
                height_px=image.height_px,
                width_cm=image.width_cm,
                height_cm=image.height_cm,
                width_inches=image.width_inches,
                height_inches=image.height_inches,
                bbox_x1=image.bbox[0],
                bbox_y1=image.bbox[1],
                bbox_x2=image.bbox[2],
                bbox_y2=image.bbox[3],
                caption_text=caption.text if caption else None,
                caption_position=caption.position if caption else None,
                caption_bbox=caption.bbox if caption else None,
                format=image.format,
                color_space=image.color_space,
                dpi=image.dpi,
                is_inline=image.is_inline,
                has_transparency=image.has_transparency,
                ocr_text=image.ocr_text,
                ocr_confidence=image.ocr_confidence,
                ocr_language=image.ocr_language,
                ocr_detected_languages=image.ocr_detected_languages,
                metadata=image.metadata.model_dump(),
            ))

    def _store_text_annotations(self, result: ParseResult):
        for section in result.text_sections:
            bbox = section.bbox or (None, None, None, None)
            self.store.create_text_annotation(TextAnnotation(
                document_id=result.document_id,
                section_id=section.section_id,
                page_number=section.page_number,
                section_index=section.index,
                parent_section_id=section.parent_section_id,
                section_level=section.level,
                section_title=section.title,
                content_text=section.text,
                content_type=section.content_type,
                word_count=section.word_count,
                char_count=section.char_count,
                bbox_x1=bbox[0],
                bbox_y1=bbox[1],
                bbox_x2=bbox[2],
                bbox_y2=bbox[3],
                font_name=section.font_name,
                font_size=section.font_size,
                is_bold=section.is_bold,
                is_italic=section.is_italic,
                text_color=section.text_color,
                contains_numbers=section.contains_numbers,
                contains_urls=section.contains_urls,
                language=section.language,
                metadata=section.metadata.model_dump(),
            ))

    # ─── Queries ──────────────────────────────────────────────────────────

    def _require_document(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        return document

    def get_annotation_report(self, document_id: str) -> AnnotationReport:
        """Rebuild a document's report from stored rows."""
        document = self._require_document(document_id)
        return build_stored_report(
            document,
            self.store.get_image_annotations(document_id),
            self.store.get_text_annotations(document_id),
        )

    def get_document_annotations(
        self, document_id: str, page_number: Optional[int] = None
    ) -> dict[str, list]:
        return {
            "images": self.store.get_image_annotations(document_id, page_number),
            "text_sections": self.store.get_text_annotations(document_id, page_number),
        }

    def get_page_text_hierarchy(
        self, document_id: str, page_number: int
    ) -> list[TextAnnotation]:
        return self.store.get_text_hierarchy(document_id, page_number)

    def export_annotations(self, document_id: str) -> dict[str, Any]:
        report = self.get_annotation_report(document_id)
        annotations = self.get_document_annotations(document_id)
        return build_export(
            report, annotations["images"], annotations["text_sections"]
        )

    def export_annotations_json(self, document_id: str) -> str:
        return export_json(self.export_annotations(document_id))

    def get_visualization(self, document_id: str) -> VisualizationData:
        document = self._require_document(document_id)
        annotations = self.get_document_annotations(document_id)
        return build_visualization(
            document, annotations["images"], annotations["text_sections"]
        )

    def validate(self, document_id: str) -> ValidationReport:
        """Integrity check of a document's stored annotations."""
        fallback = self.store.is_fallback_mode
        document = None if fallback else self.store.get_document(document_id)
        annotations = self.get_document_annotations(document_id)
        return self.validator.validate(
            document_id,
            document,
            annotations["images"],
            annotations["text_sections"],
            fallback_mode=fallback,
        )
