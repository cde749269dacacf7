"""
Validation Engine
=================
Post-persist integrity checks over a document's stored annotations.

Errors:
    - Document record missing
    - Image with non-positive pixel dimensions
    - Image with an inverted or empty bounding box
    - Text section with empty content

Warnings:
    - Image missing cm or inch dimensions
    - Stored word count off by more than one
    - Stored character count mismatch
    - Caption without a position
    - Store running in fallback mode

Never raises for a validation finding; everything lands in the report.
"""

from __future__ import annotations

import logging
from typing import Optional

from .models import Document, ImageAnnotation, TextAnnotation, ValidationReport

logger = logging.getLogger(__name__)


class ValidationEngine:
    """
    Validates stored annotations and produces a ValidationReport.
    """

    def validate(
        self,
        document_id: str,
        document: Optional[Document],
        images: list[ImageAnnotation],
        text_sections: list[TextAnnotation],
        fallback_mode: bool = False,
    ) -> ValidationReport:
        report = ValidationReport(document_id=document_id)

        if fallback_mode:
            report.warnings.append(
                "Annotation store is in fallback mode; nothing was persisted"
            )
            self._log_summary(report)
            return report

        if document is None:
            report.errors.append("Document not found in database")
            self._log_summary(report)
            return report

        for image in images:
            self._check_image(image, report)
        report.images_checked = len(images)

        for section in text_sections:
            self._check_text(section, report)
        report.text_sections_checked = len(text_sections)

        self._log_summary(report)
        return report

    def _check_image(self, image: ImageAnnotation, report: ValidationReport):
        sid = image.section_id

        if image.width_px <= 0 or image.height_px <= 0:
            report.errors.append(
                f"Image {sid}: Invalid dimensions "
                f"({image.width_px}x{image.height_px})"
            )

        if not image.width_cm or not image.height_cm:
            report.warnings.append(f"Image {sid}: Missing cm dimensions")

        if not image.width_inches or not image.height_inches:
            report.warnings.append(f"Image {sid}: Missing inch dimensions")

        if image.bbox_x1 >= image.bbox_x2 or image.bbox_y1 >= image.bbox_y2:
            report.errors.append(f"Image {sid}: Invalid bounding box")

        if image.caption_text and image.caption_position is None:
            report.warnings.append(
                f"Image {sid}: Caption exists but position not set"
            )

    def _check_text(self, section: TextAnnotation, report: ValidationReport):
        sid = section.section_id
        text = section.content_text or ""

        if not text.strip():
            report.errors.append(f"Text section {sid}: Empty content")

        actual_words = len(text.split())
        if abs(actual_words - section.word_count) > 1:
            report.warnings.append(
                f"Text section {sid}: Word count mismatch "
                f"(stored: {section.word_count}, actual: {actual_words})"
            )

        if section.char_count != len(text):
            report.warnings.append(
                f"Text section {sid}: Character count mismatch "
                f"(stored: {section.char_count}, actual: {len(text)})"
            )

    def _log_summary(self, report: ValidationReport):
        logger.info("=" * 60)
        logger.info(f"VALIDATION REPORT: {report.document_id}")
        logger.info("=" * 60)
        logger.info(f"Images Checked: {report.images_checked}")
        logger.info(f"Text Sections Checked: {report.text_sections_checked}")
        logger.info(f"Errors: {len(report.errors)}")
        logger.info(f"Warnings: {len(report.warnings)}")
        for error in report.errors:
            logger.error(f"  • {error}")
        for warning in report.warnings:
            logger.warning(f"  • {warning}")
        logger.info("=" * 60)
