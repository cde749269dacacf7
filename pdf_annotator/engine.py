"""
PDF Parser Engine
=================
Per-page pipeline that turns PDF bytes into a ParseResult.

Usage:
    engine = ParserEngine()
    result = engine.parse(pdf_bytes, "doc_123", AnnotationOptions())

Architecture:
    PDF → BlockExtractor → images (+ OCR) / TextBlocks → layout grouping →
    ParsedTextSections → caption association → ParseResult
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import fitz  # PyMuPDF

from .block_extractor import BlockExtractor
from .errors import UnsupportedDocument
from .layout import (
    DEFAULT_MAX_CAPTION_DISTANCE,
    CaptionPolicy,
    associate_captions_with_images,
    build_text_sections,
)
from .models import DocumentMetadata, ParsedImage, ParsedTextSection, ParseResult
from .ocr import OCRConfig, TesseractRecognizer, recognition_session, resolve_language_codes

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

SUPPORTED_MEDIA_TYPES = {"application/pdf", "application/x-pdf", "pdf"}


@dataclass
class AnnotationOptions:
    """Options controlling one parse run."""

    extract_images: bool = True
    extract_text: bool = True
    detect_captions: bool = True
    analyze_hierarchy: bool = True
    max_image_caption_distance: float = DEFAULT_MAX_CAPTION_DISTANCE
    ocr: OCRConfig = field(default_factory=OCRConfig)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the package logger with a console and optional file handler."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger("pdf_annotator")
    package_logger.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler
    if not any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(formatter)
        package_logger.addHandler(console)
    else:
        for handler in package_logger.handlers:
            handler.setLevel(log_level)

    # File handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)


class ParserEngine:
    """
    Document parser.

    Pages are processed strictly in order. For each page:
        1. Image extraction (and OCR when enabled)
        2. Progress callback
        3. Text extraction, grouping and classification
        4. Caption association for that page's images

    The caption policy is any callable with the signature of
    associate_captions_with_images.
    """

    def __init__(
        self,
        extractor: Optional[BlockExtractor] = None,
        caption_policy: CaptionPolicy = associate_captions_with_images,
    ):
        self.extractor = extractor or BlockExtractor()
        self.caption_policy = caption_policy

    def parse(
        self,
        data: bytes,
        document_id: str,
        options: Optional[AnnotationOptions] = None,
        recognizer: Optional[TesseractRecognizer] = None,
        file_type: str = "application/pdf",
    ) -> ParseResult:
        """
        Parse PDF bytes into images and text sections.

        Raises:
            UnsupportedDocument: If the input is not a readable,
                unencrypted PDF.
        """
        options = options or AnnotationOptions()

        if file_type and file_type.lower() not in SUPPORTED_MEDIA_TYPES:
            raise UnsupportedDocument(f"Unsupported media type: {file_type}")

        start_time = time.time()
        logger.info(f"Starting parse of document {document_id} ({len(data)} bytes)")

        self.extractor.reset()
        doc = self.extractor.open_document(data)

        images: list[ParsedImage] = []
        text_sections: list[ParsedTextSection] = []
        total_ocr_images = 0
        ocr_seconds = 0.0
        ocr_languages: Optional[str] = None

        try:
            # ── Step 1: Document metadata ─────────────────────────────
            page_count = doc.page_count
            info = self.extractor.extract_metadata(doc)
            logger.info(f"Document has {page_count} pages")

            with recognition_session(recognizer, options.ocr) as active:
                if options.ocr.enabled:
                    ocr_languages = (active and active.languages) or resolve_language_codes(
                        options.ocr.primary_language, options.ocr.fallback_languages
                    )

                for page_index in range(page_count):
                    page_number = page_index + 1
                    logger.debug(f"Processing page {page_number}/{page_count}")
                    page = doc.load_page(page_index)

                    # ── Step 2: Images (+ OCR) ────────────────────────
                    page_images: list[ParsedImage] = []
                    if options.extract_images:
                        page_images = self.extractor.extract_images(
                            page, page_number, document_id, len(images)
                        )
                        if active is not None and active.available:
                            ocr_start = time.time()
                            total_ocr_images += self._recognize_images(
                                page, page_images, active, options.ocr
                            )
                            ocr_seconds += time.time() - ocr_start
                        images.extend(page_images)
                        self._report_progress(
                            options.ocr.progress_callback,
                            page_number, page_count, len(images),
                        )

                    # ── Step 3: Text sections ─────────────────────────
                    page_sections: list[ParsedTextSection] = []
                    if options.extract_text:
                        blocks = self.extractor.extract_text_blocks(page, page_number)
                        page_sections = build_text_sections(
                            blocks,
                            page_number,
                            document_id,
                            start_index=len(text_sections),
                            analyze_hierarchy=options.analyze_hierarchy,
                        )
                        text_sections.extend(page_sections)

                    # ── Step 4: Captions ──────────────────────────────
                    if options.detect_captions and page_images and page_sections:
                        self.caption_policy(
                            page_images,
                            page_sections,
                            options.max_image_caption_distance,
                        )
        finally:
            doc.close()

        elapsed = time.time() - start_time

        metadata = DocumentMetadata(
            **info,
            page_count=page_count,
            total_images=len(images),
            total_text_sections=len(text_sections),
            ocr_enabled=options.ocr.enabled,
            ocr_languages=ocr_languages,
            total_ocr_images=total_ocr_images,
            ocr_processing_ms=int(ocr_seconds * 1000),
        )

        logger.info(
            f"Parse complete in {elapsed:.2f}s: "
            f"{len(images)} images, {len(text_sections)} text sections"
        )
        if options.ocr.enabled:
            logger.info(f"OCR recognized text in {total_ocr_images} images")

        return ParseResult(
            document_id=document_id,
            page_count=page_count,
            images=images,
            text_sections=text_sections,
            metadata=metadata,
        )

    def _recognize_images(
        self,
        page: fitz.Page,
        images: list[ParsedImage],
        recognizer: TesseractRecognizer,
        config: OCRConfig,
    ) -> int:
        """Run OCR over a page's images. Returns how many yielded text."""
        recognized = 0
        for image in images:
            if (
                image.width_px < config.min_image_size
                or image.height_px < config.min_image_size
            ):
                logger.debug(
                    f"Skipping OCR for small image {image.section_id} "
                    f"({image.width_px}x{image.height_px}px)"
                )
                continue

            try:
                region = self.extractor.rasterize_region(
                    page, image.bbox,
                    scale=config.render_scale,
                    max_size=config.max_image_size,
                )
                if region is None:
                    continue

                result = recognizer.recognize(region)
                if result is None or not result.text.strip():
                    continue
                detected = recognizer.detect_languages(region)
            except Exception as e:
                logger.error(
                    f"OCR failed for {image.section_id}, keeping image without text: {e}"
                )
                continue

            image.ocr_text = result.text
            image.ocr_confidence = result.confidence
            image.ocr_language = result.language
            image.ocr_detected_languages = detected
            recognized += 1

            logger.debug(
                f"OCR extracted {len(result.text)} characters from "
                f"{image.section_id} (confidence: {result.confidence:.1f}%)"
            )
        return recognized

    def _report_progress(
        self,
        callback: Optional[Callable[[int, int, int], None]],
        page_number: int,
        page_count: int,
        images_so_far: int,
    ):
        if callback is None:
            return
        try:
            callback(page_number, page_count, images_so_far)
        except Exception as e:
            logger.warning(f"Progress callback failed on page {page_number}: {e}")
