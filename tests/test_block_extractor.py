"""
Test Suite for Block Extractor
==============================
PDF ingestion, image placements, glyph coalescing and coordinate handling.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import fitz
import pytest

from conftest import PAGE_HEIGHT, SAMPLE_IMAGE_BBOX, make_pdf, pdf_rect, png_bytes
from pdf_annotator.block_extractor import (
    BlockExtractor,
    color_to_hex,
    merge_bboxes,
    px_to_cm,
    px_to_inches,
    to_page_space,
    to_pdf_space,
)
from pdf_annotator.errors import ExtractionWarning, UnsupportedDocument


# ═══════════════════════════════════════════════════════════════════════════════
# HELPER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestConversions:
    """Unit conversions and geometry helpers."""

    def test_px_to_cm_rounds_to_two_places(self):
        assert px_to_cm(200) == 7.06
        assert px_to_cm(100) == 3.53

    def test_px_to_inches(self):
        assert px_to_inches(144) == 2.0
        assert px_to_inches(200) == 2.78

    def test_y_flip_round_trip(self):
        rect = fitz.Rect(100, 92, 300, 192)
        bbox = to_pdf_space(rect, PAGE_HEIGHT)
        assert bbox == (100.0, 600.0, 300.0, 700.0)
        assert to_page_space(bbox, PAGE_HEIGHT) == rect

    def test_color_to_hex(self):
        assert color_to_hex(0xFF0000) == "#ff0000"
        assert color_to_hex(0) == "#000000"
        assert color_to_hex(None) is None

    def test_merge_bboxes(self):
        assert merge_bboxes([(0, 5, 10, 15), (2, 1, 20, 12)]) == (0, 1, 20, 15)
        assert merge_bboxes([]) == (0.0, 0.0, 0.0, 0.0)


# ═══════════════════════════════════════════════════════════════════════════════
# DOCUMENT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestOpenDocument:
    """Rejection of unreadable input."""

    def test_empty_bytes(self):
        with pytest.raises(UnsupportedDocument):
            BlockExtractor().open_document(b"")

    def test_garbage_bytes(self):
        with pytest.raises(UnsupportedDocument):
            BlockExtractor().open_document(b"this is not a pdf at all")

    def test_password_protected(self):
        doc = fitz.open()
        doc.new_page()
        data = doc.tobytes(
            encryption=fitz.PDF_ENCRYPT_AES_256,
            owner_pw="owner",
            user_pw="secret",
        )
        doc.close()
        with pytest.raises(UnsupportedDocument, match="Password"):
            BlockExtractor().open_document(data)

    def test_valid_document(self, sample_pdf):
        doc = BlockExtractor().open_document(sample_pdf)
        try:
            assert doc.page_count == 1
        finally:
            doc.close()

    def test_metadata_field_mapping(self, sample_pdf):
        extractor = BlockExtractor()
        doc = extractor.open_document(sample_pdf)
        try:
            meta = extractor.extract_metadata(doc)
        finally:
            doc.close()
        assert meta["title"] == "Sample"
        assert meta["author"] == "QA"
        assert "creationDate" not in meta


# ═══════════════════════════════════════════════════════════════════════════════
# IMAGE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestExtractImages:
    """Image placement records."""

    def _extract(self, data: bytes, start_index: int = 0):
        extractor = BlockExtractor()
        doc = extractor.open_document(data)
        try:
            return extractor.extract_images(doc[0], 1, "doc_x", start_index)
        finally:
            doc.close()

    def test_dimensions_and_bbox(self, sample_pdf):
        images = self._extract(sample_pdf)
        assert len(images) == 1
        img = images[0]
        assert (img.width_px, img.height_px) == (200, 100)
        assert (img.width_cm, img.height_cm) == (7.06, 3.53)
        assert (img.width_inches, img.height_inches) == (2.78, 1.39)
        assert img.bbox == pytest.approx(SAMPLE_IMAGE_BBOX)

    def test_properties(self, sample_pdf):
        img = self._extract(sample_pdf)[0]
        assert img.section_id == "doc_x_img_p1_i0"
        assert img.format == "png"
        assert img.is_inline is False
        assert img.dpi == pytest.approx(72.0)
        assert img.metadata.intrinsic_width == 200
        assert img.metadata.xref > 0

    def test_document_wide_index(self, sample_pdf):
        img = self._extract(sample_pdf, start_index=7)[0]
        assert img.index == 7
        assert img.metadata.image_index == 0

    def test_dpi_follows_placement_scale(self):
        def build(page, _):
            # 400px intrinsic width drawn over 144pt (2in) -> 200 dpi
            page.insert_image(
                pdf_rect((72, 500, 216, 572)), stream=png_bytes(400, 200)
            )

        img = self._extract(make_pdf(build))[0]
        assert img.width_px == 144
        assert img.dpi == pytest.approx(200.0)

    def test_page_without_images(self, blank_pdf):
        assert self._extract(blank_pdf) == []


# ═══════════════════════════════════════════════════════════════════════════════
# TEXT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestExtractTextBlocks:
    """Glyph runs coalesced per line."""

    def _blocks(self, data: bytes):
        extractor = BlockExtractor()
        doc = extractor.open_document(data)
        try:
            return extractor.extract_text_blocks(doc[0], 1)
        finally:
            doc.close()

    def test_lines_become_blocks(self, sample_pdf):
        texts = [b.text.strip() for b in self._blocks(sample_pdf)]
        assert "Introduction" in texts
        assert "Figure 1: Example" in texts
        assert "The system processes documents in order." in texts

    def test_font_of_first_glyph(self, sample_pdf):
        heading = next(b for b in self._blocks(sample_pdf) if "Introduction" in b.text)
        assert heading.font.size == pytest.approx(20.0)
        assert heading.font.name

    def test_bbox_in_pdf_space(self, sample_pdf):
        caption = next(b for b in self._blocks(sample_pdf) if b.text.startswith("Figure"))
        x1, y1, x2, y2 = caption.bbox
        assert x1 < x2 and y1 < y2
        # Baseline at y-up 585; glyph boxes straddle it
        assert y1 < 585 < y2

    def test_blank_page(self, blank_pdf):
        assert self._blocks(blank_pdf) == []


class TestPerItemFailures:
    """Failures on one page or item are skipped with an ExtractionWarning."""

    def _broken_page(self):
        page = MagicMock()
        page.rect = fitz.Rect(0, 0, 612, 792)
        page.get_image_info.side_effect = RuntimeError("bad xobject")
        page.get_text.side_effect = RuntimeError("bad content stream")
        return page

    def test_image_listing_failure(self):
        with pytest.warns(ExtractionWarning, match="Failed listing images"):
            images = BlockExtractor().extract_images(self._broken_page(), 1, "doc", 0)
        assert images == []

    def test_text_failure(self):
        with pytest.warns(ExtractionWarning, match="Failed reading text"):
            blocks = BlockExtractor().extract_text_blocks(self._broken_page(), 1)
        assert blocks == []

    def test_zero_sized_placement_skipped(self):
        page = MagicMock()
        page.rect = fitz.Rect(0, 0, 612, 792)
        page.get_image_info.return_value = [
            {"number": 0, "bbox": (10, 10, 10, 50), "xref": 0},
        ]
        with pytest.warns(ExtractionWarning, match="zero-sized"):
            images = BlockExtractor().extract_images(page, 1, "doc", 0)
        assert images == []


class TestRasterizeRegion:
    """Region rendering for OCR input."""

    def test_scale_and_max_size(self, sample_pdf):
        extractor = BlockExtractor()
        doc = extractor.open_document(sample_pdf)
        try:
            page = doc[0]
            full = extractor.rasterize_region(page, SAMPLE_IMAGE_BBOX, scale=2.0)
            capped = extractor.rasterize_region(
                page, SAMPLE_IMAGE_BBOX, scale=2.0, max_size=100
            )
        finally:
            doc.close()

        assert abs(full.size[0] - 400) <= 1
        assert abs(full.size[1] - 200) <= 1
        assert max(capped.size) <= 100
        assert full.mode == "RGB"
