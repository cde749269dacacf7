"""
Block Extractor
===============
Low-level PDF access using PyMuPDF (fitz).

Extracts:
    - Image placements with physical dimensions and image properties
    - Line-level text blocks coalesced from individual glyphs
    - Document info metadata
    - Rasterized page regions for OCR

All bounding boxes leave this module in PDF user space: points, origin at
the bottom-left corner, y increasing upward.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any, Optional

import fitz  # PyMuPDF
from PIL import Image

from .errors import ExtractionWarning, UnsupportedDocument
from .models import BBox, FontInfo, ImageMetadata, ParsedImage, TextBlock

logger = logging.getLogger(__name__)

POINTS_PER_INCH = 72.0
POINTS_PER_CM = 28.3465
DEFAULT_DPI = 72.0

# PyMuPDF span flag bits
FLAG_ITALIC = 2
FLAG_BOLD = 16

_TEXT_FLAGS = fitz.TEXT_PRESERVE_WHITESPACE | fitz.TEXT_PRESERVE_LIGATURES

_ALPHA_COLORSPACES = {"DeviceRGBA", "DeviceGray+Alpha"}

# fitz metadata key -> DocumentMetadata field
_METADATA_FIELDS = {
    "title": "title",
    "author": "author",
    "subject": "subject",
    "keywords": "keywords",
    "creator": "creator",
    "producer": "producer",
    "creationDate": "creation_date",
    "modDate": "mod_date",
}


def _skip(message: str):
    """Log and surface a per-item extraction failure."""
    logger.warning(message)
    warnings.warn(message, ExtractionWarning, stacklevel=3)


# ─── Geometry Helpers ─────────────────────────────────────────────────────────


def to_pdf_space(rect: fitz.Rect, page_height: float) -> BBox:
    """Flip a y-down PyMuPDF rect into y-up PDF coordinates."""
    return (
        float(rect.x0),
        float(page_height - rect.y1),
        float(rect.x1),
        float(page_height - rect.y0),
    )


def to_page_space(bbox: BBox, page_height: float) -> fitz.Rect:
    """Inverse of to_pdf_space."""
    x1, y1, x2, y2 = bbox
    return fitz.Rect(x1, page_height - y2, x2, page_height - y1)


def px_to_cm(px: float) -> float:
    return round(px / POINTS_PER_CM, 2)


def px_to_inches(px: float) -> float:
    return round(px / POINTS_PER_INCH, 2)


def color_to_hex(color: Optional[int]) -> Optional[str]:
    """Convert a PyMuPDF sRGB integer to '#rrggbb'."""
    if color is None:
        return None
    return f"#{int(color) & 0xFFFFFF:06x}"


def merge_bboxes(bboxes: list[BBox]) -> BBox:
    if not bboxes:
        return (0.0, 0.0, 0.0, 0.0)
    return (
        min(b[0] for b in bboxes),
        min(b[1] for b in bboxes),
        max(b[2] for b in bboxes),
        max(b[3] for b in bboxes),
    )


# ─── Extractor ────────────────────────────────────────────────────────────────


class BlockExtractor:
    """
    Handles PDF ingestion and low-level extraction for one document at a time.

    The image-format cache is keyed by xref and must be reset between
    documents with reset().
    """

    def __init__(self, render_scale: float = 2.0):
        self.render_scale = render_scale
        self._format_cache: dict[int, Optional[str]] = {}

    def reset(self):
        self._format_cache = {}

    def open_document(self, data: bytes) -> fitz.Document:
        """
        Open raw PDF bytes.

        Raises:
            UnsupportedDocument: If the bytes are not a readable PDF or
                the document is password protected.
        """
        if not data:
            raise UnsupportedDocument("Document is empty")

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise UnsupportedDocument(f"Cannot open document: {e}") from e

        if not doc.is_pdf:
            doc.close()
            raise UnsupportedDocument("Document is not a PDF")

        if doc.needs_pass:
            doc.close()
            raise UnsupportedDocument(
                "Password-protected PDFs are not supported"
            )

        if doc.page_count == 0:
            doc.close()
            raise UnsupportedDocument("Document has no pages")

        return doc

    def extract_metadata(self, doc: fitz.Document) -> dict[str, str]:
        """Best-effort read of the document info dictionary."""
        result: dict[str, str] = {}
        try:
            info = doc.metadata or {}
        except Exception as e:
            logger.warning(f"Could not read document metadata: {e}")
            return result

        for source, target in _METADATA_FIELDS.items():
            value = info.get(source)
            if isinstance(value, str) and value.strip():
                result[target] = value.strip()
        return result

    # ─── Images ───────────────────────────────────────────────────────────

    def extract_images(
        self,
        page: fitz.Page,
        page_number: int,
        document_id: str,
        start_index: int,
    ) -> list[ParsedImage]:
        """
        Extract every image placement on a page.

        Placements that fail or have zero rendered size are logged and
        skipped; the rest of the page continues.
        """
        images: list[ParsedImage] = []
        page_height = page.rect.height

        try:
            infos = page.get_image_info(xrefs=True)
        except Exception as e:
            _skip(f"Failed listing images on page {page_number}: {e}")
            return images

        logger.debug(f"Found {len(infos)} images on page {page_number}")

        for info in infos:
            try:
                image = self._build_image(
                    page, info, page_number, page_height,
                    document_id, start_index + len(images), len(images),
                )
            except Exception as e:
                _skip(
                    f"Failed extracting image {info.get('number')} "
                    f"on page {page_number}: {e}"
                )
                continue
            if image is not None:
                images.append(image)

        return images

    def _build_image(
        self,
        page: fitz.Page,
        info: dict[str, Any],
        page_number: int,
        page_height: float,
        document_id: str,
        index: int,
        ordinal: int,
    ) -> Optional[ParsedImage]:
        rect = fitz.Rect(info["bbox"])
        width_px = round(rect.width)
        height_px = round(rect.height)

        if width_px <= 0 or height_px <= 0:
            _skip(
                f"Skipping zero-sized image on page {page_number} "
                f"({width_px}x{height_px}px)"
            )
            return None

        xref = int(info.get("xref") or 0)
        color_space = info.get("cs-name") or None
        has_transparency = bool(info.get("has-mask")) or (
            color_space in _ALPHA_COLORSPACES
        )
        intrinsic_width = int(info.get("width") or 0)
        intrinsic_height = int(info.get("height") or 0)

        width_inches_exact = rect.width / POINTS_PER_INCH
        if intrinsic_width > 0 and width_inches_exact > 0:
            dpi = round(intrinsic_width / width_inches_exact, 2)
        else:
            dpi = DEFAULT_DPI

        image = ParsedImage(
            index=index,
            page_number=page_number,
            section_id=f"{document_id}_img_p{page_number}_i{ordinal}",
            width_px=width_px,
            height_px=height_px,
            width_cm=px_to_cm(width_px),
            height_cm=px_to_cm(height_px),
            width_inches=px_to_inches(width_px),
            height_inches=px_to_inches(height_px),
            bbox=to_pdf_space(rect, page_height),
            format=self._image_format(page.parent, xref),
            color_space=color_space,
            dpi=dpi,
            is_inline=xref == 0,
            has_transparency=has_transparency,
            metadata=ImageMetadata(
                page_number=page_number,
                image_index=ordinal,
                xref=xref,
                intrinsic_width=intrinsic_width,
                intrinsic_height=intrinsic_height,
            ),
        )

        logger.debug(
            f"Image {ordinal + 1} on page {page_number}: "
            f"{image.width_cm}cm x {image.height_cm}cm "
            f"({image.width_inches}\" x {image.height_inches}\")"
        )
        return image

    def _image_format(self, doc: fitz.Document, xref: int) -> Optional[str]:
        """File extension of the stored image stream, cached per xref."""
        if xref <= 0:
            return None
        if xref not in self._format_cache:
            fmt = None
            try:
                extracted = doc.extract_image(xref)
                if extracted:
                    fmt = extracted.get("ext")
            except Exception as e:
                logger.warning(f"Could not read format of image xref {xref}: {e}")
            self._format_cache[xref] = fmt
        return self._format_cache[xref]

    # ─── Text ─────────────────────────────────────────────────────────────

    def extract_text_blocks(
        self, page: fitz.Page, page_number: int
    ) -> list[TextBlock]:
        """
        Walk glyphs line by line and coalesce each line into a TextBlock.

        The block's bbox grows with every glyph; typography comes from the
        first glyph. Lines whose text is blank are dropped.
        """
        blocks: list[TextBlock] = []
        page_height = page.rect.height

        try:
            raw = page.get_text("rawdict", flags=_TEXT_FLAGS)
        except Exception as e:
            _skip(f"Failed reading text on page {page_number}: {e}")
            return blocks

        for block in raw.get("blocks", []):
            if block.get("type") != 0:
                continue
            for line in block.get("lines", []):
                try:
                    text_block = self._coalesce_line(line, page_height)
                except Exception as e:
                    _skip(
                        f"Failed extracting text line on page {page_number}: {e}"
                    )
                    continue
                if text_block is not None:
                    blocks.append(text_block)

        logger.debug(f"Extracted {len(blocks)} text blocks from page {page_number}")
        return blocks

    def _coalesce_line(
        self, line: dict[str, Any], page_height: float
    ) -> Optional[TextBlock]:
        chars: list[str] = []
        bbox: Optional[list[float]] = None
        font: Optional[FontInfo] = None

        for span in line.get("spans", []):
            for char in span.get("chars", []):
                x0, y0, x1, y1 = char["bbox"]
                if bbox is None:
                    flags = int(span.get("flags", 0))
                    bbox = [x0, y0, x1, y1]
                    font = FontInfo(
                        name=span.get("font") or "Unknown",
                        size=float(span.get("size", 0.0)),
                        flags=flags,
                        color=color_to_hex(span.get("color")),
                        is_bold=bool(flags & FLAG_BOLD),
                        is_italic=bool(flags & FLAG_ITALIC),
                    )
                else:
                    bbox[0] = min(bbox[0], x0)
                    bbox[1] = min(bbox[1], y0)
                    bbox[2] = max(bbox[2], x1)
                    bbox[3] = max(bbox[3], y1)
                chars.append(char.get("c", ""))

        text = "".join(chars)
        if bbox is None or not text.strip():
            return None

        return TextBlock(
            text=text,
            bbox=to_pdf_space(fitz.Rect(bbox), page_height),
            font=font,
        )

    # ─── Rasterization ────────────────────────────────────────────────────

    def rasterize_region(
        self,
        page: fitz.Page,
        bbox: BBox,
        scale: Optional[float] = None,
        max_size: Optional[int] = None,
    ) -> Optional[Image.Image]:
        """
        Render a page region to an RGB image for OCR.

        Returns None (after logging) when the region cannot be rendered.
        """
        scale = scale or self.render_scale
        try:
            clip = to_page_space(bbox, page.rect.height) & page.rect
            if clip.is_empty:
                logger.warning(f"Region {bbox} lies outside page {page.number + 1}")
                return None

            pix = page.get_pixmap(
                matrix=fitz.Matrix(scale, scale), clip=clip, alpha=False
            )
            image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)

            if max_size and max(image.size) > max_size:
                image.thumbnail((max_size, max_size))

            return image
        except Exception as e:
            logger.error(f"Failed to rasterize region {bbox}: {e}")
            return None
