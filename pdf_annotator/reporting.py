"""
Reporting
=========
Summary reports, per-page visualization outlines and JSON export views,
built either from a fresh ParseResult or from stored annotation rows.
"""

from __future__ import annotations

import json
from collections import Counter
from typing import Any, Optional

from .models import (
    AnnotationReport,
    AverageImageSize,
    Document,
    DocumentMetadata,
    ImageAnnotation,
    ParsedImage,
    ParseResult,
    TextAnnotation,
    VisualizationData,
    VisualizationImage,
    VisualizationPage,
    VisualizationText,
    utc_now,
)

SECTION_PREVIEW_CHARS = 200
EXPORT_PREVIEW_CHARS = 100
VISUALIZATION_PREVIEW_CHARS = 50


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def image_preview(image: ParsedImage) -> str:
    """Section preview for an image: its caption, else a size summary."""
    if image.caption is not None:
        return image.caption.text
    return f"Image {image.index + 1} ({image.width_cm}cm x {image.height_cm}cm)"


def _mean(values: list[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def _average_size(rows: list[tuple[float, float, float, float]]) -> AverageImageSize:
    return AverageImageSize(
        width_cm=_mean([r[0] for r in rows]),
        height_cm=_mean([r[1] for r in rows]),
        width_inches=_mean([r[2] for r in rows]),
        height_inches=_mean([r[3] for r in rows]),
    )


# ─── Reports ──────────────────────────────────────────────────────────────────


def build_report(file_name: str, result: ParseResult) -> AnnotationReport:
    """Report for a document straight from the parser output."""
    return AnnotationReport(
        document_id=result.document_id,
        file_name=file_name,
        page_count=result.page_count,
        total_images=len(result.images),
        total_text_sections=len(result.text_sections),
        images_with_captions=sum(1 for img in result.images if img.caption),
        images_by_page=dict(Counter(img.page_number for img in result.images)),
        text_sections_by_page=dict(
            Counter(s.page_number for s in result.text_sections)
        ),
        average_image_size=_average_size([
            (img.width_cm, img.height_cm, img.width_inches, img.height_inches)
            for img in result.images
        ]),
        metadata=result.metadata,
    )


def build_stored_report(
    document: Document,
    images: list[ImageAnnotation],
    text_sections: list[TextAnnotation],
) -> AnnotationReport:
    """Report for a document rebuilt from its stored rows."""
    metadata: DocumentMetadata = document.metadata
    return AnnotationReport(
        document_id=document.document_id,
        file_name=document.file_name,
        page_count=metadata.page_count or 0,
        total_images=len(images),
        total_text_sections=len(text_sections),
        images_with_captions=sum(1 for img in images if img.caption_text),
        images_by_page=dict(Counter(img.page_number for img in images)),
        text_sections_by_page=dict(Counter(t.page_number for t in text_sections)),
        average_image_size=_average_size([
            (
                img.width_cm or 0.0,
                img.height_cm or 0.0,
                img.width_inches or 0.0,
                img.height_inches or 0.0,
            )
            for img in images
        ]),
        metadata=metadata,
    )


# ─── Visualization ────────────────────────────────────────────────────────────


def build_visualization(
    document: Document,
    images: list[ImageAnnotation],
    text_sections: list[TextAnnotation],
) -> VisualizationData:
    """Group stored annotations into a page-ordered outline."""
    page_numbers = sorted(
        {img.page_number for img in images}
        | {t.page_number for t in text_sections}
    )

    pages = []
    for page_number in page_numbers:
        pages.append(VisualizationPage(
            page_number=page_number,
            images=[
                VisualizationImage(
                    index=img.image_index,
                    dimensions=(
                        f"{img.width_cm}cm x {img.height_cm}cm "
                        f"({img.width_inches}\" x {img.height_inches}\")"
                    ),
                    caption=img.caption_text or None,
                    position=(
                        f"[{img.bbox_x1:.1f}, {img.bbox_y1:.1f}, "
                        f"{img.bbox_x2:.1f}, {img.bbox_y2:.1f}]"
                    ),
                )
                for img in images if img.page_number == page_number
            ],
            text_sections=[
                VisualizationText(
                    index=t.section_index,
                    type=t.content_type,
                    level=t.section_level,
                    preview=truncate(t.content_text, VISUALIZATION_PREVIEW_CHARS),
                    word_count=t.word_count,
                )
                for t in text_sections if t.page_number == page_number
            ],
        ))

    return VisualizationData(
        document_id=document.document_id,
        file_name=document.file_name,
        pages=pages,
    )


# ─── Export ───────────────────────────────────────────────────────────────────


def _export_image(img: ImageAnnotation) -> dict[str, Any]:
    return {
        "page_number": img.page_number,
        "index": img.image_index,
        "dimensions": {
            "width_cm": img.width_cm,
            "height_cm": img.height_cm,
            "width_inches": img.width_inches,
            "height_inches": img.height_inches,
            "width_px": img.width_px,
            "height_px": img.height_px,
        },
        "position": {
            "x1": img.bbox_x1,
            "y1": img.bbox_y1,
            "x2": img.bbox_x2,
            "y2": img.bbox_y2,
        },
        "caption": {
            "text": img.caption_text,
            "position": img.caption_position.value if img.caption_position else None,
        } if img.caption_text else None,
        "properties": {
            "format": img.format,
            "color_space": img.color_space,
            "dpi": img.dpi,
            "has_transparency": img.has_transparency,
        },
        "ocr": {
            "text": img.ocr_text,
            "confidence": img.ocr_confidence,
            "language": img.ocr_language,
        } if img.ocr_text else None,
    }


def _export_text(txt: TextAnnotation) -> dict[str, Any]:
    return {
        "page_number": txt.page_number,
        "index": txt.section_index,
        "level": txt.section_level,
        "type": txt.content_type.value,
        "title": txt.section_title,
        "content": truncate(txt.content_text, EXPORT_PREVIEW_CHARS),
        "word_count": txt.word_count,
        "char_count": txt.char_count,
        "formatting": {
            "font_name": txt.font_name,
            "font_size": txt.font_size,
            "is_bold": txt.is_bold,
            "is_italic": txt.is_italic,
        },
    }


def build_export(
    report: AnnotationReport,
    images: list[ImageAnnotation],
    text_sections: list[TextAnnotation],
    exported_at: Optional[str] = None,
) -> dict[str, Any]:
    """Flattened, JSON-ready view of a report and its annotations."""
    return {
        "document_id": report.document_id,
        "report": report.model_dump(mode="json"),
        "annotations": {
            "images": [_export_image(img) for img in images],
            "text_sections": [_export_text(txt) for txt in text_sections],
        },
        "exported_at": exported_at or utc_now(),
    }


def export_json(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)
