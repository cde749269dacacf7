"""
Data Models
===========
Pydantic models for parse output, stored annotations and reports.
All models are serializable to JSON for the calling shell.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field

BBox = tuple[float, float, float, float]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Enums ────────────────────────────────────────────────────────────────────


class SectionType(str, Enum):
    """Kind of content unit a section summarizes."""
    TEXT = "text"
    IMAGE = "image"
    METADATA = "metadata"
    FORM = "form"
    LINK = "link"
    ANNOTATION = "annotation"


class ContentType(str, Enum):
    """Classification of a text section."""
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    LIST = "list"
    TABLE = "table"
    CAPTION = "caption"
    OTHER = "other"


class CaptionPosition(str, Enum):
    """Where a caption sits relative to its image."""
    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"
    NONE = "none"


class AnalysisStatus(str, Enum):
    """Lifecycle status of a document analysis."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "AnalysisStatus") -> bool:
        """Forward-only transitions; repeating the current status is allowed."""
        if target == self:
            return True
        return target in _STATUS_TRANSITIONS[self]


_STATUS_TRANSITIONS: dict[AnalysisStatus, set[AnalysisStatus]] = {
    AnalysisStatus.PENDING: {AnalysisStatus.ANALYZING, AnalysisStatus.FAILED},
    AnalysisStatus.ANALYZING: {AnalysisStatus.COMPLETED, AnalysisStatus.FAILED},
    AnalysisStatus.COMPLETED: set(),
    AnalysisStatus.FAILED: set(),
}


class PatternCategory(str, Enum):
    PII = "pii"
    FINANCIAL = "financial"
    MEDICAL = "medical"
    LEGAL = "legal"
    OTHER = "other"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ─── Extraction Models ────────────────────────────────────────────────────────


class FontInfo(BaseModel):
    """Typography of the first glyph of a text block."""
    name: Optional[str] = None
    size: float = 0.0
    flags: int = 0
    color: Optional[str] = None
    is_bold: bool = False
    is_italic: bool = False


class TextBlock(BaseModel):
    """One line of coalesced glyphs, in PDF user space."""
    text: str
    bbox: BBox
    font: FontInfo = Field(default_factory=FontInfo)


class Caption(BaseModel):
    """A caption attached to an image."""
    text: str
    position: CaptionPosition
    bbox: BBox
    distance: float = Field(
        ge=0,
        description="Center-to-center distance from the image in points",
    )


class DetectedLanguage(BaseModel):
    lang: str
    confidence: float = 0.0


class RecognitionResult(BaseModel):
    """Output of a single OCR call."""
    text: str = ""
    confidence: float = Field(default=0.0, ge=0, le=100)
    language: Optional[str] = None


class ImageMetadata(BaseModel):
    """Extraction details for one image placement."""
    version: int = 1
    extracted_at: str = Field(default_factory=utc_now)
    page_number: int = 0
    image_index: int = 0
    xref: int = 0
    intrinsic_width: int = 0
    intrinsic_height: int = 0
    extra: dict[str, Any] = Field(default_factory=dict)


class TextMetadata(BaseModel):
    """Extraction details for one text section."""
    version: int = 1
    extracted_at: str = Field(default_factory=utc_now)
    page_number: int = 0
    block_count: int = 0
    extra: dict[str, Any] = Field(default_factory=dict)


class ParsedImage(BaseModel):
    """An image placement found on a page."""
    index: int = Field(ge=0, description="Document-wide image ordinal")
    page_number: int = Field(ge=1)
    section_id: str

    width_px: int
    height_px: int
    width_cm: float
    height_cm: float
    width_inches: float
    height_inches: float

    bbox: BBox
    caption: Optional[Caption] = None

    format: Optional[str] = None
    color_space: Optional[str] = None
    dpi: float = 72.0
    is_inline: bool = False
    has_transparency: bool = False

    ocr_text: Optional[str] = None
    ocr_confidence: Optional[float] = None
    ocr_language: Optional[str] = None
    ocr_detected_languages: list[DetectedLanguage] = Field(default_factory=list)

    metadata: ImageMetadata = Field(default_factory=ImageMetadata)


class ParsedTextSection(BaseModel):
    """A group of text blocks forming one logical section."""
    index: int = Field(ge=0, description="Document-wide text section ordinal")
    page_number: int = Field(ge=1)
    section_id: str

    parent_section_id: Optional[str] = None
    level: int = 1
    title: Optional[str] = None

    text: str
    content_type: ContentType = ContentType.PARAGRAPH
    word_count: int = 0
    char_count: int = 0

    bbox: Optional[BBox] = None

    font_name: Optional[str] = None
    font_size: Optional[float] = None
    is_bold: bool = False
    is_italic: bool = False
    text_color: Optional[str] = None

    contains_numbers: bool = False
    contains_urls: bool = False
    language: Optional[str] = None

    metadata: TextMetadata = Field(default_factory=TextMetadata)


class DocumentMetadata(BaseModel):
    """
    Document info fields plus parse and OCR summary.
    `extra` holds anything not covered by a named field.
    """
    version: int = 1
    title: Optional[str] = None
    author: Optional[str] = None
    subject: Optional[str] = None
    keywords: Optional[str] = None
    creator: Optional[str] = None
    producer: Optional[str] = None
    creation_date: Optional[str] = None
    mod_date: Optional[str] = None

    page_count: Optional[int] = None
    total_images: Optional[int] = None
    total_text_sections: Optional[int] = None

    ocr_enabled: bool = False
    ocr_languages: Optional[str] = None
    total_ocr_images: int = 0
    ocr_processing_ms: int = 0

    extra: dict[str, Any] = Field(default_factory=dict)


class ParseResult(BaseModel):
    """Complete output of a parse run."""
    document_id: str
    page_count: int = 0
    images: list[ParsedImage] = Field(default_factory=list)
    text_sections: list[ParsedTextSection] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)


# ─── Stored Records ───────────────────────────────────────────────────────────


class Document(BaseModel):
    id: Optional[int] = None
    document_id: str
    file_name: str
    file_type: str = "application/pdf"
    file_size: int = 0
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    created_at: Optional[str] = None
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    total_sections: int = 0
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)


class Section(BaseModel):
    id: Optional[int] = None
    document_id: str
    section_id: str
    section_type: SectionType
    section_index: int
    page_number: Optional[int] = None
    content_preview: str = ""
    content_length: int = 0
    has_sensitive_content: bool = False
    sensitive_patterns_found: list[str] = Field(default_factory=list)
    confidence_score: float = 1.0
    is_user_selected: bool = True
    created_at: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImageAnnotation(BaseModel):
    """
    Detail record for an image section.
    Dimensions and bbox are checked by the validator, not here, so that
    bad rows can still be loaded and reported.
    """
    id: Optional[int] = None
    document_id: str
    section_id: str
    page_number: int
    image_index: int

    width_px: float
    height_px: float
    width_cm: Optional[float] = None
    height_cm: Optional[float] = None
    width_inches: Optional[float] = None
    height_inches: Optional[float] = None

    bbox_x1: float
    bbox_y1: float
    bbox_x2: float
    bbox_y2: float

    caption_text: Optional[str] = None
    caption_position: Optional[CaptionPosition] = None
    caption_bbox: Optional[BBox] = None

    format: Optional[str] = None
    color_space: Optional[str] = None
    dpi: Optional[float] = None

    is_inline: bool = False
    has_transparency: bool = False

    ocr_text: Optional[str] = None
    ocr_confidence: Optional[float] = None
    ocr_language: Optional[str] = None
    ocr_detected_languages: list[DetectedLanguage] = Field(default_factory=list)

    created_at: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TextAnnotation(BaseModel):
    """Detail record for a text section."""
    id: Optional[int] = None
    document_id: str
    section_id: str
    page_number: int
    section_index: int

    parent_section_id: Optional[str] = None
    section_level: int = 1
    section_title: Optional[str] = None

    content_text: str
    content_type: ContentType
    word_count: int
    char_count: int

    bbox_x1: Optional[float] = None
    bbox_y1: Optional[float] = None
    bbox_x2: Optional[float] = None
    bbox_y2: Optional[float] = None

    font_name: Optional[str] = None
    font_size: Optional[float] = None
    is_bold: bool = False
    is_italic: bool = False
    text_color: Optional[str] = None

    contains_numbers: bool = False
    contains_urls: bool = False
    language: Optional[str] = None

    created_at: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RedactionPattern(BaseModel):
    id: Optional[int] = None
    pattern_name: str
    pattern_regex: str
    pattern_category: PatternCategory
    severity: Severity
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class RedactionResult(BaseModel):
    id: Optional[int] = None
    document_id: str
    section_id: str
    pattern_id: int
    original_content: str
    redacted_content: str
    confidence_score: float
    bounding_box: Optional[BBox] = None
    page_number: Optional[int] = None
    created_at: Optional[str] = None


class UserRedactionPreference(BaseModel):
    id: Optional[int] = None
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    category: PatternCategory = PatternCategory.OTHER
    auto_redact: bool = True
    require_confirmation: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ─── Reports ──────────────────────────────────────────────────────────────────


class AverageImageSize(BaseModel):
    width_cm: float = 0.0
    height_cm: float = 0.0
    width_inches: float = 0.0
    height_inches: float = 0.0


class AnnotationReport(BaseModel):
    """Summary of one annotated document."""
    document_id: str
    file_name: str
    page_count: int = 0
    total_images: int = 0
    total_text_sections: int = 0
    images_with_captions: int = 0
    images_by_page: dict[int, int] = Field(default_factory=dict)
    text_sections_by_page: dict[int, int] = Field(default_factory=dict)
    average_image_size: AverageImageSize = Field(
        default_factory=AverageImageSize
    )
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    @computed_field
    @property
    def caption_percentage(self) -> float:
        if self.total_images == 0:
            return 0.0
        return round(self.images_with_captions / self.total_images * 100, 1)


class ValidationReport(BaseModel):
    """Post-persist integrity check of a document's annotations."""
    document_id: str
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    images_checked: int = 0
    text_sections_checked: int = 0

    @computed_field
    @property
    def is_valid(self) -> bool:
        return not self.errors


class AnnotationOutcome(BaseModel):
    """Everything returned from one annotate() call."""
    document_id: str
    parse_result: ParseResult
    report: AnnotationReport
    validation: ValidationReport
    degraded: bool = Field(
        default=False,
        description="True when the store ran in fallback (non-persistent) mode",
    )


class VisualizationImage(BaseModel):
    index: int
    dimensions: str
    caption: Optional[str] = None
    position: str


class VisualizationText(BaseModel):
    index: int
    type: ContentType
    level: int
    preview: str
    word_count: int


class VisualizationPage(BaseModel):
    page_number: int
    images: list[VisualizationImage] = Field(default_factory=list)
    text_sections: list[VisualizationText] = Field(default_factory=list)


class VisualizationData(BaseModel):
    """Per-page outline of a stored document for display."""
    document_id: str
    file_name: str
    pages: list[VisualizationPage] = Field(default_factory=list)
