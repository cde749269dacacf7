"""
Layout Analysis
===============
Turns line-level text blocks into logical sections and pairs images with
their captions.

    TextBlocks → groups (font-size / weight heuristics) → classified
    ParsedTextSections with parent links → caption association
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from .block_extractor import merge_bboxes
from .models import (
    BBox,
    Caption,
    CaptionPosition,
    ContentType,
    ParsedImage,
    ParsedTextSection,
    TextBlock,
    TextMetadata,
)

logger = logging.getLogger(__name__)

# ─── Heuristic Constants ──────────────────────────────────────────────────────

HEADING_MIN_SIZE = 14.0
LEVEL1_MIN_SIZE = 18.0
BODY_LEVEL = 3

DEFAULT_MAX_CAPTION_DISTANCE = 50.0

# ─── Patterns ─────────────────────────────────────────────────────────────────

# "Figure 1", "Fig. 2.3", "Table 4", ... at start of text
CAPTION_PATTERNS = [
    re.compile(r"^(Fig(?:ure)?\.?\s*\d+(?:\.\d+)*)", re.IGNORECASE),
    re.compile(r"^(Table\s*\d+)", re.IGNORECASE),
    re.compile(r"^(Image\s*\d+)", re.IGNORECASE),
    re.compile(r"^(Diagram\s*\d+)", re.IGNORECASE),
    re.compile(r"^(Chart\s*\d+)", re.IGNORECASE),
    re.compile(r"^(Photo\s*\d+)", re.IGNORECASE),
    re.compile(r"^(Illustration\s*\d+)", re.IGNORECASE),
]

# "1 ", "1. ", "2) ", "• ", "- ", "* "
LIST_PATTERN = re.compile(r"^(?:\d+[.)]?|[•\-\*])\s")

URL_PATTERN = re.compile(r"https?://|www\.", re.IGNORECASE)
NUMBER_PATTERN = re.compile(r"\d")


@dataclass
class TextGroup:
    """Consecutive blocks sharing a hierarchy level."""
    level: int
    blocks: list[TextBlock] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(b.text for b in self.blocks).strip()

    @property
    def bbox(self) -> BBox:
        return merge_bboxes([b.bbox for b in self.blocks])


# ─── Grouping & Classification ────────────────────────────────────────────────


def is_heading_block(block: TextBlock) -> bool:
    return block.font.size >= HEADING_MIN_SIZE or block.font.is_bold


def block_level(block: TextBlock) -> int:
    if not is_heading_block(block):
        return BODY_LEVEL
    return 1 if block.font.size >= LEVEL1_MIN_SIZE else 2


def group_text_blocks(
    blocks: list[TextBlock], analyze_hierarchy: bool = True
) -> list[TextGroup]:
    """
    Group blocks in reading order.

    With hierarchy analysis a heading always opens its own group and body
    blocks merge while the level stays the same. Without it every block
    becomes a level-1 group.
    """
    if not analyze_hierarchy:
        return [TextGroup(level=1, blocks=[b]) for b in blocks]

    groups: list[TextGroup] = []
    current: Optional[TextGroup] = None

    for block in blocks:
        level = block_level(block)
        if current is None or level < BODY_LEVEL or level != current.level:
            current = TextGroup(level=level, blocks=[block])
            groups.append(current)
        else:
            current.blocks.append(block)

    return groups


def determine_content_type(
    text: str, level: int, first_block: Optional[TextBlock] = None
) -> ContentType:
    if any(p.match(text) for p in CAPTION_PATTERNS):
        return ContentType.CAPTION
    if level <= 2 or (first_block is not None and is_heading_block(first_block)):
        return ContentType.HEADING
    if LIST_PATTERN.match(text):
        return ContentType.LIST
    return ContentType.PARAGRAPH


def assign_parents(sections: list[ParsedTextSection]):
    """Link each section to the nearest preceding one with a smaller level."""
    for i, section in enumerate(sections):
        section.parent_section_id = None
        for previous in reversed(sections[:i]):
            if previous.level < section.level:
                section.parent_section_id = previous.section_id
                break


def build_text_sections(
    blocks: list[TextBlock],
    page_number: int,
    document_id: str,
    start_index: int = 0,
    analyze_hierarchy: bool = True,
) -> list[ParsedTextSection]:
    """Group, classify and link the text blocks of one page."""
    sections: list[ParsedTextSection] = []

    for group in group_text_blocks(blocks, analyze_hierarchy):
        text = group.text
        if not text:
            continue

        first = group.blocks[0]
        content_type = determine_content_type(text, group.level, first)
        ordinal = len(sections)

        sections.append(ParsedTextSection(
            index=start_index + ordinal,
            page_number=page_number,
            section_id=f"{document_id}_txt_p{page_number}_s{ordinal}",
            level=group.level,
            title=text if content_type == ContentType.HEADING else None,
            text=text,
            content_type=content_type,
            word_count=len(text.split()),
            char_count=len(text),
            bbox=group.bbox,
            font_name=first.font.name,
            font_size=first.font.size,
            is_bold=first.font.is_bold,
            is_italic=first.font.is_italic,
            text_color=first.font.color,
            contains_numbers=bool(NUMBER_PATTERN.search(text)),
            contains_urls=bool(URL_PATTERN.search(text)),
            metadata=TextMetadata(
                page_number=page_number,
                block_count=len(group.blocks),
            ),
        ))

    if analyze_hierarchy:
        assign_parents(sections)

    return sections


# ─── Caption Association ──────────────────────────────────────────────────────


def _center(bbox: BBox) -> tuple[float, float]:
    return ((bbox[0] + bbox[2]) / 2, (bbox[1] + bbox[3]) / 2)


def calculate_image_caption_relation(
    image_bbox: BBox, caption_bbox: BBox
) -> tuple[float, CaptionPosition]:
    """
    Center-to-center distance and the caption's side of the image.

    Coordinates are y-up, so a positive dy means the caption sits above.
    """
    ix, iy = _center(image_bbox)
    cx, cy = _center(caption_bbox)
    dx = cx - ix
    dy = cy - iy
    distance = math.hypot(dx, dy)

    if abs(dx) > abs(dy):
        position = CaptionPosition.RIGHT if dx > 0 else CaptionPosition.LEFT
    else:
        position = CaptionPosition.TOP if dy > 0 else CaptionPosition.BOTTOM

    return distance, position


def associate_captions_with_images(
    images: list[ParsedImage],
    sections: list[ParsedTextSection],
    max_distance: float = DEFAULT_MAX_CAPTION_DISTANCE,
) -> list[ParsedImage]:
    """
    Attach the closest same-page caption within max_distance to each image.

    The earliest caption wins a distance tie. A caption may serve more
    than one image.
    """
    captions = [
        s for s in sections
        if s.content_type == ContentType.CAPTION and s.bbox is not None
    ]

    for image in images:
        best: Optional[tuple[float, CaptionPosition, ParsedTextSection]] = None
        for section in captions:
            if section.page_number != image.page_number:
                continue
            distance, position = calculate_image_caption_relation(
                image.bbox, section.bbox
            )
            if distance > max_distance:
                continue
            if best is None or distance < best[0]:
                best = (distance, position, section)

        if best is not None:
            distance, position, section = best
            image.caption = Caption(
                text=section.text,
                position=position,
                bbox=section.bbox,
                distance=distance,
            )
            logger.debug(
                f"Caption '{section.text[:40]}' attached to image "
                f"{image.section_id} ({position.value}, {distance:.1f}pt)"
            )

    return images


CaptionPolicy = Callable[
    [list[ParsedImage], list[ParsedTextSection], float], list[ParsedImage]
]
