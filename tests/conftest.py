"""
Shared fixtures: in-memory PDFs built with PyMuPDF, temporary stores.
"""

from __future__ import annotations

import io
import logging
from typing import Callable, Optional

import fitz
import pytest
from PIL import Image

from pdf_annotator.database import AnnotationStore
from pdf_annotator.service import AnnotationService

PAGE_WIDTH = 612.0
PAGE_HEIGHT = 792.0

# Image placement used by the sample document, in y-up PDF coordinates
SAMPLE_IMAGE_BBOX = (100.0, 600.0, 300.0, 700.0)


def png_bytes(width: int = 200, height: int = 100, color=(200, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def pdf_rect(bbox) -> fitz.Rect:
    """y-up PDF bbox -> PyMuPDF page rect."""
    x1, y1, x2, y2 = bbox
    return fitz.Rect(x1, PAGE_HEIGHT - y2, x2, PAGE_HEIGHT - y1)


def make_pdf(
    build: Optional[Callable[[fitz.Page, int], None]] = None,
    pages: int = 1,
    metadata: Optional[dict] = None,
) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        if build is not None:
            build(page, i)
    if metadata:
        doc.set_metadata(metadata)
    data = doc.tobytes()
    doc.close()
    return data


def build_sample_page(page: fitz.Page, index: int = 0):
    """
    Heading, image, 'Figure 1' caption just below the image, second
    heading and a paragraph.
    """
    page.insert_text((72, 60), "Introduction", fontsize=20)
    page.insert_image(pdf_rect(SAMPLE_IMAGE_BBOX), stream=png_bytes())
    # Baseline at y-up 585 -> caption sits roughly in [580, 595]
    page.insert_text((100, PAGE_HEIGHT - 585), "Figure 1: Example", fontsize=11)
    page.insert_text((72, 300), "Details", fontsize=20)
    page.insert_text(
        (72, 330), "The system processes documents in order.", fontsize=11
    )


def build_figure_page(page: fitz.Page, index: int = 0):
    """
    Page 1: the sample image with a dotted 'Fig 1.1' label under it.
    Page 2: a single paragraph, no images.
    """
    if index == 0:
        page.insert_image(pdf_rect(SAMPLE_IMAGE_BBOX), stream=png_bytes())
        page.insert_text((100, PAGE_HEIGHT - 585), "Fig 1.1 Sample", fontsize=11)
    else:
        page.insert_text((72, 100), "Appendix notes follow here.", fontsize=11)


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    package_logger = logging.getLogger("pdf_annotator")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def sample_pdf() -> bytes:
    return make_pdf(build_sample_page, metadata={"title": "Sample", "author": "QA"})


@pytest.fixture
def blank_pdf() -> bytes:
    return make_pdf()


@pytest.fixture
def sample_pdf_path(tmp_path, sample_pdf) -> str:
    path = tmp_path / "sample.pdf"
    path.write_bytes(sample_pdf)
    return str(path)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "annotations.sqlite")


@pytest.fixture
def store(db_path):
    store = AnnotationStore(db_path)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def service(store) -> AnnotationService:
    return AnnotationService(store)
