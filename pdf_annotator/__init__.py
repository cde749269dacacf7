"""
PDF Annotator
=============
PDF analysis and annotation storage.

Architecture:
    - Block Extractor: Walks PDF pages for image placements and glyph runs
    - Layout: Groups text into sections, classifies them, links captions
    - Recognizer: Optional Tesseract OCR over rasterized image regions
    - Annotation Store: Versioned SQLite persistence with fallback mode
    - Service: Ties parse output to the store and builds reports

Version: 1.0.0
"""

__version__ = "1.0.0"
