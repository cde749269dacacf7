"""
Module entry point for: python -m pdf_annotator

Allows running the annotator directly as a module:
    python -m pdf_annotator annotate <pdf_path> [options]
    python -m pdf_annotator report <document_id>
    python -m pdf_annotator serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
