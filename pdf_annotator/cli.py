"""
CLI Interface
=============
Command-line interface for the PDF annotator.

Usage:
    python -m pdf_annotator annotate <pdf_path> [options]
    python -m pdf_annotator documents
    python -m pdf_annotator report <document_id>
    python -m pdf_annotator hierarchy <document_id> <page>
    python -m pdf_annotator export <document_id> [-o file.json]
    python -m pdf_annotator serve
"""

from __future__ import annotations

import json
import os
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .database import AnnotationStore
from .engine import AnnotationOptions, setup_logging
from .errors import AnnotatorError
from .layout import DEFAULT_MAX_CAPTION_DISTANCE
from .models import (
    AnnotationReport,
    PatternCategory,
    UserRedactionPreference,
    ValidationReport,
    VisualizationData,
)
from .ocr import TESSERACT_LANGUAGES, OCRConfig
from .service import AnnotationService

console = Console()


def _service(ctx: click.Context) -> AnnotationService:
    """Lazily build the service for the selected database."""
    obj = ctx.ensure_object(dict)
    if "service" not in obj:
        store = AnnotationStore(obj.get("db_path"))
        obj["service"] = AnnotationService(store)
        ctx.call_on_close(store.close)
    return obj["service"]


def _fail(message: str):
    console.print(f"[red]Error:[/] {message}")
    sys.exit(1)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="pdf-annotator")
@click.option(
    "--db", "db_path",
    envvar="ANNOTATOR_DB_PATH",
    default=None,
    help="Path to the annotation database",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.pass_context
def cli(ctx: click.Context, db_path: Optional[str], log_level: str, log_file: Optional[str]):
    """PDF Annotator: image, caption and text-structure extraction for PDFs."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    setup_logging(log_level, log_file)


# ─── Annotate ─────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--session-id", default=None, help="Caller session identifier")
@click.option("--message-id", default=None, help="Caller message identifier")
@click.option("--no-images", is_flag=True, default=False, help="Skip image extraction")
@click.option("--no-text", is_flag=True, default=False, help="Skip text extraction")
@click.option("--no-captions", is_flag=True, default=False, help="Skip caption association")
@click.option("--no-hierarchy", is_flag=True, default=False, help="Skip heading hierarchy analysis")
@click.option(
    "--caption-distance",
    default=DEFAULT_MAX_CAPTION_DISTANCE,
    type=float,
    help="Maximum image-caption center distance in points",
)
@click.option("--ocr", is_flag=True, default=False, help="Run OCR over images")
@click.option(
    "--ocr-language",
    default="english",
    type=click.Choice(sorted(TESSERACT_LANGUAGES) + ["auto"]),
    help="Primary OCR language",
)
@click.option(
    "--ocr-fallback",
    multiple=True,
    default=("english", "hindi"),
    help="Fallback OCR language (repeatable)",
)
@click.option("--ocr-min-size", default=50, type=int, help="Minimum image size for OCR (px)")
@click.option("--ocr-max-size", default=None, type=int, help="Downscale OCR input to this size (px)")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
@click.pass_context
def annotate(
    ctx: click.Context,
    pdf_path: str,
    session_id: Optional[str],
    message_id: Optional[str],
    no_images: bool,
    no_text: bool,
    no_captions: bool,
    no_hierarchy: bool,
    caption_distance: float,
    ocr: bool,
    ocr_language: str,
    ocr_fallback: tuple[str, ...],
    ocr_min_size: int,
    ocr_max_size: Optional[int],
    json_output: bool,
):
    """Annotate a PDF and store the results."""
    service = _service(ctx)

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]PDF Annotator v{__version__}[/]\n"
                f"[dim]Annotating: {os.path.basename(pdf_path)}[/]",
                border_style="cyan",
            )
        )
        console.print()

    ocr_config = OCRConfig(
        enabled=ocr,
        primary_language=ocr_language,
        fallback_languages=list(ocr_fallback),
        min_image_size=ocr_min_size,
        max_image_size=ocr_max_size,
    )
    options = AnnotationOptions(
        extract_images=not no_images,
        extract_text=not no_text,
        detect_captions=not no_captions,
        analyze_hierarchy=not no_hierarchy,
        max_image_caption_distance=caption_distance,
        ocr=ocr_config,
    )

    try:
        if json_output:
            outcome = service.annotate_file(
                pdf_path, session_id=session_id, message_id=message_id, options=options
            )
            _print_json({
                "document_id": outcome.document_id,
                "degraded": outcome.degraded,
                "report": outcome.report.model_dump(mode="json"),
                "validation": outcome.validation.model_dump(mode="json"),
            })
            return

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Annotating PDF...", total=None)

            def on_page(page: int, page_count: int, images: int):
                progress.update(
                    task,
                    total=page_count,
                    completed=page,
                    description=f"Page {page}/{page_count} ({images} images)",
                )

            ocr_config.progress_callback = on_page
            outcome = service.annotate_file(
                pdf_path, session_id=session_id, message_id=message_id, options=options
            )

        _display_report(outcome.report)
        _display_validation(outcome.validation)
        if outcome.degraded:
            console.print(
                "[yellow]⚠ Storage unavailable: results were not persisted[/]"
            )
        console.print(f"[dim]Document ID: {outcome.document_id}[/]")
        console.print()

    except (AnnotatorError, FileNotFoundError) as e:
        _fail(str(e))


# ─── Queries ──────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--session-id", default=None, help="Only documents from this session")
@click.option("--limit", default=None, type=int, help="Maximum documents to list")
@click.pass_context
def documents(ctx: click.Context, session_id: Optional[str], limit: Optional[int]):
    """List annotated documents, newest first."""
    docs = _service(ctx).store.list_documents(session_id=session_id, limit=limit)
    if not docs:
        console.print("[yellow]No documents found[/]")
        return

    table = Table(title="Documents", border_style="cyan")
    table.add_column("Document ID", style="bold")
    table.add_column("File")
    table.add_column("Status", justify="center")
    table.add_column("Pages", justify="right")
    table.add_column("Sections", justify="right")
    table.add_column("Created")

    for doc in docs:
        table.add_row(
            doc.document_id,
            doc.file_name,
            doc.analysis_status.value,
            str(doc.metadata.page_count or 0),
            str(doc.total_sections),
            doc.created_at or "",
        )
    console.print(table)


@cli.command()
@click.argument("document_id")
@click.option("--json-output", is_flag=True, default=False, help="Output JSON")
@click.pass_context
def report(ctx: click.Context, document_id: str, json_output: bool):
    """Show the annotation report of a stored document."""
    try:
        result = _service(ctx).get_annotation_report(document_id)
    except AnnotatorError as e:
        _fail(str(e))
        return

    if json_output:
        _print_json(result.model_dump(mode="json"))
    else:
        _display_report(result)


@cli.command()
@click.argument("document_id")
@click.option("--page", default=None, type=int, help="Only this page (1-indexed)")
@click.pass_context
def annotations(ctx: click.Context, document_id: str, page: Optional[int]):
    """Print stored image and text annotations as JSON."""
    try:
        data = _service(ctx).get_document_annotations(document_id, page)
    except AnnotatorError as e:
        _fail(str(e))
        return
    _print_json({
        key: [item.model_dump(mode="json") for item in items]
        for key, items in data.items()
    })


@cli.command()
@click.argument("document_id")
@click.argument("page", type=int)
@click.pass_context
def hierarchy(ctx: click.Context, document_id: str, page: int):
    """Show the heading hierarchy of one page."""
    try:
        sections = _service(ctx).get_page_text_hierarchy(document_id, page)
    except AnnotatorError as e:
        _fail(str(e))
        return

    if not sections:
        console.print(f"[yellow]No text sections on page {page}[/]")
        return

    table = Table(title=f"Page {page} Hierarchy", border_style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Level", justify="right")
    table.add_column("Type")
    table.add_column("Parent")
    table.add_column("Text")

    for section in sections:
        indent = "  " * max(section.section_level - 1, 0)
        table.add_row(
            str(section.section_index),
            str(section.section_level),
            section.content_type.value,
            section.parent_section_id or "-",
            indent + section.content_text[:60],
        )
    console.print(table)


@cli.command()
@click.argument("document_id")
@click.pass_context
def show(ctx: click.Context, document_id: str):
    """Print a per-page outline of a stored document."""
    try:
        viz = _service(ctx).get_visualization(document_id)
    except AnnotatorError as e:
        _fail(str(e))
        return
    _display_visualization(viz)


@cli.command()
@click.argument("document_id")
@click.option("--output", "-o", default=None, help="Write JSON to this file")
@click.pass_context
def export(ctx: click.Context, document_id: str, output: Optional[str]):
    """Export a document's report and annotations as JSON."""
    try:
        payload = _service(ctx).export_annotations_json(document_id)
    except AnnotatorError as e:
        _fail(str(e))
        return

    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(payload)
        console.print(f"[green]✓[/] Exported {document_id} to {output}")
    else:
        print(payload)


@cli.command()
@click.argument("document_id")
@click.pass_context
def validate(ctx: click.Context, document_id: str):
    """Validate a stored document's annotations."""
    result = _service(ctx).validate(document_id)
    _display_validation(result)
    if not result.is_valid:
        sys.exit(1)


@cli.command()
@click.argument("document_id")
@click.argument("section_ids", nargs=-1, required=True)
@click.option("--off", is_flag=True, default=False, help="Deselect instead of select")
@click.pass_context
def select(ctx: click.Context, document_id: str, section_ids: tuple[str, ...], off: bool):
    """Select (or deselect) sections of a document in one transaction."""
    selections = {sid: not off for sid in section_ids}
    try:
        updated = _service(ctx).store.update_section_selection_bulk(document_id, selections)
    except AnnotatorError as e:
        _fail(str(e))
        return
    console.print(f"[green]✓[/] Updated {updated} of {len(section_ids)} sections")


@cli.command()
@click.argument("device_id")
@click.option(
    "--category",
    default=None,
    type=click.Choice([c.value for c in PatternCategory]),
    help="Category to update",
)
@click.option("--auto-redact/--no-auto-redact", default=True, help="Redact automatically")
@click.option("--confirm/--no-confirm", default=True, help="Require confirmation")
@click.pass_context
def preferences(
    ctx: click.Context,
    device_id: str,
    category: Optional[str],
    auto_redact: bool,
    confirm: bool,
):
    """Show or update redaction preferences for a device."""
    store = _service(ctx).store
    try:
        if category:
            store.set_user_preferences(device_id, [UserRedactionPreference(
                device_id=device_id,
                category=category,
                auto_redact=auto_redact,
                require_confirmation=confirm,
            )])
        prefs = store.get_user_preferences(device_id)
    except AnnotatorError as e:
        _fail(str(e))
        return

    table = Table(title=f"Preferences: {device_id}", border_style="cyan")
    table.add_column("Category", style="bold")
    table.add_column("Auto Redact", justify="center")
    table.add_column("Confirm", justify="center")
    for pref in prefs:
        table.add_row(
            pref.category.value,
            "[green]✓[/]" if pref.auto_redact else "[red]✗[/]",
            "[green]✓[/]" if pref.require_confirmation else "[red]✗[/]",
        )
    console.print(table)


# ─── Misc ─────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
def info(pdf_path: str):
    """Display PDF file information without storing anything."""
    import fitz

    try:
        doc = fitz.open(pdf_path)
    except Exception as e:
        _fail(f"Cannot open {pdf_path}: {e}")
        return

    console.print()
    table = Table(title="PDF Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")

    table.add_row("File", os.path.basename(pdf_path))
    table.add_row("Pages", str(doc.page_count))
    table.add_row(
        "File Size",
        f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
    )
    table.add_row("Encrypted", "yes" if doc.needs_pass else "no")

    metadata = doc.metadata or {}
    for key in ["title", "author", "subject", "creator", "producer"]:
        val = metadata.get(key, "")
        if val:
            table.add_row(key.title(), val)

    if not doc.needs_pass:
        total_images = sum(len(page.get_image_info()) for page in doc)
        table.add_row("Image Placements", str(total_images))

    doc.close()
    console.print(table)
    console.print()


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, debug: bool):
    """Start the HTTP annotation server."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]PDF Annotator Server[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug, db_path=ctx.obj.get("db_path"))


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_report(report: AnnotationReport):
    """Display an annotation report as rich tables."""
    console.print()
    table = Table(title="Annotation Report", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Document", report.document_id)
    table.add_row("File", report.file_name)
    table.add_row("Pages", str(report.page_count))
    table.add_row("Images", str(report.total_images))
    table.add_row(
        "Images With Captions",
        f"{report.images_with_captions} ({report.caption_percentage}%)",
    )
    table.add_row("Text Sections", str(report.total_text_sections))

    size = report.average_image_size
    table.add_row(
        "Average Image Size",
        f"{size.width_cm}cm x {size.height_cm}cm "
        f"({size.width_inches}\" x {size.height_inches}\")",
    )
    if report.metadata.ocr_enabled:
        table.add_row(
            "OCR",
            f"{report.metadata.total_ocr_images} images "
            f"[{report.metadata.ocr_languages}]",
        )
    console.print(table)
    console.print()

    pages = sorted(set(report.images_by_page) | set(report.text_sections_by_page))
    if pages:
        page_table = Table(title="Content by Page", border_style="blue")
        page_table.add_column("Page", justify="right")
        page_table.add_column("Images", justify="right")
        page_table.add_column("Text Sections", justify="right")
        for page in pages:
            page_table.add_row(
                str(page),
                str(report.images_by_page.get(page, 0)),
                str(report.text_sections_by_page.get(page, 0)),
            )
        console.print(page_table)
        console.print()


def _display_validation(validation: ValidationReport):
    """Display a validation report."""
    table = Table(title="Validation Report", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    table.add_row("Images Checked", str(validation.images_checked), "")
    table.add_row("Text Sections Checked", str(validation.text_sections_checked), "")
    table.add_row(
        "Errors",
        str(len(validation.errors)),
        "[green]✓[/]" if not validation.errors else "[red]✗[/]",
    )
    table.add_row(
        "Warnings",
        str(len(validation.warnings)),
        "[green]✓[/]" if not validation.warnings else "[yellow]⚠[/]",
    )
    console.print(table)

    for error in validation.errors:
        console.print(f"  [red]✗[/] {error}")
    for warning in validation.warnings:
        console.print(f"  [yellow]⚠[/] {warning}")
    console.print()


def _display_visualization(viz: VisualizationData):
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]{viz.file_name}[/]\n[dim]{viz.document_id}[/]",
            border_style="cyan",
        )
    )

    for page in viz.pages:
        console.print(f"\n[bold]Page {page.page_number}[/]")
        console.print("[dim]" + "─" * 40 + "[/]")

        if page.images:
            console.print(f"  Images ({len(page.images)}):")
            for image in page.images:
                console.print(f"    [{image.index}] {image.dimensions}")
                console.print(f"        Position: {image.position}")
                if image.caption:
                    console.print(f"        Caption: {image.caption}")

        if page.text_sections:
            console.print(f"  Text Sections ({len(page.text_sections)}):")
            for section in page.text_sections:
                indent = "  " * section.level
                console.print(
                    f"    {indent}[{section.index}] "
                    f"{section.type.value.upper()} (L{section.level})"
                )
                console.print(f"    {indent}    \"{section.preview}\"")
                console.print(f"    {indent}    {section.word_count} words")
    console.print()


# ─── Entry point (for python -m pdf_annotator.cli) ────────────────────────────


if __name__ == "__main__":
    cli()
