"""
HTTP Microservice
=================
Flask-based HTTP API over the annotation service and store.

Endpoints:
    GET    /api/health                                → Health check
    GET    /api/info                                  → Version and capabilities
    POST   /api/documents                             → Annotate an uploaded PDF
    GET    /api/documents                             → List documents
    GET    /api/documents/<id>                        → Document record
    GET    /api/documents/<id>/report                 → Annotation report
    GET    /api/documents/<id>/annotations[?page=N]   → Image + text annotations
    GET    /api/documents/<id>/hierarchy/<page>       → Page heading hierarchy
    GET    /api/documents/<id>/export                 → Export view
    GET    /api/documents/<id>/visualization          → Per-page outline
    GET    /api/documents/<id>/validation             → Validation report
    GET    /api/documents/<id>/sections[?selected=1]  → Sections
    PUT    /api/documents/<id>/selection              → Bulk selection update
    GET    /api/patterns                              → Redaction patterns
    GET    /api/preferences/<device_id>               → Device preferences
    PUT    /api/preferences/<device_id>               → Upsert device preferences
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError

from . import __version__
from .database import AnnotationStore
from .engine import AnnotationOptions
from .errors import (
    AnnotatorError,
    DocumentNotFound,
    InvalidStatusTransition,
    StorageError,
    UnsupportedDocument,
)
from .layout import DEFAULT_MAX_CAPTION_DISTANCE
from .ocr import OCRConfig
from .service import AnnotationService

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def create_app(
    config: Optional[dict] = None,
    service: Optional[AnnotationService] = None,
) -> Flask:
    """Create and configure the Flask app."""
    if config:
        app.config.update(config)

    app.config.setdefault("DB_PATH", None)
    app.config.setdefault("MAX_CONTENT_LENGTH", 200 * 1024 * 1024)  # 200MB

    if service is not None:
        app.config["ANNOTATION_SERVICE"] = service
    elif app.config.get("ANNOTATION_SERVICE") is None:
        store = AnnotationStore(app.config["DB_PATH"])
        store.initialize()
        app.config["ANNOTATION_SERVICE"] = AnnotationService(store)

    return app


def _service() -> AnnotationService:
    service = app.config.get("ANNOTATION_SERVICE")
    if service is None:
        create_app()
        service = app.config["ANNOTATION_SERVICE"]
    return service


def _flag(params: Any, name: str, default: bool) -> bool:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _options_from(params: Any) -> AnnotationOptions:
    fallbacks = params.get("ocr_fallback_languages")
    if isinstance(fallbacks, str):
        fallbacks = [f for f in fallbacks.split(",") if f.strip()]

    ocr = OCRConfig(
        enabled=_flag(params, "ocr", False),
        primary_language=params.get("ocr_language", "english"),
        fallback_languages=fallbacks or ["english", "hindi"],
        min_image_size=int(params.get("ocr_min_image_size", 50)),
    )
    return AnnotationOptions(
        extract_images=_flag(params, "extract_images", True),
        extract_text=_flag(params, "extract_text", True),
        detect_captions=_flag(params, "detect_captions", True),
        analyze_hierarchy=_flag(params, "analyze_hierarchy", True),
        max_image_caption_distance=float(
            params.get("max_image_caption_distance", DEFAULT_MAX_CAPTION_DISTANCE)
        ),
        ocr=ocr,
    )


def _dump(items: list) -> list[dict]:
    return [item.model_dump(mode="json") for item in items]


# ─── Error Handlers ───────────────────────────────────────────────────────────


@app.errorhandler(DocumentNotFound)
def handle_not_found(e: DocumentNotFound):
    return jsonify({"error": str(e), "document_id": e.document_id}), 404


@app.errorhandler(UnsupportedDocument)
def handle_unsupported(e: UnsupportedDocument):
    return jsonify({"error": str(e)}), 415


@app.errorhandler(InvalidStatusTransition)
def handle_transition(e: InvalidStatusTransition):
    return jsonify({
        "error": str(e),
        "current": e.current,
        "requested": e.requested,
    }), 409


@app.errorhandler(StorageError)
def handle_storage(e: StorageError):
    logger.error(f"Storage error: {e}")
    return jsonify({"error": str(e)}), 500


@app.errorhandler(ValidationError)
def handle_bad_payload(e: ValidationError):
    return jsonify({"error": "Invalid request body", "details": e.errors()}), 400


@app.errorhandler(AnnotatorError)
def handle_annotator_error(e: AnnotatorError):
    logger.error(f"Annotator error: {e}")
    return jsonify({"error": str(e)}), 500


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    store = _service().store
    return jsonify({
        "status": "degraded" if store.is_fallback_mode else "healthy",
        "service": "pdf-annotator",
        "version": __version__,
        "storage": "fallback" if store.is_fallback_mode else "sqlite",
    })


@app.route("/api/info", methods=["GET"])
def info():
    """Annotator version and capability info."""
    return jsonify({
        "version": __version__,
        "engine": "PyMuPDF",
        "ocr": "tesseract",
        "capabilities": [
            "image_extraction",
            "text_extraction",
            "caption_detection",
            "hierarchy_analysis",
            "ocr",
            "export",
        ],
        "supported_formats": ["pdf"],
    })


# ─── Annotate ─────────────────────────────────────────────────────────────────


@app.route("/api/documents", methods=["POST"])
def annotate_document():
    """
    Annotate a PDF and store the results.

    Accepts either:
        - A file upload (multipart/form-data, field "file")
        - A JSON body with file_path pointing to an existing file

    Option fields (form or JSON) mirror AnnotationOptions.
    """
    if "file" in request.files:
        upload = request.files["file"]
        if not upload.filename:
            return jsonify({"error": "No file selected"}), 400
        params = request.form
        data = upload.read()
        file_name = upload.filename
        file_type = upload.mimetype or "application/pdf"
        if file_type == "application/octet-stream":
            file_type = "application/pdf"
    elif request.is_json:
        params = request.get_json() or {}
        pdf_path = params.get("file_path")
        if not pdf_path or not os.path.exists(pdf_path):
            return jsonify({"error": f"File not found: {pdf_path}"}), 404
        with open(pdf_path, "rb") as f:
            data = f.read()
        file_name = os.path.basename(pdf_path)
        file_type = "application/pdf"
    else:
        return jsonify({
            "error": "Provide a file upload or JSON with file_path"
        }), 400

    try:
        options = _options_from(params)
    except (TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid option: {e}"}), 400

    outcome = _service().annotate(
        data,
        file_name,
        session_id=params.get("session_id"),
        message_id=params.get("message_id"),
        options=options,
        file_type=file_type,
    )

    return jsonify({
        "document_id": outcome.document_id,
        "degraded": outcome.degraded,
        "report": outcome.report.model_dump(mode="json"),
        "validation": outcome.validation.model_dump(mode="json"),
    }), 201


# ─── Documents ────────────────────────────────────────────────────────────────


@app.route("/api/documents", methods=["GET"])
def list_documents():
    limit = request.args.get("limit", type=int)
    docs = _service().store.list_documents(
        session_id=request.args.get("session_id"), limit=limit
    )
    return jsonify({"documents": _dump(docs), "total": len(docs)})


@app.route("/api/documents/<document_id>", methods=["GET"])
def get_document(document_id: str):
    document = _service().store.get_document(document_id)
    if document is None:
        raise DocumentNotFound(document_id)
    return jsonify(document.model_dump(mode="json"))


@app.route("/api/documents/<document_id>/report", methods=["GET"])
def get_report(document_id: str):
    report = _service().get_annotation_report(document_id)
    return jsonify(report.model_dump(mode="json"))


@app.route("/api/documents/<document_id>/annotations", methods=["GET"])
def get_annotations(document_id: str):
    page = request.args.get("page", type=int)
    annotations = _service().get_document_annotations(document_id, page)
    return jsonify({key: _dump(items) for key, items in annotations.items()})


@app.route("/api/documents/<document_id>/hierarchy/<int:page_number>", methods=["GET"])
def get_hierarchy(document_id: str, page_number: int):
    sections = _service().get_page_text_hierarchy(document_id, page_number)
    return jsonify({"page_number": page_number, "sections": _dump(sections)})


@app.route("/api/documents/<document_id>/export", methods=["GET"])
def export_document(document_id: str):
    return jsonify(_service().export_annotations(document_id))


@app.route("/api/documents/<document_id>/visualization", methods=["GET"])
def get_visualization(document_id: str):
    viz = _service().get_visualization(document_id)
    return jsonify(viz.model_dump(mode="json"))


@app.route("/api/documents/<document_id>/validation", methods=["GET"])
def validate_document(document_id: str):
    result = _service().validate(document_id)
    return jsonify(result.model_dump(mode="json"))


# ─── Sections ─────────────────────────────────────────────────────────────────


@app.route("/api/documents/<document_id>/sections", methods=["GET"])
def get_sections(document_id: str):
    store = _service().store
    if _flag(request.args, "selected", False):
        sections = store.get_selected_sections(document_id)
    else:
        sections = store.get_document_sections(document_id)
    return jsonify({"sections": _dump(sections)})


@app.route("/api/documents/<document_id>/selection", methods=["PUT"])
def update_selection(document_id: str):
    """Body: {"selections": {"<section_id>": true|false, ...}}"""
    body = request.get_json(silent=True) or {}
    selections = body.get("selections")
    if not isinstance(selections, dict) or not selections:
        return jsonify({"error": "selections must be a non-empty object"}), 400

    updated = _service().store.update_section_selection_bulk(
        document_id, {sid: bool(flag) for sid, flag in selections.items()}
    )
    return jsonify({"document_id": document_id, "updated": updated})


# ─── Patterns & Preferences ───────────────────────────────────────────────────


@app.route("/api/patterns", methods=["GET"])
def get_patterns():
    active_only = _flag(request.args, "active_only", True)
    patterns = _service().store.get_redaction_patterns(active_only=active_only)
    return jsonify({"patterns": _dump(patterns)})


@app.route("/api/preferences/<device_id>", methods=["GET"])
def get_preferences(device_id: str):
    prefs = _service().store.get_user_preferences(device_id)
    return jsonify({"device_id": device_id, "preferences": _dump(prefs)})


@app.route("/api/preferences/<device_id>", methods=["PUT"])
def set_preferences(device_id: str):
    """Body: {"preferences": [{"category": ..., "auto_redact": ..., ...}]}"""
    body = request.get_json(silent=True) or {}
    prefs = body.get("preferences")
    if not isinstance(prefs, list):
        return jsonify({"error": "preferences must be a list"}), 400

    store = _service().store
    count = store.set_user_preferences(device_id, prefs)
    return jsonify({
        "device_id": device_id,
        "updated": count,
        "preferences": _dump(store.get_user_preferences(device_id)),
    })


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    db_path: Optional[str] = None,
):
    """Start the microservice server."""
    create_app({"DB_PATH": db_path} if db_path else None)
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
