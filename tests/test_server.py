"""
Test Suite for HTTP Microservice
================================
Endpoints exercised through the Flask test client.
"""

from __future__ import annotations

import io

import pytest

from pdf_annotator.server import create_app


@pytest.fixture
def client(service):
    app = create_app({"TESTING": True}, service=service)
    return app.test_client()


@pytest.fixture
def document_id(client, sample_pdf):
    response = client.post(
        "/api/documents",
        data={
            "file": (io.BytesIO(sample_pdf), "sample.pdf"),
            "max_image_caption_distance": "100",
            "session_id": "sess_1",
        },
        content_type="multipart/form-data",
    )
    assert response.status_code == 201
    return response.get_json()["document_id"]


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestHealthAndInfo:
    """Liveness and capability endpoints."""

    def test_health(self, client):
        data = client.get("/api/health").get_json()
        assert data["status"] == "healthy"
        assert data["storage"] == "sqlite"

    def test_info(self, client):
        data = client.get("/api/info").get_json()
        assert data["engine"] == "PyMuPDF"
        assert "caption_detection" in data["capabilities"]


class TestAnnotateEndpoint:
    """Upload and annotate."""

    def test_upload(self, client, sample_pdf):
        response = client.post(
            "/api/documents",
            data={
                "file": (io.BytesIO(sample_pdf), "sample.pdf"),
                "max_image_caption_distance": "100",
            },
            content_type="multipart/form-data",
        )
        data = response.get_json()
        assert response.status_code == 201
        assert data["report"]["total_images"] == 1
        assert data["report"]["images_with_captions"] == 1
        assert data["validation"]["is_valid"] is True
        assert data["degraded"] is False

    def test_json_file_path(self, client, sample_pdf_path):
        response = client.post("/api/documents", json={
            "file_path": sample_pdf_path,
            "extract_images": False,
        })
        assert response.status_code == 201
        assert response.get_json()["report"]["total_images"] == 0

    def test_json_missing_path(self, client, tmp_path):
        response = client.post(
            "/api/documents", json={"file_path": str(tmp_path / "gone.pdf")}
        )
        assert response.status_code == 404

    def test_no_input(self, client):
        assert client.post("/api/documents").status_code == 400

    def test_unreadable_pdf(self, client):
        response = client.post(
            "/api/documents",
            data={"file": (io.BytesIO(b"garbage"), "bad.pdf")},
            content_type="multipart/form-data",
        )
        assert response.status_code == 415

    def test_bad_option_value(self, client, sample_pdf):
        response = client.post(
            "/api/documents",
            data={
                "file": (io.BytesIO(sample_pdf), "sample.pdf"),
                "max_image_caption_distance": "far",
            },
            content_type="multipart/form-data",
        )
        assert response.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════════
# DOCUMENT ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestDocumentEndpoints:
    """Views over a stored document."""

    def test_list(self, client, document_id):
        data = client.get("/api/documents?session_id=sess_1").get_json()
        assert data["total"] == 1
        assert data["documents"][0]["document_id"] == document_id
        assert data["documents"][0]["analysis_status"] == "completed"

    def test_get_document(self, client, document_id):
        data = client.get(f"/api/documents/{document_id}").get_json()
        assert data["file_name"] == "sample.pdf"

    def test_unknown_document_is_404(self, client):
        for suffix in ("", "/report", "/visualization", "/export"):
            response = client.get(f"/api/documents/doc_missing{suffix}")
            assert response.status_code == 404
            assert response.get_json()["document_id"] == "doc_missing"

    def test_report(self, client, document_id):
        data = client.get(f"/api/documents/{document_id}/report").get_json()
        assert data["total_text_sections"] == 4
        assert data["caption_percentage"] == 100.0

    def test_annotations_page_filter(self, client, document_id):
        data = client.get(f"/api/documents/{document_id}/annotations?page=1").get_json()
        assert len(data["images"]) == 1
        assert len(data["text_sections"]) == 4
        empty = client.get(f"/api/documents/{document_id}/annotations?page=9").get_json()
        assert empty == {"images": [], "text_sections": []}

    def test_hierarchy(self, client, document_id):
        data = client.get(f"/api/documents/{document_id}/hierarchy/1").get_json()
        assert [s["section_level"] for s in data["sections"]] == [1, 1, 3, 3]

    def test_export(self, client, document_id):
        data = client.get(f"/api/documents/{document_id}/export").get_json()
        assert data["annotations"]["images"][0]["caption"]["text"] == "Figure 1: Example"

    def test_visualization(self, client, document_id):
        data = client.get(f"/api/documents/{document_id}/visualization").get_json()
        assert data["pages"][0]["page_number"] == 1

    def test_validation(self, client, document_id):
        data = client.get(f"/api/documents/{document_id}/validation").get_json()
        assert data["is_valid"] is True


class TestSelectionEndpoints:
    """Section listing and bulk selection."""

    def test_bulk_selection(self, client, document_id):
        sections = client.get(f"/api/documents/{document_id}/sections").get_json()["sections"]
        assert len(sections) == 5
        target = sections[0]["section_id"]

        response = client.put(
            f"/api/documents/{document_id}/selection",
            json={"selections": {target: False, "missing": False}},
        )
        assert response.get_json()["updated"] == 1

        selected = client.get(
            f"/api/documents/{document_id}/sections?selected=1"
        ).get_json()["sections"]
        assert target not in {s["section_id"] for s in selected}
        assert len(selected) == 4

    def test_bad_selection_body(self, client, document_id):
        response = client.put(
            f"/api/documents/{document_id}/selection", json={"selections": []}
        )
        assert response.status_code == 400


class TestPatternAndPreferenceEndpoints:
    """Redaction catalogue and device preferences."""

    def test_patterns(self, client):
        data = client.get("/api/patterns").get_json()
        assert len(data["patterns"]) == 11

    def test_preferences_round_trip(self, client):
        response = client.put("/api/preferences/dev_1", json={
            "preferences": [{"category": "medical", "auto_redact": False}],
        })
        assert response.status_code == 200
        assert response.get_json()["updated"] == 1

        prefs = client.get("/api/preferences/dev_1").get_json()["preferences"]
        assert prefs[0]["category"] == "medical"
        assert prefs[0]["auto_redact"] is False

    def test_invalid_category(self, client):
        response = client.put("/api/preferences/dev_1", json={
            "preferences": [{"category": "astrology"}],
        })
        assert response.status_code == 400

    def test_preferences_must_be_list(self, client):
        response = client.put("/api/preferences/dev_1", json={"preferences": {}})
        assert response.status_code == 400
