"""
Test Suite for Annotation Store
===============================
Schema migrations, fallback mode, transactions, hierarchy queries and
the document status lifecycle.
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from pdf_annotator.database import (
    _SCHEMA_V1,
    _SCHEMA_V2,
    DEFAULT_PATTERNS,
    SCHEMA_VERSION,
    AnnotationStore,
)
from pdf_annotator.errors import DocumentNotFound, InvalidStatusTransition, StorageError
from pdf_annotator.models import (
    AnalysisStatus,
    CaptionPosition,
    ContentType,
    DetectedLanguage,
    Document,
    ImageAnnotation,
    PatternCategory,
    RedactionResult,
    Section,
    SectionType,
    TextAnnotation,
    UserRedactionPreference,
)


def make_document(store, document_id="doc_1", session_id=None, **kwargs):
    store.create_document(Document(
        document_id=document_id,
        file_name=f"{document_id}.pdf",
        file_size=1024,
        session_id=session_id,
        **kwargs,
    ))
    return document_id


def make_section(store, document_id, section_id, index=0, section_type=SectionType.TEXT):
    return store.create_section(Section(
        document_id=document_id,
        section_id=section_id,
        section_type=section_type,
        section_index=index,
        page_number=1,
        content_preview=f"preview {section_id}",
        content_length=10,
    ))


def make_text(document_id, section_id, index, level=1, parent=None, page=1):
    return TextAnnotation(
        document_id=document_id,
        section_id=section_id,
        page_number=page,
        section_index=index,
        parent_section_id=parent,
        section_level=level,
        content_text=f"text {section_id}",
        content_type=ContentType.HEADING if level < 3 else ContentType.PARAGRAPH,
        word_count=2,
        char_count=len(f"text {section_id}"),
    )


def make_image(document_id, section_id, index=0, page=1):
    return ImageAnnotation(
        document_id=document_id,
        section_id=section_id,
        page_number=page,
        image_index=index,
        width_px=200,
        height_px=100,
        width_cm=7.06,
        height_cm=3.53,
        width_inches=2.78,
        height_inches=1.39,
        bbox_x1=100, bbox_y1=600, bbox_x2=300, bbox_y2=700,
        caption_text="Figure 1",
        caption_position=CaptionPosition.BOTTOM,
        caption_bbox=(100.0, 580.0, 260.0, 595.0),
        format="png",
        ocr_text="label",
        ocr_confidence=91.0,
        ocr_language="eng",
        ocr_detected_languages=[DetectedLanguage(lang="Latin", confidence=3.2)],
    )


class ExplodingBool:
    """Selection flag whose truth value cannot be computed."""

    def __bool__(self):
        raise RuntimeError("cannot evaluate selection flag")


# ═══════════════════════════════════════════════════════════════════════════════
# LIFECYCLE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestInitialize:
    """Schema setup, migrations and reopen behavior."""

    def test_schema_version_recorded(self, store, db_path):
        conn = sqlite3.connect(db_path)
        try:
            assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
        finally:
            conn.close()

    def test_patterns_seeded(self, store):
        patterns = store.get_redaction_patterns()
        assert len(patterns) == len(DEFAULT_PATTERNS) == 11
        assert {p.pattern_category for p in patterns} == {
            PatternCategory.PII,
            PatternCategory.FINANCIAL,
            PatternCategory.MEDICAL,
            PatternCategory.LEGAL,
        }

    def test_reopen_is_idempotent(self, db_path):
        first = AnnotationStore(db_path)
        assert first.initialize() is True
        make_document(first)
        first.close()

        second = AnnotationStore(db_path)
        assert second.initialize() is True
        assert second.initialize() is True
        assert len(second.get_redaction_patterns()) == 11
        assert second.get_document("doc_1") is not None
        second.close()

    def test_upgrade_from_version_two_adds_ocr_columns(self, db_path):
        conn = sqlite3.connect(db_path)
        for statement in (_SCHEMA_V1 + ";" + _SCHEMA_V2).split(";"):
            if statement.strip():
                conn.execute(statement)
        conn.execute("PRAGMA user_version = 2")
        conn.commit()
        conn.close()

        store = AnnotationStore(db_path)
        store.initialize()
        make_document(store)
        store.create_image_annotation(make_image("doc_1", "img_0"))
        stored = store.get_image_annotations("doc_1")[0]
        store.close()

        assert stored.ocr_text == "label"
        conn = sqlite3.connect(db_path)
        cols = {row[1] for row in conn.execute("PRAGMA table_info(image_annotations)")}
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        conn.close()
        assert {"ocr_text", "ocr_confidence", "ocr_language", "ocr_detected_languages"} <= cols
        assert version == 3

    def test_concurrent_initialize_shares_outcome(self, db_path):
        store = AnnotationStore(db_path)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.initialize(), range(16)))
        assert results == [True] * 16
        assert len(store.get_redaction_patterns()) == 11
        store.close()

    def test_lazy_initialize_on_first_use(self, db_path):
        store = AnnotationStore(db_path)
        assert store.list_documents() == []
        assert store.is_initialized
        store.close()


class TestFallbackMode:
    """Unopenable database path."""

    @pytest.fixture
    def fallback_store(self, tmp_path):
        store = AnnotationStore(str(tmp_path / "missing" / "dir" / "db.sqlite"))
        yield store
        store.close()

    def test_initialize_reports_fallback(self, fallback_store):
        assert fallback_store.initialize() is False
        assert fallback_store.is_fallback_mode

    def test_fallback_survives_close(self, fallback_store):
        assert fallback_store.initialize() is False
        fallback_store.close()
        assert fallback_store.is_fallback_mode
        assert fallback_store.initialize() is False
        assert fallback_store.is_fallback_mode

    def test_writes_return_synthetic_ids(self, fallback_store):
        assert make_document(fallback_store) == "doc_1"
        first = make_section(fallback_store, "doc_1", "s0")
        second = fallback_store.create_image_annotation(make_image("doc_1", "i0"))
        assert second > first > 0

    def test_reads_are_empty(self, fallback_store):
        make_document(fallback_store)
        assert fallback_store.get_document("doc_1") is None
        assert fallback_store.list_documents() == []
        assert fallback_store.get_text_hierarchy("doc_1", 1) == []
        assert fallback_store.get_redaction_patterns() == []

    def test_updates_are_noops(self, fallback_store):
        assert fallback_store.update_document_status("doc_1", "completed") is False
        assert fallback_store.update_section_selection_bulk("doc_1", {"s0": True}) == 0
        with fallback_store.batch():
            make_section(fallback_store, "doc_1", "s0")


# ═══════════════════════════════════════════════════════════════════════════════
# DOCUMENT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestDocuments:
    """Document records and status lifecycle."""

    def test_round_trip(self, store):
        make_document(store, session_id="sess")
        doc = store.get_document("doc_1")
        assert doc.file_name == "doc_1.pdf"
        assert doc.analysis_status == AnalysisStatus.PENDING
        assert doc.created_at is not None

    def test_missing_document(self, store):
        assert store.get_document("nope") is None

    def test_duplicate_document_rejected(self, store):
        make_document(store)
        with pytest.raises(StorageError):
            make_document(store)

    def test_list_by_session_newest_first(self, store):
        make_document(store, "doc_a", session_id="s1")
        make_document(store, "doc_b", session_id="s2")
        make_document(store, "doc_c", session_id="s1")
        assert [d.document_id for d in store.list_documents("s1")] == ["doc_c", "doc_a"]
        assert len(store.list_documents(limit=2)) == 2

    def test_forward_transitions(self, store):
        make_document(store)
        assert store.update_document_status("doc_1", AnalysisStatus.ANALYZING)
        assert store.update_document_status("doc_1", "completed", total_sections=7)
        doc = store.get_document("doc_1")
        assert doc.analysis_status == AnalysisStatus.COMPLETED
        assert doc.total_sections == 7

    def test_repeating_status_allowed(self, store):
        make_document(store, analysis_status=AnalysisStatus.ANALYZING)
        assert store.update_document_status("doc_1", AnalysisStatus.ANALYZING)

    def test_backward_transition_rejected(self, store):
        make_document(store, analysis_status=AnalysisStatus.ANALYZING)
        store.update_document_status("doc_1", AnalysisStatus.COMPLETED)
        with pytest.raises(InvalidStatusTransition) as exc:
            store.update_document_status("doc_1", AnalysisStatus.ANALYZING)
        assert exc.value.current == "completed"
        assert store.get_document("doc_1").analysis_status == AnalysisStatus.COMPLETED

    def test_failed_is_terminal(self, store):
        make_document(store)
        store.update_document_status("doc_1", AnalysisStatus.FAILED)
        with pytest.raises(InvalidStatusTransition):
            store.update_document_status("doc_1", AnalysisStatus.COMPLETED)

    def test_unknown_document_status(self, store):
        with pytest.raises(DocumentNotFound):
            store.update_document_status("ghost", AnalysisStatus.ANALYZING)


# ═══════════════════════════════════════════════════════════════════════════════
# SECTION TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestSections:
    """Section rows, selection and sensitivity flags."""

    def test_section_requires_document(self, store):
        with pytest.raises(StorageError):
            make_section(store, "ghost", "s0")

    def test_ordering(self, store):
        make_document(store)
        make_section(store, "doc_1", "t1", index=1)
        make_section(store, "doc_1", "i0", index=0, section_type=SectionType.IMAGE)
        make_section(store, "doc_1", "t0", index=0)
        assert [s.section_id for s in store.get_document_sections("doc_1")] == [
            "i0", "t0", "t1",
        ]

    def test_single_selection(self, store):
        make_document(store)
        make_section(store, "doc_1", "s0")
        assert store.update_section_selection("doc_1", "s0", False) is True
        assert store.update_section_selection("doc_1", "missing", False) is False
        assert store.get_selected_sections("doc_1") == []

    def test_bulk_selection(self, store):
        make_document(store)
        for i in range(3):
            make_section(store, "doc_1", f"s{i}", index=i)
        updated = store.update_section_selection_bulk(
            "doc_1", {"s0": False, "s2": False, "missing": False}
        )
        assert updated == 2
        assert [s.section_id for s in store.get_selected_sections("doc_1")] == ["s1"]

    def test_bulk_selection_rolls_back(self, store):
        make_document(store)
        make_section(store, "doc_1", "s0", index=0)
        make_section(store, "doc_1", "s1", index=1)

        with pytest.raises(RuntimeError):
            store.update_section_selection_bulk(
                "doc_1", {"s0": False, "s1": ExplodingBool()}
            )

        selected = store.get_selected_sections("doc_1")
        assert [s.section_id for s in selected] == ["s0", "s1"]

    def test_mark_sensitive(self, store):
        make_document(store)
        make_section(store, "doc_1", "s0")
        assert store.mark_section_sensitive("doc_1", "s0", ["Email Address"], 0.9)
        section = store.get_document_sections("doc_1")[0]
        assert section.has_sensitive_content is True
        assert section.sensitive_patterns_found == ["Email Address"]
        assert section.confidence_score == 0.9


class TestBatch:
    """Multi-write transactions."""

    def test_commit(self, store):
        make_document(store)
        with store.batch():
            make_section(store, "doc_1", "s0")
            store.create_text_annotation(make_text("doc_1", "s0", 0))
        assert len(store.get_document_sections("doc_1")) == 1
        assert len(store.get_text_annotations("doc_1")) == 1

    def test_rollback_on_error(self, store):
        make_document(store)
        with pytest.raises(ValueError):
            with store.batch():
                make_section(store, "doc_1", "s0")
                store.create_text_annotation(make_text("doc_1", "s0", 0))
                raise ValueError("abort")
        assert store.get_document_sections("doc_1") == []
        assert store.get_text_annotations("doc_1") == []

    def test_constraint_violation_rolls_back_everything(self, store):
        make_document(store)
        with pytest.raises(StorageError):
            with store.batch():
                make_section(store, "doc_1", "s0")
                make_section(store, "doc_1", "s0")
        assert store.get_document_sections("doc_1") == []


# ═══════════════════════════════════════════════════════════════════════════════
# ANNOTATION TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestAnnotations:
    """Image and text annotation rows."""

    def test_image_round_trip(self, store):
        make_document(store)
        store.create_image_annotation(make_image("doc_1", "img_0"))
        img = store.get_image_annotations("doc_1")[0]
        assert img.caption_position == CaptionPosition.BOTTOM
        assert img.caption_bbox == (100.0, 580.0, 260.0, 595.0)
        assert img.ocr_detected_languages == [DetectedLanguage(lang="Latin", confidence=3.2)]
        assert img.has_transparency is False

    def test_page_filter(self, store):
        make_document(store)
        store.create_image_annotation(make_image("doc_1", "i0", index=0, page=1))
        store.create_image_annotation(make_image("doc_1", "i1", index=1, page=2))
        store.create_text_annotation(make_text("doc_1", "t0", 0, page=1))
        store.create_text_annotation(make_text("doc_1", "t1", 1, page=2))

        assert [i.section_id for i in store.get_image_annotations("doc_1", 2)] == ["i1"]
        assert [t.section_id for t in store.get_text_annotations("doc_1", 1)] == ["t0"]
        assert len(store.get_text_annotations("doc_1")) == 2

    def test_hierarchy_breadth_first(self, store):
        make_document(store)
        store.create_text_annotation(make_text("doc_1", "a", 0, level=1))
        store.create_text_annotation(make_text("doc_1", "a1", 1, level=2, parent="a"))
        store.create_text_annotation(make_text("doc_1", "a1x", 2, level=3, parent="a1"))
        store.create_text_annotation(make_text("doc_1", "b", 3, level=1))
        store.create_text_annotation(make_text("doc_1", "b1", 4, level=3, parent="b"))
        store.create_text_annotation(make_text("doc_1", "other", 5, level=1, page=2))

        ordered = store.get_text_hierarchy("doc_1", 1)
        assert [t.section_id for t in ordered] == ["a", "b", "a1", "b1", "a1x"]

    def test_hierarchy_is_per_document(self, store):
        make_document(store, "doc_1")
        make_document(store, "doc_2")
        store.create_text_annotation(make_text("doc_1", "root", 0))
        store.create_text_annotation(make_text("doc_2", "root", 0))
        assert len(store.get_text_hierarchy("doc_1", 1)) == 1


# ═══════════════════════════════════════════════════════════════════════════════
# PATTERNS, RESULTS & PREFERENCES
# ═══════════════════════════════════════════════════════════════════════════════


class TestRedactionResults:
    """Stored redaction matches."""

    def test_round_trip(self, store):
        make_document(store)
        pattern = store.get_redaction_patterns()[0]
        store.create_redaction_result(RedactionResult(
            document_id="doc_1",
            section_id="s0",
            pattern_id=pattern.id,
            original_content="jane@example.com",
            redacted_content="[EMAIL]",
            confidence_score=0.95,
            bounding_box=(1.0, 2.0, 3.0, 4.0),
            page_number=1,
        ))
        results = store.get_redaction_results("doc_1")
        assert len(results) == 1
        assert results[0].bounding_box == (1.0, 2.0, 3.0, 4.0)

    def test_unknown_pattern_rejected(self, store):
        make_document(store)
        with pytest.raises(StorageError):
            store.create_redaction_result(RedactionResult(
                document_id="doc_1",
                section_id="s0",
                pattern_id=9999,
                original_content="x",
                redacted_content="y",
                confidence_score=1.0,
            ))


class TestPreferences:
    """Per-device redaction preferences."""

    def test_set_and_get(self, store):
        count = store.set_user_preferences("dev_1", [
            UserRedactionPreference(category=PatternCategory.PII, auto_redact=False),
            {"category": "financial", "require_confirmation": False},
        ])
        assert count == 2
        prefs = {p.category: p for p in store.get_user_preferences("dev_1")}
        assert prefs[PatternCategory.PII].auto_redact is False
        assert prefs[PatternCategory.FINANCIAL].require_confirmation is False

    def test_upsert_replaces_category(self, store):
        store.set_user_preferences("dev_1", [{"category": "pii", "auto_redact": True}])
        store.set_user_preferences("dev_1", [{"category": "pii", "auto_redact": False}])
        prefs = store.get_user_preferences("dev_1")
        assert len(prefs) == 1
        assert prefs[0].auto_redact is False

    def test_device_independent_defaults_included(self, store, db_path):
        conn = sqlite3.connect(db_path)
        conn.execute(
            "INSERT INTO user_redaction_preferences (device_id, category) VALUES (NULL, 'legal')"
        )
        conn.commit()
        conn.close()

        store.set_user_preferences("dev_1", [{"category": "pii"}])
        categories = [p.category for p in store.get_user_preferences("dev_1")]
        assert categories == [PatternCategory.LEGAL, PatternCategory.PII]
        assert [p.category for p in store.get_user_preferences("dev_2")] == [
            PatternCategory.LEGAL
        ]
