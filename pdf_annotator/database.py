"""
SQLite Database Layer
=====================
Versioned persistent storage for documents, sections, image and text
annotations, redaction patterns, redaction results and user preferences.

The schema version lives in PRAGMA user_version. When the database file
cannot be opened the store switches to fallback mode for the rest of its
life: writes return synthesized ids and reads return nothing.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import sqlite3
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from .errors import (
    DocumentNotFound,
    InvalidStatusTransition,
    StorageError,
    StorageUnavailable,
)
from .models import (
    AnalysisStatus,
    Document,
    DocumentMetadata,
    ImageAnnotation,
    PatternCategory,
    RedactionPattern,
    RedactionResult,
    Section,
    TextAnnotation,
    UserRedactionPreference,
)

logger = logging.getLogger(__name__)

# Default database path: project_root/annotations.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "annotations.sqlite")

SCHEMA_VERSION = 3


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("ANNOTATOR_DB_PATH", _DEFAULT_DB_PATH)


# ─── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_V1 = """
    CREATE TABLE IF NOT EXISTS redaction_documents (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT UNIQUE NOT NULL,
        file_name TEXT NOT NULL,
        file_type TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        session_id TEXT,
        message_id TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        analysis_status TEXT DEFAULT 'pending'
            CHECK (analysis_status IN ('pending', 'analyzing', 'completed', 'failed')),
        total_sections INTEGER DEFAULT 0,
        metadata TEXT
    );

    CREATE TABLE IF NOT EXISTS redaction_sections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT NOT NULL,
        section_id TEXT NOT NULL,
        section_type TEXT NOT NULL
            CHECK (section_type IN ('text', 'image', 'metadata', 'form', 'link', 'annotation')),
        section_index INTEGER NOT NULL,
        page_number INTEGER,
        content_preview TEXT NOT NULL,
        content_length INTEGER NOT NULL,
        has_sensitive_content BOOLEAN DEFAULT FALSE,
        sensitive_patterns_found TEXT DEFAULT '[]',
        confidence_score REAL DEFAULT 0.0,
        is_user_selected BOOLEAN DEFAULT TRUE,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        metadata TEXT,
        FOREIGN KEY (document_id) REFERENCES redaction_documents(document_id),
        UNIQUE(document_id, section_id)
    );

    CREATE TABLE IF NOT EXISTS redaction_patterns (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pattern_name TEXT UNIQUE NOT NULL,
        pattern_regex TEXT NOT NULL,
        pattern_category TEXT NOT NULL
            CHECK (pattern_category IN ('pii', 'financial', 'medical', 'legal', 'other')),
        severity TEXT NOT NULL CHECK (severity IN ('high', 'medium', 'low')),
        is_active BOOLEAN DEFAULT TRUE,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS redaction_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT NOT NULL,
        section_id TEXT NOT NULL,
        pattern_id INTEGER NOT NULL,
        original_content TEXT NOT NULL,
        redacted_content TEXT NOT NULL,
        confidence_score REAL NOT NULL,
        bounding_box TEXT,
        page_number INTEGER,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (document_id) REFERENCES redaction_documents(document_id),
        FOREIGN KEY (pattern_id) REFERENCES redaction_patterns(id)
    );

    CREATE TABLE IF NOT EXISTS user_redaction_preferences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        device_id TEXT,
        category TEXT NOT NULL
            CHECK (category IN ('pii', 'financial', 'medical', 'legal', 'other')),
        auto_redact BOOLEAN DEFAULT TRUE,
        require_confirmation BOOLEAN DEFAULT TRUE,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(device_id, category)
    );

    CREATE INDEX IF NOT EXISTS idx_redaction_documents_session_id
        ON redaction_documents(session_id);
    CREATE INDEX IF NOT EXISTS idx_redaction_documents_created_at
        ON redaction_documents(created_at);
    CREATE INDEX IF NOT EXISTS idx_redaction_sections_document_id
        ON redaction_sections(document_id);
    CREATE INDEX IF NOT EXISTS idx_redaction_sections_type
        ON redaction_sections(section_type);
    CREATE INDEX IF NOT EXISTS idx_redaction_sections_sensitive
        ON redaction_sections(has_sensitive_content);
    CREATE INDEX IF NOT EXISTS idx_redaction_results_document_id
        ON redaction_results(document_id);
    CREATE INDEX IF NOT EXISTS idx_redaction_patterns_category
        ON redaction_patterns(pattern_category);
    CREATE INDEX IF NOT EXISTS idx_redaction_patterns_active
        ON redaction_patterns(is_active);
"""

_SCHEMA_V2 = """
    CREATE TABLE IF NOT EXISTS image_annotations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT NOT NULL,
        section_id TEXT NOT NULL,
        page_number INTEGER NOT NULL,
        image_index INTEGER NOT NULL,
        width_px REAL NOT NULL,
        height_px REAL NOT NULL,
        width_cm REAL,
        height_cm REAL,
        width_inches REAL,
        height_inches REAL,
        bbox_x1 REAL NOT NULL,
        bbox_y1 REAL NOT NULL,
        bbox_x2 REAL NOT NULL,
        bbox_y2 REAL NOT NULL,
        caption_text TEXT,
        caption_position TEXT
            CHECK (caption_position IN ('top', 'bottom', 'left', 'right', 'none')),
        caption_bbox TEXT,
        format TEXT,
        color_space TEXT,
        dpi REAL,
        is_inline BOOLEAN DEFAULT FALSE,
        has_transparency BOOLEAN DEFAULT FALSE,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        metadata TEXT,
        FOREIGN KEY (document_id) REFERENCES redaction_documents(document_id),
        UNIQUE(document_id, section_id)
    );

    CREATE TABLE IF NOT EXISTS text_section_annotations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT NOT NULL,
        section_id TEXT NOT NULL,
        page_number INTEGER NOT NULL,
        section_index INTEGER NOT NULL,
        parent_section_id TEXT,
        section_level INTEGER NOT NULL DEFAULT 1,
        section_title TEXT,
        content_text TEXT NOT NULL,
        content_type TEXT NOT NULL
            CHECK (content_type IN ('paragraph', 'heading', 'list', 'table', 'caption', 'other')),
        word_count INTEGER NOT NULL,
        char_count INTEGER NOT NULL,
        bbox_x1 REAL,
        bbox_y1 REAL,
        bbox_x2 REAL,
        bbox_y2 REAL,
        font_name TEXT,
        font_size REAL,
        is_bold BOOLEAN DEFAULT FALSE,
        is_italic BOOLEAN DEFAULT FALSE,
        text_color TEXT,
        contains_numbers BOOLEAN DEFAULT FALSE,
        contains_urls BOOLEAN DEFAULT FALSE,
        language TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        metadata TEXT,
        FOREIGN KEY (document_id) REFERENCES redaction_documents(document_id),
        UNIQUE(document_id, section_id)
    );

    CREATE INDEX IF NOT EXISTS idx_image_annotations_document_id
        ON image_annotations(document_id);
    CREATE INDEX IF NOT EXISTS idx_image_annotations_page_number
        ON image_annotations(page_number);
    CREATE INDEX IF NOT EXISTS idx_text_annotations_document_id
        ON text_section_annotations(document_id);
    CREATE INDEX IF NOT EXISTS idx_text_annotations_page_number
        ON text_section_annotations(page_number);
    CREATE INDEX IF NOT EXISTS idx_text_annotations_parent
        ON text_section_annotations(parent_section_id);
    CREATE INDEX IF NOT EXISTS idx_text_annotations_type
        ON text_section_annotations(content_type);
"""

# Version 3 columns on image_annotations
_OCR_COLUMNS = {
    "ocr_text": "TEXT",
    "ocr_confidence": "REAL",
    "ocr_language": "TEXT",
    "ocr_detected_languages": "TEXT",
}

DEFAULT_PATTERNS: list[tuple[str, str, str, str]] = [
    ("Email Address",
     r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b", "pii", "high"),
    ("Phone Number",
     r"(\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}", "pii", "high"),
    ("SSN", r"\b\d{3}-?\d{2}-?\d{4}\b", "pii", "high"),
    ("Credit Card", r"\b(?:\d{4}[-\s]?){3}\d{4}\b", "financial", "high"),
    ("Bank Account", r"\b\d{8,17}\b", "financial", "high"),
    ("Address",
     r"\b\d+\s+[A-Za-z0-9\s,.-]+(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd"
     r"|Lane|Ln|Drive|Dr|Way|Place|Pl)\b", "pii", "medium"),
    ("Date of Birth",
     r"\b(?:0?[1-9]|1[0-2])[\/\-](?:0?[1-9]|[12]\d|3[01])[\/\-](?:19|20)\d{2}\b",
     "pii", "high"),
    ("Driver License", r"\b[A-Z]\d{7,8}\b", "pii", "high"),
    ("Passport", r"\b[A-Z]{1,2}\d{6,9}\b", "pii", "high"),
    ("Medical Record",
     r"\b(?:MRN|Medical Record|Patient ID)[:\s]*\d{6,12}\b", "medical", "high"),
    ("Case Number",
     r"\b(?:Case|Docket|File)[\s#:]*[A-Z0-9\-]{6,20}\b", "legal", "medium"),
]


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed JSON column value: {value[:60]!r}")
        return None


# ─── Store ────────────────────────────────────────────────────────────────────


class AnnotationStore:
    """
    Annotation store over one shared sqlite3 connection.

    All statements run under an internal lock. Writes made inside
    batch() share a single transaction.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_db_path()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_lock = threading.Lock()
        self._init_future: Optional[Future] = None
        self._fallback = False
        self._depth = 0
        self._synthetic_ids = itertools.count(1)

    @property
    def is_fallback_mode(self) -> bool:
        return self._fallback

    @property
    def is_initialized(self) -> bool:
        future = self._init_future
        return future is not None and future.done() and future.exception() is None

    # ─── Lifecycle ────────────────────────────────────────────────────────

    def initialize(self) -> bool:
        """
        Open the database and bring the schema to the current version.

        Idempotent and thread-safe: concurrent callers wait for and share
        the same outcome. Returns True when storage is durable, False in
        fallback mode. A failed migration raises StorageError and may be
        retried.
        """
        with self._init_lock:
            future = self._init_future
            owner = future is None
            if owner:
                future = Future()
                self._init_future = future

        if not owner:
            return future.result()

        try:
            durable = self._open()
        except BaseException as e:
            with self._init_lock:
                self._init_future = None
            future.set_exception(e)
            raise

        future.set_result(durable)
        return durable

    def _open(self) -> bool:
        logger.info(f"Initializing annotation store at: {self.db_path}")
        try:
            conn = self._connect()
        except StorageUnavailable as e:
            logger.warning(f"Annotation store unavailable, using fallback mode: {e}")
            self._fallback = True
            return False

        try:
            self._migrate(conn)
            self._seed_patterns(conn)
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"Schema initialization failed: {e}") from e

        with self._lock:
            self._conn = conn
        logger.info("Annotation store initialized successfully")
        return True

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open {self.db_path}: {e}") from e
        return conn

    def _migrate(self, conn: sqlite3.Connection):
        """Apply each pending schema version once, each in its own transaction."""
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        steps = [
            (1, self._migrate_v1),
            (2, self._migrate_v2),
            (3, self._migrate_v3),
        ]
        for target, step in steps:
            if version >= target:
                continue
            conn.execute("BEGIN")
            try:
                step(conn)
                conn.execute(f"PRAGMA user_version = {target}")
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            logger.info(f"Migrated annotation store to schema version {target}")
            version = target

    def _migrate_v1(self, conn: sqlite3.Connection):
        self._execute_script(conn, _SCHEMA_V1)

    def _migrate_v2(self, conn: sqlite3.Connection):
        self._execute_script(conn, _SCHEMA_V2)

    def _migrate_v3(self, conn: sqlite3.Connection):
        """Add OCR columns that may be missing in older databases."""
        cols = {
            row["name"]
            for row in conn.execute("PRAGMA table_info(image_annotations)").fetchall()
        }
        for name, col_type in _OCR_COLUMNS.items():
            if name not in cols:
                conn.execute(
                    f"ALTER TABLE image_annotations ADD COLUMN {name} {col_type}"
                )
                logger.info(f"Migrated: added image_annotations.{name}")

    @staticmethod
    def _execute_script(conn: sqlite3.Connection, script: str):
        # executescript() would commit the open transaction
        for statement in script.split(";"):
            if statement.strip():
                conn.execute(statement)

    def _seed_patterns(self, conn: sqlite3.Connection):
        conn.execute("BEGIN")
        try:
            conn.executemany(
                """INSERT OR IGNORE INTO redaction_patterns
                   (pattern_name, pattern_regex, pattern_category, severity, is_active)
                   VALUES (?, ?, ?, ?, 1)""",
                DEFAULT_PATTERNS,
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise

    def close(self):
        """
        Close the connection. A later initialize() reopens it.

        Fallback mode is permanent: a degraded store stays degraded after
        close() and is never reopened.
        """
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Annotation store closed")
        if self._fallback:
            return
        with self._init_lock:
            self._init_future = None

    # ─── Transactions ─────────────────────────────────────────────────────

    def _ensure_ready(self) -> bool:
        """Initialize on first use. Returns False in fallback mode."""
        if not self.is_initialized:
            self.initialize()
        return not self._fallback

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._conn is None:
                raise StorageError("Annotation store is closed")
            conn = self._conn
            outermost = self._depth == 0
            if outermost:
                conn.execute("BEGIN")
            self._depth += 1
            try:
                yield conn
            except sqlite3.Error as e:
                if outermost:
                    conn.execute("ROLLBACK")
                raise StorageError(str(e)) from e
            except BaseException:
                if outermost:
                    conn.execute("ROLLBACK")
                raise
            else:
                if outermost:
                    try:
                        conn.execute("COMMIT")
                    except sqlite3.Error as e:
                        conn.execute("ROLLBACK")
                        raise StorageError(f"Commit failed: {e}") from e
            finally:
                self._depth -= 1

    @contextmanager
    def batch(self) -> Iterator["AnnotationStore"]:
        """
        Group writes into one transaction.

        Any exception inside the block rolls back every write made in it.
        """
        if not self._ensure_ready():
            yield self
            return
        with self._transaction():
            yield self

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            if self._conn is None:
                raise StorageError("Annotation store is closed")
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _synthetic_id(self) -> int:
        return next(self._synthetic_ids)

    # ─── Documents ────────────────────────────────────────────────────────

    def create_document(self, document: Document) -> str:
        """Insert a document. Returns its document_id."""
        if not self._ensure_ready():
            logger.info(f"Fallback mode: document not persisted: {document.document_id}")
            return document.document_id

        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO redaction_documents
                   (document_id, file_name, file_type, file_size, session_id,
                    message_id, analysis_status, total_sections, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    document.document_id,
                    document.file_name,
                    document.file_type,
                    document.file_size,
                    document.session_id,
                    document.message_id,
                    document.analysis_status.value,
                    document.total_sections,
                    document.metadata.model_dump_json(),
                ),
            )
        logger.info(f"Document created: {document.document_id}")
        return document.document_id

    def get_document(self, document_id: str) -> Optional[Document]:
        if not self._ensure_ready():
            return None
        rows = self._query(
            "SELECT * FROM redaction_documents WHERE document_id = ?",
            (document_id,),
        )
        return self._document_from_row(rows[0]) if rows else None

    def list_documents(
        self, session_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[Document]:
        """List documents, newest first."""
        if not self._ensure_ready():
            return []
        sql = "SELECT * FROM redaction_documents"
        params: list[Any] = []
        if session_id is not None:
            sql += " WHERE session_id = ?"
            params.append(session_id)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._document_from_row(r) for r in self._query(sql, tuple(params))]

    def update_document_status(
        self,
        document_id: str,
        status: Union[AnalysisStatus, str],
        total_sections: Optional[int] = None,
    ) -> bool:
        """
        Move a document along its analysis lifecycle.

        Raises:
            InvalidStatusTransition: If the move is not allowed.
            DocumentNotFound: If no such document exists.
        """
        status = AnalysisStatus(status)
        if not self._ensure_ready():
            logger.info(
                f"Fallback mode: status update not persisted: {document_id} {status.value}"
            )
            return False

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT analysis_status FROM redaction_documents WHERE document_id = ?",
                (document_id,),
            ).fetchone()
            if row is None:
                raise DocumentNotFound(document_id)

            current = AnalysisStatus(row["analysis_status"])
            if not current.can_transition_to(status):
                raise InvalidStatusTransition(document_id, current.value, status.value)

            if total_sections is None:
                conn.execute(
                    "UPDATE redaction_documents SET analysis_status = ? WHERE document_id = ?",
                    (status.value, document_id),
                )
            else:
                conn.execute(
                    """UPDATE redaction_documents
                       SET analysis_status = ?, total_sections = ?
                       WHERE document_id = ?""",
                    (status.value, total_sections, document_id),
                )

        logger.info(f"Document {document_id} status: {current.value} -> {status.value}")
        return True

    def _document_from_row(self, row: sqlite3.Row) -> Document:
        data = dict(row)
        data["metadata"] = DocumentMetadata.model_validate(_loads(data.get("metadata")) or {})
        return Document.model_validate(data)

    # ─── Sections ─────────────────────────────────────────────────────────

    def create_section(self, section: Section) -> int:
        if not self._ensure_ready():
            return self._synthetic_id()

        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO redaction_sections
                   (document_id, section_id, section_type, section_index, page_number,
                    content_preview, content_length, has_sensitive_content,
                    sensitive_patterns_found, confidence_score, is_user_selected, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    section.document_id,
                    section.section_id,
                    section.section_type.value,
                    section.section_index,
                    section.page_number,
                    section.content_preview,
                    section.content_length,
                    1 if section.has_sensitive_content else 0,
                    _dumps(section.sensitive_patterns_found),
                    section.confidence_score,
                    1 if section.is_user_selected else 0,
                    _dumps(section.metadata),
                ),
            )
            return cursor.lastrowid

    def get_document_sections(self, document_id: str) -> list[Section]:
        if not self._ensure_ready():
            return []
        rows = self._query(
            """SELECT * FROM redaction_sections
               WHERE document_id = ? ORDER BY section_type, section_index""",
            (document_id,),
        )
        return [self._section_from_row(r) for r in rows]

    def get_selected_sections(self, document_id: str) -> list[Section]:
        if not self._ensure_ready():
            return []
        rows = self._query(
            """SELECT * FROM redaction_sections
               WHERE document_id = ? AND is_user_selected = 1
               ORDER BY section_index ASC""",
            (document_id,),
        )
        return [self._section_from_row(r) for r in rows]

    def update_section_selection(
        self, document_id: str, section_id: str, is_selected: bool
    ) -> bool:
        """Returns True if the section exists."""
        if not self._ensure_ready():
            return False
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE redaction_sections SET is_user_selected = ?
                   WHERE document_id = ? AND section_id = ?""",
                (1 if is_selected else 0, document_id, section_id),
            )
            return cursor.rowcount > 0

    def update_section_selection_bulk(
        self, document_id: str, selections: dict[str, bool]
    ) -> int:
        """
        Apply many selection flags in one transaction.

        Any failure rolls back every change and re-raises. Returns the
        number of sections updated.
        """
        if not self._ensure_ready():
            return 0

        updated = 0
        try:
            with self._transaction() as conn:
                for section_id, is_selected in selections.items():
                    cursor = conn.execute(
                        """UPDATE redaction_sections SET is_user_selected = ?
                           WHERE document_id = ? AND section_id = ?""",
                        (1 if is_selected else 0, document_id, section_id),
                    )
                    updated += cursor.rowcount
        except Exception as e:
            logger.error(f"Bulk selection update rolled back for {document_id}: {e}")
            raise

        logger.info(f"Bulk selection updated {updated} sections for {document_id}")
        return updated

    def mark_section_sensitive(
        self,
        document_id: str,
        section_id: str,
        pattern_names: list[str],
        confidence_score: Optional[float] = None,
    ) -> bool:
        """Record which redaction patterns matched a section."""
        if not self._ensure_ready():
            return False
        with self._transaction() as conn:
            if confidence_score is None:
                cursor = conn.execute(
                    """UPDATE redaction_sections
                       SET has_sensitive_content = ?, sensitive_patterns_found = ?
                       WHERE document_id = ? AND section_id = ?""",
                    (1 if pattern_names else 0, _dumps(list(pattern_names)),
                     document_id, section_id),
                )
            else:
                cursor = conn.execute(
                    """UPDATE redaction_sections
                       SET has_sensitive_content = ?, sensitive_patterns_found = ?,
                           confidence_score = ?
                       WHERE document_id = ? AND section_id = ?""",
                    (1 if pattern_names else 0, _dumps(list(pattern_names)),
                     confidence_score, document_id, section_id),
                )
            return cursor.rowcount > 0

    def _section_from_row(self, row: sqlite3.Row) -> Section:
        data = dict(row)
        data["sensitive_patterns_found"] = _loads(data.get("sensitive_patterns_found")) or []
        data["metadata"] = _loads(data.get("metadata")) or {}
        return Section.model_validate(data)

    # ─── Image Annotations ────────────────────────────────────────────────

    def create_image_annotation(self, annotation: ImageAnnotation) -> int:
        if not self._ensure_ready():
            return self._synthetic_id()

        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO image_annotations
                   (document_id, section_id, page_number, image_index,
                    width_px, height_px, width_cm, height_cm, width_inches, height_inches,
                    bbox_x1, bbox_y1, bbox_x2, bbox_y2,
                    caption_text, caption_position, caption_bbox,
                    format, color_space, dpi, is_inline, has_transparency,
                    ocr_text, ocr_confidence, ocr_language, ocr_detected_languages,
                    metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                           ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    annotation.document_id,
                    annotation.section_id,
                    annotation.page_number,
                    annotation.image_index,
                    annotation.width_px,
                    annotation.height_px,
                    annotation.width_cm,
                    annotation.height_cm,
                    annotation.width_inches,
                    annotation.height_inches,
                    annotation.bbox_x1,
                    annotation.bbox_y1,
                    annotation.bbox_x2,
                    annotation.bbox_y2,
                    annotation.caption_text,
                    annotation.caption_position.value if annotation.caption_position else None,
                    _dumps(list(annotation.caption_bbox)) if annotation.caption_bbox else None,
                    annotation.format,
                    annotation.color_space,
                    annotation.dpi,
                    1 if annotation.is_inline else 0,
                    1 if annotation.has_transparency else 0,
                    annotation.ocr_text,
                    annotation.ocr_confidence,
                    annotation.ocr_language,
                    _dumps([d.model_dump() for d in annotation.ocr_detected_languages])
                    if annotation.ocr_detected_languages else None,
                    _dumps(annotation.metadata),
                ),
            )
            return cursor.lastrowid

    def get_image_annotations(
        self, document_id: str, page_number: Optional[int] = None
    ) -> list[ImageAnnotation]:
        if not self._ensure_ready():
            return []
        if page_number is None:
            rows = self._query(
                """SELECT * FROM image_annotations WHERE document_id = ?
                   ORDER BY page_number, image_index""",
                (document_id,),
            )
        else:
            rows = self._query(
                """SELECT * FROM image_annotations
                   WHERE document_id = ? AND page_number = ?
                   ORDER BY image_index""",
                (document_id, page_number),
            )
        return [self._image_from_row(r) for r in rows]

    def _image_from_row(self, row: sqlite3.Row) -> ImageAnnotation:
        data = dict(row)
        data["caption_bbox"] = _loads(data.get("caption_bbox"))
        data["ocr_detected_languages"] = _loads(data.get("ocr_detected_languages")) or []
        data["metadata"] = _loads(data.get("metadata")) or {}
        return ImageAnnotation.model_validate(data)

    # ─── Text Annotations ─────────────────────────────────────────────────

    def create_text_annotation(self, annotation: TextAnnotation) -> int:
        if not self._ensure_ready():
            return self._synthetic_id()

        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO text_section_annotations
                   (document_id, section_id, page_number, section_index,
                    parent_section_id, section_level, section_title,
                    content_text, content_type, word_count, char_count,
                    bbox_x1, bbox_y1, bbox_x2, bbox_y2,
                    font_name, font_size, is_bold, is_italic, text_color,
                    contains_numbers, contains_urls, language, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                           ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    annotation.document_id,
                    annotation.section_id,
                    annotation.page_number,
                    annotation.section_index,
                    annotation.parent_section_id,
                    annotation.section_level,
                    annotation.section_title,
                    annotation.content_text,
                    annotation.content_type.value,
                    annotation.word_count,
                    annotation.char_count,
                    annotation.bbox_x1,
                    annotation.bbox_y1,
                    annotation.bbox_x2,
                    annotation.bbox_y2,
                    annotation.font_name,
                    annotation.font_size,
                    1 if annotation.is_bold else 0,
                    1 if annotation.is_italic else 0,
                    annotation.text_color,
                    1 if annotation.contains_numbers else 0,
                    1 if annotation.contains_urls else 0,
                    annotation.language,
                    _dumps(annotation.metadata),
                ),
            )
            return cursor.lastrowid

    def get_text_annotations(
        self, document_id: str, page_number: Optional[int] = None
    ) -> list[TextAnnotation]:
        if not self._ensure_ready():
            return []
        if page_number is None:
            rows = self._query(
                """SELECT * FROM text_section_annotations WHERE document_id = ?
                   ORDER BY page_number, section_index""",
                (document_id,),
            )
        else:
            rows = self._query(
                """SELECT * FROM text_section_annotations
                   WHERE document_id = ? AND page_number = ?
                   ORDER BY section_index""",
                (document_id, page_number),
            )
        return [self._text_from_row(r) for r in rows]

    def get_text_hierarchy(self, document_id: str, page_number: int) -> list[TextAnnotation]:
        """
        Sections of one page in breadth-first order: roots first, then each
        deeper level, ordered by section index within a level.
        """
        if not self._ensure_ready():
            return []
        rows = self._query(
            """WITH RECURSIVE section_tree AS (
                   SELECT *, 0 AS depth
                   FROM text_section_annotations
                   WHERE document_id = ? AND page_number = ?
                     AND parent_section_id IS NULL

                   UNION ALL

                   SELECT t.*, st.depth + 1
                   FROM text_section_annotations t
                   INNER JOIN section_tree st ON t.parent_section_id = st.section_id
                   WHERE t.document_id = ? AND t.page_number = ?
               )
               SELECT * FROM section_tree
               ORDER BY depth, section_index""",
            (document_id, page_number, document_id, page_number),
        )
        return [self._text_from_row(r) for r in rows]

    def _text_from_row(self, row: sqlite3.Row) -> TextAnnotation:
        data = dict(row)
        data.pop("depth", None)
        data["metadata"] = _loads(data.get("metadata")) or {}
        return TextAnnotation.model_validate(data)

    # ─── Patterns & Results ───────────────────────────────────────────────

    def get_redaction_patterns(self, active_only: bool = True) -> list[RedactionPattern]:
        if not self._ensure_ready():
            return []
        sql = "SELECT * FROM redaction_patterns"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY id"
        return [RedactionPattern.model_validate(dict(r)) for r in self._query(sql)]

    def create_redaction_result(self, result: RedactionResult) -> int:
        if not self._ensure_ready():
            return self._synthetic_id()
        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO redaction_results
                   (document_id, section_id, pattern_id, original_content,
                    redacted_content, confidence_score, bounding_box, page_number)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    result.document_id,
                    result.section_id,
                    result.pattern_id,
                    result.original_content,
                    result.redacted_content,
                    result.confidence_score,
                    _dumps(list(result.bounding_box)) if result.bounding_box else None,
                    result.page_number,
                ),
            )
            return cursor.lastrowid

    def get_redaction_results(self, document_id: str) -> list[RedactionResult]:
        if not self._ensure_ready():
            return []
        rows = self._query(
            "SELECT * FROM redaction_results WHERE document_id = ? ORDER BY id",
            (document_id,),
        )
        results = []
        for row in rows:
            data = dict(row)
            data["bounding_box"] = _loads(data.get("bounding_box"))
            results.append(RedactionResult.model_validate(data))
        return results

    # ─── User Preferences ─────────────────────────────────────────────────

    def get_user_preferences(self, device_id: str) -> list[UserRedactionPreference]:
        """Preferences for a device plus any device-independent defaults."""
        if not self._ensure_ready():
            return []
        rows = self._query(
            """SELECT * FROM user_redaction_preferences
               WHERE device_id = ? OR device_id IS NULL
               ORDER BY category ASC""",
            (device_id,),
        )
        return [UserRedactionPreference.model_validate(dict(r)) for r in rows]

    def set_user_preferences(
        self,
        device_id: str,
        preferences: list[Union[UserRedactionPreference, dict]],
    ) -> int:
        """Upsert per-category preferences for a device in one transaction."""
        if not self._ensure_ready():
            return 0

        with self._transaction() as conn:
            for pref in preferences:
                if isinstance(pref, dict):
                    pref = UserRedactionPreference.model_validate(pref)
                conn.execute(
                    """INSERT OR REPLACE INTO user_redaction_preferences
                       (device_id, category, auto_redact, require_confirmation, updated_at)
                       VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)""",
                    (
                        device_id,
                        PatternCategory(pref.category).value,
                        1 if pref.auto_redact else 0,
                        1 if pref.require_confirmation else 0,
                    ),
                )

        logger.info(f"Updated {len(preferences)} preferences for device {device_id}")
        return len(preferences)
