"""SQLite backed durable history of speech-to-text requests."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import DurableRecord

SCHEMA_VERSION = 2
DEFAULT_LANGUAGE = "vi-VN"
STATUS_DELETED = "deleted"

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_COLUMNS = (
    "id",
    "user_id",
    "audio_url",
    "audio_format",
    "audio_duration_ms",
    "audio_size_bytes",
    "stt_provider",
    "language",
    "model_version",
    "title",
    "transcript",
    "confidence",
    "status",
    "error_message",
    "processing_time_ms",
    "metadata",
    "created_at",
)


class StorageError(RuntimeError):
    """Raised when something goes wrong while accessing the storage."""


class RecordNotFound(StorageError):
    """Raised when a durable record does not exist or was deleted."""


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if isinstance(value, str) else value


def like_pattern(query: str) -> str:
    """Build a case-folded ``LIKE`` pattern with wildcards escaped."""

    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped.casefold()}%"


def clamp_page(limit: Optional[int], offset: Optional[int]) -> tuple[int, int]:
    if limit is None or limit <= 0:
        limit = DEFAULT_PAGE_SIZE
    limit = min(limit, MAX_PAGE_SIZE)
    offset = max(offset or 0, 0)
    return limit, offset


class DurableStore:
    """Persist one row per recording in the ``stt_requests`` table."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._ensure_initialised()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stt_requests (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    audio_url TEXT NOT NULL,
                    audio_format TEXT,
                    audio_duration_ms INTEGER,
                    audio_size_bytes INTEGER,
                    stt_provider TEXT NOT NULL,
                    language TEXT DEFAULT 'vi-VN',
                    model_version TEXT,
                    title TEXT,
                    transcript TEXT,
                    confidence REAL,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    processing_time_ms INTEGER,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_stt_user_created ON stt_requests (user_id, created_at DESC)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_stt_status ON stt_requests (status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_stt_provider ON stt_requests (stt_provider)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_stt_title ON stt_requests (title) WHERE title IS NOT NULL"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "INSERT OR IGNORE INTO schema_info(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def create(
        self,
        user_id: str,
        audio_url: str,
        stt_provider: str,
        status: str,
        *,
        record_id: Optional[str] = None,
        audio_format: Optional[str] = None,
        audio_duration_ms: Optional[int] = None,
        audio_size_bytes: Optional[int] = None,
        language: str = DEFAULT_LANGUAGE,
        model_version: Optional[str] = None,
        title: Optional[str] = None,
        transcript: Optional[str] = None,
        confidence: Optional[float] = None,
        error_message: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> DurableRecord:
        record_id = record_id or str(uuid.uuid4())
        now = (created_at or datetime.now(timezone.utc)).isoformat()
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO stt_requests({', '.join(_COLUMNS)}) "
                    f"VALUES({', '.join('?' for _ in _COLUMNS)})",
                    (
                        record_id,
                        user_id,
                        audio_url,
                        audio_format,
                        audio_duration_ms,
                        audio_size_bytes,
                        stt_provider,
                        language,
                        model_version,
                        title,
                        transcript,
                        confidence,
                        status,
                        error_message,
                        processing_time_ms,
                        json.dumps(metadata or {}, ensure_ascii=False),
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"STT request {record_id} already exists") from exc
        return self.get(record_id)

    def update_result(
        self,
        record_id: str,
        *,
        transcript: Optional[str] = None,
        confidence: Optional[float] = None,
        status: Optional[str] = None,
        error_message: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
        audio_duration_ms: Optional[int] = None,
        audio_size_bytes: Optional[int] = None,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DurableRecord:
        """Merge new values into a row.

        ``None`` keeps the stored column, an empty title keeps the stored
        title, and ``metadata`` keys are merged over the stored object.
        """

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT metadata FROM stt_requests WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                raise RecordNotFound(f"STT request {record_id} not found")
            merged: Optional[str] = None
            if metadata:
                existing = json.loads(row["metadata"] or "{}")
                existing.update(metadata)
                merged = json.dumps(existing, ensure_ascii=False)
            conn.execute(
                """
                UPDATE stt_requests
                SET transcript = COALESCE(?, transcript),
                    confidence = COALESCE(?, confidence),
                    status = COALESCE(?, status),
                    error_message = COALESCE(?, error_message),
                    processing_time_ms = COALESCE(?, processing_time_ms),
                    audio_duration_ms = COALESCE(?, audio_duration_ms),
                    audio_size_bytes = COALESCE(?, audio_size_bytes),
                    title = COALESCE(NULLIF(?, ''), title),
                    metadata = COALESCE(?, metadata)
                WHERE id = ?
                """,
                (
                    transcript,
                    confidence,
                    status,
                    error_message,
                    processing_time_ms,
                    audio_duration_ms,
                    audio_size_bytes,
                    title,
                    merged,
                    record_id,
                ),
            )
        return self.get(record_id, include_deleted=True)

    def get(self, record_id: str, include_deleted: bool = False) -> DurableRecord:
        query = "SELECT * FROM stt_requests WHERE id = ?"
        if not include_deleted:
            query += " AND status != 'deleted'"
        with self._connect() as conn:
            row = conn.execute(query, (record_id,)).fetchone()
        if row is None:
            raise RecordNotFound(f"STT request {record_id} not found")
        return _row_to_record(row)

    def list_by_user(
        self, user_id: str, limit: Optional[int] = None, offset: Optional[int] = None
    ) -> List[DurableRecord]:
        limit, offset = clamp_page(limit, offset)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM stt_requests
                WHERE user_id = ? AND status != 'deleted'
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def search(
        self,
        user_id: str,
        query: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[DurableRecord]:
        """Match the title, analysis summary or action items, ignoring case."""

        limit, offset = clamp_page(limit, offset)
        pattern = like_pattern(query)
        with self._connect() as conn:
            rows = conn.execute(
                r"""
                SELECT * FROM stt_requests
                WHERE user_id = :user_id
                  AND status != 'deleted'
                  AND (
                    casefold(title) LIKE :pattern ESCAPE '\'
                    OR EXISTS (
                        SELECT 1 FROM json_each(stt_requests.metadata, '$.ai_analysis.summary')
                        WHERE casefold(value) LIKE :pattern ESCAPE '\'
                    )
                    OR EXISTS (
                        SELECT 1 FROM json_each(stt_requests.metadata, '$.ai_analysis.action_items')
                        WHERE casefold(value) LIKE :pattern ESCAPE '\'
                    )
                  )
                ORDER BY created_at DESC
                LIMIT :limit OFFSET :offset
                """,
                {"user_id": user_id, "pattern": pattern, "limit": limit, "offset": offset},
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def update_title(self, record_id: str, title: str) -> DurableRecord:
        with self._connect() as conn:
            updated = conn.execute(
                "UPDATE stt_requests SET title = ? WHERE id = ? AND status != 'deleted'",
                (title, record_id),
            ).rowcount
        if updated == 0:
            raise RecordNotFound(f"STT request {record_id} not found or already deleted")
        return self.get(record_id)

    def delete(self, record_id: str) -> None:
        """Soft delete: the row stays but disappears from every read."""

        with self._connect() as conn:
            updated = conn.execute(
                "UPDATE stt_requests SET status = ? WHERE id = ? AND status != 'deleted'",
                (STATUS_DELETED, record_id),
            ).rowcount
        if updated == 0:
            raise RecordNotFound(f"STT request {record_id} not found or already deleted")


def _row_to_record(row: sqlite3.Row) -> DurableRecord:
    return DurableRecord(
        id=row["id"],
        user_id=row["user_id"],
        audio_url=row["audio_url"],
        stt_provider=row["stt_provider"],
        status=row["status"],
        created_at=datetime.fromisoformat(row["created_at"]),
        audio_format=row["audio_format"],
        audio_duration_ms=row["audio_duration_ms"],
        audio_size_bytes=row["audio_size_bytes"],
        language=row["language"],
        model_version=row["model_version"],
        title=row["title"],
        transcript=row["transcript"],
        confidence=row["confidence"],
        error_message=row["error_message"],
        processing_time_ms=row["processing_time_ms"],
        metadata=json.loads(row["metadata"] or "{}"),
    )
