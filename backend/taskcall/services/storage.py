from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from zoneinfo import ZoneInfo

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event, timed_step
from taskcall.models.schemas import BulkRow, CallLogRecord
from taskcall.services.call_log_supabase import SupabaseCallLogSync
from taskcall.services.intent import normalize_phone


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CallLogWriteError(Exception):
    """Raised when the call log sink rejects a row."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS call_logs (
    call_sid TEXT PRIMARY KEY,
    batch_id TEXT,
    phone TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT NOT NULL,
    agent_transcript TEXT NOT NULL,
    user_transcript TEXT NOT NULL,
    result TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL DEFAULT 0,
    confidence_score INTEGER NOT NULL DEFAULT 0,
    callback_time TEXT,
    conversation_trace TEXT
);
CREATE TABLE IF NOT EXISTS bulk_calls (
    phone TEXT NOT NULL,
    batch_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'Queued',
    call_sid TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (phone, batch_id)
);
CREATE INDEX IF NOT EXISTS idx_bulk_calls_call_sid ON bulk_calls (call_sid);
"""


class DataStore:
    """SQLite-backed call log and bulk-call tracking table.

    Every write opens its own connection under a process-wide lock, so
    concurrent bulk updates touch only the single row they located.
    """

    def __init__(
        self,
        sqlite_path: Path | str | None = None,
        *,
        mirror: Optional[SupabaseCallLogSync] = None,
        timezone_name: str | None = None,
    ) -> None:
        self._path = Path(sqlite_path) if sqlite_path is not None else settings.SQLITE_PATH
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._tz = ZoneInfo(timezone_name or settings.CALL_LOG_TIMEZONE)
        self._mirror = mirror
        if self._mirror is None and settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY:
            self._mirror = SupabaseCallLogSync(
                base_url=settings.SUPABASE_URL,
                service_key=settings.SUPABASE_SERVICE_ROLE_KEY,
                table=settings.SUPABASE_CALL_LOGS_TABLE,
            )
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """One locked connection, committed on success and always closed."""
        with self._lock, closing(self._connect()) as conn, conn:
            yield conn

    def _local_time(self, value: datetime) -> str:
        return value.astimezone(self._tz).isoformat(timespec="seconds")

    # ── Call log ────────────────────────────────────────────────────────────

    def _call_log_row(self, record: CallLogRecord) -> Dict[str, Any]:
        return {
            "call_sid": record.call_sid,
            "batch_id": record.batch_id,
            "phone": record.phone,
            "started_at": self._local_time(record.started_at),
            "ended_at": self._local_time(record.ended_at),
            "agent_transcript": " | ".join(record.agent_transcript),
            "user_transcript": " | ".join(record.user_transcript),
            "result": record.result,
            "duration_seconds": record.duration_seconds,
            "confidence_score": record.confidence_score,
            "callback_time": record.callback_time,
            "conversation_trace": "\n".join(record.conversation_trace),
        }

    def write_call_log(self, record: CallLogRecord) -> bool:
        """Insert one row per call id; returns False when the id was already logged."""
        row = self._call_log_row(record)
        columns = ", ".join(row)
        placeholders = ", ".join(f":{name}" for name in row)
        with timed_step("storage", "write_call_log", call_sid=record.call_sid, batch_id=record.batch_id):
            try:
                with self._transaction() as conn:
                    cursor = conn.execute(
                        f"INSERT OR IGNORE INTO call_logs ({columns}) VALUES ({placeholders})",
                        row,
                    )
                    inserted = cursor.rowcount == 1
            except sqlite3.Error as exc:
                raise CallLogWriteError(str(exc)) from exc

        if inserted and self._mirror is not None:
            self._mirror.upsert(row)
        return inserted

    def list_call_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM call_logs ORDER BY ended_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(row) for row in rows]

    def count_call_logs(self, call_sid: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM call_logs"
        params: tuple = ()
        if call_sid is not None:
            query += " WHERE call_sid = ?"
            params = (call_sid,)
        with self._transaction() as conn:
            return int(conn.execute(query, params).fetchone()[0])

    # ── Bulk call tracking ──────────────────────────────────────────────────

    def add_bulk_rows(self, phones: List[str], batch_id: str = "") -> int:
        now = _utcnow_iso()
        added = 0
        with timed_step("storage", "add_bulk_rows", batch_id=batch_id or None, details={"count": len(phones)}):
            with self._transaction() as conn:
                for phone in phones:
                    normalized = normalize_phone(phone)
                    if not normalized:
                        continue
                    cursor = conn.execute(
                        "INSERT OR IGNORE INTO bulk_calls (phone, batch_id, status, call_sid, updated_at) "
                        "VALUES (?, ?, 'Queued', '', ?)",
                        (normalized, batch_id, now),
                    )
                    added += cursor.rowcount
        return added

    def list_bulk_rows(self, *, batch_id: str | None = None, status: str | None = None) -> List[BulkRow]:
        clauses = []
        params: List[str] = []
        if batch_id is not None:
            clauses.append("batch_id = ?")
            params.append(batch_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT phone, batch_id, status, call_sid FROM bulk_calls{where} ORDER BY rowid",
                params,
            ).fetchall()
        return [BulkRow(**dict(row)) for row in rows]

    def get_bulk_row(self, phone: str, batch_id: str) -> Optional[BulkRow]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT phone, batch_id, status, call_sid FROM bulk_calls WHERE phone = ? AND batch_id = ?",
                (normalize_phone(phone), batch_id),
            ).fetchone()
        return BulkRow(**dict(row)) if row is not None else None

    def assign_batch(self, phones: List[str], batch_id: str) -> int:
        """Move unbatched rows for these numbers into ``batch_id``."""
        now = _utcnow_iso()
        moved = 0
        with self._transaction() as conn:
            for phone in phones:
                cursor = conn.execute(
                    "UPDATE OR IGNORE bulk_calls SET batch_id = ?, updated_at = ? WHERE phone = ? AND batch_id = ''",
                    (batch_id, now, normalize_phone(phone)),
                )
                moved += cursor.rowcount
        return moved

    def update_bulk_row_by_phone(
        self,
        phone: str,
        batch_id: str,
        status: str,
        call_sid: str | None = None,
    ) -> bool:
        """Update the single row keyed by (phone, batch); inserts it when missing."""
        normalized = normalize_phone(phone)
        now = _utcnow_iso()
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT call_sid FROM bulk_calls WHERE phone = ? AND batch_id = ?",
                (normalized, batch_id),
            ).fetchone()
            if existing is None:
                conn.execute(
                    "INSERT INTO bulk_calls (phone, batch_id, status, call_sid, updated_at) VALUES (?, ?, ?, ?, ?)",
                    (normalized, batch_id, status, call_sid or "", now),
                )
            else:
                conn.execute(
                    "UPDATE bulk_calls SET status = ?, call_sid = ?, updated_at = ? WHERE phone = ? AND batch_id = ?",
                    (status, call_sid if call_sid is not None else existing["call_sid"], now, normalized, batch_id),
                )
        log_event(
            "storage",
            "bulk_row_updated",
            call_sid=call_sid,
            batch_id=batch_id,
            details={"phone": normalized, "status": status},
        )
        return True

    def update_bulk_by_call_sid(self, call_sid: str, status: str) -> bool:
        if not call_sid:
            return False
        now = _utcnow_iso()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT phone, batch_id FROM bulk_calls WHERE call_sid = ? LIMIT 1", (call_sid,)
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE bulk_calls SET status = ?, updated_at = ? WHERE phone = ? AND batch_id = ?",
                (status, now, row["phone"], row["batch_id"]),
            )
        log_event("storage", "bulk_row_updated", call_sid=call_sid, details={"status": status})
        return True

    @property
    def dead_letter_path(self) -> Path:
        return self._path.parent / "call_log_deadletter.jsonl"

    def append_dead_letter(self, record: CallLogRecord) -> Path:
        target = self.dead_letter_path
        target.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, target.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n")
        return target
