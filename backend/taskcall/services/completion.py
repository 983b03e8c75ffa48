from __future__ import annotations

import asyncio
from typing import Optional

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event
from taskcall.models.schemas import CallLogRecord
from taskcall.services.session_manager import CallSession, SessionManager
from taskcall.services.storage import CallLogWriteError, DataStore


ABANDONED = "abandoned"


class CompletionLogger:
    """Writes the single terminal row for a call session.

    Both the turn path and the provider status path funnel through
    ``complete``; whichever claims the session first writes, the other is a
    no-op. A sink that keeps failing gets the row in the dead-letter file and
    an error event instead of a silent drop.
    """

    def __init__(
        self,
        sessions: SessionManager,
        store: DataStore,
        *,
        attempts: int | None = None,
        retry_delay_seconds: float | None = None,
    ) -> None:
        self._sessions = sessions
        self._store = store
        self._attempts = max(1, attempts or settings.CALL_LOG_WRITE_ATTEMPTS)
        self._retry_delay = (
            settings.CALL_LOG_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        )

    @staticmethod
    def build_record(session: CallSession) -> CallLogRecord:
        return CallLogRecord(
            started_at=session.started_at,
            ended_at=session.ended_at or session.started_at,
            call_sid=session.call_sid,
            phone=session.phone,
            agent_transcript=list(session.agent_transcript),
            user_transcript=list(session.user_transcript),
            result=session.result or ABANDONED,
            duration_seconds=session.duration_seconds,
            confidence_score=session.confidence_score,
            callback_time=session.callback_requested_at,
            conversation_trace=list(session.conversation_trace),
            batch_id=session.batch_id,
        )

    async def complete(self, session: CallSession, *, result: Optional[str] = None, source: str = "turn") -> bool:
        """Close and log ``session``; returns False if it was already closed."""
        if result and not session.result:
            session.result = result
        if not self._sessions.claim_close(session):
            log_event(
                "completion",
                "already_logged",
                call_sid=session.call_sid,
                batch_id=session.batch_id,
                details={"source": source},
            )
            return False

        record = self.build_record(session)
        written = await self._write_with_retry(record)
        if session.batch_id:
            self._mark_bulk_completed(session)
        log_event(
            "completion",
            "logged" if written else "log_failed",
            status="ok" if written else "error",
            call_sid=session.call_sid,
            batch_id=session.batch_id,
            details={
                "source": source,
                "result": record.result,
                "duration_seconds": record.duration_seconds,
            },
        )
        return True

    def _mark_bulk_completed(self, session: CallSession) -> None:
        try:
            self._store.update_bulk_row_by_phone(session.phone, session.batch_id or "", "Completed", session.call_sid)
        except Exception as exc:
            log_event(
                "completion",
                "bulk_update_failed",
                status="error",
                call_sid=session.call_sid,
                batch_id=session.batch_id,
                details={"phone": session.phone, "error": f"{type(exc).__name__}: {exc}"},
            )

    async def _write_with_retry(self, record: CallLogRecord) -> bool:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._attempts + 1):
            try:
                self._store.write_call_log(record)
                return True
            except CallLogWriteError as exc:
                last_error = exc
                log_event(
                    "call_log",
                    "write_retry",
                    status="warning",
                    call_sid=record.call_sid,
                    details={"attempt": attempt, "error": str(exc)},
                )
                if attempt < self._attempts and self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay)

        details = {"error": str(last_error), "record": record.model_dump(mode="json")}
        try:
            details["dead_letter"] = str(self._store.append_dead_letter(record))
        except OSError as exc:
            details["dead_letter_error"] = f"{type(exc).__name__}: {exc}"
        log_event(
            "call_log",
            "write_dropped",
            status="error",
            call_sid=record.call_sid,
            batch_id=record.batch_id,
            details=details,
        )
        return False
