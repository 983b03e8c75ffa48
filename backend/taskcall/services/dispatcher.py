from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol, Set

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event
from taskcall.services.intent import normalize_phone
from taskcall.services.session_manager import CallSession, Lifecycle, SessionManager
from taskcall.services.storage import DataStore


class DispatchError(Exception):
    """Raised when the telephony provider rejects an outbound call."""


class TelephonyClient(Protocol):
    async def place_call(self, to_phone: str, *, batch_id: Optional[str] = None) -> Dict[str, Any]: ...


def new_batch_id() -> str:
    return f"BATCH_{int(time.time() * 1000)}"


class Dispatcher:
    """Starts outbound calls and registers their sessions.

    Bulk dispatch is fire-and-forget: each number runs in its own task,
    staggered by ``delay_seconds``; one number failing only marks its own
    tracking row.
    """

    def __init__(
        self,
        twilio: TelephonyClient,
        sessions: SessionManager,
        store: DataStore,
        *,
        delay_seconds: float | None = None,
    ) -> None:
        self._twilio = twilio
        self._sessions = sessions
        self._store = store
        self._delay = settings.BULK_CALL_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self._tasks: Set[asyncio.Task] = set()

    async def call_one(self, phone: str, batch_id: Optional[str] = None) -> CallSession:
        payload = await self._twilio.place_call(phone, batch_id=batch_id)
        call_sid = str(payload.get("sid") or "")
        if payload.get("status") == "failed" or not call_sid:
            raise DispatchError(str(payload.get("error") or "provider returned no call id"))
        # Registered before returning so the answer webhook always finds it;
        # if the webhook won the race, its session is taken over as-is.
        return self._sessions.adopt(call_sid, phone, batch_id)

    def call_bulk(self, phones: List[str], batch_id: str) -> int:
        """Schedule one call per usable number; returns the scheduled count."""
        numbers = [p for p in (normalize_phone(raw) for raw in phones) if p]
        self._store.add_bulk_rows(numbers, batch_id)
        for index, phone in enumerate(numbers):
            task = asyncio.create_task(self._call_scheduled(phone, batch_id, index * self._delay))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        log_event(
            "dispatcher",
            "bulk_scheduled",
            batch_id=batch_id,
            details={"total": len(numbers), "delay_seconds": self._delay},
        )
        return len(numbers)

    async def _call_scheduled(self, phone: str, batch_id: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            session = await self.call_one(phone, batch_id)
        except Exception as exc:
            log_event(
                "dispatcher",
                "call_failed",
                status="error",
                batch_id=batch_id,
                details={"phone": phone, "error": f"{type(exc).__name__}: {exc}"},
            )
            self._mark_row(phone, batch_id, "Failed")
            return
        if session.lifecycle is Lifecycle.CLOSED:
            # Answered and finished before the provider replied; completion owns the row.
            return
        self._mark_row(phone, batch_id, "Calling", session.call_sid)

    def _mark_row(self, phone: str, batch_id: str, status: str, call_sid: Optional[str] = None) -> None:
        try:
            self._store.update_bulk_row_by_phone(phone, batch_id, status, call_sid)
        except Exception as exc:
            log_event(
                "dispatcher",
                "bulk_row_update_failed",
                status="error",
                call_sid=call_sid,
                batch_id=batch_id,
                details={"phone": phone, "row_status": status, "error": f"{type(exc).__name__}: {exc}"},
            )

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def pending_rows(self) -> List[str]:
        return [row.phone for row in self._store.list_bulk_rows(batch_id="", status="Queued")]

    def preview(self, limit: int = 5) -> Dict[str, Any]:
        phones = self.pending_rows()
        return {"total": len(phones), "sample": phones[:limit]}

    def start_campaign(self) -> Dict[str, Any]:
        phones = self.pending_rows()
        if not phones:
            return {"batch_id": None, "total": 0}
        batch_id = new_batch_id()
        self._store.assign_batch(phones, batch_id)
        total = self.call_bulk(phones, batch_id)
        return {"batch_id": batch_id, "total": total}
