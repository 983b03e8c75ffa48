from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event
from taskcall.models.schemas import ActiveSessionView, DialogueState
from taskcall.services.intent import normalize_phone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionExistsError(Exception):
    """Raised when a provider call id is registered twice."""


class Lifecycle(str, Enum):
    ACTIVE = "active"
    TERMINAL_PENDING_LOG = "terminal_pending_log"
    CLOSED = "closed"


@dataclass
class CallSession:
    call_sid: str
    phone: str
    batch_id: Optional[str] = None
    state: DialogueState = DialogueState.INTRO
    unclear_count: int = 0
    confidence_score: int = 0
    agent_transcript: List[str] = field(default_factory=list)
    user_transcript: List[str] = field(default_factory=list)
    pending_utterance_buffer: List[str] = field(default_factory=list)
    conversation_trace: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    callback_requested_at: Optional[str] = None
    result: str = ""
    terminal_log_written: bool = False
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    last_partial_at: Optional[datetime] = None
    speech_language: Optional[str] = None

    @property
    def duration_seconds(self) -> int:
        if self.ended_at is None:
            return 0
        return max(0, int((self.ended_at - self.started_at).total_seconds()))

    def view(self) -> ActiveSessionView:
        return ActiveSessionView(
            call_sid=self.call_sid,
            phone=self.phone,
            batch_id=self.batch_id,
            state=self.state,
            unclear_count=self.unclear_count,
            confidence_score=self.confidence_score,
            started_at=self.started_at,
        )


class SessionManager:
    """Registry of in-flight call sessions keyed by provider call id.

    Reads and mutations of a single session go through ``locked()`` so turns,
    duplicate deliveries and status callbacks for the same call are applied
    one at a time. Different calls never wait on each other.
    """

    def __init__(self, closed_memory: int | None = None) -> None:
        self._sessions: Dict[str, CallSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Most recent closed sessions, oldest first.
        self._closed: "OrderedDict[str, CallSession]" = OrderedDict()
        self._closed_memory = max(1, closed_memory or settings.CLOSED_CALL_MEMORY)

    def create(self, call_sid: str, phone: str, batch_id: Optional[str] = None) -> CallSession:
        if not call_sid:
            raise ValueError("call_sid is required")
        if call_sid in self._sessions or call_sid in self._closed:
            raise SessionExistsError(f"session already exists for call {call_sid}")
        session = CallSession(
            call_sid=call_sid,
            phone=normalize_phone(phone),
            batch_id=batch_id or None,
        )
        self._sessions[call_sid] = session
        log_event(
            "sessions",
            "created",
            call_sid=call_sid,
            batch_id=session.batch_id,
            details={"phone": session.phone, "active_count": len(self._sessions)},
        )
        return session

    def adopt(self, call_sid: str, phone: str, batch_id: Optional[str] = None) -> CallSession:
        """Return the session already opened for this call, or register one.

        The answer webhook can arrive before the dispatcher hears back from
        the provider; in that case the dispatcher takes over the existing
        session instead of treating the call as a duplicate.
        """
        session = self._sessions.get(call_sid) or self._closed.get(call_sid)
        if session is None:
            return self.create(call_sid, phone, batch_id)
        if session.phone != normalize_phone(phone):
            raise SessionExistsError(f"call {call_sid} is registered for another number")
        if batch_id and not session.batch_id:
            session.batch_id = batch_id
        log_event(
            "sessions",
            "adopted",
            call_sid=call_sid,
            batch_id=session.batch_id,
            details={"lifecycle": session.lifecycle.value},
        )
        return session

    def get(self, call_sid: str) -> Optional[CallSession]:
        return self._sessions.get(call_sid)

    def delete(self, call_sid: str) -> None:
        self._sessions.pop(call_sid, None)
        lock = self._locks.get(call_sid)
        if lock is not None and not lock.locked():
            self._locks.pop(call_sid, None)

    def was_closed(self, call_sid: str) -> bool:
        return call_sid in self._closed

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def active(self) -> List[CallSession]:
        return list(self._sessions.values())

    @asynccontextmanager
    async def locked(self, call_sid: str) -> AsyncIterator[Optional[CallSession]]:
        """Serialize access to one session; yields None for unknown ids."""
        lock = self._locks.setdefault(call_sid, asyncio.Lock())
        async with lock:
            yield self._sessions.get(call_sid)
        if call_sid not in self._sessions and not lock.locked():
            self._locks.pop(call_sid, None)

    def claim_close(self, session: CallSession) -> bool:
        """Check-and-set the terminal log guard and evict the session.

        Contains no await, so it is atomic on the event loop: exactly one
        caller per call id ever gets True.
        """
        if session.terminal_log_written:
            return False
        session.terminal_log_written = True
        self._remember_closed(session)
        session.lifecycle = Lifecycle.CLOSED
        if session.ended_at is None:
            session.ended_at = _utcnow()
        if self._sessions.get(session.call_sid) is session:
            self._sessions.pop(session.call_sid, None)
        return True

    def _remember_closed(self, session: CallSession) -> None:
        self._closed[session.call_sid] = session
        self._closed.move_to_end(session.call_sid)
        while len(self._closed) > self._closed_memory:
            self._closed.popitem(last=False)
