from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event
from taskcall.models.schemas import DialogueState
from taskcall.services import twiml
from taskcall.services.completion import ABANDONED, CompletionLogger
from taskcall.services.dialogue import DialogueEngine, InvalidTransitionError
from taskcall.services.prompts import FALLBACK_STATE, audio_key, prompt_for
from taskcall.services.session_manager import CallSession, Lifecycle, SessionExistsError, SessionManager
from taskcall.services.stt import SpeechToTextClient
from taskcall.services.tts import PromptAudioCache


CALL_END_STATUSES = frozenset({"completed", "failed", "busy", "no-answer", "canceled"})


class CallOrchestrator:
    """Glue between the provider webhooks and the dialogue engine.

    Every handler returns TwiML and never raises: unknown or closed calls get
    a bare hangup, and internal failures degrade to the retry prompt.
    """

    def __init__(
        self,
        sessions: SessionManager,
        engine: DialogueEngine,
        completion: CompletionLogger,
        *,
        tts: Optional[PromptAudioCache] = None,
        stt: Optional[SpeechToTextClient] = None,
    ) -> None:
        self._sessions = sessions
        self._engine = engine
        self._completion = completion
        self._tts = tts
        self._stt = stt

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @staticmethod
    def public_base_url(request_base_url: str) -> str:
        host = (settings.TWILIO_WEBHOOK_HOST or "").strip()
        if host and "://" not in host:
            host = f"https://{host}"
        return (host or request_base_url).rstrip("/")

    def _audio(self, state: DialogueState, text: str) -> Optional[str]:
        if self._tts is None:
            return None
        return self._tts.audio_path(audio_key(state), text)

    def _listen(self, base_url: str, state: DialogueState, text: str) -> str:
        return twiml.play_and_listen(base_url, self._audio(state, text), text)

    def _stale(self, call_sid: str, hook: str) -> str:
        log_event("twilio", "stale_webhook", status="warning", call_sid=call_sid, details={"hook": hook})
        return twiml.hangup()

    async def handle_answer(
        self,
        call_sid: str,
        phone: str,
        base_url: str,
        *,
        batch_id: Optional[str] = None,
    ) -> str:
        async with self._sessions.locked(call_sid) as session:
            if session is None:
                try:
                    session = self._sessions.create(call_sid, phone, batch_id)
                except (SessionExistsError, ValueError):
                    return self._stale(call_sid, "answer")
            if session.lifecycle is not Lifecycle.ACTIVE:
                return self._stale(call_sid, "answer")
            outcome = self._engine.open(session)
            return self._listen(base_url, outcome.state, outcome.prompt_text)

    async def handle_turn(
        self,
        call_sid: str,
        speech: Optional[str],
        base_url: str,
        *,
        recording_url: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        async with self._sessions.locked(call_sid) as session:
            if session is None or session.lifecycle is not Lifecycle.ACTIVE:
                return self._stale(call_sid, "listen")

            text = (speech or "").strip()
            session.speech_language = language or settings.CALL_LANGUAGE
            if not text and recording_url and self._stt is not None:
                transcript = await self._stt.transcribe(recording_url, call_sid=call_sid)
                text = transcript.text
                session.speech_language = transcript.language

            try:
                outcome = await self._engine.take_turn(session, text)
            except InvalidTransitionError:
                return self._stale(call_sid, "listen")
            except Exception as exc:
                log_event(
                    "orchestrator",
                    "turn_failed",
                    status="error",
                    call_sid=call_sid,
                    batch_id=session.batch_id,
                    details={"error": f"{type(exc).__name__}: {exc}", "state": session.state.value},
                )
                fallback = prompt_for(FALLBACK_STATE)
                return self._listen(base_url, FALLBACK_STATE, fallback.text)

            if not outcome.hangup:
                return self._listen(base_url, outcome.state, outcome.prompt_text)

            await self._finish(session, outcome.state.value, source="turn")
            return twiml.play_and_hangup(
                base_url,
                self._audio(outcome.state, outcome.prompt_text),
                outcome.prompt_text,
            )

    async def _finish(self, session: CallSession, result: str, *, source: str) -> None:
        session.result = result
        session.ended_at = datetime.now(timezone.utc)
        session.lifecycle = Lifecycle.TERMINAL_PENDING_LOG
        await self._completion.complete(session, source=source)

    def handle_partial(self, call_sid: str) -> bool:
        """Note that interim speech arrived; the text itself is never used."""
        session = self._sessions.get(call_sid)
        if session is None:
            return False
        session.last_partial_at = datetime.now(timezone.utc)
        log_event("twilio", "partial_speech", call_sid=call_sid)
        return True

    async def handle_status(self, call_sid: str, call_status: str) -> bool:
        """Close the session on a provider end-of-call signal; True if this call logged it."""
        status = (call_status or "").strip().lower()
        log_event("twilio", "status_callback", call_sid=call_sid, details={"status": status})
        if status not in CALL_END_STATUSES:
            return False
        async with self._sessions.locked(call_sid) as session:
            if session is None or session.terminal_log_written:
                return False
            return await self._completion.complete(session, result=ABANDONED, source="status")

    async def preload_prompts(self) -> int:
        if self._tts is None or not self._tts.enabled:
            return 0
        prompts = [(audio_key(state), prompt_for(state).text) for state in DialogueState]
        return await self._tts.preload(prompts)
