"""Turn-by-turn dialogue state machine.

``decide`` is the pure transition function: (state, counters, utterance,
optional advisory label) -> ``Decision``. ``DialogueEngine.take_turn`` wraps
it with the one impure step (asking the advisory classifier when keyword
confidence is low) and applies the decision to a ``CallSession``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Protocol

from taskcall.core.telemetry import log_event
from taskcall.models.schemas import DialogueState
from taskcall.services import escalation
from taskcall.services.intent import classify, is_busy_intent, is_degenerate, normalize_utterance
from taskcall.services.prompts import is_terminal, prompt_for
from taskcall.services.session_manager import CallSession


S = DialogueState

_LADDER: FrozenSet[DialogueState] = frozenset(escalation.LADDER)
_COMMIT: FrozenSet[DialogueState] = frozenset({S.TASK_DONE, S.TASK_PENDING})

TRANSITIONS: Dict[DialogueState, FrozenSet[DialogueState]] = {
    S.INTRO: frozenset({S.TASK_CHECK, S.CALLBACK_TIME}) | _LADDER,
    S.TASK_CHECK: _COMMIT | _LADDER,
    S.RETRY_TASK_CHECK: _COMMIT | _LADDER,
    S.CONFIRM_TASK: _COMMIT | _LADDER,
    S.TASK_PENDING: frozenset({S.PROBLEM_RECORDED}) | _LADDER,
    S.CALLBACK_TIME: frozenset({S.CALLBACK_CONFIRM}) | _LADDER,
    # Only walked when CALLBACK_CONFIRM is configured as non-terminal: the
    # caller's acknowledgement closes the call in place.
    S.CALLBACK_CONFIRM: frozenset({S.CALLBACK_CONFIRM}) | _LADDER,
    S.TASK_DONE: frozenset(),
    S.PROBLEM_RECORDED: frozenset(),
    S.ESCALATE: frozenset(),
}

_CLASSIFYING_STATES = frozenset({S.TASK_CHECK, S.RETRY_TASK_CHECK, S.CONFIRM_TASK})


class IntentAdvisorProtocol(Protocol):
    async def classify(self, text: str) -> Optional[str]: ...


class InvalidTransitionError(Exception):
    pass


@dataclass(frozen=True)
class Decision:
    next_state: DialogueState
    unclear_count: int
    reason: str
    confidence: Optional[int] = None
    callback_time: Optional[str] = None
    commit_user_text: bool = True
    end_in_place: bool = False


@dataclass(frozen=True)
class TurnOutcome:
    state: DialogueState
    prompt_text: str
    hangup: bool
    reason: str


def needs_advice(state: DialogueState, normalized: str, *, floor: Optional[int] = None) -> bool:
    """True when the advisory classifier should be consulted for this turn."""
    if state not in _CLASSIFYING_STATES or is_degenerate(normalized):
        return False
    return escalation.should_confirm(classify(normalized).confidence, floor=floor)


def _on_ladder(unclear_count: int, reason: str, **extra) -> Decision:
    count = unclear_count + 1
    return Decision(
        next_state=escalation.next_on_unclear(count),
        unclear_count=count,
        reason=reason,
        **extra,
    )


def decide(
    state: DialogueState,
    unclear_count: int,
    raw_utterance: str,
    *,
    advisory_label: Optional[str] = None,
    floor: Optional[int] = None,
) -> Decision:
    normalized = normalize_utterance(raw_utterance)

    if state is S.INTRO and is_busy_intent(normalized):
        return Decision(next_state=S.CALLBACK_TIME, unclear_count=0, reason="busy")

    if is_degenerate(normalized):
        return _on_ladder(unclear_count, "degenerate_input", commit_user_text=False)

    if state is S.INTRO:
        return Decision(next_state=S.TASK_CHECK, unclear_count=unclear_count, reason="consent")

    if state is S.CALLBACK_TIME:
        return Decision(
            next_state=S.CALLBACK_CONFIRM,
            unclear_count=unclear_count,
            reason="callback_time_recorded",
            callback_time=(raw_utterance or "").strip(),
        )

    if state is S.TASK_PENDING:
        return Decision(next_state=S.PROBLEM_RECORDED, unclear_count=unclear_count, reason="problem_described")

    if state is S.CALLBACK_CONFIRM:
        return Decision(
            next_state=S.CALLBACK_CONFIRM,
            unclear_count=unclear_count,
            reason="callback_acknowledged",
            end_in_place=True,
        )

    keyword = classify(normalized)
    candidate: Optional[str] = keyword.label if keyword.label != "UNCLEAR" else None
    low_confidence = escalation.should_confirm(keyword.confidence, floor=floor)
    if candidate is None and advisory_label in ("DONE", "PENDING"):
        candidate = advisory_label

    if candidate is not None and (not low_confidence or state is S.CONFIRM_TASK):
        next_state = S.TASK_DONE if candidate == "DONE" else S.TASK_PENDING
        return Decision(
            next_state=next_state,
            unclear_count=unclear_count,
            reason="advisory_confirmed" if low_confidence else "keyword_match",
            confidence=keyword.confidence,
        )

    decision = _on_ladder(unclear_count, "unclear", confidence=keyword.confidence)
    if candidate is not None and decision.next_state is S.RETRY_TASK_CHECK:
        # A weak but non-empty signal is confirmed rather than asked again.
        return Decision(
            next_state=S.CONFIRM_TASK,
            unclear_count=decision.unclear_count,
            reason="low_confidence_confirm",
            confidence=keyword.confidence,
        )
    return decision


class DialogueEngine:
    def __init__(
        self,
        advisor: Optional[IntentAdvisorProtocol] = None,
        *,
        min_confidence: Optional[int] = None,
    ) -> None:
        self._advisor = advisor
        self._floor = min_confidence

    async def _advise(self, session: CallSession, normalized: str) -> Optional[str]:
        if self._advisor is None:
            return None
        try:
            return await self._advisor.classify(normalized)
        except Exception as exc:
            log_event(
                "dialogue",
                "advisory_failed",
                status="warning",
                call_sid=session.call_sid,
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            return None

    def open(self, session: CallSession) -> TurnOutcome:
        """Entry prompt; replays without re-logging on duplicate deliveries."""
        prompt = prompt_for(session.state)
        if not session.agent_transcript:
            session.agent_transcript.append(prompt.text)
            session.conversation_trace.append(f"AI: {prompt.text}")
        return TurnOutcome(state=session.state, prompt_text=prompt.text, hangup=False, reason="entry")

    async def take_turn(self, session: CallSession, raw_utterance: str) -> TurnOutcome:
        current = session.state
        if is_terminal(current) or current not in TRANSITIONS:
            raise InvalidTransitionError(f"call {session.call_sid} is already in terminal state {current.value}")

        normalized = normalize_utterance(raw_utterance)
        advisory_label = None
        if needs_advice(current, normalized, floor=self._floor):
            advisory_label = await self._advise(session, normalized)

        decision = decide(
            current,
            session.unclear_count,
            raw_utterance,
            advisory_label=advisory_label,
            floor=self._floor,
        )
        if decision.next_state not in TRANSITIONS[current]:
            raise InvalidTransitionError(f"{current.value} -> {decision.next_state.value} is not allowed")

        self._apply(session, decision, normalized)

        hangup = decision.end_in_place or is_terminal(decision.next_state)
        prompt = prompt_for(decision.next_state)
        log_event(
            "dialogue",
            "turn",
            call_sid=session.call_sid,
            batch_id=session.batch_id,
            details={
                "from": current.value,
                "to": decision.next_state.value,
                "reason": decision.reason,
                "unclear_count": session.unclear_count,
                "confidence": session.confidence_score,
                "advisory": advisory_label,
                "hangup": hangup,
            },
        )
        return TurnOutcome(
            state=decision.next_state,
            prompt_text=prompt.text,
            hangup=hangup,
            reason=decision.reason,
        )

    def _apply(self, session: CallSession, decision: Decision, normalized: str) -> None:
        session.unclear_count = decision.unclear_count
        if decision.confidence is not None:
            session.confidence_score = decision.confidence
        if decision.callback_time is not None:
            session.callback_requested_at = decision.callback_time

        if decision.commit_user_text and normalized:
            session.conversation_trace.append(f"User: {normalized}")
            session.pending_utterance_buffer.append(normalized)
        self._flush_user_buffer(session)

        prompt = prompt_for(decision.next_state)
        session.agent_transcript.append(prompt.text)
        session.conversation_trace.append(f"AI: {prompt.text}")
        session.state = decision.next_state

    @staticmethod
    def _flush_user_buffer(session: CallSession) -> None:
        if not session.pending_utterance_buffer:
            return
        combined = " ".join(part for part in session.pending_utterance_buffer if part)
        session.pending_utterance_buffer.clear()
        last = session.user_transcript[-1] if session.user_transcript else None
        if combined and combined != last:
            session.user_transcript.append(combined)
