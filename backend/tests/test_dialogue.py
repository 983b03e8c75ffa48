from __future__ import annotations

import asyncio

import pytest

from taskcall.core.config import settings
from taskcall.models.schemas import DialogueState
from taskcall.services.dialogue import DialogueEngine, InvalidTransitionError, TRANSITIONS, decide
from taskcall.services.prompts import is_terminal, prompt_for
from taskcall.services.session_manager import CallSession
from tests.fakes.fake_clients import FakeAdvisor


S = DialogueState

DONE_TEXT = "મારું કામ થઈ ગયું"
PENDING_TEXT = "કામ હજુ બાકી છે"
BOTH_TEXT = "થઈ ગયું પણ હજુ બાકી છે"
NEITHER_TEXT = "હા બોલો"
BUSY_TEXT = "હમણાં સમય નથી, પછી વાત કરીએ"


def _session(state: DialogueState = S.INTRO, unclear_count: int = 0) -> CallSession:
    return CallSession(call_sid="CA_test", phone="9876543210", state=state, unclear_count=unclear_count)


def test_intro_ignores_content_and_moves_to_task_check() -> None:
    for text in ("કામ પૂર્ણ નથી", DONE_TEXT, NEITHER_TEXT):
        decision = decide(S.INTRO, 0, text)
        assert decision.next_state is S.TASK_CHECK
        assert decision.unclear_count == 0


def test_busy_beats_everything_in_intro() -> None:
    decision = decide(S.INTRO, 2, BUSY_TEXT + " " + DONE_TEXT)

    assert decision.next_state is S.CALLBACK_TIME
    assert decision.unclear_count == 0
    assert decision.reason == "busy"


def test_busy_only_applies_in_intro() -> None:
    decision = decide(S.TASK_CHECK, 0, "later, busy")
    assert decision.next_state is S.RETRY_TASK_CHECK


def test_keyword_matches_commit_from_task_check() -> None:
    assert decide(S.TASK_CHECK, 0, DONE_TEXT).next_state is S.TASK_DONE
    assert decide(S.TASK_CHECK, 0, PENDING_TEXT).next_state is S.TASK_PENDING
    assert decide(S.RETRY_TASK_CHECK, 1, DONE_TEXT).confidence == 90


def test_both_keywords_is_unclear() -> None:
    decision = decide(S.TASK_CHECK, 0, BOTH_TEXT)

    assert decision.next_state is S.RETRY_TASK_CHECK
    assert decision.unclear_count == 1
    assert decision.confidence == 40


def test_degenerate_input_goes_on_ladder_without_text() -> None:
    decision = decide(S.TASK_CHECK, 1, "ok")

    assert decision.next_state is S.CONFIRM_TASK
    assert decision.unclear_count == 2
    assert decision.commit_user_text is False


def test_low_confidence_match_passes_through_confirm() -> None:
    decision = decide(S.TASK_CHECK, 0, DONE_TEXT, floor=95)

    assert decision.next_state is S.CONFIRM_TASK
    assert decision.unclear_count == 1
    assert decide(S.CONFIRM_TASK, 1, DONE_TEXT, floor=95).next_state is S.TASK_DONE


def test_advisory_label_promotes_unclear_to_confirm() -> None:
    from_check = decide(S.TASK_CHECK, 0, NEITHER_TEXT, advisory_label="PENDING")
    assert from_check.next_state is S.CONFIRM_TASK

    from_confirm = decide(S.CONFIRM_TASK, 1, NEITHER_TEXT, advisory_label="PENDING")
    assert from_confirm.next_state is S.TASK_PENDING
    assert from_confirm.reason == "advisory_confirmed"


def test_advisory_busy_and_unknown_are_ignored() -> None:
    assert decide(S.TASK_CHECK, 0, NEITHER_TEXT, advisory_label="BUSY").next_state is S.RETRY_TASK_CHECK
    assert decide(S.CONFIRM_TASK, 2, NEITHER_TEXT, advisory_label="UNKNOWN").next_state is S.ESCALATE


def test_callback_and_pending_branches() -> None:
    callback = decide(S.CALLBACK_TIME, 0, "  કાલે સાંજે પાંચ વાગ્યે ")
    assert callback.next_state is S.CALLBACK_CONFIRM
    assert callback.callback_time == "કાલે સાંજે પાંચ વાગ્યે"

    problem = decide(S.TASK_PENDING, 0, "ફોર્મ હજુ અટકેલું છે")
    assert problem.next_state is S.PROBLEM_RECORDED


def test_every_decision_follows_a_declared_edge() -> None:
    texts = ("", "ok", DONE_TEXT, PENDING_TEXT, BOTH_TEXT, NEITHER_TEXT, BUSY_TEXT)
    for state, allowed in TRANSITIONS.items():
        if not allowed:
            continue
        for count in range(0, 3):
            for text in texts:
                assert decide(state, count, text).next_state in allowed


def test_three_unclear_turns_escalate() -> None:
    async def _test() -> None:
        engine = DialogueEngine()
        session = _session(S.TASK_CHECK)
        outcomes = [await engine.take_turn(session, BOTH_TEXT) for _ in range(3)]

        assert [o.state for o in outcomes] == [S.RETRY_TASK_CHECK, S.CONFIRM_TASK, S.ESCALATE]
        assert [o.hangup for o in outcomes] == [False, False, True]
        assert session.unclear_count == 3
        assert session.state is S.ESCALATE

    asyncio.run(_test())


def test_take_turn_records_transcripts_and_trace() -> None:
    async def _test() -> None:
        engine = DialogueEngine()
        session = _session()
        engine.open(session)
        await engine.take_turn(session, "Umm હા બોલો")
        await engine.take_turn(session, DONE_TEXT)

        assert session.agent_transcript == [
            prompt_for(S.INTRO).text,
            prompt_for(S.TASK_CHECK).text,
            prompt_for(S.TASK_DONE).text,
        ]
        assert session.user_transcript == ["હા બોલો", DONE_TEXT]
        assert session.conversation_trace[0].startswith("AI: ")
        assert session.conversation_trace[1] == "User: હા બોલો"
        assert session.pending_utterance_buffer == []
        assert session.confidence_score == 90

    asyncio.run(_test())


def test_open_is_replay_safe() -> None:
    engine = DialogueEngine()
    session = _session()
    engine.open(session)
    engine.open(session)
    assert len(session.agent_transcript) == 1


def test_duplicate_utterance_is_not_committed_twice() -> None:
    async def _test() -> None:
        engine = DialogueEngine()
        session = _session(S.TASK_CHECK)
        await engine.take_turn(session, BOTH_TEXT)
        await engine.take_turn(session, BOTH_TEXT)

        assert session.user_transcript == [BOTH_TEXT]
        assert session.unclear_count == 2

    asyncio.run(_test())


def test_degenerate_turn_does_not_touch_user_transcript() -> None:
    async def _test() -> None:
        engine = DialogueEngine()
        session = _session(S.TASK_CHECK)
        await engine.take_turn(session, "")

        assert session.user_transcript == []
        assert session.state is S.RETRY_TASK_CHECK

    asyncio.run(_test())


def test_advisor_consulted_only_when_keywords_are_weak() -> None:
    async def _test() -> None:
        advisor = FakeAdvisor(label="DONE")
        engine = DialogueEngine(advisor)

        session = _session(S.TASK_CHECK)
        await engine.take_turn(session, DONE_TEXT)
        assert advisor.calls == []

        session = _session(S.CONFIRM_TASK, unclear_count=1)
        outcome = await engine.take_turn(session, NEITHER_TEXT)
        assert advisor.calls == [NEITHER_TEXT]
        assert outcome.state is S.TASK_DONE

    asyncio.run(_test())


def test_advisor_failure_falls_back_to_keywords() -> None:
    async def _test() -> None:
        engine = DialogueEngine(FakeAdvisor(error=TimeoutError("slow model")))
        session = _session(S.TASK_CHECK)
        outcome = await engine.take_turn(session, NEITHER_TEXT)

        assert outcome.state is S.RETRY_TASK_CHECK
        assert not outcome.hangup

    asyncio.run(_test())


def test_terminal_session_rejects_turns() -> None:
    async def _test() -> None:
        engine = DialogueEngine()
        with pytest.raises(InvalidTransitionError):
            await engine.take_turn(_session(S.TASK_DONE), DONE_TEXT)

    asyncio.run(_test())


def test_non_terminal_callback_confirm_ends_in_place(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "CALLBACK_CONFIRM_TERMINAL", False)

    async def _test() -> None:
        engine = DialogueEngine()
        session = _session()
        first = await engine.take_turn(session, BUSY_TEXT)
        second = await engine.take_turn(session, "કાલે સવારે")
        assert first.state is S.CALLBACK_TIME
        assert second.state is S.CALLBACK_CONFIRM
        assert not second.hangup

        third = await engine.take_turn(session, "હા બરાબર")
        assert third.state is S.CALLBACK_CONFIRM
        assert third.hangup
        assert session.callback_requested_at == "કાલે સવારે"

    asyncio.run(_test())
    assert not is_terminal(S.CALLBACK_CONFIRM)
