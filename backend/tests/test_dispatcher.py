from __future__ import annotations

import asyncio
import sqlite3

import pytest

from taskcall.core.telemetry import get_metric_events
from taskcall.services.completion import CompletionLogger
from taskcall.services.dialogue import DialogueEngine
from taskcall.services.dispatcher import DispatchError, Dispatcher
from taskcall.services.orchestrator import CallOrchestrator
from taskcall.services.session_manager import Lifecycle, SessionExistsError, SessionManager
from taskcall.services.storage import DataStore
from tests.fakes.fake_clients import FakeTwilioClient


def test_call_one_registers_session_before_returning(store: DataStore) -> None:
    async def _test() -> None:
        twilio = FakeTwilioClient()
        sessions = SessionManager()
        session = await Dispatcher(twilio, sessions, store).call_one("+91 98765 43210")

        assert sessions.get(session.call_sid) is session
        assert session.phone == "9876543210"
        assert session.batch_id is None

    asyncio.run(_test())


def test_call_one_raises_on_provider_failure(store: DataStore) -> None:
    async def _test() -> None:
        sessions = SessionManager()
        dispatcher = Dispatcher(FakeTwilioClient(status="failed"), sessions, store)
        with pytest.raises(DispatchError):
            await dispatcher.call_one("9876543210")
        assert len(sessions) == 0

    asyncio.run(_test())


def test_bulk_failure_is_isolated(store: DataStore) -> None:
    phones = ["9876500001", "9876500002", "9876500003"]

    async def _test() -> None:
        twilio = FakeTwilioClient(fail_for={"9876500002"})
        sessions = SessionManager()
        dispatcher = Dispatcher(twilio, sessions, store, delay_seconds=0)

        assert dispatcher.call_bulk(phones, "BATCH_1") == 3
        await dispatcher.drain()

        assert sorted(s.phone for s in sessions.active()) == ["9876500001", "9876500003"]
        assert all(s.batch_id == "BATCH_1" for s in sessions.active())
        assert len(twilio.calls) == 3

    asyncio.run(_test())

    statuses = {row.phone: row.status for row in store.list_bulk_rows(batch_id="BATCH_1")}
    assert statuses == {
        "9876500001": "Calling",
        "9876500002": "Failed",
        "9876500003": "Calling",
    }
    assert store.get_bulk_row("9876500001", "BATCH_1").call_sid.startswith("mock_call_sid")


def test_bulk_calls_are_staggered(store: DataStore) -> None:
    async def _test() -> None:
        twilio = FakeTwilioClient()
        dispatcher = Dispatcher(twilio, SessionManager(), store, delay_seconds=0.05)
        dispatcher.call_bulk(["9876500001", "9876500002"], "B")

        await asyncio.sleep(0.01)
        assert len(twilio.calls) == 1
        await dispatcher.drain()
        assert len(twilio.calls) == 2

    asyncio.run(_test())


def test_campaign_start_batches_queued_rows(store: DataStore) -> None:
    store.add_bulk_rows(["9876500001", "9876500002"])

    async def _test() -> dict:
        dispatcher = Dispatcher(FakeTwilioClient(), SessionManager(), store, delay_seconds=0)
        assert dispatcher.preview()["total"] == 2
        started = dispatcher.start_campaign()
        await dispatcher.drain()
        assert dispatcher.preview()["total"] == 0
        return started

    started = asyncio.run(_test())

    assert started["total"] == 2
    assert started["batch_id"].startswith("BATCH_")
    rows = store.list_bulk_rows(batch_id=started["batch_id"])
    assert [row.status for row in rows] == ["Calling", "Calling"]


def _orchestrator(sessions: SessionManager, store: DataStore) -> CallOrchestrator:
    return CallOrchestrator(sessions, DialogueEngine(), CompletionLogger(sessions, store))


def test_answer_before_provider_reply_keeps_bulk_row_calling(store: DataStore) -> None:
    async def _test() -> None:
        sessions = SessionManager()
        orchestrator = _orchestrator(sessions, store)

        async def answer_first(call_sid: str, phone: str, batch_id: str | None) -> None:
            await orchestrator.handle_answer(call_sid, phone, "https://calls.test", batch_id=batch_id)

        dispatcher = Dispatcher(FakeTwilioClient(before_return=answer_first), sessions, store, delay_seconds=0)
        dispatcher.call_bulk(["9876500001"], "B1")
        await dispatcher.drain()

        [session] = sessions.active()
        assert session.call_sid == "mock_call_sid_1"
        assert session.batch_id == "B1"
        assert len(session.agent_transcript) == 1

    asyncio.run(_test())

    row = store.get_bulk_row("9876500001", "B1")
    assert row.status == "Calling"
    assert row.call_sid == "mock_call_sid_1"
    assert get_metric_events(component="dispatcher", action="call_failed") == []


def test_single_call_adopts_session_opened_by_answer(store: DataStore) -> None:
    async def _test() -> None:
        sessions = SessionManager()
        orchestrator = _orchestrator(sessions, store)

        async def answer_first(call_sid: str, phone: str, batch_id: str | None) -> None:
            await orchestrator.handle_answer(call_sid, phone, "https://calls.test")

        dispatcher = Dispatcher(FakeTwilioClient(before_return=answer_first), sessions, store)
        session = await dispatcher.call_one("9876500001", "B7")

        assert sessions.get(session.call_sid) is session
        assert session.batch_id == "B7"
        assert len(sessions) == 1

    asyncio.run(_test())


def test_call_finished_before_provider_reply_stays_completed(store: DataStore) -> None:
    async def _test() -> None:
        sessions = SessionManager()
        orchestrator = _orchestrator(sessions, store)

        async def answer_and_hang_up(call_sid: str, phone: str, batch_id: str | None) -> None:
            await orchestrator.handle_answer(call_sid, phone, "https://calls.test", batch_id=batch_id)
            await orchestrator.handle_status(call_sid, "completed")

        dispatcher = Dispatcher(FakeTwilioClient(before_return=answer_and_hang_up), sessions, store, delay_seconds=0)
        dispatcher.call_bulk(["9876500001"], "B1")
        await dispatcher.drain()
        assert len(sessions) == 0

    asyncio.run(_test())

    assert store.get_bulk_row("9876500001", "B1").status == "Completed"
    assert store.count_call_logs("mock_call_sid_1") == 1


def test_adopt_rejects_call_id_for_another_number(store: DataStore) -> None:
    sessions = SessionManager()
    sessions.create("mock_call_sid_1", "9876500009")

    async def _test() -> None:
        dispatcher = Dispatcher(FakeTwilioClient(), sessions, store)
        with pytest.raises(SessionExistsError):
            await dispatcher.call_one("9876500001")

    asyncio.run(_test())
    assert sessions.get("mock_call_sid_1").lifecycle is Lifecycle.ACTIVE


def test_bulk_row_write_failure_is_reported(store: DataStore, monkeypatch) -> None:
    def _down(*_args, **_kwargs) -> bool:
        raise sqlite3.OperationalError("database is locked")

    async def _test() -> None:
        sessions = SessionManager()
        dispatcher = Dispatcher(FakeTwilioClient(), sessions, store, delay_seconds=0)
        dispatcher.call_bulk(["9876500001"], "B1")
        monkeypatch.setattr(store, "update_bulk_row_by_phone", _down)
        await dispatcher.drain()
        assert len(sessions) == 1

    asyncio.run(_test())

    events = get_metric_events(component="dispatcher", action="bulk_row_update_failed")
    assert len(events) == 1
    assert events[0]["status"] == "error"
    assert events[0]["details"]["row_status"] == "Calling"
    assert events[0]["call_sid"] == "mock_call_sid_1"
