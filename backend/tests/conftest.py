from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


# Ensure `taskcall` import works regardless of current working directory.
ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from taskcall.core.config import settings
from taskcall.main import create_app
from taskcall.services.cache import CacheService
from taskcall.services.session_manager import SessionManager
from taskcall.services.storage import DataStore
from tests.fakes.fake_clients import FakeSTT, FakeTTS, FakeTwilioClient


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_root = tmp_path / "data"
    data_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setattr(settings, "DATA_ROOT", data_root)
    monkeypatch.setattr(settings, "SQLITE_PATH", data_root / "calls.db")
    monkeypatch.setattr(settings, "TWILIO_WEBHOOK_HOST", "")
    monkeypatch.setattr(settings, "INTENT_LLM_ENABLED", False)
    monkeypatch.setattr(settings, "CALLBACK_CONFIRM_TERMINAL", True)
    monkeypatch.setattr(settings, "MIN_CONFIDENCE", 70)
    monkeypatch.setattr(settings, "CALL_LOG_RETRY_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "SUPABASE_URL", "")
    return data_root


@pytest.fixture()
def store(isolated_settings: Path) -> DataStore:
    return DataStore(isolated_settings / "calls.db")


@pytest.fixture()
def sessions() -> SessionManager:
    return SessionManager()


@pytest.fixture()
def fake_twilio() -> FakeTwilioClient:
    return FakeTwilioClient()


@pytest.fixture()
def fake_stt() -> FakeSTT:
    return FakeSTT()


@pytest.fixture()
def fake_tts(isolated_settings: Path) -> FakeTTS:
    return FakeTTS(isolated_settings / "audio")


@pytest.fixture()
def app(
    isolated_settings: Path,
    store: DataStore,
    sessions: SessionManager,
    fake_twilio: FakeTwilioClient,
    fake_tts: FakeTTS,
    fake_stt: FakeSTT,
):
    return create_app(
        store=store,
        sessions=sessions,
        twilio_client=fake_twilio,
        tts=fake_tts,
        stt=fake_stt,
        cache=CacheService(enabled=False),
        data_root=isolated_settings,
        bulk_delay_seconds=0.0,
    )


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
