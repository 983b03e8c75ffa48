from __future__ import annotations

import json
import logging
import threading
import time
from collections import Counter, deque
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from taskcall.core.config import settings


_LOGGER = logging.getLogger("taskcall")
_METRICS_LOCK = threading.Lock()
_NOISY_SEEN: Counter = Counter()
_LEVELS = {"error": logging.ERROR, "warning": logging.WARNING}
_ENTRY_KEYS = ("call_sid", "batch_id", "duration_ms", "status")


def _metric_file() -> Path:
    settings.DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return settings.DATA_ROOT / "telemetry_events.jsonl"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sampled_out(action: str, status: str) -> bool:
    """Successful events for noisy actions (partial speech) only reach the console every Nth time."""
    if status != "ok" or action not in settings.LOG_NOISY_ACTIONS:
        return False
    every = settings.LOG_NOISY_EVENTS_EVERY_N
    if every <= 0:
        return True
    with _METRICS_LOCK:
        _NOISY_SEEN[action] += 1
        return _NOISY_SEEN[action] % every != 0


def _short(value: Any, limit: int) -> str:
    if isinstance(value, (dict, list, tuple)):
        value = json.dumps(value, default=str, ensure_ascii=False)
    text = str(value)
    return text if len(text) <= limit else f"{text[: limit - 1]}…"


def _console_line(entry: Dict[str, Any]) -> str:
    parts = [f"{entry.get('component', 'unknown')}/{entry.get('action', 'event')}"]
    if entry.get("call_sid"):
        parts.append(f"call={entry['call_sid']}")
    if entry.get("batch_id"):
        parts.append(f"batch={entry['batch_id']}")
    if entry.get("duration_ms") is not None:
        parts.append(f"{entry['duration_ms']}ms")
    if entry.get("error"):
        parts.append(f"error={_short(entry['error'], 220)}")
    details = entry.get("details") or {}
    parts.extend(f"{key}={_short(value, 80)}" for key, value in details.items() if key not in _ENTRY_KEYS)
    return " ".join(parts)


def configure_logging() -> None:
    if getattr(_LOGGER, "_taskcall_configured", False):
        return

    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    _LOGGER.setLevel(log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s", "%Y-%m-%dT%H:%M:%S%z")

    log_path = settings.DATA_ROOT / "service.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    for handler in (logging.StreamHandler(), logging.FileHandler(log_path, encoding="utf-8")):
        handler.setFormatter(fmt)
        handler.setLevel(log_level)
        _LOGGER.addHandler(handler)

    _LOGGER._taskcall_configured = True  # type: ignore[attr-defined]


def _record(entry: Dict[str, Any]) -> None:
    """Append the event to the JSONL feed and echo it to the service log."""
    with _METRICS_LOCK:
        with open(_metric_file(), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str, ensure_ascii=False))
            f.write("\n")
    status = str(entry.get("status", "ok"))
    if _sampled_out(str(entry.get("action", "")), status):
        return
    _LOGGER.log(_LEVELS.get(status, logging.INFO), _console_line(entry))


def get_metric_events(
    limit: int = 100,
    *,
    component: Optional[str] = None,
    action: Optional[str] = None,
    call_sid: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> list[Dict[str, Any]]:
    """Most recent events from the JSONL feed, optionally filtered."""
    path = _metric_file()
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as f:
        tail = deque((line for line in f if line.strip()), maxlen=limit)
    wanted = {"component": component, "action": action, "call_sid": call_sid, "batch_id": batch_id}
    events = [json.loads(line) for line in tail]
    return [
        event
        for event in events
        if all(value is None or event.get(key) == value for key, value in wanted.items())
    ]


def _entry(
    component: str,
    action: str,
    status: str,
    call_sid: Optional[str],
    batch_id: Optional[str],
    details: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    return {
        "component": component,
        "action": action,
        "status": status,
        "call_sid": call_sid,
        "batch_id": batch_id,
        "details": details or {},
    }


def log_event(
    component: str,
    action: str,
    *,
    status: str = "ok",
    duration_ms: Optional[float] = None,
    call_sid: Optional[str] = None,
    batch_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    entry = {"timestamp": _timestamp(), **_entry(component, action, status, call_sid, batch_id, details)}
    if duration_ms is not None:
        entry["duration_ms"] = round(duration_ms, 3)
    _record(entry)


@contextmanager
def timed_step(
    component: str,
    action: str,
    *,
    call_sid: Optional[str] = None,
    batch_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Record one event covering the wrapped block, marked as an error if it raises."""
    started = time.perf_counter()
    entry = {"started_at": _timestamp(), **_entry(component, action, "ok", call_sid, batch_id, details)}
    try:
        yield
    except Exception as exc:
        entry["status"] = "error"
        entry["error"] = f"{type(exc).__name__}: {exc}"
        raise
    finally:
        entry["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 3)
        _record(entry)
