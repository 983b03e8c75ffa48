from __future__ import annotations

from typing import Optional
from xml.sax.saxutils import escape, quoteattr

from taskcall.core.config import settings


_HEADER = '<?xml version="1.0" encoding="UTF-8"?>'


def _speak(base_url: str, audio_path: Optional[str], text: str) -> str:
    if audio_path:
        return f"<Play>{escape(base_url.rstrip('/') + audio_path)}</Play>"
    return f"<Say language={quoteattr(settings.CALL_LANGUAGE)}>{escape(text)}</Say>"


def play_and_listen(base_url: str, audio_path: Optional[str], text: str) -> str:
    base = base_url.rstrip("/")
    gather = (
        '<Gather input="speech"'
        f" language={quoteattr(settings.CALL_LANGUAGE)}"
        f' timeout="{int(settings.GATHER_TIMEOUT_SECONDS)}"'
        ' speechTimeout="auto"'
        f" partialResultCallback={quoteattr(base + '/twilio/partial')}"
        f" action={quoteattr(base + '/twilio/listen')}"
        ' method="POST"/>'
    )
    # A Gather that times out falls through to the redirect, which posts an
    # empty turn so the ladder still advances.
    redirect = f'<Redirect method="POST">{escape(base + "/twilio/listen")}</Redirect>'
    return f"{_HEADER}<Response>{_speak(base, audio_path, text)}{gather}{redirect}</Response>"


def play_and_hangup(base_url: str, audio_path: Optional[str], text: str) -> str:
    return f"{_HEADER}<Response>{_speak(base_url, audio_path, text)}<Hangup/></Response>"


def hangup() -> str:
    return f"{_HEADER}<Response><Hangup/></Response>"
