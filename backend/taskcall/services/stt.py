from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

import httpx

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event, timed_step


@dataclass(frozen=True)
class Transcript:
    text: str
    language: str


class SpeechToTextClient:
    """Deepgram pre-recorded transcription for turns delivered as recordings.

    Best-effort: any failure yields an empty transcript tagged with the call
    language, which the dialogue treats as degenerate input.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = settings.DEEPGRAM_API_KEY if api_key is None else api_key
        self._timeout = timeout_seconds or settings.STT_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    @staticmethod
    def _parse(data: Dict[str, Any]) -> Transcript:
        channel = (data.get("results", {}).get("channels") or [{}])[0]
        alternative = (channel.get("alternatives") or [{}])[0]
        return Transcript(
            text=(alternative.get("transcript") or "").strip(),
            language=channel.get("detected_language") or settings.CALL_LANGUAGE,
        )

    async def transcribe(self, audio_url: str, *, call_sid: str | None = None) -> Transcript:
        empty = Transcript(text="", language=settings.CALL_LANGUAGE)
        if not audio_url or not self.enabled:
            return empty

        params = {
            "model": settings.STT_MODEL,
            "detect_language": "true",
            "punctuate": "true",
        }
        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            with timed_step("stt", "transcribe", call_sid=call_sid):
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    resp = await client.post(
                        settings.DEEPGRAM_LISTEN_URL,
                        params=params,
                        headers=headers,
                        json={"url": audio_url},
                    )
                    resp.raise_for_status()
                    return self._parse(resp.json())
        except Exception as exc:
            log_event(
                "stt",
                "transcribe_failed",
                status="warning",
                call_sid=call_sid,
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            return empty
