from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import httpx

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event, timed_step


class PromptAudioCache:
    """Synthesized prompt audio memoized on disk by a stable key.

    ``audio_path`` is non-blocking: a miss schedules synthesis in the
    background and returns None so the caller can fall back to ``<Say>``;
    the next access picks up the file (or retries a failed synthesis).
    """

    def __init__(
        self,
        audio_dir: Path | str | None = None,
        *,
        api_key: str | None = None,
        language: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._audio_dir = Path(audio_dir) if audio_dir is not None else settings.DATA_ROOT / "audio"
        self._audio_dir.mkdir(parents=True, exist_ok=True)
        self._api_key = settings.GOOGLE_TTS_API_KEY if api_key is None else api_key
        self._language = language or settings.TTS_VOICE_LANGUAGE
        self._timeout = timeout_seconds or settings.TTS_TIMEOUT_SECONDS
        self._transport = transport
        self._inflight: Dict[str, asyncio.Task] = {}

    @property
    def audio_dir(self) -> Path:
        return self._audio_dir

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def _path(self, key: str) -> Path:
        return self._audio_dir / f"{key}.mp3"

    def audio_path(self, key: str, text: str) -> Optional[str]:
        """Relative URL path of the cached audio, or None while not yet available."""
        path = self._path(key)
        if path.exists():
            return f"/audio/{path.name}"
        if self.enabled:
            self._schedule(key, text)
        return None

    def _schedule(self, key: str, text: str) -> None:
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.ensure(key, text))
        self._inflight[key] = task
        task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))

    async def ensure(self, key: str, text: str) -> bool:
        path = self._path(key)
        if path.exists():
            return True
        if not self.enabled:
            return False
        try:
            with timed_step("tts", "synthesize", details={"key": key, "chars": len(text)}):
                audio = await self._synthesize(text)
        except Exception as exc:
            log_event(
                "tts",
                "synthesize_failed",
                status="warning",
                details={"key": key, "error": f"{type(exc).__name__}: {exc}"},
            )
            return False
        tmp = path.with_suffix(".part")
        tmp.write_bytes(audio)
        tmp.replace(path)
        return True

    async def _synthesize(self, text: str) -> bytes:
        payload = {
            "input": {"text": text},
            "voice": {"languageCode": self._language},
            "audioConfig": {"audioEncoding": "MP3"},
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(settings.GOOGLE_TTS_URL, params={"key": self._api_key}, json=payload)
            resp.raise_for_status()
            return base64.b64decode(resp.json()["audioContent"])

    async def preload(self, prompts: Iterable[Tuple[str, str]]) -> int:
        ready = 0
        for key, text in prompts:
            if await self.ensure(key, text):
                ready += 1
        log_event("tts", "preload", details={"ready": ready})
        return ready
