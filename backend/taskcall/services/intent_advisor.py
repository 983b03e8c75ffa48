from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Dict, Optional

import httpx

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event
from taskcall.services.cache import CacheService


ADVISORY_LABELS = ("DONE", "PENDING", "BUSY", "UNKNOWN")

SYSTEM_PROMPT = "Classify the user's intent. Answer with exactly one word."

_LABEL_RE = re.compile(r"\b(" + "|".join(ADVISORY_LABELS) + r")\b")


def _normalize_chat_endpoint(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    if base.endswith("/v1"):
        return f"{base}/chat/completions"
    return f"{base}/v1/chat/completions"


def parse_label(content: str | None) -> Optional[str]:
    """First advisory label mentioned in a model reply, if any."""
    if not content:
        return None
    match = _LABEL_RE.search(content.upper())
    return match.group(1) if match else None


class IntentAdvisor:
    """Optional LLM fallback for low-confidence turns.

    ``classify`` never raises: transport errors, timeouts and unparseable
    replies all come back as ``None`` so the keyword result stands.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        cache: Optional[CacheService] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._chat_url = _normalize_chat_endpoint(base_url or settings.INTENT_LLM_BASE_URL)
        self._model = model or settings.INTENT_LLM_MODEL
        self._timeout_seconds = float(timeout_seconds or settings.INTENT_LLM_TIMEOUT_SECONDS)
        self._cache = cache
        headers = {"Content-Type": "application/json"}
        key = settings.INTENT_LLM_API_KEY if api_key is None else api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout_seconds, connect=min(2.0, self._timeout_seconds)),
            headers=headers,
            transport=transport,
        )

    def _payload(self, text: str) -> Dict[str, Any]:
        return {
            "model": self._model,
            "temperature": 0,
            "max_tokens": 5,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f'User said: "{text}"\nChoose one: DONE, PENDING, BUSY, UNKNOWN',
                },
            ],
        }

    async def _request_label(self, text: str) -> Optional[str]:
        started = time.perf_counter()
        label: Optional[str] = None
        try:
            resp = await self._client.post(self._chat_url, json=self._payload(text))
            resp.raise_for_status()
            data = resp.json()
            label = parse_label(data["choices"][0]["message"]["content"])
            return label
        finally:
            log_event(
                "intent_advisor",
                "classify",
                duration_ms=(time.perf_counter() - started) * 1000.0,
                details={"model": self._model, "label": label, "chars": len(text)},
            )

    async def classify(self, text: str) -> Optional[str]:
        if not text:
            return None

        async def _load() -> Optional[str]:
            return await asyncio.wait_for(self._request_label(text), timeout=self._timeout_seconds)

        try:
            if self._cache is not None and self._cache.enabled:
                return await self._cache.remember(self._cache.key("intent", self._model, text), _load)
            return await _load()
        except Exception as exc:
            log_event(
                "intent_advisor",
                "classify_fallback",
                status="warning",
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            return None

    async def aclose(self) -> None:
        await self._client.aclose()
