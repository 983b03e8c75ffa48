from __future__ import annotations

import hashlib
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis_asyncio

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event


T = TypeVar("T")


class CacheService:
    """Redis JSON memo for advisory intent labels.

    Every operation degrades to a miss when Redis is disabled or unreachable;
    a call never waits on, or fails because of, the cache.
    """

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        enabled: bool = False,
        default_ttl_seconds: int = 86400,
        key_prefix: str = "taskcall",
    ) -> None:
        self._redis_url = (redis_url or settings.REDIS_URL or "").strip()
        self._ttl = default_ttl_seconds
        self._key_prefix = key_prefix
        self._client = None
        self._reachable = False

        if enabled and self._redis_url:
            try:
                self._client = redis_asyncio.from_url(self._redis_url, decode_responses=True)
            except Exception as exc:
                self._report("init_error", exc, status="error")

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def key(self, namespace: str, *parts: object) -> str:
        joined = ":".join(str(part) for part in parts if part is not None)
        return f"{self._key_prefix}:{namespace}:{hashlib.sha256(joined.encode('utf-8')).hexdigest()}"

    @staticmethod
    def _report(action: str, exc: Exception, *, status: str = "warning", key: str | None = None) -> None:
        details: dict[str, Any] = {"error": f"{type(exc).__name__}: {exc}"}
        if key is not None:
            details["key"] = key
        log_event("cache", action, status=status, details=details)

    async def ping(self) -> bool:
        if self._client is None:
            return False
        if not self._reachable:
            try:
                await self._client.ping()
            except Exception as exc:
                self._report("ping_failed", exc, status="error")
                return False
            self._reachable = True
        return True

    async def _run(self, action: str, cache_key: str, op: Callable[[], Awaitable[T]], fallback: T) -> T:
        if not await self.ping():
            return fallback
        try:
            return await op()
        except Exception as exc:
            self._report(action, exc, key=cache_key)
            return fallback

    async def get_json(self, cache_key: str) -> Optional[Any]:
        async def op() -> Optional[Any]:
            raw = await self._client.get(cache_key)  # type: ignore[union-attr]
            return None if raw is None else json.loads(raw)

        return await self._run("get_json_failed", cache_key, op, None)

    async def set_json(self, cache_key: str, value: Any, *, ttl_seconds: int | None = None) -> bool:
        async def op() -> bool:
            payload = json.dumps(value, ensure_ascii=False)
            await self._client.set(cache_key, payload, ex=int(ttl_seconds or self._ttl))  # type: ignore[union-attr]
            return True

        return await self._run("set_json_failed", cache_key, op, False)

    async def delete(self, cache_key: str) -> bool:
        async def op() -> bool:
            return bool(await self._client.delete(cache_key))  # type: ignore[union-attr]

        return await self._run("delete_failed", cache_key, op, False)

    async def remember(
        self,
        cache_key: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        ttl_seconds: int | None = None,
    ) -> Any:
        """Return the cached value or load, store (when not None) and return it."""
        cached = await self.get_json(cache_key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set_json(cache_key, value, ttl_seconds=ttl_seconds)
        return value

    async def close(self) -> None:
        if self._client is None:
            return
        close_fn = getattr(self._client, "aclose", None) or getattr(self._client, "close", None)
        if close_fn is not None:
            await close_fn()
