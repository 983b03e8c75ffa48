from __future__ import annotations

from fastapi import APIRouter

from taskcall.core.config import settings
from taskcall.core.telemetry import timed_step
from taskcall.services.cache import CacheService
from taskcall.services.twilio_client import TwilioClient


def get_routes(twilio: TwilioClient, cache: CacheService | None = None):
    router = APIRouter(prefix="/api/system", tags=["system"])
    local_cache = cache

    @router.get("/readiness")
    async def readiness():
        with timed_step("system", "readiness"):
            _host, webhook_reason = twilio.resolve_public_webhook_host()
            has_twilio = bool(
                settings.TWILIO_ACCOUNT_SID
                and settings.TWILIO_AUTH_TOKEN
                and settings.TWILIO_PHONE_NUMBER
            )
            cache_enabled = bool(local_cache and local_cache.enabled)
            cache_ready = False
            if cache_enabled:
                cache_ready = await local_cache.ping()  # type: ignore[union-attr]

            return {
                "twilio_configured": has_twilio,
                "twilio_webhook_public": webhook_reason is None,
                "twilio_webhook_reason": webhook_reason,
                "tts_configured": bool(settings.GOOGLE_TTS_API_KEY),
                "stt_configured": bool(settings.DEEPGRAM_API_KEY),
                "intent_llm_ready": bool(settings.INTENT_LLM_ENABLED and settings.INTENT_LLM_API_KEY),
                "intent_llm_model": settings.INTENT_LLM_MODEL,
                "cache_enabled": cache_enabled,
                "cache_ready": cache_ready,
                "can_dial_live": bool(has_twilio and webhook_reason is None),
            }

    return router
