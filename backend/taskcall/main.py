from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from taskcall.core.config import settings
from taskcall.core.telemetry import configure_logging, log_event, timed_step
from taskcall.routes import calls as call_routes
from taskcall.routes import campaigns as campaign_routes
from taskcall.routes import system as system_routes
from taskcall.routes import telemetry as telemetry_routes
from taskcall.routes import twilio as twilio_routes
from taskcall.services.cache import CacheService
from taskcall.services.completion import CompletionLogger
from taskcall.services.dialogue import DialogueEngine, IntentAdvisorProtocol
from taskcall.services.dispatcher import Dispatcher
from taskcall.services.intent_advisor import IntentAdvisor
from taskcall.services.orchestrator import CallOrchestrator
from taskcall.services.session_manager import SessionManager
from taskcall.services.storage import DataStore
from taskcall.services.stt import SpeechToTextClient
from taskcall.services.tts import PromptAudioCache
from taskcall.services.twilio_client import TwilioClient


ALLOWED_ORIGINS_TYPE = List[str]


def create_app(
    *,
    store: Optional[DataStore] = None,
    sessions: Optional[SessionManager] = None,
    twilio_client: Optional[TwilioClient] = None,
    advisor: Optional[IntentAdvisorProtocol] = None,
    tts: Optional[PromptAudioCache] = None,
    stt: Optional[SpeechToTextClient] = None,
    cache: Optional[CacheService] = None,
    data_root: str | Path | None = None,
    sqlite_path: str | Path | None = None,
    allowed_origins: Optional[ALLOWED_ORIGINS_TYPE] = None,
    bulk_delay_seconds: Optional[float] = None,
) -> FastAPI:
    """Create the FastAPI app with injectable dependencies.

    Tests pass a temporary data root and fake provider clients; production
    builds everything from settings.
    """

    if data_root is not None:
        settings.DATA_ROOT = Path(data_root)
        if sqlite_path is None:
            settings.SQLITE_PATH = settings.DATA_ROOT / "calls.db"
    if sqlite_path is not None:
        settings.SQLITE_PATH = Path(sqlite_path)

    configure_logging()

    local_store = store or DataStore(settings.SQLITE_PATH)
    local_sessions = sessions or SessionManager()
    local_twilio = twilio_client or TwilioClient()
    local_cache = cache or CacheService(
        redis_url=settings.REDIS_URL,
        enabled=settings.CACHE_ENABLED,
        default_ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS,
        key_prefix=settings.CACHE_KEY_PREFIX,
    )
    local_advisor = advisor
    if local_advisor is None and settings.INTENT_LLM_ENABLED and settings.INTENT_LLM_API_KEY:
        local_advisor = IntentAdvisor(cache=local_cache)
    local_tts = tts or PromptAudioCache(settings.DATA_ROOT / "audio")
    local_stt = stt or SpeechToTextClient()

    engine = DialogueEngine(local_advisor)
    completion = CompletionLogger(local_sessions, local_store)
    orchestrator = CallOrchestrator(
        local_sessions,
        engine,
        completion,
        tts=local_tts,
        stt=local_stt,
    )
    dispatcher = Dispatcher(local_twilio, local_sessions, local_store, delay_seconds=bulk_delay_seconds)

    app = FastAPI(title="Task Follow-up Caller")
    app.state.store = local_store
    app.state.sessions = local_sessions
    app.state.orchestrator = orchestrator
    app.state.dispatcher = dispatcher
    app.state.completion = completion
    app.state.advisor = local_advisor
    app.state.cache = local_cache

    app.include_router(twilio_routes.get_routes(orchestrator))
    app.include_router(call_routes.get_routes(dispatcher, local_sessions))
    app.include_router(campaign_routes.get_routes(dispatcher, local_store))
    app.include_router(telemetry_routes.get_routes())
    app.include_router(system_routes.get_routes(local_twilio, local_cache))
    app.mount("/audio", StaticFiles(directory=str(local_tts.audio_dir)), name="audio")

    cors_origins = list(allowed_origins or settings.ALLOWED_ORIGINS)
    if not cors_origins:
        cors_origins = ["*"]

    # Wildcard origins cannot be combined with credentials.
    allow_credentials = not (len(cors_origins) == 1 and cors_origins[0] == "*")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_request_timing(request: Request, call_next):
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        request.state.request_id = request_id
        start = time.perf_counter()
        action = f"{request.method} {request.url.path}"
        details = {
            "request_id": request_id,
            "method": request.method,
            "path": str(request.url.path),
            "client_ip": request.client.host if request.client else None,
        }
        try:
            response = await call_next(request)
        except Exception as exc:
            details["status_code"] = 500
            details["error"] = f"{type(exc).__name__}: {exc}"
            log_event(
                "http",
                action,
                status="error",
                duration_ms=(time.perf_counter() - start) * 1000.0,
                details=details,
            )
            raise
        details["status_code"] = response.status_code
        if request.url.path not in settings.LOG_SKIP_REQUEST_PATHS or response.status_code >= 400:
            log_event(
                "http",
                action,
                status="ok" if response.status_code < 500 else "error",
                duration_ms=(time.perf_counter() - start) * 1000.0,
                details=details,
            )
        return response

    @app.get("/health")
    async def health() -> dict:
        with timed_step("http", "healthcheck"):
            return {"status": "ok", "active_sessions": len(local_sessions)}

    @app.on_event("startup")
    async def startup_telemetry() -> None:
        log_event(
            "system",
            "startup",
            details={
                "twilio_configured": bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN),
                "twilio_webhook_host": settings.TWILIO_WEBHOOK_HOST or "(not set)",
                "call_language": settings.CALL_LANGUAGE,
                "min_confidence": settings.MIN_CONFIDENCE,
                "intent_llm_enabled": local_advisor is not None,
                "intent_llm_model": settings.INTENT_LLM_MODEL,
                "tts_enabled": local_tts.enabled,
                "stt_enabled": local_stt.enabled,
                "cache_enabled": local_cache.enabled,
                "bulk_call_delay_seconds": settings.BULK_CALL_DELAY_SECONDS,
                "log_level": settings.LOG_LEVEL,
            },
        )

    @app.on_event("startup")
    async def preload_prompt_audio() -> None:
        if not settings.TTS_PRELOAD_ON_STARTUP:
            return
        try:
            await orchestrator.preload_prompts()
        except Exception as exc:
            log_event("tts", "preload", status="warning", details={"error": str(exc)})

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await dispatcher.drain()
        close_fn = getattr(local_advisor, "aclose", None)
        if callable(close_fn):
            await close_fn()
        await local_cache.close()

    return app


app = create_app()
