from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


_ENV_PATH = Path(__file__).resolve().parents[3] / ".env"
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH)
else:  # fallback when launched from inside backend/
    load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


class Settings:
    DATA_ROOT = Path(os.getenv("TASKCALL_DATA_ROOT", "data"))
    SQLITE_PATH = Path(os.getenv("SQLITE_PATH", "")) if os.getenv("SQLITE_PATH") else DATA_ROOT / "calls.db"

    APP_HOST = os.getenv("HOST", "0.0.0.0")
    APP_PORT = _env_int("PORT", 10000)

    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")
        if origin.strip()
    ]

    # Twilio integration
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER", "")
    TWILIO_WEBHOOK_HOST = os.getenv("TWILIO_WEBHOOK_HOST", "")

    # Speech gathering
    CALL_LANGUAGE = os.getenv("CALL_LANGUAGE", "gu-IN").strip() or "gu-IN"
    GATHER_TIMEOUT_SECONDS = _env_int("GATHER_TIMEOUT_SECONDS", 15)

    # Dialogue tuning
    MIN_CONFIDENCE = _env_int("MIN_CONFIDENCE", 70)
    MIN_UTTERANCE_CHARS = _env_int("MIN_UTTERANCE_CHARS", 3)
    BUSY_MIN_SIGNALS = _env_int("BUSY_MIN_SIGNALS", 2)
    CALLBACK_CONFIRM_TERMINAL = _env_flag("CALLBACK_CONFIRM_TERMINAL", "true")

    # Advisory intent classifier (OpenAI-compatible chat completions, Groq by default)
    INTENT_LLM_ENABLED = _env_flag("INTENT_LLM_ENABLED", "false")
    INTENT_LLM_BASE_URL = os.getenv("INTENT_LLM_BASE_URL", "https://api.groq.com/openai/v1")
    INTENT_LLM_MODEL = os.getenv("INTENT_LLM_MODEL", "llama3-8b-8192")
    INTENT_LLM_API_KEY = os.getenv("INTENT_LLM_API_KEY", os.getenv("GROQ_API_KEY", ""))
    INTENT_LLM_TIMEOUT_SECONDS = _env_float("INTENT_LLM_TIMEOUT_SECONDS", 4.0)

    # Dispatch
    BULK_CALL_DELAY_SECONDS = _env_float("BULK_CALL_DELAY_SECONDS", 1.5)
    CLOSED_CALL_MEMORY = max(1, _env_int("CLOSED_CALL_MEMORY", 5000))
    PHONE_COUNTRY_CODE = os.getenv("PHONE_COUNTRY_CODE", "91").strip()

    # Text-to-speech prompt audio
    GOOGLE_TTS_API_KEY = os.getenv("GOOGLE_TTS_API_KEY", "")
    GOOGLE_TTS_URL = os.getenv(
        "GOOGLE_TTS_URL", "https://texttospeech.googleapis.com/v1/text:synthesize"
    )
    TTS_VOICE_LANGUAGE = os.getenv("TTS_VOICE_LANGUAGE", "gu-IN")
    TTS_TIMEOUT_SECONDS = _env_float("TTS_TIMEOUT_SECONDS", 10.0)
    TTS_PRELOAD_ON_STARTUP = _env_flag("TTS_PRELOAD_ON_STARTUP", "true")

    # Speech-to-text for recorded turns
    DEEPGRAM_API_KEY = os.getenv("DEEPGRAM_API_KEY", "")
    DEEPGRAM_LISTEN_URL = os.getenv("DEEPGRAM_LISTEN_URL", "https://api.deepgram.com/v1/listen")
    STT_MODEL = os.getenv("STT_MODEL", "nova-2")
    STT_TIMEOUT_SECONDS = _env_float("STT_TIMEOUT_SECONDS", 8.0)

    # Call log
    CALL_LOG_WRITE_ATTEMPTS = max(1, _env_int("CALL_LOG_WRITE_ATTEMPTS", 3))
    CALL_LOG_RETRY_DELAY_SECONDS = _env_float("CALL_LOG_RETRY_DELAY_SECONDS", 0.5)
    CALL_LOG_TIMEZONE = os.getenv("CALL_LOG_TIMEZONE", "Asia/Kolkata")

    # Optional Supabase mirror of the call log
    SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip()
    SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
    SUPABASE_CALL_LOGS_TABLE = os.getenv("SUPABASE_CALL_LOGS_TABLE", "call_logs").strip() or "call_logs"

    # Redis / caching
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    CACHE_ENABLED = _env_flag("CACHE_ENABLED", "false")
    CACHE_DEFAULT_TTL_SECONDS = _env_int("CACHE_DEFAULT_TTL_SECONDS", 86400)
    CACHE_KEY_PREFIX = os.getenv("CACHE_KEY_PREFIX", "taskcall")

    # Logging controls
    LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    if LOG_LEVEL not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        LOG_LEVEL = "INFO"
    LOG_NOISY_EVENTS_EVERY_N = _env_int("LOG_NOISY_EVENTS_EVERY_N", 50)
    if LOG_NOISY_EVENTS_EVERY_N < 0:
        LOG_NOISY_EVENTS_EVERY_N = 0

    LOG_NOISY_ACTIONS = tuple(
        action.strip()
        for action in os.getenv("LOG_NOISY_ACTIONS", "partial_speech").split(",")
        if action.strip()
    )

    LOG_SKIP_REQUEST_PATHS = tuple(
        path.strip()
        for path in os.getenv("LOG_SKIP_REQUEST_PATHS", "/health,/twilio/partial").split(",")
        if path.strip()
    )


settings = Settings()
