from __future__ import annotations

import re
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlparse
from uuid import uuid4

import httpx

from taskcall.core.config import settings
from taskcall.core.telemetry import log_event, timed_step


class TwilioClient:
    _API_ROOT = "https://api.twilio.com/2010-04-01"
    _PHONE_RE = re.compile(r"^\+?[0-9]{6,15}$")

    def __init__(self, *, timeout_seconds: float = 10.0) -> None:
        self._timeout = timeout_seconds

    @property
    def dry_run(self) -> bool:
        return not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN)

    @classmethod
    def to_dialable(cls, phone: str) -> str:
        """E.164-ish destination; bare national numbers get the configured country code."""
        raw = "".join(ch for ch in (phone or "") if ch.isdigit() or ch == "+")
        if not cls._PHONE_RE.match(raw):
            raise ValueError(f"not a dialable phone number: {phone!r}")
        if raw.startswith("+"):
            return raw
        if settings.PHONE_COUNTRY_CODE and len(raw) == 10:
            return f"+{settings.PHONE_COUNTRY_CODE}{raw}"
        return f"+{raw}"

    def resolve_public_webhook_host(self) -> tuple[str | None, str | None]:
        raw = (settings.TWILIO_WEBHOOK_HOST or "").strip()
        if not raw:
            return None, "TWILIO_WEBHOOK_HOST is missing."

        normalized = raw if "://" in raw else f"https://{raw}"
        parsed = urlparse(normalized)
        host = (parsed.hostname or "").strip().lower()

        if (parsed.scheme or "").lower() != "https":
            return None, (
                "TWILIO_WEBHOOK_HOST must use https for Twilio callbacks "
                f"(current: {normalized})."
            )
        if host in {"localhost", "127.0.0.1", "0.0.0.0"} or host.endswith(".local"):
            return None, "TWILIO_WEBHOOK_HOST must be publicly reachable (not localhost)."
        if not parsed.netloc:
            return None, f"TWILIO_WEBHOOK_HOST is not a valid URL: {normalized}"

        return normalized.rstrip("/"), None

    def _auth(self) -> tuple[str, str]:
        return settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN

    async def place_call(self, to_phone: str, *, batch_id: Optional[str] = None) -> Dict[str, Any]:
        """Start an outbound call whose answer webhook drives the dialogue.

        Never raises for provider-side failures; the payload carries
        ``status="failed"`` and an ``error`` instead. Missing credentials
        return a dry-run payload.
        """
        if self.dry_run:
            return {
                "sid": f"dry_run_{uuid4().hex}",
                "status": "queued",
                "mode": "dry_run",
                "to": to_phone,
            }

        with timed_step("twilio", "place_call", batch_id=batch_id, details={"to": to_phone}):
            try:
                webhook_host, webhook_error = self.resolve_public_webhook_host()
                if webhook_error:
                    log_event(
                        "twilio",
                        "place_call_precheck_failed",
                        status="error",
                        batch_id=batch_id,
                        details={"error": webhook_error},
                    )
                    return {"sid": "", "status": "failed", "to": to_phone, "error": webhook_error}

                query = f"?{urlencode({'batch_id': batch_id})}" if batch_id else ""
                payload = {
                    "To": self.to_dialable(to_phone),
                    "From": settings.TWILIO_PHONE_NUMBER,
                    "Url": f"{webhook_host}/twilio/answer{query}",
                    "Method": "POST",
                    "StatusCallback": f"{webhook_host}/twilio/status{query}",
                    "StatusCallbackEvent": "completed",
                    "StatusCallbackMethod": "POST",
                }
                url = f"{self._API_ROOT}/Accounts/{settings.TWILIO_ACCOUNT_SID}/Calls.json"
                async with httpx.AsyncClient(auth=self._auth(), timeout=self._timeout) as client:
                    resp = await client.post(url, data=payload)
                    resp.raise_for_status()
                    return resp.json()
            except httpx.HTTPStatusError as exc:
                log_event(
                    "twilio",
                    "place_call_http_error",
                    status="error",
                    batch_id=batch_id,
                    details={"status_code": exc.response.status_code, "response": exc.response.text[:500]},
                )
                return {"sid": "", "status": "failed", "to": to_phone, "error": exc.response.text[:500]}
            except Exception as exc:
                log_event(
                    "twilio",
                    "place_call_error",
                    status="error",
                    batch_id=batch_id,
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
                return {"sid": "", "status": "failed", "to": to_phone, "error": f"{type(exc).__name__}: {exc}"}
