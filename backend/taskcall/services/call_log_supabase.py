from __future__ import annotations

from typing import Any, Dict

import httpx

from taskcall.core.telemetry import log_event


class SupabaseCallLogSync:
    """Mirror of closed-call rows into a Supabase REST table."""

    _COLUMNS = (
        "call_sid",
        "batch_id",
        "phone",
        "started_at",
        "ended_at",
        "agent_transcript",
        "user_transcript",
        "result",
        "duration_seconds",
        "confidence_score",
        "callback_time",
        "conversation_trace",
    )

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        table: str = "call_logs",
        timeout_seconds: float = 3.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._table = table
        self._timeout = timeout_seconds
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @property
    def table_name(self) -> str:
        return self._table

    def _api_url(self) -> str:
        return f"{self._base_url}/rest/v1/{self._table}"

    def upsert(self, row: Dict[str, Any]) -> bool:
        if not row.get("call_sid"):
            return False
        payload = [{column: row.get(column) for column in self._COLUMNS}]
        url = f"{self._api_url()}?on_conflict=call_sid"
        headers = self._headers | {"Prefer": "return=minimal,resolution=ignore-duplicates"}
        try:
            with httpx.Client(timeout=self._timeout, headers=self._headers) as client:
                response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except Exception as exc:
            log_event(
                "supabase",
                "call_log_upsert",
                status="warning",
                call_sid=row.get("call_sid"),
                details={"error": str(exc), "table": self._table},
            )
            return False
        return True
