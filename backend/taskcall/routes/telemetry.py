from __future__ import annotations

from fastapi import APIRouter, Query

from taskcall.core.telemetry import get_metric_events


def get_routes():
    router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])

    @router.get("/recent")
    async def recent_events(
        limit: int = Query(200, ge=1, le=5000),
        component: str | None = None,
        action: str | None = None,
        call_sid: str | None = None,
        batch_id: str | None = None,
        errors_only: bool = False,
    ):
        """Tail of the telemetry feed, e.g. every event of one call or one bulk batch."""
        events = get_metric_events(
            limit=limit,
            component=component,
            action=action,
            call_sid=call_sid,
            batch_id=batch_id,
        )
        if errors_only:
            events = [event for event in events if event.get("status") == "error"]
        return {"count": len(events), "events": events}

    return router
