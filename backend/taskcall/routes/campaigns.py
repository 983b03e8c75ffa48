from __future__ import annotations

from fastapi import APIRouter, HTTPException

from taskcall.core.telemetry import timed_step
from taskcall.models.schemas import CampaignRowsRequest
from taskcall.services.dispatcher import Dispatcher
from taskcall.services.storage import DataStore


def get_routes(dispatcher: Dispatcher, store: DataStore):
    router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])

    @router.post("/rows")
    async def load_rows(payload: CampaignRowsRequest):
        with timed_step("api", "campaign_rows", batch_id=payload.batch_id, details={"count": len(payload.phones)}):
            added = store.add_bulk_rows(payload.phones, payload.batch_id or "")
            return {"added": added}

    @router.get("/preview")
    async def preview():
        return dispatcher.preview()

    @router.post("/start")
    async def start():
        with timed_step("api", "campaign_start"):
            started = dispatcher.start_campaign()
            if not started["total"]:
                raise HTTPException(status_code=404, detail="no queued numbers to call")
            return {"status": "campaign started", **started}

    return router
