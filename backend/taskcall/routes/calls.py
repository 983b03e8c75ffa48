from __future__ import annotations

from fastapi import APIRouter, HTTPException

from taskcall.core.telemetry import log_event, timed_step
from taskcall.models.schemas import BulkCallRequest, BulkCallResponse, SingleCallRequest, SingleCallResponse
from taskcall.services.dispatcher import DispatchError, Dispatcher
from taskcall.services.session_manager import SessionManager


def get_routes(dispatcher: Dispatcher, sessions: SessionManager):
    router = APIRouter(prefix="/api/calls", tags=["calls"])

    @router.post("", response_model=SingleCallResponse)
    async def call_one(payload: SingleCallRequest):
        with timed_step("api", "call_one", details={"to": payload.to}):
            try:
                session = await dispatcher.call_one(payload.to)
            except DispatchError as exc:
                log_event("api", "call_one_failed", status="error", details={"to": payload.to, "error": str(exc)})
                raise HTTPException(status_code=502, detail=f"call failed: {exc}") from exc
            return SingleCallResponse(ok=True, call_sid=session.call_sid, phone=session.phone)

    @router.post("/bulk", response_model=BulkCallResponse)
    async def call_bulk(payload: BulkCallRequest):
        with timed_step("api", "call_bulk", batch_id=payload.batch_id, details={"count": len(payload.phones)}):
            if not payload.phones:
                raise HTTPException(status_code=400, detail="phones must not be empty")
            total = dispatcher.call_bulk(payload.phones, payload.batch_id)
            return BulkCallResponse(batch_id=payload.batch_id, total=total)

    @router.get("/active")
    async def active_calls():
        views = [session.view() for session in sessions.active()]
        return {"count": len(views), "sessions": views}

    return router
