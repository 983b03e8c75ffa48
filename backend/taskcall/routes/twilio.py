from __future__ import annotations

from fastapi import APIRouter, Request, Response

from taskcall.core.telemetry import timed_step
from taskcall.services.orchestrator import CallOrchestrator


def _xml(body: str) -> Response:
    return Response(content=body, media_type="application/xml")


def get_routes(orchestrator: CallOrchestrator):
    router = APIRouter(prefix="/twilio", tags=["twilio"])

    @router.post("/answer")
    async def answer_webhook(request: Request):
        params = dict((await request.form()).items())
        call_sid = str(params.get("CallSid") or "")
        batch_id = request.query_params.get("batch_id") or None
        with timed_step("twilio", "answer_webhook", call_sid=call_sid or None, batch_id=batch_id):
            body = await orchestrator.handle_answer(
                call_sid,
                str(params.get("To") or ""),
                orchestrator.public_base_url(str(request.base_url)),
                batch_id=batch_id,
            )
            return _xml(body)

    @router.post("/listen")
    async def listen_webhook(request: Request):
        params = dict((await request.form()).items())
        call_sid = str(params.get("CallSid") or "")
        speech = params.get("SpeechResult")
        with timed_step(
            "twilio",
            "listen_webhook",
            call_sid=call_sid or None,
            details={
                "has_speech": bool(speech),
                "has_recording": bool(params.get("RecordingUrl")),
                "stt_confidence": params.get("Confidence"),
            },
        ):
            body = await orchestrator.handle_turn(
                call_sid,
                str(speech) if speech is not None else None,
                orchestrator.public_base_url(str(request.base_url)),
                recording_url=str(params.get("RecordingUrl") or "") or None,
                language=str(params.get("Language") or "") or None,
            )
            return _xml(body)

    @router.post("/partial")
    async def partial_webhook(request: Request):
        params = dict((await request.form()).items())
        orchestrator.handle_partial(str(params.get("CallSid") or ""))
        return Response(status_code=200)

    @router.post("/status")
    async def status_webhook(request: Request):
        params = dict((await request.form()).items())
        call_sid = str(params.get("CallSid") or "")
        call_status = str(params.get("CallStatus") or "")
        with timed_step("twilio", "status_webhook", call_sid=call_sid or None, details={"status": call_status}):
            logged = await orchestrator.handle_status(call_sid, call_status)
            return {"ok": True, "logged": logged}

    return router
