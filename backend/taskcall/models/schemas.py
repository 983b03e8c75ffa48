from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


IntentLabel = Literal["DONE", "PENDING", "UNCLEAR"]
AdvisoryLabel = Literal["DONE", "PENDING", "BUSY", "UNKNOWN"]
BulkRowStatus = Literal["Queued", "Calling", "Failed", "Completed"]


class DialogueState(str, Enum):
    INTRO = "intro"
    TASK_CHECK = "task_check"
    RETRY_TASK_CHECK = "retry_task_check"
    CONFIRM_TASK = "confirm_task"
    TASK_DONE = "task_done"
    TASK_PENDING = "task_pending"
    PROBLEM_RECORDED = "problem_recorded"
    ESCALATE = "escalate"
    CALLBACK_TIME = "callback_time"
    CALLBACK_CONFIRM = "callback_confirm"


class IntentResult(BaseModel):
    label: IntentLabel
    confidence: int = Field(ge=0, le=100)


class SingleCallRequest(BaseModel):
    to: str = Field(min_length=4)


class SingleCallResponse(BaseModel):
    ok: bool
    call_sid: str
    phone: str
    status: str = "calling"


class BulkCallRequest(BaseModel):
    phones: List[str] = Field(default_factory=list)
    batch_id: str = Field(alias="batchId", min_length=1)

    model_config = {"populate_by_name": True}


class BulkCallResponse(BaseModel):
    status: str = "bulk calling started"
    batch_id: str
    total: int


class CampaignRowsRequest(BaseModel):
    phones: List[str] = Field(default_factory=list)
    batch_id: Optional[str] = Field(default=None, alias="batchId")

    model_config = {"populate_by_name": True}


class BulkRow(BaseModel):
    phone: str
    batch_id: str = ""
    status: BulkRowStatus = "Queued"
    call_sid: str = ""


class CallLogRecord(BaseModel):
    """One row per closed call session."""

    started_at: datetime
    ended_at: datetime
    call_sid: str
    phone: str
    agent_transcript: List[str] = Field(default_factory=list)
    user_transcript: List[str] = Field(default_factory=list)
    result: str
    duration_seconds: int = 0
    confidence_score: int = 0
    callback_time: Optional[str] = None
    conversation_trace: List[str] = Field(default_factory=list)
    batch_id: Optional[str] = None


class ActiveSessionView(BaseModel):
    call_sid: str
    phone: str
    batch_id: Optional[str] = None
    state: DialogueState
    unclear_count: int = 0
    confidence_score: int = 0
    started_at: datetime
