from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.domain.deliverables.statuses import FeedbackType


class FeedbackRequest(BaseModel):
    feedback_type: FeedbackType
    name: str = Field(..., max_length=255)
    email: str = Field(..., max_length=255)
    notes: str | None = Field(None, max_length=5000)


class FeedbackResponse(BaseModel):
    feedback_id: str
    feedback_type: str
    portal_stage: str
    release_blocked_reason: str | None = None


class SignoffRequest(BaseModel):
    name: str = Field(..., max_length=255)
    email: str = Field(..., max_length=255)


class SignoffResponse(BaseModel):
    signoff_id: str
    deliverable_id: str
    portal_stage: str
    signed_at: datetime


class StageRequest(BaseModel):
    action: Literal["start", "approve", "complete"]


class StageResponse(BaseModel):
    project_id: str
    portal_stage: str
