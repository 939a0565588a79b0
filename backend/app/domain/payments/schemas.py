from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ManualPaymentRequest(BaseModel):
    reason: str = Field(..., max_length=500)


class PaymentLinkRequest(BaseModel):
    url: str | None = Field(None, max_length=2048)


class ReconcileRequest(BaseModel):
    project_id: str


class PaymentOutcomeResponse(BaseModel):
    project_id: str | None
    payment_status: str | None
    skipped: bool
    reason: str | None = None


class PaymentLinkResponse(BaseModel):
    project_id: str
    payment_link_id: str | None
    payment_link_url: str | None


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    provider: str
    event_type: str
    status: str
    project_id: str | None
    error_msg: str | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="event_metadata")
    processed_at: datetime


class PaymentEventListResponse(BaseModel):
    events: list[PaymentEventResponse]
