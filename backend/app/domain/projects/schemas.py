from datetime import datetime

from pydantic import BaseModel, ConfigDict


class LatestDeliverableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deliverable_id: str
    title: str
    version: int
    state: str
    watermark_status: str
    download_variant: str | None
    download_blocked_reason: str | None


class PortalSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    public_id: str
    name: str
    portal_stage: str
    payment_status: str
    payment_required: bool
    payment_link_url: str | None
    release_blocked_reason: str | None
    last_update_at: datetime | None
    latest_deliverable: LatestDeliverableResponse | None


class PortalTokenResponse(BaseModel):
    project_id: str
    public_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
