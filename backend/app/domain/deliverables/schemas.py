from datetime import datetime

from pydantic import BaseModel, ConfigDict


class DeliverableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deliverable_id: str
    project_id: str
    title: str
    version: int
    state: str
    watermark_status: str
    mime_type: str
    byte_size: int
    original_filename: str
    created_at: datetime


class DeliverableLinkResponse(BaseModel):
    url: str
    variant: str
    draft: bool
    filename: str
    expires_in: int
