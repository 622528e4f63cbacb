from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.db.models.media_item import MediaOwnerKind


class MediaCreateRequest(BaseModel):
    file_url: str = Field(min_length=1, max_length=1024)
    mime_type: str = Field(min_length=3, max_length=100)
    size_bytes: int = Field(gt=0)
    owner_kind: MediaOwnerKind | None = None
    owner_id: int | None = None
    title: str | None = Field(default=None, max_length=255)


class MediaResponse(BaseModel):
    id: int
    uuid: str
    owner_kind: MediaOwnerKind | None
    owner_id: int | None
    title: str | None
    file_url: str
    mime_type: str
    size_bytes: int
    status: str
    conversions: dict[str, Any] | None
    error_message: str | None
    uploaded_at: datetime

    model_config = {"from_attributes": True}
