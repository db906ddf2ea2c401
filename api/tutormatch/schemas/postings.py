from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

PostingStatus = Literal["open", "hold", "matched", "closed"]


class PostingOut(BaseModel):
    id: str
    owner_id: str
    title: str
    description: str | None = None
    kind: str = "tuition"
    details: dict[str, Any] = Field(default_factory=dict)
    status: PostingStatus = "open"
    held_from_status: PostingStatus | None = None
    applicant_ids: list[str] = Field(default_factory=list)
    application_counts: dict[str, int] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class PostingCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = Field(default=None, max_length=10000)
    kind: str = Field(default="tuition", min_length=1, max_length=64)
    details: dict[str, Any] = Field(default_factory=dict)
