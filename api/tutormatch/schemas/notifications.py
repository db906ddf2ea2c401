from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

NotificationType = Literal["withdrawal-request", "withdrawal-approved", "withdrawal-declined"]
NotificationStatus = Literal["pending", "approved", "declined"]


class NotificationOut(BaseModel):
    id: str
    type: NotificationType
    application_id: str
    candidate_id: str
    candidate_name: str | None = None
    posting_id: str
    note: str | None = None
    status: NotificationStatus
    read: bool = False
    requested_at: datetime
    processed_at: datetime | None = None
    processed_by: str | None = None
    admin_note: str | None = None
    created_at: datetime


class NotificationListOut(BaseModel):
    items: list[NotificationOut] = Field(default_factory=list)
    total: int


class NotificationsReadRequest(BaseModel):
    notification_ids: list[str] = Field(default_factory=list, max_length=500)
    mark_all: bool = False


class NotificationsReadOut(BaseModel):
    updated: int
