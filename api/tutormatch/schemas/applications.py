from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from tutormatch.services.references import extract_posting_references

ApplicationStatus = Literal["pending", "approved", "declined", "completed", "withdrawal-requested", "withdrawn"]
WithdrawalDecision = Literal["approve", "decline"]


class PostingReferenceOut(BaseModel):
    posting_id: str
    label: str


class ApplicationOut(BaseModel):
    id: str
    posting_id: str
    candidate_id: str
    status: ApplicationStatus
    applied_at: datetime
    decline_reason: str | None = None
    decline_reason_refs: list[PostingReferenceOut] = Field(default_factory=list)
    auto_declined: bool = False
    declined_at: datetime | None = None
    completed_at: datetime | None = None
    pre_withdrawal_status: ApplicationStatus | None = None
    withdrawal_requested_at: datetime | None = None
    withdrawal_requested_by: str | None = None
    withdrawal_note: str | None = None
    withdrawal_approved_at: datetime | None = None
    withdrawal_approved_by: str | None = None
    withdrawal_rejected_at: datetime | None = None
    withdrawal_rejected_by: str | None = None
    updated_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ApplicationOut":
        refs = [
            PostingReferenceOut(posting_id=ref.posting_id, label=ref.label)
            for ref in extract_posting_references(row.get("decline_reason"))
        ]
        return cls(**{**row, "decline_reason_refs": refs})


class ApplicationApproveOut(BaseModel):
    application_id: str
    auto_declined_count: int


class ApplicationStatusOut(BaseModel):
    application_id: str
    status: ApplicationStatus


class ApplicationDeclineRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class WithdrawalRequest(BaseModel):
    note: str | None = Field(default=None, max_length=500)


class WithdrawalResolveRequest(BaseModel):
    decision: WithdrawalDecision
    admin_note: str | None = Field(default=None, max_length=500)


class ArchiveEntryOut(BaseModel):
    id: str
    original_application_id: str
    posting_id: str
    candidate_id: str
    status: ApplicationStatus
    applied_at: datetime
    archived_at: datetime
    decline_reason: str | None = None
    auto_declined: bool = False
    declined_at: datetime | None = None
    completed_at: datetime | None = None
    pre_withdrawal_status: ApplicationStatus | None = None
    withdrawal_requested_at: datetime | None = None
    withdrawal_requested_by: str | None = None
    withdrawal_note: str | None = None
    withdrawal_approved_at: datetime | None = None
    withdrawal_approved_by: str | None = None
    withdrawal_rejected_at: datetime | None = None
    withdrawal_rejected_by: str | None = None
