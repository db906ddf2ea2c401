"""Application lifecycle rules shared by every storage backend.

Each ``plan_*`` function takes rows as plain dicts (already locked by the
caller), validates the requested transition and returns a ``TransitionPlan``
describing every row that has to change. Backends persist a plan as one
all-or-nothing unit; nothing in here touches storage.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from tutormatch.services.references import format_posting_reference

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation conflicts with stored state."""


class InvalidTransitionError(RepositoryConflictError):
    """Raised when a state change is not legal from the current state."""

    def __init__(self, message: str, *, current_state: str) -> None:
        super().__init__(message)
        self.current_state = current_state


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class RepositoryPersistenceConflictError(RepositoryError):
    """Raised when concurrent writers collided and the unit of work was rolled back."""


APPLICATION_STATES = ("pending", "approved", "declined", "completed", "withdrawal-requested", "withdrawn")
TERMINAL_APPLICATION_STATES = frozenset({"declined", "completed", "withdrawn"})
ARCHIVED_APPLICATION_STATES = frozenset({"declined", "withdrawn"})
WITHDRAWABLE_APPLICATION_STATES = frozenset({"pending", "approved"})
ALLOWED_APPLICATION_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "declined", "withdrawal-requested"}),
    "approved": frozenset({"completed", "withdrawal-requested"}),
    "withdrawal-requested": frozenset({"withdrawn", "pending", "approved"}),
}

POSTING_STATUSES = ("open", "hold", "matched", "closed")
HOLDABLE_POSTING_STATUSES = frozenset({"open", "matched"})

NOTIFICATION_TYPES = ("withdrawal-request", "withdrawal-approved", "withdrawal-declined")
NOTIFICATION_STATUSES = ("pending", "approved", "declined")
WITHDRAWAL_DECISIONS = ("approve", "decline")


@dataclass(slots=True)
class TransitionPlan:
    """Rows produced by one engine operation, persisted together or not at all."""

    application: dict[str, Any] | None = None
    created_application: bool = False
    cascaded: list[dict[str, Any]] = field(default_factory=list)
    archive_entries: list[dict[str, Any]] = field(default_factory=list)
    posting: dict[str, Any] | None = None
    created_notifications: list[dict[str, Any]] = field(default_factory=list)
    updated_notifications: list[dict[str, Any]] = field(default_factory=list)

    @property
    def auto_declined_count(self) -> int:
        return sum(1 for row in self.cascaded if row.get("auto_declined"))

    def changed_applications(self) -> list[dict[str, Any]]:
        rows = list(self.cascaded)
        if self.application is not None:
            rows.insert(0, self.application)
        return rows


def validate_application_transition(*, from_state: str, to_state: str) -> None:
    if from_state in TERMINAL_APPLICATION_STATES:
        raise InvalidTransitionError(
            f"this application was already resolved ({from_state})",
            current_state=from_state,
        )
    allowed = ALLOWED_APPLICATION_TRANSITIONS.get(from_state)
    if not allowed or to_state not in allowed:
        raise InvalidTransitionError(
            f"invalid application transition: {from_state} -> {to_state}",
            current_state=from_state,
        )


def holds_posting_match(application: dict[str, Any]) -> bool:
    """Whether this record is the posting's accepted candidate.

    A record keeps the match while it is approved, after completion, and while
    an approved candidate's withdrawal request awaits review.
    """
    status = application.get("status")
    if status in {"approved", "completed"}:
        return True
    return status == "withdrawal-requested" and application.get("pre_withdrawal_status") == "approved"


def derive_candidate_status(applications: Iterable[dict[str, Any]]) -> str:
    holders = [row for row in applications if holds_posting_match(row)]
    if len(holders) > 1:
        raise RepositoryConflictError("posting has more than one accepted application")
    return "matched" if holders else "open"


def derive_posting_status(*, posting: dict[str, Any], applications: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Return the posting with its status brought in line with its applications.

    ``hold`` and ``closed`` are administrative overlays: a closed posting is left
    alone and a held posting only has its restore target updated.
    """
    synced = dict(posting)
    if synced["status"] == "closed":
        return synced
    derived = derive_candidate_status(applications)
    if synced["status"] == "hold":
        synced["held_from_status"] = derived
    else:
        synced["status"] = derived
        synced["held_from_status"] = None
    return synced


def effective_posting_status(posting: dict[str, Any]) -> str:
    if posting["status"] == "hold":
        return posting.get("held_from_status") or "open"
    return posting["status"]


def posting_label(posting: dict[str, Any]) -> str:
    title = (posting.get("title") or "").strip()
    return title or "the posting"


def build_auto_decline_reason(posting: dict[str, Any]) -> str:
    reference = format_posting_reference(posting["id"], posting_label(posting))
    return (
        f"Another applicant has been approved for {reference}. "
        "Unfortunately, we cannot proceed with your application at this time."
    )


def build_archive_entry(application: dict[str, Any], *, archived_at: datetime) -> dict[str, Any]:
    entry = {key: value for key, value in application.items() if key not in {"id", "updated_at"}}
    entry["id"] = str(uuid4())
    entry["original_application_id"] = application["id"]
    entry["archived_at"] = archived_at
    return entry


def new_posting(
    *,
    owner_id: str,
    title: str,
    description: str | None,
    kind: str,
    details: dict[str, Any] | None,
    now: datetime,
) -> dict[str, Any]:
    normalized_title = title.strip()
    if not normalized_title:
        raise RepositoryValidationError("title must be a non-empty string")
    return {
        "id": str(uuid4()),
        "owner_id": owner_id,
        "title": normalized_title,
        "description": description,
        "kind": kind,
        "details": dict(details or {}),
        "status": "open",
        "held_from_status": None,
        "applicant_ids": [],
        "created_at": now,
        "updated_at": now,
    }


def plan_submission(
    *,
    posting: dict[str, Any],
    existing: Iterable[dict[str, Any]],
    candidate_id: str,
    now: datetime,
) -> TransitionPlan:
    if posting["status"] != "open":
        raise InvalidTransitionError(
            f"posting is not accepting applications ({posting['status']})",
            current_state=posting["status"],
        )
    if any(row["candidate_id"] == candidate_id for row in existing):
        raise RepositoryConflictError("candidate has already applied to this posting")

    application = {
        "id": str(uuid4()),
        "posting_id": posting["id"],
        "candidate_id": candidate_id,
        "status": "pending",
        "applied_at": now,
        "decline_reason": None,
        "auto_declined": False,
        "declined_at": None,
        "completed_at": None,
        "pre_withdrawal_status": None,
        "withdrawal_requested_at": None,
        "withdrawal_requested_by": None,
        "withdrawal_note": None,
        "withdrawal_approved_at": None,
        "withdrawal_approved_by": None,
        "withdrawal_rejected_at": None,
        "withdrawal_rejected_by": None,
        "updated_at": now,
    }
    updated_posting = dict(posting)
    applicant_ids = list(posting.get("applicant_ids") or [])
    if candidate_id not in applicant_ids:
        applicant_ids.append(candidate_id)
    updated_posting["applicant_ids"] = applicant_ids
    updated_posting["updated_at"] = now
    return TransitionPlan(application=application, created_application=True, posting=updated_posting)


def _auto_decline(application: dict[str, Any], *, reason: str, now: datetime) -> dict[str, Any]:
    declined = dict(application)
    declined["status"] = "declined"
    declined["auto_declined"] = True
    declined["decline_reason"] = reason
    declined["declined_at"] = now
    declined["updated_at"] = now
    return declined


def plan_approval(
    *,
    application: dict[str, Any],
    posting: dict[str, Any],
    siblings: Iterable[dict[str, Any]],
    now: datetime,
) -> TransitionPlan:
    validate_application_transition(from_state=application["status"], to_state="approved")

    if posting["status"] in {"hold", "closed"}:
        raise InvalidTransitionError(
            f"posting is {posting['status']}; applications cannot be approved",
            current_state=posting["status"],
        )

    others = [row for row in siblings if row["id"] != application["id"]]
    if posting["status"] == "matched" or any(holds_posting_match(row) for row in others):
        raise InvalidTransitionError("posting already matched", current_state="matched")

    approved = dict(application)
    approved["status"] = "approved"
    approved["updated_at"] = now

    reason = build_auto_decline_reason(posting)
    cascaded = [_auto_decline(row, reason=reason, now=now) for row in others if row["status"] == "pending"]
    archive_entries = [build_archive_entry(row, archived_at=now) for row in cascaded]

    cascaded_ids = {row["id"] for row in cascaded}
    after = [approved, *cascaded, *(row for row in others if row["id"] not in cascaded_ids)]
    synced = derive_posting_status(posting=posting, applications=after)
    synced["updated_at"] = now

    return TransitionPlan(
        application=approved,
        cascaded=cascaded,
        archive_entries=archive_entries,
        posting=synced,
    )


def plan_decline(*, application: dict[str, Any], reason: str, now: datetime) -> TransitionPlan:
    if not reason or not reason.strip():
        raise RepositoryValidationError("decline reason must be a non-empty string")
    validate_application_transition(from_state=application["status"], to_state="declined")

    declined = dict(application)
    declined["status"] = "declined"
    declined["auto_declined"] = False
    declined["decline_reason"] = reason
    declined["declined_at"] = now
    declined["updated_at"] = now
    return TransitionPlan(application=declined, archive_entries=[build_archive_entry(declined, archived_at=now)])


def plan_completion(*, application: dict[str, Any], now: datetime) -> TransitionPlan:
    validate_application_transition(from_state=application["status"], to_state="completed")
    completed = dict(application)
    completed["status"] = "completed"
    completed["completed_at"] = now
    completed["updated_at"] = now
    return TransitionPlan(application=completed)


def normalize_withdrawal_note(note: str | None, *, max_length: int) -> str:
    normalized = (note or "").strip()
    if len(normalized) > max_length:
        raise RepositoryValidationError(f"withdrawal note must be at most {max_length} characters")
    return normalized


def plan_withdrawal_request(
    *,
    application: dict[str, Any],
    candidate_id: str,
    candidate_name: str | None,
    note: str | None,
    now: datetime,
    note_max_length: int,
) -> TransitionPlan:
    if application["candidate_id"] != candidate_id:
        raise RepositoryForbiddenError("application belongs to another candidate")
    normalized_note = normalize_withdrawal_note(note, max_length=note_max_length)

    from_state = application["status"]
    if from_state == "withdrawal-requested":
        raise InvalidTransitionError("withdrawal request already pending", current_state=from_state)
    if from_state not in WITHDRAWABLE_APPLICATION_STATES:
        raise InvalidTransitionError(
            f"application cannot be withdrawn from {from_state}",
            current_state=from_state,
        )

    requested = dict(application)
    requested["status"] = "withdrawal-requested"
    requested["pre_withdrawal_status"] = from_state
    requested["withdrawal_requested_at"] = now
    requested["withdrawal_requested_by"] = candidate_id
    requested["withdrawal_note"] = normalized_note
    requested["withdrawal_rejected_at"] = None
    requested["withdrawal_rejected_by"] = None
    requested["updated_at"] = now

    notification = {
        "id": str(uuid4()),
        "type": "withdrawal-request",
        "application_id": application["id"],
        "candidate_id": candidate_id,
        "candidate_name": candidate_name,
        "posting_id": application["posting_id"],
        "note": normalized_note,
        "status": "pending",
        "read": False,
        "requested_at": now,
        "processed_at": None,
        "processed_by": None,
        "admin_note": None,
        "created_at": now,
    }
    return TransitionPlan(application=requested, created_notifications=[notification])


def plan_withdrawal_resolution(
    *,
    application: dict[str, Any],
    posting: dict[str, Any],
    siblings: Iterable[dict[str, Any]],
    notification: dict[str, Any] | None,
    decision: str,
    admin_id: str,
    admin_note: str | None,
    now: datetime,
    note_max_length: int,
) -> TransitionPlan:
    if decision not in WITHDRAWAL_DECISIONS:
        raise RepositoryValidationError("decision must be one of: approve, decline")
    normalized_admin_note = normalize_withdrawal_note(admin_note, max_length=note_max_length) or None

    from_state = application["status"]
    if from_state != "withdrawal-requested":
        raise InvalidTransitionError(
            f"application has no pending withdrawal request ({from_state})",
            current_state=from_state,
        )
    if notification is None:
        raise RepositoryNotFoundError("withdrawal notification not found")

    others = [row for row in siblings if row["id"] != application["id"]]
    resolved = dict(application)
    resolved["updated_at"] = now
    archive_entries: list[dict[str, Any]] = []
    updated_posting = dict(posting)

    if decision == "approve":
        validate_application_transition(from_state=from_state, to_state="withdrawn")
        resolved["status"] = "withdrawn"
        resolved["withdrawal_approved_at"] = now
        resolved["withdrawal_approved_by"] = admin_id
        archive_entries.append(build_archive_entry(resolved, archived_at=now))
        updated_posting["applicant_ids"] = [
            candidate for candidate in (posting.get("applicant_ids") or []) if candidate != application["candidate_id"]
        ]
        notice_status = "approved"
        notice_type = "withdrawal-approved"
    else:
        restored = application.get("pre_withdrawal_status") or "pending"
        validate_application_transition(from_state=from_state, to_state=restored)
        resolved["status"] = restored
        resolved["pre_withdrawal_status"] = None
        resolved["withdrawal_requested_at"] = None
        resolved["withdrawal_requested_by"] = None
        resolved["withdrawal_note"] = None
        resolved["withdrawal_rejected_at"] = now
        resolved["withdrawal_rejected_by"] = admin_id
        notice_status = "declined"
        notice_type = "withdrawal-declined"
        # A competing candidate may have been approved while this request was open.
        if restored == "pending" and any(holds_posting_match(row) for row in others):
            resolved = _auto_decline(resolved, reason=build_auto_decline_reason(posting), now=now)
            archive_entries.append(build_archive_entry(resolved, archived_at=now))

    updated_posting = derive_posting_status(posting=updated_posting, applications=[resolved, *others])
    updated_posting["updated_at"] = now

    processed = dict(notification)
    processed["status"] = notice_status
    processed["processed_at"] = now
    processed["processed_by"] = admin_id
    processed["admin_note"] = normalized_admin_note

    resolution_notice = {
        "id": str(uuid4()),
        "type": notice_type,
        "application_id": application["id"],
        "candidate_id": application["candidate_id"],
        "candidate_name": notification.get("candidate_name"),
        "posting_id": application["posting_id"],
        "note": notification.get("note"),
        "status": notice_status,
        "read": False,
        "requested_at": notification["requested_at"],
        "processed_at": now,
        "processed_by": admin_id,
        "admin_note": normalized_admin_note,
        "created_at": now,
    }

    return TransitionPlan(
        application=resolved,
        archive_entries=archive_entries,
        posting=updated_posting,
        created_notifications=[resolution_notice],
        updated_notifications=[processed],
    )


def plan_posting_hold(*, posting: dict[str, Any], now: datetime) -> dict[str, Any]:
    if posting["status"] not in HOLDABLE_POSTING_STATUSES:
        raise InvalidTransitionError(
            f"posting cannot be put on hold from {posting['status']}",
            current_state=posting["status"],
        )
    held = dict(posting)
    held["held_from_status"] = posting["status"]
    held["status"] = "hold"
    held["updated_at"] = now
    return held


def plan_posting_release(*, posting: dict[str, Any], now: datetime) -> dict[str, Any]:
    if posting["status"] != "hold":
        raise InvalidTransitionError("posting is not on hold", current_state=posting["status"])
    released = dict(posting)
    released["status"] = posting.get("held_from_status") or "open"
    released["held_from_status"] = None
    released["updated_at"] = now
    return released


def plan_posting_close(*, posting: dict[str, Any], now: datetime) -> dict[str, Any]:
    if posting["status"] == "closed":
        raise InvalidTransitionError("posting is already closed", current_state="closed")
    closed = dict(posting)
    closed["status"] = "closed"
    closed["held_from_status"] = None
    closed["updated_at"] = now
    return closed


def compute_retry_delay_seconds(*, attempt: int, base_seconds: float) -> float:
    if base_seconds <= 0:
        return 0.0
    jitter = random.uniform(0.0, 0.5)
    return base_seconds * (2 ** max(0, attempt - 1)) * (1.0 + jitter)


async def run_with_conflict_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay_seconds: float,
) -> T:
    """Run ``operation``, retrying when the storage layer reports write contention."""
    max_attempts = max(1, attempts)
    attempt = 1
    while True:
        try:
            return await operation()
        except RepositoryPersistenceConflictError:
            if attempt >= max_attempts:
                logger.warning("persistence conflict not resolved after %s attempts", attempt)
                raise
            delay = compute_retry_delay_seconds(attempt=attempt, base_seconds=base_delay_seconds)
            logger.info("persistence conflict on attempt=%s; retry in %.3fs", attempt, delay)
            await asyncio.sleep(delay)
            attempt += 1
