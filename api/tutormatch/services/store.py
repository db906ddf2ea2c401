from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from tutormatch.services.lifecycle import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    TransitionPlan,
    new_posting,
    plan_approval,
    plan_completion,
    plan_decline,
    plan_posting_close,
    plan_posting_hold,
    plan_posting_release,
    plan_submission,
    plan_withdrawal_request,
    plan_withdrawal_resolution,
)


class InMemoryStore:
    """Process-local store used when no database is configured.

    Writers on the same posting are serialized by a per-posting lock. Each
    operation validates and builds its whole plan first, then commits it with
    no await in between, so concurrent readers never see half of a cascade.
    """

    def __init__(self, *, withdrawal_note_max_length: int = 500) -> None:
        self.withdrawal_note_max_length = withdrawal_note_max_length
        self.postings: dict[str, dict[str, Any]] = {}
        self.applications: dict[str, dict[str, Any]] = {}
        self.archive: dict[str, dict[str, Any]] = {}
        self.notifications: dict[str, dict[str, Any]] = {}
        self._archive_by_application: dict[str, str] = {}
        self._posting_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def close(self) -> None:
        return None

    async def create_posting(
        self,
        *,
        owner_id: str,
        title: str,
        description: str | None = None,
        kind: str = "tuition",
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        posting = new_posting(
            owner_id=owner_id,
            title=title,
            description=description,
            kind=kind,
            details=details,
            now=_utcnow(),
        )
        self.postings[posting["id"]] = posting
        return self._posting_out(posting)

    async def get_posting(self, posting_id: str) -> dict[str, Any]:
        return self._posting_out(self._require_posting(posting_id), with_counts=True)

    async def list_postings(
        self,
        *,
        limit: int,
        offset: int,
        status: str | None = None,
        owner_id: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.postings.values()
            if (status is None or row["status"] == status) and (owner_id is None or row["owner_id"] == owner_id)
        ]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return [self._posting_out(row) for row in rows[offset : offset + limit]]

    async def hold_posting(self, *, posting_id: str) -> dict[str, Any]:
        async with self._posting_locks[posting_id]:
            posting = plan_posting_hold(posting=self._require_posting(posting_id), now=_utcnow())
            self.postings[posting_id] = posting
            return self._posting_out(posting, with_counts=True)

    async def release_posting_hold(self, *, posting_id: str) -> dict[str, Any]:
        async with self._posting_locks[posting_id]:
            posting = plan_posting_release(posting=self._require_posting(posting_id), now=_utcnow())
            self.postings[posting_id] = posting
            return self._posting_out(posting, with_counts=True)

    async def close_posting(self, *, posting_id: str) -> dict[str, Any]:
        async with self._posting_locks[posting_id]:
            posting = plan_posting_close(posting=self._require_posting(posting_id), now=_utcnow())
            self.postings[posting_id] = posting
            return self._posting_out(posting, with_counts=True)

    async def submit_application(self, *, posting_id: str, candidate_id: str) -> dict[str, Any]:
        async with self._posting_locks[posting_id]:
            posting = self._require_posting(posting_id)
            plan = plan_submission(
                posting=posting,
                existing=self._posting_applications(posting_id),
                candidate_id=candidate_id,
                now=_utcnow(),
            )
            self._commit(plan)
            return dict(plan.application)

    async def get_application(self, application_id: str) -> dict[str, Any]:
        return dict(self._require_application(application_id))

    async def list_posting_applications(
        self,
        *,
        posting_id: str,
        status: str | None = None,
        auto_declined: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        self._require_posting(posting_id)
        rows = [
            row
            for row in self._posting_applications(posting_id)
            if (status is None or row["status"] == status)
            and (auto_declined is None or bool(row["auto_declined"]) == auto_declined)
        ]
        return [dict(row) for row in rows[offset : offset + limit]]

    async def list_candidate_applications(
        self,
        *,
        candidate_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [row for row in self.applications.values() if row["candidate_id"] == candidate_id]
        rows.sort(key=lambda row: row["applied_at"], reverse=True)
        return [dict(row) for row in rows[offset : offset + limit]]

    async def list_withdrawal_requests(self, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        rows = [row for row in self.applications.values() if row["status"] == "withdrawal-requested"]
        rows.sort(key=lambda row: row["withdrawal_requested_at"])
        return [dict(row) for row in rows[offset : offset + limit]]

    async def list_posting_archive(
        self,
        *,
        posting_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        self._require_posting(posting_id)
        rows = [row for row in self.archive.values() if row["posting_id"] == posting_id]
        rows.sort(key=lambda row: row["archived_at"], reverse=True)
        return [dict(row) for row in rows[offset : offset + limit]]

    async def approve_application(self, *, application_id: str) -> dict[str, Any]:
        posting_id = self._require_application(application_id)["posting_id"]
        async with self._posting_locks[posting_id]:
            application = self._require_application(application_id)
            plan = plan_approval(
                application=application,
                posting=self._require_posting(posting_id),
                siblings=self._posting_applications(posting_id),
                now=_utcnow(),
            )
            self._commit(plan)
            return {"application": dict(plan.application), "auto_declined_count": plan.auto_declined_count}

    async def decline_application(self, *, application_id: str, reason: str) -> dict[str, Any]:
        posting_id = self._require_application(application_id)["posting_id"]
        async with self._posting_locks[posting_id]:
            plan = plan_decline(application=self._require_application(application_id), reason=reason, now=_utcnow())
            self._commit(plan)
            return dict(plan.application)

    async def complete_application(self, *, application_id: str) -> dict[str, Any]:
        posting_id = self._require_application(application_id)["posting_id"]
        async with self._posting_locks[posting_id]:
            plan = plan_completion(application=self._require_application(application_id), now=_utcnow())
            self._commit(plan)
            return dict(plan.application)

    async def request_withdrawal(
        self,
        *,
        application_id: str,
        candidate_id: str,
        note: str | None,
        candidate_name: str | None = None,
    ) -> dict[str, Any]:
        posting_id = self._require_application(application_id)["posting_id"]
        async with self._posting_locks[posting_id]:
            plan = plan_withdrawal_request(
                application=self._require_application(application_id),
                candidate_id=candidate_id,
                candidate_name=candidate_name,
                note=note,
                now=_utcnow(),
                note_max_length=self.withdrawal_note_max_length,
            )
            self._commit(plan)
            return dict(plan.application)

    async def resolve_withdrawal(
        self,
        *,
        application_id: str,
        decision: str,
        admin_id: str,
        admin_note: str | None = None,
    ) -> dict[str, Any]:
        posting_id = self._require_application(application_id)["posting_id"]
        async with self._posting_locks[posting_id]:
            plan = plan_withdrawal_resolution(
                application=self._require_application(application_id),
                posting=self._require_posting(posting_id),
                siblings=self._posting_applications(posting_id),
                notification=self._pending_withdrawal_notification(application_id),
                decision=decision,
                admin_id=admin_id,
                admin_note=admin_note,
                now=_utcnow(),
                note_max_length=self.withdrawal_note_max_length,
            )
            self._commit(plan)
            return dict(plan.application)

    async def list_notifications(
        self,
        *,
        status: str | None = None,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        rows = [
            row
            for row in self.notifications.values()
            if (status is None or row["status"] == status) and (not unread_only or not row["read"])
        ]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return {"items": [dict(row) for row in rows[offset : offset + limit]], "total": len(rows)}

    async def mark_notifications_read(
        self,
        *,
        notification_ids: list[str] | None = None,
        mark_all: bool = False,
    ) -> int:
        if mark_all:
            targets = [row for row in self.notifications.values() if not row["read"]]
        elif notification_ids:
            targets = [
                self.notifications[notification_id]
                for notification_id in dict.fromkeys(notification_ids)
                if notification_id in self.notifications and not self.notifications[notification_id]["read"]
            ]
        else:
            raise RepositoryValidationError("notification_ids or mark_all is required")
        for row in targets:
            self.notifications[row["id"]] = {**row, "read": True}
        return len(targets)

    def _commit(self, plan: TransitionPlan) -> None:
        for entry in plan.archive_entries:
            if entry["original_application_id"] in self._archive_by_application:
                raise RepositoryConflictError("application already has an archive entry")
        for notification in plan.updated_notifications:
            if notification["id"] not in self.notifications:
                raise RepositoryNotFoundError("notification not found")

        for row in plan.changed_applications():
            self.applications[row["id"]] = row
        for entry in plan.archive_entries:
            self.archive[entry["id"]] = entry
            self._archive_by_application[entry["original_application_id"]] = entry["id"]
        if plan.posting is not None:
            self.postings[plan.posting["id"]] = plan.posting
        for notification in [*plan.updated_notifications, *plan.created_notifications]:
            self.notifications[notification["id"]] = notification

    def _require_posting(self, posting_id: str) -> dict[str, Any]:
        posting = self.postings.get(posting_id)
        if posting is None:
            raise RepositoryNotFoundError("posting not found")
        return posting

    def _require_application(self, application_id: str) -> dict[str, Any]:
        application = self.applications.get(application_id)
        if application is None:
            raise RepositoryNotFoundError("application not found")
        return application

    def _posting_applications(self, posting_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self.applications.values() if row["posting_id"] == posting_id]
        rows.sort(key=lambda row: row["applied_at"])
        return rows

    def _pending_withdrawal_notification(self, application_id: str) -> dict[str, Any] | None:
        return next(
            (
                row
                for row in self.notifications.values()
                if row["application_id"] == application_id
                and row["type"] == "withdrawal-request"
                and row["status"] == "pending"
            ),
            None,
        )

    def _posting_out(self, posting: dict[str, Any], *, with_counts: bool = False) -> dict[str, Any]:
        row = dict(posting)
        row["applicant_ids"] = list(posting.get("applicant_ids") or [])
        row["application_counts"] = {}
        if with_counts:
            counts: dict[str, int] = {}
            for application in self._posting_applications(posting["id"]):
                counts[application["status"]] = counts.get(application["status"], 0) + 1
            row["application_counts"] = counts
        return row


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
