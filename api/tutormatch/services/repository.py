from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from tutormatch.core.config import get_settings
from tutormatch.services.lifecycle import (
    InvalidTransitionError,
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryPersistenceConflictError,
    RepositoryUnavailableError,
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
    run_with_conflict_retry,
)
from tutormatch.services.store import InMemoryStore

__all__ = [
    "InvalidTransitionError",
    "PostgresRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryForbiddenError",
    "RepositoryNotFoundError",
    "RepositoryPersistenceConflictError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "get_repository",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POSTING_SELECT = """
  p.id::text as id,
  p.owner_id,
  p.title,
  p.description,
  p.kind,
  p.details,
  p.status::text as status,
  p.held_from_status::text as held_from_status,
  p.applicant_ids,
  p.created_at,
  p.updated_at
"""

_APPLICATION_SELECT = """
  a.id::text as id,
  a.posting_id::text as posting_id,
  a.candidate_id,
  a.status::text as status,
  a.applied_at,
  a.decline_reason,
  a.auto_declined,
  a.declined_at,
  a.completed_at,
  a.pre_withdrawal_status::text as pre_withdrawal_status,
  a.withdrawal_requested_at,
  a.withdrawal_requested_by,
  a.withdrawal_note,
  a.withdrawal_approved_at,
  a.withdrawal_approved_by,
  a.withdrawal_rejected_at,
  a.withdrawal_rejected_by,
  a.updated_at
"""

_NOTIFICATION_SELECT = """
  n.id::text as id,
  n.type::text as type,
  n.application_id::text as application_id,
  n.candidate_id,
  n.candidate_name,
  n.posting_id::text as posting_id,
  n.note,
  n.status::text as status,
  n.read,
  n.requested_at,
  n.processed_at,
  n.processed_by,
  n.admin_note,
  n.created_at
"""

_WITHDRAWAL_FIELDS = (
    "pre_withdrawal_status",
    "withdrawal_requested_at",
    "withdrawal_requested_by",
    "withdrawal_note",
    "withdrawal_approved_at",
    "withdrawal_approved_by",
    "withdrawal_rejected_at",
    "withdrawal_rejected_by",
)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float,
        persistence_retry_attempts: int,
        persistence_retry_base_seconds: float,
        withdrawal_note_max_length: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self.persistence_retry_attempts = max(1, persistence_retry_attempts)
        self.persistence_retry_base_seconds = max(0.0, persistence_retry_base_seconds)
        self.withdrawal_note_max_length = withdrawal_note_max_length
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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

        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            await conn.execute(
                """
                insert into postings (
                  id,
                  owner_id,
                  title,
                  description,
                  kind,
                  details,
                  status,
                  held_from_status,
                  applicant_ids,
                  created_at,
                  updated_at
                )
                values ($1::uuid, $2, $3, $4, $5, $6::jsonb, 'open', null, '{}', $7, $7)
                """,
                posting["id"],
                posting["owner_id"],
                posting["title"],
                posting["description"],
                posting["kind"],
                json.dumps(posting["details"]),
                posting["created_at"],
            )
            row = await self._fetch_posting_row(conn=conn, posting_id=posting["id"])
            if not row:
                raise RepositoryConflictError("failed to create posting")
            return self._posting_row_to_dict(row)

        return await self._run_unit_of_work(work)

    async def get_posting(self, posting_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await self._fetch_posting_row(conn=pool, posting_id=posting_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("posting not found") from exc
        if not row:
            raise RepositoryNotFoundError("posting not found")
        return self._posting_row_to_dict(row)

    async def list_postings(
        self,
        *,
        limit: int,
        offset: int,
        status: str | None = None,
        owner_id: str | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              {_POSTING_SELECT},
              '{{}}'::jsonb as application_counts
            from postings p
            where ($3::text is null or p.status::text = $3::text)
              and ($4::text is null or p.owner_id = $4::text)
            order by p.created_at desc
            limit $1
            offset $2
            """,
            limit,
            offset,
            status,
            owner_id,
        )
        return [self._posting_row_to_dict(row) for row in rows]

    async def hold_posting(self, *, posting_id: str) -> dict[str, Any]:
        return await self._update_posting_overlay(posting_id=posting_id, planner=plan_posting_hold)

    async def release_posting_hold(self, *, posting_id: str) -> dict[str, Any]:
        return await self._update_posting_overlay(posting_id=posting_id, planner=plan_posting_release)

    async def close_posting(self, *, posting_id: str) -> dict[str, Any]:
        return await self._update_posting_overlay(posting_id=posting_id, planner=plan_posting_close)

    async def submit_application(self, *, posting_id: str, candidate_id: str) -> dict[str, Any]:
        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            posting = await self._lock_posting(conn=conn, posting_id=posting_id)
            existing = await self._lock_posting_applications(conn=conn, posting_id=posting_id)
            plan = plan_submission(posting=posting, existing=existing, candidate_id=candidate_id, now=_utcnow())
            await self._persist_plan(conn=conn, plan=plan)
            return plan.application

        return await self._run_unit_of_work(work)

    async def get_application(self, application_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_APPLICATION_SELECT}
                from applications a
                where a.id = $1::uuid
                """,
                application_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("application not found") from exc
        if not row:
            raise RepositoryNotFoundError("application not found")
        return self._application_row_to_dict(row)

    async def list_posting_applications(
        self,
        *,
        posting_id: str,
        status: str | None = None,
        auto_declined: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    exists = await conn.fetchval("select 1 from postings where id = $1::uuid", posting_id)
                    if not exists:
                        raise RepositoryNotFoundError("posting not found")
                    rows = await conn.fetch(
                        f"""
                        select {_APPLICATION_SELECT}
                        from applications a
                        where a.posting_id = $1::uuid
                          and ($2::text is null or a.status::text = $2::text)
                          and ($3::boolean is null or a.auto_declined = $3::boolean)
                        order by a.applied_at asc, a.id asc
                        limit $4
                        offset $5
                        """,
                        posting_id,
                        status,
                        auto_declined,
                        limit,
                        offset,
                    )
                    return [self._application_row_to_dict(row) for row in rows]
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("posting not found") from exc

    async def list_candidate_applications(
        self,
        *,
        candidate_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_APPLICATION_SELECT}
            from applications a
            where a.candidate_id = $1
            order by a.applied_at desc, a.id desc
            limit $2
            offset $3
            """,
            candidate_id,
            limit,
            offset,
        )
        return [self._application_row_to_dict(row) for row in rows]

    async def list_withdrawal_requests(self, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_APPLICATION_SELECT}
            from applications a
            where a.status = 'withdrawal-requested'
            order by a.withdrawal_requested_at asc, a.id asc
            limit $1
            offset $2
            """,
            limit,
            offset,
        )
        return [self._application_row_to_dict(row) for row in rows]

    async def list_posting_archive(
        self,
        *,
        posting_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    exists = await conn.fetchval("select 1 from postings where id = $1::uuid", posting_id)
                    if not exists:
                        raise RepositoryNotFoundError("posting not found")
                    rows = await conn.fetch(
                        """
                        select
                          id::text as id,
                          original_application_id::text as original_application_id,
                          posting_id::text as posting_id,
                          candidate_id,
                          status::text as status,
                          applied_at,
                          archived_at,
                          decline_reason,
                          auto_declined,
                          declined_at,
                          completed_at,
                          pre_withdrawal_status::text as pre_withdrawal_status,
                          withdrawal_requested_at,
                          withdrawal_requested_by,
                          withdrawal_note,
                          withdrawal_approved_at,
                          withdrawal_approved_by,
                          withdrawal_rejected_at,
                          withdrawal_rejected_by
                        from application_archive
                        where posting_id = $1::uuid
                        order by archived_at desc, id desc
                        limit $2
                        offset $3
                        """,
                        posting_id,
                        limit,
                        offset,
                    )
                    return [dict(row) for row in rows]
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("posting not found") from exc

    async def approve_application(self, *, application_id: str) -> dict[str, Any]:
        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            posting_id = await self._resolve_application_posting_id(conn=conn, application_id=application_id)
            posting = await self._lock_posting(conn=conn, posting_id=posting_id)
            siblings = await self._lock_posting_applications(conn=conn, posting_id=posting_id)
            application = self._pick_application(siblings, application_id)
            plan = plan_approval(application=application, posting=posting, siblings=siblings, now=_utcnow())
            await self._persist_plan(conn=conn, plan=plan)
            return {"application": plan.application, "auto_declined_count": plan.auto_declined_count}

        return await self._run_unit_of_work(work)

    async def decline_application(self, *, application_id: str, reason: str) -> dict[str, Any]:
        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            posting_id = await self._resolve_application_posting_id(conn=conn, application_id=application_id)
            await self._lock_posting(conn=conn, posting_id=posting_id)
            application = await self._lock_application(conn=conn, application_id=application_id)
            plan = plan_decline(application=application, reason=reason, now=_utcnow())
            await self._persist_plan(conn=conn, plan=plan)
            return plan.application

        return await self._run_unit_of_work(work)

    async def complete_application(self, *, application_id: str) -> dict[str, Any]:
        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            posting_id = await self._resolve_application_posting_id(conn=conn, application_id=application_id)
            await self._lock_posting(conn=conn, posting_id=posting_id)
            application = await self._lock_application(conn=conn, application_id=application_id)
            plan = plan_completion(application=application, now=_utcnow())
            await self._persist_plan(conn=conn, plan=plan)
            return plan.application

        return await self._run_unit_of_work(work)

    async def request_withdrawal(
        self,
        *,
        application_id: str,
        candidate_id: str,
        note: str | None,
        candidate_name: str | None = None,
    ) -> dict[str, Any]:
        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            posting_id = await self._resolve_application_posting_id(conn=conn, application_id=application_id)
            await self._lock_posting(conn=conn, posting_id=posting_id)
            application = await self._lock_application(conn=conn, application_id=application_id)
            plan = plan_withdrawal_request(
                application=application,
                candidate_id=candidate_id,
                candidate_name=candidate_name,
                note=note,
                now=_utcnow(),
                note_max_length=self.withdrawal_note_max_length,
            )
            await self._persist_plan(conn=conn, plan=plan)
            return plan.application

        return await self._run_unit_of_work(work)

    async def resolve_withdrawal(
        self,
        *,
        application_id: str,
        decision: str,
        admin_id: str,
        admin_note: str | None = None,
    ) -> dict[str, Any]:
        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            posting_id = await self._resolve_application_posting_id(conn=conn, application_id=application_id)
            posting = await self._lock_posting(conn=conn, posting_id=posting_id)
            siblings = await self._lock_posting_applications(conn=conn, posting_id=posting_id)
            application = self._pick_application(siblings, application_id)
            notification_row = await conn.fetchrow(
                f"""
                select {_NOTIFICATION_SELECT}
                from admin_notifications n
                where n.application_id = $1::uuid
                  and n.type = 'withdrawal-request'
                  and n.status = 'pending'
                for update
                """,
                application_id,
            )
            plan = plan_withdrawal_resolution(
                application=application,
                posting=posting,
                siblings=siblings,
                notification=dict(notification_row) if notification_row else None,
                decision=decision,
                admin_id=admin_id,
                admin_note=admin_note,
                now=_utcnow(),
                note_max_length=self.withdrawal_note_max_length,
            )
            await self._persist_plan(conn=conn, plan=plan)
            return plan.application

        return await self._run_unit_of_work(work)

    async def list_notifications(
        self,
        *,
        status: str | None = None,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                total = await conn.fetchval(
                    """
                    select count(*)
                    from admin_notifications n
                    where ($1::text is null or n.status::text = $1::text)
                      and ($2::boolean = false or n.read = false)
                    """,
                    status,
                    unread_only,
                )
                rows = await conn.fetch(
                    f"""
                    select {_NOTIFICATION_SELECT}
                    from admin_notifications n
                    where ($1::text is null or n.status::text = $1::text)
                      and ($2::boolean = false or n.read = false)
                    order by n.created_at desc, n.id desc
                    limit $3
                    offset $4
                    """,
                    status,
                    unread_only,
                    limit,
                    offset,
                )
        return {"items": [dict(row) for row in rows], "total": int(total or 0)}

    async def mark_notifications_read(
        self,
        *,
        notification_ids: list[str] | None = None,
        mark_all: bool = False,
    ) -> int:
        if not mark_all and not notification_ids:
            raise RepositoryValidationError("notification_ids or mark_all is required")
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                update admin_notifications
                set read = true
                where read = false
                  and ($1::boolean or id = any($2::uuid[]))
                returning id
                """,
                mark_all,
                list(notification_ids or []),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid notification id") from exc
        return len(rows)

    async def _update_posting_overlay(
        self,
        *,
        posting_id: str,
        planner: Callable[..., dict[str, Any]],
    ) -> dict[str, Any]:
        async def work(conn: asyncpg.Connection) -> dict[str, Any]:
            posting = await self._lock_posting(conn=conn, posting_id=posting_id)
            await self._write_posting(conn=conn, posting=planner(posting=posting, now=_utcnow()))
            row = await self._fetch_posting_row(conn=conn, posting_id=posting_id)
            if not row:
                raise RepositoryNotFoundError("posting not found")
            return self._posting_row_to_dict(row)

        return await self._run_unit_of_work(work)

    async def _run_unit_of_work(self, work: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
        pool = await self._get_pool()

        async def attempt() -> T:
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        return await work(conn)
            except (pg_exc.SerializationError, pg_exc.DeadlockDetectedError) as exc:
                raise RepositoryPersistenceConflictError("concurrent update detected; please retry") from exc
            except pg_exc.UniqueViolationError as exc:
                raise RepositoryConflictError("conflicting record already exists") from exc
            except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
                raise RepositoryNotFoundError("record not found") from exc

        return await run_with_conflict_retry(
            attempt,
            attempts=self.persistence_retry_attempts,
            base_delay_seconds=self.persistence_retry_base_seconds,
        )

    async def _resolve_application_posting_id(self, *, conn: asyncpg.Connection, application_id: str) -> str:
        posting_id = await conn.fetchval(
            "select posting_id::text from applications where id = $1::uuid",
            application_id,
        )
        if not posting_id:
            raise RepositoryNotFoundError("application not found")
        return str(posting_id)

    async def _lock_posting(self, *, conn: asyncpg.Connection, posting_id: str) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"""
            select
              {_POSTING_SELECT},
              '{{}}'::jsonb as application_counts
            from postings p
            where p.id = $1::uuid
            for update
            """,
            posting_id,
        )
        if not row:
            raise RepositoryNotFoundError("posting not found")
        return self._posting_row_to_dict(row)

    async def _lock_application(self, *, conn: asyncpg.Connection, application_id: str) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"""
            select {_APPLICATION_SELECT}
            from applications a
            where a.id = $1::uuid
            for update
            """,
            application_id,
        )
        if not row:
            raise RepositoryNotFoundError("application not found")
        return self._application_row_to_dict(row)

    async def _lock_posting_applications(self, *, conn: asyncpg.Connection, posting_id: str) -> list[dict[str, Any]]:
        rows = await conn.fetch(
            f"""
            select {_APPLICATION_SELECT}
            from applications a
            where a.posting_id = $1::uuid
            order by a.applied_at asc, a.id asc
            for update
            """,
            posting_id,
        )
        return [self._application_row_to_dict(row) for row in rows]

    @staticmethod
    def _pick_application(rows: list[dict[str, Any]], application_id: str) -> dict[str, Any]:
        application = next((row for row in rows if row["id"] == application_id), None)
        if application is None:
            raise RepositoryNotFoundError("application not found")
        return application

    async def _persist_plan(self, *, conn: asyncpg.Connection, plan: TransitionPlan) -> None:
        if plan.created_application and plan.application is not None:
            await self._insert_application(conn=conn, application=plan.application)
            cascaded = plan.cascaded
        else:
            cascaded = plan.changed_applications()
        for application in cascaded:
            await self._update_application(conn=conn, application=application)
        for entry in plan.archive_entries:
            await self._insert_archive_entry(conn=conn, entry=entry)
        if plan.posting is not None:
            await self._write_posting(conn=conn, posting=plan.posting)
        for notification in plan.updated_notifications:
            await self._update_notification(conn=conn, notification=notification)
        for notification in plan.created_notifications:
            await self._insert_notification(conn=conn, notification=notification)

    async def _insert_application(self, *, conn: asyncpg.Connection, application: dict[str, Any]) -> None:
        await conn.execute(
            """
            insert into applications (
              id,
              posting_id,
              candidate_id,
              status,
              applied_at,
              auto_declined,
              updated_at
            )
            values ($1::uuid, $2::uuid, $3, $4::application_status, $5, $6, $7)
            """,
            application["id"],
            application["posting_id"],
            application["candidate_id"],
            application["status"],
            application["applied_at"],
            bool(application["auto_declined"]),
            application["updated_at"],
        )

    async def _update_application(self, *, conn: asyncpg.Connection, application: dict[str, Any]) -> None:
        result = await conn.execute(
            """
            update applications
            set
              status = $2::application_status,
              decline_reason = $3,
              auto_declined = $4,
              declined_at = $5,
              completed_at = $6,
              pre_withdrawal_status = $7::application_status,
              withdrawal_requested_at = $8,
              withdrawal_requested_by = $9,
              withdrawal_note = $10,
              withdrawal_approved_at = $11,
              withdrawal_approved_by = $12,
              withdrawal_rejected_at = $13,
              withdrawal_rejected_by = $14,
              updated_at = $15
            where id = $1::uuid
            """,
            application["id"],
            application["status"],
            application["decline_reason"],
            bool(application["auto_declined"]),
            application["declined_at"],
            application["completed_at"],
            *(application[name] for name in _WITHDRAWAL_FIELDS),
            application["updated_at"],
        )
        if result != "UPDATE 1":
            raise RepositoryNotFoundError("application not found")

    async def _insert_archive_entry(self, *, conn: asyncpg.Connection, entry: dict[str, Any]) -> None:
        await conn.execute(
            """
            insert into application_archive (
              id,
              original_application_id,
              posting_id,
              candidate_id,
              status,
              applied_at,
              archived_at,
              decline_reason,
              auto_declined,
              declined_at,
              completed_at,
              pre_withdrawal_status,
              withdrawal_requested_at,
              withdrawal_requested_by,
              withdrawal_note,
              withdrawal_approved_at,
              withdrawal_approved_by,
              withdrawal_rejected_at,
              withdrawal_rejected_by
            )
            values (
              $1::uuid, $2::uuid, $3::uuid, $4, $5::application_status, $6, $7, $8, $9, $10, $11,
              $12::application_status, $13, $14, $15, $16, $17, $18, $19
            )
            """,
            entry["id"],
            entry["original_application_id"],
            entry["posting_id"],
            entry["candidate_id"],
            entry["status"],
            entry["applied_at"],
            entry["archived_at"],
            entry["decline_reason"],
            bool(entry["auto_declined"]),
            entry["declined_at"],
            entry["completed_at"],
            *(entry[name] for name in _WITHDRAWAL_FIELDS),
        )

    async def _write_posting(self, *, conn: asyncpg.Connection, posting: dict[str, Any]) -> None:
        await conn.execute(
            """
            update postings
            set
              status = $2::posting_status,
              held_from_status = $3::posting_status,
              applicant_ids = $4::text[],
              updated_at = $5
            where id = $1::uuid
            """,
            posting["id"],
            posting["status"],
            posting.get("held_from_status"),
            list(posting.get("applicant_ids") or []),
            posting["updated_at"],
        )

    async def _insert_notification(self, *, conn: asyncpg.Connection, notification: dict[str, Any]) -> None:
        await conn.execute(
            """
            insert into admin_notifications (
              id,
              type,
              application_id,
              candidate_id,
              candidate_name,
              posting_id,
              note,
              status,
              read,
              requested_at,
              processed_at,
              processed_by,
              admin_note,
              created_at
            )
            values (
              $1::uuid, $2::notification_type, $3::uuid, $4, $5, $6::uuid, $7,
              $8::notification_status, $9, $10, $11, $12, $13, $14
            )
            """,
            notification["id"],
            notification["type"],
            notification["application_id"],
            notification["candidate_id"],
            notification["candidate_name"],
            notification["posting_id"],
            notification["note"],
            notification["status"],
            bool(notification["read"]),
            notification["requested_at"],
            notification["processed_at"],
            notification["processed_by"],
            notification["admin_note"],
            notification["created_at"],
        )

    async def _update_notification(self, *, conn: asyncpg.Connection, notification: dict[str, Any]) -> None:
        result = await conn.execute(
            """
            update admin_notifications
            set
              status = $2::notification_status,
              processed_at = $3,
              processed_by = $4,
              admin_note = $5
            where id = $1::uuid
              and status = 'pending'
            """,
            notification["id"],
            notification["status"],
            notification["processed_at"],
            notification["processed_by"],
            notification["admin_note"],
        )
        if result != "UPDATE 1":
            raise RepositoryConflictError("withdrawal notification was already resolved")

    async def _fetch_posting_row(
        self,
        *,
        conn: asyncpg.Connection | asyncpg.Pool,
        posting_id: str,
    ) -> asyncpg.Record | None:
        return await conn.fetchrow(
            f"""
            select
              {_POSTING_SELECT},
              coalesce(
                (
                  select jsonb_object_agg(c.status, c.total)
                  from (
                    select a.status::text as status, count(*) as total
                    from applications a
                    where a.posting_id = p.id
                    group by a.status
                  ) c
                ),
                '{{}}'::jsonb
              ) as application_counts
            from postings p
            where p.id = $1::uuid
            """,
            posting_id,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("TM_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _posting_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "owner_id": row["owner_id"],
            "title": row["title"],
            "description": row["description"],
            "kind": row["kind"],
            "details": _coerce_json_dict(row["details"]),
            "status": row["status"],
            "held_from_status": row["held_from_status"],
            "applicant_ids": list(row["applicant_ids"] or []),
            "application_counts": {key: int(value) for key, value in _coerce_json_dict(row["application_counts"]).items()},
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _application_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        application = dict(row)
        application["auto_declined"] = bool(application["auto_declined"])
        return application


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if not isinstance(value, dict):
        return {}
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache
def get_repository() -> PostgresRepository | InMemoryStore:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("TM_DATABASE_URL not set; using the in-memory store")
        return InMemoryStore(withdrawal_note_max_length=settings.withdrawal_note_max_length)
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        persistence_retry_attempts=settings.persistence_retry_attempts,
        persistence_retry_base_seconds=settings.persistence_retry_base_seconds,
        withdrawal_note_max_length=settings.withdrawal_note_max_length,
    )
