from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest
from fastapi.testclient import TestClient

import tutormatch.core.security as security
from tutormatch.core.config import get_settings
from tutormatch.main import app
from tutormatch.services.repository import (
    InvalidTransitionError,
    PostgresRepository,
    RepositoryNotFoundError,
    get_repository,
)

MIGRATION_PATH = Path(__file__).resolve().parents[2] / "db" / "migrations" / "0001_matching_engine.sql"
AUTH = {"Authorization": "Bearer token"}

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("TM_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require TM_DATABASE_URL")
    _run(_ensure_schema(url))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_truncate_tables(database_url))


@pytest.fixture
def api_client(database_url: str) -> TestClient:
    os.environ["TM_DATABASE_URL"] = database_url
    get_settings.cache_clear()
    get_repository.cache_clear()

    with TestClient(app) as client:
        yield client

    get_repository.cache_clear()
    get_settings.cache_clear()


def test_approval_cascade_is_persisted(
    api_client: TestClient,
    database_url: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _configure_mock_human_auth(monkeypatch, role="requester", user_id="requester-1")
    posting_response = api_client.post("/postings", json={"title": "Physics A-level"}, headers=AUTH)
    assert posting_response.status_code == 201
    posting_id = posting_response.json()["id"]

    application_ids = []
    for candidate_id in ("cand-a", "cand-b", "cand-c"):
        _configure_mock_human_auth(monkeypatch, role="candidate", user_id=candidate_id)
        response = api_client.post(f"/postings/{posting_id}/applications", headers=AUTH)
        assert response.status_code == 201
        application_ids.append(response.json()["id"])

    duplicate = api_client.post(f"/postings/{posting_id}/applications", headers=AUTH)
    assert duplicate.status_code == 409

    _configure_mock_human_auth(monkeypatch, role="admin", user_id="admin-1")
    approve_response = api_client.post(f"/applications/{application_ids[0]}/approve", headers=AUTH)
    assert approve_response.status_code == 200
    assert approve_response.json()["auto_declined_count"] == 2

    posting = api_client.get(f"/postings/{posting_id}", headers=AUTH).json()
    assert posting["status"] == "matched"
    assert posting["applicant_ids"] == ["cand-a", "cand-b", "cand-c"]
    assert posting["application_counts"] == {"approved": 1, "declined": 2}

    archive_count = _run(
        _fetchval(
            database_url,
            "select count(*) from application_archive where posting_id = $1::uuid",
            posting_id,
        )
    )
    assert archive_count == 2

    malformed = api_client.get("/applications/not-a-uuid", headers=AUTH)
    assert malformed.status_code == 404


def test_withdrawal_flow_is_persisted(
    api_client: TestClient,
    database_url: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _configure_mock_human_auth(monkeypatch, role="requester", user_id="requester-1")
    posting_id = api_client.post("/postings", json={"title": "Chemistry"}, headers=AUTH).json()["id"]
    _configure_mock_human_auth(monkeypatch, role="candidate", user_id="cand-a")
    application_id = api_client.post(f"/postings/{posting_id}/applications", headers=AUTH).json()["id"]

    _configure_mock_human_auth(monkeypatch, role="admin", user_id="admin-1")
    assert api_client.post(f"/applications/{application_id}/approve", headers=AUTH).status_code == 200

    _configure_mock_human_auth(monkeypatch, role="candidate", user_id="cand-a")
    requested = api_client.post(
        f"/applications/{application_id}/withdrawal",
        json={"note": "schedule conflict"},
        headers=AUTH,
    )
    assert requested.status_code == 200

    _configure_mock_human_auth(monkeypatch, role="admin", user_id="admin-1")
    declined = api_client.post(
        f"/applications/{application_id}/withdrawal/resolve",
        json={"decision": "decline", "admin_note": "commitment stands"},
        headers=AUTH,
    )
    assert declined.status_code == 200
    assert declined.json()["status"] == "approved"

    _configure_mock_human_auth(monkeypatch, role="candidate", user_id="cand-a")
    assert api_client.post(f"/applications/{application_id}/withdrawal", json={}, headers=AUTH).status_code == 200

    _configure_mock_human_auth(monkeypatch, role="admin", user_id="admin-1")
    approved = api_client.post(
        f"/applications/{application_id}/withdrawal/resolve",
        json={"decision": "approve"},
        headers=AUTH,
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "withdrawn"

    repeat = api_client.post(
        f"/applications/{application_id}/withdrawal/resolve",
        json={"decision": "approve"},
        headers=AUTH,
    )
    assert repeat.status_code == 409

    notices = api_client.get("/notifications", headers=AUTH).json()
    assert notices["total"] == 4
    assert sorted(row["type"] for row in notices["items"]) == [
        "withdrawal-approved",
        "withdrawal-declined",
        "withdrawal-request",
        "withdrawal-request",
    ]

    posting = api_client.get(f"/postings/{posting_id}", headers=AUTH).json()
    assert posting["status"] == "open"
    assert posting["applicant_ids"] == []


def test_concurrent_approvals_have_one_winner(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            posting = await repository.create_posting(owner_id="requester-1", title="Biology")
            applications = [
                await repository.submit_application(posting_id=posting["id"], candidate_id=candidate_id)
                for candidate_id in ("cand-a", "cand-b", "cand-c")
            ]

            results = await asyncio.gather(
                *(repository.approve_application(application_id=row["id"]) for row in applications),
                return_exceptions=True,
            )

            successes = [result for result in results if isinstance(result, dict)]
            failures = [result for result in results if isinstance(result, Exception)]
            assert len(successes) == 1
            assert successes[0]["auto_declined_count"] == 2
            assert all(isinstance(failure, InvalidTransitionError) for failure in failures)

            rows = await repository.list_posting_applications(posting_id=posting["id"])
            assert sum(1 for row in rows if row["status"] == "approved") == 1
            archive = await repository.list_posting_archive(posting_id=posting["id"])
            assert len(archive) == 2

            with pytest.raises(RepositoryNotFoundError):
                await repository.list_posting_archive(posting_id="00000000-0000-0000-0000-000000000000")
        finally:
            await repository.close()

    _run(scenario())


def _repository(database_url: str) -> PostgresRepository:
    return PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=5,
        command_timeout_seconds=15.0,
        persistence_retry_attempts=3,
        persistence_retry_base_seconds=0.01,
        withdrawal_note_max_length=500,
    )


def _configure_mock_human_auth(monkeypatch: pytest.MonkeyPatch, *, role: str, user_id: str) -> None:
    monkeypatch.setenv("TM_SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("TM_SUPABASE_ANON_KEY", "anon-key")
    get_settings.cache_clear()

    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return {"id": user_id, "app_metadata": {"role": role}}

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _fetchval(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


async def _ensure_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        exists = await conn.fetchval("select to_regclass('public.postings') is not null")
        if not exists:
            await conn.execute(MIGRATION_PATH.read_text(encoding="utf-8"))
    finally:
        await conn.close()


async def _truncate_tables(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            truncate table
              admin_notifications,
              application_archive,
              applications,
              postings
            restart identity cascade
            """
        )
    finally:
        await conn.close()
