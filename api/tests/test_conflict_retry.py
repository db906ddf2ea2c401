import asyncio

import pytest

from tutormatch.services.lifecycle import (
    InvalidTransitionError,
    RepositoryPersistenceConflictError,
    compute_retry_delay_seconds,
    run_with_conflict_retry,
)


def test_run_with_conflict_retry_retries_until_success() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise RepositoryPersistenceConflictError("serialization failure")
        return "committed"

    result = asyncio.run(run_with_conflict_retry(flaky, attempts=3, base_delay_seconds=0))

    assert result == "committed"
    assert calls["count"] == 3


def test_run_with_conflict_retry_surfaces_conflict_after_bounded_attempts() -> None:
    calls = {"count": 0}

    async def always_conflicts() -> None:
        calls["count"] += 1
        raise RepositoryPersistenceConflictError("deadlock detected")

    with pytest.raises(RepositoryPersistenceConflictError):
        asyncio.run(run_with_conflict_retry(always_conflicts, attempts=2, base_delay_seconds=0))

    assert calls["count"] == 2


def test_run_with_conflict_retry_does_not_retry_domain_errors() -> None:
    calls = {"count": 0}

    async def invalid() -> None:
        calls["count"] += 1
        raise InvalidTransitionError("posting already matched", current_state="matched")

    with pytest.raises(InvalidTransitionError):
        asyncio.run(run_with_conflict_retry(invalid, attempts=5, base_delay_seconds=0))

    assert calls["count"] == 1


def test_compute_retry_delay_seconds_grows_exponentially() -> None:
    assert compute_retry_delay_seconds(attempt=1, base_seconds=0) == 0.0

    first = compute_retry_delay_seconds(attempt=1, base_seconds=0.1)
    third = compute_retry_delay_seconds(attempt=3, base_seconds=0.1)

    assert 0.1 <= first <= 0.15
    assert 0.4 <= third <= 0.6
