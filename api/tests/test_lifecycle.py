from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from tutormatch.services.lifecycle import (
    InvalidTransitionError,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    derive_posting_status,
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
    validate_application_transition,
)
from tutormatch.services.references import extract_posting_references

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_validate_application_transition_reports_resolved_records() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_application_transition(from_state="declined", to_state="approved")

    assert "already resolved" in str(exc_info.value)
    assert exc_info.value.current_state == "declined"


def test_validate_application_transition_rejects_skipping_approval() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_application_transition(from_state="pending", to_state="completed")

    assert exc_info.value.current_state == "pending"


def test_plan_submission_appends_candidate_and_rejects_duplicates() -> None:
    posting = _posting()
    plan = plan_submission(posting=posting, existing=[], candidate_id="cand-a", now=NOW)

    assert plan.created_application is True
    assert plan.application is not None
    assert plan.application["status"] == "pending"
    assert plan.posting is not None
    assert plan.posting["applicant_ids"] == ["cand-a"]

    with pytest.raises(RepositoryConflictError):
        plan_submission(posting=plan.posting, existing=[plan.application], candidate_id="cand-a", now=NOW)


def test_plan_submission_rejects_postings_that_are_not_open() -> None:
    posting = plan_posting_hold(posting=_posting(), now=NOW)

    with pytest.raises(InvalidTransitionError) as exc_info:
        plan_submission(posting=posting, existing=[], candidate_id="cand-a", now=NOW)

    assert exc_info.value.current_state == "hold"


def test_plan_approval_cascades_to_pending_siblings() -> None:
    posting, applications = _posting_with_applicants("cand-a", "cand-b", "cand-c")
    target, *others = applications

    plan = plan_approval(application=target, posting=posting, siblings=applications, now=NOW)

    assert plan.application is not None
    assert plan.application["status"] == "approved"
    assert plan.auto_declined_count == 2
    assert {row["id"] for row in plan.cascaded} == {row["id"] for row in others}
    for row in plan.cascaded:
        assert row["status"] == "declined"
        assert row["auto_declined"] is True
        assert row["declined_at"] == NOW
        refs = extract_posting_references(row["decline_reason"])
        assert [ref.posting_id for ref in refs] == [posting["id"]]
    assert sorted(entry["original_application_id"] for entry in plan.archive_entries) == sorted(
        row["id"] for row in others
    )
    assert plan.posting is not None
    assert plan.posting["status"] == "matched"


def test_plan_approval_leaves_resolved_siblings_untouched() -> None:
    posting, applications = _posting_with_applicants("cand-a", "cand-b")
    declined = plan_decline(application=applications[1], reason="schedule clash", now=NOW).application
    assert declined is not None

    plan = plan_approval(application=applications[0], posting=posting, siblings=[applications[0], declined], now=NOW)

    assert plan.auto_declined_count == 0
    assert plan.archive_entries == []


def test_plan_approval_rejects_second_acceptance() -> None:
    posting, applications = _posting_with_applicants("cand-a", "cand-b")
    first = plan_approval(application=applications[0], posting=posting, siblings=applications, now=NOW)
    assert first.posting is not None and first.application is not None

    with pytest.raises(InvalidTransitionError) as exc_info:
        plan_approval(
            application=applications[1],
            posting=first.posting,
            siblings=[first.application, applications[1]],
            now=NOW,
        )

    assert str(exc_info.value) == "posting already matched"
    assert exc_info.value.current_state == "matched"


def test_plan_approval_rejects_held_posting() -> None:
    posting, applications = _posting_with_applicants("cand-a")
    held = plan_posting_hold(posting=posting, now=NOW)

    with pytest.raises(InvalidTransitionError) as exc_info:
        plan_approval(application=applications[0], posting=held, siblings=applications, now=NOW)

    assert exc_info.value.current_state == "hold"


def test_plan_decline_requires_reason_and_archives() -> None:
    _, applications = _posting_with_applicants("cand-a")

    with pytest.raises(RepositoryValidationError):
        plan_decline(application=applications[0], reason="   ", now=NOW)

    plan = plan_decline(application=applications[0], reason="not a fit", now=NOW)
    assert plan.application is not None
    assert plan.application["auto_declined"] is False
    assert len(plan.archive_entries) == 1
    assert plan.archive_entries[0]["decline_reason"] == "not a fit"


def test_plan_completion_requires_approval() -> None:
    posting, applications = _posting_with_applicants("cand-a")

    with pytest.raises(InvalidTransitionError):
        plan_completion(application=applications[0], now=NOW)

    approved = plan_approval(application=applications[0], posting=posting, siblings=applications, now=NOW)
    assert approved.application is not None
    completed = plan_completion(application=approved.application, now=NOW)
    assert completed.application is not None
    assert completed.application["status"] == "completed"
    assert completed.application["completed_at"] == NOW


def test_plan_withdrawal_request_enforces_ownership_and_note_length() -> None:
    _, applications = _posting_with_applicants("cand-a")

    with pytest.raises(RepositoryForbiddenError):
        _request_withdrawal(applications[0], candidate_id="cand-z")

    with pytest.raises(RepositoryValidationError):
        _request_withdrawal(applications[0], note="x" * 501)


def test_plan_withdrawal_request_records_prior_status_and_notice() -> None:
    _, applications = _posting_with_applicants("cand-a")

    plan = _request_withdrawal(applications[0], note="  moving abroad  ")

    assert plan.application is not None
    assert plan.application["status"] == "withdrawal-requested"
    assert plan.application["pre_withdrawal_status"] == "pending"
    assert plan.application["withdrawal_note"] == "moving abroad"
    assert len(plan.created_notifications) == 1
    notice = plan.created_notifications[0]
    assert notice["type"] == "withdrawal-request"
    assert notice["status"] == "pending"
    assert notice["candidate_name"] == "Alex"

    with pytest.raises(InvalidTransitionError) as exc_info:
        _request_withdrawal(plan.application)
    assert str(exc_info.value) == "withdrawal request already pending"


def test_plan_withdrawal_resolution_approve_frees_posting() -> None:
    posting, applications = _posting_with_applicants("cand-a", "cand-b")
    approval = plan_approval(application=applications[0], posting=posting, siblings=applications, now=NOW)
    assert approval.application is not None and approval.posting is not None
    request = _request_withdrawal(approval.application)
    assert request.application is not None

    plan = plan_withdrawal_resolution(
        application=request.application,
        posting=approval.posting,
        siblings=[request.application, *approval.cascaded],
        notification=request.created_notifications[0],
        decision="approve",
        admin_id="admin-1",
        admin_note=None,
        now=NOW,
        note_max_length=500,
    )

    assert plan.application is not None
    assert plan.application["status"] == "withdrawn"
    assert plan.application["withdrawal_approved_by"] == "admin-1"
    assert plan.posting is not None
    assert plan.posting["status"] == "open"
    assert plan.posting["applicant_ids"] == ["cand-b"]
    assert [entry["status"] for entry in plan.archive_entries] == ["withdrawn"]
    assert plan.updated_notifications[0]["status"] == "approved"
    assert plan.created_notifications[0]["type"] == "withdrawal-approved"


def test_plan_withdrawal_resolution_decline_restores_approved() -> None:
    posting, applications = _posting_with_applicants("cand-a")
    approval = plan_approval(application=applications[0], posting=posting, siblings=applications, now=NOW)
    assert approval.application is not None and approval.posting is not None
    request = _request_withdrawal(approval.application)
    assert request.application is not None

    plan = plan_withdrawal_resolution(
        application=request.application,
        posting=approval.posting,
        siblings=[request.application],
        notification=request.created_notifications[0],
        decision="decline",
        admin_id="admin-1",
        admin_note="commitment stands",
        now=NOW,
        note_max_length=500,
    )

    assert plan.application is not None
    assert plan.application["status"] == "approved"
    assert plan.application["pre_withdrawal_status"] is None
    assert plan.application["withdrawal_rejected_by"] == "admin-1"
    assert plan.archive_entries == []
    assert plan.posting is not None
    assert plan.posting["status"] == "matched"
    assert plan.updated_notifications[0]["admin_note"] == "commitment stands"
    assert plan.created_notifications[0]["type"] == "withdrawal-declined"


def test_plan_withdrawal_resolution_decline_on_taken_posting_auto_declines() -> None:
    posting, applications = _posting_with_applicants("cand-a", "cand-b")
    request = _request_withdrawal(applications[0])
    assert request.application is not None
    approval = plan_approval(
        application=applications[1],
        posting=posting,
        siblings=[request.application, applications[1]],
        now=NOW,
    )
    assert approval.application is not None and approval.posting is not None
    assert approval.auto_declined_count == 0

    plan = plan_withdrawal_resolution(
        application=request.application,
        posting=approval.posting,
        siblings=[request.application, approval.application],
        notification=request.created_notifications[0],
        decision="decline",
        admin_id="admin-1",
        admin_note=None,
        now=NOW,
        note_max_length=500,
    )

    assert plan.application is not None
    assert plan.application["status"] == "declined"
    assert plan.application["auto_declined"] is True
    assert len(plan.archive_entries) == 1
    assert plan.posting is not None
    assert plan.posting["status"] == "matched"


def test_plan_withdrawal_resolution_requires_pending_request() -> None:
    posting, applications = _posting_with_applicants("cand-a")

    with pytest.raises(InvalidTransitionError) as exc_info:
        plan_withdrawal_resolution(
            application=applications[0],
            posting=posting,
            siblings=applications,
            notification=None,
            decision="approve",
            admin_id="admin-1",
            admin_note=None,
            now=NOW,
            note_max_length=500,
        )
    assert exc_info.value.current_state == "pending"

    request = _request_withdrawal(applications[0])
    assert request.application is not None
    with pytest.raises(RepositoryNotFoundError):
        plan_withdrawal_resolution(
            application=request.application,
            posting=posting,
            siblings=[request.application],
            notification=None,
            decision="approve",
            admin_id="admin-1",
            admin_note=None,
            now=NOW,
            note_max_length=500,
        )


def test_hold_and_release_restore_previous_status() -> None:
    posting, applications = _posting_with_applicants("cand-a")
    approval = plan_approval(application=applications[0], posting=posting, siblings=applications, now=NOW)
    assert approval.posting is not None

    held = plan_posting_hold(posting=approval.posting, now=NOW)
    assert held["status"] == "hold"
    assert held["held_from_status"] == "matched"

    with pytest.raises(InvalidTransitionError):
        plan_posting_hold(posting=held, now=NOW)

    released = plan_posting_release(posting=held, now=NOW)
    assert released["status"] == "matched"
    assert released["held_from_status"] is None


def test_derive_posting_status_keeps_overlays() -> None:
    posting, applications = _posting_with_applicants("cand-a")
    held = plan_posting_hold(posting=posting, now=NOW)
    approved = dict(applications[0], status="approved")

    synced = derive_posting_status(posting=held, applications=[approved])
    assert synced["status"] == "hold"
    assert synced["held_from_status"] == "matched"

    closed = plan_posting_close(posting=posting, now=NOW)
    assert derive_posting_status(posting=closed, applications=[approved])["status"] == "closed"
    with pytest.raises(InvalidTransitionError):
        plan_posting_close(posting=closed, now=NOW)


def test_derive_posting_status_flags_double_acceptance() -> None:
    posting, applications = _posting_with_applicants("cand-a", "cand-b")
    rows = [dict(row, status="approved") for row in applications]

    with pytest.raises(RepositoryConflictError):
        derive_posting_status(posting=posting, applications=rows)


def _posting() -> dict[str, Any]:
    return new_posting(
        owner_id="requester-1",
        title="Grade 9 maths",
        description=None,
        kind="tuition",
        details={"subject": "maths"},
        now=NOW,
    )


def _posting_with_applicants(*candidate_ids: str) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    posting = _posting()
    applications: list[dict[str, Any]] = []
    for offset, candidate_id in enumerate(candidate_ids):
        plan = plan_submission(
            posting=posting,
            existing=applications,
            candidate_id=candidate_id,
            now=NOW + timedelta(minutes=offset),
        )
        assert plan.application is not None and plan.posting is not None
        posting = plan.posting
        applications.append(plan.application)
    return posting, applications


def _request_withdrawal(
    application: dict[str, Any],
    *,
    candidate_id: str | None = None,
    note: str | None = "changed plans",
):
    return plan_withdrawal_request(
        application=application,
        candidate_id=candidate_id or application["candidate_id"],
        candidate_name="Alex",
        note=note,
        now=NOW,
        note_max_length=500,
    )
