import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status
from opentelemetry import trace

from tutormatch.core.security import get_human_principal
from tutormatch.schemas.applications import ApplicationOut, ApplicationStatus, ArchiveEntryOut
from tutormatch.schemas.postings import PostingCreateRequest, PostingOut, PostingStatus
from tutormatch.services.repository import (
    InvalidTransitionError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryPersistenceConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@router.post("", response_model=PostingOut, status_code=http_status.HTTP_201_CREATED)
async def create_posting(
    payload: PostingCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> PostingOut:
    try:
        principal.require_scopes({"postings:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=http_status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.create_posting(
            owner_id=principal.actor_id,
            title=payload.title,
            description=payload.description,
            kind=payload.kind,
            details=payload.details,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    logger.info("posting created posting_id=%s owner_id=%s", row["id"], principal.actor_id)
    return PostingOut(**row)


@router.get("", response_model=list[PostingOut])
async def list_postings(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    posting_status: PostingStatus | None = Query(default=None, alias="status"),
    mine: bool = Query(default=False),
) -> list[PostingOut]:
    try:
        principal.require_scopes({"postings:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_postings(
            limit=limit,
            offset=offset,
            status=posting_status,
            owner_id=principal.actor_id if mine else None,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PostingOut(**row) for row in rows]


@router.get("/{posting_id}", response_model=PostingOut)
async def get_posting(
    posting_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> PostingOut:
    try:
        principal.require_scopes({"postings:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_posting(posting_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return PostingOut(**row)


@router.post("/{posting_id}/hold", response_model=PostingOut)
async def hold_posting(
    posting_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> PostingOut:
    return await _change_posting_overlay(
        action="hold",
        posting_id=posting_id,
        principal=principal,
        operation=repository.hold_posting,
    )


@router.post("/{posting_id}/unhold", response_model=PostingOut)
async def unhold_posting(
    posting_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> PostingOut:
    return await _change_posting_overlay(
        action="unhold",
        posting_id=posting_id,
        principal=principal,
        operation=repository.release_posting_hold,
    )


@router.post("/{posting_id}/close", response_model=PostingOut)
async def close_posting(
    posting_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> PostingOut:
    return await _change_posting_overlay(
        action="close",
        posting_id=posting_id,
        principal=principal,
        operation=repository.close_posting,
    )


@router.post(
    "/{posting_id}/applications",
    response_model=ApplicationOut,
    status_code=http_status.HTTP_201_CREATED,
)
async def submit_application(
    posting_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationOut:
    try:
        principal.require_scopes({"applications:apply"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=http_status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    with tracer.start_as_current_span("matching.submit") as span:
        span.set_attribute("posting.id", posting_id)
        try:
            row = await repository.submit_application(posting_id=posting_id, candidate_id=principal.actor_id)
        except (RepositoryUnavailableError, RepositoryPersistenceConflictError) as exc:
            raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT,
                detail={"message": str(exc), "current_state": exc.current_state},
            ) from exc
        except RepositoryConflictError as exc:
            raise HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    logger.info(
        "application submitted application_id=%s posting_id=%s candidate_id=%s",
        row["id"],
        posting_id,
        principal.actor_id,
    )
    return ApplicationOut.from_row(row)


@router.get("/{posting_id}/applications", response_model=list[ApplicationOut])
async def list_posting_applications(
    posting_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    application_status: ApplicationStatus | None = Query(default=None, alias="status"),
    auto_declined: bool | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[ApplicationOut]:
    try:
        if not principal.has_scopes({"applications:review"}):
            posting = await repository.get_posting(posting_id)
            if posting["owner_id"] != principal.actor_id:
                raise HTTPException(
                    status_code=http_status.HTTP_403_FORBIDDEN,
                    detail="only the posting owner or an administrator can list applications",
                )
        rows = await repository.list_posting_applications(
            posting_id=posting_id,
            status=application_status,
            auto_declined=auto_declined,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return [ApplicationOut.from_row(row) for row in rows]


@router.get("/{posting_id}/archive", response_model=list[ArchiveEntryOut])
async def list_posting_archive(
    posting_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[ArchiveEntryOut]:
    try:
        principal.require_scopes({"applications:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_posting_archive(posting_id=posting_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return [ArchiveEntryOut(**row) for row in rows]


async def _change_posting_overlay(*, action: str, posting_id: str, principal, operation) -> PostingOut:
    try:
        principal.require_scopes({"postings:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    with tracer.start_as_current_span(f"posting.{action}") as span:
        span.set_attribute("posting.id", posting_id)
        try:
            row = await operation(posting_id=posting_id)
        except (RepositoryUnavailableError, RepositoryPersistenceConflictError) as exc:
            raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT,
                detail={"message": str(exc), "current_state": exc.current_state},
            ) from exc

    logger.info(
        "posting %s posting_id=%s status=%s actor=%s",
        action,
        posting_id,
        row["status"],
        principal.actor_id,
    )
    return PostingOut(**row)
