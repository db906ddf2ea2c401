import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace

from tutormatch.core.security import get_human_principal
from tutormatch.schemas.applications import (
    ApplicationApproveOut,
    ApplicationDeclineRequest,
    ApplicationOut,
    ApplicationStatusOut,
)
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


@router.get("/mine", response_model=list[ApplicationOut])
async def list_my_applications(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ApplicationOut]:
    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        rows = await repository.list_candidate_applications(
            candidate_id=principal.actor_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [ApplicationOut.from_row(row) for row in rows]


@router.get("/{application_id}", response_model=ApplicationOut)
async def get_application(
    application_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationOut:
    try:
        row = await repository.get_application(application_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if row["candidate_id"] != principal.actor_id and not principal.has_scopes({"applications:review"}):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="application not found")
    return ApplicationOut.from_row(row)


@router.post("/{application_id}/approve", response_model=ApplicationApproveOut)
async def approve_application(
    application_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationApproveOut:
    try:
        principal.require_scopes({"applications:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    with tracer.start_as_current_span("matching.approve") as span:
        span.set_attribute("application.id", application_id)
        try:
            result = await repository.approve_application(application_id=application_id)
        except (RepositoryUnavailableError, RepositoryPersistenceConflictError) as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": str(exc), "current_state": exc.current_state},
            ) from exc
        except RepositoryConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        span.set_attribute("matching.auto_declined_count", result["auto_declined_count"])

    application = result["application"]
    logger.info(
        "application approved application_id=%s posting_id=%s auto_declined=%s actor=%s",
        application_id,
        application["posting_id"],
        result["auto_declined_count"],
        principal.actor_id,
    )
    return ApplicationApproveOut(
        application_id=application["id"],
        auto_declined_count=result["auto_declined_count"],
    )


@router.post("/{application_id}/decline", response_model=ApplicationStatusOut)
async def decline_application(
    application_id: str,
    payload: ApplicationDeclineRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationStatusOut:
    try:
        principal.require_scopes({"applications:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    with tracer.start_as_current_span("matching.decline") as span:
        span.set_attribute("application.id", application_id)
        try:
            row = await repository.decline_application(application_id=application_id, reason=payload.reason)
        except (RepositoryUnavailableError, RepositoryPersistenceConflictError) as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": str(exc), "current_state": exc.current_state},
            ) from exc
        except RepositoryConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except RepositoryValidationError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    logger.info("application declined application_id=%s actor=%s", application_id, principal.actor_id)
    return ApplicationStatusOut(application_id=row["id"], status=row["status"])


@router.post("/{application_id}/complete", response_model=ApplicationStatusOut)
async def complete_application(
    application_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationStatusOut:
    try:
        principal.require_scopes({"applications:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    with tracer.start_as_current_span("matching.complete") as span:
        span.set_attribute("application.id", application_id)
        try:
            row = await repository.complete_application(application_id=application_id)
        except (RepositoryUnavailableError, RepositoryPersistenceConflictError) as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": str(exc), "current_state": exc.current_state},
            ) from exc
        except RepositoryConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    logger.info("application completed application_id=%s actor=%s", application_id, principal.actor_id)
    return ApplicationStatusOut(application_id=row["id"], status=row["status"])
