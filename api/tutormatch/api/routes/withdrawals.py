import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace

from tutormatch.core.security import get_human_principal
from tutormatch.schemas.applications import (
    ApplicationOut,
    ApplicationStatusOut,
    WithdrawalRequest,
    WithdrawalResolveRequest,
)
from tutormatch.services.repository import (
    InvalidTransitionError,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryPersistenceConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@router.get("/withdrawals", response_model=list[ApplicationOut])
async def list_withdrawal_requests(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ApplicationOut]:
    try:
        principal.require_scopes({"withdrawals:resolve"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_withdrawal_requests(limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [ApplicationOut.from_row(row) for row in rows]


@router.post("/applications/{application_id}/withdrawal", response_model=ApplicationStatusOut)
async def request_withdrawal(
    application_id: str,
    payload: WithdrawalRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationStatusOut:
    try:
        principal.require_scopes({"applications:withdraw"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    with tracer.start_as_current_span("withdrawal.request") as span:
        span.set_attribute("application.id", application_id)
        try:
            row = await repository.request_withdrawal(
                application_id=application_id,
                candidate_id=principal.actor_id,
                candidate_name=principal.display_name,
                note=payload.note,
            )
        except (RepositoryUnavailableError, RepositoryPersistenceConflictError) as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except RepositoryForbiddenError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": str(exc), "current_state": exc.current_state},
            ) from exc
        except RepositoryConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except RepositoryValidationError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    logger.info(
        "withdrawal requested application_id=%s candidate_id=%s from_status=%s",
        application_id,
        principal.actor_id,
        row["pre_withdrawal_status"],
    )
    return ApplicationStatusOut(application_id=row["id"], status=row["status"])


@router.post("/applications/{application_id}/withdrawal/resolve", response_model=ApplicationStatusOut)
async def resolve_withdrawal(
    application_id: str,
    payload: WithdrawalResolveRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplicationStatusOut:
    try:
        principal.require_scopes({"withdrawals:resolve"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    with tracer.start_as_current_span("withdrawal.resolve") as span:
        span.set_attribute("application.id", application_id)
        span.set_attribute("withdrawal.decision", payload.decision)
        try:
            row = await repository.resolve_withdrawal(
                application_id=application_id,
                decision=payload.decision,
                admin_id=principal.actor_id,
                admin_note=payload.admin_note,
            )
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

    logger.info(
        "withdrawal resolved application_id=%s decision=%s status=%s actor=%s",
        application_id,
        payload.decision,
        row["status"],
        principal.actor_id,
    )
    return ApplicationStatusOut(application_id=row["id"], status=row["status"])
