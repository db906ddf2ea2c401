import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from tutormatch.core.security import get_human_principal
from tutormatch.schemas.notifications import (
    NotificationListOut,
    NotificationOut,
    NotificationsReadOut,
    NotificationsReadRequest,
    NotificationStatus,
)
from tutormatch.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=NotificationListOut)
async def list_notifications(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    notification_status: NotificationStatus | None = Query(default=None, alias="status"),
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> NotificationListOut:
    try:
        principal.require_scopes({"notifications:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.list_notifications(
            status=notification_status,
            unread_only=unread_only,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return NotificationListOut(
        items=[NotificationOut(**row) for row in result["items"]],
        total=result["total"],
    )


@router.post("/read", response_model=NotificationsReadOut)
async def mark_notifications_read(
    payload: NotificationsReadRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> NotificationsReadOut:
    try:
        principal.require_scopes({"notifications:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        updated = await repository.mark_notifications_read(
            notification_ids=payload.notification_ids,
            mark_all=payload.mark_all,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    logger.info("notifications marked read count=%s mark_all=%s actor=%s", updated, payload.mark_all, principal.actor_id)
    return NotificationsReadOut(updated=updated)
