"""Endpoints and websocket handler for realtime notifications."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, WebSocket, WebSocketDisconnect, status

from notifyhub.application.use_cases.notifications import (
    archive_notifications,
    create_batch_notifications,
    create_notification,
    list_organization_notifications,
    list_unread_notifications,
    list_user_notifications,
    mark_notifications_read,
)
from notifyhub.container import ServiceContainer
from notifyhub.domain.entities import Principal
from notifyhub.domain.errors import (
    AccessDenied,
    NotFoundError,
    QueueUnavailableError,
    TransientStoreError,
    UnauthorizedConnection,
    ValidationError,
)
from notifyhub.interfaces.api.dependencies import (
    get_container,
    get_current_principal,
    require_producer,
)
from notifyhub.interfaces.api.schemas import (
    BatchAccepted,
    JobAccepted,
    JobRead,
    NotificationBatchCreate,
    NotificationCreate,
    NotificationIdsRequest,
    NotificationPage,
    NotificationRead,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        detail: object = {"message": exc.args[0] if exc.args else str(exc), "errors": exc.errors}
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AccessDenied):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


def _ensure_same_organization(principal: Principal, payload: NotificationCreate) -> None:
    if payload.organization_id is not None and payload.organization_id != principal.organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Notifications can only target the caller's organization",
        )


@router.post("/", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_notification(
    payload: NotificationCreate,
    principal: Principal = Depends(require_producer),
    container: ServiceContainer = Depends(get_container),
) -> JobAccepted:
    """Queue a notification for asynchronous persistence and delivery."""

    _ensure_same_organization(principal, payload)
    settings = container.settings
    try:
        job_id = await create_notification(
            container.queue,
            payload.to_payload(),
            max_attempts=settings.queue_default_attempts,
            timeout_ms=settings.queue_default_timeout_ms,
        )
    except (ValidationError, QueueUnavailableError) as exc:
        raise _http_error(exc) from exc
    return JobAccepted(job_id=job_id)


@router.post("/batch", response_model=BatchAccepted, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_notification_batch(
    payload: NotificationBatchCreate,
    principal: Principal = Depends(require_producer),
    container: ServiceContainer = Depends(get_container),
) -> BatchAccepted:
    for item in payload.notifications:
        _ensure_same_organization(principal, item)
    settings = container.settings
    try:
        job_ids = await create_batch_notifications(
            container.queue,
            [item.to_payload() for item in payload.notifications],
            max_batch_size=settings.max_batch_size,
            max_attempts=settings.queue_default_attempts,
            timeout_ms=settings.queue_default_timeout_ms,
        )
    except (ValidationError, QueueUnavailableError) as exc:
        raise _http_error(exc) from exc
    return BatchAccepted(job_ids=job_ids)


@router.get("/organization/{organization_id}", response_model=NotificationPage)
async def list_by_organization(
    organization_id: str,
    page: int | None = Query(default=None),
    page_size: int | None = Query(default=None, alias="pageSize"),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> NotificationPage:
    try:
        result = await list_organization_notifications(
            container.store,
            principal=principal,
            organization_id=organization_id,
            page=page,
            page_size=page_size,
        )
    except (AccessDenied, NotFoundError, TransientStoreError) as exc:
        raise _http_error(exc) from exc
    return NotificationPage.from_page(result)


@router.get("/user/{user_id}", response_model=NotificationPage)
async def list_by_user(
    user_id: str,
    page: int | None = Query(default=None),
    page_size: int | None = Query(default=None, alias="pageSize"),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> NotificationPage:
    try:
        result = await list_user_notifications(
            container.store,
            principal=principal,
            user_id=user_id,
            page=page,
            page_size=page_size,
        )
    except (AccessDenied, NotFoundError, TransientStoreError) as exc:
        raise _http_error(exc) from exc
    return NotificationPage.from_page(result)


@router.get("/unread", response_model=list[NotificationRead])
async def list_unread(
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> list[NotificationRead]:
    """Return the caller's unread notifications, most urgent first."""

    try:
        notifications = await list_unread_notifications(container.store, principal=principal)
    except (NotFoundError, TransientStoreError) as exc:
        raise _http_error(exc) from exc
    return [NotificationRead.from_entity(notification) for notification in notifications]


@router.patch("/mark-read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read(
    payload: NotificationIdsRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    """Mark notifications as read; identifiers of other users are ignored."""

    try:
        await mark_notifications_read(
            container.store, principal=principal, notification_ids=payload.unique_ids()
        )
    except TransientStoreError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/archive", status_code=status.HTTP_204_NO_CONTENT)
async def archive(
    payload: NotificationIdsRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    try:
        await archive_notifications(
            container.store, principal=principal, notification_ids=payload.unique_ids()
        )
    except TransientStoreError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/jobs/{job_id}", response_model=JobRead)
async def get_job(
    job_id: str,
    principal: Principal = Depends(require_producer),
    container: ServiceContainer = Depends(get_container),
) -> JobRead:
    try:
        job = await container.queue.get(job_id)
    except QueueUnavailableError as exc:
        raise _http_error(exc) from exc
    if job is None or job.payload.get("organizationId") != principal.organization_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobRead.from_job(job)


@router.websocket("/ws")
async def notifications_websocket(websocket: WebSocket) -> None:
    """Websocket endpoint that streams the caller's organization events."""

    container: ServiceContainer | None = getattr(websocket.app.state, "container", None)
    if container is None:
        await websocket.close(code=1011)
        return

    broadcaster = container.broadcaster
    await websocket.accept()
    try:
        connection = await broadcaster.connect(websocket, websocket.query_params.get("token"))
    except UnauthorizedConnection:
        return
    except Exception:
        logger.exception("Websocket handshake failed")
        await websocket.close(code=1011)
        return

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except (ValueError, KeyError):
                message = None
            await broadcaster.handle_client_event(connection, message)
    except (WebSocketDisconnect, UnauthorizedConnection):
        pass
    finally:
        await broadcaster.disconnect(connection)
