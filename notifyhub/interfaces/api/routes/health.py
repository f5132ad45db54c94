"""Liveness and dependency status endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from notifyhub.container import ServiceContainer
from notifyhub.domain.errors import QueueUnavailableError
from notifyhub.interfaces.api.dependencies import get_container
from notifyhub.interfaces.api.schemas import HealthRead

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthRead)
async def health(container: ServiceContainer = Depends(get_container)) -> HealthRead:
    """Report queue state counts and broker connectivity."""

    try:
        counts = await container.queue.counts()
    except QueueUnavailableError as exc:
        logger.warning("Health check could not reach the queue: %s", exc)
        counts = None

    broker_connected = container.broker.connected
    healthy = counts is not None and broker_connected
    return HealthRead(
        status="ok" if healthy else "degraded",
        queue=counts,
        broker_connected=broker_connected,
        rooms=len(container.broadcaster.rooms),
    )
