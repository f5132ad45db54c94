"""FastAPI dependency utilities."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from notifyhub.container import ServiceContainer
from notifyhub.domain.entities import Principal
from notifyhub.domain.errors import UnauthorizedConnection

PRODUCER_ROLES = ("admin", "notification-manager")

bearer_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> ServiceContainer:
    """Return the service container attached to the running application."""

    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return container


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    container: ServiceContainer = Depends(get_container),
) -> Principal:
    """Return the principal described by the bearer identity assertion."""

    token = credentials.credentials if credentials is not None else None
    try:
        return container.identity.verify(token)
    except UnauthorizedConnection as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_producer(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Ensure the caller may enqueue notifications."""

    if not principal.has_any_role(*PRODUCER_ROLES):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to create notifications",
        )
    return principal
