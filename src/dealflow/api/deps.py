"""FastAPI dependencies for board services and the acting user.

Services live on app.state (wired in the lifespan); each getter raises 503
when its service was not initialized, so a partially started app answers
cleanly instead of failing with AttributeError.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.dealflow.core.security import subject_from_header
from src.dealflow.errors import MutationError, MutationErrorKind

_STATUS_BY_KIND = {
    MutationErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    MutationErrorKind.VALIDATION_FAILED: status.HTTP_400_BAD_REQUEST,
    MutationErrorKind.PERSISTENCE_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _from_state(request: Request, name: str, label: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return value


def get_deal_service(request: Request) -> Any:
    """Retrieve DealService from app.state, 503 if not available."""
    return _from_state(request, "deal_service", "Deal service")


def get_deal_repository(request: Request) -> Any:
    """Retrieve DealRepository from app.state, 503 if not available."""
    return _from_state(request, "deal_repository", "Deal repository")


def get_actor_id(request: Request) -> int | None:
    """Acting user id from the bearer token; None means system-initiated."""
    return subject_from_header(request.headers.get("Authorization"))


def require_actor_id(request: Request) -> int:
    """Acting user id, 401 when the request carries no valid token."""
    actor_id = get_actor_id(request)
    if actor_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor_id


def mutation_http_error(exc: MutationError) -> HTTPException:
    """Translate a MutationError into the HTTPException the client expects."""
    return HTTPException(
        status_code=_STATUS_BY_KIND[exc.kind],
        detail={"kind": exc.kind.value, "message": exc.message},
    )
