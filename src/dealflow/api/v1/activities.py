"""Lead activity log endpoints.

Activities are mostly written by the server as a side effect of deal
mutations; these endpoints cover reading a deal's log, logging a manual
entry (call, email, meeting) and the admin delete.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from src.dealflow.api.deps import get_actor_id, get_deal_service, mutation_http_error
from src.dealflow.deals.schemas import ActivityCreate, ActivityRead
from src.dealflow.errors import MutationError

router = APIRouter(prefix="/api/v1/lead-activities", tags=["activities"])


@router.get("/{deal_id}", response_model=list[ActivityRead])
async def list_activities(
    deal_id: int,
    service: Any = Depends(get_deal_service),
) -> list[ActivityRead]:
    """A deal's activities, newest first."""
    try:
        return await service.list_activities(deal_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
async def create_activity(
    body: ActivityCreate,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> ActivityRead:
    try:
        return await service.create_activity(body, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.delete("/{activity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_activity(
    activity_id: int,
    service: Any = Depends(get_deal_service),
) -> None:
    try:
        await service.delete_activity(activity_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc
