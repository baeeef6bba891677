"""REST API endpoints for deals on the board.

Every mutation returns the full authoritative post-mutation deal so the
client can replace its optimistic state with exactly what was stored.
List/get endpoints are idempotent and cheap enough for sub-5s polling.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from src.dealflow.api.deps import get_actor_id, get_deal_service, mutation_http_error
from src.dealflow.deals.schemas import (
    DealCreate,
    DealFilter,
    DealMove,
    DealRead,
    DealReorder,
    DealUpdate,
)
from src.dealflow.errors import MutationError

router = APIRouter(prefix="/api/v1/deals", tags=["deals"])


@router.get("", response_model=list[DealRead])
async def list_deals(
    pipeline_id: int | None = Query(default=None, alias="pipelineId"),
    stage_id: int | None = Query(default=None, alias="stageId"),
    service: Any = Depends(get_deal_service),
) -> list[DealRead]:
    """List deals, optionally restricted to one pipeline or stage."""
    return await service.list_deals(DealFilter(pipeline_id=pipeline_id, stage_id=stage_id))


@router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
async def create_deal(
    body: DealCreate,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> DealRead:
    try:
        return await service.create_deal(body, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


# Declared before /{deal_id} so "order" is never parsed as an id.
@router.put("/order", response_model=list[DealRead])
async def reorder_deals(
    body: DealReorder,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> list[DealRead]:
    """Persist new board positions for several deals at once."""
    try:
        return await service.reorder_deals(body, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(
    deal_id: int,
    service: Any = Depends(get_deal_service),
) -> DealRead:
    try:
        return await service.get_deal(deal_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.put("/{deal_id}", response_model=DealRead)
async def update_deal(
    deal_id: int,
    body: DealUpdate,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> DealRead:
    """Partial update; only fields present in the body are written."""
    try:
        return await service.update_deal(deal_id, body, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.put("/{deal_id}/move", response_model=DealRead)
async def move_deal(
    deal_id: int,
    body: DealMove,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> DealRead:
    """Drag-and-drop move to a stage (possibly in another pipeline)."""
    try:
        return await service.move_deal(deal_id, body, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deal(
    deal_id: int,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> None:
    try:
        await service.delete_deal(deal_id, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc
