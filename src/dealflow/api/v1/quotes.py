"""Quote item endpoints for a deal."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from src.dealflow.api.deps import get_actor_id, get_deal_service, mutation_http_error
from src.dealflow.deals.schemas import QuoteItemCreate, QuoteItemRead
from src.dealflow.errors import MutationError

router = APIRouter(prefix="/api/v1/quote-items", tags=["quotes"])


@router.get("/{deal_id}", response_model=list[QuoteItemRead])
async def list_quote_items(
    deal_id: int,
    service: Any = Depends(get_deal_service),
) -> list[QuoteItemRead]:
    try:
        return await service.list_quote_items(deal_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.post("", response_model=QuoteItemRead, status_code=status.HTTP_201_CREATED)
async def add_quote_item(
    body: QuoteItemCreate,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> QuoteItemRead:
    try:
        return await service.add_quote_item(body, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_quote_item(
    item_id: int,
    service: Any = Depends(get_deal_service),
    actor_id: int | None = Depends(get_actor_id),
) -> None:
    try:
        await service.delete_quote_item(item_id, actor_id)
    except MutationError as exc:
        raise mutation_http_error(exc) from exc
