"""Personal notification feed for the authenticated user.

Rows are created by the ChangeNotifier and pushed over the targeted
channel; these endpoints serve the polled fallback and read-state updates.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.dealflow.api.deps import get_deal_repository, require_actor_id
from src.dealflow.deals.schemas import NotificationRead

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
async def list_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: int = Depends(require_actor_id),
    repo: Any = Depends(get_deal_repository),
) -> list[NotificationRead]:
    return await repo.list_notifications(user_id, limit=limit)


@router.put("/read-all")
async def mark_all_read(
    user_id: int = Depends(require_actor_id),
    repo: Any = Depends(get_deal_repository),
) -> dict:
    updated = await repo.mark_all_notifications_read(user_id)
    return {"updated": updated}


@router.put("/{notification_id}/read", response_model=NotificationRead)
async def mark_read(
    notification_id: int,
    user_id: int = Depends(require_actor_id),
    repo: Any = Depends(get_deal_repository),
) -> NotificationRead:
    notification = await repo.mark_notification_read(notification_id, user_id)
    if notification is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Notification not found: {notification_id}",
        )
    return notification
