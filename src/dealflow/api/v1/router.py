"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealflow.api.v1 import activities, deals, health, notifications, pipelines, quotes, ws

router = APIRouter()

router.include_router(health.router)
router.include_router(deals.router)
router.include_router(pipelines.router)
router.include_router(activities.router)
router.include_router(quotes.router)
router.include_router(notifications.router)
router.include_router(ws.router)
