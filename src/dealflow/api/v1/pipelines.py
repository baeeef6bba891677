"""Read-only endpoints for pipelines and their stages.

Pipeline and stage editing lives in the admin UI; the board only needs to
read the layout to place deals and resolve outcome stages.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.dealflow.api.deps import get_deal_repository
from src.dealflow.deals.schemas import PipelineRead, StageRead

router = APIRouter(prefix="/api/v1", tags=["pipelines"])


@router.get("/pipelines", response_model=list[PipelineRead])
async def list_pipelines(repo: Any = Depends(get_deal_repository)) -> list[PipelineRead]:
    return await repo.list_pipelines()


@router.get("/pipelines/{pipeline_id}/stages", response_model=list[StageRead])
async def list_pipeline_stages(
    pipeline_id: int,
    repo: Any = Depends(get_deal_repository),
) -> list[StageRead]:
    """Stages of one pipeline in board order; 404 for an unknown pipeline."""
    if await repo.get_pipeline(pipeline_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Pipeline not found: {pipeline_id}",
        )
    return await repo.list_stages(pipeline_id)


@router.get("/stages", response_model=list[StageRead])
async def list_stages(
    pipeline_id: int | None = Query(default=None, alias="pipelineId"),
    repo: Any = Depends(get_deal_repository),
) -> list[StageRead]:
    return await repo.list_stages(pipeline_id)
