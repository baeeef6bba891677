"""Async REST client for the deal board API.

Reads raise httpx errors unchanged; callers (the poller) log them and wait
for the next tick. Mutations translate every failure into the shared
MutationError hierarchy so the sync session can roll back and surface one
error vocabulary to the user.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.dealflow.errors import (
    MutationError,
    MutationErrorKind,
    PersistenceFailedError,
    ResourceNotFoundError,
    ValidationFailedError,
    error_for_kind,
)

logger = structlog.get_logger(__name__)


class DealSyncApi:
    """Thin httpx wrapper over /api/v1.

    Args:
        base_url: Server root, e.g. http://localhost:8000.
        token: Bearer token identifying the acting user.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (ASGITransport in tests).
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> DealSyncApi:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Reads ───────────────────────────────────────────────────────────

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    async def list_deals(self, pipeline_id: int | None = None) -> list[dict[str, Any]]:
        params = {"pipelineId": pipeline_id} if pipeline_id is not None else None
        return await self._get("/api/v1/deals", params=params)

    async def get_deal(self, deal_id: int) -> dict[str, Any]:
        return await self._get(f"/api/v1/deals/{deal_id}")

    async def list_activities(self, deal_id: int) -> list[dict[str, Any]]:
        return await self._get(f"/api/v1/lead-activities/{deal_id}")

    async def list_notifications(self, limit: int = 50) -> list[dict[str, Any]]:
        return await self._get("/api/v1/notifications", params={"limit": limit})

    # ── Mutations ───────────────────────────────────────────────────────

    async def update_deal(self, deal_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        """PUT a partial update; returns the authoritative deal."""
        return await self._mutate("PUT", f"/api/v1/deals/{deal_id}", fields, deal_id)

    async def move_deal(self, deal_id: int, stage_id: int, order: int = 0) -> dict[str, Any]:
        return await self._mutate(
            "PUT",
            f"/api/v1/deals/{deal_id}/move",
            {"stageId": stage_id, "order": order},
            deal_id,
        )

    async def _mutate(
        self, method: str, path: str, body: dict[str, Any], resource_id: int | None
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.TransportError as exc:
            logger.warning("api.mutation_transport_failed", path=path, exc_info=True)
            raise PersistenceFailedError(
                f"{method} {path} failed: {exc}", resource_type="deal", resource_id=resource_id
            ) from exc

        if response.is_success:
            return response.json()
        raise _error_from_response(response, resource_id)


def _error_from_response(response: httpx.Response, resource_id: int | None) -> MutationError:
    """Map an error response to NotFound / ValidationFailed / PersistenceFailed."""
    message = response.text
    kind: MutationErrorKind | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        message = detail.get("message", message)
        try:
            kind = MutationErrorKind(detail.get("kind"))
        except ValueError:
            kind = None
    elif isinstance(detail, str):
        message = detail

    if kind is not None:
        return error_for_kind(kind, message, resource_type="deal", resource_id=resource_id)
    if response.status_code == 404:
        return ResourceNotFoundError(message, resource_type="deal", resource_id=resource_id)
    if response.status_code in (400, 409, 422):
        return ValidationFailedError(message, resource_type="deal", resource_id=resource_id)
    return PersistenceFailedError(message, resource_type="deal", resource_id=resource_id)
