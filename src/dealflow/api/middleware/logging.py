"""Request logging for the deal board API.

Each request gets a request id (taken from an incoming X-Request-ID or
generated) and the acting user decoded from the bearer token. Both are
bound into structlog's context for the duration of the request, so the
service and notifier log lines emitted while handling a mutation carry
the same request_id and actor_id as the http.request line.

Production renders JSON; every other environment renders to the console.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.dealflow.config import Environment, get_settings
from src.dealflow.core.security import subject_from_header

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs one http.request line per request and echoes the request id.

    WebSocket upgrades bypass BaseHTTPMiddleware; the /ws endpoint logs
    its own connect and disconnect events.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        actor_id = subject_from_header(request.headers.get("Authorization"))
        started = time.monotonic()

        structlog.contextvars.bind_contextvars(request_id=request_id, actor_id=actor_id)
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "http.request_failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=_elapsed_ms(started),
                    exc_info=True,
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "http.request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(started),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "actor_id")


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
