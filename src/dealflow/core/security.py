"""Best-effort JWT decoding for request attribution.

Token issuance and verification belong to the auth service. This module
only reads the acting user id out of a bearer token so mutations can be
attributed in the activity log; a missing or invalid token means the
mutation is attributed to "system".
"""

from __future__ import annotations

import structlog
from jose import JWTError, jwt

from src.dealflow.config import get_settings

logger = structlog.get_logger(__name__)


def decode_subject(token: str) -> int | None:
    """Return the numeric user id carried by ``token`` or None.

    Accepts either a ``sub`` or an ``id`` claim, since both shapes are
    issued by the auth service.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        logger.debug("security.token_rejected")
        return None

    raw = payload.get("sub", payload.get("id"))
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def subject_from_header(auth_header: str | None) -> int | None:
    """Extract the user id from an ``Authorization: Bearer`` header value."""
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return decode_subject(auth_header[7:])
