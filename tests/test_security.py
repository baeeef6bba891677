"""Bearer token attribution tests.

Tokens are issued by the auth service; here we only check that the acting
user id is read out of them and that bad tokens fall back to None.
"""

from __future__ import annotations

from jose import jwt

from src.dealflow.config import get_settings
from src.dealflow.core.security import decode_subject, subject_from_header


def _token(claims: dict, secret: str | None = None) -> str:
    settings = get_settings()
    return jwt.encode(claims, secret or settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ── decode_subject ────────────────────────────────────────────────────────────


def test_sub_claim():
    assert decode_subject(_token({"sub": "12"})) == 12


def test_id_claim_accepted():
    assert decode_subject(_token({"id": 7})) == 7


def test_wrong_secret_rejected():
    assert decode_subject(_token({"sub": "12"}, secret="someone-else")) is None


def test_garbage_token():
    assert decode_subject("not-a-jwt") is None


def test_non_numeric_subject():
    assert decode_subject(_token({"sub": "alice"})) is None


# ── subject_from_header ───────────────────────────────────────────────────────


def test_bearer_header():
    assert subject_from_header(f"Bearer {_token({'sub': '3'})}") == 3


def test_missing_or_foreign_scheme():
    assert subject_from_header(None) is None
    assert subject_from_header("") is None
    assert subject_from_header(f"Basic {_token({'sub': '3'})}") is None
