"""Mutation error hierarchy shared by the service layer, routers and client.

Every failed mutation is one of three kinds. The server raises these from
DealService and maps them to HTTP status codes; the client maps HTTP
responses back into the same classes so callers handle one vocabulary.
"""

from __future__ import annotations

from enum import Enum


class MutationErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION_FAILED = "validation_failed"
    PERSISTENCE_FAILED = "persistence_failed"


class MutationError(Exception):
    """Base class for mutation failures surfaced to the invoking user."""

    kind: MutationErrorKind = MutationErrorKind.PERSISTENCE_FAILED

    def __init__(self, message: str, *, resource_type: str | None = None, resource_id: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.resource_type = resource_type
        self.resource_id = resource_id


class ResourceNotFoundError(MutationError):
    kind = MutationErrorKind.NOT_FOUND


class ValidationFailedError(MutationError):
    kind = MutationErrorKind.VALIDATION_FAILED


class PersistenceFailedError(MutationError):
    kind = MutationErrorKind.PERSISTENCE_FAILED


_BY_KIND: dict[MutationErrorKind, type[MutationError]] = {
    MutationErrorKind.NOT_FOUND: ResourceNotFoundError,
    MutationErrorKind.VALIDATION_FAILED: ValidationFailedError,
    MutationErrorKind.PERSISTENCE_FAILED: PersistenceFailedError,
}


def error_for_kind(kind: MutationErrorKind, message: str, **kwargs) -> MutationError:
    """Build the MutationError subclass matching ``kind``."""
    return _BY_KIND[kind](message, **kwargs)
