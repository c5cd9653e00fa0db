"""Exception taxonomy for circleflow."""

from __future__ import annotations


class CircleflowError(Exception):
    """Base class for all circleflow errors."""

    status_code: int = 500

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInputError(CircleflowError):
    """A caller supplied missing or malformed identifiers or fields."""

    status_code = 400


class NotFoundError(CircleflowError):
    """A workflow, request, approver or step does not exist."""

    status_code = 404


class ForbiddenError(CircleflowError):
    """The caller may not act on the addressed resource."""

    status_code = 403


class PersistenceError(CircleflowError):
    """An authoritative store write failed."""

    status_code = 500


class ClientError(CircleflowError):
    """The workflow API answered with a non-2xx status."""

    def __init__(
        self, message: str, status_code: int | None = None, details: str | None = None
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code or 500


class ClientTimeoutError(ClientError):
    """The workflow API did not answer within the configured timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"The server took longer than {timeout:g}s to respond. Your connection may be slow.",
            status_code=408,
        )
        self.timeout = timeout


__all__ = [
    "CircleflowError",
    "InvalidInputError",
    "NotFoundError",
    "ForbiddenError",
    "PersistenceError",
    "ClientError",
    "ClientTimeoutError",
]
