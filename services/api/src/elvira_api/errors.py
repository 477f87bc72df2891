"""Application error taxonomy.

Errors that reach the HTTP boundary derive from :class:`AppError` and carry
their status code and any extra payload fields. Errors that are recovered
internally (tool failures, persistence failures) are plain exceptions.
"""

from typing import Any

from fastapi import status


class AppError(Exception):
    """Base class for errors rendered as JSON error responses."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **payload: Any):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.payload}


class BadRequestError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(AppError):
    """Missing or invalid API key, or a key that does not own the session."""

    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(AppError):
    """Authenticated but not allowed: blocked users and non-superusers."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class QuotaExceededError(AppError):
    """Daily budget exhausted; the message was not processed."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, *, remaining: int, limit: int, reset_at: str):
        super().__init__(message, remaining=remaining, limit=limit, resetAt=reset_at)


class CatalogError(Exception):
    """The catalog service failed or answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolExecutionError(Exception):
    """A tool call could not be executed; turned into a tool-output failure."""


class UpstreamStreamError(Exception):
    """The completion service failed mid-turn."""


class ToolLoopLimitError(UpstreamStreamError):
    """A turn needed more completion rounds than allowed."""


class PersistenceError(Exception):
    """A detached write failed; logged, never surfaced to the user."""
