"""Error taxonomy shared by routes and services.

Every error a client can observe is an :class:`ApiError` subclass carrying the
HTTP status and the message that is safe to return. Anything else reaching the
exception handlers is rendered as a generic internal error.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import status


class ApiError(Exception):
    """Base class for errors rendered as ``{"error": message}`` responses."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}

    def headers(self) -> Dict[str, str] | None:
        return None


class BadInput(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Malformed request payload"


class Unauthorized(ApiError):
    """Uniform 401; the message never depends on why verification failed."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"

    def __init__(self) -> None:
        super().__init__(self.default_message)

    def headers(self) -> Dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class InvalidCredentials(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid credentials"


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class Conflict(ApiError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class RateLimited(ApiError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after_seconds: int, message: str | None = None) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "retryAfterSeconds": self.retry_after_seconds}

    def headers(self) -> Dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_seconds)}


class ToolUnavailable(ApiError):
    default_message = "arduino-cli not available on PATH. Install it and retry."


class ProcessFailure(ApiError):
    """A compile or upload invocation exited non-zero or timed out."""

    def __init__(self, phase: str, *, timed_out: bool, message: str) -> None:
        self.phase = phase
        self.timed_out = timed_out
        super().__init__(message)


class UpstreamFailure(ApiError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Upstream service error"


class Internal(ApiError):
    pass
