"""Domain models describing request throttling state."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RateLimitStatus(BaseModel):
    """Represents the outcome of a rate limit check."""

    allowed: bool = Field(
        description="Whether the request is permitted under the configured quota",
    )
    limit: int = Field(
        description="Maximum number of requests allowed within the window",
        ge=0,
    )
    remaining: int = Field(
        description="Number of requests still available before hitting the limit",
        ge=0,
    )
    retry_after_seconds: int = Field(
        description="Number of seconds until the quota resets if the request was blocked",
        ge=0,
    )


class CredentialThrottleStatus(BaseModel):
    """Whether an account identity is locked out after repeated failures."""

    blocked: bool
    retry_after_seconds: int | None = Field(
        default=None,
        description="Seconds until the failure window expires; only set when blocked",
        ge=0,
    )
