"""Schemas for authentication endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class CredentialsRequest(BaseModel):
    """Payload for registering or logging in.

    Format and strength checks run in the route so that failures surface with
    the same messages as every other validation error.
    """

    email: str | None = Field(default=None, description="User email address")
    password: str | None = Field(default=None, description="User password")


class RegisterResponse(BaseModel):
    ok: bool = True
    id: str
    token: str


class TokenResponse(BaseModel):
    ok: bool = True
    token: str


class LogoutResponse(BaseModel):
    ok: bool = True


class Identity(BaseModel):
    """Claims decoded from a verified access token, valid for one request."""

    id: str
    email: str
    issued_at: datetime | None = None
    expires_at: datetime
