from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    """Payload accepted by the repositories when creating a user."""

    email: str = Field(..., max_length=254, description="Normalised (lowercased) email")
    password: str = Field(..., min_length=8, max_length=128, description="Raw password to be hashed")


class User(BaseModel):
    """Persisted user profile."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    email: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class UserSummary(BaseModel):
    id: str
    email: str


class MeResponse(BaseModel):
    """Envelope returned for ``GET /me``."""

    ok: bool = True
    user: UserSummary
