"""SQLAlchemy ORM models."""

from .user import UserModel

__all__ = ["UserModel"]
