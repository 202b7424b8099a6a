"""Async SQLAlchemy plumbing for the optional database-backed user store."""

from .session import Base, configure_engine, dispose_engine, get_engine, get_sessionmaker, init_db

__all__ = ["Base", "configure_engine", "dispose_engine", "get_engine", "get_sessionmaker", "init_db"]
