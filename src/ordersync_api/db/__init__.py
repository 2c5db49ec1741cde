"""Canonical order store (SQLAlchemy async)."""

from .base import Base, get_engine, get_session_factory, init_db

__all__ = ["Base", "get_engine", "get_session_factory", "init_db"]
