"""Declarative base and async engine construction for the local store."""

from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import chat_sync.models  # noqa: E402,F401


def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_store_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine bound to a single shared SQLite connection.

    Foreign keys are switched on for every new DBAPI connection; SQLite
    leaves them off by default.
    """
    engine = create_async_engine(
        url,
        echo=echo,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    return engine
