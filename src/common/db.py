"""
Database connection utilities for the historical data store.
Engines are created lazily so the service can run without a database when only in-memory data is used.
Connections are opened with a bounded connect timeout so a dead database degrades quotes instead of stalling them.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

DEFAULT_CONNECT_TIMEOUT_SECONDS = 3.0


def connect_args_for(
    database_url: str, *, connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
) -> dict[str, Any]:
    """Driver arguments that bound connect and statement time for `database_url`'s backend."""

    backend = make_url(database_url).get_backend_name()
    if backend == "postgresql":
        # libpq only accepts whole seconds here.
        return {
            "connect_timeout": max(1, int(round(connect_timeout_seconds))),
            "options": f"-c statement_timeout={int(connect_timeout_seconds * 1000)}",
        }
    if backend == "sqlite":
        return {"timeout": connect_timeout_seconds}
    return {}


@lru_cache(maxsize=4)
def get_engine(database_url: str, connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS) -> Engine:
    """Return a shared pooled engine for `database_url`."""

    return create_engine(
        database_url,
        pool_pre_ping=True,
        connect_args=connect_args_for(database_url, connect_timeout_seconds=connect_timeout_seconds),
        future=True,
    )


def test_connection(engine: Engine) -> bool:
    """Return True if the database can be reached and queried."""

    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
