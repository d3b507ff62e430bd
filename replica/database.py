"""Local store engine management."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

if TYPE_CHECKING:
    from replica.config import Settings

# Execution option selecting the SQLite BEGIN mode for a transaction.
BEGIN_MODE_OPTION = "replica_begin_mode"


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the local store.

    pysqlite's implicit transaction handling is disabled so that every
    transaction starts with an explicit ``BEGIN``. The mode is taken from the
    ``replica_begin_mode`` execution option (``DEFERRED`` when unset), which
    lets writers use ``BEGIN IMMEDIATE`` and upgrades use ``BEGIN EXCLUSIVE``.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args={"timeout": settings.store_busy_timeout},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        mode = conn.get_execution_options().get(BEGIN_MODE_OPTION, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    return engine


def with_begin_mode(engine: AsyncEngine, mode: str) -> AsyncEngine:
    """Return a view of *engine* whose transactions begin in *mode*."""
    if mode not in {"DEFERRED", "IMMEDIATE", "EXCLUSIVE"}:
        msg = f"Unsupported SQLite begin mode: {mode}"
        raise ValueError(msg)
    return engine.execution_options(**{BEGIN_MODE_OPTION: mode})
