"""Local store: persistent blob collection plus store variables in SQLite.

The structural version of the store (its table layout) is kept in SQLite's
``PRAGMA user_version`` and is independent of the epoch and data version
variables, which live in ``store_vars``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, text
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError

from replica.database import create_engine, with_begin_mode
from replica.exceptions import IndexInvalid, StoreUnavailable
from replica.models.base import Base
from replica.models.store import BlobEntry, StoreVar
from replica.services.manifest_service import decode_manifest, encode_manifest
from replica.services.revision_service import RESERVED_INDEX_NAME

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

    from replica.config import Settings
    from replica.services.manifest_service import ManifestEntry

logger = logging.getLogger(__name__)

EPOCH_KEY = "image"
DATA_VERSION_KEY = "dataver"


class StoreTransaction:
    """Operations available inside one local store transaction."""

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn
        self.writes = 0

    async def get_var(self, key: str) -> str | None:
        """Read a store variable, or None if unset."""
        result = await self._conn.execute(select(StoreVar.value).where(StoreVar.key == key))
        return result.scalar_one_or_none()

    async def set_var(self, key: str, value: str) -> None:
        """Create or replace a store variable."""
        stmt = insert(StoreVar).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(index_elements=[StoreVar.key], set_={"value": value})
        await self._conn.execute(stmt)
        self.writes += 1

    async def delete_var(self, key: str) -> None:
        """Remove a store variable if present."""
        await self._conn.execute(delete(StoreVar).where(StoreVar.key == key))
        self.writes += 1

    async def get_epoch(self) -> int | None:
        """Read the store epoch, or None for an empty store."""
        value = await self.get_var(EPOCH_KEY)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning("Ignoring malformed store epoch %r", value)
            return None

    async def get_blob(self, name: str) -> bytes | None:
        """Read a blob, or None if not stored."""
        result = await self._conn.execute(select(BlobEntry.data).where(BlobEntry.name == name))
        return result.scalar_one_or_none()

    async def put_blob(self, name: str, data: bytes) -> None:
        """Create or replace a blob."""
        stmt = insert(BlobEntry).values(name=name, data=data)
        stmt = stmt.on_conflict_do_update(index_elements=[BlobEntry.name], set_={"data": data})
        await self._conn.execute(stmt)
        self.writes += 1

    async def delete_blob(self, name: str) -> None:
        """Remove a blob if present."""
        await self._conn.execute(delete(BlobEntry).where(BlobEntry.name == name))
        self.writes += 1

    async def blob_names(self) -> list[str]:
        """Names of all stored content blobs, excluding the manifest."""
        result = await self._conn.execute(
            select(BlobEntry.name).where(BlobEntry.name != RESERVED_INDEX_NAME)
        )
        return sorted(result.scalars().all())

    async def clear(self) -> None:
        """Delete every blob and store variable."""
        await self._conn.execute(delete(BlobEntry))
        await self._conn.execute(delete(StoreVar))
        self.writes += 2

    async def read_manifest(self) -> dict[str, ManifestEntry] | None:
        """Read the local manifest; None when absent or invalid."""
        raw = await self.get_blob(RESERVED_INDEX_NAME)
        if raw is None:
            return None
        try:
            return decode_manifest(raw)
        except IndexInvalid as exc:
            logger.warning("Local manifest is invalid, treating cache as empty: %s", exc)
            return None

    async def write_manifest(
        self, manifest: dict[str, ManifestEntry], raw: bytes | None = None
    ) -> None:
        """Store *manifest* under the reserved index key.

        *raw* is the compressed form as fetched from the remote source; when
        omitted the manifest is re-encoded.
        """
        if raw is None:
            raw = encode_manifest(manifest)
        await self.put_blob(RESERVED_INDEX_NAME, raw)


class LocalStore:
    """Persistent keyed blob collection shared by every instance on this machine."""

    def __init__(self, engine: AsyncEngine, path: str) -> None:
        self._engine = engine
        self._read_engine = with_begin_mode(engine, "DEFERRED")
        self._write_engine = with_begin_mode(engine, "IMMEDIATE")
        self.path = path

    @classmethod
    async def open(cls, settings: Settings) -> LocalStore:
        """Open the store at the configured structural version.

        - newer existing version: fail, the caller falls back to network-only
        - same version: connect unchanged
        - older version: wait for other connections' transactions, then wipe
          and recreate the schema; a timeout fails like a newer version
        - no database: create it

        Raises StoreUnavailable on any of the failure paths above.
        """
        requested = settings.structural_version
        try:
            settings.store_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot create store directory: {exc}") from exc

        engine = create_engine(settings)
        try:
            async with engine.connect() as conn:
                existing = await _read_structural_version(conn)
                await conn.rollback()

            if existing > requested:
                raise StoreUnavailable(
                    f"Store structural version {existing} is newer than supported {requested}"
                )
            if existing < requested:
                await _rebuild_schema(engine, requested)
        except StoreUnavailable:
            await engine.dispose()
            raise
        except SQLAlchemyError as exc:
            await engine.dispose()
            raise StoreUnavailable(f"Cannot open local store: {exc}") from exc

        logger.debug(
            "Opened local store %s at structural version %d", settings.store_path, requested
        )
        return cls(engine, str(settings.store_path))

    @asynccontextmanager
    async def read_transaction(self) -> AsyncGenerator[StoreTransaction]:
        """Run a read transaction."""
        async with self._read_engine.begin() as conn:
            yield StoreTransaction(conn)

    @asynccontextmanager
    async def write_transaction(self) -> AsyncGenerator[StoreTransaction]:
        """Run a read-write transaction, serialized against other writers."""
        async with self._write_engine.begin() as conn:
            yield StoreTransaction(conn)

    async def close(self) -> None:
        """Close all connections to the store."""
        await self._engine.dispose()


async def _read_structural_version(conn: AsyncConnection) -> int:
    result = await conn.execute(text("PRAGMA user_version"))
    return int(result.scalar_one())


async def _rebuild_schema(engine: AsyncEngine, version: int) -> None:
    """Drop every table and recreate the schema at *version*.

    Runs under an exclusive lock; the SQLite busy timeout bounds how long this
    waits for other connections to finish their transactions.
    """
    try:
        async with with_begin_mode(engine, "EXCLUSIVE").begin() as conn:
            # Re-check under the lock: another instance may have upgraded first.
            existing = await _read_structural_version(conn)
            if existing > version:
                raise StoreUnavailable(
                    f"Store structural version {existing} is newer than supported {version}"
                )
            if existing == version:
                return
            result = await conn.execute(
                text(
                    "SELECT name FROM sqlite_master"
                    " WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
                )
            )
            for table_name in result.scalars().all():
                await conn.execute(text(f'DROP TABLE IF EXISTS "{table_name}"'))
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text(f"PRAGMA user_version = {int(version)}"))
            if existing:
                logger.info(
                    "Upgraded local store from structural version %d to %d", existing, version
                )
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"Local store upgrade blocked or failed: {exc}") from exc
