"""Epoch-based optimistic concurrency for instances sharing one local store.

Every instance runs the initial transaction once. It decides whether the
store must be rebuilt and, if so, bumps the stored epoch and clears the data
version before any blob is touched. Every later transaction starts with a
prefix check that compares the stored epoch with the one this instance
remembered; a mismatch means another instance has started a rebuild, and the
transaction aborts with ``StaleInstance``.

Thread-safety: one guard belongs to one instance and is used from a single
event loop. Cross-instance safety comes from the stored epoch, not from any
in-process lock.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import StrEnum
from typing import TYPE_CHECKING

from replica.exceptions import StaleInstance
from replica.services.revision_service import is_newer
from replica.services.store_service import DATA_VERSION_KEY, EPOCH_KEY

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from replica.services.store_service import LocalStore, StoreTransaction

logger = logging.getLogger(__name__)


class GuardState(StrEnum):
    """Progress of the initial transaction."""

    OPEN_STRUCTURAL = "open_structural"
    READ_EPOCH = "read_epoch"
    READ_DATA_VERSION = "read_data_version"
    RELOAD = "reload"
    READY = "ready"
    ERROR = "error"


class VersionGuard:
    """Guards every transaction an instance runs against the shared store."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store
        self.state = GuardState.OPEN_STRUCTURAL
        self._local_epoch: int | None = None
        self._reload_needed = False

    @property
    def local_epoch(self) -> int | None:
        return self._local_epoch

    @property
    def reload_needed(self) -> bool:
        return self._reload_needed

    @property
    def is_stale(self) -> bool:
        return self.state is GuardState.ERROR

    @property
    def is_initialized(self) -> bool:
        return self.state in (GuardState.RELOAD, GuardState.READY)

    async def initialize(self, remote_version: str | None) -> bool:
        """Run the initial transaction; return True if the store needs a reload.

        *remote_version* is the dataset version of the remote manifest. The
        stored data version is only trusted when the remote one is not newer.
        """
        if self.state is not GuardState.OPEN_STRUCTURAL:
            raise RuntimeError("Initial transaction already ran for this instance")

        try:
            async with self.store.write_transaction() as tx:
                self._transition(GuardState.READ_EPOCH)
                epoch = await tx.get_epoch()
                if epoch is None:
                    local_epoch = 1
                    await tx.set_var(EPOCH_KEY, str(local_epoch))
                    if await tx.get_var(DATA_VERSION_KEY) is not None:
                        await tx.delete_var(DATA_VERSION_KEY)
                    reload_needed = True
                    logger.info("Local store is empty; starting epoch %d", local_epoch)
                else:
                    self._transition(GuardState.READ_DATA_VERSION)
                    data_version = await tx.get_var(DATA_VERSION_KEY)
                    if data_version is None:
                        local_epoch = epoch + 1
                        await tx.set_var(EPOCH_KEY, str(local_epoch))
                        reload_needed = True
                        logger.info(
                            "Previous rebuild incomplete; bumping epoch %d -> %d",
                            epoch,
                            local_epoch,
                        )
                    elif is_newer(remote_version, data_version):
                        local_epoch = epoch + 1
                        await tx.set_var(EPOCH_KEY, str(local_epoch))
                        await tx.delete_var(DATA_VERSION_KEY)
                        reload_needed = True
                        logger.info(
                            "Remote data %s is newer than stored %s; bumping epoch %d -> %d",
                            remote_version,
                            data_version,
                            epoch,
                            local_epoch,
                        )
                    else:
                        local_epoch = epoch
                        reload_needed = False
        except Exception:
            self._transition(GuardState.ERROR)
            raise

        self._local_epoch = local_epoch
        self._reload_needed = reload_needed
        self._transition(GuardState.RELOAD if reload_needed else GuardState.READY)
        return reload_needed

    async def check(self, tx: StoreTransaction) -> None:
        """Transaction prefix: fail unless the stored epoch is still ours."""
        if not self.is_initialized and not self.is_stale:
            raise RuntimeError("Transaction attempted before the initial transaction")
        if self.is_stale:
            raise StaleInstance(self._local_epoch, None)
        stored = await tx.get_epoch()
        if stored is None or stored != self._local_epoch:
            self._transition(GuardState.ERROR)
            logger.warning(
                "Stale instance: local epoch %s, stored epoch %s", self._local_epoch, stored
            )
            raise StaleInstance(self._local_epoch, stored)

    def _transition(self, state: GuardState) -> None:
        logger.debug("Version guard: %s -> %s", self.state, state)
        self.state = state

    def mark_ready(self) -> None:
        """Record that the store now holds a committed dataset for this epoch."""
        if self.state is GuardState.RELOAD:
            self._transition(GuardState.READY)
            self._reload_needed = False

    @asynccontextmanager
    async def guarded_read(self) -> AsyncGenerator[StoreTransaction]:
        """Open a read transaction that has passed the prefix check."""
        async with self.store.read_transaction() as tx:
            await self.check(tx)
            yield tx

    @asynccontextmanager
    async def guarded_write(self) -> AsyncGenerator[StoreTransaction]:
        """Open a read-write transaction that has passed the prefix check."""
        async with self.store.write_transaction() as tx:
            await self.check(tx)
            yield tx
