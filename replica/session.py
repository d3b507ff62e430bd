"""Replica session: one client instance's view of the dataset and the local store."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from replica.exceptions import ReplicaError, StoreUnavailable
from replica.services.commit_service import commit_dataset
from replica.services.download_service import download
from replica.services.remote_service import RemoteSource
from replica.services.revision_service import manifest_version
from replica.services.store_service import LocalStore
from replica.services.version_guard import VersionGuard

if TYPE_CHECKING:
    import httpx

    from replica.config import Settings
    from replica.services.commit_service import CommitResult
    from replica.services.download_service import Dataset, ProgressCallback
    from replica.services.remote_service import RemoteIndex

logger = logging.getLogger(__name__)


class ReplicaSession:
    """Loads the dataset for one client instance.

    The session owns its store connection, its version guard, and the loaded
    dataset; nothing is shared through module state. ``load`` returns as soon
    as the dataset is assembled, and the write-back to the local store runs
    in a background task.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        settings.validate_runtime()
        self.settings = settings
        self.source = RemoteSource(settings, client)
        self.store: LocalStore | None = None
        self.guard: VersionGuard | None = None
        self.remote_index: RemoteIndex | None = None
        self._dataset: Dataset | None = None
        self._commit_task: asyncio.Task[CommitResult | None] | None = None

    async def __aenter__(self) -> ReplicaSession:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    @property
    def dataset(self) -> Dataset:
        """The loaded dataset; only available after ``load`` succeeds."""
        if self._dataset is None:
            raise RuntimeError("Dataset not loaded yet")
        return self._dataset

    @property
    def network_only(self) -> bool:
        return self.guard is None

    @property
    def stale(self) -> bool:
        """True once another instance has taken over the local store.

        The loaded dataset stays usable, but this session no longer touches the
        store; a new session is needed to reload.
        """
        return self.guard is not None and self.guard.is_stale

    async def load(self, progress: ProgressCallback | None = None) -> Dataset:
        """Fetch the remote manifest and assemble the full dataset.

        Raises TransportFailure or IndexInvalid when the dataset cannot be
        assembled; store problems only degrade the load to network-only.
        """
        if self._dataset is not None:
            raise RuntimeError("Session already loaded; start a new session to reload")

        self.remote_index = await self.source.fetch_index()
        remote = self.remote_index.manifest
        await self._connect_store(manifest_version(remote))

        dataset = await download(remote, self.source, self.guard, progress)
        self._dataset = dataset
        logger.info(
            "Dataset ready: %d file(s), %d from cache, %d downloaded",
            len(dataset),
            len(dataset.from_cache),
            len(dataset.from_network),
        )

        if self.guard is not None:
            self._commit_task = asyncio.create_task(
                commit_dataset(self.guard, self.remote_index, dataset)
            )
        return dataset

    async def wait_for_commit(self) -> CommitResult | None:
        """Wait for the background write-back; None if none ran or it failed."""
        if self._commit_task is None:
            return None
        return await self._commit_task

    async def aclose(self) -> None:
        """Finish the pending write-back and release store and HTTP resources."""
        try:
            await self.wait_for_commit()
        finally:
            if self.store is not None:
                await self.store.close()
            await self.source.aclose()

    async def _connect_store(self, remote_version: str) -> None:
        """Open the store and run the initial transaction, or fall back to network-only."""
        try:
            store = await LocalStore.open(self.settings)
        except StoreUnavailable as exc:
            logger.warning("Local store unavailable, continuing network-only: %s", exc)
            return

        guard = VersionGuard(store)
        try:
            reload_needed = await guard.initialize(remote_version)
        except (ReplicaError, SQLAlchemyError) as exc:
            logger.warning("Initial store transaction failed, continuing network-only: %s", exc)
            await store.close()
            return

        self.store = store
        self.guard = guard
        logger.info(
            "Local store epoch %d (%s)",
            guard.local_epoch,
            "reload needed" if reload_needed else "up to date",
        )
