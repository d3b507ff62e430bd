"""Best-effort write-back of a loaded dataset into the local store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from replica.exceptions import StaleInstance, SyncCommitFailure
from replica.services.reconcile_service import compute_sync_plan
from replica.services.revision_service import manifest_version
from replica.services.store_service import DATA_VERSION_KEY, EPOCH_KEY

if TYPE_CHECKING:
    from replica.services.download_service import Dataset
    from replica.services.remote_service import RemoteIndex
    from replica.services.version_guard import VersionGuard

logger = logging.getLogger(__name__)


@dataclass
class CommitResult:
    """What one write-back changed in the store."""

    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    cleared: bool = False
    writes: int = 0


async def commit_dataset(
    guard: VersionGuard, remote_index: RemoteIndex, dataset: Dataset
) -> CommitResult | None:
    """Reconcile the store with *dataset* in one guarded write transaction.

    The local manifest is re-read inside the transaction rather than reused
    from the cache pass, so a concurrent committer's work is diffed against,
    not overwritten. Returns None when the write-back was abandoned; the
    reason is logged and never raised.
    """
    try:
        return await _commit(guard, remote_index, dataset)
    except StaleInstance as exc:
        logger.warning("%s: %s", SyncCommitFailure.__name__, exc)
    except Exception as exc:
        logger.warning(
            "%s: write-back aborted: %s", SyncCommitFailure.__name__, exc, exc_info=True
        )
    return None


async def _commit(
    guard: VersionGuard, remote_index: RemoteIndex, dataset: Dataset
) -> CommitResult:
    remote = remote_index.manifest
    result = CommitResult()

    async with guard.guarded_write() as tx:
        local = await tx.read_manifest()
        if local is None:
            # No usable manifest: nothing stored can be trusted.
            await tx.clear()
            await tx.set_var(EPOCH_KEY, str(guard.local_epoch))
            for name in remote:
                await tx.put_blob(name, _blob_for(dataset, name))
            await tx.write_manifest(remote, remote_index.raw)
            result.cleared = True
            result.updated = sorted(remote)
        else:
            plan = compute_sync_plan(remote, local)
            if not plan.is_synchronized:
                for name in plan.to_remove:
                    await tx.delete_blob(name)
                for name in plan.to_update:
                    await tx.put_blob(name, _blob_for(dataset, name))
                await tx.write_manifest(remote, remote_index.raw)
                result.updated = plan.to_update
                result.removed = plan.to_remove

        if guard.reload_needed or tx.writes:
            version = manifest_version(remote)
            if await tx.get_var(DATA_VERSION_KEY) != version:
                await tx.set_var(DATA_VERSION_KEY, version)
        result.writes = tx.writes

    guard.mark_ready()
    if result.writes:
        logger.info(
            "Local store synced: %d updated, %d removed%s",
            len(result.updated),
            len(result.removed),
            " (store cleared)" if result.cleared else "",
        )
    else:
        logger.debug("Local store already synchronized")
    return result


def _blob_for(dataset: Dataset, name: str) -> bytes:
    try:
        return dataset[name]
    except KeyError:
        raise SyncCommitFailure(f"Assembled dataset has no data for {name}") from None
