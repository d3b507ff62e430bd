"""Two-pass dataset loader: local cache first, then the network for the rest."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from replica.exceptions import StaleInstance
from replica.services.manifest_service import load_json_blob
from replica.services.reconcile_service import cached_names

if TYPE_CHECKING:
    from collections.abc import Iterator

    from replica.services.manifest_service import ManifestEntry
    from replica.services.remote_service import RemoteSource
    from replica.services.version_guard import VersionGuard

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
    """Download progress across all files still missing after the cache pass."""

    bytes_done: int
    bytes_total: int

    @property
    def percent(self) -> int:
        if self.bytes_total <= 0:
            return 100
        return min(100, math.floor(self.bytes_done / self.bytes_total * 100))

    @property
    def message(self) -> str:
        if self.bytes_total <= 0:
            return "Downloading..."
        return f"Downloading ... {self.percent}%"


ProgressCallback = Callable[[Progress], None]


class ProgressReporter:
    """Forward progress to an optional callback; callback errors never interrupt a load."""

    def __init__(self, callback: ProgressCallback | None, bytes_total: int = 0) -> None:
        self._callback = callback
        self.bytes_total = bytes_total
        self.bytes_done = 0

    def report(self, in_flight: int = 0) -> None:
        """Report completed bytes plus *in_flight* bytes of the current fetch."""
        if self._callback is None:
            return
        try:
            self._callback(Progress(self.bytes_done + in_flight, self.bytes_total))
        except Exception:
            logger.exception("Progress callback failed; ignoring")

    def complete(self, size: int) -> None:
        """Account one finished fetch and report it."""
        self.bytes_done += size
        self.report()


@dataclass
class Dataset(Mapping[str, bytes]):
    """A complete set of data files for one remote manifest."""

    manifest: dict[str, ManifestEntry]
    blobs: dict[str, bytes]
    from_cache: set[str] = field(default_factory=set)
    from_network: set[str] = field(default_factory=set)

    def __getitem__(self, name: str) -> bytes:
        return self.blobs[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.blobs)

    def __len__(self) -> int:
        return len(self.blobs)

    def json_data(self, name: str) -> Any:
        """Inflate and parse a gzip-compressed JSON data file.

        Raises KeyError for an unknown file and ValueError if the file is not
        gzip-compressed JSON.
        """
        if name not in self.blobs:
            raise KeyError(f"Can't find requested data file {name!r}")
        return load_json_blob(self.blobs[name])


async def cache_pass(
    guard: VersionGuard | None, remote: dict[str, ManifestEntry]
) -> dict[str, bytes]:
    """Copy every stored blob that is at least as new as the remote revision.

    Returns an empty mapping when there is no usable store, when the local
    manifest is absent or invalid, or when the store becomes unusable
    mid-read; the network pass then fetches everything.
    """
    if guard is None or not guard.is_initialized:
        return {}

    blobs: dict[str, bytes] = {}
    try:
        async with guard.guarded_read() as tx:
            local = await tx.read_manifest()
            for name in cached_names(remote, local):
                data = await tx.get_blob(name)
                if data is None:
                    logger.warning("Local manifest lists %s but no blob is stored", name)
                    continue
                blobs[name] = data
    except StaleInstance:
        logger.warning("Local store taken over by another instance; skipping cache pass")
        return {}
    except SQLAlchemyError as exc:
        logger.warning("Cache pass failed, downloading everything: %s", exc)
        return {}

    logger.info("Cache pass: %d of %d file(s) loaded locally", len(blobs), len(remote))
    return blobs


async def network_pass(
    source: RemoteSource,
    remote: dict[str, ManifestEntry],
    blobs: dict[str, bytes],
    progress: ProgressReporter,
) -> set[str]:
    """Fetch every file missing from *blobs*, in manifest order.

    Any fetch failure aborts the whole pass. Returns the fetched names.
    """
    missing = [name for name in remote if name not in blobs]
    progress.bytes_total = sum(remote[name].size for name in missing)
    fetched: set[str] = set()

    for name in missing:
        progress.report()
        data = await source.fetch_blob(name, on_chunk=progress.report)
        if len(data) != remote[name].size:
            logger.warning(
                "Size mismatch for %s: manifest says %d, received %d",
                name,
                remote[name].size,
                len(data),
            )
        blobs[name] = data
        fetched.add(name)
        progress.complete(remote[name].size)

    if missing:
        logger.info(
            "Network pass: downloaded %d file(s), %d bytes", len(missing), progress.bytes_done
        )
    return fetched


async def download(
    remote: dict[str, ManifestEntry],
    source: RemoteSource,
    guard: VersionGuard | None = None,
    progress: ProgressCallback | None = None,
) -> Dataset:
    """Assemble the complete dataset for *remote*."""
    blobs = await cache_pass(guard, remote)
    cached = set(blobs)
    fetched = await network_pass(source, remote, blobs, ProgressReporter(progress))
    ordered = {name: blobs[name] for name in remote}
    return Dataset(manifest=remote, blobs=ordered, from_cache=cached, from_network=fetched)
