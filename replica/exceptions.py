"""Replica exception types.

Convention:
- Failures that threaten the in-memory dataset (``TransportFailure``, an
  invalid *remote* manifest) propagate to the caller of
  ``ReplicaSession.load`` and abort the load with no partial result.
- Failures that only affect the local cache (``StoreUnavailable``, an invalid
  *local* manifest, ``StaleInstance`` during write-back, ``SyncCommitFailure``)
  are logged and absorbed; the load degrades to network-only behaviour.
"""

from __future__ import annotations


class ReplicaError(Exception):
    """Base class for all replica engine failures."""


class StoreUnavailable(ReplicaError):
    """The local store could not be opened (newer schema, blocked upgrade, I/O error)."""


class IndexInvalid(ReplicaError):
    """A manifest failed decompression, JSON parsing, or schema validation."""


class TransportFailure(ReplicaError):
    """Fetching the manifest or a blob from the remote source failed."""


class StaleInstance(ReplicaError):
    """The store's epoch no longer matches the epoch this instance initialized with.

    Another instance has started a rebuild of the shared store. The current
    instance must stop using the store; its in-memory dataset stays valid.
    """

    def __init__(self, local_epoch: int | None, stored_epoch: int | None) -> None:
        self.local_epoch = local_epoch
        self.stored_epoch = stored_epoch
        super().__init__(
            f"Local store epoch changed (expected {local_epoch}, found {stored_epoch}); "
            "reload required"
        )


class SyncCommitFailure(ReplicaError):
    """The best-effort write-back of a loaded dataset was aborted."""
