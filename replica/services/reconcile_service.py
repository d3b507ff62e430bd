"""Reconciliation: diff the remote manifest against the local one."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

    from replica.services.manifest_service import ManifestEntry


@dataclass
class SyncPlan:
    """Changes needed to bring the local store in line with the remote manifest."""

    to_update: list[str] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def is_synchronized(self) -> bool:
        """True when neither updates nor removals are required."""
        return not self.to_update and not self.to_remove


def compute_sync_plan(
    remote: Mapping[str, ManifestEntry],
    local: Mapping[str, ManifestEntry] | None,
) -> SyncPlan:
    """Compute the sync plan for *remote* against *local*.

    A missing (or unreadable) local manifest is treated as empty, so every
    remote file lands in ``to_update``. Files are only ever updated when the
    local revision is strictly older; a newer local revision is kept.
    """
    plan = SyncPlan()
    local = local or {}

    for name in sorted(remote):
        local_entry = local.get(name)
        if local_entry is None or local_entry.revision < remote[name].revision:
            plan.to_update.append(name)
        else:
            plan.unchanged.append(name)

    plan.to_remove = sorted(name for name in local if name not in remote)
    return plan


def cached_names(
    remote: Mapping[str, ManifestEntry],
    local: Mapping[str, ManifestEntry] | None,
) -> list[str]:
    """Names whose stored blob may satisfy the remote manifest (local revision >= remote)."""
    if not local:
        return []
    return [
        name
        for name, entry in remote.items()
        if name in local and local[name].revision >= entry.revision
    ]
