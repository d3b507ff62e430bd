"""Revision codes and data file naming rules."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

    from replica.services.manifest_service import ManifestEntry

# Name under which the store keeps the manifest itself.
RESERVED_INDEX_NAME = "index"

# Dataset version of an empty manifest; older than every real revision.
EMPTY_DATASET_VERSION = "0000-00-00:000"

_REVISION_RE = re.compile(r"^\d{4}-\d{2}-\d{2}:\d{3}$")
_FILENAME_RE = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$")


def is_valid_revision(value: object) -> bool:
    """Check a ``YYYY-MM-DD:RRR`` revision code.

    Only the shape is checked; the date fields need not form a real date.
    """
    return isinstance(value, str) and _REVISION_RE.fullmatch(value) is not None


def is_valid_filename(value: object) -> bool:
    """Check that *value* may be used as a data file name in a manifest."""
    if not isinstance(value, str) or value == RESERVED_INDEX_NAME:
        return False
    return _FILENAME_RE.fullmatch(value) is not None


def is_newer(candidate: str | None, baseline: str | None) -> bool:
    """Return True if revision *candidate* is strictly newer than *baseline*.

    Revision codes are zero-padded, so plain string comparison is a total
    order. A missing baseline is older than any revision.
    """
    if candidate is None:
        return False
    if baseline is None:
        return True
    return candidate > baseline


def manifest_version(manifest: Mapping[str, ManifestEntry]) -> str:
    """Return the dataset version of a manifest: its greatest revision code.

    An empty manifest is still a complete dataset and gets
    ``EMPTY_DATASET_VERSION``.
    """
    if not manifest:
        return EMPTY_DATASET_VERSION
    return max(entry.revision for entry in manifest.values())
