"""Manifest wire format: gzip-compressed JSON mapping names to revision and size."""

from __future__ import annotations

import gzip
import json
import zlib
from dataclasses import dataclass
from typing import Any

from replica.exceptions import IndexInvalid
from replica.services.revision_service import is_valid_filename, is_valid_revision


@dataclass(frozen=True)
class ManifestEntry:
    """Revision and byte size of one data file."""

    revision: str
    size: int


def parse_manifest(obj: Any) -> dict[str, ManifestEntry]:
    """Validate a decoded manifest object.

    The object must map file names to ``[revision, size]`` pairs. A single bad
    entry invalidates the whole manifest.
    """
    if not isinstance(obj, dict):
        raise IndexInvalid("Manifest must be a JSON object")

    manifest: dict[str, ManifestEntry] = {}
    for name, value in obj.items():
        if not is_valid_filename(name):
            raise IndexInvalid(f"Invalid data file name in manifest: {name!r}")
        if not isinstance(value, list) or len(value) != 2:
            raise IndexInvalid(f"Manifest entry for {name!r} must be [revision, size]")
        revision, size = value
        if not is_valid_revision(revision):
            raise IndexInvalid(f"Invalid revision for {name!r}: {revision!r}")
        # bool is a subclass of int, but true/false are not sizes
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise IndexInvalid(f"Invalid size for {name!r}: {size!r}")
        manifest[name] = ManifestEntry(revision=revision, size=size)
    return manifest


def decode_manifest(raw: bytes) -> dict[str, ManifestEntry]:
    """Inflate, parse, and validate a compressed manifest."""
    try:
        text = gzip.decompress(raw).decode("utf-8")
    except (OSError, EOFError, zlib.error, UnicodeDecodeError) as exc:
        # A transparently decompressed response fails here as well.
        raise IndexInvalid(f"Manifest is not valid gzip-compressed UTF-8: {exc}") from exc
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as exc:
        raise IndexInvalid(f"Manifest is not valid JSON: {exc}") from exc
    return parse_manifest(obj)


def encode_manifest(manifest: dict[str, ManifestEntry]) -> bytes:
    """Serialize a manifest to its compressed wire format."""
    obj = {name: [entry.revision, entry.size] for name, entry in sorted(manifest.items())}
    return gzip.compress(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def load_json_blob(raw: bytes) -> Any:
    """Inflate and parse a gzip-compressed JSON data file."""
    try:
        return json.loads(gzip.decompress(raw).decode("utf-8"))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Data file is not gzip-compressed JSON: {exc}") from exc
