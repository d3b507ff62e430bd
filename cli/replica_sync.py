"""CLI for loading a dataset replica and inspecting the local store."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from pydantic import ValidationError

from replica.config import Settings
from replica.exceptions import ReplicaError, StoreUnavailable
from replica.services.reconcile_service import compute_sync_plan
from replica.services.remote_service import RemoteSource
from replica.services.store_service import DATA_VERSION_KEY, LocalStore
from replica.session import ReplicaSession

if TYPE_CHECKING:
    import httpx

    from replica.services.download_service import Progress
    from replica.services.reconcile_service import SyncPlan

_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def configure_logging(debug: bool) -> None:
    """Configure CLI logging."""
    level = logging.DEBUG if debug else logging.WARNING
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


def build_settings(args: argparse.Namespace) -> Settings:
    """Merge command-line overrides into environment-derived settings."""
    overrides: dict[str, Any] = {}
    if args.base_url:
        overrides["data_base_url"] = args.base_url
    if args.store:
        overrides["store_path"] = Path(args.store)
    if args.index:
        overrides["index_name"] = args.index
    if args.debug:
        overrides["debug"] = True
    settings = Settings(**overrides)
    settings.data_base_url = validate_server_url(
        settings.data_base_url, args.allow_insecure_http
    )
    return settings


class _ProgressPrinter:
    """Print a status line whenever the whole-percent progress changes."""

    def __init__(self) -> None:
        self._last: str | None = None

    def __call__(self, progress: Progress) -> None:
        message = progress.message
        if message != self._last:
            print(f"  {message}")
            self._last = message


async def run_load(settings: Settings, client: httpx.AsyncClient | None = None) -> None:
    """Load the dataset and wait for the local store write-back."""
    async with ReplicaSession(settings, client) as session:
        dataset = await session.load(progress=_ProgressPrinter())
        result = await session.wait_for_commit()

    print(
        f"Load complete. {len(dataset)} file(s) loaded, "
        f"{len(dataset.from_cache)} from cache, {len(dataset.from_network)} downloaded."
    )
    if session.network_only:
        print("  Warning: local store unavailable; nothing was cached.")
    elif session.stale:
        print("  Warning: another instance took over the local store; run load again to reload.")
    elif result is None:
        print("  Warning: local store was not updated (see log).")
    elif result.writes:
        print(f"  Store updated: {len(result.updated)} written, {len(result.removed)} removed.")


async def run_status(settings: Settings, client: httpx.AsyncClient | None = None) -> SyncPlan:
    """Show what a load would change in the local store, without downloading data."""
    async with RemoteSource(settings, client) as source:
        remote_index = await source.fetch_index()

    local = None
    data_version = None
    try:
        store = await LocalStore.open(settings)
    except StoreUnavailable as exc:
        print(f"  Warning: {exc}")
    else:
        try:
            async with store.read_transaction() as tx:
                local = await tx.read_manifest()
                data_version = await tx.get_var(DATA_VERSION_KEY)
        finally:
            await store.close()

    plan = compute_sync_plan(remote_index.manifest, local)
    print("Replica Status:")
    print(f"  Stored data version: {data_version or '(none)'}")
    print(f"  Up to date:          {len(plan.unchanged)}")
    print(f"  To download:         {len(plan.to_update)}")
    print(f"  To remove:           {len(plan.to_remove)}")
    for name in plan.to_update:
        print(f"    < {name} ({remote_index.manifest[name].revision})")
    for name in plan.to_remove:
        print(f"    - {name}")
    return plan


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="replica-sync",
        description="Maintain a local replica of a published dataset",
    )
    parser.add_argument("--base-url", "-u", help="Base URL of the published data files")
    parser.add_argument("--store", "-s", help="Path of the local store database")
    parser.add_argument("--index", "-i", help="File name of the data index")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// base URLs for non-localhost hosts",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("load", help="Load the dataset and update the local store")
    subparsers.add_parser("status", help="Show what a load would change")

    args = parser.parse_args()
    if args.command not in {"load", "status"}:
        parser.print_help()
        return

    configure_logging(args.debug)
    try:
        settings = build_settings(args)
        settings.validate_runtime()
    except (ValueError, ValidationError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        if args.command == "load":
            asyncio.run(run_load(settings))
        else:
            asyncio.run(run_status(settings))
    except ReplicaError as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
