"""Remote source: fetch the manifest and data files over HTTP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from replica.exceptions import TransportFailure
from replica.services.manifest_service import decode_manifest

if TYPE_CHECKING:
    from collections.abc import Callable

    from replica.config import Settings
    from replica.services.manifest_service import ManifestEntry

logger = logging.getLogger(__name__)

_IDENTITY_ENCODING = {"Accept-Encoding": "identity"}


@dataclass
class RemoteIndex:
    """A validated remote manifest together with its compressed bytes."""

    manifest: dict[str, ManifestEntry]
    raw: bytes


class RemoteSource:
    """HTTP access to the published dataset.

    The manifest and data files are gzip payloads that the client inflates
    itself, so requests ask for the identity encoding: a proxy or server that
    adds (and httpx that strips) a transfer-level ``Content-Encoding`` would
    hand the parser already-inflated bytes.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.index_name = settings.index_name
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=settings.data_base_url.rstrip("/") + "/",
            headers=_IDENTITY_ENCODING,
            timeout=settings.http_timeout,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this source created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> RemoteSource:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def fetch_index(self) -> RemoteIndex:
        """Download and validate the remote manifest.

        Raises TransportFailure if the download fails and IndexInvalid if the
        payload does not decode to a valid manifest.
        """
        raw = await self.fetch_blob(self.index_name)
        manifest = decode_manifest(raw)
        logger.info("Fetched remote manifest: %d data file(s)", len(manifest))
        return RemoteIndex(manifest=manifest, raw=raw)

    async def fetch_blob(
        self, name: str, on_chunk: Callable[[int], None] | None = None
    ) -> bytes:
        """Download one file, reporting bytes received so far after each chunk."""
        chunks: list[bytes] = []
        received = 0
        try:
            async with self.client.stream("GET", name, headers=_IDENTITY_ENCODING) as resp:
                resp.raise_for_status()
                async for chunk in resp.aiter_bytes():
                    chunks.append(chunk)
                    received += len(chunk)
                    if on_chunk is not None:
                        on_chunk(received)
        except httpx.HTTPStatusError as exc:
            msg = f"Failed to download {name}: HTTP {exc.response.status_code}"
            logger.error(msg)
            raise TransportFailure(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Failed to download {name}: {exc}"
            logger.error(msg)
            raise TransportFailure(msg) from exc
        return b"".join(chunks)
