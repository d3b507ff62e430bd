"""Shared test fixtures for the dataset replica."""

from __future__ import annotations

import gzip
import json
from typing import TYPE_CHECKING

import httpx
import pytest

from replica.config import Settings
from replica.services.manifest_service import ManifestEntry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

TEST_BASE_URL = "http://data.test/data"
INDEX_NAME = "data_index.gz"


def gzip_json(obj: object) -> bytes:
    """Compress a JSON document the way the published data files are."""
    return gzip.compress(json.dumps(obj).encode("utf-8"))


def manifest_of(entries: dict[str, tuple[str, int]]) -> dict[str, ManifestEntry]:
    """Build a manifest from ``name -> (revision, size)`` pairs."""
    return {name: ManifestEntry(revision=rev, size=size) for name, (rev, size) in entries.items()}


class FakeRemote:
    """In-memory stand-in for the published dataset served over HTTP."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.failing: set[str] = set()
        self.requests: list[str] = []
        self.headers: list[httpx.Headers] = []

    def publish(self, entries: dict[str, tuple[str, bytes]]) -> None:
        """Publish ``name -> (revision, data)`` and a matching index."""
        index = {name: [rev, len(data)] for name, (rev, data) in entries.items()}
        self.files = {name: data for name, (_rev, data) in entries.items()}
        self.files[INDEX_NAME] = gzip_json(index)

    def handler(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        self.requests.append(name)
        self.headers.append(request.headers)
        if name in self.failing:
            return httpx.Response(500)
        if name not in self.files:
            return httpx.Response(404)
        return httpx.Response(200, content=self.files[name])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler), base_url=TEST_BASE_URL + "/"
        )

    def data_requests(self) -> list[str]:
        return [name for name in self.requests if name != INDEX_NAME]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary store."""
    return Settings(
        _env_file=None,
        data_base_url=TEST_BASE_URL,
        index_name=INDEX_NAME,
        store_path=tmp_path / "store" / "replica.db",
        store_busy_timeout=5.0,
    )


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
async def http_client(fake_remote: FakeRemote) -> AsyncGenerator[httpx.AsyncClient]:
    """HTTP client routed to the fake remote."""
    async with fake_remote.client() as client:
        yield client
