from __future__ import annotations

from pathlib import Path
from typing import Mapping

import anyio
import httpx
import pytest
from fastapi.testclient import TestClient

from gemmirror.common.settings import GemMirrorSettings
from gemmirror.gem_source.storage import GemResource, GemStorageError
from gemmirror.proxy.app import create_app


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeUpstream:
    """Stands in for upstream gem servers behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._responses: dict[str, httpx.Response] = {}

    def add(
        self,
        url: str,
        content: bytes = b"",
        status_code: int = 200,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._responses[url] = httpx.Response(status_code, content=content, headers=dict(headers or {}))

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls.append(url)
        response = self._responses.get(url)
        if response is None:
            return httpx.Response(404, content=b"not found")
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class InMemoryGemStorage:
    def __init__(self) -> None:
        self.entries: dict[str, GemResource] = {}
        self.exists_calls = 0
        self.load_calls = 0
        self.save_calls = 0
        self.fail_saves = False
        self._lookup_parties = 0
        self._lookups_arrived: anyio.Event | None = None

    def hold_lookups(self, parties: int) -> None:
        """Make ``exists`` wait until ``parties`` lookups are in flight together."""
        self._lookup_parties = parties
        self._lookups_arrived = anyio.Event()

    async def exists(self, identifier: str) -> bool:
        self.exists_calls += 1
        found = identifier in self.entries
        if self._lookups_arrived is not None:
            if self.exists_calls >= self._lookup_parties:
                self._lookups_arrived.set()
            await self._lookups_arrived.wait()
        return found

    async def load(self, identifier: str) -> GemResource:
        self.load_calls += 1
        return self.entries[identifier]

    async def save(self, identifier: str, content: bytes, properties: Mapping[str, str]) -> None:
        self.save_calls += 1
        if self.fail_saves:
            raise GemStorageError(identifier, "disk full")
        self.entries[identifier] = GemResource(content=content, properties=dict(properties))

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "writable": True}

    @property
    def touched(self) -> bool:
        return bool(self.exists_calls or self.load_calls or self.save_calls)


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def memory_storage() -> InMemoryGemStorage:
    return InMemoryGemStorage()


@pytest.fixture
def settings(tmp_path: Path) -> GemMirrorSettings:
    return GemMirrorSettings(
        storage_path=tmp_path / "storage",
        rubygems_url="https://rubygems.example",
        stats_database_url=f"sqlite+pysqlite:///{(tmp_path / 'stats.db').as_posix()}",
    )


@pytest.fixture
def client(settings: GemMirrorSettings, fake_upstream: FakeUpstream) -> TestClient:
    http_client = fake_upstream.client()
    app = create_app(settings, http_client=http_client)
    with TestClient(app) as test_client:
        yield test_client
    anyio.run(http_client.aclose)
