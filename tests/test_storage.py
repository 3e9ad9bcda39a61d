from __future__ import annotations

from pathlib import Path

import anyio
import pytest
import yaml
from fastapi import HTTPException, status

from gemmirror.gem_source.storage import (
    CONTENT_FILENAME,
    PROPERTIES_FILENAME,
    GemResource,
    GemStorageError,
    LocalGemStorage,
    sanitize_identifier,
)


@pytest.mark.anyio
async def test_save_then_load(tmp_path: Path) -> None:
    storage = LocalGemStorage(tmp_path / "gem_cache")
    properties = {"Content-Type": "application/octet-stream", "Content-Length": "9"}

    assert await storage.exists("foo-1.0.gem") is False
    await storage.save("foo-1.0.gem", b"gem-bytes", properties)

    assert await storage.exists("foo-1.0.gem") is True
    assert await storage.load("foo-1.0.gem") == GemResource(content=b"gem-bytes", properties=properties)


@pytest.mark.anyio
async def test_layout_is_one_directory_per_gem(tmp_path: Path) -> None:
    root = tmp_path / "gem_cache"
    storage = LocalGemStorage(root)
    await storage.save("foo-1.0.gem", b"abc", {"ETag": '"v1"'})

    resource_dir = root / "foo-1.0.gem"
    assert (resource_dir / CONTENT_FILENAME).read_bytes() == b"abc"
    assert yaml.safe_load((resource_dir / PROPERTIES_FILENAME).read_text()) == {"ETag": '"v1"'}
    assert not [path for path in resource_dir.iterdir() if path.name.endswith(".tmp")]


@pytest.mark.anyio
async def test_second_save_replaces_first(tmp_path: Path) -> None:
    storage = LocalGemStorage(tmp_path)
    await storage.save("foo-1.0.gem", b"first", {"Content-Length": "5"})
    await storage.save("foo-1.0.gem", b"second", {"Content-Length": "6"})

    resource = await storage.load("foo-1.0.gem")
    assert resource.content == b"second"
    assert resource.properties == {"Content-Length": "6"}


@pytest.mark.anyio
async def test_properties_file_is_optional(tmp_path: Path) -> None:
    resource_dir = tmp_path / "legacy-0.1.gem"
    resource_dir.mkdir()
    (resource_dir / CONTENT_FILENAME).write_bytes(b"legacy")

    resource = await LocalGemStorage(tmp_path).load("legacy-0.1.gem")
    assert resource == GemResource(content=b"legacy", properties={})


@pytest.mark.anyio
async def test_load_missing_gem_raises_storage_error(tmp_path: Path) -> None:
    with pytest.raises(GemStorageError) as exc_info:
        await LocalGemStorage(tmp_path).load("missing-1.0.gem")
    assert exc_info.value.identifier == "missing-1.0.gem"


@pytest.mark.anyio
async def test_save_failure_raises_storage_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    storage = LocalGemStorage(blocker)

    with pytest.raises(GemStorageError):
        await storage.save("foo-1.0.gem", b"abc", {})


@pytest.mark.parametrize("identifier", ["", ".", "..", "../escape.gem", "a/b.gem", "nul\x00.gem"])
def test_sanitize_identifier_rejects_escapes(tmp_path: Path, identifier: str) -> None:
    with pytest.raises(HTTPException) as exc_info:
        sanitize_identifier(tmp_path, identifier)
    assert exc_info.value.status_code == status.HTTP_400_BAD_REQUEST


def test_sanitize_identifier_accepts_plain_names(tmp_path: Path) -> None:
    assert sanitize_identifier(tmp_path, "rails-7.1.0.gem") == tmp_path.resolve() / "rails-7.1.0.gem"


def test_status_reports_writable_directory(tmp_path: Path) -> None:
    status_payload = LocalGemStorage(tmp_path / "gem_cache").status()

    assert status_payload["backend"] == "local"
    assert status_payload["writable"] is True


@pytest.mark.anyio
async def test_concurrent_saves_leave_one_complete_entry(tmp_path: Path) -> None:
    storage = LocalGemStorage(tmp_path)
    properties = {"Content-Type": "application/octet-stream", "Content-Length": "9"}

    async with anyio.create_task_group() as tg:
        for _ in range(4):
            tg.start_soon(storage.save, "foo-1.0.gem", b"gem-bytes", properties)

    assert await storage.load("foo-1.0.gem") == GemResource(content=b"gem-bytes", properties=properties)
    assert sorted(path.name for path in (tmp_path / "foo-1.0.gem").iterdir()) == sorted(
        [CONTENT_FILENAME, PROPERTIES_FILENAME]
    )
