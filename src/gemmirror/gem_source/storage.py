"""Local storage for cached gem artifacts."""

from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

import structlog
import yaml
from fastapi import HTTPException, status


LOGGER = structlog.get_logger("gemmirror.storage")

CONTENT_FILENAME = "gem"
PROPERTIES_FILENAME = "properties.yaml"


@dataclass(frozen=True)
class GemResource:
    """Cached artifact bytes plus the response headers captured when it was fetched."""

    content: bytes
    properties: dict[str, str] = field(default_factory=dict)


class GemStorageError(Exception):
    """Persisting or reading a cached gem failed."""

    def __init__(self, identifier: str, message: str) -> None:
        super().__init__(f"{identifier}: {message}")
        self.identifier = identifier


class GemStorage(Protocol):
    async def exists(self, identifier: str) -> bool: ...

    async def load(self, identifier: str) -> GemResource: ...

    async def save(self, identifier: str, content: bytes, properties: Mapping[str, str]) -> None: ...

    def status(self) -> dict[str, object]: ...


def sanitize_identifier(storage_dir: Path, identifier: str) -> Path:
    """Return the directory for ``identifier``; it must be a direct child of ``storage_dir``."""

    if not identifier or "\x00" in identifier:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid gem identifier")
    root = storage_dir.resolve()
    resolved = root.joinpath(identifier).resolve(strict=False)
    if resolved.parent != root:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid gem identifier")
    return resolved


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class LocalGemStorage:
    """Stores each gem in its own directory: the raw bytes and a YAML file of properties.

    Writes go through a temporary file and ``os.replace`` so concurrent saves of
    the same identifier leave one complete copy behind.
    """

    def __init__(self, storage_dir: Path) -> None:
        self._storage_dir = storage_dir

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    def _resource_dir(self, identifier: str) -> Path:
        return sanitize_identifier(self._storage_dir, identifier)

    async def exists(self, identifier: str) -> bool:
        resource_dir = self._resource_dir(identifier)
        return await asyncio.to_thread((resource_dir / CONTENT_FILENAME).is_file)

    async def load(self, identifier: str) -> GemResource:
        resource_dir = self._resource_dir(identifier)

        def _read() -> GemResource:
            content = (resource_dir / CONTENT_FILENAME).read_bytes()
            properties_path = resource_dir / PROPERTIES_FILENAME
            properties: dict[str, str] = {}
            if properties_path.exists():
                loaded = yaml.safe_load(properties_path.read_text(encoding="utf-8")) or {}
                properties = {str(key): str(value) for key, value in loaded.items()}
            return GemResource(content=content, properties=properties)

        try:
            return await asyncio.to_thread(_read)
        except (OSError, yaml.YAMLError) as exc:
            raise GemStorageError(identifier, f"failed to load cached gem: {exc}") from exc

    async def save(self, identifier: str, content: bytes, properties: Mapping[str, str]) -> None:
        resource_dir = self._resource_dir(identifier)
        serialized = yaml.safe_dump(dict(properties), default_flow_style=False, sort_keys=True)

        def _write() -> None:
            resource_dir.mkdir(parents=True, exist_ok=True)
            # Properties first: a visible content file implies its properties are complete.
            _atomic_write(resource_dir / PROPERTIES_FILENAME, serialized.encode("utf-8"))
            _atomic_write(resource_dir / CONTENT_FILENAME, content)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise GemStorageError(identifier, f"failed to save gem: {exc}") from exc
        LOGGER.debug("gem_saved", identifier=identifier, bytes=len(content))

    def status(self) -> dict[str, object]:
        storage = self._storage_dir
        storage.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(storage),
            "writable": storage.exists() and os.access(storage, os.W_OK),
        }
