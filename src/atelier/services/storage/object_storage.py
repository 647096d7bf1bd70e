"""Object storage collaborator.

The engine only needs three things from storage: a collision-resistant key, a way to
write bytes under it, and a download URL. ``LocalObjectStorage`` keeps objects on the
local filesystem and serves them under a public base URL.
"""

import asyncio
import re
import secrets
import time
from pathlib import Path
from typing import Protocol
from uuid import UUID

import structlog

from atelier.services.exceptions import StorageUnavailableError

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def make_storage_key(namespace: str, base_name: str, owner_id: UUID | str) -> str:
    """Build a storage key that is unique across repeated calls.

    Layout: ``{namespace}/{owner_id}/{ms_timestamp}-{random}-{base_name}``. The random
    token makes two calls in the same millisecond with the same name distinct.

    Args:
        namespace: Top-level prefix (e.g. "outputs")
        base_name: Human-readable file name; directories are stripped
        owner_id: Owning user

    Returns:
        Storage key
    """
    clean_name = base_name.rsplit("/", 1)[-1]
    clean_name = _UNSAFE_CHARS.sub("-", clean_name).strip("-.") or "object"
    timestamp = int(time.time() * 1000)
    token = secrets.token_hex(6)
    return f"{namespace.strip('/')}/{owner_id}/{timestamp}-{token}-{clean_name}"


class ObjectStorage(Protocol):
    """Storage operations consumed by the engine."""

    async def put_object(self, data: bytes, key: str, mime_type: str) -> None: ...

    async def get_object(self, key: str) -> bytes: ...

    async def get_download_url(self, key: str, ttl_seconds: int = 86400) -> str: ...


class LocalObjectStorage:
    """Filesystem-backed object storage.

    Args:
        root: Directory holding the objects
        public_base_url: URL prefix under which ``root`` is served
    """

    def __init__(self, root: str | Path, public_base_url: str = "http://localhost:8000/files"):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Storage key escapes the storage root: {key}")
        return path

    async def put_object(self, data: bytes, key: str, mime_type: str) -> None:
        """Write ``data`` under ``key``.

        Raises:
            StorageUnavailableError: If the write fails
        """
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to store {key}: {e}") from e
        logger.debug("storage.object.stored", key=key, mime_type=mime_type, size_bytes=len(data))

    async def get_object(self, key: str) -> bytes:
        """Read the bytes stored under ``key``.

        Raises:
            StorageUnavailableError: If the object cannot be read
        """
        try:
            return await asyncio.to_thread(self._path(key).read_bytes)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read {key}: {e}") from e

    async def get_download_url(self, key: str, ttl_seconds: int = 86400) -> str:
        # Local files do not expire; ttl is accepted for interface parity
        return f"{self.public_base_url}/{key}"

    def exists(self, key: str) -> bool:
        return self._path(key).exists()
