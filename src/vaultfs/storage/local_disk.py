"""LocalDiskBackend — objects as plain files under one root directory."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from vaultfs.exceptions import ObjectNotFoundError, StorageBackendError
from vaultfs.utils import generate_storage_name

from .types import DEFAULT_CHUNK_SIZE, StoredObject

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .types import ByteRange, Content, ObjectMetadata

logger = logging.getLogger(__name__)


class LocalDiskBackend:
    """Local filesystem storage backend.

    Objects live at ``{root_dir}/{storage_key}``. The root directory is
    created on construction. Blocking I/O runs in worker threads.

    Security: _resolve_key() ensures every key stays inside root_dir,
    preventing path traversal.
    """

    def __init__(
        self,
        root_dir: Path | str,
        *,
        prefix: str = "",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.root_dir = Path(root_dir).resolve()
        self.prefix = prefix
        self.chunk_size = chunk_size

        self.root_dir.mkdir(parents=True, exist_ok=True)
        if not self.root_dir.is_dir():
            raise NotADirectoryError(f"Storage root is not a directory: {self.root_dir}")

    # =========================================================================
    # Key Resolution & Security
    # =========================================================================

    def _resolve_key(self, storage_key: str) -> Path:
        """Resolve a storage key to a physical path inside root_dir."""
        rel = storage_key.replace("\\", "/").lstrip("/")
        if not rel or any(part in ("", ".", "..") for part in rel.split("/")):
            raise StorageBackendError(
                f"Invalid storage key: {storage_key!r}", storage_key=storage_key
            )

        resolved = (self.root_dir / rel).resolve()
        try:
            resolved.relative_to(self.root_dir)
        except ValueError:
            raise StorageBackendError(
                f"Storage key resolves outside the storage root: {storage_key!r}",
                storage_key=storage_key,
            ) from None
        return resolved

    # =========================================================================
    # Lifecycle (no-op for local disk)
    # =========================================================================

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # =========================================================================
    # Write
    # =========================================================================

    async def save(self, content: Content, metadata: ObjectMetadata) -> StoredObject:
        """Write *content* to a fresh key. Atomic via tempfile + replace."""
        storage_key = generate_storage_name(metadata.original_name, self.prefix)
        target = self._resolve_key(storage_key)

        def _write() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    if isinstance(content, bytes | bytearray | memoryview):
                        f.write(content)
                    else:
                        shutil.copyfileobj(content, f, self.chunk_size)
                size = Path(tmp_path).stat().st_size
                Path(tmp_path).replace(target)
            except Exception:
                with contextlib.suppress(OSError):
                    Path(tmp_path).unlink()
                raise
            return size

        try:
            size = await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageBackendError(
                f"Failed to write object {storage_key}: {e}", storage_key=storage_key
            ) from e

        logger.debug("Stored %s (%d bytes) on local disk", storage_key, size)
        return StoredObject(storage_key=storage_key, size=size)

    # =========================================================================
    # Read
    # =========================================================================

    async def read_all(self, storage_key: str) -> bytes:
        path = self._resolve_key(storage_key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except (FileNotFoundError, IsADirectoryError):
            raise ObjectNotFoundError(storage_key) from None
        except OSError as e:
            raise StorageBackendError(
                f"Failed to read object {storage_key}: {e}", storage_key=storage_key
            ) from e

    async def read_stream(
        self,
        storage_key: str,
        byte_range: ByteRange | None = None,
    ) -> AsyncIterator[bytes]:
        path = self._resolve_key(storage_key)
        if not await asyncio.to_thread(path.is_file):
            raise ObjectNotFoundError(storage_key)

        start = byte_range.start if byte_range else 0
        end = byte_range.end if byte_range else None
        return self._iter_file(path, storage_key, start, end)

    async def _iter_file(
        self,
        path: Path,
        storage_key: str,
        start: int,
        end: int | None,
    ) -> AsyncIterator[bytes]:
        # Opened on first iteration so an unconsumed stream holds no descriptor.
        try:
            handle = await asyncio.to_thread(path.open, "rb")
        except (FileNotFoundError, IsADirectoryError):
            raise ObjectNotFoundError(storage_key) from None
        except OSError as e:
            raise StorageBackendError(
                f"Failed to open object {storage_key}: {e}", storage_key=storage_key
            ) from e

        try:
            if start:
                await asyncio.to_thread(handle.seek, start)
            remaining = None if end is None else end - start + 1
            while remaining is None or remaining > 0:
                size = self.chunk_size if remaining is None else min(self.chunk_size, remaining)
                chunk = await asyncio.to_thread(handle.read, size)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk
        except OSError as e:
            raise StorageBackendError(
                f"Failed to read object {storage_key}: {e}", storage_key=storage_key
            ) from e
        finally:
            handle.close()

    async def exists(self, storage_key: str) -> bool:
        path = self._resolve_key(storage_key)
        return await asyncio.to_thread(path.is_file)

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(self, storage_key: str) -> None:
        """Remove the object. A missing key is not an error."""
        path = self._resolve_key(storage_key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageBackendError(
                f"Failed to delete object {storage_key}: {e}", storage_key=storage_key
            ) from e
        logger.debug("Deleted %s from local disk", storage_key)

    def public_url(self, storage_key: str) -> str | None:
        """Local objects have no public URL; downloads go through the API."""
        return None
