"""StorageBackend protocol — the single substitution point for physical bytes.

Every other component calls only this contract. Implementations must:

- raise ``ObjectNotFoundError`` for a missing key and ``StorageBackendError``
  for every other failure, never a backend-specific exception;
- treat ``delete`` of a missing key as success;
- support partial reads through ``read_stream(key, ByteRange(...))``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .types import ByteRange, Content, ObjectMetadata, StoredObject


@runtime_checkable
class StorageBackend(Protocol):
    """Core interface every physical byte store implements."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Acquire clients/connections. No-op if not needed."""
        ...

    async def close(self) -> None:
        """Release clients/connections."""
        ...

    # ------------------------------------------------------------------
    # Bytes
    # ------------------------------------------------------------------

    async def save(self, content: Content, metadata: ObjectMetadata) -> StoredObject:
        """Store *content* under a fresh backend-chosen key."""
        ...

    async def read_all(self, storage_key: str) -> bytes: ...

    async def read_stream(
        self,
        storage_key: str,
        byte_range: ByteRange | None = None,
    ) -> AsyncIterator[bytes]:
        """Open the object and return an iterator over its (partial) bytes.

        Awaiting this call surfaces ``ObjectNotFoundError`` before any
        chunk is produced.
        """
        ...

    async def exists(self, storage_key: str) -> bool: ...

    async def delete(self, storage_key: str) -> None: ...

    def public_url(self, storage_key: str) -> str | None:
        """Directly addressable URL for the object, or ``None``."""
        ...
