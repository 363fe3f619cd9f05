"""Value types shared by every storage backend."""

from __future__ import annotations

from dataclasses import dataclass
from typing import IO

Content = bytes | IO[bytes]
"""What ``save`` accepts: raw bytes or a readable binary file object."""

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ObjectMetadata:
    """Caller-side description of an object being saved."""

    original_name: str
    mime_type: str = "application/octet-stream"


@dataclass(frozen=True)
class StoredObject:
    """Where a saved object landed and how many bytes it holds."""

    storage_key: str
    size: int


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range; ``end=None`` reads to the end of the object."""

    start: int = 0
    end: int | None = None

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError(f"Range start must be >= 0, got {self.start}")
        if self.end is not None and self.end < self.start:
            raise ValueError(f"Range end {self.end} is before start {self.start}")

    def as_header(self) -> str:
        """HTTP ``Range`` header value."""
        return f"bytes={self.start}-{'' if self.end is None else self.end}"

    def length(self, total: int) -> int:
        """Number of bytes this range covers in an object of *total* bytes."""
        last = total - 1 if self.end is None else min(self.end, total - 1)
        return max(0, last - self.start + 1)


class CountingReader:
    """Wrap a binary file object and count the bytes read through it."""

    def __init__(self, raw: IO[bytes]) -> None:
        self._raw = raw
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._raw.read(size)
        self.bytes_read += len(chunk)
        return chunk


def read_content(content: Content) -> bytes:
    """Materialize *content* as bytes (blocking for file objects)."""
    if isinstance(content, bytes | bytearray | memoryview):
        return bytes(content)
    return content.read()
