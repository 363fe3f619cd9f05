"""Result types: FileInfo, FolderInfo, VersionInfo, TrashEntry, etc."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime


class ItemType(StrEnum):
    """Kinds of items the trash can hold."""

    FILE = "file"
    FOLDER = "folder"


@dataclass
class FileInfo:
    """File metadata (current version)."""

    id: str
    owner_id: str
    name: str
    folder_id: str | None
    mime_type: str
    size_bytes: int
    storage_key: str
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


@dataclass
class VersionInfo:
    """Version history entry."""

    id: str
    file_id: str
    version: int
    size_bytes: int
    storage_key: str
    created_at: datetime | None = None
    is_current: bool = False


@dataclass
class FolderInfo:
    """Folder metadata."""

    id: str
    owner_id: str
    name: str
    parent_id: str | None
    path: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


@dataclass
class FolderContents:
    """Live child folders and files of one folder (or the root)."""

    folder_id: str | None
    folders: list[FolderInfo] = field(default_factory=list)
    files: list[FileInfo] = field(default_factory=list)


@dataclass
class FilePage:
    """One page of a file listing."""

    entries: list[FileInfo]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


@dataclass
class StorageInfo:
    """Quota ledger snapshot for one user."""

    user_id: str
    used_bytes: int
    quota_bytes: int

    @property
    def available_bytes(self) -> int:
        return max(0, self.quota_bytes - self.used_bytes)

    @property
    def usage_percent(self) -> int:
        if self.quota_bytes <= 0:
            return 0
        return round(self.used_bytes / self.quota_bytes * 100)


@dataclass
class TrashEntry:
    """A trashed file or folder."""

    item_type: ItemType
    id: str
    name: str
    deleted_at: datetime | None
    size_bytes: int | None = None
    parent_id: str | None = None
    owner_id: str | None = None


@dataclass
class PurgeResult:
    """Counts from a permanent delete, empty-trash, or auto-purge sweep."""

    purged_files: int = 0
    purged_folders: int = 0
    failed: int = 0
    orphaned_keys: list[str] = field(default_factory=list)
    """Physical keys whose deletion failed after the metadata was removed."""

    def merge(self, other: PurgeResult) -> None:
        self.purged_files += other.purged_files
        self.purged_folders += other.purged_folders
        self.failed += other.failed
        self.orphaned_keys.extend(other.orphaned_keys)


@dataclass
class FileStream:
    """An open read of a file's bytes, possibly partial."""

    file: FileInfo
    chunks: AsyncIterator[bytes]
    size_bytes: int
    """Total size of the object being read (current or archived version)."""
    start: int = 0
    end: int | None = None
    """Inclusive last byte offset, or ``None`` when reading to EOF."""
    version: int | None = None

    @property
    def content_length(self) -> int:
        last = self.size_bytes - 1 if self.end is None else min(self.end, self.size_bytes - 1)
        return max(0, last - self.start + 1)
