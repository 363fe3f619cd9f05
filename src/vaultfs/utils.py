"""Naming, materialized-path, and record conversion helpers."""

from __future__ import annotations

import mimetypes
import posixpath
import uuid
from typing import TYPE_CHECKING

from .types import FileInfo, FolderInfo, VersionInfo

if TYPE_CHECKING:
    from vaultfs.models.files import FileBase, FileVersionBase
    from vaultfs.models.folders import FolderBase

MAX_NAME_LENGTH = 255

_INVALID_NAME_CHARS = frozenset("/\\\x00")


# =========================================================================
# Names
# =========================================================================


def validate_name(name: str) -> tuple[bool, str]:
    """Validate a file or folder name. Returns ``(ok, error_message)``."""
    if not name or not name.strip():
        return False, "Name must not be empty"
    if len(name) > MAX_NAME_LENGTH:
        return False, f"Name too long ({len(name)} > {MAX_NAME_LENGTH} characters)"
    if name in (".", ".."):
        return False, f"Reserved name: {name}"
    if any(c in _INVALID_NAME_CHARS or ord(c) < 32 for c in name):
        return False, f"Name contains invalid characters: {name!r}"
    return True, ""


def guess_mime_type(filename: str) -> str:
    """Guess the MIME type of a file based on its name."""
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"


def file_extension(filename: str) -> str:
    """Lower-cased extension including the dot, or ``""``."""
    return posixpath.splitext(filename)[1].lower()


def generate_storage_name(original_name: str, prefix: str = "") -> str:
    """Build a fresh, collision-free object name: ``<prefix><uuid4><ext>``."""
    return f"{prefix}{uuid.uuid4()}{file_extension(original_name)}"


# =========================================================================
# Materialized paths
# =========================================================================


def child_path(parent_path: str | None, folder_id: str) -> str:
    """Path of *folder_id* under a parent path (``None`` means root)."""
    if not parent_path or parent_path == "/":
        return f"/{folder_id}"
    return f"{parent_path.rstrip('/')}/{folder_id}"


def path_segments(path: str) -> list[str]:
    """Ancestor ids encoded in *path*, root first."""
    return [p for p in path.split("/") if p]


def path_contains(path: str, folder_id: str) -> bool:
    """True if *folder_id* appears as a whole segment of *path*."""
    return folder_id in path_segments(path)


def subtree_prefix(path: str) -> str:
    """Prefix shared by every strict descendant of the folder at *path*."""
    return path.rstrip("/") + "/"


def path_depth(path: str) -> int:
    return len(path_segments(path))


# =========================================================================
# Record conversion
# =========================================================================


def file_to_info(f: FileBase) -> FileInfo:
    """Convert a file record to FileInfo."""
    return FileInfo(
        id=f.id,
        owner_id=f.owner_id,
        name=f.name,
        folder_id=f.folder_id,
        mime_type=f.mime_type,
        size_bytes=f.size_bytes,
        storage_key=f.storage_key,
        version=f.current_version,
        created_at=f.created_at,
        updated_at=f.updated_at,
        deleted_at=f.deleted_at,
    )


def version_to_info(v: FileVersionBase) -> VersionInfo:
    """Convert an archived version record to VersionInfo."""
    return VersionInfo(
        id=v.id,
        file_id=v.file_id,
        version=v.version_number,
        size_bytes=v.size_bytes,
        storage_key=v.storage_key,
        created_at=v.created_at,
        is_current=False,
    )


def folder_to_info(f: FolderBase) -> FolderInfo:
    """Convert a folder record to FolderInfo."""
    return FolderInfo(
        id=f.id,
        owner_id=f.owner_id,
        name=f.name,
        parent_id=f.parent_id,
        path=f.path,
        created_at=f.created_at,
        updated_at=f.updated_at,
        deleted_at=f.deleted_at,
    )
