"""File and FileVersion models.

Provides ``FileBase`` and ``FileVersionBase`` non-table base classes.
Subclass with ``table=True`` and a custom ``__tablename__`` to use a
different table name.

A ``File`` row always describes the *current* content. Every overwrite or
version restore archives the previous state as a ``FileVersion`` carrying
the version number that was current before the change.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class FileBase(SQLModel):
    """Base fields for a stored file. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    owner_id: str = Field(index=True, foreign_key="vault_users.id")
    folder_id: str | None = Field(default=None, index=True, foreign_key="vault_folders.id")
    name: str = Field(index=True)
    mime_type: str = Field(default="application/octet-stream")
    size_bytes: int = Field(default=0)
    storage_key: str = Field(index=True)
    current_version: int = Field(default=1)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    deleted_at: datetime | None = Field(
        default=None,
        index=True,
        sa_type=DateTime(timezone=True),
    )


class File(FileBase, table=True):
    """Default file table — ``vault_files``."""

    __tablename__ = "vault_files"


class FileVersionBase(SQLModel):
    """Base fields for an archived file version. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    file_id: str = Field(index=True, foreign_key="vault_files.id")
    version_number: int
    storage_key: str
    size_bytes: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )


class FileVersion(FileVersionBase, table=True):
    """Default file version table — ``vault_file_versions``."""

    __tablename__ = "vault_file_versions"
    __table_args__ = (
        UniqueConstraint("file_id", "version_number", name="vault_file_versions_number_unique"),
    )
