"""Folder model with a materialized ancestor path.

``path`` is ``/<root id>/.../<own id>``; subtree membership is a prefix
query on ``path + "/"``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class FolderBase(SQLModel):
    """Base fields for a folder. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    owner_id: str = Field(index=True, foreign_key="vault_users.id")
    parent_id: str | None = Field(default=None, index=True, foreign_key="vault_folders.id")
    name: str
    path: str = Field(default="/", index=True)
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


class Folder(FolderBase, table=True):
    """Default folder table — ``vault_folders``."""

    __tablename__ = "vault_folders"
