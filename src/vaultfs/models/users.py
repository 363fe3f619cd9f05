"""User model — the per-user quota ledger row.

Provides ``UserBase`` (non-table) and ``User`` (concrete table).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field, SQLModel

DEFAULT_QUOTA_BYTES: int = 1024 * 1024 * 1024
"""Default storage quota for new users: 1 GiB."""


class UserBase(SQLModel):
    """Base fields for a user ledger record. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    used_bytes: int = Field(default=0)
    quota_bytes: int = Field(default=DEFAULT_QUOTA_BYTES)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )

    def has_space_for(self, size_bytes: int) -> bool:
        """True if *size_bytes* more would still fit under the quota."""
        return self.used_bytes + size_bytes <= self.quota_bytes


class User(UserBase, table=True):
    """Default user table — ``vault_users``."""

    __tablename__ = "vault_users"
    __table_args__ = (
        CheckConstraint("used_bytes >= 0", name="vault_users_used_non_negative"),
        CheckConstraint("quota_bytes >= 0", name="vault_users_quota_non_negative"),
    )
