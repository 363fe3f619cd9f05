"""QuotaService — per-user used/quota byte ledger."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import case, func, update
from sqlmodel import select

from vaultfs.exceptions import ConflictError, NotFoundError, QuotaExceededError
from vaultfs.models.files import File
from vaultfs.models.users import DEFAULT_QUOTA_BYTES, User
from vaultfs.types import StorageInfo

from .base import SessionService

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from vaultfs.models.files import FileBase
    from vaultfs.models.users import UserBase

logger = logging.getLogger(__name__)


def _to_info(user: UserBase) -> StorageInfo:
    return StorageInfo(
        user_id=user.id,
        used_bytes=user.used_bytes,
        quota_bytes=user.quota_bytes,
    )


class QuotaService(SessionService):
    """Tracks and enforces ``used_bytes <= quota_bytes`` per user.

    Counter changes are single ``UPDATE ... SET used_bytes = used_bytes + d``
    statements so concurrent writers by the same user never lose updates.
    ``reserve`` and ``adjust`` run inside the caller's transaction and take
    the session as a required first argument.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        user_model: type[UserBase] | None = None,
        file_model: type[FileBase] | None = None,
        default_quota_bytes: int = DEFAULT_QUOTA_BYTES,
    ) -> None:
        super().__init__(session_factory)
        self._user_model: type[UserBase] = user_model or User
        self._file_model: type[FileBase] = file_model or File
        self.default_quota_bytes = default_quota_bytes

    # =========================================================================
    # Users
    # =========================================================================

    async def _find_user(self, session: AsyncSession, user_id: str) -> UserBase | None:
        model = self._user_model
        result = await session.execute(
            select(model)
            .where(model.id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_user(self, session: AsyncSession, user_id: str) -> UserBase:
        user = await self._find_user(session, user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    async def get_user(self, user_id: str, *, session: AsyncSession | None = None) -> UserBase:
        async with self._reading(session) as s:
            return await self._load_user(s, user_id)

    async def create_user(
        self,
        user_id: str | None = None,
        *,
        quota_bytes: int | None = None,
        session: AsyncSession | None = None,
    ) -> StorageInfo:
        """Create a ledger row with zero usage. Raises ConflictError if it exists."""
        quota = self.default_quota_bytes if quota_bytes is None else quota_bytes
        if quota < 0:
            raise ValueError(f"quota_bytes must be >= 0, got {quota}")

        async with self._transaction(session, "Create user") as s:
            if user_id is not None and await self._find_user(s, user_id) is not None:
                raise ConflictError(f"User already exists: {user_id}")
            kwargs: dict[str, object] = {"quota_bytes": quota}
            if user_id is not None:
                kwargs["id"] = user_id
            user = self._user_model(**kwargs)
            s.add(user)
            await s.flush()
            logger.info("Created user %s with quota %d bytes", user.id, quota)
            return _to_info(user)

    async def ensure_user(
        self,
        user_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> StorageInfo:
        """Return the user's ledger, creating it with the default quota if absent."""
        async with self._transaction(session, "Ensure user") as s:
            user = await self._find_user(s, user_id)
            if user is None:
                user = self._user_model(id=user_id, quota_bytes=self.default_quota_bytes)
                s.add(user)
                await s.flush()
            return _to_info(user)

    async def get_storage_info(
        self,
        user_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> StorageInfo:
        async with self._reading(session) as s:
            return _to_info(await self._load_user(s, user_id))

    async def set_quota(
        self,
        user_id: str,
        quota_bytes: int,
        *,
        session: AsyncSession | None = None,
    ) -> StorageInfo:
        """Change the limit. Lowering it below current usage is allowed."""
        if quota_bytes < 0:
            raise ValueError(f"quota_bytes must be >= 0, got {quota_bytes}")
        async with self._transaction(session, "Set quota") as s:
            user = await self._load_user(s, user_id)
            user.quota_bytes = quota_bytes
            user.updated_at = datetime.now(UTC)
            await s.flush()
            return _to_info(user)

    # =========================================================================
    # Enforcement
    # =========================================================================

    async def check_available(
        self,
        session: AsyncSession,
        user_id: str,
        size_bytes: int,
    ) -> None:
        """Advisory pre-check before bytes are written. Not a reservation."""
        user = await self._load_user(session, user_id)
        if size_bytes > 0 and not user.has_space_for(size_bytes):
            raise QuotaExceededError(user.quota_bytes, user.used_bytes, size_bytes)

    async def reserve(self, session: AsyncSession, user_id: str, size_bytes: int) -> None:
        """Charge *size_bytes* only if it still fits, in one conditional UPDATE.

        Non-positive amounts never fail and are applied through ``adjust``.
        """
        if size_bytes <= 0:
            await self.adjust(session, user_id, size_bytes)
            return

        model = self._user_model
        result = await session.execute(
            update(model)
            .where(
                model.id == user_id,  # type: ignore[arg-type]
                model.used_bytes + size_bytes <= model.quota_bytes,  # type: ignore[operator]
            )
            .values(
                used_bytes=model.used_bytes + size_bytes,  # type: ignore[operator]
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            user = await self._load_user(session, user_id)
            raise QuotaExceededError(user.quota_bytes, user.used_bytes, size_bytes)

    async def adjust(self, session: AsyncSession, user_id: str, delta: int) -> None:
        """Apply *delta* unconditionally, clamping the counter at zero."""
        if delta == 0:
            return
        model = self._user_model
        new_used = model.used_bytes + delta  # type: ignore[operator]
        result = await session.execute(
            update(model)
            .where(model.id == user_id)  # type: ignore[arg-type]
            .values(
                used_bytes=case((new_used < 0, 0), else_=new_used),
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise NotFoundError(f"User not found: {user_id}")

    async def recalculate(
        self,
        user_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> StorageInfo:
        """Reset ``used_bytes`` to the sum of the user's live file sizes."""
        user_model = self._user_model
        file_model = self._file_model
        live_total = (
            select(func.coalesce(func.sum(file_model.size_bytes), 0))
            .where(
                file_model.owner_id == user_id,  # type: ignore[arg-type]
                file_model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .scalar_subquery()
        )
        async with self._transaction(session, "Recalculate usage") as s:
            before = (await self._load_user(s, user_id)).used_bytes
            await s.execute(
                update(user_model)
                .where(user_model.id == user_id)  # type: ignore[arg-type]
                .values(used_bytes=live_total, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            info = _to_info(await self._load_user(s, user_id))
            if info.used_bytes != before:
                logger.info(
                    "Corrected usage drift for %s: %d -> %d bytes",
                    user_id,
                    before,
                    info.used_bytes,
                )
            return info
