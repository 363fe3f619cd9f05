"""FolderService — folder tree, materialized paths, cascading move and trash."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, literal, or_, update
from sqlmodel import select

from vaultfs.exceptions import ConflictError, InvalidOperationError, NotFoundError
from vaultfs.models.files import File
from vaultfs.models.folders import Folder
from vaultfs.types import FolderContents
from vaultfs.utils import (
    child_path,
    file_to_info,
    folder_to_info,
    path_contains,
    path_segments,
    subtree_prefix,
    validate_name,
)

from .base import SessionService

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql import Select

    from vaultfs.models.files import FileBase
    from vaultfs.models.folders import FolderBase
    from vaultfs.types import FolderInfo

    from .quota import QuotaService

logger = logging.getLogger(__name__)


class FolderService(SessionService):
    """Folder CRUD over a materialized-path tree.

    ``path`` is ``/<root id>/.../<own id>``. Because paths hold ids rather
    than names, renames never touch descendants; moves rewrite the prefix of
    every descendant path in one statement.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        quota: QuotaService,
        *,
        folder_model: type[FolderBase] | None = None,
        file_model: type[FileBase] | None = None,
    ) -> None:
        super().__init__(session_factory)
        self._quota = quota
        self._folder_model: type[FolderBase] = folder_model or Folder
        self._file_model: type[FileBase] = file_model or File

    # =========================================================================
    # Lookup helpers
    # =========================================================================

    async def _find_folder(
        self,
        session: AsyncSession,
        user_id: str,
        folder_id: str,
        *,
        include_deleted: bool = False,
    ) -> FolderBase | None:
        model = self._folder_model
        query = select(model).where(
            model.id == folder_id,  # type: ignore[arg-type]
            model.owner_id == user_id,  # type: ignore[arg-type]
        )
        if not include_deleted:
            query = query.where(model.deleted_at.is_(None))  # type: ignore[union-attr]
        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def require_folder(
        self,
        session: AsyncSession,
        user_id: str,
        folder_id: str,
        *,
        include_deleted: bool = False,
    ) -> FolderBase:
        folder = await self._find_folder(
            session, user_id, folder_id, include_deleted=include_deleted
        )
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def find_live_by_name(
        self,
        session: AsyncSession,
        user_id: str,
        parent_id: str | None,
        name: str,
    ) -> FolderBase | None:
        """The live folder called *name* directly under *parent_id* (``None`` = root)."""
        model = self._folder_model
        query = select(model).where(
            model.owner_id == user_id,  # type: ignore[arg-type]
            model.name == name,  # type: ignore[arg-type]
            model.deleted_at.is_(None),  # type: ignore[union-attr]
        )
        if parent_id is None:
            query = query.where(model.parent_id.is_(None))  # type: ignore[union-attr]
        else:
            query = query.where(model.parent_id == parent_id)  # type: ignore[arg-type]
        result = await session.execute(query)
        return result.scalars().first()

    def subtree_ids(self, user_id: str, folder: FolderBase) -> Select:
        """``SELECT id`` for *folder* and every descendant, trashed or not."""
        model = self._folder_model
        return select(model.id).where(
            model.owner_id == user_id,  # type: ignore[arg-type]
            or_(
                model.id == folder.id,  # type: ignore[arg-type]
                model.path.startswith(subtree_prefix(folder.path), autoescape=True),  # type: ignore[attr-defined]
            ),
        )

    async def check_sibling_name(
        self,
        session: AsyncSession,
        user_id: str,
        parent_id: str | None,
        name: str,
        *,
        exclude_id: str | None = None,
    ) -> None:
        clash = await self.find_live_by_name(session, user_id, parent_id, name)
        if clash is not None and clash.id != exclude_id:
            where = "the root" if parent_id is None else f"folder {parent_id}"
            raise ConflictError(
                f"A folder named {name!r} already exists in {where}; nothing was changed"
            )

    # =========================================================================
    # Create / rename
    # =========================================================================

    async def create(
        self,
        user_id: str,
        name: str,
        parent_id: str | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> FolderInfo:
        ok, error = validate_name(name)
        if not ok:
            raise InvalidOperationError(f"{error}; nothing was created")

        async with self._transaction(session, f"Create folder {name}") as s:
            parent = None
            if parent_id is not None:
                parent = await self.require_folder(s, user_id, parent_id)
            await self.check_sibling_name(s, user_id, parent_id, name)

            folder = self._folder_model(owner_id=user_id, parent_id=parent_id, name=name)
            folder.path = child_path(parent.path if parent else None, folder.id)
            s.add(folder)
            await s.flush()
            info = folder_to_info(folder)

        logger.info("Created folder %s at %s", name, info.path)
        return info

    async def rename(
        self,
        user_id: str,
        folder_id: str,
        name: str,
        *,
        session: AsyncSession | None = None,
    ) -> FolderInfo:
        ok, error = validate_name(name)
        if not ok:
            raise InvalidOperationError(f"{error}; nothing was renamed")

        async with self._transaction(session, f"Rename folder {folder_id}") as s:
            folder = await self.require_folder(s, user_id, folder_id)
            if folder.name == name:
                return folder_to_info(folder)
            await self.check_sibling_name(s, user_id, folder.parent_id, name, exclude_id=folder.id)
            folder.name = name
            folder.updated_at = datetime.now(UTC)
            await s.flush()
            return folder_to_info(folder)

    # =========================================================================
    # Move
    # =========================================================================

    async def move(
        self,
        user_id: str,
        folder_id: str,
        new_parent_id: str | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> FolderInfo:
        """Re-parent a folder, rewriting every descendant path in the same transaction."""
        async with self._transaction(session, f"Move folder {folder_id}") as s:
            folder = await self.require_folder(s, user_id, folder_id)

            new_parent = None
            if new_parent_id is not None:
                if new_parent_id == folder.id:
                    raise InvalidOperationError(
                        f"Cannot move folder {folder_id} into itself; nothing was moved"
                    )
                new_parent = await self.require_folder(s, user_id, new_parent_id)
                if path_contains(new_parent.path, folder.id):
                    raise InvalidOperationError(
                        f"Cannot move folder {folder_id} into its descendant "
                        f"{new_parent_id}; nothing was moved"
                    )

            if new_parent_id == folder.parent_id:
                return folder_to_info(folder)

            await self.check_sibling_name(
                s, user_id, new_parent_id, folder.name, exclude_id=folder.id
            )

            old_path = folder.path
            new_path = child_path(new_parent.path if new_parent else None, folder.id)
            model = self._folder_model
            result = await s.execute(
                update(model)
                .where(
                    model.owner_id == user_id,  # type: ignore[arg-type]
                    model.path.startswith(subtree_prefix(old_path), autoescape=True),  # type: ignore[attr-defined]
                )
                .values(
                    path=literal(new_path) + func.substr(model.path, len(old_path) + 1),
                )
                .execution_options(synchronize_session=False)
            )

            folder.parent_id = new_parent_id
            folder.path = new_path
            folder.updated_at = datetime.now(UTC)
            await s.flush()
            info = folder_to_info(folder)

        logger.info(
            "Moved folder %s: %s -> %s (%d descendants)",
            folder_id,
            old_path,
            new_path,
            result.rowcount,  # type: ignore[attr-defined]
        )
        return info

    # =========================================================================
    # Delete (trash)
    # =========================================================================

    async def delete(
        self,
        user_id: str,
        folder_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> FolderInfo:
        """Trash a folder and everything live beneath it.

        The folder, its live descendant folders, and the live files in the
        subtree all receive the same ``deleted_at``. The ledger is released
        by the size of the files trashed here. Items already in the trash
        keep their earlier timestamp.
        """
        folder_model = self._folder_model
        file_model = self._file_model

        async with self._transaction(session, f"Delete folder {folder_id}") as s:
            folder = await self.require_folder(s, user_id, folder_id)
            now = datetime.now(UTC)
            subtree = self.subtree_ids(user_id, folder)

            live_files = (
                file_model.owner_id == user_id,
                file_model.folder_id.in_(subtree),  # type: ignore[union-attr]
                file_model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            released = (
                await s.execute(
                    select(func.coalesce(func.sum(file_model.size_bytes), 0)).where(*live_files)
                )
            ).scalar_one()

            files_result = await s.execute(
                update(file_model)
                .where(*live_files)
                .values(deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            folders_result = await s.execute(
                update(folder_model)
                .where(
                    folder_model.owner_id == user_id,  # type: ignore[arg-type]
                    folder_model.path.startswith(subtree_prefix(folder.path), autoescape=True),  # type: ignore[attr-defined]
                    folder_model.deleted_at.is_(None),  # type: ignore[union-attr]
                )
                .values(deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )

            folder.deleted_at = now
            folder.updated_at = now
            await self._quota.adjust(s, user_id, -int(released))
            await s.flush()
            info = folder_to_info(folder)

        logger.info(
            "Trashed folder %s with %d subfolders and %d files (%d bytes released)",
            folder_id,
            folders_result.rowcount,  # type: ignore[attr-defined]
            files_result.rowcount,  # type: ignore[attr-defined]
            released,
        )
        return info

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_folder(
        self,
        user_id: str,
        folder_id: str,
        *,
        include_deleted: bool = False,
        session: AsyncSession | None = None,
    ) -> FolderInfo:
        async with self._reading(session) as s:
            folder = await self.require_folder(
                s, user_id, folder_id, include_deleted=include_deleted
            )
            return folder_to_info(folder)

    async def list_folders(
        self,
        user_id: str,
        parent_id: str | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> list[FolderInfo]:
        """Live child folders of *parent_id* (``None`` = root), by name."""
        model = self._folder_model
        query = select(model).where(
            model.owner_id == user_id,  # type: ignore[arg-type]
            model.deleted_at.is_(None),  # type: ignore[union-attr]
        )
        if parent_id is None:
            query = query.where(model.parent_id.is_(None))  # type: ignore[union-attr]
        else:
            query = query.where(model.parent_id == parent_id)  # type: ignore[arg-type]

        async with self._reading(session) as s:
            result = await s.execute(
                query.order_by(model.name).execution_options(populate_existing=True)  # type: ignore[arg-type]
            )
            return [folder_to_info(f) for f in result.scalars().all()]

    async def list_contents(
        self,
        user_id: str,
        folder_id: str | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> FolderContents:
        """Live child folders and files of a live folder (or the root)."""
        file_model = self._file_model
        async with self._reading(session) as s:
            if folder_id is not None:
                await self.require_folder(s, user_id, folder_id)
            folders = await self.list_folders(user_id, folder_id, session=s)

            query = select(file_model).where(
                file_model.owner_id == user_id,  # type: ignore[arg-type]
                file_model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            if folder_id is None:
                query = query.where(file_model.folder_id.is_(None))  # type: ignore[union-attr]
            else:
                query = query.where(file_model.folder_id == folder_id)  # type: ignore[arg-type]
            result = await s.execute(
                query.order_by(file_model.name).execution_options(populate_existing=True)  # type: ignore[arg-type]
            )
            files = [file_to_info(f) for f in result.scalars().all()]

        return FolderContents(folder_id=folder_id, folders=folders, files=files)

    async def breadcrumbs(
        self,
        user_id: str,
        folder_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> list[FolderInfo]:
        """Ancestors of a folder, root first, ending with the folder itself."""
        model = self._folder_model
        async with self._reading(session) as s:
            folder = await self.require_folder(s, user_id, folder_id, include_deleted=True)
            ids = path_segments(folder.path)
            result = await s.execute(
                select(model).where(
                    model.owner_id == user_id,  # type: ignore[arg-type]
                    model.id.in_(ids),  # type: ignore[attr-defined]
                )
            )
            by_id = {f.id: f for f in result.scalars().all()}

        return [folder_to_info(by_id[i]) for i in ids if i in by_id]
