"""TrashService — trash listing, restore, permanent delete, and retention sweep."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, update
from sqlmodel import select

from vaultfs.exceptions import ConflictError, InvalidOperationError, NotFoundError
from vaultfs.models.files import File, FileVersion
from vaultfs.models.folders import Folder
from vaultfs.types import ItemType, PurgeResult, TrashEntry
from vaultfs.utils import file_to_info, folder_to_info, path_depth, subtree_prefix

from .base import SessionService

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from vaultfs.models.files import FileBase, FileVersionBase
    from vaultfs.models.folders import FolderBase
    from vaultfs.storage.protocol import StorageBackend
    from vaultfs.types import FileInfo, FolderInfo

    from .files import FileService
    from .folders import FolderService
    from .quota import QuotaService

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


class TrashService(SessionService):
    """Lifecycle of trashed items: ``live -> trashed -> restored | purged``.

    Permanent deletes remove metadata first, in one transaction, and only
    then delete physical objects. A storage failure at that point is logged
    and reported in ``PurgeResult.orphaned_keys``; it never leaves a stuck
    trash entry behind.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        storage: StorageBackend,
        quota: QuotaService,
        files: FileService,
        folders: FolderService,
        *,
        file_model: type[FileBase] | None = None,
        file_version_model: type[FileVersionBase] | None = None,
        folder_model: type[FolderBase] | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        super().__init__(session_factory)
        self._storage = storage
        self._quota = quota
        self._files = files
        self._folders = folders
        self._file_model: type[FileBase] = file_model or File
        self._file_version_model: type[FileVersionBase] = file_version_model or FileVersion
        self._folder_model: type[FolderBase] = folder_model or Folder
        self.retention_days = retention_days

    # =========================================================================
    # Listing
    # =========================================================================

    async def list_trash(
        self,
        user_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> list[TrashEntry]:
        """Every trashed file and folder of the user, most recently trashed first."""
        file_model = self._file_model
        folder_model = self._folder_model
        async with self._reading(session) as s:
            files = (
                await s.execute(
                    select(file_model)
                    .where(
                        file_model.owner_id == user_id,  # type: ignore[arg-type]
                        file_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                    )
                    .execution_options(populate_existing=True)
                )
            ).scalars().all()
            folders = (
                await s.execute(
                    select(folder_model)
                    .where(
                        folder_model.owner_id == user_id,  # type: ignore[arg-type]
                        folder_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                    )
                    .execution_options(populate_existing=True)
                )
            ).scalars().all()

        return _to_entries(files, folders)

    # =========================================================================
    # Restore
    # =========================================================================

    async def _require_trashed_file(
        self, session: AsyncSession, user_id: str, file_id: str
    ) -> FileBase:
        file = await self._files.find_file(session, user_id, file_id, include_deleted=True)
        if file is None or file.deleted_at is None:
            raise NotFoundError(f"File not in trash: {file_id}")
        return file

    async def _require_trashed_folder(
        self, session: AsyncSession, user_id: str, folder_id: str
    ) -> FolderBase:
        folder = await self._folders.require_folder(
            session, user_id, folder_id, include_deleted=True
        )
        if folder.deleted_at is None:
            raise NotFoundError(f"Folder not in trash: {folder_id}")
        return folder

    async def _check_parent_live(
        self, session: AsyncSession, user_id: str, parent_id: str | None, item: str
    ) -> None:
        if parent_id is None:
            return
        parent = await self._folders.require_folder(
            session, user_id, parent_id, include_deleted=True
        )
        if parent.deleted_at is not None:
            raise ConflictError(
                f"Cannot restore {item}: its folder {parent_id} is in the trash; "
                "restore the folder first. Nothing was restored"
            )

    async def restore_file(
        self,
        user_id: str,
        file_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> FileInfo:
        """Bring a trashed file back and charge its size to the ledger again.

        Restoring never fails on quota; the ledger is a soft target here.
        """
        async with self._transaction(session, f"Restore file {file_id}") as s:
            file = await self._require_trashed_file(s, user_id, file_id)
            await self._check_parent_live(s, user_id, file.folder_id, f"file {file_id}")

            clash = await self._files.find_live_by_name(s, user_id, file.folder_id, file.name)
            if clash is not None:
                raise ConflictError(
                    f"A live file named {file.name!r} already exists in that folder; "
                    "nothing was restored"
                )

            file.deleted_at = None
            file.updated_at = datetime.now(UTC)
            await self._quota.adjust(s, user_id, file.size_bytes)
            await s.flush()
            info = file_to_info(file)

        logger.info("Restored file %s (%d bytes)", file_id, info.size_bytes)
        return info

    async def restore_folder(
        self,
        user_id: str,
        folder_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> FolderInfo:
        """Restore a folder and what was trashed with it, or after it.

        Descendants trashed independently before the folder keep their
        earlier ``deleted_at`` and stay in the trash.
        """
        folder_model = self._folder_model
        file_model = self._file_model

        async with self._transaction(session, f"Restore folder {folder_id}") as s:
            folder = await self._require_trashed_folder(s, user_id, folder_id)
            await self._check_parent_live(s, user_id, folder.parent_id, f"folder {folder_id}")
            await self._folders.check_sibling_name(
                s, user_id, folder.parent_id, folder.name, exclude_id=folder.id
            )

            cutoff = folder.deleted_at
            now = datetime.now(UTC)
            subtree = self._folders.subtree_ids(user_id, folder)

            restorable_files = (
                file_model.owner_id == user_id,
                file_model.folder_id.in_(subtree),  # type: ignore[union-attr]
                file_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                file_model.deleted_at >= cutoff,  # type: ignore[operator]
            )
            recharged = (
                await s.execute(
                    select(func.coalesce(func.sum(file_model.size_bytes), 0)).where(
                        *restorable_files
                    )
                )
            ).scalar_one()

            await s.execute(
                update(file_model)
                .where(*restorable_files)
                .values(deleted_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await s.execute(
                update(folder_model)
                .where(
                    folder_model.owner_id == user_id,  # type: ignore[arg-type]
                    folder_model.path.startswith(subtree_prefix(folder.path), autoescape=True),  # type: ignore[attr-defined]
                    folder_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                    folder_model.deleted_at >= cutoff,  # type: ignore[operator]
                )
                .values(deleted_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )

            folder.deleted_at = None
            folder.updated_at = now
            await self._quota.adjust(s, user_id, int(recharged))
            await s.flush()
            info = folder_to_info(folder)

        logger.info("Restored folder %s (%d bytes recharged)", folder_id, recharged)
        return info

    async def restore(
        self,
        user_id: str,
        item_type: ItemType | str,
        item_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> FileInfo | FolderInfo:
        kind = _item_type(item_type)
        if kind is ItemType.FILE:
            return await self.restore_file(user_id, item_id, session=session)
        return await self.restore_folder(user_id, item_id, session=session)

    # =========================================================================
    # Purge helpers (metadata only)
    # =========================================================================

    async def _version_keys(self, session: AsyncSession, file_ids: list[str]) -> list[str]:
        if not file_ids:
            return []
        fv_model = self._file_version_model
        result = await session.execute(
            select(fv_model.storage_key).where(fv_model.file_id.in_(file_ids))  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def _purge_files(
        self, session: AsyncSession, user_id: str, files: Iterable[FileBase]
    ) -> list[str]:
        """Delete file and version rows. Returns every physical key they referenced."""
        files = list(files)
        if not files:
            return []
        file_ids = [f.id for f in files]
        keys = [f.storage_key for f in files] + await self._version_keys(session, file_ids)

        live_bytes = sum(f.size_bytes for f in files if f.deleted_at is None)
        fv_model = self._file_version_model
        file_model = self._file_model
        await session.execute(
            sa_delete(fv_model).where(fv_model.file_id.in_(file_ids))  # type: ignore[attr-defined]
        )
        await session.execute(
            sa_delete(file_model).where(file_model.id.in_(file_ids))  # type: ignore[attr-defined]
        )
        if live_bytes:
            await self._quota.adjust(session, user_id, -live_bytes)
        return keys

    async def _purge_folder(
        self, session: AsyncSession, user_id: str, folder: FolderBase
    ) -> tuple[list[str], int, int]:
        """Delete a folder subtree's rows. Returns ``(keys, files, folders)``."""
        folder_model = self._folder_model
        file_model = self._file_model

        folders = (
            await session.execute(
                select(folder_model).where(
                    folder_model.id.in_(self._folders.subtree_ids(user_id, folder))  # type: ignore[attr-defined]
                )
            )
        ).scalars().all()
        files = (
            await session.execute(
                select(file_model)
                .where(
                    file_model.owner_id == user_id,  # type: ignore[arg-type]
                    file_model.folder_id.in_([f.id for f in folders]),  # type: ignore[union-attr]
                )
                .execution_options(populate_existing=True)
            )
        ).scalars().all()

        keys = await self._purge_files(session, user_id, files)

        # Deepest folders first so no row outlives its parent.
        by_depth: dict[int, list[str]] = defaultdict(list)
        for f in folders:
            by_depth[path_depth(f.path)].append(f.id)
        for depth in sorted(by_depth, reverse=True):
            await session.execute(
                sa_delete(folder_model).where(folder_model.id.in_(by_depth[depth]))  # type: ignore[attr-defined]
            )
        return keys, len(files), len(folders)

    async def _delete_objects(self, keys: Iterable[str]) -> list[str]:
        """Best-effort physical delete of distinct keys. Returns the ones that failed."""
        orphaned: list[str] = []
        for key in dict.fromkeys(keys):
            try:
                await self._storage.delete(key)
            except Exception:
                logger.error("Failed to delete object %s; it is orphaned", key, exc_info=True)
                orphaned.append(key)
        return orphaned

    # =========================================================================
    # Permanent delete
    # =========================================================================

    async def permanent_delete_file(
        self,
        user_id: str,
        file_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> PurgeResult:
        """Remove a file, its versions, and all their bytes. Live files are allowed.

        Physical objects are deleted as soon as the metadata changes are
        written. With a caller-provided *session* that happens after the
        flush but before the caller commits, so rolling that session back
        leaves rows pointing at bytes that no longer exist. Only pass a
        session you are about to commit.
        """
        async with self._transaction(session, f"Purge file {file_id}") as s:
            file = await self._files.require_file(s, user_id, file_id, include_deleted=True)
            keys = await self._purge_files(s, user_id, [file])

        orphaned = await self._delete_objects(keys)
        logger.info("Purged file %s (%d objects)", file_id, len(set(keys)))
        return PurgeResult(purged_files=1, orphaned_keys=orphaned)

    async def permanent_delete_folder(
        self,
        user_id: str,
        folder_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> PurgeResult:
        """Remove a folder, its whole subtree, and every byte it referenced.

        As with :meth:`permanent_delete_file`, bytes are deleted before a
        caller-provided *session* commits. A later rollback cannot bring
        them back.
        """
        async with self._transaction(session, f"Purge folder {folder_id}") as s:
            folder = await self._folders.require_folder(s, user_id, folder_id, include_deleted=True)
            keys, n_files, n_folders = await self._purge_folder(s, user_id, folder)

        orphaned = await self._delete_objects(keys)
        logger.info(
            "Purged folder %s (%d folders, %d files)", folder_id, n_folders, n_files
        )
        return PurgeResult(purged_files=n_files, purged_folders=n_folders, orphaned_keys=orphaned)

    async def permanent_delete(
        self,
        user_id: str,
        item_type: ItemType | str,
        item_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> PurgeResult:
        kind = _item_type(item_type)
        if kind is ItemType.FILE:
            return await self.permanent_delete_file(user_id, item_id, session=session)
        return await self.permanent_delete_folder(user_id, item_id, session=session)

    async def empty_trash(
        self,
        user_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> PurgeResult:
        """Purge every trashed file and folder of the user in one transaction.

        Bytes are deleted before a caller-provided *session* commits.
        """
        folder_model = self._folder_model
        file_model = self._file_model
        result = PurgeResult()
        keys: list[str] = []

        async with self._transaction(session, f"Empty trash for {user_id}") as s:
            trashed_folders = (
                await s.execute(
                    select(folder_model).where(
                        folder_model.owner_id == user_id,  # type: ignore[arg-type]
                        folder_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                    )
                )
            ).scalars().all()
            trashed_ids = {f.id for f in trashed_folders}
            roots = [f for f in trashed_folders if f.parent_id not in trashed_ids]

            for folder in roots:
                folder_keys, n_files, n_folders = await self._purge_folder(s, user_id, folder)
                keys.extend(folder_keys)
                result.purged_files += n_files
                result.purged_folders += n_folders

            loose_files = (
                await s.execute(
                    select(file_model)
                    .where(
                        file_model.owner_id == user_id,  # type: ignore[arg-type]
                        file_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                    )
                    .execution_options(populate_existing=True)
                )
            ).scalars().all()
            keys.extend(await self._purge_files(s, user_id, loose_files))
            result.purged_files += len(loose_files)

        result.orphaned_keys = await self._delete_objects(keys)
        logger.info(
            "Emptied trash for %s: %d files, %d folders",
            user_id,
            result.purged_files,
            result.purged_folders,
        )
        return result

    # =========================================================================
    # Retention sweep
    # =========================================================================

    def _cutoff(self, retention_days: int | None, now: datetime | None) -> tuple[int, datetime]:
        days = self.retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError(f"retention_days must be >= 0, got {days}")
        return days, (now or datetime.now(UTC)) - timedelta(days=days)

    async def list_expired(
        self,
        retention_days: int | None = None,
        *,
        now: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> list[TrashEntry]:
        """Items across all users that ``auto_purge`` would remove."""
        _, cutoff = self._cutoff(retention_days, now)
        file_model = self._file_model
        folder_model = self._folder_model
        async with self._reading(session) as s:
            files = (
                await s.execute(
                    select(file_model).where(
                        file_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                        file_model.deleted_at < cutoff,  # type: ignore[operator]
                    )
                )
            ).scalars().all()
            folders = (
                await s.execute(
                    select(folder_model).where(
                        folder_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                        folder_model.deleted_at < cutoff,  # type: ignore[operator]
                    )
                )
            ).scalars().all()
        return _to_entries(files, folders)

    async def auto_purge(
        self,
        retention_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> PurgeResult:
        """Purge every item trashed longer than the retention window, across users.

        Each item is purged in its own transaction. A failing item is
        logged and counted and the sweep moves on.
        """
        days, cutoff = self._cutoff(retention_days, now)
        folder_model = self._folder_model
        file_model = self._file_model

        async with self._reading(None) as s:
            expired_folders = (
                await s.execute(
                    select(folder_model.id, folder_model.owner_id, folder_model.path).where(
                        folder_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                        folder_model.deleted_at < cutoff,  # type: ignore[operator]
                    )
                )
            ).all()
            expired_files = (
                await s.execute(
                    select(file_model.id, file_model.owner_id).where(
                        file_model.deleted_at.is_not(None),  # type: ignore[union-attr]
                        file_model.deleted_at < cutoff,  # type: ignore[operator]
                    )
                )
            ).all()

        result = PurgeResult()
        purged_folder_ids: set[str] = set()

        # Shallowest first; descendants go with their ancestor.
        for folder_id, owner_id, path in sorted(expired_folders, key=lambda r: path_depth(r[2])):
            if folder_id in purged_folder_ids:
                continue
            try:
                outcome = await self.permanent_delete_folder(owner_id, folder_id)
            except NotFoundError:
                continue
            except Exception as e:
                result.failed += 1
                logger.warning("Auto-purge skipped folder %s: %s", folder_id, e)
                continue
            result.merge(outcome)
            purged_folder_ids.add(folder_id)
            purged_folder_ids.update(
                fid for fid, _, fpath in expired_folders if fpath.startswith(subtree_prefix(path))
            )

        for file_id, owner_id in expired_files:
            try:
                outcome = await self.permanent_delete_file(owner_id, file_id)
            except NotFoundError:
                # Already removed with its folder.
                continue
            except Exception as e:
                result.failed += 1
                logger.warning("Auto-purge skipped file %s: %s", file_id, e)
                continue
            result.merge(outcome)

        logger.info(
            "Auto-purge (older than %d days): %d files, %d folders purged, %d failed",
            days,
            result.purged_files,
            result.purged_folders,
            result.failed,
        )
        return result


def _item_type(value: ItemType | str) -> ItemType:
    try:
        return ItemType(value)
    except ValueError:
        raise InvalidOperationError(f"Unknown item type: {value!r}") from None


def _to_entries(files: Iterable[FileBase], folders: Iterable[FolderBase]) -> list[TrashEntry]:
    """Trash entries for the given rows, most recently trashed first."""
    entries = [
        TrashEntry(
            item_type=ItemType.FILE,
            id=f.id,
            name=f.name,
            deleted_at=f.deleted_at,
            size_bytes=f.size_bytes,
            parent_id=f.folder_id,
            owner_id=f.owner_id,
        )
        for f in files
    ] + [
        TrashEntry(
            item_type=ItemType.FOLDER,
            id=f.id,
            name=f.name,
            deleted_at=f.deleted_at,
            parent_id=f.parent_id,
            owner_id=f.owner_id,
        )
        for f in folders
    ]
    entries.sort(key=lambda e: e.deleted_at, reverse=True)  # type: ignore[arg-type, return-value]
    return entries
