"""FileService — file metadata, version history, and the byte read path."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, update
from sqlmodel import select

from vaultfs.exceptions import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ObjectNotFoundError,
)
from vaultfs.models.files import File, FileVersion
from vaultfs.models.folders import Folder
from vaultfs.storage.types import ByteRange, ObjectMetadata
from vaultfs.types import FilePage, FileStream, VersionInfo
from vaultfs.utils import file_to_info, guess_mime_type, validate_name, version_to_info

from .base import SessionService

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from vaultfs.models.files import FileBase, FileVersionBase
    from vaultfs.models.folders import FolderBase
    from vaultfs.storage.protocol import StorageBackend
    from vaultfs.storage.types import Content, StoredObject
    from vaultfs.types import FileInfo

    from .quota import QuotaService

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024
DEFAULT_PAGE_LIMIT = 20


class FileService(SessionService):
    """Upload, overwrite-with-history, version restore, soft delete, and reads.

    A ``File`` row always describes the current content. Overwrites and
    version restores archive the previous state as a ``FileVersion`` whose
    ``version_number`` is the one that was current before the change.

    Physical bytes are written before the metadata transaction commits. If
    anything fails after the write, the new object is deleted again
    (best effort) and the original error propagates.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        storage: StorageBackend,
        quota: QuotaService,
        *,
        file_model: type[FileBase] | None = None,
        file_version_model: type[FileVersionBase] | None = None,
        folder_model: type[FolderBase] | None = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        super().__init__(session_factory)
        self._storage = storage
        self._quota = quota
        self._file_model: type[FileBase] = file_model or File
        self._file_version_model: type[FileVersionBase] = file_version_model or FileVersion
        self._folder_model: type[FolderBase] = folder_model or Folder
        self.max_file_size = max_file_size

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    # =========================================================================
    # Lookup helpers
    # =========================================================================

    async def find_file(
        self,
        session: AsyncSession,
        user_id: str,
        file_id: str,
        *,
        include_deleted: bool = False,
    ) -> FileBase | None:
        model = self._file_model
        query = select(model).where(
            model.id == file_id,  # type: ignore[arg-type]
            model.owner_id == user_id,  # type: ignore[arg-type]
        )
        if not include_deleted:
            query = query.where(model.deleted_at.is_(None))  # type: ignore[union-attr]
        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def require_file(
        self,
        session: AsyncSession,
        user_id: str,
        file_id: str,
        *,
        include_deleted: bool = False,
    ) -> FileBase:
        file = await self.find_file(session, user_id, file_id, include_deleted=include_deleted)
        if file is None:
            raise NotFoundError(f"File not found: {file_id}")
        return file

    async def _require_live_folder(
        self,
        session: AsyncSession,
        user_id: str,
        folder_id: str,
    ) -> FolderBase:
        model = self._folder_model
        result = await session.execute(
            select(model).where(
                model.id == folder_id,  # type: ignore[arg-type]
                model.owner_id == user_id,  # type: ignore[arg-type]
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
        )
        folder = result.scalar_one_or_none()
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def find_live_by_name(
        self,
        session: AsyncSession,
        user_id: str,
        folder_id: str | None,
        name: str,
    ) -> FileBase | None:
        """The live file called *name* directly inside *folder_id* (``None`` = root)."""
        model = self._file_model
        query = select(model).where(
            model.owner_id == user_id,  # type: ignore[arg-type]
            model.name == name,  # type: ignore[arg-type]
            model.deleted_at.is_(None),  # type: ignore[union-attr]
        )
        if folder_id is None:
            query = query.where(model.folder_id.is_(None))  # type: ignore[union-attr]
        else:
            query = query.where(model.folder_id == folder_id)  # type: ignore[arg-type]
        result = await session.execute(
            query.order_by(model.created_at).execution_options(populate_existing=True)  # type: ignore[arg-type]
        )
        return result.scalars().first()

    async def _require_version(
        self,
        session: AsyncSession,
        file: FileBase,
        version_id: str,
    ) -> FileVersionBase:
        fv_model = self._file_version_model
        result = await session.execute(
            select(fv_model).where(
                fv_model.id == version_id,  # type: ignore[arg-type]
                fv_model.file_id == file.id,  # type: ignore[arg-type]
            )
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise NotFoundError(f"Version {version_id} not found for file {file.id}")
        return version

    async def _discard(self, storage_key: str) -> None:
        """Compensating delete of bytes whose metadata never committed."""
        try:
            await self._storage.delete(storage_key)
        except Exception:
            logger.error(
                "Compensating delete failed; object %s is orphaned",
                storage_key,
                exc_info=True,
            )
        else:
            logger.info("Removed uncommitted object %s", storage_key)

    # =========================================================================
    # Version chain
    # =========================================================================

    async def _advance(
        self,
        session: AsyncSession,
        file: FileBase,
        *,
        storage_key: str,
        size_bytes: int,
        mime_type: str | None = None,
    ) -> FileInfo:
        """Archive *file*'s current state and make the given object current.

        The update only applies if ``current_version`` is still what was
        read; otherwise a concurrent writer got there first.
        """
        expected = file.current_version
        previous_key = file.storage_key
        previous_size = file.size_bytes
        model = self._file_model

        values: dict[str, object] = {
            "current_version": expected + 1,
            "storage_key": storage_key,
            "size_bytes": size_bytes,
            "updated_at": datetime.now(UTC),
        }
        if mime_type is not None:
            values["mime_type"] = mime_type

        result = await session.execute(
            update(model)
            .where(
                model.id == file.id,  # type: ignore[arg-type]
                model.current_version == expected,  # type: ignore[arg-type]
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise ConflictError(
                f"File {file.id} changed concurrently (expected version {expected}); "
                "nothing was changed"
            )

        session.add(
            self._file_version_model(
                file_id=file.id,
                version_number=expected,
                storage_key=previous_key,
                size_bytes=previous_size,
            )
        )
        await session.flush()

        current = await self.require_file(session, file.owner_id, file.id)
        return file_to_info(current)

    # =========================================================================
    # Upload
    # =========================================================================

    async def upload(
        self,
        user_id: str,
        content: Content,
        name: str,
        *,
        folder_id: str | None = None,
        mime_type: str | None = None,
        size: int | None = None,
        session: AsyncSession | None = None,
    ) -> FileInfo:
        """Store *content* as *name* in *folder_id*.

        A new name creates a file at version 1. An existing live name is
        overwritten: its current state is archived and ``current_version``
        advances by one. The ledger is charged the full size for new files
        and the size difference for overwrites, and the charge fails with
        ``QuotaExceededError`` if it does not fit.
        """
        ok, error = validate_name(name)
        if not ok:
            raise InvalidOperationError(f"{error}; nothing was stored")

        if isinstance(content, bytes | bytearray | memoryview):
            size = len(content)
        if size is not None and size > self.max_file_size:
            raise InvalidOperationError(
                f"File too large: {size} bytes exceeds the {self.max_file_size}-byte limit; "
                "nothing was stored"
            )

        mime = mime_type or guess_mime_type(name)
        stored: StoredObject | None = None
        try:
            async with self._transaction(session, f"Upload {name}") as s:
                if folder_id is not None:
                    await self._require_live_folder(s, user_id, folder_id)
                existing = await self.find_live_by_name(s, user_id, folder_id, name)

                # Advisory check so obvious overruns never touch the backend.
                estimate = 0 if size is None else size - (existing.size_bytes if existing else 0)
                await self._quota.check_available(s, user_id, estimate)

                stored = await self._storage.save(content, ObjectMetadata(name, mime))
                if stored.size > self.max_file_size:
                    raise InvalidOperationError(
                        f"File too large: {stored.size} bytes exceeds the "
                        f"{self.max_file_size}-byte limit; nothing was stored"
                    )

                if existing is None:
                    await self._quota.reserve(s, user_id, stored.size)
                    file = self._file_model(
                        owner_id=user_id,
                        folder_id=folder_id,
                        name=name,
                        mime_type=mime,
                        size_bytes=stored.size,
                        storage_key=stored.storage_key,
                    )
                    s.add(file)
                    await s.flush()
                    info = file_to_info(file)
                else:
                    await self._quota.reserve(s, user_id, stored.size - existing.size_bytes)
                    info = await self._advance(
                        s,
                        existing,
                        storage_key=stored.storage_key,
                        size_bytes=stored.size,
                        mime_type=mime,
                    )
        except BaseException:
            # Includes cancellation, which may land after the bytes were written.
            if stored is not None:
                await self._discard(stored.storage_key)
            raise

        logger.info(
            "Uploaded %s for %s (v%d, %d bytes)", name, user_id, info.version, info.size_bytes
        )
        return info

    # =========================================================================
    # Versions
    # =========================================================================

    async def restore_version(
        self,
        user_id: str,
        file_id: str,
        version_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> FileInfo:
        """Make an archived version current again as a new version.

        The ledger moves by ``restored size - previous size`` without a
        limit check.
        """
        async with self._transaction(session, f"Restore version {version_id}") as s:
            file = await self.require_file(s, user_id, file_id)
            version = await self._require_version(s, file, version_id)
            if not await self._storage.exists(version.storage_key):
                raise ObjectNotFoundError(version.storage_key)

            delta = version.size_bytes - file.size_bytes
            info = await self._advance(
                s,
                file,
                storage_key=version.storage_key,
                size_bytes=version.size_bytes,
            )
            await self._quota.adjust(s, user_id, delta)

        logger.info(
            "Restored %s to version %d as v%d", file_id, version.version_number, info.version
        )
        return info

    async def list_versions(
        self,
        user_id: str,
        file_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> list[VersionInfo]:
        """Version history, current state first, then archived versions newest first."""
        fv_model = self._file_version_model
        async with self._reading(session) as s:
            file = await self.require_file(s, user_id, file_id)
            result = await s.execute(
                select(fv_model)
                .where(fv_model.file_id == file.id)  # type: ignore[arg-type]
                .order_by(fv_model.version_number.desc())  # type: ignore[attr-defined]
            )
            archived = [version_to_info(v) for v in result.scalars().all()]

        current = VersionInfo(
            id=file.id,
            file_id=file.id,
            version=file.current_version,
            size_bytes=file.size_bytes,
            storage_key=file.storage_key,
            created_at=file.updated_at,
            is_current=True,
        )
        return [current, *archived]

    # =========================================================================
    # Delete / move
    # =========================================================================

    async def delete(
        self,
        user_id: str,
        file_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> FileInfo:
        """Move a live file to the trash. Bytes stay until it is purged."""
        async with self._transaction(session, f"Delete file {file_id}") as s:
            file = await self.require_file(s, user_id, file_id)
            now = datetime.now(UTC)
            file.deleted_at = now
            file.updated_at = now
            await self._quota.adjust(s, user_id, -file.size_bytes)
            await s.flush()
            info = file_to_info(file)

        logger.info("Trashed file %s (%d bytes released)", file_id, info.size_bytes)
        return info

    async def move_file(
        self,
        user_id: str,
        file_id: str,
        folder_id: str | None,
        *,
        session: AsyncSession | None = None,
    ) -> FileInfo:
        """Move a live file into another live folder (``None`` = root)."""
        async with self._transaction(session, f"Move file {file_id}") as s:
            file = await self.require_file(s, user_id, file_id)
            if file.folder_id == folder_id:
                return file_to_info(file)
            if folder_id is not None:
                await self._require_live_folder(s, user_id, folder_id)

            clash = await self.find_live_by_name(s, user_id, folder_id, file.name)
            if clash is not None and clash.id != file.id:
                raise ConflictError(
                    f"A file named {file.name!r} already exists in the destination; "
                    "nothing was moved"
                )

            file.folder_id = folder_id
            file.updated_at = datetime.now(UTC)
            await s.flush()
            return file_to_info(file)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_file(
        self,
        user_id: str,
        file_id: str,
        *,
        include_deleted: bool = False,
        session: AsyncSession | None = None,
    ) -> FileInfo:
        async with self._reading(session) as s:
            file = await self.require_file(s, user_id, file_id, include_deleted=include_deleted)
            return file_to_info(file)

    async def list_files(
        self,
        user_id: str,
        *,
        folder_id: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        session: AsyncSession | None = None,
    ) -> FilePage:
        """Live files newest first; all of the user's files when *folder_id* is None."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        model = self._file_model
        conditions = [
            model.owner_id == user_id,
            model.deleted_at.is_(None),  # type: ignore[union-attr]
        ]
        if folder_id is not None:
            conditions.append(model.folder_id == folder_id)

        async with self._reading(session) as s:
            total = (
                await s.execute(select(func.count()).select_from(model).where(*conditions))
            ).scalar_one()
            result = await s.execute(
                select(model)
                .where(*conditions)
                .order_by(model.created_at.desc())  # type: ignore[attr-defined]
                .offset((page - 1) * limit)
                .limit(limit)
            )
            entries = [file_to_info(f) for f in result.scalars().all()]

        return FilePage(entries=entries, total=total, page=page, limit=limit)

    async def _resolve_object(
        self,
        session: AsyncSession,
        user_id: str,
        file_id: str,
        version_id: str | None,
    ) -> tuple[FileInfo, str, int, int | None]:
        """Return ``(file, storage_key, size, version_number)`` for a read."""
        file = await self.require_file(session, user_id, file_id)
        if version_id is None:
            return file_to_info(file), file.storage_key, file.size_bytes, None
        version = await self._require_version(session, file, version_id)
        return (
            file_to_info(file),
            version.storage_key,
            version.size_bytes,
            version.version_number,
        )

    async def read_file(
        self,
        user_id: str,
        file_id: str,
        *,
        version_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> bytes:
        """Full bytes of the current content, or of an archived version."""
        async with self._reading(session) as s:
            _, storage_key, _, _ = await self._resolve_object(s, user_id, file_id, version_id)
        return await self._storage.read_all(storage_key)

    async def open_stream(
        self,
        user_id: str,
        file_id: str,
        byte_range: ByteRange | None = None,
        *,
        version_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> FileStream:
        """Open a (partial) read of a live file's bytes.

        Raises ``ObjectNotFoundError`` before any chunk is produced if the
        object has gone missing from the backend.
        """
        async with self._reading(session) as s:
            info, storage_key, size, version = await self._resolve_object(
                s, user_id, file_id, version_id
            )

        byte_range = byte_range or ByteRange()
        if size and byte_range.start >= size:
            raise InvalidOperationError(
                f"Range start {byte_range.start} is beyond the end of a {size}-byte file"
            )
        chunks = await self._storage.read_stream(storage_key, byte_range)
        return FileStream(
            file=info,
            chunks=chunks,
            size_bytes=size,
            start=byte_range.start,
            end=byte_range.end,
            version=version,
        )

    async def public_url(
        self,
        user_id: str,
        file_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> str | None:
        async with self._reading(session) as s:
            file = await self.require_file(s, user_id, file_id)
        return self._storage.public_url(file.storage_key)
