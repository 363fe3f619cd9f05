"""VaultAsync — async entry point wiring metadata store, storage, and services."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from vaultfs.config import Settings, get_settings
from vaultfs.models.files import File, FileVersion
from vaultfs.models.folders import Folder
from vaultfs.models.users import User
from vaultfs.services.files import FileService
from vaultfs.services.folders import FolderService
from vaultfs.services.quota import QuotaService
from vaultfs.services.trash import TrashService
from vaultfs.storage.factory import create_backend

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from vaultfs.storage.protocol import StorageBackend

logger = logging.getLogger(__name__)


def _enable_sqlite_pragmas(engine: AsyncEngine, *, wal: bool) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
            result = cursor.fetchone()
            if result[0].lower() != "wal":
                logger.warning("WAL mode not active, got: %s", result[0])
            cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class VaultAsync:
    """Async facade over the quota, file, folder, and trash services.

    Built from configuration::

        vault = VaultAsync()                 # reads VAULT_* settings
        async with vault:
            await vault.quota.ensure_user("u1")
            info = await vault.files.upload("u1", b"hello", "hello.txt")

    Or from explicit parts, e.g. in tests::

        vault = VaultAsync(engine=engine, storage=LocalDiskBackend(tmp_path))

    Every service method commits per call unless a ``session`` is passed,
    in which case the caller owns the transaction (see ``session()``).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        engine: AsyncEngine | None = None,
        storage: StorageBackend | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_engine = engine is None

        if engine is None:
            engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
            )
            if engine.dialect.name == "sqlite":
                database = engine.url.database
                _enable_sqlite_pragmas(engine, wal=bool(database) and database != ":memory:")
        self._engine = engine
        self._session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

        self._storage = storage or create_backend(self.settings)

        self.quota = QuotaService(
            self._session_factory,
            default_quota_bytes=self.settings.default_quota_bytes,
        )
        self.files = FileService(
            self._session_factory,
            self._storage,
            self.quota,
            max_file_size=self.settings.max_file_size,
        )
        self.folders = FolderService(self._session_factory, self.quota)
        self.trash = TrashService(
            self._session_factory,
            self._storage,
            self.quota,
            self.files,
            self.folders,
            retention_days=self.settings.trash_retention_days,
        )

        self._open_lock = asyncio.Lock()
        self._opened = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Create tables (if missing) and open the storage backend."""
        async with self._open_lock:
            if self._opened:
                return
            tables = [
                User.__table__,  # type: ignore[attr-defined]
                Folder.__table__,  # type: ignore[attr-defined]
                File.__table__,  # type: ignore[attr-defined]
                FileVersion.__table__,  # type: ignore[attr-defined]
            ]
            async with self._engine.begin() as conn:
                await conn.run_sync(
                    lambda c: SQLModel.metadata.create_all(c, tables=tables, checkfirst=True)
                )
            await self._storage.open()
            self._opened = True
            logger.debug("Vault opened on %s", self._engine.url.render_as_string())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._storage.close()
        if self._owns_engine:
            await self._engine.dispose()

    async def __aenter__(self) -> VaultAsync:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    def session(self) -> AsyncSession:
        """A new session for callers that group several operations in one transaction."""
        return self._session_factory()
