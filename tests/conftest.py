"""Shared fixtures for vaultfs tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import vaultfs.models  # noqa: F401  (registers tables on SQLModel.metadata)
from vaultfs.services.files import FileService
from vaultfs.services.folders import FolderService
from vaultfs.services.quota import QuotaService
from vaultfs.services.trash import TrashService
from vaultfs.storage.local_disk import LocalDiskBackend

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> Callable[[], AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_session(
    session_factory: Callable[[], AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path) -> LocalDiskBackend:
    """LocalDiskBackend rooted at a temporary directory."""
    return LocalDiskBackend(tmp_path / "objects")


@pytest.fixture
def quota(session_factory) -> QuotaService:
    return QuotaService(session_factory)


@pytest.fixture
def files(session_factory, storage, quota) -> FileService:
    return FileService(session_factory, storage, quota, max_file_size=1024 * 1024)


@pytest.fixture
def folders(session_factory, quota) -> FolderService:
    return FolderService(session_factory, quota)


@pytest.fixture
def trash(session_factory, storage, quota, files, folders) -> TrashService:
    return TrashService(session_factory, storage, quota, files, folders)


@pytest.fixture
async def user(quota: QuotaService) -> str:
    """A user with the default 1 GiB quota."""
    await quota.create_user("alice")
    return "alice"


@pytest.fixture
def stored_keys(storage: LocalDiskBackend) -> Callable[[], set[str]]:
    """Callable returning the keys of every object currently on disk."""

    def _keys() -> set[str]:
        return {
            p.relative_to(storage.root_dir).as_posix()
            for p in storage.root_dir.rglob("*")
            if p.is_file()
        }

    return _keys
