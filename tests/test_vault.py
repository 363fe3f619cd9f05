"""End-to-end tests for the VaultAsync facade."""

from __future__ import annotations

import pytest
from sqlalchemy import inspect

from vaultfs import LocalDiskBackend, NotFoundError, QuotaExceededError, Settings, VaultAsync


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'vault.db'}",
        upload_dir=tmp_path / "uploads",
        default_quota_bytes=1000,
        max_file_size=500,
    )


@pytest.fixture
async def vault(settings):
    async with VaultAsync(settings) as v:
        yield v


class TestLifecycle:
    async def test_open_creates_tables(self, vault):
        async with vault.engine.connect() as conn:
            names = await conn.run_sync(lambda c: inspect(c).get_table_names())
        assert {"vault_users", "vault_folders", "vault_files", "vault_file_versions"} <= set(
            names
        )

    async def test_backend_from_settings(self, vault, settings):
        assert isinstance(vault.storage, LocalDiskBackend)
        assert vault.storage.root_dir == settings.upload_dir.resolve()

    async def test_settings_flow_into_services(self, vault):
        assert vault.files.max_file_size == 500
        assert vault.trash.retention_days == 30
        info = await vault.quota.ensure_user("u")
        assert info.quota_bytes == 1000

    async def test_open_twice_and_close_twice(self, settings):
        v = VaultAsync(settings)
        await v.open()
        await v.open()
        await v.close()
        await v.close()

    async def test_explicit_engine_and_storage(self, async_engine, tmp_path):
        storage = LocalDiskBackend(tmp_path / "explicit")
        async with VaultAsync(
            Settings(_env_file=None), engine=async_engine, storage=storage
        ) as v:
            await v.quota.create_user("u")
            info = await v.files.upload("u", b"abc", "a.txt")
            assert v.storage is storage
            assert await storage.read_all(info.storage_key) == b"abc"
        # The engine belongs to the caller and is still usable.
        async with async_engine.connect():
            pass

    async def test_data_survives_reopen(self, settings):
        async with VaultAsync(settings) as v:
            await v.quota.create_user("u")
            info = await v.files.upload("u", b"persisted", "p.txt")
        async with VaultAsync(settings) as v:
            assert await v.files.read_file("u", info.id) == b"persisted"
            assert (await v.quota.get_storage_info("u")).used_bytes == 9


class TestEndToEnd:
    async def test_full_lifecycle(self, vault):
        await vault.quota.ensure_user("u")
        docs = await vault.folders.create("u", "docs")
        await vault.files.upload("u", b"v1", "notes.txt", folder_id=docs.id)
        info = await vault.files.upload("u", b"v2-longer", "notes.txt", folder_id=docs.id)
        assert info.version == 2

        contents = await vault.folders.list_contents("u", docs.id)
        assert [f.name for f in contents.files] == ["notes.txt"]

        await vault.folders.delete("u", docs.id)
        assert (await vault.quota.get_storage_info("u")).used_bytes == 0
        await vault.trash.restore("u", "folder", docs.id)
        assert (await vault.quota.get_storage_info("u")).used_bytes == 9

        await vault.folders.delete("u", docs.id)
        result = await vault.trash.empty_trash("u")
        assert (result.purged_files, result.purged_folders) == (1, 1)
        assert result.orphaned_keys == []

    async def test_quota_from_settings(self, vault):
        await vault.quota.ensure_user("u")
        await vault.files.upload("u", b"x" * 500, "a.bin")
        await vault.files.upload("u", b"x" * 500, "b.bin")
        with pytest.raises(QuotaExceededError):
            await vault.files.upload("u", b"x", "c.bin")


class TestCallerTransaction:
    async def test_commit_groups_operations(self, vault):
        async with vault.session() as s:
            await vault.quota.create_user("u", session=s)
            folder = await vault.folders.create("u", "inbox", session=s)
            await vault.files.upload("u", b"hi", "hi.txt", folder_id=folder.id, session=s)
            await s.commit()

        contents = await vault.folders.list_contents("u", folder.id)
        assert [f.name for f in contents.files] == ["hi.txt"]

    async def test_rollback_discards_everything(self, vault):
        async with vault.session() as s:
            await vault.quota.create_user("u", session=s)
            await vault.folders.create("u", "inbox", session=s)
            await s.rollback()

        with pytest.raises(NotFoundError):
            await vault.quota.get_storage_info("u")
