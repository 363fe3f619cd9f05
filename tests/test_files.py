"""Tests for FileService — uploads, version history, and the read path."""

from __future__ import annotations

import asyncio
import io

import pytest
from sqlmodel import func, select

from vaultfs.exceptions import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ObjectNotFoundError,
    QuotaExceededError,
)
from vaultfs.models.files import File, FileVersion
from vaultfs.storage.types import ByteRange


async def _count(session, model, *where) -> int:
    result = await session.execute(select(func.count()).select_from(model).where(*where))
    return result.scalar_one()


async def _collect(stream) -> bytes:
    return b"".join([c async for c in stream.chunks])


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class TestUpload:
    async def test_new_file(self, files, quota, user):
        info = await files.upload(user, b"hello", "hello.txt")
        assert info.version == 1
        assert info.size_bytes == 5
        assert info.mime_type == "text/plain"
        assert info.folder_id is None
        assert (await quota.get_storage_info(user)).used_bytes == 5

    async def test_file_object_content(self, files, user):
        info = await files.upload(user, io.BytesIO(b"streamed"), "s.bin")
        assert info.size_bytes == 8
        assert await files.read_file(user, info.id) == b"streamed"

    async def test_explicit_mime_type(self, files, user):
        info = await files.upload(user, b"{}", "data", mime_type="application/json")
        assert info.mime_type == "application/json"

    async def test_into_folder(self, files, folders, user):
        folder = await folders.create(user, "docs")
        info = await files.upload(user, b"x", "x.txt", folder_id=folder.id)
        assert info.folder_id == folder.id

    async def test_into_missing_folder(self, files, user, stored_keys):
        with pytest.raises(NotFoundError):
            await files.upload(user, b"x", "x.txt", folder_id="nope")
        assert stored_keys() == set()

    async def test_into_trashed_folder(self, files, folders, user):
        folder = await folders.create(user, "old")
        await folders.delete(user, folder.id)
        with pytest.raises(NotFoundError):
            await files.upload(user, b"x", "x.txt", folder_id=folder.id)

    async def test_into_someone_elses_folder(self, files, folders, quota, user):
        await quota.create_user("mallory")
        folder = await folders.create("mallory", "private")
        with pytest.raises(NotFoundError):
            await files.upload(user, b"x", "x.txt", folder_id=folder.id)

    @pytest.mark.parametrize("name", ["", "a/b", "..", "bad\x00name"])
    async def test_invalid_name(self, files, user, stored_keys, name):
        with pytest.raises(InvalidOperationError):
            await files.upload(user, b"x", name)
        assert stored_keys() == set()

    async def test_too_large(self, files, user, stored_keys):
        with pytest.raises(InvalidOperationError, match="too large"):
            await files.upload(user, b"x" * (files.max_file_size + 1), "big.bin")
        assert stored_keys() == set()

    async def test_too_large_stream_is_removed(self, files, user, stored_keys):
        with pytest.raises(InvalidOperationError):
            await files.upload(user, io.BytesIO(b"x" * (files.max_file_size + 1)), "big.bin")
        assert stored_keys() == set()

    async def test_unknown_user(self, files, stored_keys):
        with pytest.raises(NotFoundError):
            await files.upload("ghost", b"x", "x.txt")
        assert stored_keys() == set()


# ---------------------------------------------------------------------------
# Overwrite / version chain
# ---------------------------------------------------------------------------


class TestVersionChain:
    async def test_overwrite_archives_previous_version(self, files, user, async_session):
        first = await files.upload(user, b"v1", "doc.txt")
        second = await files.upload(user, b"v2!", "doc.txt")

        assert second.id == first.id
        assert second.version == 2
        assert second.size_bytes == 3

        result = await async_session.execute(
            select(FileVersion).where(FileVersion.file_id == first.id)
        )
        [archived] = result.scalars().all()
        assert archived.version_number == 1
        assert archived.storage_key == first.storage_key
        assert archived.size_bytes == 2

    async def test_repeated_uploads(self, files, user, async_session):
        for i in range(1, 6):
            info = await files.upload(user, f"content {i}".encode(), "same.txt")
            assert info.version == i
            versions = await _count(async_session, FileVersion, FileVersion.file_id == info.id)
            assert versions == info.version - 1
        assert await _count(async_session, File, File.name == "same.txt") == 1

    async def test_same_name_different_folders_are_distinct(self, files, folders, user):
        folder = await folders.create(user, "f")
        a = await files.upload(user, b"a", "n.txt")
        b = await files.upload(user, b"b", "n.txt", folder_id=folder.id)
        assert a.id != b.id
        assert b.version == 1

    async def test_trashed_name_is_not_overwritten(self, files, user):
        old = await files.upload(user, b"old", "n.txt")
        await files.delete(user, old.id)
        new = await files.upload(user, b"new", "n.txt")
        assert new.id != old.id
        assert new.version == 1

    async def test_overwrite_keeps_old_bytes(self, files, user):
        first = await files.upload(user, b"v1", "doc.txt")
        await files.upload(user, b"v2", "doc.txt")
        assert await files.storage.read_all(first.storage_key) == b"v1"

    async def test_list_versions(self, files, user):
        await files.upload(user, b"1", "doc.txt")
        await files.upload(user, b"22", "doc.txt")
        info = await files.upload(user, b"333", "doc.txt")

        versions = await files.list_versions(user, info.id)
        assert [v.version for v in versions] == [3, 2, 1]
        assert [v.is_current for v in versions] == [True, False, False]
        assert [v.size_bytes for v in versions] == [3, 2, 1]

    async def test_stale_overwrite_is_a_conflict(self, files, user, session_factory):
        info = await files.upload(user, b"v1", "doc.txt")
        async with session_factory() as s:
            stale = await files.require_file(s, user, info.id)

        await files.upload(user, b"v2", "doc.txt")

        async with session_factory() as s:
            with pytest.raises(ConflictError):
                await files._advance(s, stale, storage_key="other", size_bytes=1)
            await s.rollback()

        assert (await files.get_file(user, info.id)).version == 2


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------


class TestQuota:
    async def test_overwrite_within_tight_quota(self, files, quota, async_session):
        await quota.create_user("q", quota_bytes=100)

        a = await files.upload("q", b"a" * 60, "a.txt")
        assert (await quota.get_storage_info("q")).used_bytes == 60

        a2 = await files.upload("q", b"A" * 60, "a.txt")
        assert a2.version == 2
        assert (await quota.get_storage_info("q")).used_bytes == 60
        assert await _count(async_session, FileVersion, FileVersion.file_id == a.id) == 1

        with pytest.raises(QuotaExceededError):
            await files.upload("q", b"b" * 50, "b.txt")
        assert (await quota.get_storage_info("q")).used_bytes == 60
        assert await _count(async_session, File, File.name == "b.txt") == 0

    async def test_overwrite_charges_only_the_delta(self, files, quota):
        await quota.create_user("q", quota_bytes=100)
        await files.upload("q", b"x" * 80, "a.txt")
        await files.upload("q", b"x" * 95, "a.txt")
        assert (await quota.get_storage_info("q")).used_bytes == 95
        await files.upload("q", b"x" * 10, "a.txt")
        assert (await quota.get_storage_info("q")).used_bytes == 10

    async def test_ledger_matches_live_files(self, files, folders, quota, user):
        a = await files.upload(user, b"a" * 30, "a.txt")
        await files.upload(user, b"a" * 12, "a.txt")
        folder = await folders.create(user, "f")
        await files.upload(user, b"b" * 7, "b.txt", folder_id=folder.id)
        c = await files.upload(user, b"c" * 5, "c.txt")
        await files.delete(user, c.id)
        [_, v1] = await files.list_versions(user, a.id)
        await files.restore_version(user, a.id, v1.id)
        await files.move_file(user, a.id, folder.id)

        tracked = (await quota.get_storage_info(user)).used_bytes
        assert tracked == 37
        assert (await quota.recalculate(user)).used_bytes == tracked

    async def test_rejected_stream_upload_is_compensated(self, files, quota, stored_keys):
        await quota.create_user("q", quota_bytes=10)
        with pytest.raises(QuotaExceededError):
            await files.upload("q", io.BytesIO(b"x" * 11), "big.bin")
        assert stored_keys() == set()
        assert (await quota.get_storage_info("q")).used_bytes == 0

    async def test_cancelled_upload_is_compensated(
        self, files, quota, user, stored_keys, monkeypatch
    ):
        async def stalled_reserve(session, user_id, size_bytes):
            await asyncio.sleep(10)

        monkeypatch.setattr(quota, "reserve", stalled_reserve)
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(files.upload(user, b"x" * 10, "a.txt"), 0.2)
        assert stored_keys() == set()
        assert (await files.list_files(user)).total == 0

    async def test_compensation_failure_keeps_original_error(
        self, files, quota, storage, monkeypatch
    ):
        await quota.create_user("q", quota_bytes=10)

        async def broken_delete(storage_key):
            raise OSError("disk on fire")

        monkeypatch.setattr(storage, "delete", broken_delete)
        with pytest.raises(QuotaExceededError):
            await files.upload("q", io.BytesIO(b"x" * 11), "big.bin")


# ---------------------------------------------------------------------------
# Restore version
# ---------------------------------------------------------------------------


class TestRestoreVersion:
    async def test_restore_promotes_as_new_version(self, files, quota, user):
        await files.upload(user, b"one", "doc.txt")
        info = await files.upload(user, b"twotwo", "doc.txt")
        [_, v1] = await files.list_versions(user, info.id)

        restored = await files.restore_version(user, info.id, v1.id)
        assert restored.version == 3
        assert restored.size_bytes == 3
        assert restored.storage_key == v1.storage_key
        assert await files.read_file(user, info.id) == b"one"
        assert (await quota.get_storage_info(user)).used_bytes == 3

        history = await files.list_versions(user, info.id)
        assert [v.version for v in history] == [3, 2, 1]

    async def test_unknown_version(self, files, user):
        info = await files.upload(user, b"x", "doc.txt")
        with pytest.raises(NotFoundError):
            await files.restore_version(user, info.id, "nope")

    async def test_missing_bytes(self, files, user, storage):
        await files.upload(user, b"one", "doc.txt")
        info = await files.upload(user, b"two", "doc.txt")
        [_, v1] = await files.list_versions(user, info.id)
        await storage.delete(v1.storage_key)

        with pytest.raises(ObjectNotFoundError):
            await files.restore_version(user, info.id, v1.id)
        assert (await files.get_file(user, info.id)).version == 2


# ---------------------------------------------------------------------------
# Delete / move
# ---------------------------------------------------------------------------


class TestDeleteMove:
    async def test_delete_is_soft(self, files, quota, user):
        info = await files.upload(user, b"12345", "a.txt")
        trashed = await files.delete(user, info.id)
        assert trashed.is_trashed
        assert (await quota.get_storage_info(user)).used_bytes == 0
        assert await files.storage.exists(info.storage_key)
        with pytest.raises(NotFoundError):
            await files.get_file(user, info.id)
        assert (await files.get_file(user, info.id, include_deleted=True)).is_trashed

    async def test_delete_twice(self, files, user):
        info = await files.upload(user, b"x", "a.txt")
        await files.delete(user, info.id)
        with pytest.raises(NotFoundError):
            await files.delete(user, info.id)

    async def test_move(self, files, folders, user):
        folder = await folders.create(user, "dest")
        info = await files.upload(user, b"x", "a.txt")
        moved = await files.move_file(user, info.id, folder.id)
        assert moved.folder_id == folder.id
        back = await files.move_file(user, info.id, None)
        assert back.folder_id is None

    async def test_move_name_collision(self, files, folders, user):
        folder = await folders.create(user, "dest")
        await files.upload(user, b"1", "a.txt", folder_id=folder.id)
        info = await files.upload(user, b"2", "a.txt")
        with pytest.raises(ConflictError):
            await files.move_file(user, info.id, folder.id)

    async def test_move_to_missing_folder(self, files, user):
        info = await files.upload(user, b"x", "a.txt")
        with pytest.raises(NotFoundError):
            await files.move_file(user, info.id, "nope")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    async def test_list_files_paginates_newest_first(self, files, user):
        for i in range(5):
            await files.upload(user, b"x", f"f{i}.txt")
        page1 = await files.list_files(user, limit=2)
        page3 = await files.list_files(user, page=3, limit=2)
        assert page1.total == 5
        assert page1.total_pages == 3
        assert len(page1.entries) == 2
        assert len(page3.entries) == 1

    async def test_list_files_by_folder(self, files, folders, user):
        folder = await folders.create(user, "f")
        await files.upload(user, b"x", "in.txt", folder_id=folder.id)
        await files.upload(user, b"x", "out.txt")
        page = await files.list_files(user, folder_id=folder.id)
        assert [e.name for e in page.entries] == ["in.txt"]

    async def test_other_users_files_are_invisible(self, files, quota, user):
        await quota.create_user("bob")
        info = await files.upload("bob", b"secret", "s.txt")
        with pytest.raises(NotFoundError):
            await files.get_file(user, info.id)
        assert (await files.list_files(user)).total == 0

    async def test_read_archived_version(self, files, user):
        await files.upload(user, b"old", "doc.txt")
        info = await files.upload(user, b"new", "doc.txt")
        [_, v1] = await files.list_versions(user, info.id)
        assert await files.read_file(user, info.id, version_id=v1.id) == b"old"

    async def test_open_stream_full(self, files, user):
        info = await files.upload(user, b"0123456789", "d.bin")
        stream = await files.open_stream(user, info.id)
        assert stream.content_length == 10
        assert await _collect(stream) == b"0123456789"

    async def test_open_stream_range(self, files, user):
        info = await files.upload(user, b"0123456789", "d.bin")
        stream = await files.open_stream(user, info.id, ByteRange(2, 5))
        assert stream.start == 2
        assert stream.end == 5
        assert stream.content_length == 4
        assert await _collect(stream) == b"2345"

    async def test_open_stream_range_past_end(self, files, user):
        info = await files.upload(user, b"abc", "d.bin")
        with pytest.raises(InvalidOperationError):
            await files.open_stream(user, info.id, ByteRange(3))

    async def test_open_stream_missing_object(self, files, user, storage):
        info = await files.upload(user, b"abc", "d.bin")
        await storage.delete(info.storage_key)
        with pytest.raises(ObjectNotFoundError):
            await files.open_stream(user, info.id)

    async def test_public_url_local(self, files, user):
        info = await files.upload(user, b"abc", "d.bin")
        assert await files.public_url(user, info.id) is None
