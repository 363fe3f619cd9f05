"""Tests for FolderService — tree structure, moves, and cascading trash."""

from __future__ import annotations

import pytest

from vaultfs.exceptions import ConflictError, InvalidOperationError, NotFoundError


@pytest.fixture
async def tree(folders, user):
    """``a/b/c`` plus a sibling ``d`` at the root."""
    a = await folders.create(user, "a")
    b = await folders.create(user, "b", a.id)
    c = await folders.create(user, "c", b.id)
    d = await folders.create(user, "d")
    return {"a": a, "b": b, "c": c, "d": d}


# ---------------------------------------------------------------------------
# Create / rename
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_root_folder(self, folders, user):
        info = await folders.create(user, "docs")
        assert info.parent_id is None
        assert info.path == f"/{info.id}"

    async def test_nested_paths(self, tree):
        a, b, c = tree["a"], tree["b"], tree["c"]
        assert b.path == f"/{a.id}/{b.id}"
        assert c.path == f"/{a.id}/{b.id}/{c.id}"

    async def test_duplicate_sibling(self, folders, tree, user):
        with pytest.raises(ConflictError):
            await folders.create(user, "b", tree["a"].id)

    async def test_same_name_elsewhere(self, folders, tree, user):
        info = await folders.create(user, "b")
        assert info.parent_id is None

    async def test_trashed_name_can_be_reused(self, folders, user):
        old = await folders.create(user, "x")
        await folders.delete(user, old.id)
        new = await folders.create(user, "x")
        assert new.id != old.id

    async def test_missing_parent(self, folders, user):
        with pytest.raises(NotFoundError):
            await folders.create(user, "orphan", "nope")

    async def test_invalid_name(self, folders, user):
        with pytest.raises(InvalidOperationError):
            await folders.create(user, "a/b")

    async def test_rename_keeps_paths(self, folders, tree, user):
        renamed = await folders.rename(user, tree["b"].id, "bee")
        assert renamed.name == "bee"
        assert renamed.path == tree["b"].path
        assert (await folders.get_folder(user, tree["c"].id)).path == tree["c"].path

    async def test_rename_collision(self, folders, tree, user):
        with pytest.raises(ConflictError):
            await folders.rename(user, tree["a"].id, "d")


# ---------------------------------------------------------------------------
# Move
# ---------------------------------------------------------------------------


class TestMove:
    async def test_move_rewrites_descendant_paths(self, folders, tree, user):
        a, b, c, d = tree["a"], tree["b"], tree["c"], tree["d"]
        moved = await folders.move(user, b.id, d.id)
        assert moved.parent_id == d.id
        assert moved.path == f"/{d.id}/{b.id}"

        child = await folders.get_folder(user, c.id)
        assert child.path == f"/{d.id}/{b.id}/{c.id}"
        assert child.parent_id == b.id
        assert (await folders.get_folder(user, a.id)).path == f"/{a.id}"

    async def test_move_to_root(self, folders, tree, user):
        b, c = tree["b"], tree["c"]
        moved = await folders.move(user, b.id, None)
        assert moved.path == f"/{b.id}"
        assert (await folders.get_folder(user, c.id)).path == f"/{b.id}/{c.id}"

    async def test_move_into_itself(self, folders, tree, user):
        with pytest.raises(InvalidOperationError):
            await folders.move(user, tree["a"].id, tree["a"].id)

    async def test_move_into_descendant_changes_nothing(self, folders, tree, user):
        a, c = tree["a"], tree["c"]
        with pytest.raises(InvalidOperationError):
            await folders.move(user, a.id, c.id)
        for key in ("a", "b", "c"):
            current = await folders.get_folder(user, tree[key].id)
            assert current.path == tree[key].path
            assert current.parent_id == tree[key].parent_id

    async def test_move_name_collision(self, folders, tree, user):
        await folders.create(user, "b")
        with pytest.raises(ConflictError):
            await folders.move(user, tree["b"].id, None)

    async def test_move_to_same_parent_is_noop(self, folders, tree, user):
        same = await folders.move(user, tree["b"].id, tree["a"].id)
        assert same.path == tree["b"].path

    async def test_move_leaves_other_subtrees_alone(self, folders, tree, user):
        a, d = tree["a"], tree["d"]
        await folders.move(user, d.id, a.id)
        assert (await folders.get_folder(user, tree["c"].id)).path == tree["c"].path
        assert (await folders.get_folder(user, d.id)).path == f"/{a.id}/{d.id}"


# ---------------------------------------------------------------------------
# Delete (trash)
# ---------------------------------------------------------------------------


class TestDelete:
    async def test_cascade_shares_timestamp(self, folders, files, quota, tree, user):
        a, b, c = tree["a"], tree["b"], tree["c"]
        f1 = await files.upload(user, b"x" * 10, "one.txt", folder_id=a.id)
        f2 = await files.upload(user, b"y" * 5, "two.txt", folder_id=c.id)
        assert (await quota.get_storage_info(user)).used_bytes == 15

        trashed = await folders.delete(user, a.id)

        stamps = {
            (await folders.get_folder(user, x.id, include_deleted=True)).deleted_at
            for x in (a, b, c)
        } | {
            (await files.get_file(user, f.id, include_deleted=True)).deleted_at
            for f in (f1, f2)
        }
        assert len(stamps) == 1
        assert None not in stamps
        assert trashed.is_trashed
        assert (await quota.get_storage_info(user)).used_bytes == 0

    async def test_already_trashed_items_keep_timestamp(self, folders, files, tree, user):
        a, c = tree["a"], tree["c"]
        early = await files.upload(user, b"x", "early.txt", folder_id=c.id)
        early = await files.delete(user, early.id)

        await folders.delete(user, a.id)
        again = await files.get_file(user, early.id, include_deleted=True)
        assert again.deleted_at.replace(tzinfo=None) == early.deleted_at.replace(tzinfo=None)

    async def test_trashed_folder_is_hidden(self, folders, tree, user):
        await folders.delete(user, tree["d"].id)
        with pytest.raises(NotFoundError):
            await folders.get_folder(user, tree["d"].id)
        assert [f.name for f in await folders.list_folders(user)] == ["a"]

    async def test_sibling_untouched(self, folders, tree, user):
        await folders.delete(user, tree["a"].id)
        assert not (await folders.get_folder(user, tree["d"].id)).is_trashed


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    async def test_list_contents(self, folders, files, tree, user):
        await files.upload(user, b"x", "z.txt", folder_id=tree["a"].id)
        await files.upload(user, b"x", "root.txt")

        contents = await folders.list_contents(user, tree["a"].id)
        assert [f.name for f in contents.folders] == ["b"]
        assert [f.name for f in contents.files] == ["z.txt"]

        root = await folders.list_contents(user)
        assert [f.name for f in root.folders] == ["a", "d"]
        assert [f.name for f in root.files] == ["root.txt"]

    async def test_list_contents_of_missing_folder(self, folders, user):
        with pytest.raises(NotFoundError):
            await folders.list_contents(user, "nope")

    async def test_breadcrumbs(self, folders, tree, user):
        crumbs = await folders.breadcrumbs(user, tree["c"].id)
        assert [f.name for f in crumbs] == ["a", "b", "c"]

    async def test_other_user_cannot_see(self, folders, quota, tree):
        await quota.create_user("bob")
        with pytest.raises(NotFoundError):
            await folders.get_folder("bob", tree["a"].id)
        assert await folders.list_folders("bob") == []
