"""Unit tests for flowfolders.folders.tree — FolderTreeService."""

import threading

import pytest

from flowfolders.engine.errors import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from flowfolders.folders.models import Folder, FolderUpdate, PermissionLevel
from flowfolders.folders.tree import FolderTreeService, name_sort_key


class TestCreateFolder:

    def test_create_root(self, engine):
        folder = engine.tree.create_folder("Sales", created_by="u1", description="Team")
        assert folder.parent_id is None
        assert folder.created_by == "u1"
        assert engine.tree.folder_exists(folder.id)

    def test_create_child(self, engine, chain):
        child = engine.tree.create_folder("Leads", created_by="u1", parent_id=chain["A"].id)
        assert child.parent_id == chain["A"].id

    def test_missing_parent(self, engine):
        with pytest.raises(NotFoundError) as info:
            engine.tree.create_folder("X", created_by="u1", parent_id="nope")
        assert info.value.resource_id == "nope"

    def test_duplicate_root_name(self, engine, chain):
        with pytest.raises(ConflictError):
            engine.tree.create_folder("A", created_by="u1")

    def test_duplicate_sibling_name(self, engine, chain):
        with pytest.raises(ConflictError):
            engine.tree.create_folder("B", created_by="u1", parent_id=chain["A"].id)

    def test_same_name_under_different_parents(self, engine, chain):
        engine.tree.create_folder("B", created_by="u1", parent_id=chain["D"].id)

    @pytest.mark.parametrize("name", ["", "   ", "x" * 101])
    def test_invalid_name(self, engine, name):
        with pytest.raises(ValidationError):
            engine.tree.create_folder(name, created_by="u1")

    def test_description_too_long(self, engine):
        with pytest.raises(ValidationError):
            engine.tree.create_folder("ok", created_by="u1", description="d" * 501)

    def test_audit_entry(self, engine, audit_dir):
        from flowfolders.engine.logging import get_file_logger

        folder = engine.tree.create_folder("Audited", created_by="u1")
        rows = get_file_logger().query("folders", "execution")
        assert rows[-1]["event"] == "folder_created"
        assert rows[-1]["folder_id"] == folder.id


class TestUpdateFolder:

    def test_rename(self, engine, chain):
        updated = engine.tree.update_folder(chain["A"].id, {"name": "Alpha"})
        assert updated.name == "Alpha"
        assert updated.parent_id is None

    def test_rename_keeps_parent(self, engine, chain):
        updated = engine.tree.update_folder(chain["B"].id, FolderUpdate(description="desc"))
        assert updated.parent_id == chain["A"].id
        assert updated.description == "desc"

    def test_missing_folder(self, engine):
        with pytest.raises(NotFoundError):
            engine.tree.update_folder("nope", {"name": "x"})

    def test_self_parent(self, engine, chain):
        with pytest.raises(InvalidOperationError):
            engine.tree.update_folder(chain["A"].id, {"parent_id": chain["A"].id})

    def test_move_into_descendant(self, engine, chain):
        with pytest.raises(InvalidOperationError):
            engine.tree.update_folder(chain["A"].id, {"parent_id": chain["C"].id})
        assert engine.tree.get_folder(chain["A"].id).parent_id is None

    def test_move_to_missing_parent(self, engine, chain):
        with pytest.raises(NotFoundError):
            engine.tree.update_folder(chain["B"].id, {"parent_id": "nope"})

    def test_move_to_other_root(self, engine, chain):
        moved = engine.tree.update_folder(chain["B"].id, {"parent_id": chain["D"].id})
        assert moved.parent_id == chain["D"].id
        assert chain["C"].id in engine.tree.get_descendant_ids(chain["D"].id)

    def test_move_to_root(self, engine, chain):
        moved = engine.tree.update_folder(chain["C"].id, FolderUpdate(parent_id=None))
        assert moved.parent_id is None
        assert engine.tree.get_ancestor_ids(chain["C"].id) == []

    def test_rename_conflict(self, engine, chain):
        with pytest.raises(ConflictError):
            engine.tree.update_folder(chain["D"].id, {"name": "A"})

    def test_move_conflict(self, engine, chain):
        engine.tree.create_folder("C", created_by="u1", parent_id=chain["D"].id)
        with pytest.raises(ConflictError):
            engine.tree.update_folder(chain["C"].id, {"parent_id": chain["D"].id})

    def test_rename_to_same_name_is_allowed(self, engine, chain):
        assert engine.tree.update_folder(chain["A"].id, {"name": "A"}).name == "A"

    def test_null_name_rejected(self, engine, chain):
        with pytest.raises(ValidationError):
            engine.tree.update_folder(chain["A"].id, {"name": None})

    def test_blank_name_rejected(self, engine, chain):
        with pytest.raises(ValidationError):
            engine.tree.update_folder(chain["A"].id, {"name": "  "})


class TestDeleteFolder:

    def test_delete_leaf(self, engine, chain):
        assert engine.tree.delete_folder(chain["D"].id) == [chain["D"].id]
        assert not engine.tree.folder_exists(chain["D"].id)

    def test_missing(self, engine):
        with pytest.raises(NotFoundError):
            engine.tree.delete_folder("nope")

    def test_non_cascade_with_children_blocked(self, engine, chain):
        with pytest.raises(ConflictError):
            engine.tree.delete_folder(chain["A"].id)
        assert engine.tree.folder_exists(chain["A"].id)

    def test_cascade_is_exhaustive(self, engine, chain):
        for name in ("A", "B", "C"):
            fid = chain[name].id
            engine.permissions.grant_permission(fid, "alice", "editor", granted_by="admin")
            engine.bindings.assign_workflow(f"wf-{name}", fid, assigned_by="admin")

        deleted = engine.tree.delete_folder(chain["A"].id, cascade=True)

        assert deleted == [chain["C"].id, chain["B"].id, chain["A"].id]
        for name in ("A", "B", "C"):
            fid = chain[name].id
            assert not engine.tree.folder_exists(fid)
            assert engine.stores.permissions.find(fid, "alice") is None
            assert engine.stores.bindings.find_by_workflow(f"wf-{name}") is None
        assert engine.tree.folder_exists(chain["D"].id)

    def test_cascade_rolls_back_on_failure(self, engine, chain, monkeypatch):
        engine.permissions.grant_permission(chain["B"].id, "alice", "viewer", granted_by="admin")
        real_delete = engine.stores.folders.delete

        def failing_delete(folder_id):
            if folder_id == chain["A"].id:
                raise RuntimeError("store went away")
            return real_delete(folder_id)

        monkeypatch.setattr(engine.stores.folders, "delete", failing_delete)
        with pytest.raises(RuntimeError):
            engine.tree.delete_folder(chain["A"].id, cascade=True)

        for name in ("A", "B", "C"):
            assert engine.stores.folders.exists(chain[name].id)
        assert engine.stores.permissions.find(chain["B"].id, "alice").level is PermissionLevel.VIEWER

    def test_grant_from_other_thread_survives_failed_cascade(self, engine, chain, monkeypatch):
        real_delete = engine.stores.folders.delete
        granted = []

        def grant_on_d():
            granted.append(
                engine.permissions.grant_permission(chain["D"].id, "bob", "editor", granted_by="admin")
            )

        granter = threading.Thread(target=grant_on_d)

        def failing_delete(folder_id):
            if folder_id == chain["A"].id:
                granter.start()
                granter.join(timeout=0.2)
                raise RuntimeError("store went away")
            return real_delete(folder_id)

        monkeypatch.setattr(engine.stores.folders, "delete", failing_delete)
        with pytest.raises(RuntimeError):
            engine.tree.delete_folder(chain["A"].id, cascade=True)

        granter.join(timeout=5)
        assert len(granted) == 1
        assert engine.stores.permissions.find(chain["D"].id, "bob").level is PermissionLevel.EDITOR
        assert engine.stores.folders.exists(chain["A"].id)


class TestTraversal:

    def test_ancestors_nearest_first(self, engine, chain):
        assert engine.tree.get_ancestor_ids(chain["C"].id) == [chain["B"].id, chain["A"].id]
        assert engine.tree.get_ancestor_ids(chain["A"].id) == []

    def test_ancestors_of_missing_folder(self, engine):
        assert engine.tree.get_ancestor_ids("nope") == []

    def test_descendants(self, engine, chain):
        assert engine.tree.get_descendant_ids(chain["A"].id) == {chain["B"].id, chain["C"].id}
        assert engine.tree.get_descendant_ids(chain["C"].id) == set()

    def test_descendants_exclude_self(self, engine, chain):
        assert chain["A"].id not in engine.tree.get_descendant_ids(chain["A"].id)

    def test_ancestor_cycle_detected(self, stores):
        stores.folders.create(Folder(id="x", name="x", parent_id="y", created_by="u"))
        stores.folders.create(Folder(id="y", name="y", parent_id="x", created_by="u"))
        tree = FolderTreeService(stores)
        with pytest.raises(InvalidOperationError, match="Cycle"):
            tree.get_ancestor_ids("x")

    def test_descendant_cycle_detected(self, stores):
        stores.folders.create(Folder(id="x", name="x", parent_id="y", created_by="u"))
        stores.folders.create(Folder(id="y", name="y", parent_id="x", created_by="u"))
        tree = FolderTreeService(stores)
        with pytest.raises(InvalidOperationError, match="Cycle"):
            tree.get_descendant_ids("x")

    def test_depth_cap(self, stores):
        parent = None
        for i in range(6):
            stores.folders.create(Folder(id=f"f{i}", name=f"f{i}", parent_id=parent, created_by="u"))
            parent = f"f{i}"
        tree = FolderTreeService(stores, max_depth=3)
        with pytest.raises(InvalidOperationError, match="max depth"):
            tree.get_ancestor_ids("f5")
        assert len(FolderTreeService(stores).get_ancestor_ids("f5")) == 5

    def test_dangling_parent_is_reported(self, stores):
        stores.folders.create(Folder(id="x", name="x", parent_id="ghost", created_by="u"))
        assert FolderTreeService(stores).get_ancestor_ids("x") == ["ghost"]

    def test_ancestors_from_snapshot(self, engine, chain):
        parent_of = {f.id: f.parent_id for f in engine.tree.list_folders()}
        assert engine.tree.get_ancestor_ids(chain["C"].id, parent_of=parent_of) == [
            chain["B"].id, chain["A"].id,
        ]


class TestBuildTree:

    def test_nesting_and_counts(self, engine, chain):
        counts = {chain["A"].id: 2, chain["C"].id: 1}
        roots = engine.tree.build_tree(engine.tree.list_folders(), counts)

        assert [n.name for n in roots] == ["A", "D"]
        a = roots[0]
        assert a.workflow_count == 2
        assert [n.name for n in a.children] == ["B"]
        b = a.children[0]
        assert b.workflow_count == 0
        assert b.children[0].workflow_count == 1

    def test_invisible_parent_makes_root(self, engine, chain):
        visible = [f for f in engine.tree.list_folders() if f.id != chain["A"].id]
        roots = engine.tree.build_tree(visible)
        assert [n.name for n in roots] == ["B", "D"]

    def test_children_sorted_by_name(self, engine):
        parent = engine.tree.create_folder("P", created_by="u1")
        for name in ("beta", "Alpha", "gamma"):
            engine.tree.create_folder(name, created_by="u1", parent_id=parent.id)
        roots = engine.tree.build_tree(engine.tree.list_folders())
        assert [n.name for n in roots[0].children] == ["Alpha", "beta", "gamma"]

    def test_accented_names_collate_with_base_letters(self, engine):
        for name in ("Zebra", "Éclair", "apple", "Äpfel", "eagle"):
            engine.tree.create_folder(name, created_by="u1")
        roots = engine.tree.build_tree(engine.tree.list_folders())
        assert [n.name for n in roots] == ["Äpfel", "apple", "eagle", "Éclair", "Zebra"]

    def test_name_sort_key_accent_tiebreak(self):
        assert sorted(["résumé", "resume"], key=name_sort_key) == ["resume", "résumé"]

    def test_name_sort_key_case_insensitive(self):
        assert sorted(["b", "A", "a"], key=name_sort_key)[:2] in (["A", "a"], ["a", "A"])
        assert sorted(["b", "A"], key=name_sort_key) == ["A", "b"]


class TestReads:

    def test_get_folder_missing(self, engine):
        with pytest.raises(NotFoundError):
            engine.tree.get_folder("nope")

    def test_child_folders(self, engine, chain):
        assert [f.name for f in engine.tree.get_child_folders(None)] == ["A", "D"]
        assert [f.name for f in engine.tree.get_child_folders(chain["A"].id)] == ["B"]

    def test_stats(self, engine, chain):
        stats = engine.tree.get_folder_stats()
        assert (stats.total, stats.root_folders, stats.sub_folders) == (4, 2, 2)
