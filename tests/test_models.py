"""Unit tests for flowfolders.folders.models — levels, actions, shapes, workflow scope."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from flowfolders.folders.models import (
    ACTION_MIN_LEVEL,
    AllWorkflows,
    Folder,
    FolderCreate,
    FolderTreeNode,
    FolderUpdate,
    PermissionAction,
    PermissionLevel,
    PermissionStats,
    WorkflowSubset,
    can_perform,
    higher_level,
    max_level,
)


class TestPermissionLevel:

    def test_total_order(self):
        ranks = [level.rank for level in (
            PermissionLevel.VIEWER, PermissionLevel.EXECUTOR,
            PermissionLevel.EDITOR, PermissionLevel.ADMIN,
        )]
        assert ranks == [0, 1, 2, 3]

    def test_serializes_as_literal(self):
        assert PermissionLevel("editor") is PermissionLevel.EDITOR
        assert str(PermissionLevel.ADMIN) == "admin"

    def test_higher_level(self):
        assert higher_level(None, None) is None
        assert higher_level(PermissionLevel.VIEWER, None) is PermissionLevel.VIEWER
        assert higher_level(None, PermissionLevel.EDITOR) is PermissionLevel.EDITOR
        assert higher_level(PermissionLevel.ADMIN, PermissionLevel.EXECUTOR) is PermissionLevel.ADMIN

    def test_max_level(self):
        assert max_level([]) is None
        assert max_level([PermissionLevel.EXECUTOR, None, PermissionLevel.EDITOR]) is PermissionLevel.EDITOR


class TestActions:

    def test_action_minimums(self):
        assert ACTION_MIN_LEVEL[PermissionAction.VIEW] is PermissionLevel.VIEWER
        assert ACTION_MIN_LEVEL[PermissionAction.EXECUTE] is PermissionLevel.EXECUTOR
        assert ACTION_MIN_LEVEL[PermissionAction.EDIT] is PermissionLevel.EDITOR
        assert ACTION_MIN_LEVEL[PermissionAction.MANAGE] is PermissionLevel.ADMIN

    def test_can_perform(self):
        assert can_perform(PermissionLevel.EXECUTOR, PermissionAction.VIEW)
        assert can_perform(PermissionLevel.EXECUTOR, PermissionAction.EXECUTE)
        assert not can_perform(PermissionLevel.EXECUTOR, PermissionAction.EDIT)
        assert not can_perform(None, PermissionAction.VIEW)


class TestFolderShapes:

    def test_folder_root(self):
        folder = Folder(id="f1", name="Sales", created_by="u1")
        assert folder.is_root
        assert folder.created_at.tzinfo is not None

    def test_create_strips_and_validates(self):
        assert FolderCreate(name="  Ops ").name == "Ops"
        with pytest.raises(PydanticValidationError):
            FolderCreate(name="   ")
        with pytest.raises(PydanticValidationError):
            FolderCreate(name="x" * 101)
        with pytest.raises(PydanticValidationError):
            FolderCreate(name="ok", description="d" * 501)

    def test_update_tracks_explicit_parent(self):
        assert FolderUpdate(parent_id=None).changes_parent()
        assert not FolderUpdate(name="x").changes_parent()

    def test_tree_node_from_folder(self):
        folder = Folder(id="f1", name="Sales", created_by="u1")
        node = FolderTreeNode.from_folder(folder, workflow_count=3)
        assert node.workflow_count == 3
        assert node.children == []

    def test_permission_stats_defaults(self):
        stats = PermissionStats()
        assert stats.total == 0
        assert set(stats.by_level) == set(PermissionLevel)


class TestWorkflowScope:

    def test_all_includes_everything(self):
        scope = AllWorkflows()
        assert scope.kind == "all"
        assert scope.includes("anything")

    def test_subset(self):
        scope = WorkflowSubset(workflow_ids=frozenset({"w1"}))
        assert scope.kind == "subset"
        assert scope.includes("w1")
        assert not scope.includes("w2")

    def test_empty_subset_means_none(self):
        assert not WorkflowSubset().includes("w1")
