"""Unit tests for flowfolders.folders.permissions — resolution and grant lifecycle."""

import pytest

from flowfolders.engine.errors import (
    InvalidOperationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from flowfolders.engine.logging import get_file_logger
from flowfolders.folders.models import Folder, PermissionLevel
from flowfolders.folders.permissions import coerce_action, coerce_level


class TestCoercion:

    def test_levels(self):
        assert coerce_level("admin") is PermissionLevel.ADMIN
        assert coerce_level(PermissionLevel.VIEWER) is PermissionLevel.VIEWER
        with pytest.raises(ValidationError, match="Unknown permission level"):
            coerce_level("owner")

    def test_actions(self):
        assert coerce_action("execute").value == "execute"
        with pytest.raises(ValidationError, match="Unknown action"):
            coerce_action("delete")


class TestEffectivePermission:

    def test_no_grant(self, engine, chain):
        assert engine.resolver.get_effective_permission("alice", chain["C"].id) is None
        assert not engine.resolver.check_permission("alice", chain["C"].id, "view")

    def test_direct_grant(self, engine, chain):
        engine.permissions.grant_permission(chain["B"].id, "alice", "executor", granted_by="admin")
        assert engine.resolver.get_effective_permission("alice", chain["B"].id) is PermissionLevel.EXECUTOR

    def test_inherited_from_ancestor(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "editor", granted_by="admin")
        assert engine.resolver.get_effective_permission("alice", chain["C"].id) is PermissionLevel.EDITOR

    def test_weaker_direct_grant_does_not_mask_ancestor(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "admin", granted_by="admin")
        engine.permissions.grant_permission(chain["C"].id, "alice", "viewer", granted_by="admin")
        assert engine.resolver.get_effective_permission("alice", chain["C"].id) is PermissionLevel.ADMIN

    def test_stronger_direct_grant_wins(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        engine.permissions.grant_permission(chain["C"].id, "alice", "editor", granted_by="admin")
        assert engine.resolver.get_effective_permission("alice", chain["C"].id) is PermissionLevel.EDITOR
        assert engine.resolver.get_effective_permission("alice", chain["B"].id) is PermissionLevel.VIEWER

    def test_farther_ancestor_can_win(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "editor", granted_by="admin")
        engine.permissions.grant_permission(chain["B"].id, "alice", "viewer", granted_by="admin")
        assert engine.resolver.get_effective_permission("alice", chain["C"].id) is PermissionLevel.EDITOR

    def test_grants_do_not_flow_upward(self, engine, chain):
        engine.permissions.grant_permission(chain["C"].id, "alice", "admin", granted_by="admin")
        assert engine.resolver.get_effective_permission("alice", chain["A"].id) is None

    def test_other_user_unaffected(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "admin", granted_by="admin")
        assert engine.resolver.get_effective_permission("bob", chain["C"].id) is None

    def test_cycle_surfaces_as_invalid_operation(self, engine, stores):
        stores.folders.create(Folder(id="x", name="x", parent_id="y", created_by="u"))
        stores.folders.create(Folder(id="y", name="y", parent_id="x", created_by="u"))
        with pytest.raises(InvalidOperationError):
            engine.resolver.get_effective_permission("alice", "x")


class TestActionChecks:

    @pytest.mark.parametrize("level,allowed", [
        ("viewer", {"view"}),
        ("executor", {"view", "execute"}),
        ("editor", {"view", "execute", "edit"}),
        ("admin", {"view", "execute", "edit", "manage"}),
    ])
    def test_action_matrix(self, engine, chain, level, allowed):
        engine.permissions.grant_permission(chain["A"].id, "alice", level, granted_by="admin")
        for action in ("view", "execute", "edit", "manage"):
            assert engine.resolver.check_permission("alice", chain["B"].id, action) == (action in allowed)

    def test_has_minimum_permission(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "executor", granted_by="admin")
        assert engine.resolver.has_minimum_permission("alice", chain["C"].id, "viewer")
        assert engine.resolver.has_minimum_permission("alice", chain["C"].id, "executor")
        assert not engine.resolver.has_minimum_permission("alice", chain["C"].id, "editor")
        assert not engine.resolver.has_minimum_permission("bob", chain["C"].id, "viewer")

    def test_require_permission_returns_level(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "editor", granted_by="admin")
        assert engine.resolver.require_permission("alice", chain["B"].id, "edit") is PermissionLevel.EDITOR

    def test_require_permission_denied(self, engine, chain, audit_dir):
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        with pytest.raises(PermissionDeniedError) as info:
            engine.resolver.require_permission("alice", chain["B"].id, "edit")

        err = info.value
        assert err.required_level == "editor"
        assert err.effective_level == "viewer"
        assert err.status_code == 403

        rows = get_file_logger().query("folders", "security", filters={"event": "access_denied"})
        assert rows[-1]["user_id"] == "alice"
        assert rows[-1]["folder_id"] == chain["B"].id


class TestGrantLifecycle:

    def test_grant_is_upsert(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        grant = engine.permissions.grant_permission(chain["A"].id, "alice", "editor", granted_by="root")
        assert grant.level is PermissionLevel.EDITOR
        assert grant.granted_by == "root"
        rows = engine.permissions.get_folder_permissions(chain["A"].id)
        assert len(rows) == 1

    def test_grant_same_level_twice(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        assert engine.permissions.get_permission_stats(chain["A"].id).total == 1

    def test_grant_missing_folder(self, engine):
        with pytest.raises(NotFoundError):
            engine.permissions.grant_permission("nope", "alice", "viewer", granted_by="admin")

    def test_grant_unknown_level(self, engine, chain):
        with pytest.raises(ValidationError):
            engine.permissions.grant_permission(chain["A"].id, "alice", "owner", granted_by="admin")

    def test_grant_to_self_rejected(self, engine, chain):
        with pytest.raises(InvalidOperationError, match="your own"):
            engine.permissions.grant_permission(chain["A"].id, "alice", "admin", granted_by="alice")

    def test_update(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        engine.permissions.update_permission(chain["A"].id, "alice", "admin", updated_by="admin")
        assert engine.stores.permissions.find(chain["A"].id, "alice").level is PermissionLevel.ADMIN

    def test_update_missing(self, engine, chain):
        with pytest.raises(NotFoundError):
            engine.permissions.update_permission(chain["A"].id, "alice", "admin", updated_by="admin")

    def test_update_self_rejected_without_grant(self, engine, chain):
        with pytest.raises(InvalidOperationError):
            engine.permissions.update_permission(chain["A"].id, "alice", "admin", updated_by="alice")

    def test_revoke(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        engine.permissions.revoke_permission(chain["A"].id, "alice", revoked_by="admin")
        assert engine.stores.permissions.find(chain["A"].id, "alice") is None

    def test_revoke_missing(self, engine, chain):
        with pytest.raises(NotFoundError):
            engine.permissions.revoke_permission(chain["A"].id, "alice", revoked_by="admin")

    def test_revoke_self_rejected(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "admin", granted_by="admin")
        with pytest.raises(InvalidOperationError):
            engine.permissions.revoke_permission(chain["A"].id, "alice", revoked_by="alice")
        assert engine.stores.permissions.find(chain["A"].id, "alice") is not None

    def test_audit_trail(self, engine, chain, audit_dir):
        engine.permissions.grant_permission(chain["A"].id, "alice", "viewer", granted_by="admin")
        engine.permissions.revoke_permission(chain["A"].id, "alice", revoked_by="admin")
        events = [r["event"] for r in get_file_logger().query("permissions", "security")]
        assert events == ["permission_granted", "permission_revoked"]


class TestListing:

    def test_folder_permissions_include_user_info(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "editor", granted_by="admin")
        engine.permissions.grant_permission(chain["A"].id, "carol", "viewer", granted_by="admin")
        rows = {r.user_id: r for r in engine.permissions.get_folder_permissions(chain["A"].id)}
        assert rows["alice"].user_name == "Alice"
        assert rows["alice"].user_email == "alice@example.com"
        assert rows["carol"].user_name is None

    def test_folder_permissions_missing_folder(self, engine):
        with pytest.raises(NotFoundError):
            engine.permissions.get_folder_permissions("nope")

    def test_stats(self, engine, chain):
        engine.permissions.grant_permission(chain["A"].id, "alice", "editor", granted_by="admin")
        engine.permissions.grant_permission(chain["A"].id, "bob", "editor", granted_by="admin")
        engine.permissions.grant_permission(chain["A"].id, "carol", "viewer", granted_by="admin")
        stats = engine.permissions.get_permission_stats(chain["A"].id)
        assert stats.total == 3
        assert stats.by_level[PermissionLevel.EDITOR] == 2
        assert stats.by_level[PermissionLevel.VIEWER] == 1
        assert stats.by_level[PermissionLevel.ADMIN] == 0
