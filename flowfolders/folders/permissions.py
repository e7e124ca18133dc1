"""
flowfolders Permissions — Effective permission resolution and grant management.

Implements:
- PermissionResolver: effective level = max(direct grant, every ancestor grant)
- Action checks (view → viewer, execute → executor, edit → editor, manage → admin)
- PermissionService: grant / update / revoke with the self-action rule,
  per-folder grant listing and stats

Resolution rule: the strongest grant anywhere on the path from the folder up
to its root wins. A weaker direct grant never masks a stronger ancestor grant,
and the nearest ancestor has no priority over a farther one.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Union

from flowfolders.engine.errors import (
    InvalidOperationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from flowfolders.engine.logging import emit, log_access_denied, log_permission_event
from flowfolders.folders.models import (
    ACTION_MIN_LEVEL,
    GrantWithUser,
    PermissionAction,
    PermissionGrant,
    PermissionLevel,
    PermissionStats,
    can_perform,
    higher_level,
    max_level,
)
from flowfolders.folders.stores import StoreBundle
from flowfolders.folders.tree import FolderTreeService

logger = logging.getLogger("flowfolders.folders.permissions")

LevelLike = Union[PermissionLevel, str]
ActionLike = Union[PermissionAction, str]


def coerce_level(level: LevelLike) -> PermissionLevel:
    """Parse a level name; ValidationError for anything outside the four levels."""
    try:
        return PermissionLevel(level)
    except ValueError:
        allowed = ", ".join(l.value for l in PermissionLevel)
        raise ValidationError(
            f"Unknown permission level '{level}' (expected one of: {allowed})",
            validation_errors=[{"field": "level", "error": f"unknown level '{level}'"}],
        ) from None


def coerce_action(action: ActionLike) -> PermissionAction:
    try:
        return PermissionAction(action)
    except ValueError:
        allowed = ", ".join(a.value for a in PermissionAction)
        raise ValidationError(
            f"Unknown action '{action}' (expected one of: {allowed})",
            validation_errors=[{"field": "action", "error": f"unknown action '{action}'"}],
        ) from None


class PermissionResolver:
    """
    Read-only permission checks.

    Usage:
        resolver = PermissionResolver(stores, tree)
        if resolver.check_permission("u1", folder_id, "edit"):
            ...
        resolver.require_permission("u1", folder_id, "manage")  # raises 403
    """

    def __init__(self, stores: StoreBundle, tree: FolderTreeService):
        self._stores = stores
        self._tree = tree

    def get_effective_permission(
        self, user_id: str, folder_id: str
    ) -> Optional[PermissionLevel]:
        """Highest of the direct grant and all ancestor grants; None if there are none."""
        direct = self._stores.permissions.find(folder_id, user_id)
        ancestor_ids = self._tree.get_ancestor_ids(folder_id)
        inherited = None
        if ancestor_ids:
            inherited = max_level(
                self._stores.permissions.find_for_folders(ancestor_ids, user_id).values()
            )
        return higher_level(direct.level if direct else None, inherited)

    def check_permission(self, user_id: str, folder_id: str, action: ActionLike) -> bool:
        action = coerce_action(action)
        return can_perform(self.get_effective_permission(user_id, folder_id), action)

    def has_minimum_permission(
        self, user_id: str, folder_id: str, min_level: LevelLike
    ) -> bool:
        min_level = coerce_level(min_level)
        effective = self.get_effective_permission(user_id, folder_id)
        return effective is not None and effective.rank >= min_level.rank

    def require_permission(
        self, user_id: str, folder_id: str, action: ActionLike
    ) -> PermissionLevel:
        """
        Return the effective level if it allows ``action``.

        Raises:
            PermissionDeniedError: level missing or too low (logged to the
                security trail before raising).
        """
        action = coerce_action(action)
        effective = self.get_effective_permission(user_id, folder_id)
        if can_perform(effective, action):
            return effective

        required = ACTION_MIN_LEVEL[action]
        logger.warning(
            f"Access denied: user={user_id} folder={folder_id} action={action} "
            f"effective={effective} required={required}"
        )
        emit(log_access_denied(
            "folders", user_id, action.value,
            folder_id=folder_id,
            effective_level=effective.value if effective else None,
        ))
        raise PermissionDeniedError(
            f"User {user_id} needs '{required}' on folder {folder_id} to {action}",
            user_id=user_id,
            folder_id=folder_id,
            action=action.value,
            required_level=required.value,
            effective_level=effective.value if effective else None,
            operation="require_permission",
        )


class PermissionService:
    """
    Grant lifecycle. Callers authorize the actor (admin on the folder, or a
    superuser role) before calling; this service enforces the invariants that
    hold regardless of who the actor is.
    """

    def __init__(self, stores: StoreBundle):
        self._stores = stores

    def grant_permission(
        self, folder_id: str, user_id: str, level: LevelLike, granted_by: str
    ) -> PermissionGrant:
        """
        Create or overwrite the grant for (folder, user).

        Raises:
            ValidationError: unknown level.
            InvalidOperationError: granting to yourself.
            NotFoundError: folder absent.
        """
        level = coerce_level(level)
        self._reject_self_action(user_id, granted_by, folder_id, "grant_permission")
        if not self._stores.folders.exists(folder_id):
            raise NotFoundError(
                f"Folder not found: {folder_id}",
                resource="folder",
                resource_id=folder_id,
                folder_id=folder_id,
                operation="grant_permission",
            )

        grant = self._stores.permissions.upsert(folder_id, user_id, level, granted_by)
        logger.info(f"Permission granted: folder={folder_id} user={user_id} level={level} by={granted_by}")
        emit(log_permission_event("permission_granted", folder_id, user_id, granted_by, level.value))
        return grant

    def update_permission(
        self, folder_id: str, user_id: str, level: LevelLike, updated_by: str
    ) -> None:
        level = coerce_level(level)
        self._reject_self_action(user_id, updated_by, folder_id, "update_permission")
        if not self._stores.permissions.update(folder_id, user_id, level):
            raise NotFoundError(
                f"Permission not found for user {user_id} on folder {folder_id}",
                resource="permission",
                resource_id=f"{folder_id}:{user_id}",
                folder_id=folder_id,
                user_id=user_id,
                operation="update_permission",
            )
        logger.info(f"Permission updated: folder={folder_id} user={user_id} level={level} by={updated_by}")
        emit(log_permission_event("permission_updated", folder_id, user_id, updated_by, level.value))

    def revoke_permission(self, folder_id: str, user_id: str, revoked_by: str) -> None:
        self._reject_self_action(user_id, revoked_by, folder_id, "revoke_permission")
        if not self._stores.permissions.revoke(folder_id, user_id):
            raise NotFoundError(
                f"Permission not found for user {user_id} on folder {folder_id}",
                resource="permission",
                resource_id=f"{folder_id}:{user_id}",
                folder_id=folder_id,
                user_id=user_id,
                operation="revoke_permission",
            )
        logger.info(f"Permission revoked: folder={folder_id} user={user_id} by={revoked_by}")
        emit(log_permission_event("permission_revoked", folder_id, user_id, revoked_by))

    def get_folder_permissions(self, folder_id: str) -> List[GrantWithUser]:
        if not self._stores.folders.exists(folder_id):
            raise NotFoundError(
                f"Folder not found: {folder_id}",
                resource="folder",
                resource_id=folder_id,
                folder_id=folder_id,
                operation="get_folder_permissions",
            )
        return self._stores.permissions.find_by_folder_with_user_info(folder_id)

    def get_permission_stats(self, folder_id: str) -> PermissionStats:
        stats = PermissionStats()
        for grant in self._stores.permissions.find_by_folder_with_user_info(folder_id):
            stats.total += 1
            stats.by_level[grant.level] += 1
        return stats

    @staticmethod
    def _reject_self_action(user_id: str, actor_id: str, folder_id: str, operation: str) -> None:
        # Nobody may change their own grant, whatever their level
        if user_id == actor_id:
            verb = operation.split("_", 1)[0]
            raise InvalidOperationError(
                f"Cannot {verb} your own permission",
                user_id=user_id,
                folder_id=folder_id,
                operation=operation,
            )
