"""
flowfolders Access Scope — What a user can reach, and workflow ↔ folder bindings.

Implements:
- AccessScopeService: accessible folder set (direct grants plus everything
  below them), accessible workflow scope, workflow access checks, the
  per-user effective permissions report, and the user's visible folder tree
- WorkflowBindingService: assign / reassign / unassign workflows and the
  lookups the API layer uses to filter the automation engine's workflow list

Reachability flows downward only: a grant on a folder never opens its
ancestors. Admins see every workflow, including unassigned ones; for
everybody else an unassigned workflow is unreachable.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from flowfolders.engine.errors import NotFoundError, PermissionDeniedError
from flowfolders.engine.logging import emit, log_access_denied, log_binding_event
from flowfolders.folders.models import (
    ACTION_MIN_LEVEL,
    AllWorkflows,
    EffectivePermission,
    Folder,
    FolderTreeNode,
    PermissionLevel,
    WorkflowBinding,
    WorkflowScope,
    WorkflowSubset,
    can_perform,
)
from flowfolders.folders.permissions import ActionLike, PermissionResolver, coerce_action
from flowfolders.folders.stores import StoreBundle
from flowfolders.folders.tree import FolderTreeService

logger = logging.getLogger("flowfolders.folders.access")


class AccessScopeService:
    """
    Reachability queries for one user at a time.

    Usage:
        access = AccessScopeService(stores, tree, resolver)
        scope = access.get_accessible_workflow_ids("u1", is_admin=False)
        visible = [w for w in engine_workflows if scope.includes(w["id"])]
    """

    def __init__(
        self,
        stores: StoreBundle,
        tree: FolderTreeService,
        resolver: PermissionResolver,
    ):
        self._stores = stores
        self._tree = tree
        self._resolver = resolver

    # -----------------------------------------------------------------------
    # Folders
    # -----------------------------------------------------------------------

    def get_accessible_folder_ids(self, user_id: str) -> Set[str]:
        """Folders with a direct grant for ``user_id`` plus all their descendants."""
        accessible: Set[str] = set()
        for grant in self._stores.permissions.find_by_user(user_id):
            if grant.folder_id in accessible:
                # Already reached from a granted ancestor, subtree included
                continue
            accessible.add(grant.folder_id)
            accessible |= self._tree.get_descendant_ids(grant.folder_id)
        return accessible

    def get_folders_for_user(self, user_id: str, is_admin: bool = False) -> List[Folder]:
        folders = self._stores.folders.find_all()
        if is_admin:
            return folders
        accessible = self.get_accessible_folder_ids(user_id)
        return [f for f in folders if f.id in accessible]

    def get_folder_tree(self, user_id: str, is_admin: bool = False) -> List[FolderTreeNode]:
        """The user's visible folders nested for display, with direct workflow counts."""
        folders = self.get_folders_for_user(user_id, is_admin)
        counts = self._stores.bindings.count_by_folder()
        return self._tree.build_tree(folders, counts)

    # -----------------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------------

    def get_accessible_workflow_ids(self, user_id: str, is_admin: bool = False) -> WorkflowScope:
        if is_admin:
            return AllWorkflows()
        folder_ids = self.get_accessible_folder_ids(user_id)
        if not folder_ids:
            return WorkflowSubset()
        bindings = self._stores.bindings.find_by_folders(sorted(folder_ids))
        return WorkflowSubset(workflow_ids=frozenset(b.workflow_id for b in bindings))

    def check_workflow_access(
        self,
        user_id: str,
        workflow_id: str,
        action: ActionLike,
        is_admin: bool = False,
    ) -> bool:
        action = coerce_action(action)
        if is_admin:
            return True
        binding = self._stores.bindings.find_by_workflow(workflow_id)
        if binding is None:
            return False
        return self._resolver.check_permission(user_id, binding.folder_id, action)

    def require_workflow_access(
        self,
        user_id: str,
        workflow_id: str,
        action: ActionLike,
        is_admin: bool = False,
    ) -> None:
        """Raise PermissionDeniedError unless ``check_workflow_access`` would pass."""
        action = coerce_action(action)
        if is_admin:
            return

        binding = self._stores.bindings.find_by_workflow(workflow_id)
        folder_id = binding.folder_id if binding else None
        effective: Optional[PermissionLevel] = None
        if folder_id is not None:
            effective = self._resolver.get_effective_permission(user_id, folder_id)
            if can_perform(effective, action):
                return

        required = ACTION_MIN_LEVEL[action]
        reason = "workflow is not assigned to a folder" if folder_id is None else (
            f"needs '{required}' on folder {folder_id}"
        )
        logger.warning(
            f"Workflow access denied: user={user_id} workflow={workflow_id} action={action} ({reason})"
        )
        emit(log_access_denied(
            "workflows", user_id, action.value,
            folder_id=folder_id,
            workflow_id=workflow_id,
            effective_level=effective.value if effective else None,
        ))
        raise PermissionDeniedError(
            f"User {user_id} cannot {action} workflow {workflow_id}: {reason}",
            user_id=user_id,
            workflow_id=workflow_id,
            folder_id=folder_id,
            action=action.value,
            required_level=required.value,
            effective_level=effective.value if effective else None,
            operation="require_workflow_access",
        )

    def filter_workflow_ids(
        self,
        user_id: str,
        workflow_ids: Iterable[str],
        is_admin: bool = False,
    ) -> List[str]:
        """Keep the ids the user can reach, preserving input order."""
        scope = self.get_accessible_workflow_ids(user_id, is_admin)
        return [wid for wid in workflow_ids if scope.includes(wid)]

    # -----------------------------------------------------------------------
    # Report
    # -----------------------------------------------------------------------

    def get_user_permissions_report(self, user_id: str) -> List[EffectivePermission]:
        """
        Effective permission on every folder where the user has one.

        Uses the same max-wins rule as ``PermissionResolver``: the level is
        the strongest of the direct grant and every ancestor grant. A row is
        ``inherited`` only when an ancestor grant beats the direct one (or
        there is no direct grant); ``inherited_from`` is the nearest ancestor
        holding the winning level.
        """
        grants: Dict[str, PermissionLevel] = {
            g.folder_id: g.level for g in self._stores.permissions.find_by_user(user_id)
        }
        if not grants:
            return []

        folders = self._stores.folders.find_all()
        parent_of = {f.id: f.parent_id for f in folders}
        report: List[EffectivePermission] = []

        for folder in folders:
            best: Optional[PermissionLevel] = None
            best_from: Optional[str] = None
            for ancestor_id in self._tree.get_ancestor_ids(folder.id, parent_of=parent_of):
                level = grants.get(ancestor_id)
                if level is not None and (best is None or level.rank > best.rank):
                    best, best_from = level, ancestor_id

            direct = grants.get(folder.id)
            if direct is not None and (best is None or direct.rank >= best.rank):
                report.append(EffectivePermission(
                    folder_id=folder.id, folder_name=folder.name, user_id=user_id,
                    level=direct, inherited=False,
                ))
            elif best is not None:
                report.append(EffectivePermission(
                    folder_id=folder.id, folder_name=folder.name, user_id=user_id,
                    level=best, inherited=True, inherited_from=best_from,
                ))

        return report


class WorkflowBindingService:
    """Assigns workflows to folders. One folder per workflow; reassigning moves it."""

    def __init__(self, stores: StoreBundle):
        self._stores = stores

    def _require_folder(self, folder_id: str, operation: str) -> None:
        if not self._stores.folders.exists(folder_id):
            raise NotFoundError(
                f"Folder not found: {folder_id}",
                resource="folder",
                resource_id=folder_id,
                folder_id=folder_id,
                operation=operation,
            )

    def assign_workflow(
        self, workflow_id: str, folder_id: str, assigned_by: str
    ) -> WorkflowBinding:
        self._require_folder(folder_id, "assign_workflow")
        binding = self._stores.bindings.assign(workflow_id, folder_id, assigned_by)
        logger.info(f"Workflow assigned: {workflow_id} → folder {folder_id} by {assigned_by}")
        emit(log_binding_event("workflow_assigned", [workflow_id], folder_id, assigned_by))
        return binding

    def assign_workflows(
        self, workflow_ids: Iterable[str], folder_id: str, assigned_by: str
    ) -> List[WorkflowBinding]:
        ids = list(dict.fromkeys(workflow_ids))
        self._require_folder(folder_id, "assign_workflows")
        if not ids:
            return []
        with self._stores.transaction():
            bindings = self._stores.bindings.assign_many(ids, folder_id, assigned_by)
        logger.info(f"Workflows assigned: {len(ids)} → folder {folder_id} by {assigned_by}")
        emit(log_binding_event("workflows_assigned", ids, folder_id, assigned_by))
        return bindings

    def unassign_workflow(self, workflow_id: str, unassigned_by: Optional[str] = None) -> bool:
        """Remove the workflow's binding. False if it was not assigned."""
        removed = self._stores.bindings.unassign(workflow_id)
        if removed:
            logger.info(f"Workflow unassigned: {workflow_id}")
            emit(log_binding_event("workflow_unassigned", [workflow_id], actor_id=unassigned_by))
        return removed

    def get_workflows_in_folder(self, folder_id: str) -> List[str]:
        return [b.workflow_id for b in self._stores.bindings.find_by_folder(folder_id)]

    def get_folder_for_workflow(self, workflow_id: str) -> Optional[str]:
        binding = self._stores.bindings.find_by_workflow(workflow_id)
        return binding.folder_id if binding else None

    def get_workflow_to_folder_map(self) -> Dict[str, str]:
        return {b.workflow_id: b.folder_id for b in self._stores.bindings.find_all()}

    def get_workflow_count_by_folders(self) -> Dict[str, int]:
        return self._stores.bindings.count_by_folder()

    def filter_unassigned_workflows(self, workflow_ids: Iterable[str]) -> List[str]:
        """The ids from ``workflow_ids`` that have no folder, input order kept."""
        assigned = self.get_workflow_to_folder_map()
        return [wid for wid in workflow_ids if wid not in assigned]

    def is_workflow_assigned(self, workflow_id: str) -> bool:
        return self._stores.bindings.find_by_workflow(workflow_id) is not None
