"""
flowfolders Folder Tree — Folder CRUD, traversal, and tree assembly.

Implements:
- FolderTreeService: create / update (rename, move) / delete (leaf or cascade)
- Ancestor and descendant walks with visited-set and depth guards
- build_tree(): nested display tree with direct workflow counts,
  siblings ordered by accent- and case-insensitive name collation

Tree invariants held by every mutation:
- parent_id, when set, references an existing folder
- the parent relation is a forest (a move never lands inside its own subtree)
- names are unique among siblings (roots count as siblings of each other)
"""

from __future__ import annotations

import logging
import unicodedata
import uuid
from collections import deque
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from flowfolders.engine.errors import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from flowfolders.engine.logging import emit, log_folder_event
from flowfolders.folders.models import (
    Folder,
    FolderCreate,
    FolderStats,
    FolderTreeNode,
    FolderUpdate,
)
from flowfolders.folders.stores import StoreBundle

logger = logging.getLogger("flowfolders.folders.tree")

DEFAULT_MAX_DEPTH = 256


def name_sort_key(name: str) -> Tuple[str, str, str]:
    """
    Collation key: accent-insensitive and case-insensitive first, then
    case-folded with accents, then the raw name as a stable tiebreak.
    """
    folded = name.casefold()
    decomposed = unicodedata.normalize("NFKD", folded)
    primary = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return primary, folded, name


class FolderTreeService:
    """
    Folder tree operations against an injected StoreBundle.

    Usage:
        tree = FolderTreeService(stores)
        projects = tree.create_folder("Projects", created_by="u1")
        tree.create_folder("Q3", created_by="u1", parent_id=projects.id)
        tree.delete_folder(projects.id, cascade=True)
    """

    def __init__(self, stores: StoreBundle, max_depth: int = DEFAULT_MAX_DEPTH):
        self._stores = stores
        self._max_depth = max_depth

    @property
    def stores(self) -> StoreBundle:
        return self._stores

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_folder(self, folder_id: str) -> Folder:
        folder = self._stores.folders.get(folder_id)
        if folder is None:
            raise NotFoundError(
                f"Folder not found: {folder_id}",
                resource="folder",
                resource_id=folder_id,
                folder_id=folder_id,
                operation="get_folder",
            )
        return folder

    def list_folders(self) -> List[Folder]:
        return self._stores.folders.find_all()

    def get_child_folders(self, parent_id: Optional[str]) -> List[Folder]:
        """Direct children of ``parent_id``; None lists the root folders."""
        return self._stores.folders.find_by_parent(parent_id)

    def folder_exists(self, folder_id: str) -> bool:
        return self._stores.folders.exists(folder_id)

    def get_folder_stats(self) -> FolderStats:
        folders = self._stores.folders.find_all()
        roots = sum(1 for f in folders if f.parent_id is None)
        return FolderStats(total=len(folders), root_folders=roots, sub_folders=len(folders) - roots)

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def create_folder(
        self,
        name: str,
        created_by: str,
        description: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> Folder:
        """
        Create a folder under ``parent_id`` (or at the root).

        Raises:
            ValidationError: empty / over-long name or over-long description.
            NotFoundError: parent_id given but absent.
            ConflictError: a sibling already has this name.
        """
        try:
            data = FolderCreate(name=name, description=description, parent_id=parent_id)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, operation="create_folder") from e

        with self._stores.transaction():
            if data.parent_id is not None and not self._stores.folders.exists(data.parent_id):
                raise NotFoundError(
                    f"Parent folder not found: {data.parent_id}",
                    resource="folder",
                    resource_id=data.parent_id,
                    folder_id=data.parent_id,
                    operation="create_folder",
                )
            self._ensure_unique_name(data.name, data.parent_id, operation="create_folder")

            folder = self._stores.folders.create(
                Folder(
                    id=uuid.uuid4().hex,
                    name=data.name,
                    description=data.description,
                    parent_id=data.parent_id,
                    created_by=created_by,
                )
            )

        logger.info(f"Folder created: {folder.id} '{folder.name}' (parent={folder.parent_id})")
        emit(log_folder_event(
            "folder_created", folder.id, user_id=created_by,
            name=folder.name, parent_id=folder.parent_id,
        ))
        return folder

    def update_folder(
        self,
        folder_id: str,
        changes: Union[FolderUpdate, Mapping[str, Any]],
        updated_by: Optional[str] = None,
    ) -> Folder:
        """
        Rename, re-describe, and/or move a folder.

        Only fields present in ``changes`` are applied; an explicit
        ``parent_id=None`` moves the folder to the root. The checks and the
        write run in one store transaction.

        Raises:
            NotFoundError: folder or new parent absent.
            InvalidOperationError: self-parent, or new parent inside the subtree.
            ConflictError: the target parent already has a child with the name.
            ValidationError: bad field values.
        """
        update = self._coerce_update(changes)
        fields = update.model_fields_set

        with self._stores.transaction():
            folder = self._require_folder(folder_id, "update_folder")
            patch: Dict[str, Any] = {}

            if "name" in fields:
                if update.name is None:
                    raise ValidationError(
                        "Folder name cannot be null",
                        validation_errors=[{"field": "name", "error": "must not be null"}],
                        folder_id=folder_id,
                        operation="update_folder",
                    )
                patch["name"] = update.name
            if "description" in fields:
                patch["description"] = update.description

            target_parent = folder.parent_id
            if update.changes_parent():
                self._check_move(folder_id, update.parent_id)
                patch["parent_id"] = update.parent_id
                target_parent = update.parent_id

            target_name = patch.get("name", folder.name)
            if target_name != folder.name or target_parent != folder.parent_id:
                self._ensure_unique_name(
                    target_name, target_parent, exclude_id=folder_id, operation="update_folder"
                )

            updated = self._stores.folders.update(folder_id, patch)
            if updated is None:
                raise NotFoundError(
                    f"Folder not found: {folder_id}",
                    resource="folder",
                    resource_id=folder_id,
                    folder_id=folder_id,
                    operation="update_folder",
                )

        moved = "parent_id" in patch and patch["parent_id"] != folder.parent_id
        logger.info(f"Folder updated: {folder_id} fields={sorted(patch)}")
        emit(log_folder_event(
            "folder_moved" if moved else "folder_updated", folder_id,
            user_id=updated_by, name=updated.name, parent_id=updated.parent_id,
            fields_changed=sorted(patch),
        ))
        return updated

    def delete_folder(
        self,
        folder_id: str,
        cascade: bool = False,
        deleted_by: Optional[str] = None,
    ) -> List[str]:
        """
        Delete a folder, and with ``cascade`` its whole subtree.

        For every deleted folder the grants are revoked and the workflow
        bindings unassigned before the record goes. Deepest folders go first.
        Everything runs in one store transaction.

        Returns:
            Deleted folder ids in deletion order.

        Raises:
            NotFoundError: folder absent.
            ConflictError: folder has children and ``cascade`` is False.
        """
        with self._stores.transaction():
            self._require_folder(folder_id, "delete_folder")

            if cascade:
                doomed = list(reversed(self._walk_descendants(folder_id)))
            else:
                children = self._stores.folders.find_by_parent(folder_id)
                if children:
                    raise ConflictError(
                        f"Cannot delete folder with {len(children)} child folder(s); "
                        "use cascade=True to delete the subtree",
                        folder_id=folder_id,
                        operation="delete_folder",
                        child_count=len(children),
                    )
                doomed = []
            doomed.append(folder_id)

            for fid in doomed:
                self._delete_folder_data(fid)

        logger.info(f"Folder deleted: {folder_id} (cascade={cascade}, total={len(doomed)})")
        emit(log_folder_event(
            "folder_deleted", folder_id, user_id=deleted_by,
            cascade=cascade, deleted_ids=doomed,
        ))
        return doomed

    def _delete_folder_data(self, folder_id: str) -> None:
        revoked = self._stores.permissions.revoke_all_for_folder(folder_id)
        unassigned = self._stores.bindings.unassign_all_for_folder(folder_id)
        self._stores.folders.delete(folder_id)
        logger.debug(
            f"Removed folder {folder_id}: {revoked} grant(s), {unassigned} binding(s)"
        )

    # -----------------------------------------------------------------------
    # Traversal
    # -----------------------------------------------------------------------

    def get_ancestor_ids(
        self,
        folder_id: str,
        parent_of: Optional[Mapping[str, Optional[str]]] = None,
    ) -> List[str]:
        """
        Parent chain of ``folder_id``, nearest parent first, root last.

        A dangling parent reference ends the walk (the dangling id is still
        reported). Raises InvalidOperationError if the chain loops back on
        itself or exceeds ``max_depth``.

        ``parent_of`` (folder id → parent id) walks a preloaded snapshot
        instead of querying the folder store once per level.
        """
        ancestors: List[str] = []
        visited: Set[str] = {folder_id}
        current_id = folder_id

        while True:
            if parent_of is not None:
                parent_id = parent_of.get(current_id)
            else:
                folder = self._stores.folders.get(current_id)
                parent_id = folder.parent_id if folder is not None else None
            if parent_id is None:
                break
            if parent_id in visited:
                logger.error(f"Cycle in folder ancestry: {folder_id} reaches {parent_id} twice")
                raise InvalidOperationError(
                    f"Cycle detected in ancestors of folder {folder_id} at {parent_id}",
                    folder_id=folder_id,
                    operation="get_ancestor_ids",
                    cycle_at=parent_id,
                )
            if len(ancestors) >= self._max_depth:
                raise InvalidOperationError(
                    f"Ancestor chain of folder {folder_id} exceeds max depth {self._max_depth}",
                    folder_id=folder_id,
                    operation="get_ancestor_ids",
                    max_depth=self._max_depth,
                )
            visited.add(parent_id)
            ancestors.append(parent_id)
            current_id = parent_id

        return ancestors

    def get_descendant_ids(self, folder_id: str) -> Set[str]:
        """Every folder below ``folder_id`` (excluding itself)."""
        return set(self._walk_descendants(folder_id))

    def _walk_descendants(self, folder_id: str) -> List[str]:
        """Breadth-first descendant ids, shallowest first."""
        order: List[str] = []
        seen: Set[str] = {folder_id}
        queue = deque([folder_id])

        while queue:
            current_id = queue.popleft()
            for child in self._stores.folders.find_by_parent(current_id):
                if child.id in seen:
                    logger.error(f"Cycle in folder subtree of {folder_id}: {child.id} reached twice")
                    raise InvalidOperationError(
                        f"Cycle detected below folder {folder_id} at {child.id}",
                        folder_id=folder_id,
                        operation="get_descendant_ids",
                        cycle_at=child.id,
                    )
                seen.add(child.id)
                order.append(child.id)
                queue.append(child.id)

        return order

    # -----------------------------------------------------------------------
    # Tree assembly
    # -----------------------------------------------------------------------

    def build_tree(
        self,
        folders: Iterable[Folder],
        workflow_counts: Optional[Mapping[str, int]] = None,
    ) -> List[FolderTreeNode]:
        """
        Nest ``folders`` under their parents.

        Folders whose parent is absent from ``folders`` become roots. Each
        node's ``workflow_count`` is its own direct count, not a subtree sum.
        """
        counts = workflow_counts or {}
        folder_list = list(folders)
        nodes: Dict[str, FolderTreeNode] = {
            f.id: FolderTreeNode.from_folder(f, counts.get(f.id, 0)) for f in folder_list
        }

        roots: List[FolderTreeNode] = []
        for folder in folder_list:
            node = nodes[folder.id]
            parent = nodes.get(folder.parent_id) if folder.parent_id else None
            if parent is not None and parent is not node:
                parent.children.append(node)
            else:
                roots.append(node)

        def sort_level(level: List[FolderTreeNode], depth: int) -> None:
            if depth > self._max_depth:
                raise InvalidOperationError(
                    f"Folder tree exceeds max depth {self._max_depth}",
                    operation="build_tree",
                )
            level.sort(key=lambda n: name_sort_key(n.name))
            for node in level:
                sort_level(node.children, depth + 1)

        sort_level(roots, 0)
        return roots

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _require_folder(self, folder_id: str, operation: str) -> Folder:
        folder = self._stores.folders.get(folder_id)
        if folder is None:
            raise NotFoundError(
                f"Folder not found: {folder_id}",
                resource="folder",
                resource_id=folder_id,
                folder_id=folder_id,
                operation=operation,
            )
        return folder

    def _check_move(self, folder_id: str, new_parent_id: Optional[str]) -> None:
        if new_parent_id is None:
            return
        if new_parent_id == folder_id:
            raise InvalidOperationError(
                "Folder cannot be its own parent",
                folder_id=folder_id,
                operation="update_folder",
            )
        if not self._stores.folders.exists(new_parent_id):
            raise NotFoundError(
                f"Parent folder not found: {new_parent_id}",
                resource="folder",
                resource_id=new_parent_id,
                folder_id=folder_id,
                operation="update_folder",
            )
        if new_parent_id in self.get_descendant_ids(folder_id):
            raise InvalidOperationError(
                f"Cannot move folder {folder_id} into its own descendant {new_parent_id}",
                folder_id=folder_id,
                operation="update_folder",
                new_parent_id=new_parent_id,
            )

    def _ensure_unique_name(
        self,
        name: str,
        parent_id: Optional[str],
        exclude_id: Optional[str] = None,
        operation: str = "create_folder",
    ) -> None:
        for sibling in self._stores.folders.find_by_parent(parent_id):
            if sibling.name == name and sibling.id != exclude_id:
                where = f"folder {parent_id}" if parent_id else "the root level"
                raise ConflictError(
                    f"A folder named '{name}' already exists in {where}",
                    folder_id=exclude_id or parent_id,
                    operation=operation,
                    name=name,
                    parent_id=parent_id,
                )

    @staticmethod
    def _coerce_update(changes: Union[FolderUpdate, Mapping[str, Any]]) -> FolderUpdate:
        if isinstance(changes, FolderUpdate):
            return changes
        try:
            return FolderUpdate(**dict(changes))
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, operation="update_folder") from e
