"""
In-process store implementations backed by dictionaries.

Used by the test suite and by embedders that keep the folder tree in memory.
``InMemoryStores.transaction()`` snapshots all three stores on entry and
restores the snapshot if the block raises. Every store call takes the
bundle lock, and a transaction holds it until it ends, so other threads
wait for the outcome instead of writing into a snapshot about to be restored.
"""

from __future__ import annotations

import copy
import functools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from flowfolders.folders.models import (
    Folder,
    GrantWithUser,
    PermissionGrant,
    PermissionLevel,
    WorkflowBinding,
    utcnow,
)
from flowfolders.folders.stores import (
    FolderStore,
    PermissionStore,
    StoreBundle,
    WorkflowBindingStore,
)

logger = logging.getLogger("flowfolders.folders.memory_store")

_PATCHABLE_FIELDS = ("name", "description", "parent_id")


def _locked(method):
    """Run a store method under the store's lock (shared with the bundle's transactions)."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class InMemoryFolderStore(FolderStore):

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._folders: Dict[str, Folder] = {}

    @_locked
    def get(self, folder_id: str) -> Optional[Folder]:
        folder = self._folders.get(folder_id)
        return folder.model_copy() if folder else None

    @_locked
    def find_by_parent(self, parent_id: Optional[str]) -> List[Folder]:
        children = [f for f in self._folders.values() if f.parent_id == parent_id]
        return [f.model_copy() for f in sorted(children, key=lambda f: f.name)]

    @_locked
    def find_all(self) -> List[Folder]:
        return [f.model_copy() for f in sorted(self._folders.values(), key=lambda f: f.name)]

    @_locked
    def exists(self, folder_id: str) -> bool:
        return folder_id in self._folders

    @_locked
    def create(self, folder: Folder) -> Folder:
        self._folders[folder.id] = folder.model_copy()
        return folder.model_copy()

    @_locked
    def update(self, folder_id: str, patch: Mapping[str, Any]) -> Optional[Folder]:
        folder = self._folders.get(folder_id)
        if folder is None:
            return None
        changes = {k: v for k, v in patch.items() if k in _PATCHABLE_FIELDS}
        changes["updated_at"] = utcnow()
        updated = folder.model_copy(update=changes)
        self._folders[folder_id] = updated
        return updated.model_copy()

    @_locked
    def delete(self, folder_id: str) -> bool:
        return self._folders.pop(folder_id, None) is not None


class InMemoryPermissionStore(PermissionStore):

    def __init__(
        self,
        users: Optional[Dict[str, Tuple[str, str]]] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self._lock = lock or threading.RLock()
        self._grants: Dict[Tuple[str, str], PermissionGrant] = {}
        # user_id → (name, email), for find_by_folder_with_user_info
        self._users: Dict[str, Tuple[str, str]] = users if users is not None else {}

    @_locked
    def find(self, folder_id: str, user_id: str) -> Optional[PermissionGrant]:
        grant = self._grants.get((folder_id, user_id))
        return grant.model_copy() if grant else None

    @_locked
    def find_for_folders(
        self, folder_ids: Iterable[str], user_id: str
    ) -> Dict[str, PermissionLevel]:
        result: Dict[str, PermissionLevel] = {}
        for folder_id in folder_ids:
            grant = self._grants.get((folder_id, user_id))
            if grant is not None:
                result[folder_id] = grant.level
        return result

    @_locked
    def find_by_user(self, user_id: str) -> List[PermissionGrant]:
        grants = [g for (_, uid), g in self._grants.items() if uid == user_id]
        return [g.model_copy() for g in sorted(grants, key=lambda g: g.granted_at, reverse=True)]

    @_locked
    def find_by_folder_with_user_info(self, folder_id: str) -> List[GrantWithUser]:
        rows = []
        for (fid, uid), grant in self._grants.items():
            if fid != folder_id:
                continue
            name, email = self._users.get(uid, (None, None))
            rows.append(GrantWithUser(**grant.model_dump(), user_name=name, user_email=email))
        return sorted(rows, key=lambda g: g.granted_at, reverse=True)

    @_locked
    def upsert(
        self, folder_id: str, user_id: str, level: PermissionLevel, granted_by: str
    ) -> PermissionGrant:
        now = utcnow()
        existing = self._grants.get((folder_id, user_id))
        if existing is not None:
            grant = existing.model_copy(
                update={"level": level, "granted_by": granted_by, "updated_at": now}
            )
        else:
            grant = PermissionGrant(
                folder_id=folder_id,
                user_id=user_id,
                level=level,
                granted_by=granted_by,
                granted_at=now,
                updated_at=now,
            )
        self._grants[(folder_id, user_id)] = grant
        return grant.model_copy()

    @_locked
    def update(self, folder_id: str, user_id: str, level: PermissionLevel) -> bool:
        existing = self._grants.get((folder_id, user_id))
        if existing is None:
            return False
        self._grants[(folder_id, user_id)] = existing.model_copy(
            update={"level": level, "updated_at": utcnow()}
        )
        return True

    @_locked
    def revoke(self, folder_id: str, user_id: str) -> bool:
        return self._grants.pop((folder_id, user_id), None) is not None

    @_locked
    def revoke_all_for_folder(self, folder_id: str) -> int:
        keys = [key for key in self._grants if key[0] == folder_id]
        for key in keys:
            del self._grants[key]
        return len(keys)


class InMemoryWorkflowBindingStore(WorkflowBindingStore):

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._bindings: Dict[str, WorkflowBinding] = {}

    @_locked
    def find_by_workflow(self, workflow_id: str) -> Optional[WorkflowBinding]:
        binding = self._bindings.get(workflow_id)
        return binding.model_copy() if binding else None

    @_locked
    def find_by_folder(self, folder_id: str) -> List[WorkflowBinding]:
        return self.find_by_folders([folder_id])

    @_locked
    def find_by_folders(self, folder_ids: Iterable[str]) -> List[WorkflowBinding]:
        wanted = set(folder_ids)
        rows = [b for b in self._bindings.values() if b.folder_id in wanted]
        return [b.model_copy() for b in sorted(rows, key=lambda b: b.assigned_at, reverse=True)]

    @_locked
    def find_all(self) -> List[WorkflowBinding]:
        return [b.model_copy() for b in self._bindings.values()]

    @_locked
    def assign(self, workflow_id: str, folder_id: str, assigned_by: str) -> WorkflowBinding:
        binding = WorkflowBinding(
            workflow_id=workflow_id,
            folder_id=folder_id,
            assigned_by=assigned_by,
            assigned_at=utcnow(),
        )
        self._bindings[workflow_id] = binding
        return binding.model_copy()

    @_locked
    def assign_many(
        self, workflow_ids: Iterable[str], folder_id: str, assigned_by: str
    ) -> List[WorkflowBinding]:
        return [self.assign(wid, folder_id, assigned_by) for wid in dict.fromkeys(workflow_ids)]

    @_locked
    def unassign(self, workflow_id: str) -> bool:
        return self._bindings.pop(workflow_id, None) is not None

    @_locked
    def unassign_all_for_folder(self, folder_id: str) -> int:
        doomed = [wid for wid, b in self._bindings.items() if b.folder_id == folder_id]
        for wid in doomed:
            del self._bindings[wid]
        return len(doomed)

    @_locked
    def count_by_folder(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for binding in self._bindings.values():
            counts[binding.folder_id] = counts.get(binding.folder_id, 0) + 1
        return counts


class InMemoryStores(StoreBundle):
    """
    All three in-memory stores with snapshot/restore transactions.

    Usage:
        stores = InMemoryStores()
        stores.register_user("u1", "Ada", "ada@example.com")
        engine = FolderEngine(stores)
    """

    def __init__(self):
        # Shared by every store call and by transaction()
        self._lock = threading.RLock()
        self._users: Dict[str, Tuple[str, str]] = {}
        self.folders = InMemoryFolderStore(lock=self._lock)
        self.permissions = InMemoryPermissionStore(users=self._users, lock=self._lock)
        self.bindings = InMemoryWorkflowBindingStore(lock=self._lock)
        self._depth = 0

    @_locked
    def register_user(self, user_id: str, name: str, email: str) -> None:
        self._users[user_id] = (name, email)

    def _snapshot(self) -> Tuple[Dict, Dict, Dict]:
        return (
            copy.copy(self.folders._folders),
            copy.copy(self.permissions._grants),
            copy.copy(self.bindings._bindings),
        )

    def _restore(self, snapshot: Tuple[Dict, Dict, Dict]) -> None:
        self.folders._folders, self.permissions._grants, self.bindings._bindings = snapshot

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = self._snapshot()
            self._depth = 1
            try:
                yield
            except Exception:
                self._restore(snapshot)
                logger.debug("In-memory transaction rolled back")
                raise
            finally:
                self._depth = 0
