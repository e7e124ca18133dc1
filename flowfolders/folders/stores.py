"""
Store interfaces consumed by the folder permission engine.

The engine is written against these abstract stores only. Concrete
implementations live in ``memory_store`` (in-process) and ``sql_store``
(SQLAlchemy); ``flowfolders.engine.cache`` wraps either with Redis.

Contracts the services rely on:
- PermissionStore.upsert keeps at most one grant per (folder, user).
- WorkflowBindingStore.assign replaces any previous binding of the workflow.
- StoreBundle.transaction() makes every store call inside it atomic:
  all of them take effect, or none do.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Dict, Iterable, List, Mapping, Optional

from flowfolders.folders.models import (
    Folder,
    GrantWithUser,
    PermissionGrant,
    PermissionLevel,
    WorkflowBinding,
)


class FolderStore(ABC):

    @abstractmethod
    def get(self, folder_id: str) -> Optional[Folder]:
        ...

    @abstractmethod
    def find_by_parent(self, parent_id: Optional[str]) -> List[Folder]:
        """Direct children of ``parent_id``; ``None`` returns the root folders."""

    @abstractmethod
    def find_all(self) -> List[Folder]:
        ...

    @abstractmethod
    def exists(self, folder_id: str) -> bool:
        ...

    @abstractmethod
    def create(self, folder: Folder) -> Folder:
        ...

    @abstractmethod
    def update(self, folder_id: str, patch: Mapping[str, Any]) -> Optional[Folder]:
        """Apply ``patch`` (name / description / parent_id) and bump updated_at."""

    @abstractmethod
    def delete(self, folder_id: str) -> bool:
        ...


class PermissionStore(ABC):

    @abstractmethod
    def find(self, folder_id: str, user_id: str) -> Optional[PermissionGrant]:
        ...

    @abstractmethod
    def find_for_folders(
        self, folder_ids: Iterable[str], user_id: str
    ) -> Dict[str, PermissionLevel]:
        """Map of folder_id → level for the folders where ``user_id`` holds a grant."""

    @abstractmethod
    def find_by_user(self, user_id: str) -> List[PermissionGrant]:
        ...

    @abstractmethod
    def find_by_folder_with_user_info(self, folder_id: str) -> List[GrantWithUser]:
        ...

    @abstractmethod
    def upsert(
        self, folder_id: str, user_id: str, level: PermissionLevel, granted_by: str
    ) -> PermissionGrant:
        ...

    @abstractmethod
    def update(self, folder_id: str, user_id: str, level: PermissionLevel) -> bool:
        """Change the level of an existing grant. False if there is none."""

    @abstractmethod
    def revoke(self, folder_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    def revoke_all_for_folder(self, folder_id: str) -> int:
        ...


class WorkflowBindingStore(ABC):

    @abstractmethod
    def find_by_workflow(self, workflow_id: str) -> Optional[WorkflowBinding]:
        ...

    @abstractmethod
    def find_by_folder(self, folder_id: str) -> List[WorkflowBinding]:
        ...

    @abstractmethod
    def find_by_folders(self, folder_ids: Iterable[str]) -> List[WorkflowBinding]:
        ...

    @abstractmethod
    def find_all(self) -> List[WorkflowBinding]:
        ...

    @abstractmethod
    def assign(self, workflow_id: str, folder_id: str, assigned_by: str) -> WorkflowBinding:
        ...

    @abstractmethod
    def assign_many(
        self, workflow_ids: Iterable[str], folder_id: str, assigned_by: str
    ) -> List[WorkflowBinding]:
        ...

    @abstractmethod
    def unassign(self, workflow_id: str) -> bool:
        ...

    @abstractmethod
    def unassign_all_for_folder(self, folder_id: str) -> int:
        ...

    @abstractmethod
    def count_by_folder(self) -> Dict[str, int]:
        ...


class StoreBundle(ABC):
    """
    The three stores the engine needs plus a shared transaction boundary.

    Instances are created and disposed by the composing application and
    passed to the services; the services never open connections themselves.
    """

    folders: FolderStore
    permissions: PermissionStore
    bindings: WorkflowBindingStore

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """
        Context manager spanning all three stores. Nested calls join the
        outermost transaction.
        """
