"""
Folder permission data model — Pydantic definitions shared by services and stores.

Folder: Named node in the folder forest.
PermissionGrant: One grant row per (folder, user).
WorkflowBinding: workflow → folder (absent = unassigned).
EffectivePermission / FolderTreeNode / stats: derived, never persisted.
WorkflowScope: tagged "all workflows" vs. explicit subset.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("flowfolders.folders.models")

NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Permission levels and actions
# ---------------------------------------------------------------------------

class PermissionLevel(str, Enum):
    """Totally ordered: viewer < executor < editor < admin."""

    VIEWER = "viewer"
    EXECUTOR = "executor"
    EDITOR = "editor"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return LEVEL_RANK[self]

    def __str__(self) -> str:
        return self.value


class PermissionAction(str, Enum):
    VIEW = "view"
    EXECUTE = "execute"
    EDIT = "edit"
    MANAGE = "manage"

    def __str__(self) -> str:
        return self.value


LEVEL_RANK: Dict[PermissionLevel, int] = {
    PermissionLevel.VIEWER: 0,
    PermissionLevel.EXECUTOR: 1,
    PermissionLevel.EDITOR: 2,
    PermissionLevel.ADMIN: 3,
}

# Minimum level an action requires
ACTION_MIN_LEVEL: Dict[PermissionAction, PermissionLevel] = {
    PermissionAction.VIEW: PermissionLevel.VIEWER,
    PermissionAction.EXECUTE: PermissionLevel.EXECUTOR,
    PermissionAction.EDIT: PermissionLevel.EDITOR,
    PermissionAction.MANAGE: PermissionLevel.ADMIN,
}


def higher_level(
    a: Optional[PermissionLevel], b: Optional[PermissionLevel]
) -> Optional[PermissionLevel]:
    """Return the stronger of two levels; None counts as no permission."""
    if a is None:
        return b
    if b is None:
        return a
    return a if a.rank >= b.rank else b


def max_level(levels: Iterable[Optional[PermissionLevel]]) -> Optional[PermissionLevel]:
    best: Optional[PermissionLevel] = None
    for level in levels:
        best = higher_level(best, level)
    return best


def can_perform(level: Optional[PermissionLevel], action: PermissionAction) -> bool:
    if level is None:
        return False
    return level.rank >= ACTION_MIN_LEVEL[action].rank


# ---------------------------------------------------------------------------
# Folder
# ---------------------------------------------------------------------------

class Folder(BaseModel):
    """A node in the folder forest. ``parent_id`` None means root."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = Field(min_length=1, max_length=NAME_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    parent_id: Optional[str] = None
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class FolderCreate(BaseModel):
    """Input for FolderTreeService.create_folder."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=NAME_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    parent_id: Optional[str] = None


class FolderUpdate(BaseModel):
    """
    Partial update. Only explicitly supplied fields are applied, so
    ``FolderUpdate(parent_id=None)`` moves the folder to the root while
    ``FolderUpdate(name="x")`` leaves the parent alone.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=NAME_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    parent_id: Optional[str] = None

    def changes_parent(self) -> bool:
        return "parent_id" in self.model_fields_set


class FolderTreeNode(BaseModel):
    """Folder plus its visible children; ``workflow_count`` is direct only."""

    id: str
    name: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    workflow_count: int = 0
    children: List["FolderTreeNode"] = Field(default_factory=list)

    @classmethod
    def from_folder(cls, folder: Folder, workflow_count: int = 0) -> "FolderTreeNode":
        return cls(**folder.model_dump(), workflow_count=workflow_count)


class FolderStats(BaseModel):
    total: int = 0
    root_folders: int = 0
    sub_folders: int = 0


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------

class PermissionGrant(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    folder_id: str
    user_id: str
    level: PermissionLevel
    granted_by: str
    granted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class GrantWithUser(PermissionGrant):
    """A grant joined with the grantee's display info."""

    user_name: Optional[str] = None
    user_email: Optional[str] = None


class EffectivePermission(BaseModel):
    folder_id: str
    folder_name: str
    user_id: str
    level: PermissionLevel
    inherited: bool = False
    inherited_from: Optional[str] = None


class PermissionStats(BaseModel):
    total: int = 0
    by_level: Dict[PermissionLevel, int] = Field(
        default_factory=lambda: {level: 0 for level in PermissionLevel}
    )


# ---------------------------------------------------------------------------
# Workflow bindings
# ---------------------------------------------------------------------------

class WorkflowBinding(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    workflow_id: str
    folder_id: str
    assigned_by: str
    assigned_at: datetime = Field(default_factory=utcnow)


class AllWorkflows(BaseModel):
    """Every workflow, including unassigned ones (admins)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["all"] = "all"

    def includes(self, workflow_id: str) -> bool:
        return True


class WorkflowSubset(BaseModel):
    """Exactly these workflows. Empty means no access."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["subset"] = "subset"
    workflow_ids: FrozenSet[str] = frozenset()

    def includes(self, workflow_id: str) -> bool:
        return workflow_id in self.workflow_ids


WorkflowScope = Union[AllWorkflows, WorkflowSubset]


FolderTreeNode.model_rebuild()
