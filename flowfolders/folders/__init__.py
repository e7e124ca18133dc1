"""flowfolders Folders — Folder tree, permission resolution, access scope, stores."""

from flowfolders.folders.models import (  # noqa: F401
    AllWorkflows,
    EffectivePermission,
    Folder,
    FolderTreeNode,
    FolderUpdate,
    PermissionAction,
    PermissionGrant,
    PermissionLevel,
    WorkflowBinding,
    WorkflowScope,
    WorkflowSubset,
)

__all__ = [
    "AllWorkflows",
    "EffectivePermission",
    "Folder",
    "FolderTreeNode",
    "FolderUpdate",
    "PermissionAction",
    "PermissionGrant",
    "PermissionLevel",
    "WorkflowBinding",
    "WorkflowScope",
    "WorkflowSubset",
]
