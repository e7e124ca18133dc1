"""flowfolders Engine — Errors, configuration, structured logging, Redis cache."""

from flowfolders.engine.errors import (  # noqa: F401
    ConflictError,
    FlowFoldersError,
    InvalidOperationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

__all__ = [
    "FlowFoldersError",
    "NotFoundError",
    "ConflictError",
    "InvalidOperationError",
    "ValidationError",
    "PermissionDeniedError",
]
