"""
flowfolders Error Hierarchy — Structured exceptions for the folder permission engine.

Every error carries the context needed to reproduce the failure (folder_id,
user_id, workflow_id, operation) and the HTTP status the API layer maps it to.
Errors propagate unmodified to the caller; the engine never retries.

Hierarchy:
    FlowFoldersError
    ├── NotFoundError            — Folder, grant, or binding absent       (404)
    ├── ConflictError            — Duplicate sibling name / unique clash  (409)
    ├── InvalidOperationError    — Cycle, self-grant, delete-with-children (400)
    ├── ValidationError          — Bad name, description, or level        (400)
    ├── PermissionDeniedError    — Effective permission too low           (403)
    ├── IntegrityCheckError      — Stored tree violates forest invariant  (500)
    └── ConfigError              — Invalid flowfolders.yaml               (500)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_CORE_CONTEXT_KEYS = ("folder_id", "user_id", "workflow_id", "operation")


class FlowFoldersError(Exception):
    """
    Base error for all engine failures.
    All context is serializable to JSON for the API response body.
    """

    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.folder_id: Optional[str] = context.get("folder_id")
        self.user_id: Optional[str] = context.get("user_id")
        self.workflow_id: Optional[str] = context.get("workflow_id")
        self.operation: Optional[str] = context.get("operation")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "status_code": self.status_code,
            "folder_id": self.folder_id,
            "user_id": self.user_id,
            "workflow_id": self.workflow_id,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in _CORE_CONTEXT_KEYS
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.folder_id:
            parts.append(f"folder_id={self.folder_id}")
        if self.user_id:
            parts.append(f"user_id={self.user_id}")
        if self.workflow_id:
            parts.append(f"workflow_id={self.workflow_id}")
        return " | ".join(parts)


class NotFoundError(FlowFoldersError):
    """A folder, grant, or workflow binding does not exist."""

    status_code = 404

    def __init__(self, message: str, **context: Any):
        self.resource: Optional[str] = context.get("resource")
        self.resource_id: Optional[str] = context.get("resource_id")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["resource"] = self.resource
        d["resource_id"] = self.resource_id
        return d


class ConflictError(FlowFoldersError):
    """Duplicate sibling name or a store-level unique-constraint violation."""

    status_code = 409


class InvalidOperationError(FlowFoldersError):
    """
    The request is well-formed but violates a tree or grant invariant:
    self-parent, move into own subtree, delete with children and no cascade,
    self-grant / self-update / self-revoke, or a cycle found at runtime.
    """

    status_code = 400


class ValidationError(FlowFoldersError):
    """
    Input validation failed (name length, description length, unknown level).
    Includes field-level error details.
    """

    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[List[Dict[str, Any]]] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d

    @classmethod
    def from_pydantic(cls, exc: Any, **context: Any) -> "ValidationError":
        """Build from a ``pydantic.ValidationError``, keeping loc/msg per field."""
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "error": err.get("msg")}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{d['field']}: {d['error']}" for d in details) or str(exc)
        return cls(f"Validation failed: {summary}", validation_errors=details, **context)


class PermissionDeniedError(FlowFoldersError):
    """
    The user's effective permission does not reach the level the action needs.
    Raised only by the explicit ``require_*`` helpers; ``check_*`` return bools.
    """

    status_code = 403

    def __init__(self, message: str, **context: Any):
        self.action: Optional[str] = context.get("action")
        self.required_level: Optional[str] = context.get("required_level")
        self.effective_level: Optional[str] = context.get("effective_level")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["action"] = self.action
        d["required_level"] = self.required_level
        d["effective_level"] = self.effective_level
        return d


class IntegrityCheckError(FlowFoldersError):
    """The stored folder tree violates the forest invariant."""

    def __init__(self, message: str, **context: Any):
        self.problems: List[str] = context.get("problems", [])
        super().__init__(message, **context)


class ConfigError(FlowFoldersError):
    """Configuration error — invalid flowfolders.yaml."""
    pass
