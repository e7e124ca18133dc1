"""
flowfolders Logging — Structured JSONL audit trail for folder and permission changes.

Implements:
- FileLogger: Per-object-type, per-category log files (daily rotation)
- Log entry builders for folder, permission, binding and access-denied events
- A module-level sink (init_logging / emit / shutdown_logging)

Files: {log_dir}/{object_type}/{category}/{YYYY-MM-DD}.jsonl

The audit trail is written in addition to the standard ``logging`` records;
it never replaces raising an error to the caller.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("flowfolders.engine.logging")

# Valid object types and their permitted categories
OBJECT_TYPE_CATEGORIES = {
    "folders": ["execution", "security"],
    "permissions": ["execution", "security"],
    "workflows": ["execution", "security"],
    "system": ["execution"],
}


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        self.object_type = object_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured JSON log entries to per-object-type, per-category files.

    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = ".flowfolders/logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / obj_type / cat).mkdir(parents=True, exist_ok=True)

    def write(self, entry: LogEntry) -> None:
        """Write a single log entry to the appropriate file."""
        file_path = self._resolve_path(entry.object_type, entry.category)
        key = str(file_path)

        with self._file_locks[key]:
            with open(file_path, "a", encoding="utf-8") as f:
                f.write(entry.to_json())
                f.write("\n")

    def _resolve_path(self, object_type: str, category: str) -> Path:
        today = date.today().isoformat()
        return self._log_dir / object_type / category / f"{today}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def query(
        self,
        object_type: str,
        category: str,
        *,
        days: int = 7,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Read back entries for an object_type/category, newest file first.

        Args:
            object_type: e.g. "folders", "permissions".
            category: "execution" or "security".
            days: How many days back to scan (today included).
            filters: Only entries whose top-level keys equal ALL of these.
            limit: Max number of entries to return.
        """
        log_base = self._log_dir / object_type / category
        if not log_base.exists():
            return []

        results: List[Dict[str, Any]] = []
        current = date.today()
        oldest = current - timedelta(days=days - 1)
        while current >= oldest and len(results) < limit:
            file_path = log_base / f"{current.isoformat()}.jsonl"
            if file_path.exists():
                results.extend(self._read_jsonl(file_path, filters, limit - len(results)))
            current -= timedelta(days=1)
        return results[:limit]

    @staticmethod
    def _read_jsonl(
        path: Path,
        filters: Optional[Dict[str, Any]],
        remaining: int,
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if filters and not all(data.get(k) == v for k, v in filters.items()):
                        continue
                    entries.append(data)
                    if len(entries) >= remaining:
                        break
        except OSError as exc:
            logger.warning("Could not read log file %s: %s", path, exc)
        return entries


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(
    event: str,
    level: str,
    user_id: Optional[Any] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    if user_id is not None:
        entry["user_id"] = user_id
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_folder_event(
    event: str,
    folder_id: str,
    user_id: Optional[Any] = None,
    name: Optional[str] = None,
    parent_id: Optional[str] = None,
    fields_changed: Optional[List[str]] = None,
    cascade: Optional[bool] = None,
    deleted_ids: Optional[List[str]] = None,
) -> LogEntry:
    """Build a folder lifecycle entry (created/updated/moved/deleted)."""
    data = _base_entry(
        event=event,
        level="INFO",
        user_id=user_id,
        folder_id=folder_id,
        name=name,
        parent_id=parent_id,
        fields_changed=fields_changed or None,
        cascade=cascade,
        deleted_ids=deleted_ids,
    )
    return LogEntry("folders", "execution", data)


def log_permission_event(
    event: str,
    folder_id: str,
    user_id: str,
    actor_id: str,
    level: Optional[str] = None,
) -> LogEntry:
    """Build a grant change entry (granted/updated/revoked). Always security."""
    data = _base_entry(
        event=event,
        level="INFO",
        user_id=user_id,
        folder_id=folder_id,
        actor_id=actor_id,
        permission=level,
    )
    return LogEntry("permissions", "security", data)


def log_binding_event(
    event: str,
    workflow_ids: List[str],
    folder_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> LogEntry:
    """Build a workflow binding entry (assigned/unassigned)."""
    data = _base_entry(
        event=event,
        level="INFO",
        workflow_ids=workflow_ids,
        folder_id=folder_id,
        actor_id=actor_id,
    )
    return LogEntry("workflows", "execution", data)


def log_access_denied(
    object_type: str,
    user_id: str,
    action: str,
    folder_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    effective_level: Optional[str] = None,
) -> LogEntry:
    """Build an access-denied entry for the security trail."""
    data = _base_entry(
        event="access_denied",
        level="WARNING",
        user_id=user_id,
        action=action,
        folder_id=folder_id,
        workflow_id=workflow_id,
        effective_level=effective_level,
    )
    obj_type = object_type if object_type in OBJECT_TYPE_CATEGORIES else "folders"
    return LogEntry(obj_type, "security", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event entry (startup, shutdown, integrity checks)."""
    data = _base_entry(event=event, level=level, details=details)
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Module-level sink
# ---------------------------------------------------------------------------

_file_logger: Optional[FileLogger] = None


def init_logging(log_dir: str = ".flowfolders/logs", level: str = "INFO") -> FileLogger:
    """Initialize the audit file sink and the package logger level."""
    global _file_logger
    logging.getLogger("flowfolders").setLevel(level)
    _file_logger = FileLogger(log_dir=log_dir)
    return _file_logger


def get_file_logger() -> Optional[FileLogger]:
    return _file_logger


def emit(entry: LogEntry) -> bool:
    """
    Write an entry to the audit sink. Returns False when no sink is configured
    (the standard logger has already recorded the event at the call site).
    """
    if _file_logger is None:
        return False
    try:
        _file_logger.write(entry)
        return True
    except OSError as e:
        logger.error(f"Audit log write failed ({entry.object_type}/{entry.category}): {e}")
        return False


def shutdown_logging() -> None:
    """Detach the audit sink."""
    global _file_logger
    _file_logger = None
