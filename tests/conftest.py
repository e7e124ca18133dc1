"""
flowfolders Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from flowfolders.folders.engine import FolderEngine
from flowfolders.folders.memory_store import InMemoryStores


# ---------------------------------------------------------------------------
# Environment setup: unit tests never touch real Redis or Postgres
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals():
    """Reset module-level singletons between tests."""
    import flowfolders.engine.config as cfg_mod
    import flowfolders.engine.logging as log_mod

    cfg_mod._config = None
    log_mod._file_logger = None
    yield
    cfg_mod._config = None
    log_mod._file_logger = None


@pytest.fixture
def stores():
    """Empty in-memory store bundle with two known users."""
    bundle = InMemoryStores()
    bundle.register_user("alice", "Alice", "alice@example.com")
    bundle.register_user("bob", "Bob", "bob@example.com")
    return bundle


@pytest.fixture
def engine(stores):
    return FolderEngine(stores)


@pytest.fixture
def chain(engine):
    """
    A → B → C chain under the root, plus an unrelated root D.
    Returns a dict name → Folder.
    """
    a = engine.tree.create_folder("A", created_by="admin")
    b = engine.tree.create_folder("B", created_by="admin", parent_id=a.id)
    c = engine.tree.create_folder("C", created_by="admin", parent_id=b.id)
    d = engine.tree.create_folder("D", created_by="admin")
    return {"A": a, "B": b, "C": c, "D": d}


@pytest.fixture
def audit_dir(tmp_path):
    """Route the audit trail into a temp directory for the test."""
    from flowfolders.engine.logging import init_logging

    log_dir = tmp_path / "logs"
    init_logging(str(log_dir), "DEBUG")
    return log_dir


@pytest.fixture
def mock_redis():
    """Return a mock Redis client backed by a dict, with glob-style scan."""
    import fnmatch

    data = {}
    client = MagicMock()
    client.ping.return_value = True
    client.get.side_effect = lambda key: data.get(key)

    def _set(key, value, ex=None):
        data[key] = value
        return True

    def _delete(*keys):
        removed = 0
        for key in keys:
            if data.pop(key, None) is not None:
                removed += 1
        return removed

    client.set.side_effect = _set
    client.delete.side_effect = _delete
    client.scan_iter.side_effect = lambda match=None, count=None: iter(
        [k for k in list(data) if match is None or fnmatch.fnmatch(k, match)]
    )
    client.data = data
    return client
