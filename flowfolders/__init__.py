"""
flowfolders — Folder Permission Engine for a workflow-automation console.

Organizes workflows into a folder forest and answers "who may do what where":
per-user grants on folders inherit down the tree, and the strongest grant on
the path to the root decides.

    from flowfolders import FolderEngine, InMemoryStores

    engine = FolderEngine(InMemoryStores())
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "folders", "FolderEngine", "InMemoryStores"]

from flowfolders.folders.engine import FolderEngine  # noqa: E402,F401
from flowfolders.folders.memory_store import InMemoryStores  # noqa: E402,F401
