"""
flowfolders Folder Engine — Composition root wiring stores and services.

The engine owns no connections itself. ``FolderEngine(stores)`` wires the
services over a bundle the caller created and will dispose;
``FolderEngine.from_config()`` builds the SQL bundle (optionally wrapped
in the Redis cache) from flowfolders.yaml and owns that lifecycle until
``close()``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from flowfolders.engine.cache import CachedStoreBundle, RedisCache, create_store_cache
from flowfolders.engine.config import EngineConfig, get_config
from flowfolders.engine.logging import emit, init_logging, log_system_event, shutdown_logging
from flowfolders.folders.access import AccessScopeService, WorkflowBindingService
from flowfolders.folders.integrity import IntegrityReport, check_tree_integrity
from flowfolders.folders.permissions import PermissionResolver, PermissionService
from flowfolders.folders.stores import StoreBundle
from flowfolders.folders.tree import DEFAULT_MAX_DEPTH, FolderTreeService

logger = logging.getLogger("flowfolders.folders.engine")


class FolderEngine:
    """
    All folder services over one StoreBundle.

    Usage:
        engine = FolderEngine(InMemoryStores())
        root = engine.tree.create_folder("Sales", created_by="admin")
        engine.permissions.grant_permission(root.id, "u1", "editor", granted_by="admin")
        engine.resolver.check_permission("u1", root.id, "edit")  # True
    """

    def __init__(self, stores: StoreBundle, max_depth: int = DEFAULT_MAX_DEPTH):
        self.stores = stores
        self.tree = FolderTreeService(stores, max_depth=max_depth)
        self.resolver = PermissionResolver(stores, self.tree)
        self.permissions = PermissionService(stores)
        self.bindings = WorkflowBindingService(stores)
        self.access = AccessScopeService(stores, self.tree, self.resolver)
        self._cache: Optional[RedisCache] = None
        self._owns_database = False

    @classmethod
    def from_config(
        cls,
        config: Optional[EngineConfig] = None,
        create_tables: bool = False,
    ) -> "FolderEngine":
        """Build a SQL-backed engine from flowfolders.yaml settings."""
        from flowfolders.db.session import init_db
        from flowfolders.folders.sql_store import SqlStores

        config = config or get_config()

        if config.logging.audit:
            init_logging(config.logging.directory, config.logging.level)
        else:
            logging.getLogger("flowfolders").setLevel(config.logging.level)

        db = config.database
        factory = init_db(
            db.url,
            create_tables=create_tables,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=db.pool_pre_ping,
            echo=db.echo,
        )
        stores: StoreBundle = SqlStores(factory)

        cache = None
        if config.redis.enabled:
            cache = create_store_cache(config.redis.url, ttl=config.redis.ttl, db=config.redis.db)
            stores = CachedStoreBundle(stores, cache)

        engine = cls(stores, max_depth=config.traversal.max_depth)
        engine._cache = cache
        engine._owns_database = True

        emit(log_system_event("engine_started", details={
            "environment": config.environment,
            "cache": bool(cache and cache.is_available),
        }))
        logger.info(
            f"Folder engine started (env={config.environment}, "
            f"cache={'on' if cache and cache.is_available else 'off'})"
        )
        return engine

    def check_integrity(self) -> IntegrityReport:
        return check_tree_integrity(self.stores.folders)

    def close(self) -> None:
        """Release the connections this engine opened in ``from_config``."""
        if self._cache is not None:
            self._cache.close()
            self._cache = None
        if self._owns_database:
            from flowfolders.db.session import close_all_sessions
            close_all_sessions()
            self._owns_database = False
            emit(log_system_event("engine_stopped"))
            shutdown_logging()

    def __enter__(self) -> "FolderEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
