"""
flowfolders Redis Cache Layer — Read-through caching for the store bundle.

Redis DB allocation:
  DB 2: Folder / permission / binding cache (TTL=5min)

All Redis data is ephemeral and reconstructible from the backing stores.
When Redis is unreachable every call falls through to the wrapped store
(circuit breaker pattern).

Key layout (prefix ``flowfolders:``):
  folder:id:{folder_id}            Folder
  folder:all                       [Folder]
  folder:roots                     [Folder]
  folder:parent:{parent_id}        [Folder]
  perm:folder:{folder_id}:user:{user_id}   PermissionGrant
  perm:user:{user_id}:all          [PermissionGrant]
  binding:workflow:{workflow_id}   WorkflowBinding
  binding:counts                   {folder_id: count}
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set

from flowfolders.folders.models import (
    Folder,
    GrantWithUser,
    PermissionGrant,
    PermissionLevel,
    WorkflowBinding,
)
from flowfolders.folders.stores import (
    FolderStore,
    PermissionStore,
    StoreBundle,
    WorkflowBindingStore,
)

logger = logging.getLogger("flowfolders.engine.cache")

CACHE_DB = 2


class RedisCache:
    """
    Redis cache wrapper with JSON helpers and a circuit breaker.

    Falls back to store-only mode on Redis failure: reads return None,
    writes return False, nothing raises.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "flowfolders:",
        default_ttl: int = 300,
        db: int = CACHE_DB,
        failure_threshold: int = 5,
        failure_window: int = 30,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._db = db
        self._client = None
        self._available = False

        # Circuit breaker state
        self._failure_count = 0
        self._failure_threshold = failure_threshold
        self._failure_window = failure_window  # seconds
        self._first_failure_time = 0.0
        self._circuit_open = False

    def connect(self) -> bool:
        """Open the Redis connection. False if the server is unreachable."""
        try:
            import redis
            self._client = redis.Redis.from_url(
                self._redis_url,
                db=self._db,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            self._client.ping()
            self._available = True
            self._circuit_open = False
            self._failure_count = 0
            logger.info(f"Redis connected: DB {self._db} ({self._prefix})")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed (DB {self._db}): {e}")
            self._available = False
            return False

    def _check_circuit(self) -> bool:
        if self._circuit_open:
            # Half-open after the window elapses
            if time.time() - self._first_failure_time > self._failure_window:
                self._circuit_open = False
                self._failure_count = 0
                return self.connect()
            return False
        return self._available

    def _record_failure(self, op: str, error: Exception) -> None:
        logger.debug(f"Redis {op} failed: {error}")
        now = time.time()
        if self._failure_count == 0 or now - self._first_failure_time > self._failure_window:
            self._first_failure_time = now
            self._failure_count = 0

        self._failure_count += 1

        if self._failure_count >= self._failure_threshold:
            self._circuit_open = True
            logger.error(
                f"Redis circuit breaker OPEN: {self._failure_count} failures in "
                f"{now - self._first_failure_time:.1f}s"
            )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # ── Core Operations ──

    def get(self, key: str) -> Optional[str]:
        """Get a value. None on miss or failure."""
        if not self._check_circuit():
            return None
        try:
            return self._client.get(self._make_key(key))
        except Exception as e:
            self._record_failure("GET", e)
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        if not self._check_circuit():
            return False
        try:
            self._client.set(self._make_key(key), value, ex=ttl or self._default_ttl)
            return True
        except Exception as e:
            self._record_failure("SET", e)
            return False

    def delete(self, key: str) -> bool:
        if not self._check_circuit():
            return False
        try:
            self._client.delete(self._make_key(key))
            return True
        except Exception as e:
            self._record_failure("DEL", e)
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns count deleted."""
        if not self._check_circuit():
            return 0
        try:
            keys = list(self._client.scan_iter(match=self._make_key(pattern), count=1000))
            if keys:
                return self._client.delete(*keys)
            return 0
        except Exception as e:
            self._record_failure("SCAN/DEL", e)
            return 0

    # ── JSON Operations ──

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            return self.set(key, json.dumps(value, default=str), ttl=ttl)
        except (TypeError, ValueError):
            return False

    # ── Health & Management ──

    def ping(self) -> bool:
        if not self._client:
            return False
        try:
            return bool(self._client.ping())
        except Exception:
            return False

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Redis close failed: {e}")
            self._client = None
        self._available = False
        self._circuit_open = False
        self._failure_count = 0

    @property
    def is_available(self) -> bool:
        return self._available and not self._circuit_open

    @property
    def is_circuit_open(self) -> bool:
        return self._circuit_open


# ---------------------------------------------------------------------------
# Read-through store wrappers
# ---------------------------------------------------------------------------

class _CachedStore:
    """Shared read/evict plumbing. ``namespace`` is the key prefix this store owns."""

    namespace = ""

    def __init__(self, inner: Any, cache: RedisCache, bundle: "CachedStoreBundle"):
        self._inner = inner
        self._cache = cache
        self._bundle = bundle

    def _read(
        self,
        key: str,
        load: Callable[[], Any],
        dump: Callable[[Any], Any],
        restore: Callable[[Any], Any],
    ) -> Any:
        # Uncommitted reads inside a transaction must not reach Redis
        if self._bundle.in_transaction:
            return load()
        cached = self._cache.get_json(key)
        if cached is not None:
            return restore(cached)
        value = load()
        if value is not None:
            self._cache.set_json(key, dump(value))
        return value

    def _evict(self) -> None:
        self._cache.delete_pattern(f"{self.namespace}:*")
        self._bundle.mark_dirty(self.namespace)


def _dump_model(model: Any) -> Any:
    return model.model_dump(mode="json")


def _dump_list(models: List[Any]) -> Any:
    return [m.model_dump(mode="json") for m in models]


class CachedFolderStore(_CachedStore, FolderStore):
    namespace = "folder"

    def get(self, folder_id: str) -> Optional[Folder]:
        return self._read(
            f"folder:id:{folder_id}",
            lambda: self._inner.get(folder_id),
            _dump_model,
            Folder.model_validate,
        )

    def find_by_parent(self, parent_id: Optional[str]) -> List[Folder]:
        return self._read(
            "folder:roots" if parent_id is None else f"folder:parent:{parent_id}",
            lambda: self._inner.find_by_parent(parent_id),
            _dump_list,
            lambda rows: [Folder.model_validate(r) for r in rows],
        )

    def find_all(self) -> List[Folder]:
        return self._read(
            "folder:all",
            self._inner.find_all,
            _dump_list,
            lambda rows: [Folder.model_validate(r) for r in rows],
        )

    def exists(self, folder_id: str) -> bool:
        return self.get(folder_id) is not None

    def create(self, folder: Folder) -> Folder:
        created = self._inner.create(folder)
        self._evict()
        return created

    def update(self, folder_id: str, patch: Mapping[str, Any]) -> Optional[Folder]:
        updated = self._inner.update(folder_id, patch)
        self._evict()
        return updated

    def delete(self, folder_id: str) -> bool:
        deleted = self._inner.delete(folder_id)
        self._evict()
        return deleted


class CachedPermissionStore(_CachedStore, PermissionStore):
    namespace = "perm"

    def find(self, folder_id: str, user_id: str) -> Optional[PermissionGrant]:
        return self._read(
            f"perm:folder:{folder_id}:user:{user_id}",
            lambda: self._inner.find(folder_id, user_id),
            _dump_model,
            PermissionGrant.model_validate,
        )

    def find_by_user(self, user_id: str) -> List[PermissionGrant]:
        return self._read(
            f"perm:user:{user_id}:all",
            lambda: self._inner.find_by_user(user_id),
            _dump_list,
            lambda rows: [PermissionGrant.model_validate(r) for r in rows],
        )

    def find_for_folders(
        self, folder_ids: Iterable[str], user_id: str
    ) -> Dict[str, PermissionLevel]:
        if self._bundle.in_transaction:
            return self._inner.find_for_folders(folder_ids, user_id)
        wanted = set(folder_ids)
        return {g.folder_id: g.level for g in self.find_by_user(user_id) if g.folder_id in wanted}

    def find_by_folder_with_user_info(self, folder_id: str) -> List[GrantWithUser]:
        # User display info is owned elsewhere; never cached
        return self._inner.find_by_folder_with_user_info(folder_id)

    def upsert(
        self, folder_id: str, user_id: str, level: PermissionLevel, granted_by: str
    ) -> PermissionGrant:
        grant = self._inner.upsert(folder_id, user_id, level, granted_by)
        self._evict()
        return grant

    def update(self, folder_id: str, user_id: str, level: PermissionLevel) -> bool:
        changed = self._inner.update(folder_id, user_id, level)
        self._evict()
        return changed

    def revoke(self, folder_id: str, user_id: str) -> bool:
        revoked = self._inner.revoke(folder_id, user_id)
        self._evict()
        return revoked

    def revoke_all_for_folder(self, folder_id: str) -> int:
        count = self._inner.revoke_all_for_folder(folder_id)
        self._evict()
        return count


class CachedWorkflowBindingStore(_CachedStore, WorkflowBindingStore):
    namespace = "binding"

    def find_by_workflow(self, workflow_id: str) -> Optional[WorkflowBinding]:
        return self._read(
            f"binding:workflow:{workflow_id}",
            lambda: self._inner.find_by_workflow(workflow_id),
            _dump_model,
            WorkflowBinding.model_validate,
        )

    def find_by_folder(self, folder_id: str) -> List[WorkflowBinding]:
        return self._inner.find_by_folder(folder_id)

    def find_by_folders(self, folder_ids: Iterable[str]) -> List[WorkflowBinding]:
        return self._inner.find_by_folders(folder_ids)

    def find_all(self) -> List[WorkflowBinding]:
        return self._inner.find_all()

    def count_by_folder(self) -> Dict[str, int]:
        return self._read(
            "binding:counts",
            self._inner.count_by_folder,
            dict,
            dict,
        )

    def assign(self, workflow_id: str, folder_id: str, assigned_by: str) -> WorkflowBinding:
        binding = self._inner.assign(workflow_id, folder_id, assigned_by)
        self._evict()
        return binding

    def assign_many(
        self, workflow_ids: Iterable[str], folder_id: str, assigned_by: str
    ) -> List[WorkflowBinding]:
        bindings = self._inner.assign_many(workflow_ids, folder_id, assigned_by)
        self._evict()
        return bindings

    def unassign(self, workflow_id: str) -> bool:
        removed = self._inner.unassign(workflow_id)
        self._evict()
        return removed

    def unassign_all_for_folder(self, folder_id: str) -> int:
        count = self._inner.unassign_all_for_folder(folder_id)
        self._evict()
        return count


class CachedStoreBundle(StoreBundle):
    """
    Wraps any StoreBundle with Redis read-through caching.

    Reads inside ``transaction()`` bypass the cache. When the outermost
    transaction ends (commit or rollback) every namespace written inside
    it is evicted again, so no other reader keeps a pre-commit value.
    """

    def __init__(self, inner: StoreBundle, cache: RedisCache):
        self._inner = inner
        self._cache = cache
        self._dirty: ContextVar[Optional[Set[str]]] = ContextVar(
            f"flowfolders_cache_dirty_{id(self)}", default=None
        )
        self.folders = CachedFolderStore(inner.folders, cache, self)
        self.permissions = CachedPermissionStore(inner.permissions, cache, self)
        self.bindings = CachedWorkflowBindingStore(inner.bindings, cache, self)

    @property
    def cache(self) -> RedisCache:
        return self._cache

    @property
    def in_transaction(self) -> bool:
        return self._dirty.get() is not None

    def mark_dirty(self, namespace: str) -> None:
        dirty = self._dirty.get()
        if dirty is not None:
            dirty.add(namespace)

    def invalidate_all(self) -> int:
        return sum(self._cache.delete_pattern(f"{ns}:*") for ns in ("folder", "perm", "binding"))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self.in_transaction:
            with self._inner.transaction():
                yield
            return

        dirty: Set[str] = set()
        token = self._dirty.set(dirty)
        try:
            with self._inner.transaction():
                yield
        finally:
            self._dirty.reset(token)
            for namespace in sorted(dirty):
                self._cache.delete_pattern(f"{namespace}:*")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_store_cache(redis_url: str, ttl: int = 300, db: int = CACHE_DB) -> RedisCache:
    """Create and connect the store cache (Redis DB 2)."""
    cache = RedisCache(redis_url=redis_url, prefix="flowfolders:", default_ttl=ttl, db=db)
    cache.connect()
    return cache
