"""
SQLAlchemy store implementations.

All three stores share one session per ``SqlStores.transaction()`` block
(held in a ContextVar, so concurrent requests on different threads or
tasks never see each other's session). Outside a transaction every store
call opens, commits and closes its own session.

Records are converted to pydantic models before the session closes.
Unique-constraint violations surface as ``ConflictError``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, ContextManager, Dict, Iterable, Iterator, List, Mapping, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from flowfolders.db.models import (
    FolderPermissionRecord,
    FolderRecord,
    UserRecord,
    WorkflowFolderRecord,
)
from flowfolders.db.session import session_scope
from flowfolders.engine.errors import ConflictError
from flowfolders.folders.models import (
    Folder,
    GrantWithUser,
    PermissionGrant,
    PermissionLevel,
    WorkflowBinding,
    utcnow,
)
from flowfolders.folders.stores import (
    FolderStore,
    PermissionStore,
    StoreBundle,
    WorkflowBindingStore,
)

logger = logging.getLogger("flowfolders.folders.sql_store")

SessionProvider = Callable[[], ContextManager[Session]]

_PATCHABLE_FIELDS = ("name", "description", "parent_id")


def _conflict(exc: IntegrityError, operation: str) -> ConflictError:
    return ConflictError(
        f"Write rejected by a uniqueness constraint during {operation}",
        operation=operation,
        constraint=str(getattr(exc, "orig", exc)),
    )


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

class SqlFolderStore(FolderStore):

    def __init__(self, session: SessionProvider):
        self._session = session

    def get(self, folder_id: str) -> Optional[Folder]:
        with self._session() as session:
            record = session.get(FolderRecord, folder_id)
            return Folder.model_validate(record) if record else None

    def find_by_parent(self, parent_id: Optional[str]) -> List[Folder]:
        stmt = select(FolderRecord)
        if parent_id is None:
            stmt = stmt.where(FolderRecord.parent_id.is_(None))
        else:
            stmt = stmt.where(FolderRecord.parent_id == parent_id)
        with self._session() as session:
            records = session.scalars(stmt.order_by(FolderRecord.name)).all()
            return [Folder.model_validate(r) for r in records]

    def find_all(self) -> List[Folder]:
        with self._session() as session:
            records = session.scalars(select(FolderRecord).order_by(FolderRecord.name)).all()
            return [Folder.model_validate(r) for r in records]

    def exists(self, folder_id: str) -> bool:
        with self._session() as session:
            stmt = select(FolderRecord.id).where(FolderRecord.id == folder_id)
            return session.scalar(stmt) is not None

    def create(self, folder: Folder) -> Folder:
        with self._session() as session:
            record = FolderRecord(
                id=folder.id,
                name=folder.name,
                description=folder.description,
                parent_id=folder.parent_id,
                created_by=folder.created_by,
                created_at=folder.created_at,
                updated_at=folder.updated_at,
            )
            session.add(record)
            try:
                session.flush()
            except IntegrityError as exc:
                raise _conflict(exc, "create_folder") from exc
            return Folder.model_validate(record)

    def update(self, folder_id: str, patch: Mapping[str, Any]) -> Optional[Folder]:
        with self._session() as session:
            record = session.get(FolderRecord, folder_id)
            if record is None:
                return None
            for key, value in patch.items():
                if key in _PATCHABLE_FIELDS:
                    setattr(record, key, value)
            record.updated_at = utcnow()
            try:
                session.flush()
            except IntegrityError as exc:
                raise _conflict(exc, "update_folder") from exc
            return Folder.model_validate(record)

    def delete(self, folder_id: str) -> bool:
        with self._session() as session:
            result = session.execute(delete(FolderRecord).where(FolderRecord.id == folder_id))
            return result.rowcount > 0


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

class SqlPermissionStore(PermissionStore):

    def __init__(self, session: SessionProvider):
        self._session = session

    def find(self, folder_id: str, user_id: str) -> Optional[PermissionGrant]:
        with self._session() as session:
            record = session.get(FolderPermissionRecord, (folder_id, user_id))
            return PermissionGrant.model_validate(record) if record else None

    def find_for_folders(
        self, folder_ids: Iterable[str], user_id: str
    ) -> Dict[str, PermissionLevel]:
        ids = list(folder_ids)
        if not ids:
            return {}
        stmt = select(FolderPermissionRecord.folder_id, FolderPermissionRecord.level).where(
            FolderPermissionRecord.user_id == user_id,
            FolderPermissionRecord.folder_id.in_(ids),
        )
        with self._session() as session:
            return {fid: PermissionLevel(level) for fid, level in session.execute(stmt)}

    def find_by_user(self, user_id: str) -> List[PermissionGrant]:
        stmt = (
            select(FolderPermissionRecord)
            .where(FolderPermissionRecord.user_id == user_id)
            .order_by(FolderPermissionRecord.granted_at.desc())
        )
        with self._session() as session:
            return [PermissionGrant.model_validate(r) for r in session.scalars(stmt).all()]

    def find_by_folder_with_user_info(self, folder_id: str) -> List[GrantWithUser]:
        stmt = (
            select(FolderPermissionRecord, UserRecord.name, UserRecord.email)
            .outerjoin(UserRecord, UserRecord.id == FolderPermissionRecord.user_id)
            .where(FolderPermissionRecord.folder_id == folder_id)
            .order_by(FolderPermissionRecord.granted_at.desc())
        )
        with self._session() as session:
            rows = []
            for record, name, email in session.execute(stmt):
                grant = PermissionGrant.model_validate(record)
                rows.append(GrantWithUser(**grant.model_dump(), user_name=name, user_email=email))
            return rows

    def upsert(
        self, folder_id: str, user_id: str, level: PermissionLevel, granted_by: str
    ) -> PermissionGrant:
        level = PermissionLevel(level)
        with self._session() as session:
            record = session.get(FolderPermissionRecord, (folder_id, user_id))
            now = utcnow()
            if record is None:
                record = FolderPermissionRecord(
                    folder_id=folder_id,
                    user_id=user_id,
                    level=level.value,
                    granted_by=granted_by,
                    granted_at=now,
                    updated_at=now,
                )
                session.add(record)
            else:
                record.level = level.value
                record.granted_by = granted_by
                record.updated_at = now
            try:
                session.flush()
            except IntegrityError as exc:
                # Lost a race with a concurrent first grant for the same pair
                raise _conflict(exc, "grant_permission") from exc
            return PermissionGrant.model_validate(record)

    def update(self, folder_id: str, user_id: str, level: PermissionLevel) -> bool:
        with self._session() as session:
            record = session.get(FolderPermissionRecord, (folder_id, user_id))
            if record is None:
                return False
            record.level = PermissionLevel(level).value
            record.updated_at = utcnow()
            session.flush()
            return True

    def revoke(self, folder_id: str, user_id: str) -> bool:
        stmt = delete(FolderPermissionRecord).where(
            FolderPermissionRecord.folder_id == folder_id,
            FolderPermissionRecord.user_id == user_id,
        )
        with self._session() as session:
            return session.execute(stmt).rowcount > 0

    def revoke_all_for_folder(self, folder_id: str) -> int:
        stmt = delete(FolderPermissionRecord).where(FolderPermissionRecord.folder_id == folder_id)
        with self._session() as session:
            return session.execute(stmt).rowcount


# ---------------------------------------------------------------------------
# Workflow bindings
# ---------------------------------------------------------------------------

class SqlWorkflowBindingStore(WorkflowBindingStore):

    def __init__(self, session: SessionProvider):
        self._session = session

    def find_by_workflow(self, workflow_id: str) -> Optional[WorkflowBinding]:
        with self._session() as session:
            record = session.get(WorkflowFolderRecord, workflow_id)
            return WorkflowBinding.model_validate(record) if record else None

    def find_by_folder(self, folder_id: str) -> List[WorkflowBinding]:
        return self.find_by_folders([folder_id])

    def find_by_folders(self, folder_ids: Iterable[str]) -> List[WorkflowBinding]:
        ids = list(folder_ids)
        if not ids:
            return []
        stmt = (
            select(WorkflowFolderRecord)
            .where(WorkflowFolderRecord.folder_id.in_(ids))
            .order_by(WorkflowFolderRecord.assigned_at.desc())
        )
        with self._session() as session:
            return [WorkflowBinding.model_validate(r) for r in session.scalars(stmt).all()]

    def find_all(self) -> List[WorkflowBinding]:
        with self._session() as session:
            records = session.scalars(select(WorkflowFolderRecord)).all()
            return [WorkflowBinding.model_validate(r) for r in records]

    def _assign(self, session: Session, workflow_id: str, folder_id: str, assigned_by: str) -> WorkflowFolderRecord:
        record = session.get(WorkflowFolderRecord, workflow_id)
        now = utcnow()
        if record is None:
            record = WorkflowFolderRecord(
                workflow_id=workflow_id,
                folder_id=folder_id,
                assigned_by=assigned_by,
                assigned_at=now,
            )
            session.add(record)
        else:
            record.folder_id = folder_id
            record.assigned_by = assigned_by
            record.assigned_at = now
        return record

    def assign(self, workflow_id: str, folder_id: str, assigned_by: str) -> WorkflowBinding:
        with self._session() as session:
            record = self._assign(session, workflow_id, folder_id, assigned_by)
            try:
                session.flush()
            except IntegrityError as exc:
                raise _conflict(exc, "assign_workflow") from exc
            return WorkflowBinding.model_validate(record)

    def assign_many(
        self, workflow_ids: Iterable[str], folder_id: str, assigned_by: str
    ) -> List[WorkflowBinding]:
        with self._session() as session:
            records = [
                self._assign(session, wid, folder_id, assigned_by)
                for wid in dict.fromkeys(workflow_ids)
            ]
            try:
                session.flush()
            except IntegrityError as exc:
                raise _conflict(exc, "assign_workflows") from exc
            return [WorkflowBinding.model_validate(r) for r in records]

    def unassign(self, workflow_id: str) -> bool:
        stmt = delete(WorkflowFolderRecord).where(WorkflowFolderRecord.workflow_id == workflow_id)
        with self._session() as session:
            return session.execute(stmt).rowcount > 0

    def unassign_all_for_folder(self, folder_id: str) -> int:
        stmt = delete(WorkflowFolderRecord).where(WorkflowFolderRecord.folder_id == folder_id)
        with self._session() as session:
            return session.execute(stmt).rowcount

    def count_by_folder(self) -> Dict[str, int]:
        stmt = select(WorkflowFolderRecord.folder_id, func.count()).group_by(
            WorkflowFolderRecord.folder_id
        )
        with self._session() as session:
            return {fid: count for fid, count in session.execute(stmt)}


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------

class SqlStores(StoreBundle):
    """
    SQL-backed store bundle.

    Usage:
        factory = init_db("postgresql://...")
        stores = SqlStores(factory)
        with stores.transaction():
            stores.folders.update(...)
            stores.bindings.unassign_all_for_folder(...)
    """

    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory
        self._current: ContextVar[Optional[Session]] = ContextVar(
            f"flowfolders_session_{id(self)}", default=None
        )
        self.folders = SqlFolderStore(self._session)
        self.permissions = SqlPermissionStore(self._session)
        self.bindings = SqlWorkflowBindingStore(self._session)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Yield the transaction's session, or a short-lived one that commits on exit."""
        current = self._current.get()
        if current is not None:
            yield current
            return

        try:
            with session_scope(self._factory) as session:
                yield session
        except IntegrityError as exc:
            raise _conflict(exc, "commit") from exc

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._current.get() is not None:
            yield
            return

        try:
            with session_scope(self._factory) as session:
                token = self._current.set(session)
                try:
                    yield
                except Exception:
                    logger.debug("SQL transaction rolled back")
                    raise
                finally:
                    self._current.reset(token)
        except IntegrityError as exc:
            raise _conflict(exc, "transaction") from exc
