"""
flowfolders SQL Models — Tables backing the SQL store implementations.

Tables:
1. users                — Display info joined into grant listings (owned by the auth layer)
2. folders              — Folder forest (parent_id self-reference)
3. folder_permissions   — One grant per (folder, user)
4. workflow_folders     — workflow → folder binding, one per workflow
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)

from flowfolders.db.base import Base, TimestampMixin

ID_LENGTH = 64


# ---------------------------------------------------------------------------
# 1. Users
# ---------------------------------------------------------------------------

class UserRecord(Base):
    __tablename__ = "users"

    id = Column(String(ID_LENGTH), primary_key=True)
    name = Column(String(200), nullable=True)
    email = Column(String(255), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<UserRecord(id={self.id}, email='{self.email}')>"


# ---------------------------------------------------------------------------
# 2. Folders
# ---------------------------------------------------------------------------

class FolderRecord(Base, TimestampMixin):
    __tablename__ = "folders"

    id = Column(String(ID_LENGTH), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    # No FK: the engine enforces the reference so corrupted rows stay readable
    parent_id = Column(String(ID_LENGTH), nullable=True, index=True)
    created_by = Column(String(ID_LENGTH), nullable=False)

    __table_args__ = (
        UniqueConstraint("parent_id", "name", name="uq_folders_parent_name"),
        CheckConstraint("parent_id IS NULL OR parent_id <> id", name="ck_folders_not_self_parent"),
    )

    def __repr__(self) -> str:
        return f"<FolderRecord(id={self.id}, name='{self.name}', parent_id={self.parent_id})>"


# ---------------------------------------------------------------------------
# 3. Folder permissions
# ---------------------------------------------------------------------------

class FolderPermissionRecord(Base):
    __tablename__ = "folder_permissions"

    folder_id = Column(
        String(ID_LENGTH), ForeignKey("folders.id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(String(ID_LENGTH), primary_key=True)
    level = Column(String(20), nullable=False)
    granted_by = Column(String(ID_LENGTH), nullable=False)
    granted_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("folder_id", "user_id", name="uq_folder_permission_folder_user"),
        CheckConstraint(
            "level IN ('viewer', 'executor', 'editor', 'admin')",
            name="ck_folder_permissions_level",
        ),
        Index("idx_fp_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<FolderPermissionRecord(folder={self.folder_id}, user={self.user_id}, level='{self.level}')>"


# ---------------------------------------------------------------------------
# 4. Workflow ↔ folder bindings
# ---------------------------------------------------------------------------

class WorkflowFolderRecord(Base):
    __tablename__ = "workflow_folders"

    workflow_id = Column(String(ID_LENGTH), primary_key=True)
    folder_id = Column(
        String(ID_LENGTH), ForeignKey("folders.id", ondelete="CASCADE"), nullable=False
    )
    assigned_by = Column(String(ID_LENGTH), nullable=False)
    assigned_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("idx_wf_folder_id", "folder_id"),
    )

    def __repr__(self) -> str:
        return f"<WorkflowFolderRecord(workflow={self.workflow_id}, folder={self.folder_id})>"
