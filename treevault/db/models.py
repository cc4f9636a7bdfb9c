"""
TreeVault Persistence Models — SQLAlchemy tables for the hierarchy and grants.

Tables:
1. folders          — Folder nodes (parent pointer, immutable storage prefix)
2. folder_children  — Child-id sets of a folder, one row per (parent, child)
3. files            — File metadata (immutable storage key)
4. permissions      — Global or resource-scoped grants, one row per (user, scope)

The tree is an arena of id-keyed rows: traversal always goes through id
lookups, never through ORM relationships.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Index,
    JSON,
    String,
    UniqueConstraint,
)

from treevault.db.base import AuditMixin, Base

ID_LENGTH = 36


# ---------------------------------------------------------------------------
# 1. Folders
# ---------------------------------------------------------------------------

class FolderRow(Base, AuditMixin):
    __tablename__ = "folders"

    id = Column(String(ID_LENGTH), primary_key=True)
    name = Column(String(255), nullable=False)
    owner_id = Column(String(ID_LENGTH), nullable=False, index=True)
    workspace_id = Column(String(ID_LENGTH), nullable=False, index=True)
    parent_id = Column(String(ID_LENGTH), nullable=True, index=True)
    storage_prefix = Column(String(512), nullable=False, unique=True)

    # Postgres treats NULLs as distinct in unique constraints, so root-level
    # sibling uniqueness is enforced by the service before insert.
    __table_args__ = (
        UniqueConstraint("workspace_id", "parent_id", "name", name="uq_folder_sibling_name"),
    )

    def __repr__(self) -> str:
        return f"<FolderRow(id={self.id}, name='{self.name}', parent={self.parent_id})>"


# ---------------------------------------------------------------------------
# 2. Folder child-id sets
# ---------------------------------------------------------------------------

class FolderChildRow(Base):
    __tablename__ = "folder_children"

    parent_id = Column(String(ID_LENGTH), primary_key=True)
    child_id = Column(String(ID_LENGTH), primary_key=True)
    child_type = Column(String(10), nullable=False)

    __table_args__ = (
        CheckConstraint("child_type IN ('file', 'folder')", name="ck_folder_children_type"),
        Index("idx_fc_child_id", "child_id"),
    )


# ---------------------------------------------------------------------------
# 3. Files
# ---------------------------------------------------------------------------

class FileRow(Base, AuditMixin):
    __tablename__ = "files"

    id = Column(String(ID_LENGTH), primary_key=True)
    name = Column(String(255), nullable=False)
    owner_id = Column(String(ID_LENGTH), nullable=False, index=True)
    workspace_id = Column(String(ID_LENGTH), nullable=False, index=True)
    folder_id = Column(String(ID_LENGTH), nullable=True, index=True)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    content_type = Column(String(255), nullable=True)
    storage_key = Column(String(1024), nullable=False, unique=True)

    __table_args__ = (
        CheckConstraint("size_bytes >= 0", name="ck_files_size_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<FileRow(id={self.id}, name='{self.name}', folder={self.folder_id})>"


# ---------------------------------------------------------------------------
# 4. Permissions
# ---------------------------------------------------------------------------

class PermissionRow(Base, AuditMixin):
    __tablename__ = "permissions"

    id = Column(String(ID_LENGTH), primary_key=True)
    user_id = Column(String(ID_LENGTH), nullable=False, index=True)
    # "global" or "<target_type>:<target_id>"; the upsert key together with user_id
    scope = Column(String(64), nullable=False)
    target_type = Column(String(10), nullable=True)
    target_id = Column(String(ID_LENGTH), nullable=True, index=True)
    access_levels = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("user_id", "scope", name="uq_permission_user_scope"),
        CheckConstraint(
            "(target_type IS NULL AND target_id IS NULL) OR "
            "(target_type IN ('file', 'folder') AND target_id IS NOT NULL)",
            name="ck_permissions_target_shape",
        ),
    )

    def __repr__(self) -> str:
        return f"<PermissionRow(id={self.id}, user={self.user_id}, scope='{self.scope}')>"
