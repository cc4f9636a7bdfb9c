"""
TreeVault Hierarchy Store — Persisted arena of folders, files and child-id sets.

Every operation is a short transaction through session_scope(). Rows are
addressed by id only; the lifecycle layer composes these primitives into
multi-step operations (create + link, recursive delete).

Child-id sets:
    add_child()    — insert one folder_children row; a duplicate means "already linked"
    remove_child() — delete one row; removing an absent child is a no-op

Descendant walk:
    descendants() — iterative breadth-first over parent pointers, one query per
                    level for folders and one batched query for their files.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from treevault.db.models import FileRow, FolderChildRow, FolderRow
from treevault.db.session import session_scope
from treevault.engine.errors import TreeVaultConflictError, TreeVaultDependencyError
from treevault.hierarchy.models import File, Folder

logger = logging.getLogger("treevault.hierarchy.store")

# Upper bound for IN (...) lists in batched queries
IN_CHUNK_SIZE = 500

FOLDER_FIELDS = ("name", "parent_id")
FILE_FIELDS = ("name", "folder_id", "size_bytes", "content_type")


def chunked(values: Sequence[str], size: int = IN_CHUNK_SIZE) -> Generator[Sequence[str], None, None]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class HierarchyStore:
    """Folder/file metadata persistence over an injected session factory."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, resource_id: Optional[str] = None) -> Generator[Session, None, None]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database failure during {operation} ({resource_id}): {e}")
            raise TreeVaultDependencyError(
                f"Database failure during {operation}",
                dependency="database",
                operation=operation,
                resource_id=resource_id,
            ) from e

    # -------------------------------------------------------------------
    # Row → view conversion
    # -------------------------------------------------------------------

    @staticmethod
    def _folder_view(row: FolderRow, links: Iterable[FolderChildRow] = ()) -> Folder:
        files: List[str] = []
        folders: List[str] = []
        for link in links:
            (files if link.child_type == "file" else folders).append(link.child_id)
        return Folder(
            id=row.id,
            name=row.name,
            owner_id=row.owner_id,
            workspace_id=row.workspace_id,
            parent_id=row.parent_id,
            storage_prefix=row.storage_prefix,
            child_file_ids=sorted(files),
            child_folder_ids=sorted(folders),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _file_view(row: FileRow) -> File:
        return File(
            id=row.id,
            name=row.name,
            owner_id=row.owner_id,
            workspace_id=row.workspace_id,
            folder_id=row.folder_id,
            size_bytes=row.size_bytes,
            content_type=row.content_type,
            storage_key=row.storage_key,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # -------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        with self._session("get_folder", folder_id) as session:
            row = session.get(FolderRow, folder_id)
            if row is None:
                return None
            links = session.scalars(
                select(FolderChildRow).where(FolderChildRow.parent_id == folder_id)
            ).all()
            return self._folder_view(row, links)

    def folder_owner(self, folder_id: str) -> Optional[str]:
        """Owner id of a folder, or None when it does not exist."""
        with self._session("folder_owner", folder_id) as session:
            return session.scalar(select(FolderRow.owner_id).where(FolderRow.id == folder_id))

    def find_folder(self, workspace_id: str, parent_id: Optional[str], name: str) -> Optional[Folder]:
        """Sibling lookup by exact (sanitized) name."""
        with self._session("find_folder", parent_id) as session:
            stmt = select(FolderRow).where(
                FolderRow.workspace_id == workspace_id,
                FolderRow.name == name,
            )
            if parent_id is None:
                stmt = stmt.where(FolderRow.parent_id.is_(None))
            else:
                stmt = stmt.where(FolderRow.parent_id == parent_id)
            row = session.scalars(stmt.limit(1)).first()
            return self._folder_view(row) if row is not None else None

    def list_folders(
        self,
        workspace_id: str,
        owner_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        root_only: bool = False,
    ) -> List[Folder]:
        with self._session("list_folders", workspace_id) as session:
            stmt = select(FolderRow).where(FolderRow.workspace_id == workspace_id)
            if owner_id is not None:
                stmt = stmt.where(FolderRow.owner_id == owner_id)
            if parent_id is not None:
                stmt = stmt.where(FolderRow.parent_id == parent_id)
            elif root_only:
                stmt = stmt.where(FolderRow.parent_id.is_(None))
            rows = session.scalars(stmt.order_by(FolderRow.name)).all()
            return [self._folder_view(row) for row in rows]

    def insert_folder(self, folder: Folder) -> Folder:
        """
        Persist a new folder row.

        Raises:
            TreeVaultConflictError when a sibling with the same name won a race.
        """
        try:
            with self._session("create_folder", folder.id) as session:
                row = FolderRow(
                    id=folder.id,
                    name=folder.name,
                    owner_id=folder.owner_id,
                    workspace_id=folder.workspace_id,
                    parent_id=folder.parent_id,
                    storage_prefix=folder.storage_prefix,
                )
                session.add(row)
                session.flush()
                return self._folder_view(row)
        except IntegrityError as e:
            raise TreeVaultConflictError(
                f"A folder named '{folder.name}' already exists here",
                code="FOLDER_NAME_CONFLICT",
                operation="create_folder",
                resource_id=folder.parent_id,
                resource_type="folder",
            ) from e

    def update_folder(self, folder_id: str, fields: Dict[str, Any]) -> Optional[Folder]:
        """Apply whitelisted field changes. Returns None if the folder is gone."""
        try:
            with self._session("update_folder", folder_id) as session:
                row = session.get(FolderRow, folder_id)
                if row is None:
                    return None
                for key, value in fields.items():
                    if key in FOLDER_FIELDS:
                        setattr(row, key, value)
                session.flush()
                links = session.scalars(
                    select(FolderChildRow).where(FolderChildRow.parent_id == folder_id)
                ).all()
                return self._folder_view(row, links)
        except IntegrityError as e:
            raise TreeVaultConflictError(
                f"A folder named '{fields.get('name')}' already exists here",
                code="FOLDER_NAME_CONFLICT",
                operation="update_folder",
                resource_id=folder_id,
                resource_type="folder",
            ) from e

    def delete_folder_row(self, folder_id: str) -> bool:
        """Delete a folder row together with its own child-id set."""
        with self._session("delete_folder", folder_id) as session:
            session.query(FolderChildRow).filter(FolderChildRow.parent_id == folder_id).delete(
                synchronize_session=False
            )
            deleted = session.query(FolderRow).filter(FolderRow.id == folder_id).delete(
                synchronize_session=False
            )
            return deleted > 0

    def child_counts(self, folder_ids: Sequence[str]) -> Dict[str, int]:
        """Number of linked children (files + folders) per folder id."""
        counts: Dict[str, int] = {folder_id: 0 for folder_id in folder_ids}
        if not folder_ids:
            return counts
        with self._session("child_counts") as session:
            for chunk in chunked(list(folder_ids)):
                stmt = (
                    select(FolderChildRow.parent_id, func.count())
                    .where(FolderChildRow.parent_id.in_(chunk))
                    .group_by(FolderChildRow.parent_id)
                )
                for parent_id, count in session.execute(stmt):
                    counts[parent_id] = count
        return counts

    # -------------------------------------------------------------------
    # Child-id sets
    # -------------------------------------------------------------------

    def add_child(self, parent_id: str, child_id: str, child_type: str) -> bool:
        """Link a child. Returns False when it was already linked."""
        try:
            with self._session("add_child", parent_id) as session:
                session.add(FolderChildRow(parent_id=parent_id, child_id=child_id, child_type=child_type))
            return True
        except IntegrityError:
            logger.debug(f"{child_type} {child_id} already linked under {parent_id}")
            return False

    def remove_child(self, parent_id: str, child_id: str) -> bool:
        """Unlink a child. Returns False when it was not linked."""
        with self._session("remove_child", parent_id) as session:
            deleted = session.query(FolderChildRow).filter(
                FolderChildRow.parent_id == parent_id,
                FolderChildRow.child_id == child_id,
            ).delete(synchronize_session=False)
            return deleted > 0

    def child_ids(self, parent_id: str, child_type: str) -> List[str]:
        with self._session("child_ids", parent_id) as session:
            return list(session.scalars(
                select(FolderChildRow.child_id).where(
                    FolderChildRow.parent_id == parent_id,
                    FolderChildRow.child_type == child_type,
                )
            ).all())

    # -------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------

    def get_file(self, file_id: str) -> Optional[File]:
        with self._session("get_file", file_id) as session:
            row = session.get(FileRow, file_id)
            return self._file_view(row) if row is not None else None

    def file_owner(self, file_id: str) -> Optional[str]:
        with self._session("file_owner", file_id) as session:
            return session.scalar(select(FileRow.owner_id).where(FileRow.id == file_id))

    def list_files(self, workspace_id: str, folder_id: Optional[str]) -> List[File]:
        """Files directly inside a folder (or at workspace root when folder_id is None)."""
        with self._session("list_files", folder_id) as session:
            stmt = select(FileRow).where(FileRow.workspace_id == workspace_id)
            if folder_id is None:
                stmt = stmt.where(FileRow.folder_id.is_(None))
            else:
                stmt = stmt.where(FileRow.folder_id == folder_id)
            rows = session.scalars(stmt.order_by(FileRow.name)).all()
            return [self._file_view(row) for row in rows]

    def insert_file(self, file: File) -> File:
        """
        Persist a new file row.

        Raises:
            TreeVaultConflictError when the id or storage key is already taken.
        """
        try:
            with self._session("complete_upload", file.id) as session:
                row = FileRow(
                    id=file.id,
                    name=file.name,
                    owner_id=file.owner_id,
                    workspace_id=file.workspace_id,
                    folder_id=file.folder_id,
                    size_bytes=file.size_bytes,
                    content_type=file.content_type,
                    storage_key=file.storage_key,
                )
                session.add(row)
                session.flush()
                return self._file_view(row)
        except IntegrityError as e:
            raise TreeVaultConflictError(
                f"File {file.id} has already been recorded",
                code="FILE_ALREADY_EXISTS",
                operation="complete_upload",
                resource_id=file.id,
                resource_type="file",
            ) from e

    def update_file(self, file_id: str, fields: Dict[str, Any]) -> Optional[File]:
        with self._session("update_file", file_id) as session:
            row = session.get(FileRow, file_id)
            if row is None:
                return None
            for key, value in fields.items():
                if key in FILE_FIELDS:
                    setattr(row, key, value)
            session.flush()
            return self._file_view(row)

    def files_keyed_under(self, prefix: str) -> List[File]:
        """Files whose blob key lies under prefix, wherever their record now sits."""
        with self._session("files_keyed_under", prefix) as session:
            rows = session.scalars(
                select(FileRow).where(FileRow.storage_key.startswith(prefix, autoescape=True))
            ).all()
            return [self._file_view(row) for row in rows]

    def rekey_file(self, file_id: str, storage_key: str) -> Optional[File]:
        """Point a file record at a relocated blob."""
        with self._session("rekey_file", file_id) as session:
            row = session.get(FileRow, file_id)
            if row is None:
                return None
            row.storage_key = storage_key
            session.flush()
            return self._file_view(row)

    def delete_file_row(self, file_id: str) -> bool:
        with self._session("delete_file", file_id) as session:
            deleted = session.query(FileRow).filter(FileRow.id == file_id).delete(
                synchronize_session=False
            )
            return deleted > 0

    def delete_files_in_folder(self, folder_id: str) -> List[str]:
        """Delete every file row whose folder_id is this folder. Returns the removed ids."""
        with self._session("delete_files_in_folder", folder_id) as session:
            ids = list(session.scalars(select(FileRow.id).where(FileRow.folder_id == folder_id)).all())
            if ids:
                session.query(FileRow).filter(FileRow.folder_id == folder_id).delete(
                    synchronize_session=False
                )
            return ids

    # -------------------------------------------------------------------
    # Subtree walk
    # -------------------------------------------------------------------

    def descendants(self, folder_id: str) -> Tuple[List[str], List[str]]:
        """
        Enumerate every folder and file strictly beneath folder_id.

        Returns (folder_ids, file_ids). Uses parent pointers rather than the
        child-id sets, so a stale link never hides a real descendant.
        """
        folder_ids: List[str] = []
        file_ids: List[str] = []
        seen = {folder_id}
        level = [folder_id]

        with self._session("descendants", folder_id) as session:
            while level:
                next_level: List[str] = []
                for chunk in chunked(level):
                    file_ids.extend(session.scalars(
                        select(FileRow.id).where(FileRow.folder_id.in_(chunk))
                    ).all())
                    for child_id in session.scalars(
                        select(FolderRow.id).where(FolderRow.parent_id.in_(chunk))
                    ).all():
                        # guards against a corrupted parent cycle
                        if child_id not in seen:
                            seen.add(child_id)
                            next_level.append(child_id)
                folder_ids.extend(next_level)
                level = next_level

        return folder_ids, file_ids
