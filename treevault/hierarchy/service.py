"""
TreeVault Lifecycle Services — Folder and file create/update/delete orchestration.

Handles:
- Folder creation with sibling-name uniqueness and parent linking
- Recursive subtree delete (blobs first, then metadata, then parent unlink)
- Two-phase upload: start_upload issues a write capability, complete_upload
  persists the record and links it into its folder
- File rename/move/copy and presigned download URLs

Storage keys and prefixes are derived from ids at creation; update payloads
that try to touch them are dropped silently. The only rekey is the blob
relocation a folder delete performs for files moved out of its subtree.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

from treevault.engine.config import MAX_PRESIGN_SECONDS
from treevault.engine.errors import (
    TreeVaultConflictError,
    TreeVaultNotFoundError,
    TreeVaultValidationError,
)
from treevault.engine.logging import log, log_file_operation, log_folder_operation
from treevault.hierarchy.models import (
    FILE_NAME_MAX_LENGTH,
    FOLDER_NAME_MAX_LENGTH,
    DeletionReport,
    File,
    Folder,
    FolderListItem,
    UploadTicket,
    file_storage_key,
    folder_prefix,
    new_id,
    root_prefix,
    sanitize_name,
    validate_id,
)
from treevault.hierarchy.store import HierarchyStore
from treevault.storage.gateway import BlobGateway

logger = logging.getLogger("treevault.hierarchy.service")


def _folder_not_found(folder_id: str, operation: str) -> TreeVaultNotFoundError:
    return TreeVaultNotFoundError(
        f"Folder {folder_id} not found",
        code="FOLDER_NOT_FOUND",
        operation=operation,
        resource_id=folder_id,
        resource_type="folder",
    )


def _file_not_found(file_id: str, operation: str) -> TreeVaultNotFoundError:
    return TreeVaultNotFoundError(
        f"File {file_id} not found",
        code="FILE_NOT_FOUND",
        operation=operation,
        resource_id=file_id,
        resource_type="file",
    )


class FolderService:
    """Folder lifecycle over the hierarchy store and the blob gateway."""

    def __init__(
        self,
        store: HierarchyStore,
        gateway: BlobGateway,
        name_max_length: int = FOLDER_NAME_MAX_LENGTH,
        presign_ttl: int = MAX_PRESIGN_SECONDS,
    ):
        self._store = store
        self._gateway = gateway
        self._name_max_length = name_max_length
        self._presign_ttl = presign_ttl

    def _require_parent(self, parent_id: str, workspace_id: str, operation: str) -> Folder:
        parent = self._store.get_folder(parent_id)
        if parent is None:
            raise _folder_not_found(parent_id, operation)
        if parent.workspace_id != workspace_id:
            raise TreeVaultValidationError(
                f"Parent folder {parent_id} belongs to another workspace",
                code="PARENT_WORKSPACE_MISMATCH",
                operation=operation,
                resource_id=parent_id,
                resource_type="folder",
                field="parent_id",
            )
        return parent

    def _ensure_unique(self, workspace_id: str, parent_id: Optional[str], name: str, operation: str) -> None:
        if self._store.find_folder(workspace_id, parent_id, name) is not None:
            raise TreeVaultConflictError(
                f"A folder named '{name}' already exists here",
                code="FOLDER_NAME_CONFLICT",
                operation=operation,
                resource_id=parent_id,
                resource_type="folder",
            )

    # -------------------------------------------------------------------
    # Create / read
    # -------------------------------------------------------------------

    def create_folder(
        self,
        name: str,
        owner_id: str,
        workspace_id: str,
        parent_id: Optional[str] = None,
    ) -> Folder:
        """
        Create a folder at workspace root or beneath parent_id.

        1. Validate ids and parent (exists, same workspace)
        2. Sanitize the name and check sibling uniqueness
        3. Allocate the id, derive the immutable storage prefix
        4. Persist, then link into the parent's child-folder set

        Raises:
            TreeVaultValidationError, TreeVaultNotFoundError, TreeVaultConflictError
        """
        owner_id = validate_id(owner_id, "owner_id", operation="create_folder")
        workspace_id = validate_id(workspace_id, "workspace_id", operation="create_folder")
        if parent_id is not None:
            parent_id = validate_id(parent_id, "parent_id", operation="create_folder")
            self._require_parent(parent_id, workspace_id, "create_folder")

        clean_name = sanitize_name(name, self._name_max_length, operation="create_folder")
        self._ensure_unique(workspace_id, parent_id, clean_name, "create_folder")

        folder_id = new_id()
        folder = self._store.insert_folder(Folder(
            id=folder_id,
            name=clean_name,
            owner_id=owner_id,
            workspace_id=workspace_id,
            parent_id=parent_id,
            storage_prefix=folder_prefix(workspace_id, folder_id),
        ))
        if parent_id is not None:
            self._store.add_child(parent_id, folder_id, "folder")

        logger.info(f"Created folder '{clean_name}' ({folder_id}) under {parent_id or 'root'}")
        log(log_folder_operation("created", folder_id, workspace_id, owner_id, parent_id=parent_id))
        return folder

    def get_folder(self, folder_id: str) -> Folder:
        folder_id = validate_id(folder_id, "folder_id", operation="get_folder")
        folder = self._store.get_folder(folder_id)
        if folder is None:
            raise _folder_not_found(folder_id, "get_folder")
        return folder

    def list_folders(self, workspace_id: str, owner_id: Optional[str] = None) -> List[Folder]:
        workspace_id = validate_id(workspace_id, "workspace_id", operation="list_folders")
        if owner_id is not None:
            owner_id = validate_id(owner_id, "owner_id", operation="list_folders")
        return self._store.list_folders(workspace_id, owner_id=owner_id)

    def find_by_name(self, workspace_id: str, name: str, parent_id: Optional[str] = None) -> Optional[Folder]:
        workspace_id = validate_id(workspace_id, "workspace_id", operation="find_by_name")
        if parent_id is not None:
            parent_id = validate_id(parent_id, "parent_id", operation="find_by_name")
        clean_name = sanitize_name(name, self._name_max_length, operation="find_by_name")
        return self._store.find_folder(workspace_id, parent_id, clean_name)

    def list_items(self, workspace_id: str, folder_id: Optional[str] = None) -> List[FolderListItem]:
        """
        Immediate children of a folder (or of the workspace root), sorted by name.
        Folders carry their item count, files a presigned download URL.
        """
        workspace_id = validate_id(workspace_id, "workspace_id", operation="list_items")
        if folder_id is not None:
            folder_id = validate_id(folder_id, "folder_id", operation="list_items")
            self._require_parent(folder_id, workspace_id, "list_items")

        folders = self._store.list_folders(workspace_id, parent_id=folder_id, root_only=folder_id is None)
        files = self._store.list_files(workspace_id, folder_id)
        counts = self._store.child_counts([f.id for f in folders])

        items = [
            FolderListItem(
                id=f.id,
                name=f.name,
                kind="folder",
                owner_id=f.owner_id,
                item_count=counts.get(f.id, 0),
                updated_at=f.updated_at,
            )
            for f in folders
        ]
        items.extend(
            FolderListItem(
                id=f.id,
                name=f.name,
                kind="file",
                owner_id=f.owner_id,
                size_bytes=f.size_bytes,
                content_type=f.content_type,
                download_url=self._gateway.presign_read(f.storage_key, self._presign_ttl),
                updated_at=f.updated_at,
            )
            for f in files
        )
        return sorted(items, key=lambda item: (item.name.lower(), item.kind))

    # -------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------

    def update_folder(self, folder_id: str, changes: Dict[str, Any]) -> Folder:
        """
        Rename a folder. Only "name" is writable; every other key
        (ids, parent, storage prefix, child sets) is dropped.
        """
        folder = self.get_folder(folder_id)
        dropped = sorted(k for k in changes if k != "name")
        if dropped:
            logger.debug(f"update_folder({folder.id}) ignoring fields: {dropped}")

        fields: Dict[str, Any] = {}
        if "name" in changes:
            clean_name = sanitize_name(changes["name"], self._name_max_length, operation="update_folder")
            if clean_name != folder.name:
                self._ensure_unique(folder.workspace_id, folder.parent_id, clean_name, "update_folder")
                fields["name"] = clean_name

        if not fields:
            return folder
        updated = self._store.update_folder(folder.id, fields)
        if updated is None:
            raise _folder_not_found(folder.id, "update_folder")
        log(log_folder_operation("updated", folder.id, folder.workspace_id, changes=sorted(fields)))
        return updated

    # -------------------------------------------------------------------
    # Recursive delete
    # -------------------------------------------------------------------

    def _relocate_strays(self, folder: Folder, doomed: Set[str]) -> None:
        """Copy out blobs keyed under folder's prefix whose records live outside the doomed subtree."""
        for file in self._store.files_keyed_under(folder.storage_prefix):
            if file.folder_id in doomed:
                continue
            home = self._store.get_folder(file.folder_id) if file.folder_id is not None else None
            prefix = home.storage_prefix if home is not None else root_prefix(file.workspace_id)
            new_key = file_storage_key(prefix, file.id, file.name)
            self._gateway.copy(file.storage_key, new_key)
            self._store.rekey_file(file.id, new_key)
            logger.info(f"Relocated blob of file {file.id}: {file.storage_key} -> {new_key}")

    def _clear_folder(self, folder: Folder, doomed: Set[str], report: DeletionReport) -> None:
        """Blobs first (strays relocated, moved-in keys, then the prefix), then file rows."""
        self._relocate_strays(folder, doomed)
        for file in self._store.list_files(folder.workspace_id, folder.id):
            if not file.storage_key.startswith(folder.storage_prefix):
                self._gateway.delete_one(file.storage_key)
        self._gateway.delete_prefix(folder.storage_prefix)
        report.prefixes.append(folder.storage_prefix)
        report.file_ids.extend(self._store.delete_files_in_folder(folder.id))

    def delete_folder(self, folder_id: str) -> DeletionReport:
        """
        Delete a folder and its entire subtree.

        Order:
            1. Prefix-delete the target's blobs, delete its file rows
            2. Work stack over child-folder ids: skip missing, prefix-delete,
               delete file rows, push grandchildren, delete the folder row
            3. Unlink the target from its parent, delete the target row

        A blob failure aborts before any metadata of that folder is removed.
        Files moved into the subtree have their blobs deleted by key; files
        moved out of it have their blobs relocated before the prefix goes.
        """
        target = self.get_folder(folder_id)
        report = DeletionReport()
        doomed = {target.id, *self._store.descendants(target.id)[0]}

        self._clear_folder(target, doomed, report)

        stack: List[str] = list(target.child_folder_ids)
        while stack:
            child_id = stack.pop()
            child = self._store.get_folder(child_id)
            if child is None:
                logger.warning(f"Stale child folder link {target.id} -> {child_id}; skipping")
                continue
            self._clear_folder(child, doomed, report)
            stack.extend(child.child_folder_ids)
            self._store.delete_folder_row(child.id)
            report.folder_ids.append(child.id)

        if target.parent_id is not None:
            self._store.remove_child(target.parent_id, target.id)
        self._store.delete_folder_row(target.id)
        report.folder_ids.append(target.id)

        logger.info(
            f"Deleted folder {target.id}: {len(report.folder_ids)} folder(s), "
            f"{len(report.file_ids)} file(s)"
        )
        log(log_folder_operation(
            "deleted",
            target.id,
            target.workspace_id,
            folder_count=len(report.folder_ids),
            file_count=len(report.file_ids),
        ))
        return report


class FileService:
    """File lifecycle: two-phase upload, rename/move, copy, delete."""

    def __init__(
        self,
        store: HierarchyStore,
        gateway: BlobGateway,
        name_max_length: int = FILE_NAME_MAX_LENGTH,
        presign_ttl: int = MAX_PRESIGN_SECONDS,
    ):
        self._store = store
        self._gateway = gateway
        self._name_max_length = name_max_length
        self._presign_ttl = min(presign_ttl, MAX_PRESIGN_SECONDS)

    def _prefix_for(self, workspace_id: str, folder_id: Optional[str], operation: str) -> str:
        """Storage prefix of the destination folder, checking it exists in workspace_id."""
        if folder_id is None:
            return root_prefix(workspace_id)
        folder = self._store.get_folder(folder_id)
        if folder is None:
            raise _folder_not_found(folder_id, operation)
        if folder.workspace_id != workspace_id:
            raise TreeVaultValidationError(
                f"Folder {folder_id} belongs to another workspace",
                code="PARENT_WORKSPACE_MISMATCH",
                operation=operation,
                resource_id=folder_id,
                resource_type="folder",
                field="folder_id",
            )
        return folder.storage_prefix

    @staticmethod
    def _validate_size(file_size: Any, operation: str) -> int:
        if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0:
            raise TreeVaultValidationError(
                f"file_size must be a non-negative integer, got {file_size!r}",
                code="INVALID_FILE_SIZE",
                field="file_size",
                operation=operation,
            )
        return file_size

    # -------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------

    def start_upload(
        self,
        workspace_id: str,
        owner_id: str,
        folder_id: Optional[str],
        file_name: str,
        file_size: int,
        content_type: Optional[str] = None,
    ) -> UploadTicket:
        """Allocate a file id and key and issue a write capability. Persists nothing."""
        workspace_id = validate_id(workspace_id, "workspace_id", operation="start_upload")
        validate_id(owner_id, "owner_id", operation="start_upload")
        if folder_id is not None:
            folder_id = validate_id(folder_id, "folder_id", operation="start_upload")
        self._validate_size(file_size, "start_upload")

        prefix = self._prefix_for(workspace_id, folder_id, "start_upload")
        clean_name = sanitize_name(file_name, self._name_max_length, field="file_name", operation="start_upload")
        file_id = new_id()
        key = file_storage_key(prefix, file_id, clean_name)
        url = self._gateway.presign_write(key, content_type, self._presign_ttl)

        log(log_file_operation("upload_started", file_id, workspace_id, owner_id, size_bytes=file_size))
        return UploadTicket(
            file_id=file_id,
            storage_key=key,
            upload_url=url,
            normalized_name=clean_name,
            expires_in=self._presign_ttl,
        )

    def complete_upload(
        self,
        workspace_id: str,
        owner_id: str,
        folder_id: Optional[str],
        file_id: str,
        file_name: str,
        file_size: int,
        storage_key: str,
        content_type: Optional[str] = None,
    ) -> File:
        """
        Record an uploaded object and link it into its folder.

        Raises:
            TreeVaultValidationError: key does not match (workspace, folder, id, name)
            TreeVaultConflictError:   file id already recorded
        """
        workspace_id = validate_id(workspace_id, "workspace_id", operation="complete_upload")
        owner_id = validate_id(owner_id, "owner_id", operation="complete_upload")
        file_id = validate_id(file_id, "file_id", operation="complete_upload")
        if folder_id is not None:
            folder_id = validate_id(folder_id, "folder_id", operation="complete_upload")
        self._validate_size(file_size, "complete_upload")

        prefix = self._prefix_for(workspace_id, folder_id, "complete_upload")
        clean_name = sanitize_name(file_name, self._name_max_length, field="file_name", operation="complete_upload")
        expected_key = file_storage_key(prefix, file_id, clean_name)
        if storage_key != expected_key:
            raise TreeVaultValidationError(
                "Storage key does not match the upload",
                code="STORAGE_KEY_MISMATCH",
                operation="complete_upload",
                resource_id=file_id,
                resource_type="file",
                field="storage_key",
            )

        if self._store.get_file(file_id) is not None:
            raise TreeVaultConflictError(
                f"File {file_id} has already been recorded",
                code="FILE_ALREADY_EXISTS",
                operation="complete_upload",
                resource_id=file_id,
                resource_type="file",
            )

        file = self._store.insert_file(File(
            id=file_id,
            name=clean_name,
            owner_id=owner_id,
            workspace_id=workspace_id,
            folder_id=folder_id,
            size_bytes=file_size,
            content_type=content_type,
            storage_key=expected_key,
        ))
        if folder_id is not None:
            self._store.add_child(folder_id, file_id, "file")

        logger.info(f"Recorded file '{clean_name}' ({file_id}) in {folder_id or 'root'}")
        log(log_file_operation("upload_completed", file_id, workspace_id, owner_id, folder_id=folder_id))
        return file

    # -------------------------------------------------------------------
    # Read / update
    # -------------------------------------------------------------------

    def get_file(self, file_id: str, with_download_url: bool = True) -> File:
        file_id = validate_id(file_id, "file_id", operation="get_file")
        file = self._store.get_file(file_id)
        if file is None:
            raise _file_not_found(file_id, "get_file")
        if with_download_url:
            file = file.model_copy(update={
                "download_url": self._gateway.presign_read(file.storage_key, self._presign_ttl),
            })
        return file

    def update_file(self, file_id: str, changes: Dict[str, Any]) -> File:
        """
        Rename and/or move a file within its workspace.

        Writable keys: "name", "folder_id" (None moves to root). Metadata only:
        the blob stays at its original key (until its old folder is deleted)
        and no grants are re-propagated.
        """
        file = self.get_file(file_id, with_download_url=False)
        dropped = sorted(k for k in changes if k not in ("name", "folder_id"))
        if dropped:
            logger.debug(f"update_file({file.id}) ignoring fields: {dropped}")

        fields: Dict[str, Any] = {}
        if "name" in changes:
            fields["name"] = sanitize_name(changes["name"], self._name_max_length, operation="update_file")

        moving = "folder_id" in changes and changes["folder_id"] != file.folder_id
        if moving:
            target_id = changes["folder_id"]
            if target_id is not None:
                target_id = validate_id(target_id, "folder_id", operation="update_file")
            self._prefix_for(file.workspace_id, target_id, "update_file")
            fields["folder_id"] = target_id

        if not fields:
            return file
        updated = self._store.update_file(file.id, fields)
        if updated is None:
            raise _file_not_found(file.id, "update_file")

        if moving:
            if file.folder_id is not None:
                self._store.remove_child(file.folder_id, file.id)
            if fields["folder_id"] is not None:
                self._store.add_child(fields["folder_id"], file.id, "file")

        log(log_file_operation("updated", file.id, file.workspace_id, changes=sorted(fields)))
        return updated

    def copy_file(self, file_id: str, owner_id: str, target_folder_id: Optional[str] = None) -> File:
        """Server-side copy into target_folder_id (root when None) as a new record owned by owner_id."""
        source = self.get_file(file_id, with_download_url=False)
        owner_id = validate_id(owner_id, "owner_id", operation="copy_file")
        if target_folder_id is not None:
            target_folder_id = validate_id(target_folder_id, "folder_id", operation="copy_file")

        prefix = self._prefix_for(source.workspace_id, target_folder_id, "copy_file")
        copy_id = new_id()
        key = file_storage_key(prefix, copy_id, source.name)
        self._gateway.copy(source.storage_key, key)

        copied = self._store.insert_file(File(
            id=copy_id,
            name=source.name,
            owner_id=owner_id,
            workspace_id=source.workspace_id,
            folder_id=target_folder_id,
            size_bytes=source.size_bytes,
            content_type=source.content_type,
            storage_key=key,
        ))
        if target_folder_id is not None:
            self._store.add_child(target_folder_id, copy_id, "file")

        log(log_file_operation("copied", copy_id, source.workspace_id, owner_id, source_id=source.id))
        return copied

    # -------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------

    def delete_file(self, file_id: str) -> File:
        """Unlink from the folder, delete the blob, then delete the record."""
        file = self.get_file(file_id, with_download_url=False)

        if file.folder_id is not None:
            self._store.remove_child(file.folder_id, file.id)
        self._gateway.delete_one(file.storage_key)
        if not self._store.delete_file_row(file.id):
            raise _file_not_found(file.id, "delete_file")

        logger.info(f"Deleted file {file.id} ({file.storage_key})")
        log(log_file_operation("deleted", file.id, file.workspace_id))
        return file
