"""
TreeVault Folder & File Hierarchy.

Metadata records for folders and files, their child-id sets and the
lifecycle services that keep them consistent with the blob store.
"""

from treevault.hierarchy.models import DeletionReport, File, Folder, FolderListItem, UploadTicket
from treevault.hierarchy.service import FileService, FolderService
from treevault.hierarchy.store import HierarchyStore

__all__ = [
    "DeletionReport",
    "File",
    "Folder",
    "FolderListItem",
    "UploadTicket",
    "FileService",
    "FolderService",
    "HierarchyStore",
]
