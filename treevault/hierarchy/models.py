"""
TreeVault Hierarchy Models — Pydantic views of folders, files and upload tickets.

Also owns the identifier and naming rules shared by every layer:
- new_id() / validate_id(): UUID string ids
- sanitize_name(): [A-Za-z0-9._-] only, trimmed, length-capped
- folder_prefix() / root_prefix() / file_storage_key(): deterministic blob keys
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from treevault.engine.errors import TreeVaultValidationError

FOLDER_NAME_MAX_LENGTH = 120
FILE_NAME_MAX_LENGTH = 180

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


# ---------------------------------------------------------------------------
# Identifiers & names
# ---------------------------------------------------------------------------

def new_id() -> str:
    return str(uuid.uuid4())


def validate_id(value: Optional[str], field: str = "id", operation: Optional[str] = None) -> str:
    """Return the canonical id string or raise INVALID_ID."""
    if not isinstance(value, str) or not value:
        raise TreeVaultValidationError(
            f"Missing {field}", code="INVALID_ID", field=field, operation=operation,
        )
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        raise TreeVaultValidationError(
            f"Malformed {field}: '{value}'", code="INVALID_ID", field=field, operation=operation,
        ) from None
    return str(parsed)


def sanitize_name(
    name: Optional[str],
    max_length: int,
    field: str = "name",
    operation: Optional[str] = None,
) -> str:
    """
    Trim, replace every character outside [A-Za-z0-9._-] with '_', then truncate.

    >>> sanitize_name("  my report (v2).pdf ", 180)
    'my_report__v2_.pdf'
    """
    if name is not None and not isinstance(name, str):
        raise TreeVaultValidationError(
            f"{field.capitalize()} must be a string, got {type(name).__name__}",
            code="INVALID_NAME",
            field=field,
            operation=operation,
        )
    trimmed = (name or "").strip()
    if not trimmed:
        raise TreeVaultValidationError(
            f"{field.capitalize()} must not be empty", code="INVALID_NAME", field=field, operation=operation,
        )
    return _UNSAFE_NAME_CHARS.sub("_", trimmed)[:max_length]


def folder_prefix(workspace_id: str, folder_id: str) -> str:
    return f"{workspace_id}/folders/{folder_id}/"


def root_prefix(workspace_id: str) -> str:
    return f"{workspace_id}/root/"


def file_storage_key(prefix: str, file_id: str, sanitized_name: str) -> str:
    return f"{prefix}files/{file_id}-{sanitized_name}"


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

class Folder(BaseModel):
    id: str
    name: str
    owner_id: str
    workspace_id: str
    parent_id: Optional[str] = None
    storage_prefix: str
    child_file_ids: List[str] = Field(default_factory=list)
    child_folder_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class File(BaseModel):
    id: str
    name: str
    owner_id: str
    workspace_id: str
    folder_id: Optional[str] = None
    size_bytes: int = Field(ge=0)
    content_type: Optional[str] = None
    storage_key: str
    download_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UploadTicket(BaseModel):
    """Returned by start_upload; nothing is persisted until complete_upload."""

    file_id: str
    storage_key: str
    upload_url: str
    normalized_name: str
    expires_in: int


class DeletionReport(BaseModel):
    folder_ids: List[str] = Field(default_factory=list)
    file_ids: List[str] = Field(default_factory=list)
    prefixes: List[str] = Field(default_factory=list)


class FolderListItem(BaseModel):
    """One entry of list_items(): a child folder or a child file."""

    id: str
    name: str
    kind: str  # "folder" | "file"
    owner_id: str
    item_count: Optional[int] = None
    size_bytes: Optional[int] = None
    content_type: Optional[str] = None
    download_url: Optional[str] = None
    updated_at: Optional[datetime] = None
