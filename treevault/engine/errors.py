"""
TreeVault Error Hierarchy — Structured exceptions with stable machine-readable codes.

Every error carries the operation that failed and the id(s) involved so the
request layer can log and correlate without re-deriving context.
NotFound and Forbidden are distinct types; whether a Forbidden is masked as a
NotFound towards the client is decided by the caller, never here.

Hierarchy:
    TreeVaultError
    ├── TreeVaultValidationError   — Client input malformed (400)
    ├── TreeVaultNotFoundError     — Folder/file/permission missing (404)
    ├── TreeVaultForbiddenError    — Resource exists, caller lacks rights (403)
    ├── TreeVaultConflictError     — Duplicate sibling name / upload (409)
    ├── TreeVaultDependencyError   — Blob store or database call failed (502)
    └── TreeVaultConfigError       — Configuration or server-side constant error (500)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class TreeVaultError(Exception):
    """
    Base error for all TreeVault failures.
    All context is serializable to JSON.
    """

    default_code = "TREEVAULT_ERROR"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.code: str = context.get("code") or self.default_code
        self.operation: Optional[str] = context.get("operation")
        self.resource_id: Optional[str] = context.get("resource_id")
        self.resource_type: Optional[str] = context.get("resource_type")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging and responses."""
        return {
            "error_type": self.error_type,
            "code": self.code,
            "status_code": self.status_code,
            "message": self.message,
            "operation": self.operation,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("code", "operation", "resource_id", "resource_type")
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}[{self.code}]: {self.message}"]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.resource_id:
            parts.append(f"resource_id={self.resource_id}")
        return " | ".join(parts)


class TreeVaultValidationError(TreeVaultError):
    """
    Client-input fault (malformed id, missing field, out-of-range size).
    Never retried.
    """

    default_code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.field: Optional[str] = context.get("field")
        self.validation_errors: Optional[List[Any]] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field
        d["validation_errors"] = self.validation_errors
        return d


class TreeVaultNotFoundError(TreeVaultError):
    """Folder, file, permission or parent does not exist."""

    default_code = "NOT_FOUND"
    status_code = 404


class TreeVaultForbiddenError(TreeVaultError):
    """
    Resource exists but the caller lacks the required action.
    Includes user_id and required_permission.
    """

    default_code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str, **context: Any):
        self.user_id: Optional[str] = context.get("user_id")
        self.required_permission: Optional[str] = context.get("required_permission")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["user_id"] = self.user_id
        d["required_permission"] = self.required_permission
        return d


class TreeVaultConflictError(TreeVaultError):
    """Duplicate sibling name or duplicate record. Resubmit with different input."""

    default_code = "CONFLICT"
    status_code = 409


class TreeVaultDependencyError(TreeVaultError):
    """
    Blob store or persistence store call failed.
    Propagated to the caller's retry layer; never retried in-process.
    """

    default_code = "DEPENDENCY_FAILURE"
    status_code = 502

    def __init__(self, message: str, **context: Any):
        self.dependency: Optional[str] = context.get("dependency")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["dependency"] = self.dependency
        return d


class TreeVaultConfigError(TreeVaultError):
    """Invalid treevault.yaml or an invalid server-side constant (e.g. action name)."""

    default_code = "CONFIG_ERROR"
    status_code = 500
