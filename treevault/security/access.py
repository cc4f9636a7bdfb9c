"""
TreeVault Access Vocabulary — Fixed action set and permission shapes.

Actions: read | write | create | delete | owner  (closed set)
Shapes:
    global            — target is None, applies to every resource
    resource-scoped   — target = ResourceTarget(type=file|folder, id=...)

The "owner" action is a grantable capability for non-owners; actual owners
bypass the vocabulary entirely in the resolver.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from treevault.engine.errors import TreeVaultConfigError, TreeVaultValidationError

GLOBAL_SCOPE = "global"


class AccessLevel(str, Enum):
    READ = "read"
    WRITE = "write"
    CREATE = "create"
    DELETE = "delete"
    OWNER = "owner"


class ResourceType(str, Enum):
    FILE = "file"
    FOLDER = "folder"


ALL_ACCESS_LEVELS: FrozenSet[str] = frozenset(level.value for level in AccessLevel)

AccessLevelInput = Union[str, AccessLevel, Iterable[Union[str, AccessLevel]]]


class ResourceTarget(BaseModel):
    """Tagged variant: {type: file, id} | {type: folder, id}."""

    model_config = ConfigDict(frozen=True)

    type: ResourceType
    id: str

    @property
    def scope(self) -> str:
        return f"{self.type.value}:{self.id}"


class Permission(BaseModel):
    """
    A grant of access levels to one user, either global (target is None)
    or scoped to exactly one resource.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    target: Optional[ResourceTarget] = None
    access_levels: FrozenSet[AccessLevel] = Field(min_length=1)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_global(self) -> bool:
        return self.target is None

    @property
    def scope(self) -> str:
        return GLOBAL_SCOPE if self.target is None else self.target.scope

    def allows(self, action: Union[str, AccessLevel]) -> bool:
        return AccessLevel(action) in self.access_levels


def parse_access_levels(value: AccessLevelInput) -> FrozenSet[AccessLevel]:
    """
    Normalize grant input (a single level or an iterable of levels).

    Raises:
        TreeVaultValidationError when empty or containing unknown levels.
        Grant input is client-supplied, so bad values are a 4xx condition.
    """
    if isinstance(value, (str, AccessLevel)):
        raw = [value]
    else:
        raw = list(value)

    if not raw:
        raise TreeVaultValidationError(
            "At least one access level is required",
            code="INVALID_ACCESS_LEVEL",
            field="access_levels",
        )

    invalid = [str(v) for v in raw if str(getattr(v, "value", v)) not in ALL_ACCESS_LEVELS]
    if invalid:
        raise TreeVaultValidationError(
            f"Invalid access level(s): {', '.join(invalid)}",
            code="INVALID_ACCESS_LEVEL",
            field="access_levels",
            validation_errors=invalid,
        )
    return frozenset(AccessLevel(getattr(v, "value", v)) for v in raw)


def require_action(action: Union[str, AccessLevel]) -> AccessLevel:
    """
    Resolve an authorization action constant.

    Actions are fixed at definition time by the calling layer, never taken
    from user input, so an unknown one is a server configuration error.
    """
    try:
        return AccessLevel(getattr(action, "value", action))
    except ValueError:
        raise TreeVaultConfigError(
            f"Invalid permission action '{action}'",
            code="PERMISSION_INVALID_ACTION",
            action=str(action),
        ) from None


def parse_resource_type(value: Union[str, ResourceType]) -> ResourceType:
    try:
        return ResourceType(getattr(value, "value", value))
    except ValueError:
        raise TreeVaultValidationError(
            f"Invalid resource type '{value}' (expected 'file' or 'folder')",
            code="INVALID_RESOURCE_TYPE",
            field="target_type",
        ) from None
