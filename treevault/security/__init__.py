"""TreeVault Security — Grants, propagation and authorization."""

from treevault.security.access import AccessLevel, Permission, ResourceTarget, ResourceType
from treevault.security.permissions import PermissionService
from treevault.security.resolver import AccessDecision, AuthorizationResolver
from treevault.security.store import PermissionStore

__all__ = [
    "AccessLevel",
    "Permission",
    "ResourceTarget",
    "ResourceType",
    "PermissionService",
    "AccessDecision",
    "AuthorizationResolver",
    "PermissionStore",
]
