"""
TreeVault Permission Service — Grants, revocation and folder-subtree propagation.

Granting on a folder writes the direct record, then walks the folder's
subtree once and writes an identical (user, descendant) record for every
folder and file beneath it. Propagation happens at grant time only:
resources created later do not inherit, and revoking the direct record does
not touch the propagated ones.

Every mutation invalidates the grantee's cached decisions.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from treevault.engine.cache import DecisionCache
from treevault.engine.errors import TreeVaultNotFoundError
from treevault.engine.logging import log, log_permission_change
from treevault.hierarchy.models import validate_id
from treevault.hierarchy.store import HierarchyStore
from treevault.security.access import (
    AccessLevelInput,
    Permission,
    ResourceTarget,
    ResourceType,
    parse_access_levels,
    parse_resource_type,
)
from treevault.security.store import PermissionStore

logger = logging.getLogger("treevault.security.permissions")


class PermissionService:
    """
    Grant management.

    Usage:
        service = PermissionService(permission_store, hierarchy_store, decision_cache)
        service.grant_specific(user_id, folder_id, "folder", ["read", "write"])
    """

    def __init__(
        self,
        permissions: PermissionStore,
        hierarchy: HierarchyStore,
        decision_cache: Optional[DecisionCache] = None,
    ):
        self._permissions = permissions
        self._hierarchy = hierarchy
        self._decision_cache = decision_cache

    def _invalidate_user(self, user_id: str) -> None:
        if self._decision_cache is not None:
            self._decision_cache.invalidate_user(user_id)

    def _require_target(self, target_id: str, target_type: ResourceType) -> None:
        if target_type is ResourceType.FOLDER:
            exists = self._hierarchy.folder_owner(target_id) is not None
        else:
            exists = self._hierarchy.file_owner(target_id) is not None
        if not exists:
            raise TreeVaultNotFoundError(
                f"{target_type.value.capitalize()} {target_id} not found",
                code=f"{target_type.value.upper()}_NOT_FOUND",
                operation="grant_specific",
                resource_id=target_id,
                resource_type=target_type.value,
            )

    # -------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------

    def grant_global(self, user_id: str, access_levels: AccessLevelInput) -> Permission:
        """Create or replace the user's single global grant."""
        user_id = validate_id(user_id, "user_id", operation="grant_global")
        levels = parse_access_levels(access_levels)

        permission = self._permissions.upsert(user_id, None, levels)
        self._invalidate_user(user_id)

        logger.info(f"Granted global {sorted(level.value for level in levels)} to {user_id}")
        log(log_permission_change(
            "granted", user_id, [level.value for level in levels], permission_id=permission.id,
        ))
        return permission

    def grant_specific(
        self,
        user_id: str,
        target_id: str,
        target_type: str,
        access_levels: AccessLevelInput,
    ) -> Permission:
        """
        Create or replace the user's grant on one resource.

        For a folder the same access levels are then written, with overwrite
        semantics, to every folder and file in its subtree.

        Returns:
            The direct record on the target.

        Raises:
            TreeVaultValidationError: bad id, type or access levels
            TreeVaultNotFoundError:   target does not exist
        """
        user_id = validate_id(user_id, "user_id", operation="grant_specific")
        target_id = validate_id(target_id, "target_id", operation="grant_specific")
        resource_type = parse_resource_type(target_type)
        levels = parse_access_levels(access_levels)
        self._require_target(target_id, resource_type)

        permission = self._permissions.upsert(
            user_id, ResourceTarget(type=resource_type, id=target_id), levels,
        )

        propagated = 0
        if resource_type is ResourceType.FOLDER:
            folder_ids, file_ids = self._hierarchy.descendants(target_id)
            targets = [ResourceTarget(type=ResourceType.FOLDER, id=fid) for fid in folder_ids]
            targets.extend(ResourceTarget(type=ResourceType.FILE, id=fid) for fid in file_ids)
            propagated = self._permissions.bulk_upsert(user_id, targets, levels)
            logger.info(
                f"Propagated {sorted(level.value for level in levels)} for {user_id} "
                f"to {propagated} descendant(s) of folder {target_id}"
            )

        self._invalidate_user(user_id)
        log(log_permission_change(
            "granted",
            user_id,
            [level.value for level in levels],
            target_type=resource_type.value,
            target_id=target_id,
            propagated_count=propagated,
            permission_id=permission.id,
        ))
        return permission

    def revoke(self, permission_id: str) -> Permission:
        """
        Delete exactly one grant record.

        Records previously propagated from it are left in place.
        """
        permission_id = validate_id(permission_id, "permission_id", operation="revoke")
        permission = self._permissions.delete_by_id(permission_id)
        if permission is None:
            raise TreeVaultNotFoundError(
                f"Permission {permission_id} not found",
                code="PERMISSION_NOT_FOUND",
                operation="revoke",
                resource_id=permission_id,
                resource_type="permission",
            )
        self._invalidate_user(permission.user_id)

        target = permission.target
        log(log_permission_change(
            "revoked",
            permission.user_id,
            [level.value for level in permission.access_levels],
            target_type=target.type.value if target else None,
            target_id=target.id if target else None,
            permission_id=permission.id,
        ))
        return permission

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def list_for_target(self, target_id: str) -> List[Permission]:
        target_id = validate_id(target_id, "target_id", operation="list_for_target")
        return self._permissions.list_for_target(target_id)

    def list_for_user(self, user_id: str) -> List[Permission]:
        user_id = validate_id(user_id, "user_id", operation="list_for_user")
        return self._permissions.list_for_user(user_id)

    def get_global(self, user_id: str) -> Optional[Permission]:
        return self._permissions.get(validate_id(user_id, "user_id", operation="get_global"), None)

    def get_specific(self, user_id: str, target_id: str, target_type: str) -> Optional[Permission]:
        target = ResourceTarget(
            type=parse_resource_type(target_type),
            id=validate_id(target_id, "target_id", operation="get_specific"),
        )
        return self._permissions.get(validate_id(user_id, "user_id", operation="get_specific"), target)

    # -------------------------------------------------------------------
    # Bulk removal
    # -------------------------------------------------------------------

    def purge_user(self, user_id: str) -> int:
        """Remove every grant held by a user (user deleted)."""
        user_id = validate_id(user_id, "user_id", operation="purge_user")
        removed = self._permissions.delete_for_user(user_id)
        self._invalidate_user(user_id)
        log(log_permission_change("purged", user_id))
        return removed

    def purge_targets(self, targets: Sequence[ResourceTarget]) -> int:
        """Remove every grant on the given resources (resources deleted). Returns the affected user count."""
        users = self._permissions.delete_for_targets(targets)
        for user_id in users:
            self._invalidate_user(user_id)
        if self._decision_cache is not None:
            for target in targets:
                self._decision_cache.invalidate_resource(target.type.value, target.id)
        return len(users)
