"""
TreeVault Authorization Resolver — Three-tier access decision.

Check order (first match wins):
    0. action in the closed vocabulary      else TreeVaultConfigError
    1. well-formed user and resource ids    else TreeVaultValidationError
    2. resource exists                      else TreeVaultNotFoundError
    3. ownership                            → allow (tier "owner")
    4. global grant containing the action   → allow (tier "global")
    5. grant on exactly this resource       → allow (tier "specific")
    6. otherwise                            → deny

Existence and ownership are always read from the store. Tiers 4-5 may be
served from the decision cache, keyed by the user's grant generation;
grant mutations bump that generation.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from treevault.engine.cache import DecisionCache
from treevault.engine.errors import TreeVaultForbiddenError, TreeVaultNotFoundError
from treevault.engine.logging import log, log_access_decision
from treevault.hierarchy.models import validate_id
from treevault.hierarchy.store import HierarchyStore
from treevault.security.access import (
    AccessLevel,
    ResourceTarget,
    ResourceType,
    parse_resource_type,
    require_action,
)
from treevault.security.store import PermissionStore

logger = logging.getLogger("treevault.security.resolver")

TIER_OWNER = "owner"
TIER_GLOBAL = "global"
TIER_SPECIFIC = "specific"


class AccessDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    tier: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


class AuthorizationResolver:
    """
    Decide whether a user may perform an action on a folder or file.

    Usage:
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        resolver.require(user_id, "folder", folder_id, "write")
    """

    def __init__(
        self,
        hierarchy: HierarchyStore,
        permissions: PermissionStore,
        decision_cache: Optional[DecisionCache] = None,
    ):
        self._hierarchy = hierarchy
        self._permissions = permissions
        self._decision_cache = decision_cache

    def _owner_of(self, resource_type: ResourceType, resource_id: str) -> str:
        if resource_type is ResourceType.FOLDER:
            owner_id = self._hierarchy.folder_owner(resource_id)
        else:
            owner_id = self._hierarchy.file_owner(resource_id)
        if owner_id is None:
            raise TreeVaultNotFoundError(
                f"{resource_type.value.capitalize()} {resource_id} not found",
                code=f"{resource_type.value.upper()}_NOT_FOUND",
                operation="authorize",
                resource_id=resource_id,
                resource_type=resource_type.value,
            )
        return owner_id

    def _grant_tier(self, user_id: str, resource_type: ResourceType, resource_id: str, action: AccessLevel) -> Optional[str]:
        global_grant = self._permissions.get(user_id, None)
        if global_grant is not None and global_grant.allows(action):
            return TIER_GLOBAL
        specific = self._permissions.get(user_id, ResourceTarget(type=resource_type, id=resource_id))
        if specific is not None and specific.allows(action):
            return TIER_SPECIFIC
        return None

    def can_access(
        self,
        user_id: str,
        resource_type: Union[str, ResourceType],
        resource_id: str,
        action: Union[str, AccessLevel],
    ) -> AccessDecision:
        """
        Resolve one (user, resource, action) triple.

        Raises:
            TreeVaultConfigError:     action outside the vocabulary
            TreeVaultValidationError: malformed id or resource type
            TreeVaultNotFoundError:   resource does not exist
        """
        action_level = require_action(action)
        user_id = validate_id(user_id, "user_id", operation="authorize")
        resource_id = validate_id(resource_id, "resource_id", operation="authorize")
        rtype = parse_resource_type(resource_type)

        if self._owner_of(rtype, resource_id) == user_id:
            return AccessDecision(allowed=True, tier=TIER_OWNER)

        tier: Optional[str] = None
        cached = None
        # read before the grant lookup so a concurrent grant change voids the store
        generation = None
        if self._decision_cache is not None:
            generation = self._decision_cache.generation(user_id)
        if generation is not None:
            cached = self._decision_cache.check(
                user_id, rtype.value, resource_id, action_level.value, generation,
            )
        if cached is not None:
            tier = cached or None
        else:
            tier = self._grant_tier(user_id, rtype, resource_id, action_level)
            if generation is not None:
                self._decision_cache.store(
                    user_id, rtype.value, resource_id, action_level.value, tier, generation,
                )

        if tier is None:
            logger.info(f"Denied {action_level.value} on {rtype.value} {resource_id} for {user_id}")
            log(log_access_decision(user_id, rtype.value, resource_id, action_level.value, False))
            return AccessDecision(allowed=False)
        return AccessDecision(allowed=True, tier=tier)

    def require(
        self,
        user_id: str,
        resource_type: Union[str, ResourceType],
        resource_id: str,
        action: Union[str, AccessLevel],
    ) -> AccessDecision:
        """can_access(), raising TreeVaultForbiddenError on deny."""
        decision = self.can_access(user_id, resource_type, resource_id, action)
        if not decision.allowed:
            rtype = parse_resource_type(resource_type)
            raise TreeVaultForbiddenError(
                f"User {user_id} lacks '{require_action(action).value}' on {rtype.value} {resource_id}",
                operation="authorize",
                resource_id=resource_id,
                resource_type=rtype.value,
                user_id=user_id,
                required_permission=require_action(action).value,
            )
        return decision
