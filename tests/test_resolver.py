"""Unit tests for treevault.security.resolver — three-tier authorization."""

import uuid

import pytest

from treevault.engine.errors import (
    TreeVaultConfigError,
    TreeVaultForbiddenError,
    TreeVaultNotFoundError,
    TreeVaultValidationError,
)
from treevault.security.permissions import PermissionService
from treevault.security.resolver import AccessDecision, AuthorizationResolver


def new_uuid():
    return str(uuid.uuid4())


@pytest.fixture
def folder(folder_service, workspace_id, owner_id):
    return folder_service.create_folder("Shared", owner_id, workspace_id)


class TestCheckOrder:

    def test_invalid_action_first(self, resolver):
        # even with a malformed id and missing resource, the action is checked first
        with pytest.raises(TreeVaultConfigError) as exc:
            resolver.can_access("bad", "folder", "bad", "admin")
        assert exc.value.code == "PERMISSION_INVALID_ACTION"

    def test_malformed_resource_id(self, resolver, other_user):
        with pytest.raises(TreeVaultValidationError) as exc:
            resolver.can_access(other_user, "folder", "not-an-id", "read")
        assert exc.value.code == "INVALID_ID"

    def test_malformed_user_id(self, resolver, folder):
        with pytest.raises(TreeVaultValidationError):
            resolver.can_access("bob", "folder", folder.id, "read")

    def test_missing_folder(self, resolver, other_user):
        with pytest.raises(TreeVaultNotFoundError) as exc:
            resolver.can_access(other_user, "folder", new_uuid(), "read")
        assert exc.value.code == "FOLDER_NOT_FOUND"

    def test_missing_file(self, resolver, other_user):
        with pytest.raises(TreeVaultNotFoundError) as exc:
            resolver.can_access(other_user, "file", new_uuid(), "read")
        assert exc.value.code == "FILE_NOT_FOUND"


class TestTiers:

    @pytest.mark.parametrize("action", ["read", "write", "create", "delete", "owner"])
    def test_owner_bypasses_everything(self, resolver, folder, owner_id, action):
        assert resolver.can_access(owner_id, "folder", folder.id, action) == AccessDecision(allowed=True, tier="owner")

    def test_no_grant_denied(self, resolver, folder, other_user):
        decision = resolver.can_access(other_user, "folder", folder.id, "read")
        assert decision.allowed is False
        assert not decision

    def test_global_grant(self, resolver, permission_service, folder, other_user):
        permission_service.grant_global(other_user, ["read"])
        assert resolver.can_access(other_user, "folder", folder.id, "read").tier == "global"
        assert resolver.can_access(other_user, "folder", folder.id, "write").allowed is False

    def test_specific_grant(self, resolver, permission_service, folder, other_user):
        permission_service.grant_specific(other_user, folder.id, "folder", ["write"])
        assert resolver.can_access(other_user, "folder", folder.id, "write").tier == "specific"

    def test_global_checked_before_specific(self, resolver, permission_service, folder, other_user):
        permission_service.grant_specific(other_user, folder.id, "folder", ["read"])
        permission_service.grant_global(other_user, ["read"])
        assert resolver.can_access(other_user, "folder", folder.id, "read").tier == "global"

    def test_global_without_action_falls_through_to_specific(self, resolver, permission_service, folder, other_user):
        permission_service.grant_global(other_user, ["read"])
        permission_service.grant_specific(other_user, folder.id, "folder", ["delete"])
        assert resolver.can_access(other_user, "folder", folder.id, "delete").tier == "specific"

    def test_specific_on_other_resource_does_not_apply(self, resolver, permission_service, folder_service, folder, other_user, workspace_id, owner_id):
        elsewhere = folder_service.create_folder("Elsewhere", owner_id, workspace_id)
        permission_service.grant_specific(other_user, elsewhere.id, "folder", ["read"])
        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is False

    def test_specific_type_must_match(self, resolver, permission_service, upload, folder, other_user, workspace_id, owner_id):
        file = upload(workspace_id, owner_id, None, "a.txt")
        permission_service.grant_specific(other_user, folder.id, "folder", ["read"])
        assert resolver.can_access(other_user, "file", file.id, "read").allowed is False


class TestRequire:

    def test_require_allows(self, resolver, folder, owner_id):
        assert resolver.require(owner_id, "folder", folder.id, "delete").tier == "owner"

    def test_require_forbidden(self, resolver, folder, other_user):
        with pytest.raises(TreeVaultForbiddenError) as exc:
            resolver.require(other_user, "folder", folder.id, "write")
        err = exc.value
        assert err.code == "FORBIDDEN"
        assert err.user_id == other_user
        assert err.required_permission == "write"
        assert err.resource_id == folder.id

    def test_require_missing_is_not_found_not_forbidden(self, resolver, other_user):
        with pytest.raises(TreeVaultNotFoundError):
            resolver.require(other_user, "file", new_uuid(), "read")


class TestDecisionCache:

    def test_miss_is_stored(self, hierarchy_store, permission_store, decision_cache, permission_service, folder, other_user):
        permission_service.grant_global(other_user, ["read"])
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        resolver.can_access(other_user, "folder", folder.id, "read")
        decision_cache.store.assert_called_once_with(other_user, "folder", folder.id, "read", "global", 0)

    def test_denial_is_stored_as_none(self, hierarchy_store, permission_store, decision_cache, folder, other_user):
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        resolver.can_access(other_user, "folder", folder.id, "read")
        decision_cache.store.assert_called_once_with(other_user, "folder", folder.id, "read", None, 0)

    def test_hit_skips_store_lookup(self, hierarchy_store, permission_store, decision_cache, folder, other_user):
        decision_cache.check.return_value = "specific"
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        assert resolver.can_access(other_user, "folder", folder.id, "read") == AccessDecision(allowed=True, tier="specific")
        decision_cache.store.assert_not_called()

    def test_cached_denial(self, hierarchy_store, permission_store, decision_cache, folder, other_user):
        decision_cache.check.return_value = ""
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is False

    def test_owner_never_consults_cache(self, hierarchy_store, permission_store, decision_cache, folder, owner_id):
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        resolver.can_access(owner_id, "folder", folder.id, "read")
        decision_cache.check.assert_not_called()

    def test_unusable_cache_is_bypassed(self, hierarchy_store, permission_store, decision_cache, permission_service, folder, other_user):
        decision_cache.generation.return_value = None
        permission_service.grant_global(other_user, ["read"])
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        assert resolver.can_access(other_user, "folder", folder.id, "read").tier == "global"
        decision_cache.check.assert_not_called()
        decision_cache.store.assert_not_called()

    def test_existence_checked_before_cache(self, hierarchy_store, permission_store, decision_cache, other_user):
        decision_cache.check.return_value = "global"
        resolver = AuthorizationResolver(hierarchy_store, permission_store, decision_cache)
        with pytest.raises(TreeVaultNotFoundError):
            resolver.can_access(other_user, "folder", new_uuid(), "read")


class TestRevokeThroughRedisCache:
    """grant -> check -> revoke -> check with the real decision cache."""

    @pytest.fixture
    def cached(self, hierarchy_store, permission_store, redis_decision_cache):
        service = PermissionService(permission_store, hierarchy_store, redis_decision_cache)
        resolver = AuthorizationResolver(hierarchy_store, permission_store, redis_decision_cache)
        return service, resolver

    def test_revoke_denies_next_check(self, cached, folder, other_user):
        service, resolver = cached
        p = service.grant_specific(other_user, folder.id, "folder", ["read"])
        assert resolver.can_access(other_user, "folder", folder.id, "read").tier == "specific"
        assert resolver.can_access(other_user, "folder", folder.id, "read").tier == "specific"

        service.revoke(p.id)
        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is False

    def test_revoke_during_lookup_is_not_cached(self, cached, folder, other_user):
        service, resolver = cached
        p = service.grant_specific(other_user, folder.id, "folder", ["read"])
        lookup = resolver._grant_tier

        def lookup_then_revoke(*args):
            tier = lookup(*args)
            service.revoke(p.id)
            return tier

        resolver._grant_tier = lookup_then_revoke
        # decided before the revoke landed
        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is True
        resolver._grant_tier = lookup

        assert service.get_specific(other_user, folder.id, "folder") is None
        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is False

    def test_revoke_during_redis_outage(self, cached, redis_decision_cache, fake_redis, folder, other_user):
        service, resolver = cached
        p = service.grant_specific(other_user, folder.id, "folder", ["read"])
        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is True

        fake_redis.down = True
        service.revoke(p.id)
        assert redis_decision_cache.is_suspended is True
        fake_redis.down = False

        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is False
        assert redis_decision_cache.is_suspended is False

    def test_suspended_cache_reads_store_until_flush(self, cached, redis_decision_cache, fake_redis, folder, other_user):
        service, resolver = cached
        p = service.grant_specific(other_user, folder.id, "folder", ["read"])
        resolver.can_access(other_user, "folder", folder.id, "read")

        fake_redis.down = True
        service.revoke(p.id)
        # redis still down: decision comes from the store, not the stale entry
        assert resolver.can_access(other_user, "folder", folder.id, "read").allowed is False
        assert redis_decision_cache.is_suspended is True
