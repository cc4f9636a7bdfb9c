"""
TreeVault Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

import fnmatch
import uuid
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
import redis

from treevault.db.session import init_db
from treevault.engine.cache import DecisionCache, RedisCache
from treevault.engine.errors import TreeVaultDependencyError
from treevault.hierarchy.service import FileService, FolderService
from treevault.hierarchy.store import HierarchyStore
from treevault.security.permissions import PermissionService
from treevault.security.resolver import AuthorizationResolver
from treevault.security.store import PermissionStore


# ---------------------------------------------------------------------------
# Environment setup — no real Redis / Postgres / blob store in unit tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals():
    """Reset global singletons between tests."""
    import treevault.engine.config as cfg_mod
    import treevault.engine.logging as log_mod
    import treevault.engine.runtime as runtime_mod

    cfg_mod._platform_config = None
    yield
    cfg_mod._platform_config = None
    log_mod.shutdown_logging()
    runtime_mod._runtime = None


class InMemoryBlobGateway:
    """Blob gateway fake: a dict of key → bytes plus a call journal."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_on: Optional[str] = None

    def _record(self, op: str, key: str) -> None:
        self.calls.append((op, key))
        if self.fail_on == op:
            raise TreeVaultDependencyError(f"{op} failed", dependency="blob", operation=op, resource_id=key)

    def presign_read(self, key: str, ttl_seconds: int = 3600) -> str:
        self._record("presign_read", key)
        return f"mem://read/{key}?ttl={ttl_seconds}"

    def presign_write(self, key: str, content_type: Optional[str] = None, ttl_seconds: int = 3600) -> str:
        self._record("presign_write", key)
        return f"mem://write/{key}?ttl={ttl_seconds}"

    def delete_one(self, key: str) -> None:
        self._record("delete_one", key)
        self.objects.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        self._record("delete_prefix", prefix)
        doomed = [k for k in self.objects if k.startswith(prefix)]
        for key in doomed:
            del self.objects[key]
        return len(doomed)

    def copy(self, source_key: str, dest_key: str) -> None:
        self._record("copy", source_key)
        self.objects[dest_key] = self.objects.get(source_key, b"")


def new_uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------

@pytest.fixture
def workspace_id():
    return new_uuid()


@pytest.fixture
def owner_id():
    return new_uuid()


@pytest.fixture
def other_user():
    return new_uuid()


# ---------------------------------------------------------------------------
# Persistence & services
# ---------------------------------------------------------------------------

@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database with all tables."""
    factory = init_db("sqlite://", create_tables=True)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def blob_gateway():
    return InMemoryBlobGateway()


@pytest.fixture
def hierarchy_store(session_factory):
    return HierarchyStore(session_factory)


@pytest.fixture
def permission_store(session_factory):
    return PermissionStore(session_factory)


@pytest.fixture
def folder_service(hierarchy_store, blob_gateway):
    return FolderService(hierarchy_store, blob_gateway)


@pytest.fixture
def file_service(hierarchy_store, blob_gateway):
    return FileService(hierarchy_store, blob_gateway)


@pytest.fixture
def decision_cache():
    """DecisionCache double at generation 0 that always misses."""
    cache = MagicMock(spec=DecisionCache)
    cache.generation.return_value = 0
    cache.check.return_value = None
    return cache


@pytest.fixture
def permission_service(permission_store, hierarchy_store):
    return PermissionService(permission_store, hierarchy_store)


@pytest.fixture
def resolver(hierarchy_store, permission_store):
    return AuthorizationResolver(hierarchy_store, permission_store)


@pytest.fixture
def upload(file_service, blob_gateway):
    """
    Run the full two-phase upload and return the File.

    Usage: upload(workspace_id, owner_id, folder_id, "q1.pdf", size=10)
    """

    def _upload(workspace_id, owner_id, folder_id, name, size=10, content_type="application/pdf"):
        ticket = file_service.start_upload(workspace_id, owner_id, folder_id, name, size, content_type)
        blob_gateway.objects[ticket.storage_key] = b"x" * size
        return file_service.complete_upload(
            workspace_id,
            owner_id,
            folder_id,
            ticket.file_id,
            name,
            size,
            ticket.storage_key,
            content_type,
        )

    return _upload


@pytest.fixture
def mock_redis():
    """Mock Redis client."""
    r = MagicMock()
    r.ping.return_value = True
    r.get.return_value = None
    r.set.return_value = True
    r.scan_iter.return_value = iter([])
    r.delete.return_value = 0
    return r


class FakeRedis:
    """Dict-backed stand-in for the redis client calls RedisCache makes."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.down = False

    def _guard(self) -> None:
        if self.down:
            raise redis.ConnectionError("redis down")

    def ping(self):
        self._guard()
        return True

    def get(self, key):
        self._guard()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._guard()
        self.data[key] = str(value)
        return True

    def incr(self, key, amount=1):
        self._guard()
        value = int(self.data.get(key, "0")) + amount
        self.data[key] = str(value)
        return value

    def eval(self, script, numkeys, guard_key, key, expected, value, ttl):
        # mirrors RedisCache._SET_IF_EQUAL
        self._guard()
        if self.data.get(guard_key, "0") == expected:
            self.data[key] = value
            return 1
        return 0

    def scan_iter(self, match="*", count=None):
        self._guard()
        return iter([k for k in list(self.data) if fnmatch.fnmatchcase(k, match)])

    def delete(self, *keys):
        self._guard()
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    def close(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_decision_cache(fake_redis):
    """Real DecisionCache over a connected RedisCache backed by FakeRedis."""
    cache = RedisCache(prefix="treevault:", default_ttl=60)
    cache._client = fake_redis
    cache._available = True
    return DecisionCache(cache)
