"""
Integration test fixtures — a fully wired runtime over a file-backed SQLite
database and a LocalBlobGateway rooted in a temp directory.

Run: pytest tests/integration/ -v -m integration
"""

from __future__ import annotations

import pytest

from treevault.engine.config import PlatformConfig
from treevault.engine.runtime import TreeVaultRuntime


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: full runtime over real SQLite and filesystem blobs")


@pytest.fixture
def integration_config(tmp_path):
    return PlatformConfig(
        database={"url": f"sqlite:///{tmp_path / 'treevault.db'}", "connect_attempts": 1},
        security={"permission_cache_enabled": False},
        storage={"root": str(tmp_path / "blobs"), "signing_secret": "integration"},
        logging={"directory": str(tmp_path / "logs")},
    )


@pytest.fixture
def live_runtime(integration_config):
    rt = TreeVaultRuntime.from_config(integration_config, create_tables=True)
    rt.startup()
    yield rt
    rt.shutdown()
    rt.session_factory.kw["bind"].dispose()


@pytest.fixture
def put_file(live_runtime):
    """Two-phase upload that writes real bytes through the signed write URL."""

    def _put(workspace_id, owner_id, folder_id, name, data: bytes, content_type=None):
        ticket = live_runtime.files.start_upload(
            workspace_id, owner_id, folder_id, name, len(data), content_type,
        )
        key = live_runtime.gateway.verify_url(ticket.upload_url, "write")
        assert key == ticket.storage_key
        live_runtime.gateway.write(key, data)
        return live_runtime.files.complete_upload(
            workspace_id, owner_id, folder_id, ticket.file_id, name, len(data), ticket.storage_key, content_type,
        )

    return _put
