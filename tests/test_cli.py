"""Unit tests for treevault.cli — init, grant, check-access."""

import json

import pytest

from treevault.cli import main
from treevault.engine.config import load_platform_config
from treevault.engine.runtime import TreeVaultRuntime


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "treevault.yaml"
    path.write_text(
        "platform:\n"
        "  name: CLI Test\n"
        "database:\n"
        f"  url: sqlite:///{tmp_path / 'tv.db'}\n"
        "  connect_attempts: 1\n"
        "security:\n"
        "  permission_cache_enabled: false\n"
        "storage:\n"
        f"  root: {tmp_path / 'blobs'}\n"
        "logging:\n"
        f"  directory: {tmp_path / 'logs'}\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def folder(config_path, workspace_id, owner_id):
    assert main(["--config", config_path, "init"]) == 0
    rt = TreeVaultRuntime.from_config(load_platform_config(config_path))
    return rt.folders.create_folder("Shared", owner_id, workspace_id)


class TestCli:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_init(self, config_path, capsys):
        assert main(["--config", config_path, "init"]) == 0
        assert "Database tables created" in capsys.readouterr().out

    def test_check_access_owner(self, config_path, folder, owner_id, capsys):
        code = main(["--config", config_path, "check-access", owner_id, "folder", folder.id, "read"])
        out = json.loads(capsys.readouterr().out)
        assert code == 0
        assert out["allowed"] is True
        assert out["tier"] == "owner"

    def test_grant_then_check(self, config_path, folder, other_user, capsys):
        assert main(["--config", config_path, "check-access", other_user, "folder", folder.id, "write"]) == 2
        capsys.readouterr()
        assert main(["--config", config_path, "grant", other_user, "write", "--folder", folder.id]) == 0
        assert f"folder:{folder.id}" in capsys.readouterr().out
        assert main(["--config", config_path, "check-access", other_user, "folder", folder.id, "write"]) == 0

    def test_global_grant(self, config_path, folder, other_user, capsys):
        assert main(["--config", config_path, "grant", other_user, "read", "--global"]) == 0
        assert "global -> read" in capsys.readouterr().out

    def test_invalid_action_reports_error(self, config_path, folder, other_user, capsys):
        assert main(["--config", config_path, "check-access", other_user, "folder", folder.id, "admin"]) == 1
        assert json.loads(capsys.readouterr().out)["code"] == "PERMISSION_INVALID_ACTION"

    def test_grant_bad_level(self, config_path, folder, other_user, capsys):
        assert main(["--config", config_path, "grant", other_user, "superuser", "--global"]) == 1
        assert json.loads(capsys.readouterr().out)["code"] == "INVALID_ACCESS_LEVEL"
