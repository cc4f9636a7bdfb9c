"""Unit tests for treevault.engine.config — PlatformConfig and treevault.yaml loading."""

import pytest

from treevault.engine.config import (
    MAX_PRESIGN_SECONDS,
    LoggingConfig,
    PlatformConfig,
    StorageConfig,
    get_platform_config,
    load_platform_config,
)
from treevault.engine.errors import TreeVaultConfigError


class TestPlatformConfig:
    """Test PlatformConfig Pydantic model."""

    def test_defaults(self):
        cfg = PlatformConfig()
        assert cfg.name == "TreeVault"
        assert cfg.environment == "dev"
        assert cfg.database.pool_size == 10
        assert cfg.security.permission_cache_enabled is True
        assert cfg.storage.presign_ttl == MAX_PRESIGN_SECONDS
        assert cfg.names.folder_name_max_length == 120
        assert cfg.names.file_name_max_length == 180

    def test_invalid_environment(self):
        with pytest.raises(ValueError, match="dev/staging/prod"):
            PlatformConfig(environment="test")

    def test_presign_ttl_capped(self):
        with pytest.raises(ValueError, match="presign_ttl"):
            StorageConfig(presign_ttl=MAX_PRESIGN_SECONDS + 1)
        with pytest.raises(ValueError):
            StorageConfig(presign_ttl=0)

    def test_logging_level_uppercased(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_logging_level_invalid(self):
        with pytest.raises(ValueError):
            LoggingConfig(level="chatty")


class TestLoadPlatformConfig:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_platform_config(str(tmp_path / "nope.yaml"))
        assert cfg == PlatformConfig()

    def test_loads_sections(self, tmp_path):
        path = tmp_path / "treevault.yaml"
        path.write_text(
            "platform:\n"
            "  name: Vault\n"
            "  environment: staging\n"
            "database:\n"
            "  url: sqlite://\n"
            "storage:\n"
            "  root: /tmp/blobs\n"
            "  presign_ttl: 600\n"
            "names:\n"
            "  folder_name_max_length: 40\n",
            encoding="utf-8",
        )
        cfg = load_platform_config(str(path))
        assert cfg.name == "Vault"
        assert cfg.environment == "staging"
        assert cfg.database.url == "sqlite://"
        assert cfg.storage.presign_ttl == 600
        assert cfg.names.folder_name_max_length == 40
        assert cfg.names.file_name_max_length == 180

    def test_invalid_values_raise_config_error(self, tmp_path):
        path = tmp_path / "treevault.yaml"
        path.write_text("storage:\n  presign_ttl: 99999\n", encoding="utf-8")
        with pytest.raises(TreeVaultConfigError) as exc:
            load_platform_config(str(path))
        assert exc.value.status_code == 500

    def test_unparseable_yaml_raises_config_error(self, tmp_path):
        path = tmp_path / "treevault.yaml"
        path.write_text("database: [unclosed\n", encoding="utf-8")
        with pytest.raises(TreeVaultConfigError):
            load_platform_config(str(path))

    def test_get_platform_config_caches(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        first = get_platform_config()
        assert get_platform_config() is first
