"""
Tests for the unified settings module.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from kkcore.models import FeeTier, NetworkType
from kkcore.settings import (
    KeepKeyVaultSettings,
    ensure_config_file,
    generate_config_template,
    get_config_path,
    get_settings,
    reset_settings,
)


class TestConfigTemplate:
    """Tests for config template generation."""

    def test_generate_config_template(self) -> None:
        template = generate_config_template()

        assert "# KeepKey Vault Configuration" in template
        assert "# Priority (highest to lowest):" in template

        for section in ("network_config", "backend", "selection", "transaction", "signing"):
            assert f"[{section}]" in template

        # Everything is commented out
        assert '# bridge_url = "http://127.0.0.1:1646"' in template
        assert "# dust_threshold = 546" in template
        assert '# default_fee_tier = "medium"' in template
        assert '# network = "mainnet"' in template
        assert "# mempool_url = " in template

    def test_template_parses_as_empty_config(self, isolated_data_dir: Path) -> None:
        """Test that the untouched template leaves every default in place."""
        ensure_config_file(isolated_data_dir)

        settings = KeepKeyVaultSettings()

        assert settings.signing.session_timeout == 300.0
        assert settings.selection.dust_threshold == 546

    def test_ensure_config_file_creates_template(self, isolated_data_dir: Path) -> None:
        config_path = isolated_data_dir / "config.toml"
        assert not config_path.exists()

        result = ensure_config_file(isolated_data_dir)

        assert result == config_path
        assert "# KeepKey Vault Configuration" in config_path.read_text()

    def test_ensure_config_file_does_not_overwrite(self, isolated_data_dir: Path) -> None:
        config_path = isolated_data_dir / "config.toml"
        config_path.write_text("# Custom config\n")

        ensure_config_file(isolated_data_dir)

        assert config_path.read_text() == "# Custom config\n"


class TestSettingsDefaults:
    def test_defaults(self) -> None:
        settings = KeepKeyVaultSettings()

        assert settings.network_config.network == NetworkType.MAINNET
        assert settings.backend.mempool_url is None
        assert settings.backend.gap_limit == 20
        assert settings.selection.min_confirmations == 1
        assert settings.selection.default_fee_tier == FeeTier.MEDIUM
        assert settings.selection.min_fee_rate == Decimal("1")
        assert settings.transaction.version == 1
        assert settings.transaction.locktime == 0
        assert settings.transaction.coin_name == "Bitcoin"
        assert settings.signing.cancel_timeout == 5.0
        assert settings.signing.max_pin_attempts == 3
        assert settings.logging.level == "INFO"

    def test_mempool_url_follows_network(self) -> None:
        settings = KeepKeyVaultSettings(network_config={"network": "testnet"})

        assert settings.get_mempool_url() == "https://mempool.space/testnet/api"

    def test_explicit_mempool_url_wins(self) -> None:
        settings = KeepKeyVaultSettings(backend={"mempool_url": "http://esplora.local/api/"})

        assert settings.get_mempool_url() == "http://esplora.local/api"

    def test_data_dir_defaults_to_env(self, isolated_data_dir: Path) -> None:
        assert KeepKeyVaultSettings().get_data_dir() == isolated_data_dir

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            KeepKeyVaultSettings(logging={"level": "loud"})

    def test_log_level_normalized(self) -> None:
        assert KeepKeyVaultSettings(logging={"level": "debug"}).logging.level == "DEBUG"


class TestSettingsSources:
    """Tests for source priority: init > env > TOML > defaults."""

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SIGNING__BRIDGE_URL", "http://bridge:1646")
        monkeypatch.setenv("SELECTION__MIN_FEE_RATE", "2.5")
        monkeypatch.setenv("NETWORK_CONFIG__NETWORK", "signet")

        settings = KeepKeyVaultSettings()

        assert settings.signing.bridge_url == "http://bridge:1646"
        assert settings.selection.min_fee_rate == Decimal("2.5")
        assert settings.network_config.network == NetworkType.SIGNET

    def test_toml_override(self, isolated_data_dir: Path) -> None:
        (isolated_data_dir / "config.toml").write_text(
            """
[signing]
session_timeout = 60.0
max_pin_attempts = 5

[selection]
default_fee_tier = "fast"
"""
        )

        settings = KeepKeyVaultSettings()

        assert settings.signing.session_timeout == 60.0
        assert settings.signing.max_pin_attempts == 5
        assert settings.selection.default_fee_tier == FeeTier.FAST

    def test_env_overrides_toml(
        self, isolated_data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (isolated_data_dir / "config.toml").write_text('[logging]\nlevel = "DEBUG"\n')
        monkeypatch.setenv("LOGGING__LEVEL", "WARNING")

        assert KeepKeyVaultSettings().logging.level == "WARNING"

    def test_init_overrides_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BACKEND__GAP_LIMIT", "50")

        settings = KeepKeyVaultSettings(backend={"gap_limit": 5})

        assert settings.backend.gap_limit == 5

    def test_explicit_config_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "elsewhere.toml"
        config_file.write_text('[transaction]\ncoin_name = "Testnet"\n')
        monkeypatch.setenv("KEEPKEY_VAULT_CONFIG_FILE", str(config_file))

        assert get_config_path() == config_file
        assert KeepKeyVaultSettings().transaction.coin_name == "Testnet"

    def test_invalid_toml_exits(self, isolated_data_dir: Path) -> None:
        (isolated_data_dir / "config.toml").write_text("[signing\n")

        with pytest.raises(SystemExit):
            KeepKeyVaultSettings()


class TestSettingsCache:
    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_overrides_rebuild(self) -> None:
        first = get_settings()
        second = get_settings(transaction={"locktime": 800_000})

        assert second is not first
        assert second.transaction.locktime == 800_000

    def test_reset(self) -> None:
        first = get_settings()
        reset_settings()
        assert get_settings() is not first
