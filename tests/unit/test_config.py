"""
Tests for windusb.core.config module.
"""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from windusb.core.config import (
    MIB,
    FlashConfig,
    LoggingConfig,
    SafetyConfig,
    ToolsConfig,
    UIConfig,
    WindUSBConfig,
    load_config,
)


class TestLoggingConfig:
    """Tests for LoggingConfig."""

    def test_default_values(self) -> None:
        config = LoggingConfig()
        assert config.level == "INFO"
        assert config.file_enabled is True
        assert config.console_enabled is True
        assert config.json_format is False

    def test_path_expansion(self) -> None:
        config = LoggingConfig(log_directory="~/logs")
        assert "~" not in str(config.log_directory)

    def test_rejects_unknown_level(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(level="CHATTY")


class TestFlashConfig:
    """Tests for FlashConfig."""

    def test_default_values(self) -> None:
        config = FlashConfig()
        assert config.settle_delay_seconds == 2.0
        assert config.monitor_interval_seconds == 0.5
        assert config.flush_interval_seconds == 0.2
        assert config.flush_threshold_bytes == 10 * MIB
        assert config.split_chunk_mib == 3400
        assert config.boot_files_estimate_bytes == 500_000_000
        assert config.payload_size_fallback_bytes == 4_000_000_000

    @pytest.mark.parametrize("chunk", [0, 4096, 8000])
    def test_chunk_must_fit_fat32(self, chunk: int) -> None:
        with pytest.raises(ValidationError):
            FlashConfig(split_chunk_mib=chunk)

    def test_mount_glob(self) -> None:
        config = FlashConfig(temp_directory="/var/tmp", mount_prefix="wusb")
        assert config.mount_glob == "/var/tmp/wusb_*"

    def test_mount_prefix_must_be_glob_safe(self) -> None:
        with pytest.raises(ValidationError):
            FlashConfig(mount_prefix="bad*prefix")


class TestToolsConfig:
    """Tests for ToolsConfig."""

    def test_seven_zip_from_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("APPDIR", raising=False)
        assert ToolsConfig().resolve_seven_zip() == "7z"

    def test_seven_zip_bundled(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APPDIR", "/opt/windusb")
        assert ToolsConfig().resolve_seven_zip() == "/opt/windusb/bin-local/7z"

    def test_missing_tools(self, mocker) -> None:
        mocker.patch(
            "windusb.core.config.shutil.which",
            side_effect=lambda tool: None if tool == "wimlib-imagex" else f"/usr/bin/{tool}",
        )
        assert ToolsConfig(seven_zip="7z").missing() == ["wimlib-imagex"]


class TestSafetyConfig:
    """Tests for SafetyConfig."""

    def test_default_values(self) -> None:
        config = SafetyConfig()
        assert config.require_confirmation is True
        assert config.system_disk_protection is True
        assert config.removable_only is True


class TestUIConfig:
    """Tests for UIConfig."""

    def test_poll_interval_bounds(self) -> None:
        assert UIConfig().poll_interval_ms == 50
        with pytest.raises(ValidationError):
            UIConfig(poll_interval_ms=5)


class TestWindUSBConfig:
    """Tests for WindUSBConfig."""

    def test_save_and_load(self, temp_dir: Path) -> None:
        path = temp_dir / "config.json"
        config = WindUSBConfig()
        config.flash.split_chunk_mib = 1000
        config.save(path)

        loaded = WindUSBConfig.load(path)

        assert loaded.flash.split_chunk_mib == 1000
        assert json.loads(path.read_text())["flash"]["split_chunk_mib"] == 1000

    def test_load_missing_returns_defaults(self, temp_dir: Path) -> None:
        config = WindUSBConfig.load(temp_dir / "nope.json")
        assert config.flash.split_chunk_mib == 3400

    def test_load_config_creates_directories(self, temp_dir: Path) -> None:
        path = temp_dir / "config.json"
        path.write_text(
            json.dumps(
                {
                    "logging": {"log_directory": str(temp_dir / "logs")},
                    "flash": {"temp_directory": str(temp_dir / "mnt")},
                }
            )
        )

        load_config(path)

        assert (temp_dir / "logs").is_dir()
        assert (temp_dir / "mnt").is_dir()
