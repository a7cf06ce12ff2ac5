"""
WindUSB configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

MIB = 1024 * 1024


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: Path.home() / ".windusb" / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class FlashConfig(BaseModel):
    """Timing, sizing and naming knobs for the flashing pipeline."""

    settle_delay_seconds: float = Field(default=2.0, ge=0.0)
    monitor_interval_seconds: float = Field(default=0.5, gt=0.0, le=5.0)
    flush_interval_seconds: float = Field(default=0.2, gt=0.0, le=5.0)
    flush_threshold_bytes: int = Field(default=10 * MIB, ge=0)
    flush_grace_seconds: float = Field(default=60.0, ge=0.0)
    # FAT32 cannot hold a single file of 4 GiB or more
    split_chunk_mib: int = Field(default=3400, ge=1, le=4095)
    boot_files_estimate_bytes: int = Field(default=500_000_000, gt=0)
    payload_size_fallback_bytes: int = Field(default=4_000_000_000, gt=0)
    temp_directory: Path = Path("/tmp")
    mount_prefix: str = Field(default="windusb", pattern=r"^[A-Za-z0-9_-]+$")

    @field_validator("temp_directory", mode="before")
    @classmethod
    def expand_temp_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser()

    @property
    def mount_glob(self) -> str:
        """Glob matching every ephemeral mountpoint this tool creates."""
        return str(self.temp_directory / f"{self.mount_prefix}_*")


class ToolsConfig(BaseModel):
    """Names (or paths) of the external programs the pipeline drives."""

    seven_zip: str = "7z"
    wimlib: str = "wimlib-imagex"
    mkfs_fat: str = "mkfs.fat"
    sgdisk: str = "sgdisk"
    wipefs: str = "wipefs"
    blockdev: str = "blockdev"
    partprobe: str = "partprobe"
    mount: str = "mount"
    umount: str = "umount"
    du: str = "du"
    sync: str = "sync"
    lsblk: str = "lsblk"
    bundle_env_var: str = "APPDIR"

    def resolve_seven_zip(self) -> str:
        """Prefer the archive tool bundled next to the application, if any."""
        appdir = os.environ.get(self.bundle_env_var)
        if appdir:
            return f"{appdir}/bin-local/7z"
        return self.seven_zip

    def required(self) -> list[str]:
        """Executables that must be present for a flash to succeed."""
        return [
            self.resolve_seven_zip(),
            self.wimlib,
            self.mkfs_fat,
            self.sgdisk,
            self.wipefs,
            self.partprobe,
            self.mount,
            self.umount,
        ]

    def missing(self) -> list[str]:
        """Return required tools that cannot be found."""
        return [tool for tool in self.required() if shutil.which(tool) is None]


class SafetyConfig(BaseModel):
    """Configuration for safety features."""

    require_confirmation: bool = True
    system_disk_protection: bool = True
    removable_only: bool = True


class UIConfig(BaseModel):
    """Configuration for the terminal front end."""

    poll_interval_ms: int = Field(default=50, ge=10, le=1000)


class WindUSBConfig(BaseModel):
    """Main WindUSB configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    flash: FlashConfig = Field(default_factory=FlashConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    ui: UIConfig = Field(default_factory=UIConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> WindUSBConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = Path.home() / ".windusb" / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = Path.home() / ".windusb" / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        if self.logging.file_enabled:
            self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.flash.temp_directory.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Path | None = None) -> WindUSBConfig:
    """Load or create configuration."""
    config = WindUSBConfig.load(config_path)
    config.ensure_directories()
    return config
