"""
WindUSB safety checks.

The device guard re-checks drive presence before every destructive step;
preflight checks and the typed confirmation run once before a job starts.
"""

from __future__ import annotations

import os
import re
import stat
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from windusb.core.errors import DriveDisconnectedError
from windusb.core.logging import get_logger

if TYPE_CHECKING:
    from windusb.core.config import WindUSBConfig
    from windusb.core.models import Phase

logger = get_logger(__name__)

SYSTEM_MOUNTPOINTS = ("/", "/boot", "/boot/efi", "/usr", "/home")


class DeviceGuard:
    """
    Answers "does this drive still exist" freshly on every call.

    USB removal can happen between any two steps, so nothing is cached.
    """

    def __init__(self, exists: Callable[[str], bool] = os.path.exists) -> None:
        self._exists = exists

    def exists(self, path: str) -> bool:
        return self._exists(path)

    def require(self, path: str, when: str, phase: Phase | None = None) -> None:
        """Raise DriveDisconnectedError if ``path`` is gone."""
        if not self._exists(path):
            logger.error("Drive disconnected", drive=path, when=when)
            raise DriveDisconnectedError(f"Drive disconnected {when}.", phase)


def validate_device_path(path: str) -> tuple[bool, str]:
    """Validate a device path."""
    if not path.startswith("/dev/"):
        return False, "Device path must start with /dev/"

    if not os.path.exists(path):
        return False, f"Device does not exist: {path}"

    try:
        mode = os.stat(path).st_mode
        if not stat.S_ISBLK(mode):
            return False, f"Not a block device: {path}"
    except OSError as e:
        return False, f"Cannot stat device: {e}"

    return True, "Valid device path"


def is_system_device(path: str) -> bool:
    """Whether ``path`` backs one of the running system's mountpoints."""
    for part in psutil.disk_partitions(all=False):
        if part.mountpoint in SYSTEM_MOUNTPOINTS and part.device.startswith(path):
            return True
    return False


def generate_confirmation_string(target_identifier: str) -> str:
    """Generate a confirmation string that includes the target identifier."""
    safe_target = re.sub(r"[^a-zA-Z0-9/_-]", "", target_identifier)
    return f"ERASE-{safe_target.upper()}"


def verify_confirmation(target_identifier: str, user_input: str) -> tuple[bool, str]:
    """
    Verify user confirmation for erasing a drive.
    Returns (verified, message).
    """
    expected = generate_confirmation_string(target_identifier)
    if user_input.strip() != expected:
        logger.warning(
            "Confirmation verification failed",
            expected=expected,
            received=user_input,
        )
        return False, f"Confirmation mismatch. Expected: {expected}"

    logger.info("Erase confirmed", target=target_identifier)
    return True, "Confirmation verified"


@dataclass
class PreflightCheck:
    """Result of a single preflight check."""

    name: str
    passed: bool
    message: str
    severity: str = "info"  # info, warning, error
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreflightReport:
    """Complete preflight check report."""

    checks: list[PreflightCheck] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def has_errors(self) -> bool:
        return any(c.severity == "error" and not c.passed for c in self.checks)

    @property
    def has_warnings(self) -> bool:
        return any(c.severity == "warning" and not c.passed for c in self.checks)

    def get_summary(self) -> str:
        """Get human-readable summary."""
        passed = sum(1 for c in self.checks if c.passed)
        lines = [f"Preflight: {passed}/{len(self.checks)} checks passed"]
        for check in self.checks:
            status = "✓" if check.passed else "✗"
            lines.append(f"[{status}] {check.name}: {check.message}")
        return "\n".join(lines)


def check_device(drive: str) -> PreflightCheck:
    valid, message = validate_device_path(drive)
    return PreflightCheck(
        name="Target Device",
        passed=valid,
        message=message,
        severity="info" if valid else "error",
    )


def check_not_system_disk(drive: str, config: WindUSBConfig) -> PreflightCheck:
    if config.safety.system_disk_protection and is_system_device(drive):
        return PreflightCheck(
            name="System Disk",
            passed=False,
            message=f"{drive} holds the running system",
            severity="error",
        )
    return PreflightCheck(name="System Disk", passed=True, message="Not a system disk")


def check_removable(drive: str, removable: list[str]) -> PreflightCheck:
    if drive not in removable:
        return PreflightCheck(
            name="Removable",
            passed=False,
            message=f"{drive} is not a USB drive",
            severity="error",
        )
    return PreflightCheck(name="Removable", passed=True, message="USB drive")


def check_image(image_path: Path) -> PreflightCheck:
    if not image_path.is_file():
        return PreflightCheck(
            name="Image",
            passed=False,
            message=f"Image not found: {image_path}",
            severity="error",
        )
    return PreflightCheck(
        name="Image",
        passed=True,
        message="Image file present",
        details={"size_bytes": image_path.stat().st_size},
    )


def check_tools(config: WindUSBConfig) -> PreflightCheck:
    missing = config.tools.missing()
    if missing:
        return PreflightCheck(
            name="Tools",
            passed=False,
            message=f"Missing tools: {', '.join(missing)}",
            severity="error",
            details={"missing": missing},
        )
    return PreflightCheck(name="Tools", passed=True, message="All tools available")


def check_power_status() -> PreflightCheck:
    """Check if system is on AC power (not battery)."""
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, OSError) as e:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message=f"Could not check power status: {e}",
        )

    if battery is None:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message="No battery detected (desktop/server)",
        )
    if battery.power_plugged:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message="System is on AC power",
            details={"battery_percent": battery.percent},
        )
    return PreflightCheck(
        name="Power Status",
        passed=battery.percent > 20,
        message=f"System on battery ({battery.percent}%)",
        severity="warning",
        details={"battery_percent": battery.percent},
    )


def run_preflight(
    drive: str,
    image_path: Path,
    config: WindUSBConfig,
    removable: list[str] | None = None,
) -> PreflightReport:
    """Run every preflight check for flashing ``image_path`` onto ``drive``."""
    report = PreflightReport()
    report.checks.append(check_device(drive))
    report.checks.append(check_not_system_disk(drive, config))
    if config.safety.removable_only and removable is not None:
        report.checks.append(check_removable(drive, removable))
    report.checks.append(check_image(image_path))
    report.checks.append(check_tools(config))
    report.checks.append(check_power_status())
    return report
