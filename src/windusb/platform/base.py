"""
WindUSB Platform Backend Base.

Defines the abstract interface to the external tools a flash job drives.
"""

from __future__ import annotations

import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from windusb.core.cleanup import ProcessRegistry
    from windusb.core.models import InstallPayload, RemovableDrive


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def __repr__(self) -> str:
        cmd = self.command if isinstance(self.command, str) else " ".join(self.command)
        return f"CommandResult(rc={self.returncode}, cmd='{cmd[:50]}...')"


class RunningCommand:
    """A started command the caller polls instead of blocking on."""

    def __init__(
        self,
        process: subprocess.Popen[str],
        command: list[str],
        registry: ProcessRegistry | None = None,
    ) -> None:
        self.process = process
        self.command = command
        self._registry = registry
        self._start_time = time.time()
        self._result: CommandResult | None = None

    def poll(self) -> int | None:
        """Return the exit status, or None while still running."""
        returncode = self.process.poll()
        if returncode is not None:
            self._collect()
        return returncode

    def result(self) -> CommandResult | None:
        """The final result once the command has exited."""
        if self._result is None and self.process.poll() is not None:
            self._collect()
        return self._result

    def _collect(self) -> CommandResult:
        if self._result is None:
            stdout, stderr = self.process.communicate()
            self._result = CommandResult(
                returncode=self.process.returncode,
                stdout=stdout or "",
                stderr=stderr or "",
                command=self.command,
                duration_seconds=time.time() - self._start_time,
            )
            if self._registry is not None:
                self._registry.discard(self.process)
        return self._result


class FlashBackend(ABC):
    """Abstract base class for the tools behind each pipeline phase."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Platform name (e.g., 'linux')."""

    @abstractmethod
    def is_admin(self) -> bool:
        """Check if running with admin privileges."""

    # ==================== Image Operations ====================

    @abstractmethod
    def list_image(self, image_path: Path) -> CommandResult:
        """List the contents of a disc image."""

    def inspect_image(self, image_path: Path) -> InstallPayload | None:
        """Return the installation payload inside ``image_path``, if any."""
        from windusb.core.models import InstallPayload

        result = self.list_image(image_path)
        if not result.success:
            return None
        return InstallPayload.from_listing(result.stdout)

    @abstractmethod
    def extract_image(
        self, image_path: Path, destination: Path, exclude: str
    ) -> CommandResult:
        """Extract every file of the image except ``exclude``."""

    @abstractmethod
    def split_payload(
        self, source: Path, destination: Path, chunk_mib: int
    ) -> CommandResult:
        """Split a WIM/ESD payload into parts of at most ``chunk_mib``."""

    # ==================== Drive Operations ====================

    @abstractmethod
    def unmount_partitions(self, drive: str) -> list[CommandResult]:
        """Unmount every mounted partition of ``drive``."""

    @abstractmethod
    def flush_buffers(self, drive: str) -> CommandResult:
        """Flush the kernel's buffers for ``drive``."""

    @abstractmethod
    def wipe_signatures(self, drive: str) -> CommandResult:
        """Erase filesystem and partition table signatures."""

    @abstractmethod
    def zap_partition_table(self, drive: str) -> CommandResult:
        """Destroy GPT and MBR structures."""

    @abstractmethod
    def create_gpt_partition(self, drive: str) -> CommandResult:
        """Create one GPT partition spanning the whole drive."""

    @abstractmethod
    def reread_partition_table(self, drive: str) -> CommandResult:
        """Ask the kernel to re-read the partition table."""

    @abstractmethod
    def format_fat32(self, partition: str) -> CommandResult:
        """Create a FAT32 filesystem on ``partition``."""

    # ==================== Mount Operations ====================

    @abstractmethod
    def mount(
        self, source: str | Path, mountpoint: Path, options: list[str] | None = None
    ) -> CommandResult:
        """Mount ``source`` at ``mountpoint``."""

    @abstractmethod
    def unmount(self, mountpoint: str | Path, lazy: bool = True) -> CommandResult:
        """Unmount ``mountpoint``; lazily by default to survive a removed drive."""

    @abstractmethod
    def start_sync(self) -> RunningCommand:
        """Start a filesystem sync without waiting for it."""

    # ==================== Telemetry ====================

    @abstractmethod
    def get_directory_usage(self, path: Path) -> int | None:
        """Bytes currently stored under ``path``; None if it is gone."""

    @abstractmethod
    def get_writeback_bytes(self) -> int:
        """Bytes waiting in the page cache to reach stable storage."""

    # ==================== Inventory ====================

    @abstractmethod
    def list_removable_drives(self) -> list[RemovableDrive]:
        """List USB disks that could be flashed."""
