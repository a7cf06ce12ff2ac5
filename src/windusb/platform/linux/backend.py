"""
Linux Platform Backend Implementation.

Drives the flash pipeline with standard Linux tools.
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path

import psutil

from windusb.core.cleanup import PROCESS_REGISTRY, ProcessRegistry
from windusb.core.config import ToolsConfig
from windusb.core.errors import FlashCancelledError
from windusb.core.logging import get_logger
from windusb.core.models import RemovableDrive
from windusb.platform.base import CommandResult, FlashBackend, RunningCommand
from windusb.platform.linux.parsers import (
    build_removable_drives,
    parse_du_output,
    parse_lsblk_json,
    parse_meminfo_writeback,
)

logger = get_logger(__name__)


class LinuxBackend(FlashBackend):
    """Linux implementation of the flash tools."""

    MEMINFO = Path("/proc/meminfo")

    # GPT type code for Microsoft basic data
    PARTITION_TYPE = "0700"

    def __init__(
        self,
        tools: ToolsConfig | None = None,
        registry: ProcessRegistry | None = None,
    ) -> None:
        self.tools = tools or ToolsConfig()
        self.registry = registry if registry is not None else PROCESS_REGISTRY

    @property
    def name(self) -> str:
        return "linux"

    def is_admin(self) -> bool:
        return os.geteuid() == 0

    def _spawn(self, command: list[str], stream: int) -> subprocess.Popen[str]:
        """
        Start and register a tool, unless cleanup has already run.

        The flag is checked again after registering: cleanup cancels before
        it snapshots the registry, so a process is either in that snapshot
        or sees the flag here.
        """
        if self.registry.cancelled:
            raise FlashCancelledError()
        process = subprocess.Popen(command, stdout=stream, stderr=stream, text=True)
        self.registry.add(process)
        if self.registry.cancelled:
            process.kill()
            process.wait()
            self.registry.discard(process)
            raise FlashCancelledError()
        return process

    def run_command(
        self,
        command: list[str],
        check: bool = True,
        capture_output: bool = True,
    ) -> CommandResult:
        """
        Run a command to completion.

        There is no timeout: the only way to stop a long tool is cleanup,
        which kills it through the process registry. Raises
        FlashCancelledError once cleanup has run.
        """
        logger.debug("Running command", command=command)
        start_time = time.time()
        stream = subprocess.PIPE if capture_output else subprocess.DEVNULL

        try:
            process = self._spawn(command, stream)
        except OSError as e:
            logger.warning("Command could not be started", command=command, error=str(e))
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=str(e),
                command=command,
                duration_seconds=time.time() - start_time,
            )

        try:
            stdout, stderr = process.communicate()
        finally:
            self.registry.discard(process)

        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            command=command,
            duration_seconds=time.time() - start_time,
        )

        if check and not result.success:
            logger.warning(
                "Command failed",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr[:500],
            )

        return result

    def start_command(self, command: list[str]) -> RunningCommand:
        """Start a command and return without waiting for it."""
        logger.debug("Starting command", command=command)
        process = self._spawn(command, subprocess.PIPE)
        return RunningCommand(process, command, registry=self.registry)

    # ==================== Image Operations ====================

    def list_image(self, image_path: Path) -> CommandResult:
        return self.run_command(
            [self.tools.resolve_seven_zip(), "l", str(image_path)],
            check=False,
        )

    def extract_image(
        self, image_path: Path, destination: Path, exclude: str
    ) -> CommandResult:
        return self.run_command(
            [
                self.tools.resolve_seven_zip(),
                "x",
                str(image_path),
                f"-o{destination}",
                f"-xr!{exclude}",
                "-y",
            ],
            capture_output=False,
        )

    def split_payload(
        self, source: Path, destination: Path, chunk_mib: int
    ) -> CommandResult:
        destination.parent.mkdir(parents=True, exist_ok=True)
        return self.run_command(
            [self.tools.wimlib, "split", str(source), str(destination), str(chunk_mib)],
            capture_output=False,
        )

    # ==================== Drive Operations ====================

    def unmount_partitions(self, drive: str) -> list[CommandResult]:
        results: list[CommandResult] = []
        for part in psutil.disk_partitions(all=True):
            if part.device.startswith(drive):
                results.append(self.unmount(part.mountpoint, lazy=True))
        return results

    def flush_buffers(self, drive: str) -> CommandResult:
        return self.run_command([self.tools.blockdev, "--flushbufs", drive])

    def wipe_signatures(self, drive: str) -> CommandResult:
        return self.run_command([self.tools.wipefs, "-af", drive])

    def zap_partition_table(self, drive: str) -> CommandResult:
        return self.run_command([self.tools.sgdisk, "-Z", drive])

    def create_gpt_partition(self, drive: str) -> CommandResult:
        return self.run_command(
            [self.tools.sgdisk, "-n=1:0:0", f"-t=1:{self.PARTITION_TYPE}", drive]
        )

    def reread_partition_table(self, drive: str) -> CommandResult:
        return self.run_command([self.tools.partprobe, drive])

    def format_fat32(self, partition: str) -> CommandResult:
        return self.run_command([self.tools.mkfs_fat, "-F32", "-I", partition])

    # ==================== Mount Operations ====================

    def mount(
        self, source: str | Path, mountpoint: Path, options: list[str] | None = None
    ) -> CommandResult:
        mountpoint.mkdir(parents=True, exist_ok=True)
        cmd = [self.tools.mount]
        if options:
            cmd.extend(["-o", ",".join(options)])
        cmd.extend([str(source), str(mountpoint)])
        return self.run_command(cmd)

    def unmount(self, mountpoint: str | Path, lazy: bool = True) -> CommandResult:
        cmd = [self.tools.umount]
        if lazy:
            cmd.append("-l")
        cmd.append(str(mountpoint))
        return self.run_command(cmd, check=False)

    def start_sync(self) -> RunningCommand:
        return self.start_command([self.tools.sync])

    # ==================== Telemetry ====================

    def get_directory_usage(self, path: Path) -> int | None:
        if not path.is_dir():
            return None
        try:
            result = self.run_command([self.tools.du, "-sb", str(path)], check=False)
        except FlashCancelledError:
            return None
        if not result.success:
            return None
        return parse_du_output(result.stdout)

    def get_writeback_bytes(self) -> int:
        try:
            content = self.MEMINFO.read_text()
        except OSError:
            return 0
        return parse_meminfo_writeback(content)

    # ==================== Inventory ====================

    def list_removable_drives(self) -> list[RemovableDrive]:
        result = self.run_command(
            [
                self.tools.lsblk,
                "-J",
                "-b",
                "-p",
                "-o",
                "NAME,PATH,SIZE,MODEL,TRAN,TYPE,RM",
            ],
            check=False,
        )
        if not result.success:
            logger.warning("lsblk failed", stderr=result.stderr[:500])
            return []
        return build_removable_drives(parse_lsblk_json(result.stdout))
