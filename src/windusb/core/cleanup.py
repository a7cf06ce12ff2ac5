"""
WindUSB process-group cleanup.

Tears down everything a flash job may have left running or mounted:
helper processes, ephemeral mountpoints, and the rest of our process
group. Cancellation is not cooperative; this is the only way a running
job is stopped.

Nothing here takes a lock, so cleanup() can run from a signal handler
that interrupted a thread in the middle of registering a process.
"""

from __future__ import annotations

import atexit
import glob
import os
import signal
import subprocess
from dataclasses import dataclass, field
from types import FrameType
from typing import TYPE_CHECKING

import psutil

from windusb.core.logging import get_logger

if TYPE_CHECKING:
    from windusb.core.config import FlashConfig, ToolsConfig

logger = get_logger(__name__)

HELPER_PROCESS_NAMES = frozenset(
    {
        "7z",
        "7za",
        "7zz",
        "wimlib-imagex",
        "du",
        "mkfs.fat",
        "sgdisk",
        "wipefs",
        "partprobe",
        "sync",
    }
)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class ProcessRegistry:
    """Handles of every subprocess currently spawned by this application."""

    def __init__(self) -> None:
        # Single dict operations are atomic, so no lock is needed
        self._processes: dict[int, subprocess.Popen[str]] = {}
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """True once cleanup has started; nothing may be spawned after that."""
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def add(self, process: subprocess.Popen[str]) -> None:
        self._processes[process.pid] = process

    def discard(self, process: subprocess.Popen[str]) -> None:
        self._processes.pop(process.pid, None)

    def snapshot(self) -> list[subprocess.Popen[str]]:
        """Copy of the registered handles, tolerant of concurrent changes."""
        for _ in range(5):
            try:
                return list(self._processes.values())
            except RuntimeError:
                continue
        return []

    def __len__(self) -> int:
        return len(self._processes)

    def __contains__(self, process: object) -> bool:
        return any(p is process for p in self.snapshot())


PROCESS_REGISTRY = ProcessRegistry()


@dataclass
class CleanupReport:
    """What a cleanup pass actually did."""

    reason: str
    killed_pids: list[int] = field(default_factory=list)
    unmounted: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def did_anything(self) -> bool:
        return bool(self.killed_pids or self.unmounted or self.removed)


class CleanupManager:
    """Runs the teardown protocol once, no matter how often it is triggered."""

    def __init__(
        self,
        flash_config: FlashConfig,
        tools: ToolsConfig,
        registry: ProcessRegistry | None = None,
        kill_process_group: bool = True,
    ) -> None:
        self.flash_config = flash_config
        self.tools = tools
        self.registry = registry if registry is not None else PROCESS_REGISTRY
        self.kill_process_group = kill_process_group
        self._done = False
        self._report: CleanupReport | None = None

    @property
    def done(self) -> bool:
        return self._done

    @property
    def report(self) -> CleanupReport | None:
        return self._report

    def cleanup(self, reason: str = "cleanup") -> CleanupReport:
        """Kill helpers, release mountpoints, then kill our process group."""
        if self._done:
            return CleanupReport(reason=reason)
        self._done = True

        report = CleanupReport(reason=reason)
        self._report = report

        # Refuse new spawns before the snapshot so none can slip past the kill
        self.registry.cancel()
        report.killed_pids.extend(self._kill_registered())
        report.killed_pids.extend(self._kill_helpers())
        self._release_mountpoints(report)
        if self.kill_process_group:
            report.killed_pids.extend(self._kill_process_group())

        logger.info(
            "Cleanup finished",
            reason=reason,
            killed=len(report.killed_pids),
            unmounted=report.unmounted,
        )
        return report

    def _kill_registered(self) -> list[int]:
        killed: list[int] = []
        for process in self.registry.snapshot():
            if process.poll() is not None:
                self.registry.discard(process)
                continue
            try:
                process.kill()
                killed.append(process.pid)
            except OSError:
                pass
            self.registry.discard(process)
        return killed

    def _kill_helpers(self) -> list[int]:
        """Kill descendants running one of the known helper tools."""
        killed: list[int] = []
        try:
            children = psutil.Process(os.getpid()).children(recursive=True)
        except psutil.Error:
            return killed

        for child in children:
            try:
                if child.name() in HELPER_PROCESS_NAMES:
                    child.kill()
                    killed.append(child.pid)
            except psutil.Error:
                continue
        return killed

    def _release_mountpoints(self, report: CleanupReport) -> None:
        for path in sorted(glob.glob(self.flash_config.mount_glob)):
            if os.path.ismount(path):
                try:
                    completed = subprocess.run(
                        [self.tools.umount, "-l", path],
                        stdout=subprocess.DEVNULL,
                        stderr=subprocess.DEVNULL,
                        check=False,
                    )
                    if completed.returncode == 0:
                        report.unmounted.append(path)
                except OSError:
                    pass
            try:
                os.rmdir(path)
                report.removed.append(path)
            except OSError:
                pass

    def _kill_process_group(self) -> list[int]:
        """Kill every other member of our process group, if we lead one."""
        own_pid = os.getpid()
        pgid = os.getpgrp()
        if pgid != own_pid:
            # Not our group (e.g. a shell pipeline); leave it alone
            return []

        killed: list[int] = []
        for process in psutil.process_iter():
            if process.pid == own_pid:
                continue
            try:
                if os.getpgid(process.pid) != pgid:
                    continue
                process.kill()
                killed.append(process.pid)
            except (OSError, psutil.Error):
                continue
        return killed


def become_process_group_leader() -> bool:
    """Put this process at the head of its own process group."""
    try:
        os.setpgid(0, 0)
    except PermissionError:
        # Session leaders cannot change group; they already lead one
        logger.debug("Could not create process group", pgid=os.getpgrp())
    return os.getpgrp() == os.getpid()


def install_signal_handlers(manager: CleanupManager) -> None:
    """Run cleanup on interrupt, termination, hangup and interpreter exit."""

    def _signal_handler(signum: int, frame: FrameType | None) -> None:
        manager.cleanup(reason=signal.Signals(signum).name)
        raise SystemExit(128 + signum)

    for sig in HANDLED_SIGNALS:
        signal.signal(sig, _signal_handler)

    atexit.register(manager.cleanup, "exit")
