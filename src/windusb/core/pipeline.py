"""
WindUSB Flash Pipeline.

The state machine that turns a drive into Windows installation media.
Phases run strictly in order on the calling thread; the first failure
ends the job with exactly one Error event.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from windusb.core.config import WindUSBConfig
from windusb.core.errors import (
    DriveDisconnectedError,
    FlashError,
    InvalidImageError,
    ToolFailedError,
)
from windusb.core.events import EventChannel
from windusb.core.logging import PhaseLogger, get_logger
from windusb.core.models import FlashJob, InstallPayload, Phase
from windusb.core.progress import (
    CopyProgressStrategy,
    CopyStage,
    FlushProgress,
    ProgressMonitor,
    ProgressStrategy,
)
from windusb.core.safety import DeviceGuard

if TYPE_CHECKING:
    from windusb.platform.base import CommandResult, FlashBackend

logger = get_logger(__name__)

StrategyFactory = Callable[[int, InstallPayload], ProgressStrategy]

# (status line, fraction) announced when a phase begins
PHASE_ANNOUNCEMENTS: dict[Phase, tuple[str, float]] = {
    Phase.DETECT: ("Inspecting image...", 0.0),
    Phase.PREPARE: ("Unmounting {drive}...", 0.01),
    Phase.PARTITION: ("Formatting drive {drive}...", 0.02),
    Phase.FORMAT: ("Creating FAT32 filesystem...", 0.03),
    Phase.MOUNT: ("Mounting drive and image...", 0.04),
    Phase.EXTRACT: ("Extracting boot files...", 0.05),
    Phase.SPLIT: ("Splitting {payload}...", 0.25),
    Phase.FINALIZE: ("Flushing cache...", 0.80),
}


class FlashPipeline:
    """Runs one FlashJob from image detection to a flushed, unmounted drive."""

    def __init__(
        self,
        job: FlashJob,
        backend: FlashBackend,
        channel: EventChannel | None = None,
        config: WindUSBConfig | None = None,
        guard: DeviceGuard | None = None,
        strategy_factory: StrategyFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job = job
        self.backend = backend
        self.channel = channel or EventChannel()
        self.config = config or WindUSBConfig()
        self.guard = guard or DeviceGuard()
        self._strategy_factory = strategy_factory or self._default_strategy
        self._sleep = sleep
        self._clock = clock
        self._monitor: ProgressMonitor | None = None
        self._strategy: ProgressStrategy | None = None
        self._mounted: list[Path] = []
        self._log = logger.bind(job_id=job.id[:8], drive=job.drive)

    def _steps(self) -> list[tuple[Phase, Callable[[], None]]]:
        return [
            (Phase.DETECT, self._detect),
            (Phase.PREPARE, self._prepare),
            (Phase.PARTITION, self._partition),
            (Phase.FORMAT, self._format),
            (Phase.MOUNT, self._mount),
            (Phase.EXTRACT, self._extract),
            (Phase.SPLIT, self._split),
            (Phase.FINALIZE, self._finalize),
        ]

    def run(self) -> bool:
        """
        Run every phase. Returns True on success.

        Never raises for job failures: each one becomes the single
        terminal Error event on the channel.
        """
        self._log.info("Flash started", image=str(self.job.image_path))
        try:
            for phase, step in self._steps():
                self._enter(phase)
                with PhaseLogger(phase, self._log):
                    step()
        except FlashError as e:
            self._teardown()
            self.channel.error(str(e))
            return False
        except Exception as e:
            phase_label = self.job.phase.label if self.job.phase else "startup"
            self._log.exception("Unexpected pipeline error", phase=phase_label)
            self._teardown()
            self.channel.error(f"Unexpected error during {phase_label.lower()}: {e}")
            return False

        self._teardown()
        self.channel.finish()
        self._log.info("Flash finished", history=[p.name for p in self.job.history])
        return True

    def _enter(self, phase: Phase) -> None:
        self.job.advance(phase)
        if phase.touches_drive:
            self.guard.require(self.job.drive, f"before {phase.activity}", phase)

        message, fraction = PHASE_ANNOUNCEMENTS[phase]
        payload = self.job.payload.filename if self.job.payload else ""
        self.channel.update(message.format(drive=self.job.drive, payload=payload), fraction)

    def _check_drive(self, when: str) -> None:
        self.guard.require(self.job.drive, when, self.job.phase)

    def _require(self, result: CommandResult, message: str) -> None:
        """Turn a failed command into a fatal error for the current phase."""
        if not result.success:
            raise ToolFailedError(
                message,
                phase=self.job.phase,
                returncode=result.returncode,
                stderr=result.stderr,
            )

    def _best_effort(self, result: CommandResult, step: str) -> None:
        if not result.success:
            self._log.warning(
                "Best-effort step failed",
                step=step,
                returncode=result.returncode,
                stderr=result.stderr[:500],
            )

    # ==================== Phases ====================

    def _detect(self) -> None:
        result = self.backend.list_image(self.job.image_path)
        payload = InstallPayload.from_listing(result.stdout) if result.success else None
        if payload is None:
            raise InvalidImageError(
                "Invalid image: install.wim/esd not found", Phase.DETECT
            )
        self.job.payload = payload
        self._log.info("Payload detected", payload=payload.archive_path)

    def _prepare(self) -> None:
        try:
            results = self.backend.unmount_partitions(self.job.drive)
        except OSError as e:
            self._log.warning("Could not list existing mounts", error=str(e))
            return
        for result in results:
            self._best_effort(result, "unmount")

    def _partition(self) -> None:
        drive = self.job.drive
        self._best_effort(self.backend.flush_buffers(drive), "flushbufs")
        self._require(
            self.backend.wipe_signatures(drive),
            "Failed to erase existing signatures",
        )
        self._best_effort(self.backend.zap_partition_table(drive), "zap")
        self._require(
            self.backend.create_gpt_partition(drive),
            "Failed to create partition",
        )
        self._best_effort(self.backend.reread_partition_table(drive), "partprobe")
        # partprobe returns before udev has created the partition node
        self._sleep(self.config.flash.settle_delay_seconds)
        self._check_drive("after partitioning")

    def _format(self) -> None:
        self._require(
            self.backend.format_fat32(self.job.partition),
            "Formatting failed. Drive may have been removed.",
        )

    def _mount(self) -> None:
        self._require(
            self.backend.mount(self.job.partition, self.job.usb_mount),
            "Failed to mount USB drive.",
        )
        self._mounted.append(self.job.usb_mount)
        self._require(
            self.backend.mount(self.job.image_path, self.job.iso_mount, ["loop", "ro"]),
            "Failed to mount image.",
        )
        self._mounted.append(self.job.iso_mount)

    def _extract(self) -> None:
        payload = self._payload()
        self._strategy = self._strategy_factory(self._payload_size(payload), payload)
        self._monitor = ProgressMonitor(
            channel=self.channel,
            strategy=self._strategy,
            sample_usage=lambda: self.backend.get_directory_usage(self.job.usb_mount),
            sample_writeback=self.backend.get_writeback_bytes,
            drive_present=lambda: self.guard.exists(self.job.drive),
            interval=self.config.flash.monitor_interval_seconds,
        )
        self._monitor.start()

        result = self.backend.extract_image(
            self.job.image_path, self.job.usb_mount, payload.filename
        )
        self._check_drive("during extraction")
        self._require(result, "Extraction failed (7z error).")

    def _split(self) -> None:
        payload = self._payload()
        if self._strategy is not None:
            self._strategy.set_stage(CopyStage.PAYLOAD)

        try:
            result = self.backend.split_payload(
                self.job.iso_mount / payload.archive_path,
                self.job.usb_mount / "sources" / payload.split_filename,
                self.config.flash.split_chunk_mib,
            )
        finally:
            self._stop_monitor()

        self._check_drive("during splitting")
        self._require(result, f"Splitting {payload.filename} failed (wimlib error).")

    def _finalize(self) -> None:
        flash = self.config.flash
        try:
            sync = self.backend.start_sync()
        except OSError as e:
            raise ToolFailedError(
                "Sync failed. Drive was likely unplugged.",
                phase=Phase.FINALIZE,
                stderr=str(e),
            ) from e

        flush = FlushProgress(self.backend.get_writeback_bytes(), flash.flush_threshold_bytes)
        grace_deadline: float | None = None

        while True:
            if not self.guard.exists(self.job.drive):
                raise DriveDisconnectedError(
                    "Drive disconnected during final sync.", Phase.FINALIZE
                )

            backlog = self.backend.get_writeback_bytes()
            message, fraction = flush.estimate(backlog)
            self.channel.update(message, fraction)

            if sync.poll() is not None:
                result = sync.result()
                if result is not None:
                    self._require(result, "Sync failed. Drive was likely unplugged.")
                if flush.is_settled(backlog):
                    break
                # Other writers on the system can keep the backlog up forever
                if grace_deadline is None:
                    grace_deadline = self._clock() + flash.flush_grace_seconds
                elif self._clock() >= grace_deadline:
                    self._log.warning("Writeback still busy after sync", backlog=backlog)
                    break

            self._sleep(flash.flush_interval_seconds)

        self._release_mounts()

    # ==================== Helpers ====================

    def _payload(self) -> InstallPayload:
        if self.job.payload is None:
            raise InvalidImageError("Invalid image: install.wim/esd not found", self.job.phase)
        return self.job.payload

    def _payload_size(self, payload: InstallPayload) -> int:
        try:
            return (self.job.iso_mount / payload.archive_path).stat().st_size
        except OSError:
            return self.config.flash.payload_size_fallback_bytes

    def _default_strategy(self, payload_size: int, payload: InstallPayload) -> ProgressStrategy:
        return CopyProgressStrategy(
            payload_size=payload_size,
            boot_files_estimate=self.config.flash.boot_files_estimate_bytes,
            payload_name=payload.filename,
        )

    def _stop_monitor(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None

    def _release_mounts(self) -> None:
        while self._mounted:
            mountpoint = self._mounted.pop()
            self._best_effort(self.backend.unmount(mountpoint, lazy=True), "umount")

    def _teardown(self) -> None:
        """Release everything the job holds. Must not raise."""
        self._stop_monitor()
        try:
            self._release_mounts()
        except (OSError, FlashError) as e:
            # After cleanup the backend refuses to spawn umount; cleanup
            # has already released our mountpoints
            self._log.warning("Unmount during teardown failed", error=str(e))
        leftover = self.job.remove_mountpoints()
        if leftover:
            self._log.warning(
                "Mountpoints left behind", paths=[str(p) for p in leftover]
            )
