"""
WindUSB progress estimation.

Neither 7z nor wimlib-imagex report progress we can use, so progress is
inferred by sampling side effects: bytes on the destination mountpoint
and the kernel's writeback backlog. Without subtracting the backlog,
progress would reach 100% long before the drive holds the data.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

import humanize

from windusb.core.events import EventChannel
from windusb.core.logging import get_logger

logger = get_logger(__name__)

SPINNER_FRAMES = ("-", "\\", "|", "/")


@dataclass(frozen=True)
class ProgressSample:
    """One reading of the destination and the page cache."""

    used_bytes: int
    writeback_bytes: int


class CopyStage(Enum):
    BOOT_FILES = auto()
    PAYLOAD = auto()


class ProgressStrategy(ABC):
    """Turns samples into (status line, fraction) pairs."""

    @abstractmethod
    def estimate(self, sample: ProgressSample) -> tuple[str, float]:
        """Return the status line and completion fraction for ``sample``."""

    def set_stage(self, stage: CopyStage) -> None:
        """Called when the pipeline moves from extraction to splitting."""


class CopyProgressStrategy(ProgressStrategy):
    """
    Progress over the extract and split phases.

    Boot files fill 5%-25% of the bar against a fixed size estimate; the
    split payload fills 25%-80% against the payload's real size, measured
    from whatever the drive held when the split started.
    """

    BOOT_START = 0.05
    BOOT_SPAN = 0.20
    PAYLOAD_START = 0.25
    PAYLOAD_SPAN = 0.55

    def __init__(
        self,
        payload_size: int,
        boot_files_estimate: int = 500_000_000,
        payload_name: str = "install.wim",
    ) -> None:
        self.payload_size = max(payload_size, 1)
        self.boot_files_estimate = max(boot_files_estimate, 1)
        self.payload_name = payload_name
        self.stage = CopyStage.BOOT_FILES
        self.baseline = 0
        self._lock = threading.Lock()

    def set_stage(self, stage: CopyStage) -> None:
        with self._lock:
            self.stage = stage

    def estimate(self, sample: ProgressSample) -> tuple[str, float]:
        with self._lock:
            stage = self.stage
            if stage is CopyStage.BOOT_FILES:
                self.baseline = sample.used_bytes
            baseline = self.baseline

        if stage is CopyStage.BOOT_FILES:
            committed = max(sample.used_bytes - sample.writeback_bytes, 0)
            ratio = min(committed / self.boot_files_estimate, 1.0)
            return "Extracting boot files...", self.BOOT_START + ratio * self.BOOT_SPAN

        written = max(sample.used_bytes - baseline, 0)
        ratio = min(written / self.payload_size, 1.0)
        message = (
            f"Splitting {self.payload_name}: "
            f"{humanize.naturalsize(written, binary=True)} / "
            f"{humanize.naturalsize(self.payload_size, binary=True)}"
        )
        return message, self.PAYLOAD_START + ratio * self.PAYLOAD_SPAN


class ProgressMonitor:
    """
    Background sampler that pushes Update events while tools run.

    It stops silently when the drive or the mountpoint disappears; the
    pipeline's own device checks decide whether that is an error.
    """

    def __init__(
        self,
        channel: EventChannel,
        strategy: ProgressStrategy,
        sample_usage: Callable[[], int | None],
        sample_writeback: Callable[[], int],
        drive_present: Callable[[], bool],
        interval: float = 0.5,
    ) -> None:
        self.channel = channel
        self.strategy = strategy
        self._sample_usage = sample_usage
        self._sample_writeback = sample_writeback
        self._drive_present = drive_present
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.samples_taken = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name="progress-monitor",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop sampling and wait until no further event can be emitted."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            if not self._drive_present():
                logger.debug("Drive gone, progress monitor stopping")
                return
            used = self._sample_usage()
            if used is None:
                logger.debug("Mountpoint gone, progress monitor stopping")
                return
            sample = ProgressSample(used_bytes=used, writeback_bytes=self._sample_writeback())
            self.samples_taken += 1
            message, fraction = self.strategy.estimate(sample)
            # A stop requested while sampling wins over the sample
            if self._stop.is_set():
                return
            self.channel.update(message, fraction)
            self._stop.wait(self.interval)


class FlushProgress:
    """
    Progress over the final flush, driven by the writeback backlog alone.

    Runs inline in the pipeline thread: nothing else is copying by then.
    """

    START = 0.80
    SPAN = 0.19
    CEILING = 0.99

    def __init__(self, initial_backlog: int, threshold: int) -> None:
        self.initial_backlog = max(initial_backlog, 1)
        self.threshold = threshold
        self._spin = 0

    def is_settled(self, backlog: int) -> bool:
        return backlog <= self.threshold

    def estimate(self, backlog: int) -> tuple[str, float]:
        if self.is_settled(backlog):
            self._spin = (self._spin + 1) % len(SPINNER_FRAMES)
            return f"Finishing writes... {SPINNER_FRAMES[self._spin]}", self.CEILING

        done = 1.0 - min(backlog / self.initial_backlog, 1.0)
        fraction = min(self.START + done * self.SPAN, self.CEILING)
        left = humanize.naturalsize(backlog, binary=True)
        return f"Flushing cache: {left} left", fraction
