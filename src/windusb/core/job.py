"""
WindUSB Job Runner.

Runs each flash pipeline on its own worker thread so the caller stays
free to drain and render the event channel.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import TYPE_CHECKING

from windusb.core.config import WindUSBConfig
from windusb.core.events import Error, EventChannel
from windusb.core.logging import get_logger
from windusb.core.models import FlashJob, Phase
from windusb.core.pipeline import FlashPipeline
from windusb.core.safety import DeviceGuard

if TYPE_CHECKING:
    from windusb.platform.base import FlashBackend

logger = get_logger(__name__)


class JobStatus(Enum):
    """Status of a flash job."""

    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()


@dataclass
class JobResult:
    """Result of a finished flash job."""

    success: bool
    error: str | None = None
    history: list[Phase] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


class FlashRunner:
    """Executes flash jobs with proper lifecycle management."""

    def __init__(
        self,
        backend: FlashBackend,
        config: WindUSBConfig | None = None,
        guard: DeviceGuard | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or WindUSBConfig()
        self.guard = guard or DeviceGuard()
        self._jobs: dict[str, FlashJob] = {}
        self._pipelines: dict[str, FlashPipeline] = {}
        self._status: dict[str, JobStatus] = {}
        self._results: dict[str, JobResult] = {}
        self._running_threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._status_callbacks: list[Callable[[str, JobStatus], None]] = []

    def submit(self, job: FlashJob, channel: EventChannel | None = None) -> str:
        """Submit a job for execution. Returns job ID."""
        pipeline = FlashPipeline(
            job,
            self.backend,
            channel=channel,
            config=self.config,
            guard=self.guard,
        )
        with self._lock:
            self._jobs[job.id] = job
            self._pipelines[job.id] = pipeline
            self._status[job.id] = JobStatus.PENDING

        logger.info(
            "Job submitted",
            job_id=job.id,
            drive=job.drive,
            image=str(job.image_path),
        )
        return job.id

    def start(self, job_id: str) -> None:
        """Start executing a submitted job on a worker thread."""
        self._get_pipeline(job_id)

        thread = threading.Thread(
            target=self._execute_job,
            args=(job_id,),
            name=f"flash-{job_id[:8]}",
            daemon=True,
        )

        with self._lock:
            self._running_threads[job_id] = thread

        thread.start()

    def run_sync(self, job: FlashJob, channel: EventChannel | None = None) -> JobResult:
        """Run a job on the calling thread and return its result."""
        job_id = self.submit(job, channel)
        self._execute_job(job_id)
        return self._results[job_id]

    def _execute_job(self, job_id: str) -> None:
        pipeline = self._get_pipeline(job_id)
        job = pipeline.job
        started = datetime.now()
        self._set_status(job_id, JobStatus.RUNNING)

        success = False
        try:
            success = pipeline.run()
        finally:
            terminal = pipeline.channel.terminal_event
            if not success and terminal is None:
                # run() only returns without a terminal event if it raised
                pipeline.channel.error("Flash job aborted unexpectedly.")
                terminal = pipeline.channel.terminal_event
            result = JobResult(
                success=success,
                error=terminal.message if isinstance(terminal, Error) else None,
                history=list(job.history),
                start_time=started,
                end_time=datetime.now(),
            )
            with self._lock:
                self._results[job_id] = result
                self._running_threads.pop(job_id, None)

            if success:
                logger.info(
                    "Job completed",
                    job_id=job_id,
                    duration_seconds=result.duration_seconds,
                )
            else:
                logger.error("Job failed", job_id=job_id, error=result.error)
            self._set_status(job_id, JobStatus.COMPLETED if success else JobStatus.FAILED)

    def wait(self, job_id: str, timeout: float | None = None) -> JobResult | None:
        """Wait for a job to complete."""
        thread = self._running_threads.get(job_id)
        if thread:
            thread.join(timeout)
        return self._results.get(job_id)

    def get_job(self, job_id: str) -> FlashJob | None:
        return self._jobs.get(job_id)

    def get_channel(self, job_id: str) -> EventChannel:
        return self._get_pipeline(job_id).channel

    def get_status(self, job_id: str) -> JobStatus | None:
        return self._status.get(job_id)

    def get_result(self, job_id: str) -> JobResult | None:
        return self._results.get(job_id)

    def add_status_callback(self, callback: Callable[[str, JobStatus], None]) -> None:
        """Add a callback to be notified of job status changes."""
        self._status_callbacks.append(callback)

    def _get_pipeline(self, job_id: str) -> FlashPipeline:
        pipeline = self._pipelines.get(job_id)
        if pipeline is None:
            raise KeyError(f"Job not found: {job_id}")
        return pipeline

    def _set_status(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            self._status[job_id] = status
        for callback in self._status_callbacks:
            try:
                callback(job_id, status)
            except Exception as e:
                logger.warning("Status callback error", error=str(e))
