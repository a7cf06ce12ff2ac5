"""
WindUSB Core - Flash pipeline and its supporting services.

Contains the flashing state machine, progress estimation, event channel,
cleanup protocol, configuration and logging.
"""

from windusb.core.config import WindUSBConfig
from windusb.core.errors import FlashError
from windusb.core.events import EventChannel
from windusb.core.job import FlashRunner, JobResult, JobStatus
from windusb.core.logging import get_logger, setup_logging
from windusb.core.models import FlashJob, Phase
from windusb.core.pipeline import FlashPipeline

__all__ = [
    "WindUSBConfig",
    "FlashError",
    "EventChannel",
    "FlashRunner",
    "JobResult",
    "JobStatus",
    "get_logger",
    "setup_logging",
    "FlashJob",
    "Phase",
    "FlashPipeline",
]
