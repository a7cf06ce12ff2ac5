"""
WindUSB structured logging.

Every external tool a job runs is logged with its full command line, so
the log doubles as an audit trail of what was done to a drive.
"""

from __future__ import annotations

import logging
import shlex
import sys
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, WrappedLogger

from windusb.core.errors import FlashError, ToolFailedError

if TYPE_CHECKING:
    from windusb.core.config import LoggingConfig
    from windusb.core.models import Phase


_configured = False


def render_command(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Show argv lists as the shell line a user could paste and rerun."""
    command = event_dict.get("command")
    if isinstance(command, (list, tuple)):
        event_dict["command"] = shlex.join(str(arg) for arg in command)
    return event_dict


def setup_logging(config: LoggingConfig) -> None:
    """Route structlog through stdlib logging to stderr and the daily log file."""
    global _configured

    if _configured:
        return

    handlers: list[logging.Handler] = []

    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, config.level))
        handlers.append(console_handler)

    if config.file_enabled:
        config.log_directory.mkdir(parents=True, exist_ok=True)
        log_file = config.log_directory / f"windusb_{datetime.now():%Y%m%d}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        # The file keeps every command run against the drive
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, handlers=handlers, format="%(message)s")

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        render_command,
        structlog.processors.StackInfoRenderer(),
    ]
    if config.json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name or "windusb")


class PhaseLogger:
    """Logs the start, duration and outcome of one pipeline phase."""

    def __init__(self, phase: Phase, logger: structlog.stdlib.BoundLogger | None = None):
        self.phase = phase
        self.logger = (logger or get_logger()).bind(phase=phase.name)
        self._started = 0.0

    def __enter__(self) -> PhaseLogger:
        self._started = time.monotonic()
        self.logger.info(f"Starting {self.phase.label}")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration = round(time.monotonic() - self._started, 3)

        if exc_val is None:
            self.logger.info(f"Completed {self.phase.label}", duration_seconds=duration)
        elif isinstance(exc_val, ToolFailedError):
            self.logger.error(
                f"Failed {self.phase.label}",
                duration_seconds=duration,
                error=exc_val.message,
                returncode=exc_val.returncode,
            )
        elif isinstance(exc_val, FlashError):
            self.logger.error(
                f"Failed {self.phase.label}", duration_seconds=duration, error=exc_val.message
            )
        else:
            # Unexpected errors get their traceback logged by the pipeline
            self.logger.error(
                f"Aborted {self.phase.label}",
                duration_seconds=duration,
                error_type=exc_type.__name__ if exc_type else None,
            )
