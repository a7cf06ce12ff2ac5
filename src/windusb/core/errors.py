"""
WindUSB error types.

Every fatal condition in a flash job is raised as a FlashError subclass
and turned into exactly one terminal Error event by the pipeline.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from windusb.core.models import Phase


class FlashError(Exception):
    """Base class for errors that end a flash job."""

    def __init__(self, message: str, phase: Phase | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase


class InvalidImageError(FlashError):
    """The image does not contain a recognised installation payload."""


class DriveDisconnectedError(FlashError):
    """The target drive vanished between two steps."""


class FlashCancelledError(FlashError):
    """Cleanup has run; no further tool may be started."""

    def __init__(self, message: str = "Flash cancelled.", phase: Phase | None = None) -> None:
        super().__init__(message, phase)


class ToolFailedError(FlashError):
    """An external tool exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        phase: Phase | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(f"{message} ({detail})" if detail else message, phase)
        self.returncode = returncode
        self.stderr = stderr
