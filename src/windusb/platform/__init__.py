"""
WindUSB Platform Abstraction Layer.

Provides the platform-specific implementation of the tools a flash job
drives.
"""

from __future__ import annotations

import platform
from typing import TYPE_CHECKING

from windusb.platform.base import CommandResult, FlashBackend, RunningCommand

if TYPE_CHECKING:
    from windusb.core.config import ToolsConfig


def get_platform_backend(tools: ToolsConfig | None = None) -> FlashBackend:
    """Get the appropriate platform backend for the current OS."""
    system = platform.system().lower()

    if system == "linux":
        from windusb.platform.linux import LinuxBackend

        return LinuxBackend(tools=tools)
    raise RuntimeError(f"Unsupported platform: {system}")


__all__ = [
    "CommandResult",
    "FlashBackend",
    "RunningCommand",
    "get_platform_backend",
]
