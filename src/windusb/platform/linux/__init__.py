"""
WindUSB Linux Platform Backend.

Implements the flash tools using standard Linux programs:
- 7z for listing and extracting the image
- wipefs/sgdisk/partprobe for partitioning
- mkfs.fat for formatting
- wimlib-imagex for splitting the install payload
- du and /proc/meminfo for progress telemetry
"""

from windusb.platform.linux.backend import LinuxBackend
from windusb.platform.linux.parsers import (
    build_removable_drives,
    parse_du_output,
    parse_lsblk_json,
    parse_meminfo_writeback,
)

__all__ = [
    "LinuxBackend",
    "build_removable_drives",
    "parse_du_output",
    "parse_lsblk_json",
    "parse_meminfo_writeback",
]
