"""
Linux output parsers.

Parsers for lsblk, du and /proc/meminfo.
"""

from __future__ import annotations

import json
from typing import Any

from windusb.core.models import RemovableDrive

WRITEBACK_FIELDS = ("Dirty:", "Writeback:")


def parse_meminfo_writeback(content: str) -> int:
    """
    Sum the Dirty and Writeback counters of /proc/meminfo, in bytes.

    The kernel reports both in kB. Unparseable lines are skipped.
    """
    total_kb = 0
    for line in content.splitlines():
        if not line.startswith(WRITEBACK_FIELDS):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            total_kb += int(parts[1])
        except ValueError:
            continue
    return total_kb * 1024


def parse_du_output(output: str) -> int | None:
    """Parse the byte count from ``du -sb`` output."""
    fields = output.split()
    if not fields:
        return None
    try:
        return int(fields[0])
    except ValueError:
        return None


def parse_lsblk_json(output: str) -> list[dict[str, Any]]:
    """Parse JSON output from lsblk."""
    try:
        data = json.loads(output)
        return data.get("blockdevices", [])
    except (json.JSONDecodeError, AttributeError):
        return []


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() in ("1", "true", "True")


def build_removable_drives(blocks: list[dict[str, Any]]) -> list[RemovableDrive]:
    """Keep whole disks attached over USB."""
    drives: list[RemovableDrive] = []
    for block in blocks:
        if block.get("type") != "disk":
            continue
        transport = (block.get("tran") or "").lower()
        if transport != "usb":
            continue
        path = block.get("path") or block.get("name") or ""
        if not path.startswith("/dev/"):
            path = f"/dev/{path}"
        try:
            size = int(block.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        drives.append(
            RemovableDrive(
                device_path=path,
                size_bytes=size,
                model=(block.get("model") or "").strip(),
                transport=transport,
                removable=_as_bool(block.get("rm", True)),
            )
        )
    return drives

