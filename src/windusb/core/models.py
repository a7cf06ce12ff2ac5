"""
WindUSB data models.

Defines the flash job, its phases, and the installation payload found
inside a Windows image.
"""

from __future__ import annotations

import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class Phase(Enum):
    """Ordered steps of a flash job."""

    DETECT = (1, "Detect payload", "inspecting the image")
    PREPARE = (2, "Prepare drive", "preparing the drive")
    PARTITION = (3, "Wipe and partition", "partitioning")
    FORMAT = (4, "Format", "formatting")
    MOUNT = (5, "Mount", "mounting")
    EXTRACT = (6, "Extract files", "extraction")
    SPLIT = (7, "Split payload", "splitting")
    FINALIZE = (8, "Finalize", "the final sync")

    def __init__(self, order: int, label: str, activity: str) -> None:
        self.order = order
        self.label = label
        self.activity = activity

    @property
    def touches_drive(self) -> bool:
        """Whether the drive must be present when this phase begins."""
        return self is not Phase.DETECT


class PayloadKind(Enum):
    """Recognised installation payload formats."""

    WIM = "wim"
    ESD = "esd"


@dataclass(frozen=True)
class InstallPayload:
    """The oversized installation file that has to be split for FAT32."""

    kind: PayloadKind

    @property
    def archive_path(self) -> str:
        """Path of the payload relative to the image root."""
        return f"sources/install.{self.kind.value}"

    @property
    def filename(self) -> str:
        return f"install.{self.kind.value}"

    @property
    def split_extension(self) -> str:
        """Extension of the split parts written to the drive."""
        if self.kind is PayloadKind.WIM:
            return "swm"
        return self.kind.value

    @property
    def split_filename(self) -> str:
        return f"install.{self.split_extension}"

    @classmethod
    def from_listing(cls, listing: str) -> InstallPayload | None:
        """Pick the payload out of an archive listing, preferring WIM."""
        lowered = listing.lower()
        for kind in (PayloadKind.WIM, PayloadKind.ESD):
            if f"sources/install.{kind.value}" in lowered:
                return cls(kind)
        return None


def partition_device(drive: str) -> str:
    """Device path of the first partition on ``drive``."""
    if "nvme" in drive:
        return f"{drive}p1"
    return f"{drive}1"


@dataclass
class FlashJob:
    """A single run of the flashing pipeline against one drive."""

    drive: str
    image_path: Path
    usb_mount: Path
    iso_mount: Path
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    payload: InstallPayload | None = None
    phase: Phase | None = None
    history: list[Phase] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def create(
        cls,
        drive: str,
        image_path: Path | str,
        temp_directory: Path,
        mount_prefix: str = "windusb",
    ) -> FlashJob:
        """Create a job with two fresh mountpoints under ``temp_directory``."""
        temp_directory.mkdir(parents=True, exist_ok=True)
        usb_mount = Path(tempfile.mkdtemp(prefix=f"{mount_prefix}_usb_", dir=temp_directory))
        iso_mount = Path(tempfile.mkdtemp(prefix=f"{mount_prefix}_iso_", dir=temp_directory))
        return cls(
            drive=drive,
            image_path=Path(image_path),
            usb_mount=usb_mount,
            iso_mount=iso_mount,
        )

    @property
    def partition(self) -> str:
        return partition_device(self.drive)

    @property
    def mountpoints(self) -> tuple[Path, Path]:
        return (self.usb_mount, self.iso_mount)

    def advance(self, phase: Phase) -> None:
        """Make ``phase`` current. Phases only ever move forward."""
        if self.phase is not None and phase.order <= self.phase.order:
            raise ValueError(
                f"Cannot move from {self.phase.name} to {phase.name}"
            )
        self.phase = phase
        self.history.append(phase)

    def remove_mountpoints(self) -> list[Path]:
        """
        Delete the (already unmounted) mountpoint directories.
        Returns the ones that could not be removed.
        """
        leftover: list[Path] = []
        for mountpoint in self.mountpoints:
            try:
                mountpoint.rmdir()
            except FileNotFoundError:
                pass
            except OSError:
                # Still busy or not empty; cleanup finds it by prefix later
                leftover.append(mountpoint)
        return leftover

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "drive": self.drive,
            "image_path": str(self.image_path),
            "partition": self.partition,
            "usb_mount": str(self.usb_mount),
            "iso_mount": str(self.iso_mount),
            "payload": self.payload.archive_path if self.payload else None,
            "phase": self.phase.name if self.phase else None,
            "history": [p.name for p in self.history],
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RemovableDrive:
    """A USB block device offered as a flash target."""

    device_path: str
    size_bytes: int = 0
    model: str = ""
    transport: str = ""
    removable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_path": self.device_path,
            "size_bytes": self.size_bytes,
            "model": self.model,
            "transport": self.transport,
            "removable": self.removable,
        }
