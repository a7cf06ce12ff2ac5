"""
Pytest configuration and fixtures for WindUSB tests.
"""

import sys
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from windusb.core.cleanup import ProcessRegistry  # noqa: E402
from windusb.core.config import FlashConfig, WindUSBConfig  # noqa: E402
from windusb.core.models import FlashJob, RemovableDrive  # noqa: E402
from windusb.core.safety import DeviceGuard  # noqa: E402
from windusb.platform.base import CommandResult, FlashBackend  # noqa: E402

WIM_LISTING = """
   Date      Time    Attr         Size   Compressed  Name
------------------- ----- ------------ ------------  ------------------------
2023-05-06 01:12:00 ....A         1234               bootmgr
2023-05-06 01:12:00 ....A   5123456789               sources/install.wim
2023-05-06 01:12:00 ....A       400000               sources/boot.wim
"""

ESD_LISTING = """
2023-05-06 01:12:00 ....A   3923456789               sources/install.esd
2023-05-06 01:12:00 ....A       400000               sources/boot.wim
"""

NO_PAYLOAD_LISTING = """
2023-05-06 01:12:00 ....A       400000               sources/boot.wim
2023-05-06 01:12:00 ....A         1234               bootmgr
"""


class FakeSync:
    """Stands in for a running ``sync`` process."""

    def __init__(self, returncode: int = 0, polls_before_exit: int = 1, stderr: str = "") -> None:
        self.returncode = returncode
        self.polls_before_exit = polls_before_exit
        self.stderr = stderr
        self.polls = 0

    def poll(self) -> int | None:
        self.polls += 1
        if self.polls <= self.polls_before_exit:
            return None
        return self.returncode

    def result(self) -> CommandResult | None:
        if self.polls <= self.polls_before_exit:
            return None
        return CommandResult(self.returncode, "", self.stderr, ["sync"])


class FakeDrive:
    """Presence switch for the drive under test."""

    def __init__(self, path: str = "/dev/sdz") -> None:
        self.path = path
        self.present = True

    def exists(self, path: str) -> bool:
        return self.present and path == self.path


class FakeBackend(FlashBackend):
    """
    Scripted backend that records every tool invocation.

    ``failures`` maps a method name to the return code it should report;
    ``hooks`` maps a method name to a callable run before it returns.
    """

    def __init__(
        self,
        listing: str = WIM_LISTING,
        failures: dict[str, int] | None = None,
        hooks: dict[str, Callable[[], None]] | None = None,
        sync: FakeSync | None = None,
        usage: int | None = 0,
        writeback: int = 0,
        flush_script: list[int] | None = None,
    ) -> None:
        self.listing = listing
        self.failures = failures or {}
        self.hooks = hooks or {}
        self.sync = sync or FakeSync()
        self.usage = usage
        self.writeback = writeback
        self.flush_script = list(flush_script or [])
        self.sync_started = False
        self.calls: list[tuple] = []
        self.drives: list[RemovableDrive] = []
        self.admin = True

    def _call(self, name: str, *args, stdout: str = "") -> CommandResult:
        self.calls.append((name, *args))
        hook = self.hooks.get(name)
        if hook is not None:
            hook()
        returncode = self.failures.get(name, 0)
        stderr = f"{name}: simulated failure" if returncode else ""
        return CommandResult(returncode, stdout, stderr, [name, *map(str, args)])

    @property
    def called(self) -> list[str]:
        return [call[0] for call in self.calls]

    @property
    def name(self) -> str:
        return "fake"

    def is_admin(self) -> bool:
        return self.admin

    def list_image(self, image_path):
        return self._call("list_image", image_path, stdout=self.listing)

    def extract_image(self, image_path, destination, exclude):
        return self._call("extract_image", image_path, destination, exclude)

    def split_payload(self, source, destination, chunk_mib):
        return self._call("split_payload", source, destination, chunk_mib)

    def unmount_partitions(self, drive):
        return [self._call("unmount_partitions", drive)]

    def flush_buffers(self, drive):
        return self._call("flush_buffers", drive)

    def wipe_signatures(self, drive):
        return self._call("wipe_signatures", drive)

    def zap_partition_table(self, drive):
        return self._call("zap_partition_table", drive)

    def create_gpt_partition(self, drive):
        return self._call("create_gpt_partition", drive)

    def reread_partition_table(self, drive):
        return self._call("reread_partition_table", drive)

    def format_fat32(self, partition):
        return self._call("format_fat32", partition)

    def mount(self, source, mountpoint, options=None):
        return self._call("mount", source, mountpoint, options)

    def unmount(self, mountpoint, lazy=True):
        return self._call("unmount", mountpoint)

    def start_sync(self):
        self.calls.append(("start_sync",))
        self.sync_started = True
        return self.sync

    def get_directory_usage(self, path):
        return self.usage

    def get_writeback_bytes(self) -> int:
        # Only the final flush consumes the script; the progress monitor
        # samples a constant so its timing cannot shift later values
        if self.sync_started and self.flush_script:
            if len(self.flush_script) > 1:
                return self.flush_script.pop(0)
            return self.flush_script[0]
        return self.writeback

    def list_removable_drives(self):
        return list(self.drives)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config(temp_dir: Path) -> WindUSBConfig:
    """Configuration with no delays, rooted in a temporary directory."""
    config = WindUSBConfig(
        flash=FlashConfig(
            settle_delay_seconds=0,
            monitor_interval_seconds=0.01,
            flush_interval_seconds=0.001,
            flush_grace_seconds=0,
            temp_directory=temp_dir / "mnt",
        ),
    )
    config.logging.log_directory = temp_dir / "logs"
    config.logging.file_enabled = False
    config.ensure_directories()
    return config


@pytest.fixture
def fake_drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def guard(fake_drive: FakeDrive) -> DeviceGuard:
    return DeviceGuard(exists=fake_drive.exists)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def registry() -> ProcessRegistry:
    return ProcessRegistry()


@pytest.fixture
def flash_job(sample_config: WindUSBConfig, fake_drive: FakeDrive, temp_dir: Path) -> FlashJob:
    image = temp_dir / "windows.iso"
    image.write_bytes(b"\0" * 16)
    return FlashJob.create(
        fake_drive.path,
        image,
        sample_config.flash.temp_directory,
        sample_config.flash.mount_prefix,
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
