"""
Tests for windusb.cli.main module.
"""

from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import NO_PAYLOAD_LISTING, FakeBackend
from windusb.cli.main import cli
from windusb.core.models import RemovableDrive
from windusb.core.safety import DeviceGuard, PreflightCheck, PreflightReport


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(sample_config, temp_dir: Path) -> Path:
    path = temp_dir / "config.json"
    sample_config.save(path)
    return path


@pytest.fixture
def image(temp_dir: Path) -> Path:
    path = temp_dir / "win.iso"
    path.write_bytes(b"\0" * 64)
    return path


@pytest.fixture
def cli_env(mocker, fake_backend: FakeBackend, fake_drive) -> FakeBackend:
    """Route the CLI to the fake backend and keep it away from the real system."""
    mocker.patch("windusb.cli.main.setup_logging")
    mocker.patch("windusb.cli.main.get_platform_backend", return_value=fake_backend)
    mocker.patch("windusb.cli.main.become_process_group_leader", return_value=True)
    mocker.patch("windusb.cli.main.install_signal_handlers")
    mocker.patch(
        "windusb.cli.main.run_preflight",
        return_value=PreflightReport(
            checks=[PreflightCheck(name="Target Device", passed=True, message="ok")]
        ),
    )
    mocker.patch(
        "windusb.core.job.DeviceGuard",
        return_value=DeviceGuard(exists=fake_drive.exists),
    )
    return fake_backend


def invoke(runner: CliRunner, config_file: Path, *args: str, **kwargs):
    return runner.invoke(cli, ["--config", str(config_file), *args], obj={}, **kwargs)


class TestListCommand:
    """Tests for `windusb list`."""

    def test_lists_drives(self, runner, config_file, cli_env) -> None:
        cli_env.drives = [RemovableDrive("/dev/sdz", 16 * 1024**3, "SanDisk Ultra", "usb")]

        result = invoke(runner, config_file, "list")

        assert result.exit_code == 0
        assert "/dev/sdz" in result.output
        assert "SanDisk Ultra" in result.output
        assert "16.0 GiB" in result.output

    def test_no_drives(self, runner, config_file, cli_env) -> None:
        result = invoke(runner, config_file, "list")

        assert result.exit_code == 0
        assert "No USB drives found" in result.output


class TestCheckCommand:
    """Tests for `windusb check`."""

    def test_valid_image(self, runner, config_file, cli_env, image) -> None:
        result = invoke(runner, config_file, "check", str(image))

        assert result.exit_code == 0
        assert "sources/install.swm" in result.output

    def test_invalid_image(self, runner, config_file, cli_env, image) -> None:
        cli_env.listing = NO_PAYLOAD_LISTING

        result = invoke(runner, config_file, "check", str(image))

        assert result.exit_code == 1
        assert "Invalid image" in result.output


class TestFlashCommand:
    """Tests for `windusb flash`."""

    def test_requires_root(self, runner, config_file, cli_env, image) -> None:
        cli_env.admin = False

        result = invoke(runner, config_file, "flash", "/dev/sdz", str(image), "--yes")

        assert result.exit_code == 1
        assert "root" in result.output
        assert cli_env.calls == []

    def test_preflight_errors_abort(self, runner, config_file, cli_env, image, mocker) -> None:
        mocker.patch(
            "windusb.cli.main.run_preflight",
            return_value=PreflightReport(
                checks=[
                    PreflightCheck(
                        name="System Disk", passed=False, message="nope", severity="error"
                    )
                ]
            ),
        )

        result = invoke(runner, config_file, "flash", "/dev/sdz", str(image), "--yes")

        assert result.exit_code == 1
        assert "Preflight checks failed" in result.output
        assert cli_env.calls == []

    def test_dry_run(self, runner, config_file, cli_env, image) -> None:
        result = invoke(runner, config_file, "flash", "/dev/sdz", str(image), "--dry-run")

        assert result.exit_code == 0
        assert "DRY RUN" in result.output
        assert cli_env.calls == []

    def test_confirmation_mismatch(self, runner, config_file, cli_env, image) -> None:
        result = invoke(runner, config_file, "flash", "/dev/sdz", str(image), input="yes\n")

        assert result.exit_code == 1
        assert "Confirmation failed" in result.output
        assert cli_env.calls == []

    def test_confirmed_flash(self, runner, config_file, cli_env, image) -> None:
        result = invoke(
            runner, config_file, "flash", "/dev/sdz", str(image), input="ERASE-/DEV/SDZ\n"
        )

        assert result.exit_code == 0
        assert "safe to remove /dev/sdz" in result.output
        assert "format_fat32" in cli_env.called

    def test_failed_flash_exits_nonzero(self, runner, config_file, cli_env, image) -> None:
        cli_env.listing = NO_PAYLOAD_LISTING

        result = invoke(runner, config_file, "flash", "/dev/sdz", str(image), "--yes")

        assert result.exit_code == 1
        assert "install.wim/esd not found" in result.output
        assert cli_env.called == ["list_image"]


class TestCleanupCommand:
    """Tests for `windusb cleanup`."""

    def test_nothing_to_do(self, runner, config_file, cli_env, mocker) -> None:
        mocker.patch("windusb.core.cleanup.psutil.Process").return_value.children.return_value = []

        result = invoke(runner, config_file, "cleanup")

        assert result.exit_code == 0
        assert "Nothing to clean up" in result.output

    def test_removes_leftover_mountpoints(
        self, runner, config_file, cli_env, sample_config, mocker
    ) -> None:
        mocker.patch("windusb.core.cleanup.psutil.Process").return_value.children.return_value = []
        leftover = sample_config.flash.temp_directory / "windusb_usb_stale"
        leftover.mkdir()

        result = invoke(runner, config_file, "cleanup")

        assert result.exit_code == 0
        assert "Removed" in result.output
        assert not leftover.exists()
