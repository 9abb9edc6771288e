"""Shared fixtures: a recording fake runner and isolated settings."""

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from sdflash.config import Settings
from sdflash.device.classifier import DeviceDescriptor
from sdflash.process.runner import Command, CommandResult, ExitStatus, PipelineResult
from sdflash.types import DeviceRole, ExitKind

HELPERS = [
    "dd",
    "file",
    "gzip",
    "lsblk",
    "mkdir",
    "mkfs.vfat",
    "mount",
    "partprobe",
    "rmdir",
    "sfdisk",
    "sudo",
    "sync",
    "true",
    "udevadm",
    "umount",
    "unzip",
    "xz",
]


class FakeRunner:
    """Stand-in for ProcessRunner that records calls instead of running them.

    Attributes:
        outputs: stdout per command name; a list is consumed one per call.
        failing: Command names that exit with code 1.
        calls: (name, argv, stdin_text) of every invocation, in order.
        pipelines: Stage names of every pipeline, in order.
    """

    def __init__(
        self,
        outputs: dict[str, str | list[str]] | None = None,
        failing: Sequence[str] = (),
        fail_when: Callable[[str, tuple[str, ...]], bool] | None = None,
    ) -> None:
        self.outputs = outputs or {}
        self.failing = set(failing)
        self.fail_when = fail_when
        self.calls: list[tuple[str, tuple[str, ...], str | None]] = []
        self.pipelines: list[tuple[str, ...]] = []

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.calls]

    def run(
        self, name: str, argv: Sequence[str], stdin_text: str | None = None
    ) -> CommandResult:
        argv = tuple(argv)
        self.calls.append((name, argv, stdin_text))
        output = self.outputs.get(name, "")
        if isinstance(output, list):
            output = output.pop(0)
        fails = name in self.failing or (
            self.fail_when is not None and self.fail_when(name, argv)
        )
        if fails:
            return CommandResult(
                name,
                argv,
                ExitStatus(kind=ExitKind.NON_ZERO_EXIT, code=1),
                stderr=f"{name}: failed",
            )
        status = ExitStatus(kind=ExitKind.SUCCESS)
        return CommandResult(name, argv, status, stdout=output)

    def run_command(self, command: Command) -> CommandResult:
        return self.run(command.name, command.argv, command.stdin_text)

    def run_pipeline(self, commands: Sequence[Command]) -> PipelineResult:
        self.pipelines.append(tuple(c.name for c in commands))
        return PipelineResult(tuple(self.run_command(c) for c in commands))


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    """Directory of dummy executables named after every helper."""
    directory = tmp_path / "bin"
    directory.mkdir()
    for name in HELPERS:
        helper = directory / name
        helper.write_text("#!/bin/sh\nexit 0\n")
        helper.chmod(0o755)
    return directory


@pytest.fixture
def settings(tmp_path: Path, bin_dir: Path) -> Settings:
    """Settings isolated from the host: private helpers, sysfs and mounts."""
    return Settings(
        search_dirs=[bin_dir],
        sysfs_root=tmp_path / "sys",
        mount_root=Path("/mnt"),
        elevate="sudo",
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


def make_device(**overrides: object) -> DeviceDescriptor:
    """Build an unmounted whole-disk SD card reader descriptor."""
    fields: dict[str, object] = {
        "path": "/dev/sdx",
        "mount_point": None,
        "filesystem_type": None,
        "device_role": DeviceRole.DISK,
        "bus_subsystems": frozenset({"block", "scsi", "usb"}),
        "model": "SD/MMC",
        "read_only": False,
        "removable": True,
        "hotplug": True,
        "physical_sector_size": 512,
        "size_bytes": 8_000_000_000,
        "mmc_type": None,
    }
    fields.update(overrides)
    return DeviceDescriptor(**fields)  # type: ignore[arg-type]
