"""Command pipelines that write an image to a card.

This module only builds commands; nothing here runs them. Each image kind
maps to a fixed sequence of steps:
- raw: dd straight from the file
- gzip / xz: decompressor piped into dd, no temporary file
- zip with one image: unzip streaming that entry into dd
- NOOBS archive: partition, wait for udev, format, mount, extract, unmount

Every sequence ends with sync so the card can be pulled on success.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from sdflash.config import Settings
from sdflash.device.classifier import DeviceDescriptor
from sdflash.image.classifier import ImageDescriptor
from sdflash.process.programs import locate_program
from sdflash.process.runner import Command
from sdflash.types import ImageKind

logger = logging.getLogger(__name__)

# One MBR partition spanning the card, type 0x0c (FAT32 LBA)
BOOTSTRAP_PARTITION_TABLE = "label: dos\ntype=c\n"
BOOTSTRAP_FILESYSTEM = "vfat"
BOOTSTRAP_VOLUME_LABEL = "RECOVERY"


@dataclass(frozen=True)
class FlashStep:
    """One step of a flash plan.

    Attributes:
        description: What the step does, for logs and dry runs.
        commands: One command, or several forming a pipeline.
        mounts: Mount point this step mounts, if any.
        unmounts: Whether this step unmounts the mount point.
    """

    description: str
    commands: tuple[Command, ...]
    mounts: str | None = None
    unmounts: bool = False

    @property
    def command_line(self) -> str:
        return " | ".join(c.command_line for c in self.commands)


def elevation_prefix(settings: Settings) -> tuple[str, ...]:
    """Return the argv prefix that runs a command with root privileges.

    sudo runs with -n so a missing credential fails instead of prompting.
    """
    if settings.elevate == "none":
        return ()
    if settings.elevate == "auto" and os.geteuid() == 0:
        return ()
    return (locate_program("sudo", settings), "-n")


def _command(
    settings: Settings,
    program: str,
    *args: str,
    elevated: bool = False,
    stdin_text: str | None = None,
) -> Command:
    argv = (locate_program(program, settings), *args)
    if elevated:
        argv = (*elevation_prefix(settings), *argv)
    return Command(name=program, argv=argv, stdin_text=stdin_text)


def privilege_probe(settings: Settings) -> Command:
    """Build the always-succeeding command used to test elevation."""
    return _command(settings, "true", elevated=True)


def first_partition(device_path: str) -> str:
    """Return the path of the first partition of a whole device.

    Devices whose name ends in a digit (mmcblk0, loop0, nvme0n1) take a
    'p' separator: /dev/mmcblk0 -> /dev/mmcblk0p1, /dev/sdb -> /dev/sdb1.
    """
    if device_path[-1:].isdigit():
        return f"{device_path}p1"
    return f"{device_path}1"


def mount_point_for(settings: Settings) -> str:
    """Return the private mount point used by this process."""
    return str(Path(settings.mount_root) / f"sdflash-{os.getpid()}")


def _dd(settings: Settings, device: DeviceDescriptor, source: str | None) -> Command:
    args = [f"of={device.path}", f"bs={settings.block_size}", "conv=fsync"]
    if source is not None:
        args.insert(0, f"if={source}")
    return _command(settings, "dd", *args, elevated=True)


def _sync(settings: Settings) -> FlashStep:
    return FlashStep("flush buffers", (_command(settings, "sync"),))


def _bootstrap_steps(
    image: ImageDescriptor, device: DeviceDescriptor, settings: Settings
) -> list[FlashStep]:
    partition = first_partition(device.path)
    mount_point = mount_point_for(settings)
    return [
        FlashStep(
            "write partition table",
            (
                _command(
                    settings,
                    "sfdisk",
                    "--wipe",
                    "always",
                    device.path,
                    elevated=True,
                    stdin_text=BOOTSTRAP_PARTITION_TABLE,
                ),
            ),
        ),
        FlashStep(
            "re-read partition table",
            (_command(settings, "partprobe", device.path, elevated=True),),
        ),
        FlashStep(
            "wait for partition node",
            (_command(settings, "udevadm", "settle", "--timeout=10", elevated=True),),
        ),
        FlashStep(
            "create FAT32 filesystem",
            (
                _command(
                    settings,
                    "mkfs.vfat",
                    "-F",
                    "32",
                    "-n",
                    BOOTSTRAP_VOLUME_LABEL,
                    partition,
                    elevated=True,
                ),
            ),
        ),
        FlashStep(
            "create mount point",
            (_command(settings, "mkdir", "-p", mount_point, elevated=True),),
        ),
        FlashStep(
            "mount filesystem",
            (
                _command(
                    settings,
                    "mount",
                    "-t",
                    BOOTSTRAP_FILESYSTEM,
                    partition,
                    mount_point,
                    elevated=True,
                ),
            ),
            mounts=mount_point,
        ),
        FlashStep(
            "extract archive",
            (
                _command(
                    settings,
                    "unzip",
                    "-o",
                    "-q",
                    image.path,
                    "-d",
                    mount_point,
                    elevated=True,
                ),
            ),
        ),
        FlashStep(
            "unmount filesystem",
            (_command(settings, "umount", mount_point, elevated=True),),
            unmounts=True,
        ),
        FlashStep(
            "remove mount point",
            (_command(settings, "rmdir", mount_point, elevated=True),),
        ),
    ]


def build_steps(
    image: ImageDescriptor, device: DeviceDescriptor, settings: Settings
) -> list[FlashStep]:
    """Build the ordered steps that write an image to a device.

    Args:
        image: Classified input image.
        device: Classified output device (already accepted by the gate).
        settings: Application settings.

    Returns:
        Steps to run strictly in order, ending with sync.

    Raises:
        HelperProgramMissingError: A required program is not installed.
    """
    kind = image.detected_kind

    if kind is ImageKind.RAW:
        steps = [FlashStep("copy image", (_dd(settings, device, image.path),))]
    elif kind is ImageKind.GZIP:
        decompress = _command(settings, "gzip", "--decompress", "--stdout", image.path)
        steps = [
            FlashStep(
                "decompress and copy image",
                (decompress, _dd(settings, device, None)),
            )
        ]
    elif kind is ImageKind.XZ:
        decompress = _command(settings, "xz", "--decompress", "--stdout", image.path)
        steps = [
            FlashStep(
                "decompress and copy image",
                (decompress, _dd(settings, device, None)),
            )
        ]
    elif image.is_bootstrap_package:
        steps = _bootstrap_steps(image, device, settings)
    else:
        if image.embedded_image_name is None:
            raise ValueError(f"zip image without an embedded image: {image.path}")
        extract = _command(
            settings, "unzip", "-p", image.path, image.embedded_image_name
        )
        steps = [
            FlashStep("extract and copy image", (extract, _dd(settings, device, None)))
        ]

    steps.append(_sync(settings))
    logger.debug("Built %d steps for %s", len(steps), image.path)
    return steps


__all__ = [
    "BOOTSTRAP_PARTITION_TABLE",
    "FlashStep",
    "build_steps",
    "elevation_prefix",
    "first_partition",
    "mount_point_for",
    "privilege_probe",
]
