"""Output device classification.

This module gathers what the kernel reports about a block device:
- Validate the path exists and is a block device
- Collect mount point, filesystem, size, bus chain, role, model and the
  read-only / removable / hotplug / sector-size flags through lsblk
- Read the MMC card type from sysfs for MMC-attached devices

Collection never overwrites attributes the caller already knows, so a
device enumerated once (search mode) is not queried again.
"""

import json
import logging
import os
import stat
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sdflash.config import Settings
from sdflash.errors import SdFlashError
from sdflash.process.runner import HelperProcessFailedError, ProcessRunner
from sdflash.types import DeviceRole

logger = logging.getLogger(__name__)

LSBLK_COLUMNS = (
    "NAME,PATH,MOUNTPOINT,FSTYPE,SIZE,TYPE,MODEL,RO,RM,HOTPLUG,PHY-SEC,SUBSYSTEMS"
)

ATTRIBUTE_NAMES = (
    "mount_point",
    "filesystem_type",
    "size_bytes",
    "bus_subsystems",
    "device_role",
    "model",
    "read_only",
    "removable",
    "hotplug",
    "physical_sector_size",
)

MMC_SUBSYSTEMS = frozenset({"mmc", "mmc_host"})
SWAP_FILESYSTEM = "swap"


@dataclass(frozen=True)
class DeviceDescriptor:
    """Classified output device.

    Attributes:
        path: Absolute path to the device node.
        mount_point: Where the device (or one of its partitions) is mounted.
        filesystem_type: Filesystem signature ('swap' if any part is swap).
        device_role: Whole disk or partition.
        bus_subsystems: Subsystem chain from the device up to its bus.
        model: Model string reported by the device.
        read_only: Whether the kernel marks the device read-only.
        removable: Whether the medium is removable.
        hotplug: Whether the device is hot-pluggable.
        physical_sector_size: Physical sector size in bytes.
        size_bytes: Device capacity in bytes.
        mmc_type: sysfs card type ('SD', 'MMC', 'SDIO') for MMC-attached
            devices; None when not MMC-attached or the node is missing.
    """

    path: str
    mount_point: str | None
    filesystem_type: str | None
    device_role: DeviceRole
    bus_subsystems: frozenset[str]
    model: str
    read_only: bool
    removable: bool
    hotplug: bool
    physical_sector_size: int
    size_bytes: int
    mmc_type: str | None = None

    @property
    def name(self) -> str:
        return Path(self.path).name

    @property
    def is_mmc_attached(self) -> bool:
        return bool(self.bus_subsystems & MMC_SUBSYSTEMS)


class OutputNotFoundError(SdFlashError):
    """Output device path does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Output device not found: {path}", error_code="OUTPUT_NOT_FOUND"
        )
        self.path = path


class OutputNotBlockDeviceError(SdFlashError):
    """Output path exists but is not a block device."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Output is not a block device: {path}",
            error_code="OUTPUT_NOT_BLOCK_DEVICE",
        )
        self.path = path


class MmcTypeUnreadableError(SdFlashError):
    """The sysfs MMC card type node exists but cannot be read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Cannot read the MMC card type of {path}: {reason}",
            error_code="MMC_TYPE_UNREADABLE",
        )
        self.path = path


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device.

    Args:
        device_path: Path to check.

    Returns:
        True if the path is a block device, False otherwise.
    """
    try:
        mode = os.stat(device_path).st_mode
        return stat.S_ISBLK(mode)
    except OSError:
        return False


def _flag(value: Any) -> bool:
    # lsblk >= 2.33 emits JSON booleans, older releases "0"/"1" strings
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true")


def _number(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _walk(entry: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    yield entry
    for child in entry.get("children") or []:
        yield from _walk(child)


def attributes_from_lsblk(entry: Mapping[str, Any]) -> dict[str, Any]:
    """Convert one lsblk JSON entry into descriptor attributes.

    A whole disk counts as mounted when any of its partitions is mounted,
    and as swap when any of them carries a swap signature.
    """
    mount_point = _text(entry.get("mountpoint"))
    filesystem_type = _text(entry.get("fstype"))
    for node in _walk(entry):
        if mount_point is None:
            mount_point = _text(node.get("mountpoint"))
        if _text(node.get("fstype")) == SWAP_FILESYSTEM:
            filesystem_type = SWAP_FILESYSTEM

    subsystems = _text(entry.get("subsystems")) or ""
    role = DeviceRole.PARTITION if entry.get("type") == "part" else DeviceRole.DISK

    return {
        "mount_point": mount_point,
        "filesystem_type": filesystem_type,
        "size_bytes": _number(entry.get("size")),
        "bus_subsystems": frozenset(s for s in subsystems.split(":") if s),
        "device_role": role,
        "model": _text(entry.get("model")) or "",
        "read_only": _flag(entry.get("ro")),
        "removable": _flag(entry.get("rm")),
        "hotplug": _flag(entry.get("hotplug")),
        "physical_sector_size": _number(entry.get("phy-sec")),
    }


def _entry_path(entry: Mapping[str, Any]) -> str:
    return _text(entry.get("path")) or f"/dev/{entry.get('name')}"


def _lsblk(runner: ProcessRunner, *paths: str) -> list[Mapping[str, Any]]:
    argv = ["lsblk", "--json", "--bytes", "--output", LSBLK_COLUMNS, *paths]
    result = runner.run("lsblk", argv)
    if not result.ok:
        raise HelperProcessFailedError(result)
    try:
        return list(json.loads(result.stdout).get("blockdevices") or [])
    except (ValueError, AttributeError) as e:
        logger.error("Could not parse lsblk output: %s", e)
        raise HelperProcessFailedError(result, f"unparsable output: {e}") from e


def collect_attributes(
    device_path: str,
    runner: ProcessRunner,
    known: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Collect kernel-reported attributes of a block device.

    Args:
        device_path: Path to the device.
        runner: Process runner for lsblk.
        known: Attributes already populated; they are kept as they are.

    Returns:
        Mapping with every name in ATTRIBUTE_NAMES.
    """
    attributes = dict(known or {})
    if all(name in attributes for name in ATTRIBUTE_NAMES):
        return attributes

    entries = _lsblk(runner, device_path)
    if not entries:
        raise OutputNotBlockDeviceError(device_path)
    for name, value in attributes_from_lsblk(entries[0]).items():
        attributes.setdefault(name, value)
    return attributes


def read_mmc_type(device_path: str, settings: Settings) -> str | None:
    """Read the MMC card type node from sysfs.

    Returns:
        The stripped node content, or None when the node does not exist.

    Raises:
        MmcTypeUnreadableError: The node exists but reading it failed.
    """
    name = Path(os.path.realpath(device_path)).name
    node = settings.sysfs_root / "block" / name / "device" / "type"
    try:
        return node.read_text().strip()
    except FileNotFoundError:
        logger.warning("No MMC type node for %s at %s", device_path, node)
        return None
    except OSError as e:
        logger.error("Cannot read %s: %s", node, e)
        raise MmcTypeUnreadableError(device_path, str(e)) from e


def classify_device(
    device_path: str,
    runner: ProcessRunner,
    settings: Settings,
    known: Mapping[str, Any] | None = None,
) -> DeviceDescriptor:
    """Classify an output device.

    Args:
        device_path: Path to the device.
        runner: Process runner for lsblk.
        settings: Application settings (sysfs root).
        known: Attributes already populated, e.g. from an enumeration.

    Returns:
        DeviceDescriptor for the device.

    Raises:
        OutputNotFoundError: Device path does not exist.
        OutputNotBlockDeviceError: Path is not a block device.
        MmcTypeUnreadableError: The sysfs card type node cannot be read.
        HelperProcessFailedError: lsblk failed.
    """
    # by-id and by-path links resolve to the node partitions are named after
    device_path = os.path.realpath(device_path)
    logger.debug("Classifying device: %s", device_path)

    if not os.path.exists(device_path):
        logger.error("Device not found: %s", device_path)
        raise OutputNotFoundError(device_path)
    if not is_block_device(device_path):
        logger.error("Not a block device: %s", device_path)
        raise OutputNotBlockDeviceError(device_path)

    attributes = collect_attributes(device_path, runner, known)
    mmc_type: str | None = None
    is_disk = attributes["device_role"] is DeviceRole.DISK
    if is_disk and frozenset(attributes["bus_subsystems"]) & MMC_SUBSYSTEMS:
        mmc_type = read_mmc_type(device_path, settings)

    descriptor = DeviceDescriptor(
        path=device_path,
        mmc_type=mmc_type,
        **{name: attributes[name] for name in ATTRIBUTE_NAMES},
    )

    logger.info(
        "Device classified: %s (role=%s, size=%d, model=%r, bus=%s)",
        device_path,
        descriptor.device_role.value,
        descriptor.size_bytes,
        descriptor.model,
        ":".join(sorted(descriptor.bus_subsystems)),
    )
    return descriptor


def list_block_devices(runner: ProcessRunner) -> list[tuple[str, dict[str, Any]]]:
    """Enumerate every block device with a single lsblk call.

    Returns:
        List of (device path, attributes), disks before their partitions.
    """
    devices: list[tuple[str, dict[str, Any]]] = []
    for top in _lsblk(runner):
        for entry in _walk(top):
            devices.append((_entry_path(entry), attributes_from_lsblk(entry)))
    return devices


__all__ = [
    "ATTRIBUTE_NAMES",
    "DeviceDescriptor",
    "MMC_SUBSYSTEMS",
    "MmcTypeUnreadableError",
    "OutputNotBlockDeviceError",
    "OutputNotFoundError",
    "SWAP_FILESYSTEM",
    "attributes_from_lsblk",
    "classify_device",
    "collect_attributes",
    "is_block_device",
    "list_block_devices",
    "read_mmc_type",
]
