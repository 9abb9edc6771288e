"""Write-permission gate for output devices.

The gate is the only thing standing between the tool and an irreversible
erase. Its checks run in a fixed order and stop at the first rejection:

1. mounted devices are never erased
2. swap devices are never erased
3. partitions are refused; only whole devices take a boot+root layout
4. the device must pass the SD card decision procedure

The SD card procedure itself is kept in its exact historical form,
including the approximate USB rule; changing any of its conditions
changes which physical devices may be erased.
"""

import logging
from dataclasses import dataclass

from sdflash.device.classifier import SWAP_FILESYSTEM, DeviceDescriptor
from sdflash.errors import SdFlashError
from sdflash.types import DeviceRole

logger = logging.getLogger(__name__)

# Model string reported by generic SD/MMC card readers
SD_MMC_MODEL = "SD/MMC"
SD_CARD_TYPE = "SD"
USB_SUBSYSTEM = "usb"
USB_SD_SECTOR_SIZE = 512


@dataclass(frozen=True)
class SafetyDecision:
    """Outcome of the write-permission gate.

    Attributes:
        allowed: Whether the destructive write may proceed.
        reason: Human-readable rejection reason.
        code: Stable error code of the rejection.
    """

    allowed: bool
    reason: str | None = None
    code: str | None = None


class OutputMountedError(SdFlashError):
    """Device or one of its partitions is mounted."""

    def __init__(self, path: str, mount_point: str) -> None:
        super().__init__(
            f"Device {path} is mounted at {mount_point}. "
            "Unmount it before flashing.",
            error_code="OUTPUT_MOUNTED",
        )
        self.path = path
        self.mount_point = mount_point


class OutputIsSwapError(SdFlashError):
    """Device is used as swap."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Device {path} holds a swap area. Refusing to overwrite it.",
            error_code="OUTPUT_IS_SWAP",
        )
        self.path = path


class OutputIsPartitionError(SdFlashError):
    """Device is a partition, not a whole device."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Device {path} is a partition, not a whole device. "
            "Only whole devices (e.g., /dev/sdb, /dev/mmcblk0) are supported.",
            error_code="OUTPUT_IS_PARTITION",
        )
        self.path = path


class OutputNotSdCardError(SdFlashError):
    """Device does not look like an SD card."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Device {path} does not look like an SD card. "
            "Refusing to flash to avoid data loss.",
            error_code="OUTPUT_NOT_SD_CARD",
        )
        self.path = path


class KernelTooOldError(SdFlashError):
    """The kernel does not expose the MMC card type needed to verify a card."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Cannot verify that {path} is an SD card: the kernel does not "
            "report the MMC card type (sysfs device/type missing).",
            error_code="KERNEL_TOO_OLD",
        )
        self.path = path


def is_sd_card(device: DeviceDescriptor) -> bool:
    """Decide whether a device is plausibly an SD card.

    Rules, first match wins:
    1. model is the generic SD/MMC reader token
    2. MMC-attached: the sysfs card type must be 'SD'
    3. USB-attached: writable, removable, hotplug and 512-byte sectors;
       this also accepts some USB flash sticks, but never a fixed disk
    4. anything else is not an SD card

    Raises:
        KernelTooOldError: MMC-attached device without a sysfs type node.
    """
    if device.model == SD_MMC_MODEL:
        return True

    if device.is_mmc_attached:
        if device.mmc_type is None:
            logger.error("No MMC card type available for %s", device.path)
            raise KernelTooOldError(device.path)
        return device.mmc_type == SD_CARD_TYPE

    if USB_SUBSYSTEM in device.bus_subsystems:
        return (
            not device.read_only
            and device.removable
            and device.hotplug
            and device.physical_sector_size == USB_SD_SECTOR_SIZE
        )

    return False


def evaluate_device(device: DeviceDescriptor) -> SafetyDecision:
    """Run the write-permission gate on a device.

    Args:
        device: Classified output device.

    Returns:
        SafetyDecision; allowed only if every check passes.

    Raises:
        KernelTooOldError: The SD card procedure cannot verify an MMC device.
    """
    if device.mount_point:
        return SafetyDecision(
            allowed=False,
            reason=f"{device.path} is mounted at {device.mount_point}",
            code="OUTPUT_MOUNTED",
        )
    if device.filesystem_type == SWAP_FILESYSTEM:
        return SafetyDecision(
            allowed=False,
            reason=f"{device.path} holds a swap area",
            code="OUTPUT_IS_SWAP",
        )
    if device.device_role is DeviceRole.PARTITION:
        return SafetyDecision(
            allowed=False,
            reason=f"{device.path} is a partition, not a whole device",
            code="OUTPUT_IS_PARTITION",
        )
    if not is_sd_card(device):
        return SafetyDecision(
            allowed=False,
            reason=f"{device.path} does not look like an SD card",
            code="OUTPUT_NOT_SD_CARD",
        )
    return SafetyDecision(allowed=True)


def require_allowed(decision: SafetyDecision, device: DeviceDescriptor) -> None:
    """Raise the error matching a rejected decision.

    Raises:
        OutputMountedError, OutputIsSwapError, OutputIsPartitionError,
        OutputNotSdCardError: According to decision.code.
    """
    if decision.allowed:
        return
    logger.error("Refusing %s: %s", device.path, decision.reason)
    if decision.code == "OUTPUT_MOUNTED":
        raise OutputMountedError(device.path, device.mount_point or "")
    if decision.code == "OUTPUT_IS_SWAP":
        raise OutputIsSwapError(device.path)
    if decision.code == "OUTPUT_IS_PARTITION":
        raise OutputIsPartitionError(device.path)
    raise OutputNotSdCardError(device.path)


__all__ = [
    "KernelTooOldError",
    "OutputIsPartitionError",
    "OutputIsSwapError",
    "OutputMountedError",
    "OutputNotSdCardError",
    "SD_MMC_MODEL",
    "SafetyDecision",
    "evaluate_device",
    "is_sd_card",
    "require_allowed",
]
