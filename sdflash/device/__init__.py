"""Output device classification and the write-permission gate.

This module handles:
- Device classification from lsblk and sysfs
- The SD card decision procedure and mount/swap/partition exclusions
- Search mode over every block device

All checks follow one rule: when in doubt, refuse.
"""

from sdflash.device.classifier import (
    DeviceDescriptor,
    MmcTypeUnreadableError,
    OutputNotBlockDeviceError,
    OutputNotFoundError,
    classify_device,
    list_block_devices,
)
from sdflash.device.safety import (
    KernelTooOldError,
    OutputIsPartitionError,
    OutputIsSwapError,
    OutputMountedError,
    OutputNotSdCardError,
    SafetyDecision,
    evaluate_device,
    is_sd_card,
    require_allowed,
)
from sdflash.device.search import search_sd_cards

__all__ = [
    # Classification
    "DeviceDescriptor",
    "MmcTypeUnreadableError",
    "OutputNotBlockDeviceError",
    "OutputNotFoundError",
    "classify_device",
    "list_block_devices",
    # Safety gate
    "KernelTooOldError",
    "OutputIsPartitionError",
    "OutputIsSwapError",
    "OutputMountedError",
    "OutputNotSdCardError",
    "SafetyDecision",
    "evaluate_device",
    "is_sd_card",
    "require_allowed",
    # Search
    "search_sd_cards",
]
