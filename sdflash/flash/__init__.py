"""SD card flashing.

This module handles:
- Re-validation of the write gate and capacity right before writing
- Building the command steps for each image kind
- Running them in order behind a privilege probe

All operations follow the same safety rules:
- The gate decision is recomputed for the exact device being written
- No step starts before the previous one is known to have succeeded
- Every successful run ends with sync
"""

from sdflash.flash.pipeline import FlashStep, build_steps, first_partition
from sdflash.flash.service import (
    BootstrapCapacityTooSmallError,
    FlashPlan,
    FlashResult,
    OutputTooSmallError,
    PrivilegeUnavailableError,
    flash,
    plan_flash,
)

__all__ = [
    # Pipeline
    "FlashStep",
    "build_steps",
    "first_partition",
    # Service
    "BootstrapCapacityTooSmallError",
    "FlashPlan",
    "FlashResult",
    "OutputTooSmallError",
    "PrivilegeUnavailableError",
    "flash",
    "plan_flash",
]
