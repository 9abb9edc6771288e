"""Shared type definitions for sdflash.

This module contains the enums shared across subpackages to avoid
circular imports.
"""

from enum import Enum


class ExitKind(str, Enum):
    """How a helper process ended."""

    SUCCESS = "success"
    SIGNALED = "signaled"
    NON_ZERO_EXIT = "non-zero-exit"
    EXEC_FAILED = "exec-failed"


class ImageKind(str, Enum):
    """Container format of an input image."""

    RAW = "raw"
    GZIP = "gzip"
    XZ = "xz"
    ZIP = "zip"


class DeviceRole(str, Enum):
    """Whether a block device is a whole disk or a partition of one."""

    DISK = "disk"
    PARTITION = "partition"


__all__ = [
    "DeviceRole",
    "ExitKind",
    "ImageKind",
]
