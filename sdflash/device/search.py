"""Search mode: list the devices the write gate would accept.

Nothing here writes anything; the flashing pipeline is bypassed entirely.
"""

import logging

from sdflash.config import Settings
from sdflash.device.classifier import (
    DeviceDescriptor,
    MmcTypeUnreadableError,
    OutputNotBlockDeviceError,
    OutputNotFoundError,
    classify_device,
    list_block_devices,
)
from sdflash.device.safety import KernelTooOldError, evaluate_device
from sdflash.process.runner import ProcessRunner
from sdflash.state import RunState

logger = logging.getLogger(__name__)


def search_sd_cards(
    runner: ProcessRunner,
    settings: Settings,
    state: RunState | None = None,
) -> list[DeviceDescriptor]:
    """Enumerate block devices and keep those the write gate accepts.

    Each candidate is classified from the attributes of the single
    enumeration call, so lsblk is not run again per device.

    Args:
        runner: Process runner.
        settings: Application settings.
        state: Optional run state; the last accepted device is recorded.

    Returns:
        Accepted devices in enumeration order.
    """
    accepted: list[DeviceDescriptor] = []
    for path, attributes in list_block_devices(runner):
        try:
            device = classify_device(path, runner, settings, known=attributes)
            decision = evaluate_device(device)
        except (
            KernelTooOldError,
            MmcTypeUnreadableError,
            OutputNotFoundError,
            OutputNotBlockDeviceError,
        ) as e:
            logger.warning("Skipping %s: %s", path, e.message)
            continue

        if decision.allowed:
            logger.info("SD card candidate: %s", path)
            accepted.append(device)
            if state is not None:
                state.device = device
                state.decision = decision
        else:
            logger.debug("Not a candidate: %s", decision.reason)
    return accepted


__all__ = ["search_sd_cards"]
