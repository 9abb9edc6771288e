"""Flash service layer.

This module provides the high-level flash operations:
- plan_flash: re-validate the device and sizes and build the steps
- flash: probe privileges, then run the steps strictly in order

Safety rules:
- The write gate is recomputed here from the descriptor being written,
  never trusted from an earlier call
- Capacity is checked before anything runs
- The first failing step aborts the run; nothing is retried and nothing
  is rolled back (a card left mounted is reported, not unmounted)
"""

import logging
from dataclasses import dataclass, field

from sdflash.config import Settings, get_settings
from sdflash.device.classifier import DeviceDescriptor
from sdflash.device.safety import evaluate_device, require_allowed
from sdflash.errors import SdFlashError
from sdflash.flash.pipeline import FlashStep, build_steps, privilege_probe
from sdflash.image.classifier import ImageDescriptor
from sdflash.process.runner import (
    CommandResult,
    HelperProcessFailedError,
    ProcessRunner,
)
from sdflash.state import RunState, format_size

logger = logging.getLogger(__name__)


class OutputTooSmallError(SdFlashError):
    """The payload does not fit on the device."""

    def __init__(self, path: str, payload_bytes: int, device_bytes: int) -> None:
        super().__init__(
            f"Device {path} is too small: the image needs "
            f"{format_size(payload_bytes)} but the device holds "
            f"{format_size(device_bytes)}",
            error_code="OUTPUT_TOO_SMALL",
        )
        self.path = path
        self.payload_bytes = payload_bytes
        self.device_bytes = device_bytes


class BootstrapCapacityTooSmallError(SdFlashError):
    """The device is below the recommended size for NOOBS."""

    def __init__(self, path: str, device_bytes: int, minimum_bytes: int) -> None:
        super().__init__(
            f"Device {path} holds {format_size(device_bytes)}; NOOBS needs "
            f"at least {format_size(minimum_bytes)}",
            error_code="BOOTSTRAP_CAPACITY_TOO_SMALL",
        )
        self.path = path
        self.device_bytes = device_bytes
        self.minimum_bytes = minimum_bytes


class PrivilegeUnavailableError(SdFlashError):
    """Commands cannot be run with root privileges without prompting."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            f"Root privileges are required: {detail}. "
            "Run as root or make sure sudo works without a password prompt.",
            error_code="PRIVILEGE_UNAVAILABLE",
        )
        self.detail = detail


@dataclass(frozen=True)
class FlashPlan:
    """Validated plan for a flash operation (also used for dry runs).

    Attributes:
        image: Input image.
        device: Output device; the write gate accepted it.
        steps: Steps to run in order.
    """

    image: ImageDescriptor
    device: DeviceDescriptor
    steps: tuple[FlashStep, ...]


@dataclass
class FlashResult:
    """Result of a flash operation.

    Attributes:
        success: Whether every step succeeded.
        image_path: Path to the flashed image.
        device_path: Path to the target device.
        bytes_written: Payload size written to the device.
        steps_run: Descriptions of the steps that completed.
        message: Summary for the operator.
    """

    success: bool
    image_path: str
    device_path: str
    bytes_written: int
    steps_run: list[str] = field(default_factory=list)
    message: str | None = None


def check_capacity(
    image: ImageDescriptor, device: DeviceDescriptor, settings: Settings
) -> None:
    """Refuse images that do not fit, and NOOBS on undersized cards.

    Raises:
        OutputTooSmallError: Payload larger than the device.
        BootstrapCapacityTooSmallError: NOOBS archive on a card below the
            configured minimum.
    """
    if image.payload_size_bytes > device.size_bytes:
        logger.error(
            "Payload %d bytes exceeds device size %d bytes",
            image.payload_size_bytes,
            device.size_bytes,
        )
        raise OutputTooSmallError(
            device.path, image.payload_size_bytes, device.size_bytes
        )
    if (
        image.is_bootstrap_package
        and device.size_bytes < settings.bootstrap_min_device_bytes
    ):
        logger.error("Device too small for NOOBS: %d bytes", device.size_bytes)
        raise BootstrapCapacityTooSmallError(
            device.path, device.size_bytes, settings.bootstrap_min_device_bytes
        )


def plan_flash(
    image: ImageDescriptor,
    device: DeviceDescriptor,
    settings: Settings | None = None,
    state: RunState | None = None,
) -> FlashPlan:
    """Validate inputs and build the plan without running anything.

    Args:
        image: Classified input image.
        device: Classified output device.
        settings: Application settings (optional).
        state: Optional run state; the decision is recorded on it.

    Returns:
        FlashPlan with the steps to run.

    Raises:
        OutputMountedError, OutputIsSwapError, OutputIsPartitionError,
        OutputNotSdCardError, KernelTooOldError: The write gate refused.
        OutputTooSmallError, BootstrapCapacityTooSmallError: Capacity.
        HelperProgramMissingError: A required program is not installed.
    """
    if settings is None:
        settings = get_settings()

    decision = evaluate_device(device)
    if state is not None:
        state.decision = decision
    require_allowed(decision, device)

    check_capacity(image, device, settings)

    steps = tuple(build_steps(image, device, settings))
    return FlashPlan(image=image, device=device, steps=steps)


def probe_privileges(runner: ProcessRunner, settings: Settings) -> None:
    """Check that elevated commands run without an interactive prompt.

    Raises:
        PrivilegeUnavailableError: The elevated no-op did not succeed.
    """
    result = runner.run_command(privilege_probe(settings))
    if not result.ok:
        detail = result.stderr.strip() or result.status.describe()
        logger.error("Privilege probe failed: %s", detail)
        raise PrivilegeUnavailableError(detail)


def _run_step(runner: ProcessRunner, step: FlashStep) -> CommandResult | None:
    """Run a step and return its failing command, if any."""
    if len(step.commands) == 1:
        result = runner.run_command(step.commands[0])
        return None if result.ok else result
    return runner.run_pipeline(step.commands).failed


def flash(
    image: ImageDescriptor,
    device: DeviceDescriptor,
    runner: ProcessRunner,
    settings: Settings | None = None,
    state: RunState | None = None,
) -> FlashResult:
    """Write an image to a device.

    This is the main entry point for flashing. It:
    1. Recomputes the write gate for this exact device descriptor
    2. Re-validates payload and NOOBS capacity
    3. Probes privilege elevation
    4. Runs every step in order, stopping at the first failure
    5. Ends with sync

    Args:
        image: Classified input image.
        device: Classified output device.
        runner: Process runner for every helper.
        settings: Application settings (optional).
        state: Optional run state for diagnostics.

    Returns:
        FlashResult describing the completed operation.

    Raises:
        SdFlashError: The first violated condition or failed step.
    """
    if settings is None:
        settings = get_settings()

    logger.info("Flash requested: image=%s, device=%s", image.path, device.path)

    plan = plan_flash(image, device, settings, state)
    probe_privileges(runner, settings)

    steps_run: list[str] = []
    mounted_at: str | None = None
    for step in plan.steps:
        logger.info("Step: %s", step.description)
        failed = _run_step(runner, step)
        if failed is not None:
            note = None
            if mounted_at is not None:
                note = f"The card is still mounted at {mounted_at}"
            logger.error("Step failed: %s", step.description)
            raise HelperProcessFailedError(failed, note)
        steps_run.append(step.description)
        if step.mounts is not None:
            mounted_at = step.mounts
        if step.unmounts:
            mounted_at = None

    logger.info(
        "Flash succeeded: %d bytes to %s", image.payload_size_bytes, device.path
    )
    return FlashResult(
        success=True,
        image_path=image.path,
        device_path=device.path,
        bytes_written=image.payload_size_bytes,
        steps_run=steps_run,
        message=f"{device.path} is ready and can be removed",
    )


__all__ = [
    "BootstrapCapacityTooSmallError",
    "FlashPlan",
    "FlashResult",
    "OutputTooSmallError",
    "PrivilegeUnavailableError",
    "check_capacity",
    "flash",
    "plan_flash",
    "probe_privileges",
]
