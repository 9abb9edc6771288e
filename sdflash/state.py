"""Per-run diagnostic state.

A RunState is created by the top-level command and passed explicitly to
the runner, classifiers and orchestrator. It only accumulates context for
the verbose failure dump; nothing reads it to make a decision.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from rich.console import Group, RenderableType
from rich.pretty import Pretty
from rich.rule import Rule

if TYPE_CHECKING:
    from sdflash.device.classifier import DeviceDescriptor
    from sdflash.device.safety import SafetyDecision
    from sdflash.image.classifier import ImageDescriptor
    from sdflash.process.runner import CommandResult

_SIZE_UNITS = ["B", "kB", "MB", "GB", "TB", "PB"]


def format_size(size_bytes: int | None) -> str:
    """Format a byte count in decimal units (as card vendors label them)."""
    if size_bytes is None:
        return "unknown"
    size = float(size_bytes)
    for unit in _SIZE_UNITS:
        if size < 1000 or unit == _SIZE_UNITS[-1]:
            if unit == "B":
                return f"{int(size)} B"
            return f"{size:.1f} {unit}"
        size /= 1000
    return f"{size_bytes} B"


@dataclass
class RunState:
    """Everything collected during one run, for the verbose dump.

    Attributes:
        verbose: Whether helper invocations are recorded.
        invocations: Helper invocations in execution order.
        image: Classified input image, once known.
        device: Classified output device, once known.
        decision: Last safety decision computed for the device.
    """

    verbose: bool = False
    invocations: list[CommandResult] = field(default_factory=list)
    image: ImageDescriptor | None = None
    device: DeviceDescriptor | None = None
    decision: SafetyDecision | None = None

    def record(self, result: CommandResult) -> None:
        """Append a helper invocation when verbose diagnostics are on."""
        if self.verbose:
            self.invocations.append(result)


def _plain(value: Any) -> Any:
    """Convert dataclasses, enums and sets into plain printable values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {key: _plain(item) for key, item in asdict(value).items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(_plain(item) for item in value)
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def render_state(state: RunState) -> RenderableType:
    """Build the verbose dump of a run state for a Rich console."""
    parts: list[RenderableType] = [Rule("sdflash state")]
    parts.append(Pretty({"image": _plain(state.image)}, expand_all=True))
    parts.append(Pretty({"device": _plain(state.device)}, expand_all=True))
    parts.append(Pretty({"decision": _plain(state.decision)}, expand_all=True))
    for number, result in enumerate(state.invocations, start=1):
        parts.append(Rule(f"invocation {number}: {result.name}"))
        parts.append(
            Pretty(
                {
                    "command": result.command_line,
                    "status": result.status.describe(),
                    "stdout": result.stdout,
                    "stderr": result.stderr,
                },
                expand_all=True,
            )
        )
    return Group(*parts)


__all__ = ["RunState", "format_size", "render_state"]
