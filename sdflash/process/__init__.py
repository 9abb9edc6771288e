"""Helper process execution.

This module handles:
- Locating helper programs (override variable, then standard directories)
- Running them with deadlock-free output collection
- Connecting them into pipelines without a shell
"""

from sdflash.process.programs import (
    HelperProgramMissingError,
    locate_program,
    override_variable,
)
from sdflash.process.runner import (
    Command,
    CommandResult,
    ExitStatus,
    HelperProcessFailedError,
    PipelineResult,
    ProcessRunner,
    ProcessSpawnError,
)

__all__ = [
    "Command",
    "CommandResult",
    "ExitStatus",
    "HelperProcessFailedError",
    "HelperProgramMissingError",
    "PipelineResult",
    "ProcessRunner",
    "ProcessSpawnError",
    "locate_program",
    "override_variable",
]
