"""Locate helper programs on disk.

Every helper is looked up by its logical name: first through an override
environment variable (``SDFLASH_<NAME>``), then through the configured
list of standard installation directories. PATH is never consulted, so
the tool behaves the same under sudo, cron and interactive shells.
"""

import logging
import os
from pathlib import Path

from sdflash.config import ENV_PREFIX, Settings
from sdflash.errors import SdFlashError

logger = logging.getLogger(__name__)


class HelperProgramMissingError(SdFlashError):
    """A required helper program could not be found."""

    def __init__(self, program: str, searched: list[str]) -> None:
        super().__init__(
            f"Required program not found: {program} "
            f"(searched {', '.join(searched) or 'nothing'}; "
            f"set {override_variable(program)} to override)",
            error_code="HELPER_PROGRAM_MISSING",
        )
        self.program = program
        self.searched = searched


def override_variable(program: str) -> str:
    """Return the environment variable that overrides a program's path.

    Args:
        program: Logical program name (e.g. 'mkfs.vfat').

    Returns:
        Variable name (e.g. 'SDFLASH_MKFS_VFAT').
    """
    normalized = program.upper().replace("-", "_").replace(".", "_")
    return f"{ENV_PREFIX}{normalized}"


def _is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def locate_program(program: str, settings: Settings) -> str:
    """Find the absolute path of a helper program.

    Args:
        program: Logical program name.
        settings: Application settings (provides search directories).

    Returns:
        Absolute path to an executable file.

    Raises:
        HelperProgramMissingError: Neither the override nor any search
            directory yields an executable.
    """
    searched: list[str] = []

    variable = override_variable(program)
    override = os.environ.get(variable)
    if override:
        candidate = Path(override)
        searched.append(f"${variable}={override}")
        if _is_executable_file(candidate):
            logger.debug("Using %s from %s: %s", program, variable, candidate)
            return str(candidate)
        logger.warning("%s points at a non-executable path: %s", variable, override)

    for directory in settings.search_dirs:
        candidate = directory / program
        searched.append(str(directory))
        if _is_executable_file(candidate):
            return str(candidate)

    logger.error("Helper program not found: %s", program)
    raise HelperProgramMissingError(program, searched)


__all__ = [
    "HelperProgramMissingError",
    "locate_program",
    "override_variable",
]
