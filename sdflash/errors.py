"""Error base class shared by every sdflash subpackage.

Each subpackage defines its own concrete errors next to the code that
raises them; they all derive from SdFlashError so the CLI can report any
fatal condition with a single handler.
"""


class SdFlashError(Exception):
    """Base exception for all fatal sdflash conditions.

    Attributes:
        message: Human-readable, one-line reason.
        error_code: Stable code for programmatic handling.
    """

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


__all__ = ["SdFlashError"]
