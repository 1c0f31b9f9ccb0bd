"""
Error taxonomy for the Meet voice bridge.

Every error carries a machine-readable ``code`` so callers (and the MCP tool
layer) can tell which stage failed: discovery, swap, decode, queue binding,
session lookup or synthesis.
"""

from typing import Any, Optional


class GmeetError(Exception):
    """Base class for all bridge errors."""

    code = "GMEET_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class BrowserError(GmeetError):
    """Raised when the browser runtime cannot be launched or attached."""

    code = "BROWSER_ERROR"


class TakeoverError(GmeetError):
    """Raised when the outbound audio sender cannot be found or swapped."""

    NO_SENDER_FOUND = "NO_SENDER_FOUND"
    SWAP_FAILED = "SWAP_FAILED"

    code = SWAP_FAILED


class PlaybackError(GmeetError):
    """Raised when a single playback request cannot be rendered."""

    DECODE_FAILED = "DECODE_FAILED"
    CONTEXT_NOT_INITIALIZED = "CONTEXT_NOT_INITIALIZED"
    NOT_BOUND = "NOT_BOUND"

    code = DECODE_FAILED


class SessionError(GmeetError):
    """Raised for session lookup and state machine violations."""

    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    INVALID_URL = "INVALID_URL"

    code = NOT_FOUND


class SynthesisError(GmeetError):
    """Raised when the TTS backend fails to produce audio."""

    code = "SYNTHESIS_FAILED"
