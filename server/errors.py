"""Tool response formatting for the gmeet MCP server.

Tools never raise to the MCP transport. They return one of these strings, so
the caller always sees a readable outcome and, on failure, which stage of the
bridge failed.

Usage:
    from server.errors import tool_error, tool_exception, tool_success

    return tool_success("Joined meeting", data={"session_id": sid})

    try:
        ...
    except GmeetError as e:
        return tool_exception("Speak failed", e)
"""

import json
from typing import Any


def _format_context(context: dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in context.items())


def tool_error(
    message: str,
    error: str | None = None,
    code: str | None = None,
    context: dict[str, Any] | None = None,
    hint: str | None = None,
) -> str:
    """Create an error response string.

    Args:
        message: Main error message (shown prominently)
        error: Detailed error text (e.g., exception message)
        code: Machine-readable stage code (e.g., "NO_SENDER_FOUND")
        context: Additional context dict (e.g., {"session_id": sid})
        hint: How to resolve the error

    Examples:
        >>> tool_error("Session not found", code="NOT_FOUND")
        '❌ Session not found [NOT_FOUND]'
    """
    parts = [f"❌ {message}"]

    if code:
        parts.append(f" [{code}]")

    if error:
        parts.append(f"\n**Error:** {error}")

    if context:
        parts.append(f"\n**Context:** {_format_context(context)}")

    if hint:
        parts.append(f"\n💡 **Hint:** {hint}")

    return "".join(parts)


def tool_exception(message: str, exc: Exception, hint: str | None = None) -> str:
    """Render an exception, carrying over its ``code`` and ``details`` if any."""
    code = getattr(exc, "code", None) or ErrorCodes.INTERNAL_ERROR
    error = getattr(exc, "message", None) or str(exc)
    details = getattr(exc, "details", None) or None
    return tool_error(message, error=error, code=code, context=details, hint=hint)


def tool_success(
    message: str,
    data: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
) -> str:
    """Create a success response string.

    Lists and dicts in ``data`` are rendered as indented JSON blocks.

    Examples:
        >>> tool_success("Left meeting", data={"session_id": "abc"})
        '✅ Left meeting\\n**session_id:** abc'
    """
    parts = [f"✅ {message}"]

    if context:
        parts.append(f"\n**Context:** {_format_context(context)}")

    if data:
        for key, value in data.items():
            if isinstance(value, (list, dict)):
                formatted = json.dumps(value, indent=2, default=str)
                parts.append(f"\n**{key}:**\n```\n{formatted}\n```")
            else:
                parts.append(f"\n**{key}:** {value}")

    return "".join(parts)


def tool_warning(
    message: str,
    details: str | None = None,
    context: dict[str, Any] | None = None,
) -> str:
    """Create a warning response string (succeeded, but degraded)."""
    parts = [f"⚠️ {message}"]

    if details:
        parts.append(f"\n{details}")

    if context:
        parts.append(f"\n**Context:** {_format_context(context)}")

    return "".join(parts)


class ErrorCodes:
    """Codes used in tool responses.

    The bridge stages mirror the ``code`` values of the exceptions in
    ``tool_modules.aa_gmeet.src.errors``.
    """

    # Input
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_URL = "INVALID_URL"

    # Sessions
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"

    # Takeover / playback
    NO_SENDER_FOUND = "NO_SENDER_FOUND"
    SWAP_FAILED = "SWAP_FAILED"
    DECODE_FAILED = "DECODE_FAILED"
    CONTEXT_NOT_INITIALIZED = "CONTEXT_NOT_INITIALIZED"
    NOT_BOUND = "NOT_BOUND"

    # Collaborators
    BROWSER_ERROR = "BROWSER_ERROR"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"

    INTERNAL_ERROR = "INTERNAL_ERROR"
