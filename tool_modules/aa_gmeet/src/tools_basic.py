"""
Google Meet voice bridge MCP tools.

Provides tools for:
- Joining and leaving meetings (one browser instance per session)
- Speaking into a meeting through the audio takeover
- Inspecting the takeover when audio does not come through
"""

import logging
import re
from typing import Optional
from urllib.parse import urlparse

from fastmcp import FastMCP

from tool_modules.common import PROJECT_ROOT

__project_root__ = PROJECT_ROOT

from server.errors import ErrorCodes, tool_error, tool_exception, tool_success, tool_warning
from server.tool_registry import ToolRegistry
from tool_modules.aa_gmeet.src.errors import GmeetError
from tool_modules.aa_gmeet.src.session import SessionManager, get_session_manager

logger = logging.getLogger(__name__)

MEET_HOST = "meet.google.com"
MEETING_CODE_RE = re.compile(r"^[a-z]{3}-[a-z]{4}-[a-z]{3}$")

# Overridable for tests
_manager: Optional[SessionManager] = None


def _get_manager() -> SessionManager:
    return _manager or get_session_manager()


def normalize_meet_url(meet_url: str) -> Optional[str]:
    """Return a full Meet URL for a URL or bare meeting code, or None."""
    meet_url = (meet_url or "").strip()
    if MEETING_CODE_RE.match(meet_url):
        return f"https://{MEET_HOST}/{meet_url}"
    parsed = urlparse(meet_url)
    if parsed.scheme not in ("http", "https") or parsed.hostname != MEET_HOST:
        return None
    if not parsed.path.strip("/"):
        return None
    return meet_url


# ==================== TOOL IMPLEMENTATIONS ====================


async def _gmeet_join_meeting_impl(meet_url: str) -> str:
    url = normalize_meet_url(meet_url)
    if url is None:
        return tool_error(
            "Invalid Google Meet URL",
            error=f"Got: {meet_url!r}",
            code=ErrorCodes.INVALID_URL,
            hint="Use https://meet.google.com/xxx-xxxx-xxx or just the meeting code",
        )

    try:
        session = await _get_manager().join(url)
    except GmeetError as e:
        return tool_exception("Failed to join meeting", e)
    except Exception as e:
        logger.error(f"Unexpected error joining {url}: {e}", exc_info=True)
        return tool_exception("Failed to join meeting", e)

    data = {
        "session_id": session.id,
        "state": session.state.value,
        "joined_at": session.joined_at.isoformat(),
        "speech_available": session.speech_available,
    }
    if not session.speech_available:
        return tool_warning(
            f"Joined meeting {session.id}, but audio takeover failed",
            details="The bot is in the call but cannot speak. "
            "Run gmeet_audio_diagnostics for details.",
            context=data,
        )
    return tool_success("Joined meeting", data=data)


async def _gmeet_speak_impl(session_id: str, text: str, voice: str = "") -> str:
    if not text.strip():
        return tool_error("Nothing to say", code=ErrorCodes.INVALID_INPUT)

    try:
        duration = await _get_manager().speak(session_id, text, voice or None)
    except GmeetError as e:
        return tool_exception("Speak failed", e)
    except Exception as e:
        logger.error(f"[{session_id}] Unexpected error while speaking: {e}", exc_info=True)
        return tool_exception("Speak failed", e)

    return tool_success(
        "Spoke in meeting",
        data={"session_id": session_id, "duration": f"{duration:.2f}s"},
    )


async def _gmeet_leave_meeting_impl(session_id: str) -> str:
    try:
        await _get_manager().close(session_id)
    except GmeetError as e:
        return tool_exception("Leave failed", e)
    return tool_success("Left meeting", data={"session_id": session_id})


async def _gmeet_audio_diagnostics_impl(session_id: str) -> str:
    try:
        diag = await _get_manager().diagnostics(session_id)
    except GmeetError as e:
        return tool_exception("Diagnostics failed", e)
    except Exception as e:
        # Page gone or script error; report rather than raise
        logger.warning(f"[{session_id}] Diagnostics failed: {e}")
        return tool_exception("Diagnostics failed", e)

    takeover = diag.get("takeover", {})
    message = (
        "Audio takeover healthy"
        if takeover.get("tracks_match")
        else "Audio takeover NOT applied to the outbound sender"
    )
    return tool_success(message, data=diag)


async def _gmeet_list_sessions_impl() -> str:
    sessions = _get_manager().list_sessions()
    if not sessions:
        return tool_success("No active sessions")
    return tool_success(f"{len(sessions)} active session(s)", data={"sessions": sessions})


# ==================== TOOL REGISTRATION ====================


def register_tools(server: FastMCP) -> int:
    """Register Meet voice bridge tools with the MCP server."""
    registry = ToolRegistry(server)

    @registry.tool()
    async def gmeet_join_meeting(meet_url: str) -> str:
        """
        Join a Google Meet meeting and take over its microphone audio.

        Returns a session_id for gmeet_speak and gmeet_leave_meeting.

        Args:
            meet_url: Google Meet URL (https://meet.google.com/xxx-xxxx-xxx) or meeting code
        """
        return await _gmeet_join_meeting_impl(meet_url)

    @registry.tool()
    async def gmeet_speak(session_id: str, text: str, voice: str = "") -> str:
        """
        Speak text into a meeting.

        Requests for the same session are played one at a time, in order.

        Args:
            session_id: Session ID from gmeet_join_meeting
            text: What to say
            voice: Optional TTS voice (provider default if empty)
        """
        return await _gmeet_speak_impl(session_id, text, voice)

    @registry.tool()
    async def gmeet_leave_meeting(session_id: str) -> str:
        """
        Leave a meeting and close its browser.

        Args:
            session_id: Session ID from gmeet_join_meeting
        """
        return await _gmeet_leave_meeting_impl(session_id)

    @registry.tool()
    async def gmeet_audio_diagnostics(session_id: str) -> str:
        """
        Show the state of the audio takeover for a session.

        Lists every tracked RTCPeerConnection with its senders, whether the
        outbound audio track is ours, and the AudioContext state.

        Args:
            session_id: Session ID from gmeet_join_meeting
        """
        return await _gmeet_audio_diagnostics_impl(session_id)

    @registry.tool()
    async def gmeet_list_sessions() -> str:
        """List active meeting sessions."""
        return await _gmeet_list_sessions_impl()

    return registry.count
