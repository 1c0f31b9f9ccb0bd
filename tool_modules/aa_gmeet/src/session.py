"""
Session lifecycle.

A Session owns one browser instance, the takeover of its outbound audio
sender, and the injection queue that feeds it:

    JOINING --activate--> ACTIVE --close--> LEAVING --> ENDED
       |                                       ^
       +-------------- join failed ------------+

close() is best-effort at every step and always ends in ENDED with the
session removed from the registry, whatever the leave click, the takeover
release or the browser shutdown did.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

from tool_modules.common import PROJECT_ROOT

__project_root__ = PROJECT_ROOT

from tool_modules.aa_gmeet.src.browser_manager import launch_browser_session
from tool_modules.aa_gmeet.src.config import GmeetConfig, get_config
from tool_modules.aa_gmeet.src.errors import PlaybackError, SessionError, SynthesisError
from tool_modules.aa_gmeet.src.injection_queue import InjectionQueue
from tool_modules.aa_gmeet.src.playback_bridge import PlaybackBridge
from tool_modules.aa_gmeet.src.rtc_takeover import (
    PeerConnectionTracker,
    TakeoverHandle,
    TransportTakeover,
)
from tool_modules.aa_gmeet.src.tts_engine import SpeechSynthesizer, get_synthesizer
from tool_modules.aa_gmeet.src.wav_codec import AudioBuffer

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    JOINING = "joining"
    ACTIVE = "active"
    LEAVING = "leaving"
    ENDED = "ended"


_TRANSITIONS: dict[SessionState, frozenset] = {
    SessionState.JOINING: frozenset({SessionState.ACTIVE, SessionState.LEAVING}),
    SessionState.ACTIVE: frozenset({SessionState.LEAVING}),
    SessionState.LEAVING: frozenset({SessionState.ENDED}),
    SessionState.ENDED: frozenset(),
}


def validate_target_url(url: str) -> str:
    """Return ``url`` stripped, or raise SessionError(INVALID_URL)."""
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise SessionError(f"Not a valid meeting URL: {url!r}", code=SessionError.INVALID_URL)
    return url


@dataclass
class Session:
    """One joined (or joining) call and everything it owns."""

    id: str
    target_url: str
    browser: Any
    takeover: TransportTakeover
    bridge: PlaybackBridge
    queue: Optional[InjectionQueue]
    state: SessionState = SessionState.JOINING
    joined_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    handle: Optional[TakeoverHandle] = None
    state_history: list[SessionState] = field(default_factory=list)

    def __post_init__(self):
        self.state_history.append(self.state)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SessionError(
                f"Illegal session transition {self.state.value} -> {new_state.value}",
                code=SessionError.INVALID_STATE,
                details={"session_id": self.id},
            )
        logger.info(f"[{self.id}] {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.state_history.append(new_state)

    @property
    def speech_available(self) -> bool:
        return (
            self.state is SessionState.ACTIVE
            and self.handle is not None
            and self.queue is not None
            and self.queue.is_bound
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "target_url": self.target_url,
            "state": self.state.value,
            "joined_at": self.joined_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "speech_available": self.speech_available,
            "pending_audio": self.queue.pending if self.queue else 0,
        }


class SessionRegistry:
    """Session id -> Session for every session not yet ENDED."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: Session) -> None:
        async with self._lock:
            if session.id in self._sessions:
                raise SessionError(
                    f"Session {session.id} already registered",
                    code=SessionError.INVALID_STATE,
                )
            self._sessions[session.id] = session

    async def remove(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def values(self) -> list[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions


Launcher = Callable[[str, GmeetConfig], Awaitable[Any]]


class SessionManager:
    """
    Creates, activates and tears down sessions.

    Each session gets its own browser instance. The launcher and synthesizer
    are injectable so the lifecycle can run against a simulated page.
    """

    def __init__(
        self,
        launcher: Optional[Launcher] = None,
        config: Optional[GmeetConfig] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
    ):
        self._launcher = launcher or launch_browser_session
        self._config = config
        self._synthesizer = synthesizer
        self._issued_ids: set[str] = set()
        self.registry = SessionRegistry()

    @property
    def config(self) -> GmeetConfig:
        return self._config or get_config()

    @property
    def synthesizer(self) -> SpeechSynthesizer:
        return self._synthesizer or get_synthesizer()

    def _new_session_id(self) -> str:
        while True:
            session_id = uuid.uuid4().hex[:12]
            if session_id not in self._issued_ids:
                self._issued_ids.add(session_id)
                return session_id

    async def create(self, target_url: str) -> Session:
        """Launch a browser, install RTC tracking and register a JOINING session.

        The page is not navigated yet; tracking must be in place first.

        Raises:
            SessionError: INVALID_URL
            BrowserError: If the browser could not be launched.
        """
        target_url = validate_target_url(target_url)
        config = self.config
        session_id = self._new_session_id()

        logger.info(f"[{session_id}] Creating session for {target_url}")
        browser = await self._launcher(session_id, config)

        try:
            tracker = await PeerConnectionTracker.install(browser.control)
        except Exception as e:
            logger.error(f"[{session_id}] Failed to install RTC tracker: {e}")
            await self._shutdown_browser(session_id, browser)
            raise

        takeover = TransportTakeover(
            browser.control, tracker, sample_rate=config.sample_rate, session_id=session_id
        )
        session = Session(
            id=session_id,
            target_url=target_url,
            browser=browser,
            takeover=takeover,
            bridge=PlaybackBridge(browser.control, takeover),
            queue=InjectionQueue(session_id),
        )
        await self.registry.add(session)
        return session

    async def activate(self, session: Session) -> Session:
        """Take over the outbound audio sender and move to ACTIVE.

        Takeover is attempted ``takeover_attempts`` times with a fixed delay in
        between. If every attempt fails the session still becomes ACTIVE, with
        speech unavailable.
        """
        if session.state is not SessionState.JOINING:
            raise SessionError(
                f"Cannot activate a session in state {session.state.value}",
                code=SessionError.INVALID_STATE,
            )

        config = self.config
        attempts = max(1, config.takeover_attempts)
        handle: Optional[TakeoverHandle] = None
        for attempt in range(1, attempts + 1):
            if session.state is not SessionState.JOINING:
                break
            try:
                handle = await session.takeover.takeover()
                break
            except Exception as e:
                logger.warning(
                    f"[{session.id}] Audio takeover attempt {attempt}/{attempts} failed: {e}"
                )
            if attempt < attempts and session.state is SessionState.JOINING:
                try:
                    await session.browser.control.wait_for(config.takeover_retry_delay_ms)
                except Exception as e:
                    # Page went away between attempts
                    logger.warning(f"[{session.id}] Takeover retry wait failed: {e}")

        if session.state is not SessionState.JOINING:
            # Closed while we were retrying
            logger.info(f"[{session.id}] Session closed during activation")
            if handle is not None:
                await self._release(session, handle)
            return session

        if handle is None:
            logger.error(
                f"[{session.id}] Audio takeover failed after {attempts} attempts; "
                "speech is unavailable for this session"
            )
        else:
            session.handle = handle
            session.queue.bind(session.bridge, handle)

        session.transition(SessionState.ACTIVE)
        return session

    async def join(self, target_url: str) -> Session:
        """Create a session, join the call and activate it.

        If joining fails the session is closed before the error propagates.
        """
        session = await self.create(target_url)
        try:
            await session.browser.meet_page.join(session.target_url)
            await self.activate(session)
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"[{session.id}] Join failed: {e}")
            if session.id in self.registry:
                await self.close(session.id)
            raise
        return session

    async def speak(self, session_id: str, text: str, voice: Optional[str] = None) -> float:
        """Synthesize ``text`` and play it into the call.

        Returns:
            Realized playback duration in seconds.

        Raises:
            SessionError: NOT_FOUND or INVALID_STATE
            PlaybackError: NOT_BOUND if the takeover never succeeded, or the
                playback failure of this request.
            SynthesisError: If TTS failed or returned audio that is not
                16-bit PCM WAV.
        """
        session = self.get(session_id)
        if session.state is not SessionState.ACTIVE:
            raise SessionError(
                f"Session {session_id} is {session.state.value}, not active",
                code=SessionError.INVALID_STATE,
            )
        if not session.speech_available:
            raise PlaybackError(
                "Audio takeover is not bound; speech is unavailable",
                code=PlaybackError.NOT_BOUND,
            )

        try:
            await session.browser.meet_page.ensure_microphone_on()
        except Exception as e:
            logger.debug(f"[{session_id}] Could not check microphone control: {e}")

        wav = await self.synthesizer.synthesize(text, voice or None)
        buffer = AudioBuffer.from_wav(wav)
        if buffer is None:
            raise SynthesisError(
                "TTS backend did not return a PCM WAV file",
                details={"size": len(wav), "prefix": wav[:12].hex()},
            )
        try:
            buffer = buffer.to_mono16()
        except ValueError as e:
            raise SynthesisError(f"Unusable TTS audio: {e}") from e
        return await session.queue.enqueue(buffer)

    async def diagnostics(self, session_id: str) -> dict[str, Any]:
        """Takeover diagnostics, playback readiness, microphone and queue state."""
        session = self.get(session_id)
        result = session.to_dict()
        result["takeover"] = await session.takeover.diagnostics(session.handle)
        result["playback"] = await session.bridge.ready(session.handle)
        result["microphone"] = await session.browser.meet_page.microphone_state()
        if session.queue is not None:
            result["queue"] = {
                "state": session.queue.state.value,
                "pending": session.queue.pending,
                "completed": session.queue.completed,
                "failed": session.queue.failed,
            }
        return result

    async def close(self, session_id: str) -> None:
        """Leave the call and release everything the session owns.

        Raises:
            SessionError: NOT_FOUND
        """
        session = self.get(session_id)
        if session.state in (SessionState.LEAVING, SessionState.ENDED):
            logger.info(f"[{session_id}] Close already in progress")
            return

        session.transition(SessionState.LEAVING)
        try:
            if session.queue is not None:
                session.queue.unbind()

            try:
                await session.browser.meet_page.leave()
            except Exception as e:
                logger.warning(f"[{session_id}] Error leaving call: {e}")

            if session.handle is not None:
                await self._release(session, session.handle)

            await self._shutdown_browser(session_id, session.browser)
        finally:
            session.handle = None
            session.queue = None
            session.ended_at = datetime.now()
            session.transition(SessionState.ENDED)
            await self.registry.remove(session_id)
            logger.info(f"[{session_id}] Session ended. Active sessions: {len(self.registry)}")

    async def close_all(self) -> int:
        """Close every registered session; one failure never stops the others.

        Returns:
            Number of sessions closed.
        """
        sessions = self.registry.values()
        if not sessions:
            return 0
        logger.info(f"Closing {len(sessions)} active session(s)...")
        results = await asyncio.gather(
            *(self.close(s.id) for s in sessions), return_exceptions=True
        )
        closed = 0
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                logger.error(f"[{session.id}] Error during close: {result}")
            else:
                closed += 1
        return closed

    def get(self, session_id: str) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionError(
                f"No active session with ID: {session_id}",
                code=SessionError.NOT_FOUND,
            )
        return session

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.registry.values()]

    async def _release(self, session: Session, handle: TakeoverHandle) -> None:
        try:
            await session.takeover.release(handle)
        except Exception as e:
            logger.warning(f"[{session.id}] Error releasing audio graph: {e}")

    async def _shutdown_browser(self, session_id: str, browser: Any) -> None:
        try:
            await browser.close(timeout=self.config.browser_close_timeout)
            return
        except Exception as e:
            logger.warning(f"[{session_id}] Browser close failed, falling back to force kill: {e}")
        try:
            await browser.force_kill()
        except Exception as e:
            logger.warning(f"[{session_id}] Force kill failed: {e}")


# Global manager instance
_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get the global session manager."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager()
    return _session_manager
