"""
Single-flight playback queue.

Several callers may ask a session to speak at once. The queue plays their
audio one request at a time, strictly in submission order, so utterances never
overlap on the call.

    IDLE --dequeue--> PLAYING --done/failed--> IDLE --(more pending)--> PLAYING ...

A failed playback rejects only its own request; the next one is attempted
normally. Requests dequeued while no takeover is bound are rejected at once
with NOT_BOUND instead of stalling the queue.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from tool_modules.aa_gmeet.src.errors import PlaybackError
from tool_modules.aa_gmeet.src.wav_codec import AudioBuffer

if TYPE_CHECKING:
    from tool_modules.aa_gmeet.src.playback_bridge import PlaybackBridge
    from tool_modules.aa_gmeet.src.rtc_takeover import TakeoverHandle

logger = logging.getLogger(__name__)


class QueueState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"


@dataclass
class InjectionRequest:
    """One queued utterance. Resolved exactly once, never retried."""

    audio: AudioBuffer
    future: asyncio.Future
    created_at: datetime = field(default_factory=datetime.now)


class InjectionQueue:
    """Serializes playback requests against one PlaybackBridge."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._pending: deque[InjectionRequest] = deque()
        self._state = QueueState.IDLE
        self._bridge: Optional["PlaybackBridge"] = None
        self._handle: Optional["TakeoverHandle"] = None
        self._task: Optional[asyncio.Task] = None
        self.completed = 0
        self.failed = 0

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def is_bound(self) -> bool:
        return self._bridge is not None and self._handle is not None

    def bind(self, bridge: "PlaybackBridge", handle: "TakeoverHandle") -> None:
        """Attach the playback target. Pending requests start draining."""
        self._bridge = bridge
        self._handle = handle
        logger.debug(f"[{self.session_id}] Injection queue bound")
        self._drain()

    def unbind(self) -> int:
        """Detach the playback target and reject everything still pending.

        An in-flight playback is left to finish (or fail) on its own.

        Returns:
            Number of pending requests rejected.
        """
        self._bridge = None
        self._handle = None
        rejected = 0
        while self._pending:
            request = self._pending.popleft()
            if not request.future.done():
                request.future.set_exception(
                    PlaybackError(
                        "Injection queue was unbound", code=PlaybackError.NOT_BOUND
                    )
                )
                rejected += 1
        if rejected:
            logger.info(f"[{self.session_id}] Rejected {rejected} pending audio requests")
        return rejected

    async def enqueue(self, audio: AudioBuffer) -> float:
        """Queue an audio buffer for playback and wait for it to finish.

        Returns:
            Realized duration in seconds.

        Raises:
            PlaybackError: NOT_BOUND, DECODE_FAILED or CONTEXT_NOT_INITIALIZED.
        """
        loop = asyncio.get_running_loop()
        request = InjectionRequest(audio=audio, future=loop.create_future())
        self._pending.append(request)
        self._drain()
        return await request.future

    def _drain(self) -> None:
        while self._state is QueueState.IDLE and self._pending:
            request = self._pending.popleft()
            if request.future.done():
                # Caller gave up before its turn
                continue

            bridge, handle = self._bridge, self._handle
            if bridge is None or handle is None:
                self.failed += 1
                request.future.set_exception(
                    PlaybackError(
                        "No takeover bound to this session; speech is unavailable",
                        code=PlaybackError.NOT_BOUND,
                    )
                )
                continue

            self._state = QueueState.PLAYING
            self._task = asyncio.create_task(self._play(request, bridge, handle))

    async def _play(
        self,
        request: InjectionRequest,
        bridge: "PlaybackBridge",
        handle: "TakeoverHandle",
    ) -> None:
        try:
            logger.info(
                f"[{self.session_id}] Injecting audio via Web Audio API "
                f"({request.audio.duration:.2f}s at {request.audio.sample_rate} Hz)"
            )
            duration = await bridge.play(handle, request.audio)
        except asyncio.CancelledError:
            request.future.cancel()
            raise
        except Exception as e:
            self.failed += 1
            logger.error(f"[{self.session_id}] Audio injection failed: {e}")
            if not request.future.done():
                request.future.set_exception(e)
        else:
            self.completed += 1
            logger.info(f"[{self.session_id}] Audio playback complete ({duration:.2f}s)")
            if not request.future.done():
                request.future.set_result(duration)
        finally:
            self._state = QueueState.IDLE
            self._task = None
            self._drain()
