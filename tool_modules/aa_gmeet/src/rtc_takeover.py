"""
RTCPeerConnection audio takeover.

Google Meet negotiates its own WebRTC connection and feeds it from
getUserMedia. To make the bot "speak", we leave that negotiation alone and
instead swap the outbound audio sender's track for one produced by a Web Audio
graph we control:

    AudioBufferSource -> GainNode -> MediaStreamDestination --replaceTrack--> RTCRtpSender

Flow:
1. PeerConnectionTracker.install() registers an init script that wraps the
   RTCPeerConnection constructor, so every connection the page creates is
   recorded (in creation order) under a per-tracker namespace on window.
2. After joining, TransportTakeover.discover_sender() finds the first live
   connection with an audio sender (or a sender whose track is still null).
3. TransportTakeover.takeover() builds the audio graph and awaits
   sender.replaceTrack() to completion.
4. Meet may re-apply its own microphone stream on renegotiation, so
   ensure_track() re-checks the sender before every playback and re-applies
   the swap when it was reverted.

All page-side state lives under ``window[namespace]``; several trackers can
share one page without stepping on each other.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from tool_modules.common import PROJECT_ROOT

__project_root__ = PROJECT_ROOT

from tool_modules.aa_gmeet.src.browser_control import BrowserControl
from tool_modules.aa_gmeet.src.errors import PlaybackError, TakeoverError
from tool_modules.aa_gmeet.src.wav_codec import SAMPLE_RATE

logger = logging.getLogger(__name__)

_NAMESPACE_PLACEHOLDER = "__GMEET_NAMESPACE__"

# Runs before any page script. Wrapping (rather than replacing) the current
# constructor keeps other trackers installed in the same page working.
TRACK_RTC_SCRIPT = """
(() => {
  const ns = __GMEET_NAMESPACE__;
  if (window[ns]) return;
  const state = { connections: [], graph: null };
  Object.defineProperty(window, ns, { value: state, configurable: true });

  const Orig = window.RTCPeerConnection;
  if (!Orig) return;

  function TrackedRTCPeerConnection(...args) {
    const pc = new Orig(...args);
    state.connections.push(pc);
    return pc;
  }
  TrackedRTCPeerConnection.prototype = Orig.prototype;
  Object.setPrototypeOf(TrackedRTCPeerConnection, Orig);
  window.RTCPeerConnection = TrackedRTCPeerConnection;
  if (window.webkitRTCPeerConnection === Orig) {
    window.webkitRTCPeerConnection = TrackedRTCPeerConnection;
  }
})();
"""

COUNT_CONNECTIONS_JS = """
({ ns }) => {
  const state = window[ns];
  return state ? state.connections.length : -1;
}
"""

DISCOVER_SENDER_JS = """
({ ns }) => {
  const state = window[ns];
  if (!state) return null;
  for (let t = 0; t < state.connections.length; t++) {
    const pc = state.connections[t];
    if (pc.connectionState === "closed" || pc.signalingState === "closed") continue;
    const senders = pc.getSenders();
    for (let s = 0; s < senders.length; s++) {
      const track = senders[s].track;
      if (!track || track.kind === "audio") {
        return {
          transportIndex: t,
          senderIndex: s,
          trackId: track ? track.id : null,
          connectionState: pc.connectionState,
        };
      }
    }
  }
  return null;
}
"""

TAKEOVER_JS = """
async ({ ns, transportIndex, senderIndex, sampleRate }) => {
  const state = window[ns];
  const pc = state ? state.connections[transportIndex] : null;
  const sender = pc && pc.connectionState !== "closed" ? pc.getSenders()[senderIndex] : null;
  if (!sender || (sender.track && sender.track.kind !== "audio")) {
    return { error: "NO_SENDER_FOUND", message: "Audio sender disappeared before takeover" };
  }

  if (state.graph) {
    const old = state.graph;
    state.graph = null;
    old.ctx.close().catch(() => {});
  }

  const ctx = new AudioContext({ sampleRate });
  try {
    if (ctx.state === "suspended") await ctx.resume();
    const gain = ctx.createGain();
    gain.gain.value = 1.0;
    const dest = ctx.createMediaStreamDestination();
    gain.connect(dest);
    const track = dest.stream.getAudioTracks()[0];
    await sender.replaceTrack(track);
    state.graph = { ctx, gain, dest, track, pc, sender };
    return {
      trackId: track.id,
      contextState: ctx.state,
      connectionState: pc.connectionState,
    };
  } catch (e) {
    ctx.close().catch(() => {});
    return { error: "SWAP_FAILED", message: String(e) };
  }
}
"""

ENSURE_TRACK_JS = """
async ({ ns }) => {
  const graph = window[ns] ? window[ns].graph : null;
  if (!graph) {
    return { error: "CONTEXT_NOT_INITIALIZED", message: "No audio graph; takeover has not run" };
  }
  const current = graph.sender.track;
  if (current && current.id === graph.track.id) {
    return { reasserted: false, trackId: graph.track.id };
  }
  try {
    await graph.sender.replaceTrack(graph.track);
  } catch (e) {
    return { error: "SWAP_FAILED", message: String(e) };
  }
  return {
    reasserted: true,
    trackId: graph.track.id,
    previousTrackId: current ? current.id : null,
  };
}
"""

DIAGNOSTICS_JS = """
({ ns }) => {
  const state = window[ns];
  const graph = state ? state.graph : null;
  const senderTrack = graph ? graph.sender.track : null;
  const connections = state ? state.connections : [];
  return {
    installed: !!state,
    senderTrackId: senderTrack ? senderTrack.id : null,
    destTrackId: graph ? graph.track.id : null,
    tracksMatch: !!(graph && senderTrack && senderTrack.id === graph.track.id),
    contextState: graph ? graph.ctx.state : "none",
    transportConnectionState: graph ? graph.pc.connectionState : null,
    allTransports: connections.map((pc, index) => ({
      index,
      connectionState: pc.connectionState,
      signalingState: pc.signalingState,
      senders: pc.getSenders().map((s) => ({
        kind: s.track ? s.track.kind : null,
        trackId: s.track ? s.track.id : null,
        readyState: s.track ? s.track.readyState : null,
      })),
    })),
  };
}
"""

RELEASE_JS = """
async ({ ns }) => {
  const state = window[ns];
  const graph = state ? state.graph : null;
  if (!graph) return false;
  state.graph = null;
  try { graph.gain.disconnect(); } catch (e) {}
  await graph.ctx.close();
  return true;
}
"""


@dataclass
class SenderInfo:
    """Location of an outbound audio sender on a tracked transport."""

    transport_index: int
    sender_index: int
    track_id: Optional[str] = None
    connection_state: str = ""


@dataclass
class TakeoverHandle:
    """A completed takeover.

    ``audio_graph_ref`` is the tracker namespace under which the page keeps
    the AudioContext, gain node, destination and the swapped sender.
    ``output_track_id`` is the destination's track id; ensure_track() keeps the
    sender's live track equal to it.
    """

    transport_ref: int
    sender_ref: int
    audio_graph_ref: str
    output_track_id: str
    context_state: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    reassert_count: int = 0


class PeerConnectionTracker:
    """Capability object for the page-side connection tracking list.

    Create one with ``await PeerConnectionTracker.install(control)`` before the
    page navigates to the meeting; connections created earlier are invisible.
    """

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace or f"__gmeetRtc_{uuid.uuid4().hex[:12]}"
        self.installed = False

    @property
    def init_script(self) -> str:
        return TRACK_RTC_SCRIPT.replace(
            _NAMESPACE_PLACEHOLDER, json.dumps(self.namespace)
        )

    @classmethod
    async def install(
        cls, control: BrowserControl, namespace: Optional[str] = None
    ) -> "PeerConnectionTracker":
        """Register the construction interceptor and return the tracker."""
        tracker = cls(namespace)
        await control.add_init_script(tracker.init_script)
        tracker.installed = True
        logger.info(f"RTC tracker init script installed ({tracker.namespace})")
        return tracker

    async def connection_count(self, control: BrowserControl) -> int:
        """Number of tracked connections, or -1 if the tracker is not in the page."""
        return int(await control.evaluate(COUNT_CONNECTIONS_JS, {"ns": self.namespace}))


class TransportTakeover:
    """Finds the outbound audio sender and redirects it to a local audio graph."""

    def __init__(
        self,
        control: BrowserControl,
        tracker: PeerConnectionTracker,
        sample_rate: int = SAMPLE_RATE,
        session_id: str = "",
    ):
        self._control = control
        self._tracker = tracker
        self.sample_rate = sample_rate
        self._log_prefix = f"[{session_id}] " if session_id else ""

    @property
    def namespace(self) -> str:
        return self._tracker.namespace

    async def discover_sender(self) -> Optional[SenderInfo]:
        """Return the first audio (or track-less) sender on a live transport.

        Transports are scanned in creation order and senders in the order the
        transport reports them.
        """
        result = await self._control.evaluate(
            DISCOVER_SENDER_JS, {"ns": self.namespace}
        )
        if not result:
            return None
        return SenderInfo(
            transport_index=result["transportIndex"],
            sender_index=result["senderIndex"],
            track_id=result.get("trackId"),
            connection_state=result.get("connectionState", ""),
        )

    async def takeover(self, sender: Optional[SenderInfo] = None) -> TakeoverHandle:
        """Swap the sender's track for the output of a fresh local audio graph.

        Args:
            sender: Sender from discover_sender(); discovered here if omitted

        Returns:
            TakeoverHandle for playback and reconciliation.

        Raises:
            TakeoverError: NO_SENDER_FOUND if there is nothing to take over (no
                audio graph is created in that case), SWAP_FAILED if
                replaceTrack() rejected. Not retried here.
        """
        if sender is None:
            sender = await self.discover_sender()
        if sender is None:
            raise TakeoverError(
                "No audio sender found on any RTCPeerConnection",
                code=TakeoverError.NO_SENDER_FOUND,
            )

        result = await self._control.evaluate(
            TAKEOVER_JS,
            {
                "ns": self.namespace,
                "transportIndex": sender.transport_index,
                "senderIndex": sender.sender_index,
                "sampleRate": self.sample_rate,
            },
        )
        if not result or "error" in result:
            error = (result or {}).get("error", TakeoverError.SWAP_FAILED)
            message = (result or {}).get("message", "Takeover script returned nothing")
            raise TakeoverError(
                message,
                code=error,
                details={
                    "transport_index": sender.transport_index,
                    "sender_index": sender.sender_index,
                },
            )

        handle = TakeoverHandle(
            transport_ref=sender.transport_index,
            sender_ref=sender.sender_index,
            audio_graph_ref=self.namespace,
            output_track_id=result["trackId"],
            context_state=result.get("contextState", ""),
        )
        logger.info(
            f"{self._log_prefix}Audio track replaced on RTCPeerConnection "
            f"(transport={handle.transport_ref}, sender={handle.sender_ref}, "
            f"track={handle.output_track_id}, pc={result.get('connectionState')}, "
            f"ctx={handle.context_state})"
        )
        return handle

    async def ensure_track(self, handle: TakeoverHandle) -> bool:
        """Re-apply the swap if the page put its own track back.

        Returns:
            True if the swap had to be re-applied, False if it was intact.
        """
        result = await self._control.evaluate(
            ENSURE_TRACK_JS, {"ns": handle.audio_graph_ref}
        )
        if not result:
            raise PlaybackError(
                "Audio graph not initialized",
                code=PlaybackError.CONTEXT_NOT_INITIALIZED,
            )
        if "error" in result:
            if result["error"] == PlaybackError.CONTEXT_NOT_INITIALIZED:
                raise PlaybackError(result["message"], code=result["error"])
            raise TakeoverError(result.get("message", ""), code=result["error"])

        if result.get("reasserted"):
            handle.reassert_count += 1
            logger.warning(
                f"{self._log_prefix}Sender track was reverted "
                f"(was {result.get('previousTrackId')}), re-applied {handle.output_track_id}"
            )
            return True
        return False

    async def diagnostics(self, handle: Optional[TakeoverHandle] = None) -> dict[str, Any]:
        """Read-only snapshot of the takeover for operator debugging."""
        ns = handle.audio_graph_ref if handle else self.namespace
        raw = await self._control.evaluate(DIAGNOSTICS_JS, {"ns": ns}) or {}
        return {
            "installed": bool(raw.get("installed")),
            "sender_track_id": raw.get("senderTrackId"),
            "dest_track_id": raw.get("destTrackId"),
            "tracks_match": bool(raw.get("tracksMatch")),
            "context_state": raw.get("contextState", "none"),
            "transport_connection_state": raw.get("transportConnectionState"),
            "all_transports": [
                {
                    "index": t.get("index"),
                    "connection_state": t.get("connectionState"),
                    "signaling_state": t.get("signalingState"),
                    "senders": [
                        {
                            "kind": s.get("kind"),
                            "track_id": s.get("trackId"),
                            "ready_state": s.get("readyState"),
                        }
                        for s in t.get("senders", [])
                    ],
                }
                for t in raw.get("allTransports", [])
            ],
            "reassert_count": handle.reassert_count if handle else 0,
        }

    async def release(self, handle: TakeoverHandle) -> bool:
        """Close the local AudioContext and drop the page-side graph."""
        released = bool(
            await self._control.evaluate(RELEASE_JS, {"ns": handle.audio_graph_ref})
        )
        if released:
            logger.info(f"{self._log_prefix}Local audio graph released")
        return released
