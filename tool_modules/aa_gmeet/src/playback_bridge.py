"""
Playback into the taken-over audio graph.

Audio crosses into the page as base64 WAV, is decoded by the page's own
AudioContext, and plays through a one-shot AudioBufferSourceNode into the
takeover's gain node. play() returns when the source fires ``ended``, so the
caller's timing follows real delivery instead of an estimate.
"""

import base64
import logging
from typing import Any, Optional

from tool_modules.aa_gmeet.src.browser_control import BrowserControl
from tool_modules.aa_gmeet.src.errors import PlaybackError
from tool_modules.aa_gmeet.src.rtc_takeover import TakeoverHandle, TransportTakeover
from tool_modules.aa_gmeet.src.wav_codec import AudioBuffer

logger = logging.getLogger(__name__)

PLAY_JS = """
async ({ ns, audio }) => {
  const graph = window[ns] ? window[ns].graph : null;
  if (!graph) {
    return { error: "CONTEXT_NOT_INITIALIZED", message: "Audio not initialized; run takeover first" };
  }
  const ctx = graph.ctx;
  if (ctx.state === "suspended") await ctx.resume();

  const bin = atob(audio);
  const bytes = new Uint8Array(bin.length);
  for (let i = 0; i < bin.length; i++) bytes[i] = bin.charCodeAt(i);

  let buffer;
  try {
    buffer = await ctx.decodeAudioData(bytes.buffer);
  } catch (e) {
    return { error: "DECODE_FAILED", message: String(e) };
  }

  return await new Promise((resolve) => {
    try {
      const src = ctx.createBufferSource();
      src.buffer = buffer;
      src.connect(graph.gain);
      src.onended = () => {
        src.disconnect();
        resolve({ duration: buffer.duration });
      };
      src.start();
    } catch (e) {
      resolve({ error: "CONTEXT_NOT_INITIALIZED", message: String(e) });
    }
  });
}
"""

READY_JS = """
({ ns }) => {
  const graph = window[ns] ? window[ns].graph : null;
  const senderTrack = graph ? graph.sender.track : null;
  return {
    hasContext: !!graph,
    contextState: graph ? graph.ctx.state : "none",
    destTrackCount: graph ? graph.dest.stream.getAudioTracks().length : 0,
    senderTrackId: senderTrack ? senderTrack.id : null,
    tracksMatch: !!(graph && senderTrack && senderTrack.id === graph.track.id),
  };
}
"""


class PlaybackBridge:
    """Renders audio buffers through a TakeoverHandle's audio graph."""

    def __init__(self, control: BrowserControl, takeover: TransportTakeover):
        self._control = control
        self._takeover = takeover

    async def play(self, handle: TakeoverHandle, audio: AudioBuffer) -> float:
        """Play one buffer and wait for it to finish.

        ensure_track() runs first so the audio reaches the transport even if
        Meet reverted the swap since the last playback.

        Returns:
            Realized duration in seconds, as decoded by the page.

        Raises:
            PlaybackError: CONTEXT_NOT_INITIALIZED or DECODE_FAILED.
        """
        await self._takeover.ensure_track(handle)

        wav = audio.to_wav()
        payload = base64.b64encode(wav).decode("ascii")
        result = await self._control.evaluate(
            PLAY_JS, {"ns": handle.audio_graph_ref, "audio": payload}
        )
        if not result:
            raise PlaybackError(
                "Playback script returned nothing",
                code=PlaybackError.CONTEXT_NOT_INITIALIZED,
            )
        if "error" in result:
            raise PlaybackError(
                result.get("message", "Playback failed"),
                code=result["error"],
                details={"bytes": len(wav), "sample_rate": audio.sample_rate},
            )
        return float(result["duration"])

    async def ready(self, handle: Optional[TakeoverHandle]) -> dict[str, Any]:
        """Cheap readiness check, usable before enqueueing playback."""
        if handle is None:
            return {
                "has_context": False,
                "context_state": "none",
                "dest_track_count": 0,
                "sender_track_id": None,
                "tracks_match": False,
            }
        raw = await self._control.evaluate(READY_JS, {"ns": handle.audio_graph_ref}) or {}
        return {
            "has_context": bool(raw.get("hasContext")),
            "context_state": raw.get("contextState", "none"),
            "dest_track_count": int(raw.get("destTrackCount", 0)),
            "sender_track_id": raw.get("senderTrackId"),
            "tracks_match": bool(raw.get("tracksMatch")),
        }
