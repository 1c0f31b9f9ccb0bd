"""
Text-to-Speech client.

Synthesizes WAV audio through an OpenAI-compatible ``/audio/speech``
endpoint. The same client serves OpenAI and Groq; only the base URL, key,
model and default voice differ (see config.PROVIDER_DEFAULTS).
"""

import asyncio
import logging
from typing import Optional, Protocol

import aiohttp

from tool_modules.common import PROJECT_ROOT

__project_root__ = PROJECT_ROOT

from tool_modules.aa_gmeet.src.config import GmeetConfig, get_config
from tool_modules.aa_gmeet.src.errors import SynthesisError

logger = logging.getLogger(__name__)


class SpeechSynthesizer(Protocol):
    """Anything that turns text into WAV bytes."""

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        ...


class OpenAISpeechSynthesizer:
    """TTS over an OpenAI-compatible HTTP API."""

    def __init__(self, config: Optional[GmeetConfig] = None):
        self.config = config or get_config()

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        """Synthesize ``text`` and return the WAV file bytes.

        Raises:
            SynthesisError: On missing credentials, HTTP errors, timeouts or empty audio.
        """
        config = self.config
        if not config.audio_api_key:
            raise SynthesisError(
                f"No API key configured for audio provider '{config.audio_provider}'"
            )

        voice = voice or config.tts_voice
        logger.info(f"Generating TTS audio ({len(text)} chars, voice={voice})")

        url = f"{config.audio_base_url.rstrip('/')}/audio/speech"
        payload = {
            "model": config.tts_model,
            "voice": voice,
            "input": text,
            "response_format": "wav",
        }
        headers = {"Authorization": f"Bearer {config.audio_api_key}"}
        timeout = aiohttp.ClientTimeout(total=config.tts_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload, headers=headers) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise SynthesisError(
                            f"TTS request failed: HTTP {resp.status}",
                            details={"status": resp.status, "body": body[:500]},
                        )
                    audio = await resp.read()
        except asyncio.TimeoutError as e:
            raise SynthesisError(
                f"TTS request timed out after {config.tts_timeout}s",
                details={"timeout": config.tts_timeout},
            ) from e
        except aiohttp.ClientError as e:
            raise SynthesisError(f"TTS synthesis failed: {e}") from e

        if not audio:
            raise SynthesisError("TTS backend returned no audio")

        logger.info(f"TTS audio ready ({len(audio)} bytes)")
        return audio


# Global synthesizer instance
_synthesizer: Optional[OpenAISpeechSynthesizer] = None


def get_synthesizer() -> OpenAISpeechSynthesizer:
    """Get or create the global TTS client."""
    global _synthesizer
    if _synthesizer is None:
        _synthesizer = OpenAISpeechSynthesizer()
    return _synthesizer
