"""
Minimal WAV container codec.

Chrome's Web Audio decoder is happy with the plainest possible RIFF/WAVE
file: 16-bit PCM, mono, 48 kHz. This module builds and measures exactly that
format, and reads back the header of whatever a TTS backend returns.

Usage:
    wav = wrap(pcm_bytes)
    seconds = duration(wav)

    # Half a second of quiet, e.g. for tests
    gap = silence(0.5)
"""

import struct
from dataclasses import dataclass
from typing import Optional

import numpy as np

SAMPLE_RATE = 48000
BITS_PER_SAMPLE = 16
NUM_CHANNELS = 1
BYTES_PER_SAMPLE = BITS_PER_SAMPLE // 8
HEADER_SIZE = 44

PCM_FORMAT = 1


def encode_header(data_length: int, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Build the fixed 44-byte header for a mono 16-bit PCM payload.

    Args:
        data_length: Length of the PCM payload in bytes
        sample_rate: Sample rate declared in the header

    Returns:
        44 bytes of RIFF/WAVE header
    """
    block_align = NUM_CHANNELS * BYTES_PER_SAMPLE
    byte_rate = sample_rate * block_align
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        PCM_FORMAT,
        NUM_CHANNELS,
        sample_rate,
        byte_rate,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_length,
    )


def wrap(pcm: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Prepend a WAV header to raw PCM bytes."""
    return encode_header(len(pcm), sample_rate) + pcm


def silence(duration_seconds: float, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Build a WAV file of zero-valued samples lasting ``duration_seconds``."""
    num_samples = max(0, int(sample_rate * duration_seconds))
    data_length = num_samples * BYTES_PER_SAMPLE
    return encode_header(data_length, sample_rate) + bytes(data_length)


def duration(wav: bytes, sample_rate: int = SAMPLE_RATE) -> float:
    """Estimate playback duration in seconds from the byte length.

    Inputs shorter than the header measure as 0 rather than failing.
    """
    if len(wav) < HEADER_SIZE:
        return 0.0
    return (len(wav) - HEADER_SIZE) / (sample_rate * BYTES_PER_SAMPLE)


@dataclass(frozen=True)
class WavInfo:
    """Format fields read back from a WAV header."""

    sample_rate: int
    channels: int
    bits_per_sample: int
    data_length: int

    @property
    def duration_seconds(self) -> float:
        bytes_per_frame = self.channels * (self.bits_per_sample // 8)
        if not bytes_per_frame or not self.sample_rate:
            return 0.0
        return self.data_length / (self.sample_rate * bytes_per_frame)


def parse_header(wav: bytes) -> Optional[WavInfo]:
    """Read the format fields of a canonical 44-byte header.

    TTS backends return WAV at their own rate (OpenAI uses 24 kHz), so the
    speak path uses this to report an accurate duration. Streaming encoders
    write 0 or 0xFFFFFFFF for the data length; in that case the real payload
    length is used.

    Returns:
        WavInfo, or None if the bytes are not a PCM WAV header.
    """
    if len(wav) < HEADER_SIZE or wav[0:4] != b"RIFF" or wav[8:12] != b"WAVE":
        return None
    try:
        (
            _fmt_id,
            _fmt_size,
            _audio_format,
            channels,
            sample_rate,
            _byte_rate,
            _block_align,
            bits_per_sample,
        ) = struct.unpack_from("<4sIHHIIHH", wav, 12)
    except struct.error:
        return None
    if not channels or not sample_rate or bits_per_sample % 8:
        return None

    payload = len(wav) - HEADER_SIZE
    (declared,) = struct.unpack_from("<I", wav, 40)
    data_length = declared if 0 < declared <= payload else payload
    return WavInfo(
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits_per_sample,
        data_length=data_length,
    )


@dataclass(frozen=True)
class AudioBuffer:
    """Raw PCM samples plus their format. Immutable."""

    pcm: bytes
    sample_rate: int = SAMPLE_RATE
    channels: int = NUM_CHANNELS
    bits_per_sample: int = BITS_PER_SAMPLE

    def __post_init__(self):
        frame = self.channels * (self.bits_per_sample // 8)
        if frame <= 0 or len(self.pcm) % frame:
            raise ValueError(
                f"PCM length {len(self.pcm)} is not a multiple of the {frame}-byte frame"
            )

    @property
    def duration(self) -> float:
        frame = self.channels * (self.bits_per_sample // 8)
        return len(self.pcm) / (self.sample_rate * frame)

    def to_wav(self) -> bytes:
        """Serialize as a WAV file. Only mono 16-bit buffers are supported."""
        if self.channels != NUM_CHANNELS or self.bits_per_sample != BITS_PER_SAMPLE:
            raise ValueError("Only mono 16-bit PCM can be wrapped")
        return wrap(self.pcm, self.sample_rate)

    @classmethod
    def from_wav(cls, wav: bytes) -> Optional["AudioBuffer"]:
        """Parse a WAV file back into a buffer, or None if malformed."""
        info = parse_header(wav)
        if info is None:
            return None
        frame = info.channels * (info.bits_per_sample // 8)
        length = info.data_length - (info.data_length % frame)
        return cls(
            pcm=bytes(wav[HEADER_SIZE : HEADER_SIZE + length]),
            sample_rate=info.sample_rate,
            channels=info.channels,
            bits_per_sample=info.bits_per_sample,
        )

    @classmethod
    def from_pcm(cls, samples, sample_rate: int = SAMPLE_RATE) -> "AudioBuffer":
        """Build a mono 16-bit buffer from a sample array.

        Float input is taken to be in [-1.0, 1.0] and is clipped before
        conversion; integer input is cast to int16 as-is.
        """
        arr = np.asarray(samples)
        if np.issubdtype(arr.dtype, np.floating):
            arr = (np.clip(arr, -1.0, 1.0) * 32767).astype("<i2")
        else:
            arr = arr.astype("<i2")
        return cls(pcm=arr.tobytes(), sample_rate=sample_rate)

    def to_mono16(self) -> "AudioBuffer":
        """Return a mono 16-bit buffer, averaging channels if needed.

        Raises:
            ValueError: For sample widths other than 16 bits.
        """
        if self.bits_per_sample != BITS_PER_SAMPLE:
            raise ValueError(f"Unsupported sample width: {self.bits_per_sample} bits")
        if self.channels == NUM_CHANNELS:
            return self
        frames = np.frombuffer(self.pcm, dtype="<i2").reshape(-1, self.channels)
        mixed = np.round(frames.astype(np.float64).mean(axis=1))
        return AudioBuffer.from_pcm(mixed.astype("<i2"), self.sample_rate)
