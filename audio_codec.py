"""Audio codec helpers for the live call pipeline.

Pure functions converting between base64 text, raw PCM16 bytes and float
sample buffers. PCM is always signed 16-bit little-endian; the live model
takes 16 kHz mono input and returns 24 kHz mono output.
"""

import base64
import binascii
from dataclasses import dataclass

import numpy as np

from errors import DecodeError, FormatError

INPUT_SAMPLE_RATE = 16000   # outbound frames (mic -> model)
OUTPUT_SAMPLE_RATE = 24000  # inbound fragments (model -> speaker)
BYTES_PER_SAMPLE = 2

INT16_SCALE = 32768.0


@dataclass(frozen=True)
class AudioChunk:
    """A unit of PCM16 LE mono audio passed between pipeline stages."""
    data: bytes
    sample_rate: int
    channels: int = 1

    @property
    def frame_count(self) -> int:
        return len(self.data) // (BYTES_PER_SAMPLE * self.channels)

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate

    @property
    def mime_type(self) -> str:
        return f"audio/pcm;rate={self.sample_rate}"


class AudioBuffer:
    """Deinterleaved float32 samples in [-1.0, 1.0] at a fixed sample rate.

    Mirrors the shape of a Web Audio buffer: ``channel_data(i)`` returns
    one channel, ``duration`` is in seconds.
    """

    def __init__(self, samples: np.ndarray, sample_rate: int):
        if samples.ndim == 1:
            samples = samples.reshape(1, -1)
        self._samples = samples.astype(np.float32, copy=False)
        self.sample_rate = sample_rate

    @property
    def number_of_channels(self) -> int:
        return self._samples.shape[0]

    @property
    def length(self) -> int:
        return self._samples.shape[1]

    @property
    def duration(self) -> float:
        return self.length / self.sample_rate

    def channel_data(self, channel: int) -> np.ndarray:
        return self._samples[channel]

    def mono(self) -> np.ndarray:
        """Channel-averaged samples (a view for mono buffers)."""
        if self.number_of_channels == 1:
            return self._samples[0]
        return self._samples.mean(axis=0)


def decode(b64: str) -> bytes:
    """Decode standard base64 text to bytes.

    Raises:
        DecodeError: on characters outside the alphabet or bad padding.
    """
    try:
        return base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"Invalid base64 audio payload: {e}") from e


def encode_to_base64(data: bytes) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(data).decode("ascii")


def pcm_to_float(data: bytes, sample_rate: int, channels: int = 1) -> AudioBuffer:
    """Reinterpret PCM16 LE bytes as a normalized, deinterleaved buffer.

    Raises:
        FormatError: if the byte length is not a multiple of 2 * channels.
    """
    if channels < 1:
        raise FormatError(f"Invalid channel count: {channels}")
    if len(data) % (BYTES_PER_SAMPLE * channels) != 0:
        raise FormatError(
            f"PCM length {len(data)} is not a multiple of "
            f"{BYTES_PER_SAMPLE * channels} ({channels} channel(s))"
        )
    samples = np.frombuffer(data, dtype="<i2").astype(np.float32) / INT16_SCALE
    # Interleaved [L R L R ...] -> (channels, frames)
    samples = samples.reshape(-1, channels).T
    return AudioBuffer(samples, sample_rate)


def float_to_pcm16(samples) -> bytes:
    """Scale float samples back to PCM16 LE, clamping instead of wrapping."""
    arr = np.asarray(samples, dtype=np.float64)
    if arr.ndim > 1:
        # (channels, frames) -> interleaved
        arr = arr.T.reshape(-1)
    scaled = np.clip(np.rint(arr * INT16_SCALE), -32768, 32767)
    return scaled.astype("<i2").tobytes()


class StreamResampler:
    """Linear resampler for a stream delivered in arbitrary chunks.

    Keeps the fractional read position and the last source sample between
    calls, so output length tracks the true rate ratio over a whole call
    instead of rounding once per chunk.
    """

    def __init__(self, from_rate: int, to_rate: int):
        self.from_rate = from_rate
        self.to_rate = to_rate
        self._step = from_rate / to_rate
        self._pos = 0.0
        self._tail = np.zeros(0, dtype=np.float32)

    def reset(self):
        self._pos = 0.0
        self._tail = np.zeros(0, dtype=np.float32)

    def process(self, samples: np.ndarray) -> np.ndarray:
        if self.from_rate == self.to_rate:
            return samples
        buf = np.concatenate([self._tail, np.asarray(samples, dtype=np.float32)])
        last = len(buf) - 1
        if last < self._pos:
            self._tail = buf
            return np.zeros(0, dtype=np.float32)
        n_out = int((last - self._pos) // self._step) + 1
        positions = self._pos + np.arange(n_out) * self._step
        out = np.interp(positions, np.arange(len(buf)), buf).astype(np.float32)
        # Keep the source sample just before the next read position.
        next_pos = self._pos + n_out * self._step
        drop = min(int(next_pos), last)
        self._tail = buf[drop:]
        self._pos = next_pos - drop
        return out
