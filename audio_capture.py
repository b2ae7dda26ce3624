"""Microphone side of the call.

- MicrophoneStream: opens a PulseAudio/PipeWire source with pasimple and
  fans raw PCM chunks out to subscribers from a capture thread. The PCM
  pipeline and the call recorder both tap the same stream read-only; only
  ``stop()`` (session teardown) releases the device.
- InputAudioContext / CaptureProcessor: turn the raw stream into fixed
  4096-sample frames at 16 kHz and hand each one to a callback.
- list_input_devices(): enumerate capture sources via pactl.

Voice-call conditioning (echo cancellation, noise suppression, gain
control) is provided by PipeWire's echo-cancel module; when it is
requested and no explicit device was chosen, the echo-cancelled source is
preferred over the default mic.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable

import numpy as np

from audio_codec import (
    BYTES_PER_SAMPLE, INPUT_SAMPLE_RATE, AudioChunk, float_to_pcm16,
    StreamResampler, pcm_to_float,
)
from errors import DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)

CHANNELS = 1
FRAME_SIZE = 4096            # samples per outbound frame
READ_SIZE = 4096             # bytes per pasimple read (~128ms at 16kHz)
DEFAULT_AEC_SOURCE = "echo-cancel-source"
APP_NAME = "practice-call"

# pasimple surfaces PulseAudio error strings; these mean access was refused.
_PERMISSION_MARKERS = ("access denied", "not authorized", "permission")


@dataclass(frozen=True)
class CaptureConstraints:
    """Conditioning requested for the capture device."""
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    @property
    def wants_conditioning(self) -> bool:
        return self.echo_cancellation or self.noise_suppression or self.auto_gain_control


@dataclass(frozen=True)
class InputDevice:
    """A capture source as reported by pactl."""
    id: str
    index: int
    driver: str = ""
    sample_spec: str = ""
    state: str = ""


def list_input_devices() -> list[InputDevice] | None:
    """Return capture sources, or None if pactl is not available.

    Monitor sources (loopbacks of outputs) are not microphones and are
    skipped.
    """
    try:
        result = subprocess.run(
            ['pactl', 'list', 'short', 'sources'],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Cannot enumerate input devices: %s", e)
        return None
    if result.returncode != 0:
        logger.warning("pactl failed: %s", result.stderr.strip())
        return None
    return parse_pactl_sources(result.stdout)


def parse_pactl_sources(output: str) -> list[InputDevice]:
    devices = []
    for line in output.splitlines():
        parts = line.split('\t')
        if len(parts) < 2:
            continue
        name = parts[1]
        if name.endswith('.monitor'):
            continue
        try:
            index = int(parts[0])
        except ValueError:
            continue
        devices.append(InputDevice(
            id=name,
            index=index,
            driver=parts[2] if len(parts) > 2 else "",
            sample_spec=parts[3] if len(parts) > 3 else "",
            state=parts[4] if len(parts) > 4 else "",
        ))
    return devices


def resolve_device(device_id: str | None, constraints: CaptureConstraints,
                   aec_source: str | None = DEFAULT_AEC_SOURCE,
                   devices: list[InputDevice] | None = None) -> str | None:
    """Pick the source name to open (None = PulseAudio default).

    Raises:
        DeviceUnavailable: if ``device_id`` is not among the known sources.
    """
    known = {d.id for d in devices} if devices is not None else None
    if device_id:
        if known is not None and device_id not in known:
            raise DeviceUnavailable(f"Input device '{device_id}' no longer exists")
        return device_id
    if constraints.wants_conditioning and aec_source:
        if known is not None and aec_source in known:
            logger.info("Using echo-cancelled source '%s'", aec_source)
            return aec_source
        logger.info("Echo-cancelled source '%s' not available, using default mic",
                    aec_source)
    return None


def _classify_open_error(device_name: str | None, error: Exception) -> Exception:
    message = str(error)
    if any(marker in message.lower() for marker in _PERMISSION_MARKERS):
        return PermissionDenied()
    where = f"'{device_name}'" if device_name else "default input"
    return DeviceUnavailable(f"Cannot open {where}: {message}")


class MicrophoneStream:
    """A live capture device shared by the PCM pipeline and the recorder.

    Subscribers are called on the capture thread with each raw PCM16 chunk;
    they must not block and must not stop the stream.
    """

    def __init__(self, device_name: str | None = None, sample_rate: int = INPUT_SAMPLE_RATE,
                 channels: int = CHANNELS, read_size: int = READ_SIZE):
        self.device_name = device_name
        self.sample_rate = sample_rate
        self.channels = channels
        self.read_size = read_size
        self._pa = None
        self._thread = None
        self._stop_event = threading.Event()
        self._subscribers: list[Callable[[bytes], None]] = []
        self._lock = threading.Lock()
        self.chunks_read = 0

    @property
    def active(self) -> bool:
        return self._pa is not None and not self._stop_event.is_set()

    def open(self):
        """Open the device and start the capture thread (blocking).

        Raises:
            PermissionDenied: the source refused access.
            DeviceUnavailable: the source cannot be opened.
        """
        import pasimple

        try:
            self._pa = pasimple.PaSimple(
                pasimple.PA_STREAM_RECORD,
                pasimple.PA_SAMPLE_S16LE,
                self.channels, self.sample_rate,
                app_name=APP_NAME,
                stream_name='call-input',
                device_name=self.device_name,
            )
        except Exception as e:
            raise _classify_open_error(self.device_name, e) from e

        self._thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._thread.start()
        logger.info("Audio capture started (%s, %d Hz)",
                    self.device_name or "default", self.sample_rate)

    def subscribe(self, callback: Callable[[bytes], None]):
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[bytes], None]):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def stop(self, join_timeout: float = 1.0):
        """Stop the tracks: end the capture thread and release the device."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        with self._lock:
            self._subscribers.clear()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=join_timeout)
        self._thread = None
        self._pa = None
        logger.info("Audio capture stopped (%d chunks)", self.chunks_read)

    def _capture_loop(self):
        pa = self._pa
        try:
            with pa:
                while not self._stop_event.is_set():
                    data = pa.read(self.read_size)
                    if not data:
                        continue
                    self.chunks_read += 1
                    self._dispatch(data)
        except Exception as e:
            if not self._stop_event.is_set():
                logger.error("Capture error: %s", e)

    def _dispatch(self, data: bytes):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(data)
            except Exception as e:
                logger.error("Capture subscriber error: %s", e)


class CaptureProcessor:
    """Re-frames raw mic chunks into fixed-size frames at the context rate."""

    def __init__(self, context: "InputAudioContext", source_rate: int,
                 source_channels: int, frame_size: int,
                 on_frame: Callable[[AudioChunk], None]):
        self.context = context
        self.source_rate = source_rate
        self.source_channels = source_channels
        self.frame_size = frame_size
        self.on_frame = on_frame
        self.frames_emitted = 0
        self._stream = None
        self._pending = np.zeros(0, dtype=np.float32)
        self._carry = b""
        self._resampler = StreamResampler(source_rate, context.sample_rate)
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._stream is not None

    def connect(self, stream: MicrophoneStream):
        self._stream = stream
        stream.subscribe(self.process)

    def disconnect(self):
        if self._stream is not None:
            self._stream.unsubscribe(self.process)
            self._stream = None
        with self._lock:
            self._pending = np.zeros(0, dtype=np.float32)
            self._carry = b""
            self._resampler.reset()

    def process(self, data: bytes):
        """Consume one raw chunk; emit every complete frame it finishes."""
        if self._stream is None:
            return
        block = BYTES_PER_SAMPLE * self.source_channels
        frames = []
        with self._lock:
            data = self._carry + data
            usable = len(data) - len(data) % block
            self._carry = data[usable:]
            if usable:
                samples = pcm_to_float(data[:usable], self.source_rate,
                                       self.source_channels).mono()
                samples = self._resampler.process(samples)
                self._pending = np.concatenate([self._pending, samples])
            while len(self._pending) >= self.frame_size:
                frames.append(self._pending[:self.frame_size])
                self._pending = self._pending[self.frame_size:]
        for frame in frames:
            self.frames_emitted += 1
            self.on_frame(AudioChunk(float_to_pcm16(frame), self.context.sample_rate))


class InputAudioContext:
    """Capture-side audio context fixed at the model's input rate."""

    def __init__(self, sample_rate: int = INPUT_SAMPLE_RATE):
        self.sample_rate = sample_rate
        self.state = "running"
        self._processors: list[CaptureProcessor] = []

    def create_processor(self, stream: MicrophoneStream, on_frame: Callable[[AudioChunk], None],
                         frame_size: int = FRAME_SIZE) -> CaptureProcessor:
        if self.state == "closed":
            raise RuntimeError("InputAudioContext is closed")
        processor = CaptureProcessor(self, stream.sample_rate, stream.channels,
                                     frame_size, on_frame)
        self._processors.append(processor)
        return processor

    def close(self):
        if self.state == "closed":
            return
        self.state = "closed"
        for processor in self._processors:
            processor.disconnect()
        self._processors.clear()
