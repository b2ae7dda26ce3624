"""Speaker side of the call: a single continuous output timeline.

OutputAudioContext renders scheduled sources through a PyAudio callback
stream, so ``current_time`` is the amount of audio actually handed to the
device. PlaybackScheduler lays inbound model audio end-to-end on that
timeline: each buffer starts at max(next_start_time, current_time), which
keeps playback gapless and in order however the fragments arrive.
"""

import logging
import threading
from typing import Callable

import numpy as np

from audio_codec import OUTPUT_SAMPLE_RATE, AudioBuffer, float_to_pcm16

logger = logging.getLogger(__name__)

FRAMES_PER_BUFFER = 1024


class ScheduledSource:
    """One buffer placed on the output timeline.

    ``on_ended`` callbacks fire once, either when the buffer has been fully
    rendered or when it is stopped.
    """

    def __init__(self, context: "OutputAudioContext", buffer: AudioBuffer):
        self._context = context
        self.buffer = buffer
        self.start_time: float | None = None
        self._start_frame = 0
        self._samples = buffer.mono()
        self._ended = False
        self._on_ended: list[Callable[["ScheduledSource"], None]] = []

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def end_time(self) -> float | None:
        if self.start_time is None:
            return None
        return self.start_time + self.buffer.duration

    def add_ended_listener(self, callback: Callable[["ScheduledSource"], None]):
        self._on_ended.append(callback)

    def start(self, when: float):
        if self.start_time is not None:
            raise RuntimeError("Source already started")
        self.start_time = when
        self._start_frame = int(round(when * self._context.sample_rate))
        self._context._add_source(self)

    def stop(self):
        if self._ended:
            return
        self._context._remove_source(self)
        self._finish()

    def _finish(self):
        if self._ended:
            return
        self._ended = True
        for callback in self._on_ended:
            try:
                callback(self)
            except Exception as e:
                logger.error("Playback ended callback error: %s", e)

    def _mix_into(self, out: np.ndarray, first_frame: int) -> bool:
        """Add this source's samples overlapping the render window.

        Returns True when the source has been rendered to its end.
        """
        rel_start = self._start_frame - first_frame
        src_from = max(0, -rel_start)
        dst_from = max(0, rel_start)
        count = min(len(out) - dst_from, len(self._samples) - src_from)
        if count > 0:
            out[dst_from:dst_from + count] += self._samples[src_from:src_from + count]
        return self._start_frame + len(self._samples) <= first_frame + len(out)


class OutputAudioContext:
    """Mono output timeline rendered by a PyAudio callback stream.

    Args:
        sample_rate: timeline rate (24 kHz for model audio)
        device_index: PyAudio output device index (None = default)
        open_stream: open the PyAudio stream immediately; when False the
            owner drives ``render()`` itself
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE, device_index=None,
                 open_stream: bool = True):
        self.sample_rate = sample_rate
        self.gain = 1.0
        self.state = "running"
        self._frames_rendered = 0
        self._sources: list[ScheduledSource] = []
        self._lock = threading.Lock()
        self._pa = None
        self._stream = None
        if open_stream:
            self._open_stream(device_index)

    def _open_stream(self, device_index):
        import pyaudio

        self._pa = pyaudio.PyAudio()
        try:
            self._stream = self._pa.open(
                format=pyaudio.paInt16,
                channels=1,
                rate=self.sample_rate,
                output=True,
                output_device_index=device_index,
                frames_per_buffer=FRAMES_PER_BUFFER,
                stream_callback=self._stream_callback,
            )
        except Exception:
            self._pa.terminate()
            self._pa = None
            raise
        logger.info("Playback started (%d Hz)", self.sample_rate)

    def _stream_callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        return self.render(frame_count), pyaudio.paContinue

    @property
    def current_time(self) -> float:
        return self._frames_rendered / self.sample_rate

    def create_source(self, buffer: AudioBuffer) -> ScheduledSource:
        return ScheduledSource(self, buffer)

    def resume(self):
        if self.state == "suspended":
            if self._stream is not None:
                self._stream.start_stream()
            self.state = "running"

    def suspend(self):
        if self.state == "running":
            if self._stream is not None:
                self._stream.stop_stream()
            self.state = "suspended"

    def render(self, frame_count: int) -> bytes:
        """Mix the next ``frame_count`` frames of the timeline to PCM16."""
        out = np.zeros(frame_count, dtype=np.float32)
        finished = []
        with self._lock:
            first = self._frames_rendered
            for source in self._sources:
                if source._mix_into(out, first):
                    finished.append(source)
            for source in finished:
                self._sources.remove(source)
            self._frames_rendered += frame_count
        if self.gain != 1.0:
            out *= self.gain
        # Ended listeners run outside the lock; they may touch scheduler state.
        for source in finished:
            source._finish()
        return float_to_pcm16(out)

    def close(self):
        """Mute and stop the device stream; pending sources are dropped."""
        if self.state == "closed":
            return
        self.state = "closed"
        self.gain = 0.0
        with self._lock:
            pending = list(self._sources)
            self._sources.clear()
        for source in pending:
            source._finish()
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing output stream: %s", e)
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
        logger.info("Playback stopped")

    def _add_source(self, source: ScheduledSource):
        if self.state == "closed":
            source._finish()
            return
        with self._lock:
            self._sources.append(source)

    def _remove_source(self, source: ScheduledSource):
        with self._lock:
            if source in self._sources:
                self._sources.remove(source)


class PlaybackScheduler:
    """Gapless in-order scheduling of inbound buffers on one context.

    ``next_start_time`` only moves forward; ``scheduled`` holds every source
    that has not finished yet so teardown can stop them all.
    """

    def __init__(self, context: OutputAudioContext):
        self.context = context
        self.next_start_time = 0.0
        self.scheduled: set[ScheduledSource] = set()
        self._lock = threading.Lock()

    def schedule(self, buffer: AudioBuffer) -> ScheduledSource:
        context = self.context
        if context.state == "suspended":
            context.resume()
        source = context.create_source(buffer)
        source.add_ended_listener(self._discard)
        with self._lock:
            start = max(self.next_start_time, context.current_time)
            self.next_start_time = start + buffer.duration
            self.scheduled.add(source)
        source.start(start)
        return source

    def stop_all(self) -> int:
        """Stop every still-scheduled source and clear the set."""
        with self._lock:
            pending = list(self.scheduled)
            self.scheduled.clear()
        for source in pending:
            source.stop()
        return len(pending)

    def _discard(self, source: ScheduledSource):
        with self._lock:
            self.scheduled.discard(source)
