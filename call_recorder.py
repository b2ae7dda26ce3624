"""Local call recorder.

Taps the shared MicrophoneStream independently of the PCM pipeline and
keeps the raw chunks in memory. ``finalize()`` writes them out once as a
single WAV file and returns the same RecordedAsset on every later call.
"""

import logging
import tempfile
import threading
import time
import wave
from dataclasses import dataclass
from pathlib import Path

from audio_capture import MicrophoneStream
from audio_codec import BYTES_PER_SAMPLE

logger = logging.getLogger(__name__)

MIME_TYPE = "audio/wav"


@dataclass(frozen=True)
class RecordedAsset:
    """A finalized call recording."""
    path: Path
    mime_type: str
    duration: float
    size_bytes: int

    @property
    def url(self) -> str:
        return self.path.resolve().as_uri()


class CallRecorder:
    """Accumulates microphone audio for one call.

    Args:
        output_dir: where finalized recordings are written (temp dir if None)
        name: file stem for the recording
    """

    def __init__(self, output_dir: Path | None = None, name: str | None = None):
        self._output_dir = Path(output_dir).expanduser() if output_dir else None
        self._name = name or time.strftime("call_%Y%m%d_%H%M%S")
        self._chunks: list[bytes] = []
        self._lock = threading.Lock()
        self._stream: MicrophoneStream | None = None
        self._sample_rate = 0
        self._channels = 1
        self._started = False
        self._asset: RecordedAsset | None = None
        self._finalized = False

    @property
    def recording(self) -> bool:
        return self._stream is not None

    @property
    def chunk_count(self) -> int:
        with self._lock:
            return len(self._chunks)

    def start(self, stream: MicrophoneStream):
        """Begin tapping ``stream``. Starting again resets the recording."""
        self.stop()
        with self._lock:
            self._chunks = []
        self._asset = None
        self._finalized = False
        self._started = True
        self._sample_rate = stream.sample_rate
        self._channels = stream.channels
        self._stream = stream
        stream.subscribe(self._on_chunk)
        logger.info("Call recording started")

    def stop(self):
        """Stop tapping the stream; captured chunks are kept."""
        if self._stream is not None:
            self._stream.unsubscribe(self._on_chunk)
            self._stream = None

    def finalize(self) -> RecordedAsset | None:
        """Write the captured audio once and return its asset.

        Returns None if recording was never started. Safe to call after an
        abnormal session end.
        """
        self.stop()
        if self._finalized:
            return self._asset
        if not self._started:
            return None

        with self._lock:
            data = b"".join(self._chunks)

        output_dir = self._output_dir or Path(tempfile.gettempdir())
        path = output_dir / f"{self._name}.wav"
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            with wave.open(str(path), 'wb') as wf:
                wf.setnchannels(self._channels)
                wf.setsampwidth(BYTES_PER_SAMPLE)
                wf.setframerate(self._sample_rate)
                wf.writeframes(data)
        except (OSError, wave.Error):
            # Captured chunks stay in memory so a later finalize() can retry.
            if path.exists():
                path.unlink()
            raise

        with self._lock:
            self._chunks = []
        self._finalized = True
        frames = len(data) // (BYTES_PER_SAMPLE * self._channels)
        self._asset = RecordedAsset(
            path=path,
            mime_type=MIME_TYPE,
            duration=frames / self._sample_rate if self._sample_rate else 0.0,
            size_bytes=path.stat().st_size,
        )
        logger.info("Call recording saved to %s (%.1fs)", path, self._asset.duration)
        return self._asset

    def _on_chunk(self, data: bytes):
        if data:
            with self._lock:
                self._chunks.append(data)
