#!/usr/bin/env python3
r"""
Live practice-call session controller.

Connects the local microphone to a remote speech-to-speech model and back:
  Mic (pasimple) -> 16kHz frames -> remote session -> 24kHz audio -> PyAudio timeline
                                                  \-> transcription -> TranscriptAggregator

Each call is one CallSession driven through an explicit state machine:

  idle -> connecting -> connected -> closed
             \             \-> error
              \-> error

Capture frames only flow once the remote session reports OPEN; anything the
mic produces before that is never sent. Every terminal transition runs the
same teardown exactly once, whether or not setup got as far as the remote
connection.
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from audio_capture import (
    DEFAULT_AEC_SOURCE, CaptureConstraints, InputAudioContext, MicrophoneStream,
    list_input_devices, resolve_device,
)
from audio_codec import (
    INPUT_SAMPLE_RATE, OUTPUT_SAMPLE_RATE, AudioChunk, decode, encode_to_base64,
    pcm_to_float,
)
from audio_playback import OutputAudioContext, PlaybackScheduler
from call_log import CallEventLog, CallEventType
from call_recorder import CallRecorder, RecordedAsset
from errors import AudioCodecError, LiveConversationError, RemoteSessionError
from session_events import (
    EventType, LiveConnectConfig, RealtimeProvider, RemoteSession, SessionEvent,
)
from transcript import TranscriptAggregator, TranscriptMessage

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class CallResult:
    """What the caller gets back when a call ends."""
    transcript: list[TranscriptMessage]
    recording: RecordedAsset | None
    error: str | None = None


class CallSession:
    """One live duplex session. Created per start_session(), never reused."""

    def __init__(self, session_id: str, system_instruction: str, device_id: str | None):
        self.id = session_id
        self.system_instruction = system_instruction
        self.device_id = device_id
        self.state = ConnectionState.CONNECTING
        self.started_at = time.time()

        # Owned resources; each is released once by teardown and set to None.
        self.input_context: InputAudioContext | None = None
        self.output_context: OutputAudioContext | None = None
        self.scheduler: PlaybackScheduler | None = None
        self.mic: MicrophoneStream | None = None
        self.processor = None
        self.remote: RemoteSession | None = None
        self.recorder: CallRecorder | None = None
        self.log: CallEventLog | None = None

        self.disposed = False
        self.frames_sent = 0
        self.frames_dropped = 0
        self.fragments_dropped = 0
        self._next_start_time = 0.0

    @property
    def next_start_time(self) -> float:
        if self.scheduler is not None:
            return self.scheduler.next_start_time
        return self._next_start_time

    @property
    def scheduled(self) -> set:
        if self.scheduler is not None:
            return self.scheduler.scheduled
        return set()


class LiveConversation:
    """Controller for live voice calls against a remote speech model.

    One controller hosts at most one live CallSession at a time; any number
    of controllers can coexist. ``end_session()`` is safe from any thread
    and in any state.

    Args:
        system_instruction: persona prompt for the remote model
        provider: RealtimeProvider that opens the remote session
        recording_enabled: tap the mic into a CallRecorder for this call
        audio_device_id: capture source name (None = default / AEC source)
        voice_name: prebuilt voice of the remote model
        constraints: voice-call conditioning requested for the mic
        aec_source: echo-cancelled source preferred when conditioning is on
        mic_sample_rate: rate the mic is opened at (frames are resampled to 16kHz)
        recordings_dir: where finalized recordings go (temp dir if None)
        log_dir: parent directory for per-call JSONL logs (None = no log)
        on_state_change: callback(ConnectionState)
        on_transcript: callback(list[TranscriptMessage]) after every change
    """

    def __init__(self, system_instruction: str, provider: RealtimeProvider,
                 recording_enabled: bool = False, audio_device_id: str | None = None,
                 voice_name: str = "Zephyr", model: str | None = None,
                 constraints: CaptureConstraints | None = None,
                 aec_source: str | None = DEFAULT_AEC_SOURCE,
                 mic_sample_rate: int = INPUT_SAMPLE_RATE,
                 recordings_dir: Path | None = None, log_dir: Path | None = None,
                 on_state_change: Callable[[ConnectionState], None] | None = None,
                 on_transcript: Callable[[list[TranscriptMessage]], None] | None = None,
                 microphone_factory: Callable[..., MicrophoneStream] = MicrophoneStream,
                 input_context_factory: Callable[..., InputAudioContext] = InputAudioContext,
                 output_context_factory: Callable[..., OutputAudioContext] = OutputAudioContext,
                 device_lister: Callable[[], list] | None = list_input_devices):
        self.system_instruction = system_instruction
        self.provider = provider
        self.recording_enabled = recording_enabled
        self.audio_device_id = audio_device_id
        self.voice_name = voice_name
        self.model = model
        self.constraints = constraints or CaptureConstraints()
        self.aec_source = aec_source
        self.mic_sample_rate = mic_sample_rate
        self.recordings_dir = recordings_dir
        self.log_dir = Path(log_dir).expanduser() if log_dir else None
        self.on_state_change = on_state_change or (lambda s: None)
        self.on_transcript = on_transcript or (lambda t: None)

        self._microphone_factory = microphone_factory
        self._input_context_factory = input_context_factory
        self._output_context_factory = output_context_factory
        self._device_lister = device_lister

        self._state = ConnectionState.IDLE
        self._error: str | None = None
        self._session: CallSession | None = None
        self._aggregator = TranscriptAggregator()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self.teardown_count = 0

    # ── Public surface ─────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def session(self) -> CallSession | None:
        return self._session

    @property
    def transcript(self) -> list[TranscriptMessage]:
        return self._aggregator.messages()

    def final_transcript(self) -> list[TranscriptMessage]:
        return self._aggregator.final_messages()

    @property
    def media_stream(self) -> MicrophoneStream | None:
        session = self._session
        if session is None or session.disposed:
            return None
        return session.mic

    def status(self) -> dict:
        session = self._session
        return {
            'state': self._state.value,
            'error': self._error,
            'session_id': session.id if session else None,
            'frames_sent': session.frames_sent if session else 0,
            'frames_dropped': session.frames_dropped if session else 0,
            'fragments_dropped': session.fragments_dropped if session else 0,
            'scheduled_units': len(session.scheduled) if session else 0,
            'next_start_time': session.next_start_time if session else 0.0,
            'messages': len(self._aggregator),
        }

    async def start_session(self):
        """Open a new call. Failures end in the ERROR state, not an exception."""
        previous = self._session
        if previous is not None and not previous.disposed:
            logger.info("Live session: ending active session before starting a new one")
            self.end_session()

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._error = None
        self._aggregator = TranscriptAggregator()
        self._notify_transcript()

        session_id = f"{time.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"
        session = CallSession(session_id, self.system_instruction, self.audio_device_id)
        self._session = session
        self._open_log(session)
        self._set_state(session, ConnectionState.CONNECTING)

        try:
            self.provider.validate()

            session.input_context = self._input_context_factory(INPUT_SAMPLE_RATE)
            session.output_context = self._output_context_factory(OUTPUT_SAMPLE_RATE)
            session.scheduler = PlaybackScheduler(session.output_context)

            device_name = await loop.run_in_executor(None, self._resolve_device)
            mic = self._microphone_factory(device_name, self.mic_sample_rate)
            await loop.run_in_executor(None, mic.open)
            if session.disposed:
                mic.stop()
                return
            session.mic = mic

            if self.recording_enabled:
                recorder = CallRecorder(self.recordings_dir, name=session.id)
                recorder.start(mic)
                session.recorder = recorder

            config = LiveConnectConfig(
                system_instruction=self.system_instruction,
                voice_name=self.voice_name,
                model=self.model,
            )
            remote = await self.provider.connect(
                config, lambda event: self._handle_event(session, event)
            )
            if session.disposed:
                remote.close()
                return
            session.remote = remote
            logger.info("Live session %s: remote session requested", session.id)

        except LiveConversationError as e:
            self._fail(session, e)
        except Exception as e:
            logger.exception("Live session %s: failed to start", session.id)
            self._fail(session, LiveConversationError(f"An unexpected error occurred: {e}"))

    def end_session(self):
        """End the current call. Idempotent; a no-op when nothing is live."""
        session = self._session
        if session is None:
            return
        self._close(session, ConnectionState.CLOSED)

    def finalize_recording(self) -> RecordedAsset | None:
        """Finalize (once) and return this call's recording, or None."""
        session = self._session
        if session is None or session.recorder is None:
            return None
        asset = session.recorder.finalize()
        return asset

    def finish_call(self) -> CallResult:
        """Stop recording, end the session and hand back the call's output."""
        recording = self.finalize_recording()
        transcript = self.final_transcript()
        self.end_session()
        return CallResult(transcript=transcript, recording=recording, error=self._error)

    # ── State machine ──────────────────────────────────────────────

    def _set_state(self, session: CallSession, state: ConnectionState):
        session.state = state
        if session is not self._session:
            return
        self._state = state
        if session.log:
            session.log.emit(CallEventType.STATE, state=state.value)
        try:
            self.on_state_change(state)
        except Exception as e:
            logger.error("State callback error: %s", e)

    def _close(self, session: CallSession, state: ConnectionState):
        with self._lock:
            if session.disposed:
                return
            session.disposed = True
        logger.info("Live session %s: closing (%s)", session.id, state.value)
        if session.state is not ConnectionState.ERROR:
            self._set_state(session, state)
        self._teardown(session)

    def _fail(self, session: CallSession, error: LiveConversationError):
        with self._lock:
            if session.disposed:
                logger.info("Live session %s: ignoring error after close: %s", session.id, error)
                return
            session.disposed = True
        message = str(error)
        logger.error("Live session %s: %s", session.id, message)
        if session is self._session:
            self._error = message
        if session.log:
            session.log.emit(CallEventType.ERROR, kind=type(error).__name__, message=message)
        self._set_state(session, ConnectionState.ERROR)
        self._teardown(session)

    def _handle_event(self, session: CallSession, event: SessionEvent):
        """Route one remote event. Runs on the event loop thread."""
        if session.disposed or session is not self._session:
            return

        if event.type is EventType.OPEN:
            if session.state is ConnectionState.CONNECTING:
                self._set_state(session, ConnectionState.CONNECTED)
                self._start_capture(session)
            return

        if event.type is EventType.ERROR:
            cause = event.cause or "unknown error"
            self._fail(session, RemoteSessionError(f"A live session error occurred: {cause}"))
            return

        if event.type is EventType.CLOSED:
            self._close(session, ConnectionState.CLOSED)
            return

        if session.state is not ConnectionState.CONNECTED:
            logger.debug("Live session %s: dropping %s before open", session.id, event.type.name)
            return

        if event.type is EventType.TRANSCRIPTION:
            self._aggregator.add_fragment(event.speaker, event.text)
            self._notify_transcript()
        elif event.type is EventType.TURN_COMPLETE:
            finalized = self._aggregator.finalize_all()
            if session.log:
                for message in finalized:
                    session.log.emit(CallEventType.MESSAGE, speaker=message.speaker,
                                     text=message.text)
                session.log.emit(CallEventType.TURN_COMPLETE, finalized=len(finalized))
            self._notify_transcript()
        elif event.type is EventType.AUDIO:
            self._play_audio(session, event)

    def _notify_transcript(self):
        try:
            self.on_transcript(self._aggregator.messages())
        except Exception as e:
            logger.error("Transcript callback error: %s", e)

    # ── Audio in / out ─────────────────────────────────────────────

    def _start_capture(self, session: CallSession):
        if session.mic is None or session.input_context is None:
            return
        processor = session.input_context.create_processor(
            session.mic, lambda chunk: self._on_capture_frame(session, chunk)
        )
        processor.connect(session.mic)
        session.processor = processor
        logger.info("Live session %s: streaming microphone audio", session.id)

    def _on_capture_frame(self, session: CallSession, chunk: AudioChunk):
        """Capture-thread callback; hands the frame to the event loop."""
        if session.disposed or session.state is not ConnectionState.CONNECTED:
            session.frames_dropped += 1
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            session.frames_dropped += 1
            return
        try:
            loop.call_soon_threadsafe(self._send_frame, session, chunk)
        except RuntimeError:
            # Loop shut down between the check and the call.
            session.frames_dropped += 1

    def _send_frame(self, session: CallSession, chunk: AudioChunk):
        remote = session.remote
        if session.disposed or session.state is not ConnectionState.CONNECTED or remote is None:
            session.frames_dropped += 1
            return
        remote.send_audio(encode_to_base64(chunk.data), chunk.mime_type)
        session.frames_sent += 1
        if session.frames_sent % 200 == 0:
            logger.info("Live session %s: sent %d audio frames", session.id, session.frames_sent)

    def _play_audio(self, session: CallSession, event: SessionEvent):
        try:
            buffer = pcm_to_float(decode(event.data), OUTPUT_SAMPLE_RATE, 1)
        except AudioCodecError as e:
            session.fragments_dropped += 1
            logger.warning("Live session %s: dropping malformed audio fragment: %s", session.id, e)
            if session.log:
                session.log.emit(CallEventType.AUDIO_DROPPED, reason=str(e))
            return
        # Teardown may clear the scheduler between the check and the call.
        scheduler = session.scheduler
        if scheduler is None:
            return
        scheduler.schedule(buffer)

    # ── Setup helpers ──────────────────────────────────────────────

    def _resolve_device(self) -> str | None:
        devices = self._device_lister() if self._device_lister else None
        return resolve_device(self.audio_device_id, self.constraints, self.aec_source, devices)

    def _open_log(self, session: CallSession):
        if not self.log_dir:
            return
        log = CallEventLog(self.log_dir / session.id, session.id)
        try:
            log.open()
        except OSError as e:
            logger.warning("Live session %s: call log disabled: %s", session.id, e)
            return
        session.log = log
        log.emit(CallEventType.CALL_START, device=self.audio_device_id,
                 recording=self.recording_enabled, voice=self.voice_name)

    # ── Teardown ───────────────────────────────────────────────────

    def _teardown(self, session: CallSession):
        """Release everything the session owns. Called once per session."""
        self.teardown_count += 1

        if session.recorder is not None:
            try:
                asset = session.recorder.finalize()
                if asset and session.log:
                    session.log.emit(CallEventType.RECORDING_SAVED, path=str(asset.path),
                                     duration=round(asset.duration, 2))
            except OSError as e:
                logger.error("Live session %s: could not save recording: %s", session.id, e)

        if session.processor is not None:
            self._release("capture processor", session.processor.disconnect)
            session.processor = None

        if session.mic is not None:
            self._release("microphone", session.mic.stop)
            session.mic = None

        if session.scheduler is not None:
            stopped = session.scheduler.stop_all()
            if stopped:
                logger.info("Live session %s: stopped %d playback units", session.id, stopped)
            session._next_start_time = session.scheduler.next_start_time
            session.scheduler = None

        if session.input_context is not None:
            self._release("input context", session.input_context.close)
            session.input_context = None

        if session.output_context is not None:
            self._release("output context", session.output_context.close)
            session.output_context = None

        if session.remote is not None:
            self._close_remote(session.remote)
            session.remote = None

        if session.log:
            session.log.emit(CallEventType.CALL_END, state=session.state.value,
                             frames_sent=session.frames_sent,
                             duration=round(time.time() - session.started_at, 2))
            session.log.close()

        logger.info("Live session %s: torn down (%d frames sent)", session.id, session.frames_sent)

    @staticmethod
    def _release(name: str, release: Callable[[], None]):
        try:
            release()
        except Exception as e:
            logger.warning("Error releasing %s: %s", name, e)

    def _close_remote(self, remote: RemoteSession):
        """Fire-and-forget close, marshalled onto the loop if needed."""
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        try:
            if loop is not None and running is not loop and loop.is_running():
                loop.call_soon_threadsafe(remote.close)
            else:
                remote.close()
        except Exception as e:
            logger.warning("Error closing remote session: %s", e)
