"""Gemini Live API adapter for the remote speech session.

Opens a BidiGenerateContent websocket, sends the setup message with the
persona prompt, voice and transcription settings, and translates server
messages into SessionEvent objects:

  setupComplete                         -> OPEN
  serverContent.outputTranscription     -> TRANSCRIPTION(ai)
  serverContent.inputTranscription      -> TRANSCRIPTION(user)
  serverContent.turnComplete            -> TURN_COMPLETE
  serverContent.modelTurn.parts[].inlineData -> AUDIO
  normal close / abnormal close         -> CLOSED / ERROR
"""

import asyncio
import json
import logging

import websockets

from config import get_api_key
from errors import ConfigurationError, RemoteSessionError
from session_events import (
    EventCallback, LiveConnectConfig, RealtimeProvider, RemoteSession, SessionEvent,
)
from transcript import AI, USER

logger = logging.getLogger(__name__)

LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
DEFAULT_MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"


def build_setup_message(config: LiveConnectConfig, model: str) -> dict:
    """Build the first client message of a Live session."""
    model = config.model or model
    if not model.startswith("models/"):
        model = f"models/{model}"
    setup = {
        "model": model,
        "generationConfig": {
            "responseModalities": list(config.response_modalities),
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": config.voice_name}}
            },
        },
        "systemInstruction": {"parts": [{"text": config.system_instruction}]},
    }
    if config.input_transcription:
        setup["inputAudioTranscription"] = {}
    if config.output_transcription:
        setup["outputAudioTranscription"] = {}
    return {"setup": setup}


def parse_server_message(data: dict) -> list[SessionEvent]:
    """Translate one decoded server message into session events."""
    events = []

    if "setupComplete" in data:
        events.append(SessionEvent.open())

    content = data.get("serverContent")
    if content:
        output_tr = content.get("outputTranscription") or {}
        if output_tr.get("text"):
            events.append(SessionEvent.transcription(AI, output_tr["text"]))

        input_tr = content.get("inputTranscription") or {}
        if input_tr.get("text"):
            events.append(SessionEvent.transcription(USER, input_tr["text"]))

        if content.get("turnComplete"):
            events.append(SessionEvent.turn_complete())

        model_turn = content.get("modelTurn") or {}
        for part in model_turn.get("parts") or []:
            inline = part.get("inlineData") or {}
            if inline.get("data"):
                events.append(SessionEvent.audio(inline["data"], inline.get("mimeType")))

    if "goAway" in data:
        logger.warning("Gemini Live: server going away (time left %s)",
                       data["goAway"].get("timeLeft"))

    if "error" in data:
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        events.append(SessionEvent.error(message or "Unknown server error"))

    return events


class GeminiLiveSession(RemoteSession):
    """An open Live websocket. All methods run on the event loop thread."""

    def __init__(self, ws, on_event: EventCallback):
        self._ws = ws
        self._on_event = on_event
        self._closing = False
        self._receiver: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self.frames_sent = 0

    @property
    def closing(self) -> bool:
        return self._closing

    async def send_setup(self, message: dict):
        await self._ws.send(json.dumps(message))

    def start(self):
        self._receiver = asyncio.ensure_future(self._receive_loop())

    def send_audio(self, data: str, mime_type: str) -> None:
        if self._closing:
            return
        message = json.dumps({
            "realtimeInput": {"audio": {"data": data, "mimeType": mime_type}}
        })
        task = asyncio.ensure_future(self._send(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self.frames_sent += 1
        if self.frames_sent % 100 == 0:
            logger.debug("Gemini Live: sent %d audio frames", self.frames_sent)

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        task = asyncio.ensure_future(self._close())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, message: str):
        try:
            await self._ws.send(message)
        except websockets.exceptions.ConnectionClosed:
            # The receive loop reports the close; a lost frame is not an error.
            logger.debug("Gemini Live: dropped frame on closed connection")

    async def _close(self):
        try:
            await self._ws.close()
        except Exception as e:
            logger.warning("Gemini Live: error while closing: %s", e)
        logger.info("Gemini Live: disconnected (%d frames sent)", self.frames_sent)

    def _emit(self, event: SessionEvent):
        try:
            self._on_event(event)
        except Exception as e:
            logger.exception("Gemini Live: event handler error on %s: %s", event.type, e)

    async def _receive_loop(self):
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Gemini Live: ignoring non-JSON message")
                    continue
                for event in parse_server_message(data):
                    self._emit(event)
        except websockets.exceptions.ConnectionClosedError as e:
            if self._closing:
                self._emit(SessionEvent.closed())
            else:
                reason = e.rcvd.reason if e.rcvd and e.rcvd.reason else str(e)
                logger.error("Gemini Live: connection lost: %s", reason)
                self._emit(SessionEvent.error(reason))
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Gemini Live: receive error: %s", e)
            self._emit(SessionEvent.error(str(e)))
            return
        logger.info("Gemini Live: connection closed")
        self._emit(SessionEvent.closed())


class GeminiLiveProvider(RealtimeProvider):
    """Opens Gemini Live sessions.

    Args:
        api_key: Gemini API key (None = look it up via config.get_api_key)
        model: Live model name
        url: websocket endpoint
    """

    def __init__(self, api_key: str | None = None, model: str = DEFAULT_MODEL,
                 url: str = LIVE_URL):
        self.api_key = api_key if api_key is not None else get_api_key()
        self.model = model
        self.url = url

    def validate(self) -> None:
        if not self.api_key:
            logger.error("Gemini API key is missing. Set GEMINI_API_KEY or "
                         "write the key to ~/.config/gemini/api_key.")
            raise ConfigurationError()

    async def connect(self, config: LiveConnectConfig, on_event: EventCallback) -> GeminiLiveSession:
        self.validate()
        try:
            ws = await websockets.connect(
                self.url,
                additional_headers={"x-goog-api-key": self.api_key},
                ping_interval=20,
                max_size=None,
            )
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RemoteSessionError(f"Could not connect to Gemini Live: {e}") from e

        session = GeminiLiveSession(ws, on_event)
        try:
            await session.send_setup(build_setup_message(config, self.model))
        except websockets.exceptions.ConnectionClosed as e:
            await ws.close()
            raise RemoteSessionError(f"Gemini Live closed during setup: {e}") from e
        session.start()
        logger.info("Gemini Live: connected (%s)", config.model or self.model)
        return session
