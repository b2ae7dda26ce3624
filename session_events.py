"""Typed events and the provider contract for remote speech sessions.

A provider opens a duplex session and reports everything that happens on
it as SessionEvent objects delivered to a single callback on the event
loop. The controller never sees the provider's wire format.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable

from audio_codec import OUTPUT_SAMPLE_RATE


class EventType(Enum):
    OPEN = auto()            # Remote session ready to accept audio
    TRANSCRIPTION = auto()   # Text fragment for one speaker
    AUDIO = auto()           # Base64 PCM fragment from the model
    TURN_COMPLETE = auto()   # Model finished its turn
    CLOSED = auto()          # Remote closed the session
    ERROR = auto()           # Transport/protocol failure


@dataclass
class SessionEvent:
    type: EventType
    speaker: str | None = None
    text: str = ""
    data: str = ""
    mime_type: str = f"audio/pcm;rate={OUTPUT_SAMPLE_RATE}"
    cause: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def open(cls) -> "SessionEvent":
        return cls(EventType.OPEN)

    @classmethod
    def transcription(cls, speaker: str, text: str) -> "SessionEvent":
        return cls(EventType.TRANSCRIPTION, speaker=speaker, text=text)

    @classmethod
    def audio(cls, data: str, mime_type: str | None = None) -> "SessionEvent":
        event = cls(EventType.AUDIO, data=data)
        if mime_type:
            event.mime_type = mime_type
        return event

    @classmethod
    def turn_complete(cls) -> "SessionEvent":
        return cls(EventType.TURN_COMPLETE)

    @classmethod
    def closed(cls, reason: str | None = None) -> "SessionEvent":
        return cls(EventType.CLOSED, cause=reason)

    @classmethod
    def error(cls, cause: str) -> "SessionEvent":
        return cls(EventType.ERROR, cause=cause)


@dataclass
class LiveConnectConfig:
    """What the controller asks of the remote model."""
    system_instruction: str
    response_modalities: list[str] = field(default_factory=lambda: ["AUDIO"])
    input_transcription: bool = True
    output_transcription: bool = True
    voice_name: str = "Zephyr"
    model: str | None = None


EventCallback = Callable[[SessionEvent], None]


class RemoteSession(ABC):
    """Handle to an open duplex session."""

    @abstractmethod
    def send_audio(self, data: str, mime_type: str) -> None:
        """Queue one base64 audio frame for sending; never awaited."""

    @abstractmethod
    def close(self) -> None:
        """Request close; returns immediately."""


class RealtimeProvider(ABC):
    """Factory for remote speech sessions."""

    @abstractmethod
    def validate(self) -> None:
        """Raise ConfigurationError if credentials/settings are missing."""

    @abstractmethod
    async def connect(self, config: LiveConnectConfig, on_event: EventCallback) -> RemoteSession:
        """Open a session. OPEN arrives later through ``on_event``.

        Raises:
            RemoteSessionError: if the transport cannot be established.
        """
