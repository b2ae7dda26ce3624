"""Error taxonomy for the live call pipeline.

Setup and transport failures surface to callers as the session's terminal
error message; codec failures are raised by audio_codec and handled per
fragment by the session controller.
"""


class LiveConversationError(Exception):
    """Base class for errors surfaced by a live conversation."""

    # Message shown to the user when the error ends a session.
    user_message = "An unexpected error occurred while starting the call."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class PermissionDenied(LiveConversationError):
    """Microphone access was refused by the user or the OS."""
    user_message = (
        "Microphone permission denied. Please allow microphone access "
        "and try again."
    )


class DeviceUnavailable(LiveConversationError):
    """The requested input device does not exist or cannot be opened."""
    user_message = "The selected microphone is not available."


class ConfigurationError(LiveConversationError):
    """A required credential or setting for the remote service is missing."""
    user_message = (
        "API key is not configured. The simulation cannot start. "
        "Please check the logs for details."
    )


class RemoteSessionError(LiveConversationError):
    """Transport or protocol failure on the remote speech session."""
    user_message = "A live session error occurred."


class AudioCodecError(ValueError):
    """Base class for malformed audio payloads."""


class DecodeError(AudioCodecError):
    """Input is not valid base64."""


class FormatError(AudioCodecError):
    """PCM byte length does not match the sample layout."""


class FeedbackError(Exception):
    """Post-call feedback could not be produced."""

    def __init__(self, message: str = "Failed to generate feedback."):
        super().__init__(message)
