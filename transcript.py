"""Live transcript aggregation for a call.

Provides:
- TranscriptMessage: one displayable line (speaker, text, partial flag)
- TranscriptAggregator: merges streaming transcription fragments from both
  speakers into an ordered message log

Each speaker has at most one in-progress (partial) message. Fragments are
appended to that speaker's partial message until a turn-complete signal
finalizes every partial message at once. Both speakers can be mid-turn at
the same time, so the in-progress message is tracked per speaker instead of
by looking at the end of the log.
"""

from dataclasses import dataclass, replace
from threading import Lock

USER = "user"
AI = "ai"
SPEAKERS = (USER, AI)

# Labels used when a transcript is rendered for the feedback coach.
SPEAKER_LABELS = {USER: "Consultant", AI: "Client"}


@dataclass
class TranscriptMessage:
    """A single transcript line. Mutated in place only while partial."""
    speaker: str
    text: str
    is_partial: bool = True

    def to_dict(self) -> dict:
        return {"speaker": self.speaker, "text": self.text, "isPartial": self.is_partial}


class TranscriptAggregator:
    """Ordered transcript with one partial-message slot per speaker.

    Thread-safe: fragments arrive on the event loop while readers (UI,
    CLI) may take snapshots from other threads.
    """

    def __init__(self):
        self._messages: list[TranscriptMessage] = []
        self._partial: dict[str, TranscriptMessage | None] = {s: None for s in SPEAKERS}
        self._lock = Lock()

    def add_fragment(self, speaker: str, text: str) -> TranscriptMessage:
        """Append a fragment to the speaker's partial message, or start one."""
        if speaker not in SPEAKERS:
            raise ValueError(f"Unknown speaker: {speaker!r}")
        with self._lock:
            current = self._partial[speaker]
            if current is not None:
                current.text += text
                return replace(current)
            message = TranscriptMessage(speaker=speaker, text=text, is_partial=True)
            self._messages.append(message)
            self._partial[speaker] = message
            return replace(message)

    def finalize_all(self) -> list[TranscriptMessage]:
        """Turn-complete: finalize every partial message, both speakers.

        Returns the messages that were finalized, in log order.
        """
        with self._lock:
            finalized = [m for m in self._messages if m.is_partial]
            for message in finalized:
                message.is_partial = False
            for speaker in SPEAKERS:
                self._partial[speaker] = None
            return [replace(m) for m in finalized]

    def partial_for(self, speaker: str) -> TranscriptMessage | None:
        with self._lock:
            current = self._partial.get(speaker)
            return replace(current) if current else None

    def messages(self) -> list[TranscriptMessage]:
        """Snapshot of the full log (copies; safe to keep)."""
        with self._lock:
            return [replace(m) for m in self._messages]

    def final_messages(self) -> list[TranscriptMessage]:
        """Only finalized lines, as handed to feedback after a call."""
        with self._lock:
            return [replace(m) for m in self._messages if not m.is_partial]

    def clear(self):
        with self._lock:
            self._messages.clear()
            for speaker in SPEAKERS:
                self._partial[speaker] = None

    def __len__(self) -> int:
        return len(self._messages)


def format_transcript(messages: list[TranscriptMessage]) -> str:
    """Render messages as ``Label: text`` lines."""
    return "\n".join(
        f"{SPEAKER_LABELS.get(m.speaker, m.speaker)}: {m.text}" for m in messages
    )
