"""Post-call feedback and the coaching persona prompt.

Feedback is generated once per finished call, after the live session has
been torn down, from the scenario and the finalized transcript. The same
Feedback object later seeds a coaching call.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path

from google import genai
from google.genai import types

from config import get_api_key
from errors import ConfigurationError, FeedbackError
from scenarios import Scenario
from transcript import TranscriptMessage, format_transcript

logger = logging.getLogger(__name__)

DEFAULT_FEEDBACK_MODEL = "gemini-2.5-flash"


@dataclass
class FeedbackItem:
    point: str
    details: list[str] = field(default_factory=list)


@dataclass
class Feedback:
    score: float
    strengths: list[str] = field(default_factory=list)
    improvements: list[FeedbackItem] = field(default_factory=list)
    coaching_tips: list[FeedbackItem] = field(default_factory=list)
    practice_questions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Wire form, matching the response schema's field names."""
        return {
            "score": self.score,
            "strengths": list(self.strengths),
            "improvements": [asdict(i) for i in self.improvements],
            "coachingTips": [asdict(i) for i in self.coaching_tips],
            "practiceQuestions": list(self.practice_questions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Feedback":
        try:
            return cls(
                score=float(data["score"]),
                strengths=[str(s) for s in data["strengths"]],
                improvements=[_item(i) for i in data["improvements"]],
                coaching_tips=[_item(i) for i in data["coachingTips"]],
                practice_questions=[str(q) for q in data["practiceQuestions"]],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed feedback: {e}") from e


def _item(data: dict) -> FeedbackItem:
    return FeedbackItem(point=str(data["point"]), details=[str(d) for d in data.get("details", [])])


def save_feedback(feedback: Feedback, path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(feedback.to_dict(), f, indent=2)


def load_feedback(path: Path) -> Feedback:
    with open(path) as f:
        return Feedback.from_dict(json.load(f))


_DETAILED_ITEM_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "point": {
            "type": "STRING",
            "description": "The main point, summary, or suggestion.",
        },
        "details": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Specific sub-points, examples from the transcript, or phrasing "
                           "suggestions. Can be empty if not applicable.",
        },
    },
    "required": ["point", "details"],
}

FEEDBACK_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "score": {"type": "NUMBER", "description": "A performance score from 1-10."},
        "strengths": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Observed strengths during the call. Be specific. "
                           "If none, return empty array.",
        },
        "improvements": {
            "type": "ARRAY",
            "items": _DETAILED_ITEM_SCHEMA,
            "description": "Areas for improvement with specific examples from the transcript.",
        },
        "coachingTips": {
            "type": "ARRAY",
            "items": _DETAILED_ITEM_SCHEMA,
            "description": "Tactical coaching tips and specific phrasing suggestions.",
        },
        "practiceQuestions": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "A few practice questions for the user to rehearse later.",
        },
    },
    "required": ["score", "strengths", "improvements", "coachingTips", "practiceQuestions"],
}


def build_feedback_prompt(scenario: Scenario, transcript: list[TranscriptMessage]) -> str:
    return f"""You are a world-class sales coach. Analyze the following sales call transcript and the initial scenario.
The user was playing the role of the 'Consultant'.
Your role is to become a sales coach and evaluator.
Provide a detailed, critical, and actionable evaluation. Do not give fake praise.
If no strengths were observed, the 'strengths' array should be empty.
For 'improvements' and 'coachingTips', provide a main point and use the 'details' array for specific examples or sub-points.

SCENARIO:
- Consultant Role: {scenario.consultant_role}
- Lead Source: {scenario.lead_source}
- Client Role & Persona: {scenario.client_role}, {scenario.client_persona}
- Industry: {scenario.industry}
- Objection Style: {scenario.objection_style}

TRANSCRIPT:
{format_transcript(transcript)}

Your response must be in JSON format matching the provided schema.
"""


def build_coaching_instruction(feedback: Feedback) -> str:
    """Persona prompt for a coaching call that discusses ``feedback``."""
    summary = json.dumps(feedback.to_dict(), indent=2)
    score = f"{feedback.score:g}"
    return f"""You are a world-class, encouraging, and insightful sales coach.
You are speaking with a user who has just completed a sales call simulation.
Their goal is to understand their performance and improve.

You have been provided with a JSON object containing their feedback from the call. Your task is to discuss this feedback with them.

FEEDBACK DATA:
{summary}

RULES:
1. Adopt a supportive and Socratic coaching style. Ask questions to help the user reflect on their performance.
2. Use the provided feedback data as the basis for the conversation. You can reference their score, strengths, and areas for improvement.
3. Do NOT just read the feedback back to them. Instead, use it to start a conversation. For example, "I see you scored an {score} out of 10. How do you feel about that score?" or "The feedback mentions your rapport building was a strength. What do you think you did well there?".
4. Be prepared to elaborate on any of the feedback points if the user asks.
5. Keep your responses conversational and not overly long.
6. If the user says "End session" or "Thanks, that's all", respond with a brief closing statement like "You're welcome! Keep up the great work." and then stop talking.
7. Do not reveal you are an AI. You are their personal sales coach.
"""


class FeedbackGenerator(ABC):
    @abstractmethod
    def generate(self, scenario: Scenario, transcript: list[TranscriptMessage]) -> Feedback:
        """Evaluate a finished call.

        Raises:
            FeedbackError: if no usable feedback could be produced.
        """


class GeminiFeedbackGenerator(FeedbackGenerator):
    """Structured-JSON feedback from a Gemini text model."""

    def __init__(self, api_key: str | None = None, model: str = DEFAULT_FEEDBACK_MODEL,
                 client=None):
        self.model = model
        if client is None:
            api_key = api_key if api_key is not None else get_api_key()
            if not api_key:
                raise ConfigurationError()
            client = genai.Client(api_key=api_key)
        self.client = client

    def generate(self, scenario: Scenario, transcript: list[TranscriptMessage]) -> Feedback:
        prompt = build_feedback_prompt(scenario, transcript)
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=FEEDBACK_SCHEMA,
                ),
            )
            feedback = Feedback.from_dict(json.loads((response.text or "").strip()))
        except Exception as e:
            logger.error("Error generating feedback from Gemini: %s", e)
            raise FeedbackError() from e
        logger.info("Feedback generated (score %s)", feedback.score)
        return feedback
