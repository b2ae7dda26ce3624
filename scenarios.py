"""Call scenarios and the client-simulation persona prompt."""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path


@dataclass
class Scenario:
    """Who the user is practicing against, and how the client behaves."""
    consultant_role: str
    lead_source: str
    client_role: str
    client_persona: str
    industry: str
    objection_style: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Scenario":
        names = {f.name for f in fields(cls)}
        missing = names - set(data)
        if missing:
            raise ValueError(f"Scenario is missing fields: {', '.join(sorted(missing))}")
        return cls(**{k: data[k] for k in names})


PRESET_SCENARIOS = {
    "tech-startup-ceo": Scenario(
        consultant_role="Cloud Solutions Architect",
        lead_source="Referral",
        client_role="CEO",
        client_persona="Skeptical",
        industry="SaaS",
        objection_style="Budget",
    ),
    "manufacturing-manager": Scenario(
        consultant_role="Automation Specialist",
        lead_source="Inbound Lead",
        client_role="Operations Manager",
        client_persona="Friendly",
        industry="Manufacturing",
        objection_style="Trust",
    ),
    "marketing-director": Scenario(
        consultant_role="Digital Marketing Consultant",
        lead_source="Cold Email",
        client_role="Marketing Director",
        client_persona="Rushed",
        industry="eCommerce",
        objection_style="No Need",
    ),
    "hr-director": Scenario(
        consultant_role="HR Software Sales Rep",
        lead_source="YouTube DM",
        client_role="HR Director",
        client_persona="Talkative",
        industry="Corporate",
        objection_style="Already working with someone",
    ),
}


def load_scenario(path: Path) -> Scenario:
    with open(path) as f:
        return Scenario.from_dict(json.load(f))


def build_simulation_instruction(scenario: Scenario) -> str:
    """Persona prompt for the remote model playing the client."""
    return f"""You are taking on the role of a potential client in a sales call simulation.
- Your Role: {scenario.client_role}
- Your Persona: {scenario.client_persona}
- Your Industry: {scenario.industry}
- The consultant you are talking to is a {scenario.consultant_role}. They contacted you via {scenario.lead_source}.
- Your Objection Style: {scenario.objection_style}.

RULES:
1. Respond in a realistic, natural, and unscripted way.
2. Express confusion, resistance, objections, interest, and emotional cues based on context.
3. Strictly stay in character during the simulated call. Do not reveal you are an AI.
4. The user is responsible for leading the conversation. Never guide the call. Challenge the user with real objections, vague answers, or questions about ROI, pricing, results, etc.
5. Keep your responses relatively concise to allow for a back-and-forth conversation.
6. If the user says "End call", respond with a brief closing statement like "Okay, talk to you later." and then stop talking.
"""
