from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

INTENSITY_MIN = 0
INTENSITY_MAX = 3

INTENSITY_DESCRIPTIONS = {
    0: "mildly annoyed but still reasonable",
    1: "noticeably frustrated and impatient",
    2: "quite angry and demanding immediate action",
    3: "extremely upset and potentially hostile",
}

DEFAULT_SCENARIO_ID = os.getenv("SCENARIO_ID", "hotel-room-service")
DEFAULT_INTENSITY = int(os.getenv("PERSONA_INTENSITY", "0"))


def clamp_intensity(value: int) -> int:
    return max(INTENSITY_MIN, min(INTENSITY_MAX, int(value)))


@dataclass(frozen=True)
class PersonaContext:
    name: str
    role: str
    mood: str
    intensity: int = 0
    scenario: str = ""
    background: str = ""

    def with_intensity(self, intensity: int) -> "PersonaContext":
        return replace(self, intensity=clamp_intensity(intensity))

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class Persona:
    id: str
    name: str
    role: str
    description: str
    baseline_mood: str


@dataclass(frozen=True)
class Scenario:
    id: str
    title: str
    persona_id: str
    mood: str
    description: str


PERSONAS: Dict[str, Persona] = {
    p.id: p
    for p in (
        Persona(
            id="amira",
            name="Amira",
            role="Hotel Guest",
            description="Business traveler dealing with room service delays during an important conference.",
            baseline_mood="Angry",
        ),
        Persona(
            id="tom",
            name="Tom",
            role="Retail Customer",
            description="Frustrated parent trying to return defective toys without a receipt.",
            baseline_mood="Upset",
        ),
        Persona(
            id="nora",
            name="Nora",
            role="Pharmacy Client",
            description="Elderly patient whose regular medication is temporarily unavailable.",
            baseline_mood="Anxious",
        ),
    )
}

SCENARIOS: Dict[str, Scenario] = {
    s.id: s
    for s in (
        Scenario(
            id="hotel-room-service",
            title="De-escalating an Angry Guest",
            persona_id="amira",
            mood="Angry",
            description=(
                "Handle a frustrated hotel guest whose room service order has been significantly "
                "delayed during an important business conference."
            ),
        ),
        Scenario(
            id="retail-refund",
            title="Refund Request at Retail",
            persona_id="tom",
            mood="Upset",
            description=(
                "Navigate complex return policies while maintaining customer relationships "
                "and store policies."
            ),
        ),
        Scenario(
            id="pharmacy-out-of-stock",
            title="Out-of-Stock at Pharmacy",
            persona_id="nora",
            mood="Anxious",
            description=(
                "Handle medication availability issues with empathy while providing "
                "alternative solutions."
            ),
        ),
    )
}


def list_scenarios() -> List[Dict[str, str]]:
    out = []
    for s in SCENARIOS.values():
        p = PERSONAS[s.persona_id]
        out.append({"id": s.id, "title": s.title, "persona": p.name, "role": p.role, "mood": s.mood})
    return out


def persona_for_scenario(scenario_id: str, intensity: int = DEFAULT_INTENSITY) -> PersonaContext:
    """
    Build the persona context for a scenario: mood comes from the scenario,
    background from the persona's description.
    """
    scenario = SCENARIOS.get(scenario_id)
    if scenario is None:
        raise ValueError(
            f"Unknown scenario '{scenario_id}'. Known scenarios: {', '.join(sorted(SCENARIOS))}"
        )
    persona = PERSONAS[scenario.persona_id]
    return PersonaContext(
        name=persona.name,
        role=persona.role,
        mood=scenario.mood,
        intensity=clamp_intensity(intensity),
        scenario=scenario.description,
        background=f"You are {persona.description[0].lower()}{persona.description[1:]}",
    )


def build_system_prompt(context: PersonaContext) -> str:
    mood = context.mood.lower()
    level = INTENSITY_DESCRIPTIONS[clamp_intensity(context.intensity)]
    return (
        f"You are {context.name}, a {context.role} who is currently {mood} and {level}.\n\n"
        f"SCENARIO: {context.scenario}\n"
        f"BACKGROUND: {context.background}\n\n"
        "PERSONALITY TRAITS:\n"
        f"- You are {mood} about your situation\n"
        f"- Your emotional intensity is {clamp_intensity(context.intensity)}/{INTENSITY_MAX}\n"
        "- You want your problem resolved quickly\n"
        "- You may escalate if you feel unheard or dismissed\n"
        "- You can be calmed down with genuine empathy and concrete solutions\n\n"
        "RESPONSE GUIDELINES:\n"
        "- Keep responses under 50 words\n"
        f"- Stay in character as an upset {context.role}\n"
        "- Show your emotional state through your words\n"
        "- Respond naturally to what the trainee says\n"
        "- If they show empathy and offer solutions, gradually become more cooperative\n"
        "- If they dismiss you or seem unhelpful, become more frustrated\n"
        "- Use realistic, conversational language that sounds natural when spoken aloud\n"
        "- Do not use emojis, asterisks or stage directions\n"
        "- Don't break character or mention you're an AI\n\n"
        "Remember: you're a real person with a real problem, not a training simulation."
    )
