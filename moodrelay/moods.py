"""
Mood table.

Static mapping from mood name to score and system-prompt text. The score is
also the sampling temperature sent upstream, so a happy user gets a livelier
reply and an angry one a calmer, more predictable one.

Every lookup is total: unknown or missing moods fall back to `peaceful`.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_MOOD = "peaceful"

DEFAULT_PERSONA = "You are an empathetic AI life coach."


@dataclass(frozen=True)
class MoodProfile:
    name: str
    score: float
    prompt: str

    @property
    def temperature(self) -> float:
        return self.score


MOODS: dict[str, MoodProfile] = {
    "happy": MoodProfile(
        "happy", 1.0,
        "The user is in a good mood right now. Help them keep this positive state going.",
    ),
    "excited": MoodProfile(
        "excited", 0.8,
        "The user feels excited. That energy is great, help them turn it into momentum.",
    ),
    "peaceful": MoodProfile(
        "peaceful", 0.6,
        "The user feels calm. This is a good place to be, help them stay balanced.",
    ),
    "confused": MoodProfile(
        "confused", 0.4,
        "The user feels confused. That is normal, work through their thoughts with them step by step.",
    ),
    "anxious": MoodProfile(
        "anxious", 0.3,
        "The user feels anxious. Help them ease this feeling.",
    ),
    "sad": MoodProfile(
        "sad", 0.2,
        "The user feels sad. Listen to them and offer support.",
    ),
    "angry": MoodProfile(
        "angry", 0.1,
        "The user feels angry. Help them work through this emotion.",
    ),
    "tired": MoodProfile(
        "tired", 0.5,
        "The user feels tired. Help them find ways to recharge.",
    ),
}


def is_valid_mood(value) -> bool:
    return isinstance(value, str) and value.strip().lower() in MOODS


def normalize_mood(value) -> str:
    """Return a known mood name, falling back to the default for anything else."""
    if not isinstance(value, str):
        return DEFAULT_MOOD
    name = value.strip().lower()
    return name if name in MOODS else DEFAULT_MOOD


def get_profile(mood) -> MoodProfile:
    return MOODS[normalize_mood(mood)]


def score_for(mood) -> float:
    return get_profile(mood).score


def temperature_for(mood) -> float:
    return get_profile(mood).temperature


def prompt_for(mood) -> str:
    return get_profile(mood).prompt


def system_prompt(mood, persona: str = DEFAULT_PERSONA) -> str:
    """The synthesized system message sent ahead of the history. Never stored."""
    persona = (persona or "").strip()
    prompt = prompt_for(mood)
    return f"{persona} {prompt}" if persona else prompt
