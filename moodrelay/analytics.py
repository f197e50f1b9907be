"""
Mood analytics.

Read-only statistics derived from the conversation store on every call.
Scores come from the mood table. Across the store there is one data point per
conversation; inside one conversation there is one per message, so the chart
can show how the mood moved over the turns.
"""

from __future__ import annotations

from typing import Iterable

from moodrelay.moods import normalize_mood, score_for
from moodrelay.storage.models import Conversation


def analyze_all(conversations: Iterable[Conversation]) -> dict:
    points = []
    for conv in conversations:
        mood = normalize_mood(conv.mood)
        points.append({
            "conversationId": conv.id,
            "timestamp": conv.created_at,
            "mood": mood,
            "score": score_for(mood),
        })
    return {"moodData": points, "moodStats": mood_stats(points)}


def analyze_conversation(conversation: Conversation) -> dict:
    points = []
    for msg in conversation.messages:
        mood = normalize_mood(msg.mood or conversation.mood)
        points.append({
            "timestamp": msg.timestamp,
            "role": msg.role,
            "mood": mood,
            "score": score_for(mood),
        })
    return {"moodData": points, "moodStats": mood_stats(points)}


def mood_stats(points: list[dict]) -> dict:
    """
    average       arithmetic mean of the scores, None when there are no points
    mostFrequent  highest count; ties go to the mood seen first
    moodDistribution  mood -> count, in first-seen order
    """
    distribution: dict[str, int] = {}
    for point in points:
        distribution[point["mood"]] = distribution.get(point["mood"], 0) + 1

    if not points:
        return {"average": None, "mostFrequent": None, "moodDistribution": {}}

    average = sum(p["score"] for p in points) / len(points)
    most_frequent = None
    best = 0
    for mood, count in distribution.items():
        if count > best:
            most_frequent, best = mood, count

    return {
        "average": round(average, 4),
        "mostFrequent": most_frequent,
        "moodDistribution": distribution,
    }
