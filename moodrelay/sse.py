"""
Server-Sent Events framing for relay events.

    data: {"content": "..."}\n\n        one per delta
    data: [DONE]\n\n                     after a committed reply
    data: {"error": "...", "kind": "..."}\n\n

A failed stream ends with the error frame and no [DONE].
"""

from __future__ import annotations

import json
from typing import AsyncIterator

from moodrelay.relay import RelayEvent

DONE_FRAME = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def data_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def format_event(event: RelayEvent) -> str:
    if event.type == "content":
        return data_frame({"content": event.content})
    if event.type == "done":
        return DONE_FRAME
    return data_frame({"error": event.content, "kind": event.kind})


async def sse_frames(events: AsyncIterator[RelayEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield format_event(event)
