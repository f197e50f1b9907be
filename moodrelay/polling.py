"""
Polling transport.

For clients that can hold neither an SSE stream nor a WebSocket open. A
background task drains the relay's event stream into a short-lived
per-conversation buffer; each poll takes whatever arrived since the last one.

Poll results:
    {"status": "waiting"}                       nothing new yet
    {"status": "content", "content": "..."}     text that arrived since last poll
    {"status": "done", "content": "<full>"}     reply committed, buffer removed
    {"status": "error", "error": ..., "kind": ...}  turn failed, buffer removed

Finished buffers nobody collects are dropped after ttl_seconds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator

from moodrelay.errors import NotFoundError, ValidationError
from moodrelay.relay import RelayEvent

logger = logging.getLogger(__name__)


class PollBuffer:
    """Produced-but-not-yet-delivered content for one conversation."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self.pending: list[str] = []
        self.full_content = ""
        self.done = False
        self.error: RelayEvent | None = None
        self.created_at = time.monotonic()
        self.finished_at: float | None = None
        self.task: asyncio.Task | None = None

    @property
    def finished(self) -> bool:
        return self.done or self.error is not None

    def feed(self, event: RelayEvent):
        if event.type == "content":
            self.pending.append(event.content)
        elif event.type == "done":
            self.full_content = event.content
            self.done = True
        else:
            self.error = event
        if self.finished and self.finished_at is None:
            self.finished_at = time.monotonic()

    def drain(self) -> str:
        text = "".join(self.pending)
        self.pending.clear()
        return text


class PollRegistry:
    """conversation id -> PollBuffer."""

    def __init__(self, ttl_seconds: float = 300):
        self.ttl_seconds = ttl_seconds
        self._buffers: dict[str, PollBuffer] = {}

    def __contains__(self, conversation_id: str) -> bool:
        return str(conversation_id) in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def _purge_expired(self):
        now = time.monotonic()
        expired = [
            cid for cid, buf in self._buffers.items()
            if buf.finished_at is not None and now - buf.finished_at > self.ttl_seconds
        ]
        for cid in expired:
            logger.debug("Dropping uncollected poll buffer for %s", cid)
            del self._buffers[cid]

    def ensure_idle(self, conversation_id: str):
        buf = self._buffers.get(str(conversation_id))
        if buf is not None and not buf.finished:
            raise ValidationError(f"A reply for conversation '{conversation_id}' is already in progress")

    def start(self, conversation_id: str, events: AsyncIterator[RelayEvent]) -> PollBuffer:
        """Begin draining `events` into a fresh buffer in the background."""
        conversation_id = str(conversation_id)
        self._purge_expired()
        self.ensure_idle(conversation_id)
        buf = PollBuffer(conversation_id)
        self._buffers[conversation_id] = buf
        buf.task = asyncio.create_task(self._pump(buf, events))
        return buf

    async def _pump(self, buf: PollBuffer, events: AsyncIterator[RelayEvent]):
        try:
            async for event in events:
                buf.feed(event)
        except Exception as e:
            logger.exception("Poll relay for %s crashed", buf.conversation_id)
            buf.feed(RelayEvent(type="error", content=str(e) or "Internal error", kind="internal_error"))
        if not buf.finished:
            buf.feed(RelayEvent(type="error", content="Relay ended without a reply", kind="internal_error"))

    def poll(self, conversation_id: str) -> dict:
        conversation_id = str(conversation_id)
        self._purge_expired()
        buf = self._buffers.get(conversation_id)
        if buf is None:
            raise NotFoundError(f"No reply in progress for conversation '{conversation_id}'")

        if buf.error is not None:
            del self._buffers[conversation_id]
            return {"status": "error", "error": buf.error.content, "kind": buf.error.kind}
        if buf.done:
            del self._buffers[conversation_id]
            return {"status": "done", "content": buf.full_content}
        if buf.pending:
            return {"status": "content", "content": buf.drain()}
        return {"status": "waiting"}

    async def wait_idle(self):
        """Wait for every running pump task. Used at shutdown and by tests."""
        tasks = [b.task for b in self._buffers.values() if b.task is not None and not b.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
