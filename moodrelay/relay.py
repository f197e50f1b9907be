"""
Relay: the core of moodrelay.

Takes a user message and its mood, builds the upstream request (one
synthesized system prompt + recent history), calls the backend and commits
the finished exchange to the conversation store.

Every turn walks the same state machine:

    RECEIVED → VALIDATING → DISPATCHED_UPSTREAM → STREAMING → COMPLETED
                                                            ↘ FAILED

Commit rules:
  - the assistant reply is appended in full after the upstream finished, or
    not at all
  - the user message is appended together with the reply, so a failed turn
    leaves the store untouched
  - SSE and polling turns are split in two requests: `submit()` parks the
    user message as the conversation's pending turn, `stream_reply()` takes
    it and answers it

Turns on one conversation id are serialized through the store's per-id lock.
Transports (JSON, SSE, WebSocket, polling) only ever see RelayEvents.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator
from uuid import uuid4

from moodrelay.backends.base import BaseBackend
from moodrelay.errors import ConfigurationError, RelayError, ValidationError
from moodrelay.moods import DEFAULT_PERSONA, normalize_mood, system_prompt, temperature_for
from moodrelay.storage.conversation_store import ConversationStore
from moodrelay.storage.models import Conversation, Message
from moodrelay.wiretap import WireLog

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    DISPATCHED_UPSTREAM = "dispatched_upstream"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class TurnRecord:
    """Timeline of one relay turn. Logged when the turn closes."""

    __slots__ = ("id", "conversation_id", "transport", "state", "start_time", "events")

    def __init__(self, conversation_id: str = "", transport: str = ""):
        self.id: str = uuid4().hex[:12]
        self.conversation_id = conversation_id
        self.transport = transport
        self.state = TurnState.RECEIVED
        self.start_time: float = time.monotonic()
        self.events: list[dict] = []
        self._record(TurnState.RECEIVED)

    def _record(self, state: TurnState, **details):
        event = {
            "state": state.value,
            "elapsed_ms": round((time.monotonic() - self.start_time) * 1000, 2),
        }
        if details:
            event["details"] = {k: v for k, v in details.items() if v is not None}
        self.events.append(event)

    def transition(self, state: TurnState, **details):
        if self.state in (TurnState.COMPLETED, TurnState.FAILED):
            return
        self.state = state
        self._record(state, **details)
        if state == TurnState.COMPLETED:
            logger.info(
                "Turn %s (%s, conv=%s) completed in %.0fms",
                self.id, self.transport, self.conversation_id, self.elapsed_ms,
            )
        elif state == TurnState.FAILED:
            logger.warning(
                "Turn %s (%s, conv=%s) failed after %.0fms: %s",
                self.id, self.transport, self.conversation_id, self.elapsed_ms, details.get("error"),
            )

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000

    @property
    def states(self) -> list[str]:
        return [e["state"] for e in self.events]


@dataclass
class RelayEvent:
    """What streaming transports relay: a delta, the final reply, or an error."""
    type: str              # "content" | "done" | "error"
    content: str = ""
    kind: str = ""         # error kind, only for type == "error"

    @classmethod
    def from_error(cls, exc: RelayError) -> "RelayEvent":
        return cls(type="error", content=exc.message, kind=exc.kind)


@dataclass
class PendingTurn:
    """A submitted user message waiting for its streamed reply."""
    content: str
    mood: str | None = None
    created_at: float = field(default_factory=time.monotonic)


class Relay:
    """Mood-aware relay between the transports and the upstream backend."""

    def __init__(
        self,
        store: ConversationStore,
        backend: BaseBackend,
        wire: WireLog | None = None,
        persona: str = DEFAULT_PERSONA,
        history_window: int = 3,
        max_tokens: int = 300,
        stream_max_tokens: int = 500,
        pending_ttl: float = 300,
    ):
        self.store = store
        self.backend = backend
        self.wire = wire
        self.persona = persona
        self.history_window = history_window
        self.max_tokens = max_tokens
        self.stream_max_tokens = stream_max_tokens
        self.pending_ttl = pending_ttl
        self._pending: dict[str, PendingTurn] = {}

    @classmethod
    def from_config(cls, cfg: dict, store: ConversationStore, backend: BaseBackend, wire: WireLog | None = None) -> "Relay":
        up = cfg.get("upstream", {})
        return cls(
            store=store,
            backend=backend,
            wire=wire,
            persona=cfg.get("coach", {}).get("persona", DEFAULT_PERSONA),
            history_window=int(up.get("history_window", 3)),
            max_tokens=int(up.get("max_tokens", 300)),
            stream_max_tokens=int(up.get("stream_max_tokens", 500)),
            pending_ttl=float(cfg.get("polling", {}).get("ttl_seconds", 300)),
        )

    # ------------------------------------------------------------------
    # Validation and request building
    # ------------------------------------------------------------------

    def validate(self, content, conversation_id):
        """Reject bad input (400) and a missing upstream secret (500) before any upstream call."""
        details = {}
        if not isinstance(content, str) or not content.strip():
            details["content"] = "Message content must not be empty"
        if conversation_id is None or not str(conversation_id).strip():
            details["conversationId"] = "Conversation id must not be empty"
        if details:
            raise ValidationError("Missing required parameters", details)
        self._check_configured()

    def _check_configured(self):
        if not self.backend.configured:
            raise ConfigurationError("Upstream API key is not configured")

    def _effective_mood(self, requested, conv: Conversation | None) -> str:
        if requested:
            return normalize_mood(requested)
        return conv.mood if conv else normalize_mood(None)

    def _upstream_messages(self, mood: str, history: list[Message]) -> list[dict]:
        window = history[-self.history_window:] if self.history_window > 0 else history
        return [{"role": "system", "content": system_prompt(mood, self.persona)}] + [
            m.to_openai_format() for m in window
        ]

    def _commit(self, conversation_id: str, mood: str, user_message: Message, reply: str):
        """Append the finished exchange: user message, then the reply."""
        self.store.get_or_create(conversation_id, mood, user_message.content)
        self.store.set_mood(conversation_id, mood)
        self.store.append_message(conversation_id, user_message)
        self.store.append_message(conversation_id, Message(role="assistant", content=reply))
        if self.wire:
            self.wire.log("outbound", "assistant", reply, mood=mood, conversation_id=conversation_id)

    def _tap_inbound(self, conversation_id: str, message: Message):
        if self.wire:
            self.wire.log("inbound", "user", message.content, mood=message.mood or "", conversation_id=conversation_id)

    # ------------------------------------------------------------------
    # Buffered transport
    # ------------------------------------------------------------------

    async def complete(self, conversation_id, content, mood=None) -> str:
        """validate → call upstream (no streaming) → commit → return the reply."""
        turn = TurnRecord(str(conversation_id or ""), "json")
        try:
            turn.transition(TurnState.VALIDATING)
            self.validate(content, conversation_id)
            conversation_id = str(conversation_id)

            async with self.store.lock(conversation_id):
                conv = self.store.get(conversation_id)
                eff_mood = self._effective_mood(mood, conv)
                user_message = Message(role="user", content=content, mood=eff_mood)
                history = (conv.messages if conv else []) + [user_message]
                self._tap_inbound(conversation_id, user_message)

                turn.transition(TurnState.DISPATCHED_UPSTREAM, mood=eff_mood)
                reply = await self.backend.complete(
                    self._upstream_messages(eff_mood, history),
                    temperature=temperature_for(eff_mood),
                    max_tokens=self.max_tokens,
                )
                self._commit(conversation_id, eff_mood, user_message, reply)
        except RelayError as e:
            turn.transition(TurnState.FAILED, error=e.kind)
            raise
        turn.transition(TurnState.COMPLETED, chars=len(reply))
        return reply

    # ------------------------------------------------------------------
    # Streaming transports
    # ------------------------------------------------------------------

    def _purge_pending(self):
        now = time.monotonic()
        expired = [
            cid for cid, pending in self._pending.items()
            if now - pending.created_at > self.pending_ttl
        ]
        for cid in expired:
            logger.debug("Dropping unanswered message for %s", cid)
            del self._pending[cid]

    def submit(self, conversation_id, content, mood=None) -> PendingTurn:
        """Park a user message for a later stream_reply(). A newer submit replaces an unanswered one."""
        self.validate(content, conversation_id)
        conversation_id = str(conversation_id)
        self._purge_pending()
        if conversation_id in self._pending:
            logger.warning("Replacing unanswered message for conversation %s", conversation_id)
        pending = self._pending[conversation_id] = PendingTurn(content=content, mood=mood)
        return pending

    async def stream_reply(self, conversation_id, transport: str = "sse") -> AsyncIterator[RelayEvent]:
        """Answer the conversation's pending user message as a stream of events."""
        conversation_id = str(conversation_id)
        turn = TurnRecord(conversation_id, transport)
        try:
            turn.transition(TurnState.VALIDATING)
            self._check_configured()
            self._purge_pending()
            pending = self._pending.pop(conversation_id, None)
            if pending is None:
                self.store.require(conversation_id)
                raise ValidationError("Conversation has no pending user message")
        except RelayError as e:
            turn.transition(TurnState.FAILED, error=e.kind)
            yield RelayEvent.from_error(e)
            return

        async for event in self._locked_stream(turn, conversation_id, pending.content, pending.mood):
            yield event

    async def stream_turn(self, conversation_id, content, mood=None, transport: str = "ws") -> AsyncIterator[RelayEvent]:
        """validate → stream the reply → commit user message and reply together."""
        turn = TurnRecord(str(conversation_id or ""), transport)
        try:
            turn.transition(TurnState.VALIDATING)
            self.validate(content, conversation_id)
        except RelayError as e:
            turn.transition(TurnState.FAILED, error=e.kind)
            yield RelayEvent.from_error(e)
            return
        async for event in self._locked_stream(turn, str(conversation_id), content, mood):
            yield event

    async def _locked_stream(self, turn: TurnRecord, conversation_id: str, content: str, mood) -> AsyncIterator[RelayEvent]:
        async with self.store.lock(conversation_id):
            conv = self.store.get(conversation_id)
            eff_mood = self._effective_mood(mood, conv)
            user_message = Message(role="user", content=content, mood=eff_mood)
            history = (conv.messages if conv else []) + [user_message]
            self._tap_inbound(conversation_id, user_message)
            async for event in self._relay_stream(turn, conversation_id, eff_mood, history, user_message):
                yield event

    async def _relay_stream(
        self,
        turn: TurnRecord,
        conversation_id: str,
        mood: str,
        history: list[Message],
        user_message: Message,
    ) -> AsyncIterator[RelayEvent]:
        """Forward deltas as they arrive; commit and emit one terminal event."""
        parts: list[str] = []
        turn.transition(TurnState.DISPATCHED_UPSTREAM, mood=mood)
        try:
            async for delta in self.backend.stream(
                self._upstream_messages(mood, history),
                temperature=temperature_for(mood),
                max_tokens=self.stream_max_tokens,
            ):
                if not parts:
                    turn.transition(TurnState.STREAMING)
                parts.append(delta)
                yield RelayEvent(type="content", content=delta)
        except RelayError as e:
            turn.transition(TurnState.FAILED, error=e.kind, deltas=len(parts))
            yield RelayEvent.from_error(e)
            return
        except Exception:
            logger.exception("Stream for conversation %s crashed", conversation_id)
            turn.transition(TurnState.FAILED, error="internal_error", deltas=len(parts))
            yield RelayEvent(type="error", content="Internal server error", kind="internal_error")
            return

        reply = "".join(parts)
        self._commit(conversation_id, mood, user_message, reply)
        turn.transition(TurnState.COMPLETED, chars=len(reply), deltas=len(parts))
        yield RelayEvent(type="done", content=reply)
