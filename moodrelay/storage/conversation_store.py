"""
In-memory conversation store, optionally mirrored to a JSON snapshot file.

The map is the only shared mutable state in the relay. Individual operations
are guarded by a threading lock; whole chat turns are serialized per
conversation id through `lock(conversation_id)`, so two requests for the same
conversation can never interleave their messages.

Snapshots are best-effort: the whole map is rewritten after every mutation
through a temp file and os.replace. A failed write is logged and otherwise
ignored; a failed load means starting empty.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from moodrelay.errors import NotFoundError
from moodrelay.moods import normalize_mood
from moodrelay.storage.models import Conversation, Message, make_title

logger = logging.getLogger(__name__)


class ConversationStore:
    """Conversation id -> Conversation, insertion ordered."""

    def __init__(self, snapshot_path: str | None = None):
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._conversations: dict[str, Conversation] = {}
        self._mutex = threading.Lock()
        self._turn_locks: dict[str, asyncio.Lock] = {}
        if self.snapshot_path:
            self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, conversation_id: str) -> Conversation | None:
        with self._mutex:
            return self._conversations.get(str(conversation_id))

    def require(self, conversation_id: str) -> Conversation:
        conv = self.get(conversation_id)
        if conv is None:
            raise NotFoundError(f"Conversation '{conversation_id}' does not exist")
        return conv

    def list(self) -> list[Conversation]:
        """Newest first. Equal timestamps: most recently inserted first."""
        with self._mutex:
            newest_inserted_first = list(reversed(self._conversations.values()))
        return sorted(newest_inserted_first, key=lambda c: c.created_at, reverse=True)

    def count(self) -> int:
        with self._mutex:
            return len(self._conversations)

    def stats(self) -> dict:
        with self._mutex:
            messages = [m for c in self._conversations.values() for m in c.messages]
            return {
                "conversations": len(self._conversations),
                "messages": len(messages),
                "user_messages": sum(1 for m in messages if m.role == "user"),
                "assistant_messages": sum(1 for m in messages if m.role == "assistant"),
            }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def get_or_create(self, conversation_id: str, initial_mood: str | None, first_message_text: str) -> Conversation:
        conversation_id = str(conversation_id)
        with self._mutex:
            conv = self._conversations.get(conversation_id)
            if conv is not None:
                return conv
            conv = Conversation(
                id=conversation_id,
                mood=normalize_mood(initial_mood),
                title=make_title(first_message_text),
            )
            self._conversations[conversation_id] = conv
        logger.debug("Created conversation %s (mood=%s)", conversation_id, conv.mood)
        self._save()
        return conv

    def append_message(self, conversation_id: str, message: Message):
        with self._mutex:
            conv = self._conversations.get(str(conversation_id))
            if conv is None:
                raise NotFoundError(f"Conversation '{conversation_id}' does not exist")
            conv.messages.append(message)
        self._save()

    def set_mood(self, conversation_id: str, mood: str):
        with self._mutex:
            conv = self._conversations.get(str(conversation_id))
            if conv is None:
                raise NotFoundError(f"Conversation '{conversation_id}' does not exist")
            conv.mood = normalize_mood(mood)
        self._save()

    def clear(self):
        with self._mutex:
            self._conversations.clear()
            self._turn_locks.clear()
        self._save()

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """Per-conversation lock held for the duration of one chat turn."""
        conversation_id = str(conversation_id)
        with self._mutex:
            lock = self._turn_locks.get(conversation_id)
            if lock is None:
                lock = self._turn_locks[conversation_id] = asyncio.Lock()
            return lock

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def _load(self):
        path = self.snapshot_path
        if not path.exists():
            logger.info("No conversation snapshot at %s, starting empty", path)
            return
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            loaded = {str(k): Conversation.from_dict(v) for k, v in data.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Failed to load conversation snapshot %s: %s (starting empty)", path, e)
            return
        self._conversations = loaded
        logger.info("Loaded %d conversations from %s", len(loaded), path)

    def _save(self):
        if not self.snapshot_path:
            return
        with self._mutex:
            data = {cid: conv.to_dict() for cid, conv in self._conversations.items()}
        path = self.snapshot_path
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".conversations-", suffix=".tmp", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            logger.warning("Failed to write conversation snapshot %s: %s", path, e)
        finally:
            if tmp_name and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
