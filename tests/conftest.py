"""
Shared fixtures: an in-process fake upstream backend and a fresh store.
"""

import pytest

from moodrelay.backends.base import BaseBackend
from moodrelay.relay import Relay
from moodrelay.storage.conversation_store import ConversationStore


class FakeBackend(BaseBackend):
    """
    Scripted upstream. `complete` returns `reply`; `stream` yields `deltas`
    and then raises `error` if one is set.
    """

    def __init__(self, reply="", deltas=None, error=None, configured=True):
        super().__init__("fake", "http://fake", timeout=5, model="fake-chat")
        self.reply = reply
        self.deltas = list(deltas or [])
        self.error = error
        self._configured = configured
        self.calls: list[dict] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def complete(self, messages, temperature, max_tokens):
        self.calls.append({"mode": "complete", "messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.error:
            raise self.error
        return self.reply

    async def stream(self, messages, temperature, max_tokens):
        self.calls.append({"mode": "stream", "messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        for delta in self.deltas:
            yield delta
        if self.error:
            raise self.error

    async def health_check(self):
        return True


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def make_relay(store):
    def _make(backend=None, **kwargs):
        return Relay(store=store, backend=backend or FakeBackend(reply="ok"), **kwargs)
    return _make
