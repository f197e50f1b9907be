"""
Base backend abstraction.
The relay talks to the upstream chat API only through this interface, so the
retry wrapper and test doubles can stand in for the real client.
"""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class BaseBackend(abc.ABC):
    """
    Abstract base for upstream chat-completion backends.
    Failures are raised as moodrelay.errors.RelayError subclasses.
    """

    def __init__(self, name: str, url: str, timeout: float = 9, model: str = ""):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.model = model

    @property
    def configured(self) -> bool:
        """False when a required secret is missing. Checked at request time."""
        return True

    @abc.abstractmethod
    async def complete(self, messages: list[dict], temperature: float, max_tokens: int) -> str:
        """Non-streaming completion. Returns the first choice's content."""
        ...

    @abc.abstractmethod
    def stream(self, messages: list[dict], temperature: float, max_tokens: int) -> AsyncIterator[str]:
        """Streaming completion. Yields content deltas in arrival order."""
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if the upstream is reachable."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r} model={self.model!r}>"
