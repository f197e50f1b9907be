"""
Retry wrapper for backends with linear backoff.

Only network-class failures (UpstreamConnectionError) are retried. These are
never retried:
- 4xx / 5xx answers (UpstreamHTTPError): the upstream did answer
- timeouts: the caller's time budget is already spent
- malformed payloads and missing configuration
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from moodrelay.backends.base import BaseBackend
from moodrelay.errors import UpstreamConnectionError

logger = logging.getLogger(__name__)


class RetryingBackend(BaseBackend):
    """
    Wraps any backend with bounded retry on transient connection errors.
    Exposes the same interface, so the relay never knows it is there.
    """

    def __init__(self, backend: BaseBackend, max_retries: int = 2, backoff: float = 1.0):
        super().__init__(backend.name, backend.url, backend.timeout, backend.model)
        self.backend = backend
        self.max_retries = max_retries
        self.backoff = backoff

    @property
    def configured(self) -> bool:
        return self.backend.configured

    def _backoff_seconds(self, attempt: int) -> float:
        """Linear: backoff, 2*backoff, 3*backoff, ..."""
        return self.backoff * attempt

    async def complete(self, messages: list[dict], temperature: float, max_tokens: int) -> str:
        for attempt in range(self.max_retries + 1):
            try:
                return await self.backend.complete(messages, temperature, max_tokens)
            except UpstreamConnectionError as e:
                if attempt >= self.max_retries:
                    logger.error("Backend '%s' exhausted retries: %s", self.name, e)
                    raise
                delay = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Backend '%s' transient error, retry in %.1fs (%d/%d): %s",
                    self.name, delay, attempt + 1, self.max_retries, e,
                )
                await asyncio.sleep(delay)

    async def stream(self, messages: list[dict], temperature: float, max_tokens: int) -> AsyncIterator[str]:
        """Stream with retry on connection errors, but never once a delta went out."""
        for attempt in range(self.max_retries + 1):
            started = False
            try:
                async for delta in self.backend.stream(messages, temperature, max_tokens):
                    started = True
                    yield delta
                return
            except UpstreamConnectionError as e:
                if started or attempt >= self.max_retries:
                    logger.error(
                        "Backend '%s' stream failed (%s): %s",
                        self.name, "mid-stream" if started else "retries exhausted", e,
                    )
                    raise
                delay = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Backend '%s' stream connection error, retry in %.1fs (%d/%d): %s",
                    self.name, delay, attempt + 1, self.max_retries, e,
                )
                await asyncio.sleep(delay)

    async def health_check(self) -> bool:
        """Delegate to wrapped backend."""
        return await self.backend.health_check()
