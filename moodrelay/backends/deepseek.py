"""
DeepSeek chat-completion backend.

Speaks the OpenAI-compatible /chat/completions API:
- buffered: one JSON body, content at choices[0].message.content
- streamed: `data: {...}` event lines carrying choices[0].delta.content,
  terminated by `data: [DONE]`

Every failure is raised as a typed RelayError so the relay can map it to a
transport status without looking at message text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import AsyncIterator

import httpx

from moodrelay.backends.base import BaseBackend
from moodrelay.errors import (
    ConfigurationError,
    UpstreamConnectionError,
    UpstreamFormatError,
    UpstreamHTTPError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def _delta_from_chunk(chunk: dict) -> str:
    """Content delta of one stream event ("" when the event carries none)."""
    choices = chunk.get("choices") or [{}]
    delta = (choices[0] or {}).get("delta") or {}
    return delta.get("content") or ""


class DeepSeekBackend(BaseBackend):
    """Upstream client for api.deepseek.com (or any OpenAI-compatible endpoint)."""

    def __init__(
        self,
        name: str = "deepseek",
        url: str = "https://api.deepseek.com/v1",
        api_key: str = "",
        model: str = "deepseek-chat",
        timeout: float = 9,
        presence_penalty: float | None = 0.6,
        frequency_penalty: float | None = 0.6,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name, url, timeout, model)
        self.api_key = api_key or ""
        self.presence_penalty = presence_penalty
        self.frequency_penalty = frequency_penalty
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key.strip())

    def _headers(self, stream: bool) -> dict:
        if not self.configured:
            raise ConfigurationError("Upstream API key is not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }

    def _body(self, messages: list[dict], temperature: float, max_tokens: int, stream: bool) -> dict:
        body = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if self.presence_penalty is not None:
            body["presence_penalty"] = self.presence_penalty
        if self.frequency_penalty is not None:
            body["frequency_penalty"] = self.frequency_penalty
        return body

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def complete(self, messages: list[dict], temperature: float, max_tokens: int) -> str:
        """Forward a non-streaming request. The whole call is bounded by self.timeout."""
        headers = self._headers(stream=False)
        body = self._body(messages, temperature, max_tokens, stream=False)
        t0 = time.monotonic()
        try:
            data = await asyncio.wait_for(self._post(body, headers), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' timed out after %.0fms", self.name, latency)
            raise UpstreamTimeoutError(f"Upstream API timed out after {self.timeout}s")
        except httpx.TransportError as e:
            logger.warning("Backend '%s' connection failed: %s", self.name, e)
            raise UpstreamConnectionError(f"Cannot reach upstream API: {e}")
        except httpx.DecodingError as e:
            logger.warning("Backend '%s' response could not be decoded: %s", self.name, e)
            raise UpstreamFormatError(f"Upstream response could not be decoded: {e}")
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' request failed: %s", self.name, e)
            raise UpstreamConnectionError(f"Upstream request failed: {e}")

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise UpstreamFormatError("Upstream response has no choices[0].message.content")
        if not isinstance(content, str):
            raise UpstreamFormatError("Upstream message content is not a string")

        logger.debug(
            "Backend '%s' answered in %.0fms (%d chars)",
            self.name, (time.monotonic() - t0) * 1000, len(content),
        )
        return content

    async def _post(self, body: dict, headers: dict) -> dict:
        async with self._client() as client:
            resp = await client.post(f"{self.url}/chat/completions", json=body, headers=headers)
            if resp.status_code >= 400:
                logger.warning("Backend '%s' returned HTTP %d", self.name, resp.status_code)
                raise UpstreamHTTPError(resp.status_code, resp.text)
            try:
                return resp.json()
            except ValueError:
                raise UpstreamFormatError("Upstream response is not valid JSON")

    async def stream(self, messages: list[dict], temperature: float, max_tokens: int) -> AsyncIterator[str]:
        """Forward a streaming request, yielding content deltas. The whole stream is bounded by self.timeout."""
        headers = self._headers(stream=True)
        body = self._body(messages, temperature, max_tokens, stream=True)
        deadline = time.monotonic() + self.timeout
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/chat/completions",
                    json=body,
                    headers=headers,
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        logger.warning("Backend '%s' stream returned HTTP %d", self.name, resp.status_code)
                        raise UpstreamHTTPError(resp.status_code, resp.text)

                    lines = resp.aiter_lines()
                    try:
                        while True:
                            remaining = deadline - time.monotonic()
                            if remaining <= 0:
                                raise asyncio.TimeoutError
                            try:
                                line = await asyncio.wait_for(lines.__anext__(), timeout=remaining)
                            except StopAsyncIteration:
                                return
                            line = line.strip()
                            if not line.startswith(DATA_PREFIX):
                                continue
                            payload = line[len(DATA_PREFIX):].strip()
                            if payload == DONE_SENTINEL:
                                return
                            try:
                                delta = _delta_from_chunk(json.loads(payload))
                            except (ValueError, AttributeError, TypeError) as e:
                                logger.warning("Skipping malformed stream fragment %r: %s", payload[:100], e)
                                continue
                            if delta:
                                yield delta
                    finally:
                        await lines.aclose()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Backend '%s' stream timed out after %ss", self.name, self.timeout)
            raise UpstreamTimeoutError(f"Upstream API timed out after {self.timeout}s")
        except httpx.TransportError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise UpstreamConnectionError(f"Cannot reach upstream API: {e}")
        except httpx.DecodingError as e:
            logger.warning("Backend '%s' stream could not be decoded: %s", self.name, e)
            raise UpstreamFormatError(f"Upstream stream could not be decoded: {e}")
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise UpstreamConnectionError(f"Upstream request failed: {e}")

    async def health_check(self) -> bool:
        """Check the endpoint is reachable and the key is accepted."""
        if not self.configured:
            return False
        try:
            async with httpx.AsyncClient(timeout=5, transport=self._transport) as client:
                resp = await client.get(f"{self.url}/models", headers=self._headers(stream=False))
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
