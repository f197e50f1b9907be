"""
Upstream chat-completion backends.
"""
from moodrelay.backends.base import BaseBackend
from moodrelay.backends.deepseek import DeepSeekBackend
from moodrelay.backends.retry_wrapper import RetryingBackend

__all__ = [
    "BaseBackend",
    "DeepSeekBackend",
    "RetryingBackend",
    "make_backend",
]


def make_backend(upstream_cfg: dict) -> BaseBackend:
    """Build the upstream backend from the `upstream:` config section."""
    backend = DeepSeekBackend(
        url=upstream_cfg.get("url", "https://api.deepseek.com/v1"),
        api_key=upstream_cfg.get("api_key", ""),
        model=upstream_cfg.get("model", "deepseek-chat"),
        timeout=float(upstream_cfg.get("timeout", 9)),
        presence_penalty=upstream_cfg.get("presence_penalty"),
        frequency_penalty=upstream_cfg.get("frequency_penalty"),
    )
    max_retries = int(upstream_cfg.get("max_retries", 0) or 0)
    if max_retries > 0:
        return RetryingBackend(
            backend,
            max_retries=max_retries,
            backoff=float(upstream_cfg.get("retry_backoff", 1.0)),
        )
    return backend
