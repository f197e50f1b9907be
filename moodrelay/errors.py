"""
Error taxonomy for the relay.

Every failure the relay can report is one of these classes. Each carries a
stable `kind` string and the HTTP status it maps to, so transports never have
to guess a status from an error message.
"""

from __future__ import annotations

from uuid import uuid4


class RelayError(Exception):
    """Base class. `kind` and `status_code` are what clients see."""

    kind = "relay_error"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RelayError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(RelayError):
    kind = "not_found"
    status_code = 404


class ConfigurationError(RelayError):
    kind = "configuration_error"
    status_code = 500


class UpstreamTimeoutError(RelayError):
    kind = "upstream_timeout"
    status_code = 504


class UpstreamConnectionError(RelayError):
    """Network-class failure talking to the upstream API. The only retryable kind."""

    kind = "upstream_unavailable"
    status_code = 503


class UpstreamFormatError(RelayError):
    kind = "upstream_format_error"
    status_code = 502


# upstream status -> (kind, status we report)
_UPSTREAM_STATUS_MAP: dict[int, tuple[str, int]] = {
    401: ("upstream_auth_failed", 502),
    403: ("upstream_auth_failed", 502),
    429: ("rate_limited", 429),
}


class UpstreamHTTPError(RelayError):
    """Upstream answered with a non-success status."""

    def __init__(self, upstream_status: int, body: str = ""):
        self.upstream_status = upstream_status
        self.kind, self.status_code = map_upstream_status(upstream_status)
        details = {"upstreamStatus": upstream_status}
        if body:
            details["body"] = body[:200]
        super().__init__(f"Upstream API returned HTTP {upstream_status}", details)


def map_upstream_status(status: int) -> tuple[str, int]:
    if status in _UPSTREAM_STATUS_MAP:
        return _UPSTREAM_STATUS_MAP[status]
    if 500 <= status < 600:
        return "upstream_unavailable", 503
    return "upstream_error", 502


def new_request_id() -> str:
    return f"req_{uuid4().hex[:12]}"


def error_body(exc: BaseException, request_id: str | None = None) -> tuple[dict, int]:
    """Render any exception as (JSON body, HTTP status)."""
    request_id = request_id or new_request_id()
    if isinstance(exc, RelayError):
        body = {"error": exc.message, "kind": exc.kind, "requestId": request_id}
        if exc.details:
            body["details"] = exc.details
        return body, exc.status_code
    return {"error": "Internal server error", "kind": "internal_error", "requestId": request_id}, 500
