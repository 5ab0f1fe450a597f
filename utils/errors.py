"""Upstream failure kinds used to pick a cache fallback path.

Fetchers should raise one of the ``UpstreamError`` subclasses. Plain
exceptions are still classified by looking for the usual rate-limit wording
in their message.
"""

from __future__ import annotations

from enum import Enum

RATE_LIMIT_MARKERS = ("rate limit", "API rate limit", "429", "too many requests")


class UpstreamErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


class UpstreamError(Exception):
    kind = UpstreamErrorKind.TRANSIENT

    def __init__(self, message: str, *, kind: UpstreamErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class RateLimitedError(UpstreamError):
    kind = UpstreamErrorKind.RATE_LIMITED


class TransientUpstreamError(UpstreamError):
    kind = UpstreamErrorKind.TRANSIENT


class FatalUpstreamError(UpstreamError):
    kind = UpstreamErrorKind.FATAL


def _has_429_response(exc: BaseException) -> bool:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None) == 429


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamError):
        return exc.kind is UpstreamErrorKind.RATE_LIMITED
    if _has_429_response(exc):
        return True
    message = str(exc).lower()
    return any(marker.lower() in message for marker in RATE_LIMIT_MARKERS)
