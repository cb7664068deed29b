"""Exceptions raised by the syncer.

Everything here is fatal for the current run except where noted by the
caller: rate limits and forbidden collections are handled inside the
fetcher and never surface as exceptions.
"""

from __future__ import annotations

from typing import Optional


class MirrorError(Exception):
    """Base exception for teams-mirror."""


class ProtocolViolationError(MirrorError):
    """The remote API broke the paging contract (cycle, both links)."""


class MalformedPayloadError(MirrorError):
    """A response body could not be decoded into records."""


class TransportError(MirrorError):
    """The HTTP request itself failed (connection reset, timeout, ...)."""


class UnexpectedResponseError(MirrorError):
    """The API answered with a status that retries cannot fix."""

    def __init__(self, status: int, url: str, body: str = "") -> None:
        self.status = status
        self.url = url
        self.body = body
        super().__init__(f"Unexpected HTTP response {status} for {url}: {body[:500]}")


class AuthenticationError(MirrorError):
    """Device authorization failed.

    ``error_code`` holds the identity platform error string
    (``authorization_declined``, ``expired_token``, ...) when one was sent.
    """

    def __init__(self, message: str, error_code: Optional[str] = None) -> None:
        self.error_code = error_code
        super().__init__(message)


class UsageError(MirrorError):
    """An accessor was called before the step that provides its value."""


class ConfigurationError(MirrorError):
    """A required setting or secret is missing or invalid."""


class ShutdownRequested(MirrorError):
    """A shutdown signal arrived while waiting on the remote side."""
