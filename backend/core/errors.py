"""Exception types for the media proxy.

Errors that map onto an HTTP response carry ``status_code`` and ``detail``;
the router turns them into ``HTTPException``. Errors from the caching side
path (``CacheWriteError`` and the prefetcher guards) never reach a client.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base exception for proxy failures."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def detail(self) -> str:
        return self.message


class ValidationError(ProxyError):
    """Raised for a disallowed or unparseable target URL."""

    status_code = 400


class InvalidRedirectError(ValidationError):
    """Raised when an upstream redirect points somewhere we won't follow."""


class ContentTypeError(ProxyError):
    """Raised when upstream serves something other than audio/video."""

    status_code = 403


class SizeLimitError(ProxyError):
    """Raised when a declared or observed size exceeds the configured cap."""

    status_code = 413


class RangeNotSatisfiableError(ProxyError):
    """Raised for a malformed or out-of-bounds Range header."""

    status_code = 416

    def __init__(self, message: str, total_size: int):
        super().__init__(message)
        self.total_size = total_size


class UpstreamError(ProxyError):
    """Raised for connection failures, timeouts, redirect loops and malformed responses."""

    status_code = 502


class CacheWriteError(ProxyError):
    """Raised when the disk leg of a cache write fails."""


class DownloadConcurrencyError(ProxyError):
    """Raised when the background download ceiling has been reached."""

    status_code = 503


class DownloadNotAllowedError(ProxyError):
    """Raised when a background download target fails URL validation."""

    status_code = 400
