"""Error taxonomy for bsky-thread-miner."""

from typing import Optional


class ThreadMinerError(Exception):
    """Base exception for bsky-thread-miner."""


class ApiError(ThreadMinerError):
    """
    A terminal failure of a single API call.

    Instances are carried inside ``Result.error`` rather than raised, so
    callers branch on ``result.ok`` instead of catching exceptions.

    Attributes:
        message: Human-readable description (server message when available)
        status_code: HTTP status, or None for transport and parse failures
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RateLimitExceededError(ApiError):
    """Raised when HTTP 429 responses outlast the retry budget."""


class ThreadUnavailableError(ThreadMinerError):
    """Raised when a thread's root post is deleted, missing or blocked."""


class InvalidPostUrlError(ThreadMinerError, ValueError):
    """Raised when a string is neither a bsky.app post URL nor a post AT-URI."""
