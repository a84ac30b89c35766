"""
Async client for the Bluesky public AppView API.

This module wraps the read-only XRPC endpoints a thread crawl needs:
- app.bsky.feed.getPostThread: nested reply tree rooted at a post
- app.bsky.feed.getQuotes: cursor-paginated posts quoting a post
- com.atproto.identity.resolveHandle: handle -> DID

Every call returns a ``Result``. HTTP 429 responses are retried with a
backoff derived from the response headers; any other failure (non-2xx,
transport error, malformed JSON) comes back as ``Result.failure`` and is
never raised to the caller.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
import orjson

from .errors import ApiError, RateLimitExceededError
from .models import Post, QuotesPage, RateLimitInfo, Result
from .rate_limiter import RateLimiter, get_rate_limiter
from .telemetry import ResponseStats

logger = logging.getLogger(__name__)

BASE_URL = "https://public.api.bsky.app"

# Concurrency and timeout settings
MAX_CONCURRENT_REQUESTS = 8
REQUEST_TIMEOUT = 30.0

# Retry budget for HTTP 429 responses
DEFAULT_MAX_RETRIES = 3

USER_AGENT = "bsky-thread-miner/1.0"

# Latest rate-limit headers seen by any client in this process (last write wins)
_last_rate_limit_info: Optional[RateLimitInfo] = None


def get_last_rate_limit_info() -> Optional[RateLimitInfo]:
    """Return the most recent rate-limit snapshot, or None if none was seen."""
    return _last_rate_limit_info


def _parse_number(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
    """
    Parse ``ratelimit-*`` response headers into a RateLimitInfo.

    Returns None unless limit, remaining and reset are all present and
    numeric. ``ratelimit-policy`` is optional.
    """
    limit = _parse_number(headers.get("ratelimit-limit"))
    remaining = _parse_number(headers.get("ratelimit-remaining"))
    reset = _parse_number(headers.get("ratelimit-reset"))
    if limit is None or remaining is None or reset is None:
        return None
    return RateLimitInfo(
        limit=int(limit),
        remaining=int(remaining),
        reset=int(reset),
        policy=headers.get("ratelimit-policy") or "",
    )


def compute_backoff(
    attempt: int,
    headers: Mapping[str, str],
    now: Optional[float] = None,
) -> float:
    """
    Decide how long to wait before retrying a 429 response.

    Preference order:
        1. ``retry-after`` seconds, when positive
        2. ``ratelimit-reset`` (unix seconds) minus ``now``, clamped at 0
        3. Exponential backoff: 1, 2, 4, 8... seconds for attempt 0, 1, 2, 3...

    Args:
        attempt: Zero-based retry attempt
        headers: Response headers (case-insensitive mapping or lowercase dict)
        now: Current unix time; defaults to time.time()

    Returns:
        Seconds to wait

    Example:
        compute_backoff(2, {})                                     # 4.0
        compute_backoff(0, {"retry-after": "7"})                   # 7.0
        compute_backoff(0, {"ratelimit-reset": "1010"}, now=1000)  # 10.0
    """
    retry_after = _parse_number(headers.get("retry-after"))
    if retry_after is not None and retry_after > 0:
        return retry_after

    reset = _parse_number(headers.get("ratelimit-reset"))
    if reset:
        if now is None:
            now = time.time()
        return max(0.0, reset - now)

    return float(2 ** attempt)


def _error_message(response: httpx.Response) -> str:
    """Server-provided error message, else "HTTP <status>: <reason>"."""
    try:
        body = orjson.loads(response.content)
    except orjson.JSONDecodeError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}: {response.reason_phrase}"


def _parse_thread(data: Dict[str, Any]) -> Dict[str, Any]:
    thread = data["thread"]
    if not isinstance(thread, dict):
        raise TypeError(f"thread is {type(thread).__name__}, expected object")
    return thread


class BlueskyClient:
    """
    Rate-limited client for the Bluesky public API.

    1. **Concurrency Control**: Semaphore limits simultaneous requests
    2. **Throttling**: Shared sliding-window limiter spaces requests
    3. **429 Handling**: Header-driven backoff with a bounded retry count
    4. **Typed Results**: Failures are returned, never raised

    Usage:
        async with BlueskyClient() as client:
            result = await client.get_post_thread(uri, depth=10)
            if result.ok:
                thread = result.value
    """

    def __init__(
        self,
        base_url: str = BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            base_url: AppView root URL
            http_client: Pre-configured httpx client (closed by the caller)
            rate_limiter: Request throttle; defaults to the process-wide one
            max_concurrent: Maximum in-flight requests
            timeout: Per-request timeout in seconds
            sleep: Coroutine used for 429 backoff waits (injectable for tests)
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(
                http2=True,
                timeout=timeout,
                follow_redirects=True,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "application/json",
                },
            )
        self.client = http_client
        self.rate_limiter = rate_limiter if rate_limiter is not None else get_rate_limiter()
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.stats = ResponseStats()
        self._sleep = sleep

    async def __aenter__(self) -> "BlueskyClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    @property
    def last_rate_limit_info(self) -> Optional[RateLimitInfo]:
        return get_last_rate_limit_info()

    async def get_post_thread(
        self,
        uri: str,
        depth: int = 6,
        parent_height: int = 80,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> Result[Dict[str, Any]]:
        """
        Fetch a post thread with replies.

        Args:
            uri: AT-URI of the post
            depth: How many levels of replies to include
            parent_height: How many ancestors to include
            max_retries: Retry budget for 429 responses

        Returns:
            Result holding the raw ``thread`` node (ThreadViewPost,
            NotFoundPost or BlockedPost)
        """
        params = {"uri": uri, "depth": depth, "parentHeight": parent_height}
        return await self._fetch_with_retry(
            "app.bsky.feed.getPostThread", params, _parse_thread, max_retries
        )

    async def get_quotes(
        self,
        uri: str,
        cursor: Optional[str] = None,
        limit: int = 50,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> Result[QuotesPage]:
        """
        Fetch one page of posts quoting ``uri``.

        The quotes endpoint requires a DID-based AT-URI. The returned page's
        ``cursor`` is None on the last page.
        """
        params: Dict[str, Any] = {"uri": uri, "limit": limit}
        if cursor:
            params["cursor"] = cursor

        def parse(data: Dict[str, Any]) -> QuotesPage:
            return QuotesPage(
                uri=data.get("uri") or uri,
                posts=[Post.from_dict(p) for p in data["posts"]],
                cursor=data.get("cursor") or None,
            )

        return await self._fetch_with_retry(
            "app.bsky.feed.getQuotes", params, parse, max_retries
        )

    async def resolve_handle(
        self, handle: str, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> Result[str]:
        """Resolve a handle (e.g. "alice.bsky.social") to its DID."""
        return await self._fetch_with_retry(
            "com.atproto.identity.resolveHandle",
            {"handle": handle},
            lambda data: str(data["did"]),
            max_retries,
        )

    async def _fetch_with_retry(
        self,
        endpoint: str,
        params: Dict[str, Any],
        parse: Callable[[Any], Any],
        max_retries: int,
    ) -> Result:
        """GET an XRPC endpoint, retrying 429s and converting every failure to a Result.

        Backoff sleeps happen outside the semaphore so waiting calls don't hold slots.
        """
        url = f"{self.base_url}/xrpc/{endpoint}"
        attempt = 0

        while True:
            try:
                await self.rate_limiter.wait_for_slot()
                async with self.semaphore:
                    response = await self.client.get(url, params=params)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                self.stats.record_transport_error()
                logger.warning("Request error for %s: %s", endpoint, e)
                return Result.failure(ApiError(f"Request to {endpoint} failed: {e}"))

            self.stats.record_response(response.status_code)
            self._record_rate_limit(response.headers)

            if response.status_code == 429:
                if attempt >= max_retries:
                    self.stats.record_retry_exhausted()
                    logger.error("Rate limit exceeded for %s after %d retries",
                                 endpoint, max_retries)
                    return Result.failure(RateLimitExceededError(
                        f"Rate limit exceeded after {max_retries} retries", 429
                    ))
                wait = compute_backoff(attempt, response.headers)
                logger.warning("HTTP 429 for %s, retrying in %.1fs (attempt %d/%d)",
                               endpoint, wait, attempt + 1, max_retries)
                await self._sleep(wait)
                attempt += 1
                continue

            if not response.is_success:
                message = _error_message(response)
                logger.debug("HTTP %d for %s: %s", response.status_code, endpoint, message)
                return Result.failure(ApiError(message, response.status_code))

            try:
                return Result.success(parse(orjson.loads(response.content)))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning("Malformed response from %s: %s", endpoint, e)
                return Result.failure(ApiError(
                    f"Malformed response from {endpoint}: {e}", response.status_code
                ))

    def _record_rate_limit(self, headers: Mapping[str, str]):
        global _last_rate_limit_info
        info = parse_rate_limit_headers(headers)
        if info is not None:
            _last_rate_limit_info = info
