"""
bsky-thread-miner - Bluesky Thread Crawler

This package collects every post of a Bluesky discussion thread through the
public AppView API: the reply tree (repairing subtrees the API truncates),
the posts quoting the thread, and bounded chains of quotes-of-quotes.

Main components:
- BlueskyClient: Async API client with throttling and 429 backoff
- ThreadBuilder / ThreadTree: Tree view over one thread payload
- ThreadFetcher: Multi-phase crawl producing a deduplicated post list
- Post, ThreadFetchResult: Data models

Usage:
    from bsky_thread_miner import BlueskyClient, ThreadFetcher
    import asyncio

    async def main(uri):
        async with BlueskyClient() as client:
            return await ThreadFetcher(client).fetch(uri)

    result = asyncio.run(main("at://did:plc:.../app.bsky.feed.post/..."))
"""

from .client import BlueskyClient, compute_backoff, get_last_rate_limit_info
from .errors import (
    ApiError,
    InvalidPostUrlError,
    RateLimitExceededError,
    ThreadMinerError,
    ThreadUnavailableError,
)
from .fetcher import ThreadFetcher, fetch_thread_posts
from .models import (
    Author,
    CrawlStats,
    FetchProgress,
    Post,
    QuotesPage,
    RateLimitInfo,
    Result,
    ThreadFetchResult,
    TruncatedPost,
)
from .rate_limiter import (
    RateLimiter, RateLimiterStats, get_rate_limiter, reset_rate_limiter,
)
from .thread_builder import ThreadBuilder, ThreadTree
from .utils import (
    PostRef, at_uri_to_web_url, build_at_uri, parse_iso_date, parse_post_url,
)

__all__ = [
    'BlueskyClient',
    'ThreadFetcher',
    'fetch_thread_posts',
    'ThreadBuilder',
    'ThreadTree',
    'Author',
    'Post',
    'TruncatedPost',
    'QuotesPage',
    'RateLimitInfo',
    'Result',
    'FetchProgress',
    'CrawlStats',
    'ThreadFetchResult',
    'RateLimiter',
    'RateLimiterStats',
    'get_rate_limiter',
    'reset_rate_limiter',
    'compute_backoff',
    'get_last_rate_limit_info',
    'PostRef',
    'parse_post_url',
    'build_at_uri',
    'at_uri_to_web_url',
    'parse_iso_date',
    'ThreadMinerError',
    'ApiError',
    'RateLimitExceededError',
    'ThreadUnavailableError',
    'InvalidPostUrlError',
]

__version__ = '1.0.0'
