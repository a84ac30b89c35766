"""
Recursive thread crawler.

Collects every post of a Bluesky thread in five phases:

1. Main thread: one deep ``getPostThread`` call for the root
2. Truncation repair: refetch subtrees where the API capped replies
3. Root quotes: page through quote posts of the root, plus their replies
4. Quote-of-quote crawl: breadth-first over well-quoted posts, bounded depth
5. Assembly: deduplicated post list, root post, per-phase counts

A single visited-URI set spans all phases, so no post is collected twice no
matter how it was reached. Only a failure of phase 1 aborts the crawl; any
other failed fetch drops that branch and the crawl carries on.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Iterable, List,
    Optional, Set, Tuple,
)

from .errors import ThreadUnavailableError
from .models import (
    CrawlStats, FetchProgress, Post, QuotesPage, Result, ThreadFetchResult,
)
from .thread_builder import ThreadBuilder, ThreadTree

logger = logging.getLogger(__name__)

# Crawl stages, reported through FetchProgress.stage
STAGE_THREAD = "thread"
STAGE_TRUNCATED = "truncated"
STAGE_QUOTES = "quotes"
STAGE_RECURSIVE = "recursive"

# getPostThread depth for every thread fetch; the API caps it server-side
THREAD_FETCH_DEPTH = 1000
ROOT_PARENT_HEIGHT = 1000

QUOTES_PAGE_LIMIT = 100

# Quote-of-quote crawl bounds
MIN_QUOTES_FOR_CRAWL = 3
MAX_QUOTE_DEPTH = 3

# How many independent fetches are in flight per batch
TRUNCATED_BATCH_SIZE = 10
REPLY_BATCH_SIZE = 10
QUOTE_CRAWL_BATCH_SIZE = 5

ProgressCallback = Callable[[FetchProgress], None]
PostsBatchCallback = Callable[[List[Post]], None]


@dataclass(frozen=True)
class QueueItem:
    """A post waiting to have its quotes crawled, and how many quote hops away it is."""
    uri: str
    depth: int


class ThreadFetcher:
    """
    Crawls a thread, its truncated subtrees, its quotes and quotes of quotes.

    The client only needs ``get_post_thread`` and ``get_quotes`` coroutines
    returning ``Result`` objects (see BlueskyClient).

    Usage:
        async with BlueskyClient() as client:
            fetcher = ThreadFetcher(client, max_quote_depth=2)
            result = await fetcher.fetch(uri, on_progress=print)
    """

    def __init__(
        self,
        client: Any,
        builder: Optional[ThreadBuilder] = None,
        min_quotes_for_crawl: int = MIN_QUOTES_FOR_CRAWL,
        max_quote_depth: int = MAX_QUOTE_DEPTH,
        thread_depth: int = THREAD_FETCH_DEPTH,
    ):
        """
        Args:
            client: API client (BlueskyClient or compatible)
            builder: Tree builder; a fresh ThreadBuilder by default
            min_quotes_for_crawl: Quote count at which a post's own quotes are crawled
            max_quote_depth: Deepest quote hop whose quotes are still fetched
            thread_depth: Reply depth requested on every thread fetch
        """
        self.client = client
        self.builder = builder or ThreadBuilder()
        self.min_quotes_for_crawl = min_quotes_for_crawl
        self.max_quote_depth = max_quote_depth
        self.thread_depth = thread_depth

    async def fetch(
        self,
        uri: str,
        on_progress: Optional[ProgressCallback] = None,
        on_posts_batch: Optional[PostsBatchCallback] = None,
    ) -> ThreadFetchResult:
        """
        Crawl the thread rooted at ``uri``.

        Args:
            uri: AT-URI of the root post (handle- or DID-based)
            on_progress: Called with a FetchProgress at each step
            on_posts_batch: Called with each list of newly added posts

        Returns:
            ThreadFetchResult; empty with ``root_post=None`` if the root
            thread could not be fetched
        """
        crawl = _ThreadCrawl(self, on_progress, on_posts_batch)
        return await crawl.run(uri)


async def fetch_thread_posts(
    uri: str,
    client: Any,
    builder: Optional[ThreadBuilder] = None,
    on_progress: Optional[ProgressCallback] = None,
    on_posts_batch: Optional[PostsBatchCallback] = None,
    **options,
) -> ThreadFetchResult:
    """Convenience wrapper: ``ThreadFetcher(client, builder, **options).fetch(uri, ...)``."""
    fetcher = ThreadFetcher(client, builder, **options)
    return await fetcher.fetch(uri, on_progress=on_progress, on_posts_batch=on_posts_batch)


class _ThreadCrawl:
    """State for one crawl. Created per ``ThreadFetcher.fetch`` call and discarded after."""

    def __init__(
        self,
        fetcher: ThreadFetcher,
        on_progress: Optional[ProgressCallback],
        on_posts_batch: Optional[PostsBatchCallback],
    ):
        self.fetcher = fetcher
        self.client = fetcher.client
        self.builder = fetcher.builder
        self.on_progress = on_progress
        self.on_posts_batch = on_posts_batch

        self.visited: Set[str] = set()
        self.posts: List[Post] = []
        self.depths: Dict[str, int] = {}
        self.quoted_sources: Set[str] = set()
        self.stats = CrawlStats()

    async def run(self, uri: str) -> ThreadFetchResult:
        self._report(STAGE_THREAD)

        result = await self.client.get_post_thread(
            uri, depth=self.fetcher.thread_depth, parent_height=ROOT_PARENT_HEIGHT
        )
        tree = self._build(result, uri)
        if tree is None:
            logger.error("Could not fetch root thread %s, nothing collected", uri)
            return ThreadFetchResult(stats=self.stats)

        # The root's own URI is DID-based even when ``uri`` used a handle;
        # getQuotes only accepts the DID form.
        root = tree.post
        self._merge(self._with_depths(tree), STAGE_THREAD)
        self._report(STAGE_THREAD)
        logger.info("Main thread %s: %d posts, %d truncated",
                    root.uri, len(tree), len(tree.truncated_posts))

        await self._repair_truncated(tree)
        await self._fetch_root_quotes(root)
        await self._crawl_quotes_recursively()

        logger.info(
            "Crawl of %s complete: %d posts (thread %d, truncated %d, quotes %d, "
            "recursive %d), %d failed fetches",
            root.uri, len(self.posts), self.stats.thread, self.stats.truncated,
            self.stats.quotes, self.stats.recursive, self.stats.failed_fetches,
        )
        return ThreadFetchResult(
            all_posts=self.posts,
            root_post=root,
            depths=self.depths,
            stats=self.stats,
        )

    # -------------------------------------------------------
    # Phase 2: truncated subtrees
    # -------------------------------------------------------

    async def _repair_truncated(self, tree: ThreadTree):
        """Refetch every truncated post as its own root until no truncation is left.

        Each URI is refetched at most once; depths are rebased onto the
        truncated post's known depth.
        """
        queue = deque(tree.truncated_posts)
        if not queue:
            return

        self._report(STAGE_TRUNCATED)
        repaired: Set[str] = set()

        while queue:
            batch = []
            while queue and len(batch) < TRUNCATED_BATCH_SIZE:
                truncated = queue.popleft()
                if truncated.uri in repaired:
                    continue
                repaired.add(truncated.uri)
                batch.append(truncated)
            if not batch:
                continue

            results = await self._gather(self._fetch_subtree(t.uri) for t in batch)
            for truncated, result in zip(batch, results):
                subtree = self._build(result, truncated.uri)
                if subtree is None:
                    continue
                base_depth = self.depths.get(truncated.uri, 0)
                self._merge(self._with_depths(subtree, base_depth), STAGE_TRUNCATED)
                queue.extend(t for t in subtree.truncated_posts if t.uri not in repaired)

            self._report(STAGE_TRUNCATED)

        logger.info("Repaired %d truncated subtrees, %d new posts",
                    len(repaired), self.stats.truncated)

    # -------------------------------------------------------
    # Phase 3: quotes of the root
    # -------------------------------------------------------

    async def _fetch_root_quotes(self, root: Post):
        self._report(STAGE_QUOTES)
        self.quoted_sources.add(root.uri)

        async for page in self._iter_quote_pages(root.uri):
            new_quotes = self._merge(((q, 0) for q in page.posts), STAGE_QUOTES)
            self._report(STAGE_QUOTES)
            await self._fetch_reply_threads(new_quotes, STAGE_QUOTES)

        logger.info("Root quotes: %d new posts", self.stats.quotes)

    # -------------------------------------------------------
    # Phase 4: quotes of quotes
    # -------------------------------------------------------

    async def _crawl_quotes_recursively(self):
        """Breadth-first crawl of quote lists for every sufficiently quoted post.

        Seeds at depth 1 from everything collected so far. Each round takes up
        to QUOTE_CRAWL_BATCH_SIZE sources, fetches their quotes concurrently and
        merges only once the whole round has settled.
        """
        self._report(STAGE_RECURSIVE)
        queue: Deque[QueueItem] = deque()
        for post in self.posts:
            self._enqueue(queue, post, 1)

        while queue:
            batch: List[QueueItem] = []
            while queue and len(batch) < QUOTE_CRAWL_BATCH_SIZE:
                item = queue.popleft()
                if item.uri in self.quoted_sources or item.depth > self.fetcher.max_quote_depth:
                    continue
                self.quoted_sources.add(item.uri)
                batch.append(item)
            if not batch:
                continue

            quote_lists = await self._gather(self._collect_quotes(item.uri) for item in batch)

            found: List[Tuple[Post, int]] = []
            for item, quotes in zip(batch, quote_lists):
                if quotes is None:
                    continue
                for quote in self._merge(((q, 0) for q in quotes), STAGE_RECURSIVE):
                    found.append((quote, item.depth))

            source_depth = {quote.uri: depth for quote, depth in found}
            replies = await self._fetch_reply_threads([q for q, _ in found], STAGE_RECURSIVE)
            for quote, new_posts in replies:
                for post in new_posts:
                    self._enqueue(queue, post, source_depth[quote.uri] + 1)

            for quote, depth in found:
                self._enqueue(queue, quote, depth + 1)

            self._report(STAGE_RECURSIVE)

        logger.info("Quote-of-quote crawl: %d sources queried, %d new posts",
                    len(self.quoted_sources), self.stats.recursive)

    def _enqueue(self, queue: Deque[QueueItem], post: Post, depth: int):
        if post.quote_count < self.fetcher.min_quotes_for_crawl:
            return
        if post.uri in self.quoted_sources or depth > self.fetcher.max_quote_depth:
            return
        queue.append(QueueItem(post.uri, depth))

    async def _collect_quotes(self, uri: str) -> List[Post]:
        return [q async for page in self._iter_quote_pages(uri) for q in page.posts]

    # -------------------------------------------------------
    # Shared fetch helpers
    # -------------------------------------------------------

    async def _iter_quote_pages(self, uri: str) -> AsyncIterator[QuotesPage]:
        """Yield quote pages for ``uri`` until the cursor runs out or a page fails."""
        cursor: Optional[str] = None
        while True:
            result = await self.client.get_quotes(uri, cursor=cursor, limit=QUOTES_PAGE_LIMIT)
            if not result.ok:
                self.stats.failed_fetches += 1
                logger.warning("Quotes page for %s failed: %s", uri, result.error)
                return
            page = result.value
            yield page
            if not page.cursor or page.cursor == cursor:
                return
            cursor = page.cursor

    async def _fetch_reply_threads(
        self, quotes: List[Post], stage: str
    ) -> List[Tuple[Post, List[Post]]]:
        """Fetch reply threads of quote posts that have replies, in concurrent batches.

        Returns (quote, newly merged replies) for every thread that was fetched.
        """
        with_replies = [q for q in quotes if q.reply_count > 0]
        merged: List[Tuple[Post, List[Post]]] = []

        for start in range(0, len(with_replies), REPLY_BATCH_SIZE):
            batch = with_replies[start:start + REPLY_BATCH_SIZE]
            results = await self._gather(self._fetch_subtree(q.uri) for q in batch)
            for quote, result in zip(batch, results):
                tree = self._build(result, quote.uri)
                if tree is None:
                    continue
                merged.append((quote, self._merge(self._with_depths(tree), stage)))
            self._report(stage)

        return merged

    def _fetch_subtree(self, uri: str) -> Awaitable[Result]:
        return self.client.get_post_thread(uri, depth=self.fetcher.thread_depth, parent_height=0)

    async def _gather(self, coros: Iterable[Awaitable[Any]]) -> List[Any]:
        """Await all coroutines; an exception becomes None in its slot and never cancels siblings."""
        outcomes = await asyncio.gather(*coros, return_exceptions=True)
        settled = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                self.stats.failed_fetches += 1
                logger.warning("Fetch raised %s: %s", type(outcome).__name__, outcome)
                settled.append(None)
            else:
                settled.append(outcome)
        return settled

    def _build(self, result: Optional[Result], uri: str) -> Optional[ThreadTree]:
        """Turn a thread Result into a tree, or None (counted as a failed fetch).

        An unavailable root or a payload node missing required fields drops
        the whole thread.
        """
        if result is None:
            return None
        if not result.ok:
            self.stats.failed_fetches += 1
            logger.warning("Thread fetch for %s failed: %s", uri, result.error)
            return None
        try:
            return self.builder.build_tree(result.value)
        except ThreadUnavailableError as e:
            self.stats.failed_fetches += 1
            logger.warning("Thread %s unavailable: %s", uri, e)
            return None
        except (KeyError, TypeError, AttributeError) as e:
            self.stats.failed_fetches += 1
            logger.warning("Malformed thread payload for %s: %s: %s",
                           uri, type(e).__name__, e)
            return None

    # -------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------

    @staticmethod
    def _with_depths(tree: ThreadTree, base_depth: int = 0) -> Iterable[Tuple[Post, int]]:
        return ((p, base_depth + tree.get_depth(p.uri)) for p in tree.all_posts)

    def _merge(self, posts: Iterable[Tuple[Post, int]], stage: str) -> List[Post]:
        """Add unvisited posts, keeping first-seen data; return the ones added."""
        new_posts = []
        for post, depth in posts:
            if post.uri in self.visited:
                continue
            self.visited.add(post.uri)
            self.posts.append(post)
            self.depths[post.uri] = depth
            new_posts.append(post)

        setattr(self.stats, stage, getattr(self.stats, stage) + len(new_posts))
        if new_posts and self.on_posts_batch:
            self.on_posts_batch(new_posts)
        return new_posts

    def _report(self, stage: str):
        if self.on_progress:
            self.on_progress(FetchProgress(fetched=len(self.posts), stage=stage))
