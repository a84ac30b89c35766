"""Tests for the multi-phase thread crawl (in-memory fake client, no network)."""

import asyncio
from collections import Counter

from bsky_thread_miner.errors import ApiError
from bsky_thread_miner.fetcher import ThreadFetcher, fetch_thread_posts
from bsky_thread_miner.models import Post, QuotesPage, Result


def uri(name):
    return f"at://did:plc:test/app.bsky.feed.post/{name}"


def post_view(name, reply_count=0, quote_count=0, did="did:plc:alice", text=None):
    return {
        "uri": uri(name),
        "cid": f"cid-{name}",
        "author": {"did": did, "handle": "alice.test"},
        "record": {"text": text or f"post {name}", "createdAt": "2024-01-01T00:00:00.000Z"},
        "indexedAt": "2024-01-01T00:00:00.000Z",
        "replyCount": reply_count,
        "quoteCount": quote_count,
    }


def node(name, replies=None, reply_count=None, quote_count=0):
    replies = replies or []
    if reply_count is None:
        reply_count = len(replies)
    return {
        "$type": "app.bsky.feed.defs#threadViewPost",
        "post": post_view(name, reply_count=reply_count, quote_count=quote_count),
        "replies": replies,
    }


def failure(message="boom"):
    return Result.failure(ApiError(message, 500))


class FakeClient:
    """
    Stands in for BlueskyClient.

    threads: uri -> thread node, failed Result, or exception to raise
    quotes: uri -> list of pages; each page is a list of PostView dicts or
            a failed Result. Cursors are page indexes.
    """

    def __init__(self, threads=None, quotes=None):
        self.threads = threads or {}
        self.quotes = quotes or {}
        self.thread_calls = []
        self.quote_calls = []

    async def get_post_thread(self, uri, depth=6, parent_height=80):
        self.thread_calls.append((uri, parent_height))
        await asyncio.sleep(0)
        response = self.threads.get(uri)
        if response is None:
            return Result.failure(ApiError("Post not found", 400))
        if isinstance(response, Exception):
            raise response
        if isinstance(response, Result):
            return response
        return Result.success(response)

    async def get_quotes(self, uri, cursor=None, limit=50):
        self.quote_calls.append((uri, cursor))
        await asyncio.sleep(0)
        pages = self.quotes.get(uri)
        if not pages:
            return Result.success(QuotesPage(uri=uri))
        index = int(cursor) if cursor else 0
        page = pages[index]
        if isinstance(page, Result):
            return page
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        return Result.success(QuotesPage(
            uri=uri, posts=[Post.from_dict(p) for p in page], cursor=next_cursor
        ))

    def quoted_sources(self):
        return [u for u, cursor in self.quote_calls if cursor is None]


def crawl(client, root="root", **options):
    progress = []
    batches = []
    fetcher = ThreadFetcher(client, **options)
    result = asyncio.run(fetcher.fetch(
        uri(root),
        on_progress=progress.append,
        on_posts_batch=batches.append,
    ))
    return result, progress, batches


def uris(result):
    return [p.uri for p in result.all_posts]


class TestMainThread:
    def test_root_fetch_fails(self):
        client = FakeClient()
        result, progress, batches = crawl(client)
        assert result.all_posts == []
        assert result.root_post is None
        assert client.quote_calls == []
        assert len(client.thread_calls) == 1
        assert batches == []

    def test_unavailable_root_is_failure(self):
        client = FakeClient(threads={
            uri("root"): {"$type": "app.bsky.feed.defs#notFoundPost", "uri": uri("root"), "notFound": True},
        })
        result, _, _ = crawl(client)
        assert result.all_posts == []
        assert result.root_post is None
        assert client.quote_calls == []

    def test_malformed_root_is_failure(self):
        root = node("root")
        root["post"]["record"] = "not a record"
        client = FakeClient(threads={uri("root"): root})
        result, _, _ = crawl(client)
        assert result.all_posts == []
        assert result.root_post is None
        assert result.stats.failed_fetches == 1
        assert client.quote_calls == []

    def test_root_with_one_reply(self):
        client = FakeClient(threads={uri("root"): node("root", [node("a")])})
        result, _, _ = crawl(client)
        assert uris(result) == [uri("root"), uri("a")]
        assert result.root_post.uri == uri("root")
        assert result.root_post == result.all_posts[0]
        assert result.depths == {uri("root"): 0, uri("a"): 1}
        assert result.stats.thread == 2

    def test_main_thread_requests_parents(self):
        client = FakeClient(threads={uri("root"): node("root")})
        crawl(client)
        assert client.thread_calls == [(uri("root"), 1000)]

    def test_quotes_use_root_post_uri(self):
        handle_uri = "at://alice.test/app.bsky.feed.post/root"
        client = FakeClient(threads={handle_uri: node("root")})
        asyncio.run(ThreadFetcher(client).fetch(handle_uri))
        assert client.quote_calls == [(uri("root"), None)]


class TestTruncationRepair:
    def test_repairs_truncated_root(self):
        client = FakeClient(threads={uri("root"): node("root", [node("a")], reply_count=5)})
        # The repair fetch of the root returns the full reply list
        full = node("root", [node("a"), node("b"), node("c", [node("c1")])])
        responses = [node("root", [node("a")], reply_count=5), full]

        async def get_post_thread(u, depth=6, parent_height=80):
            client.thread_calls.append((u, parent_height))
            return Result.success(responses.pop(0))

        client.get_post_thread = get_post_thread
        result, _, _ = crawl(client)

        assert uris(result) == [uri("root"), uri("a"), uri("b"), uri("c"), uri("c1")]
        assert result.depths[uri("c1")] == 2
        assert result.stats.truncated == 3
        assert client.thread_calls == [(uri("root"), 1000), (uri("root"), 0)]

    def test_depth_rebased_on_truncated_node(self):
        client = FakeClient(threads={
            uri("root"): node("root", [node("a", reply_count=2)]),
            uri("a"): node("a", [node("b", [node("b1")]), node("c")]),
        })
        result, _, _ = crawl(client)
        assert result.depths[uri("a")] == 1
        assert result.depths[uri("b")] == 2
        assert result.depths[uri("b1")] == 3
        assert result.depths[uri("c")] == 2

    def test_nested_truncation_repaired_recursively(self):
        client = FakeClient(threads={
            uri("root"): node("root", [node("a", reply_count=1)]),
            uri("a"): node("a", [node("b", reply_count=2)]),
            uri("b"): node("b", [node("c"), node("d")]),
        })
        result, _, _ = crawl(client)
        assert set(uris(result)) == {uri(n) for n in ("root", "a", "b", "c", "d")}
        assert result.depths[uri("d")] == 3
        repaired = [u for u, height in client.thread_calls if height == 0]
        assert repaired == [uri("a"), uri("b")]

    def test_each_uri_repaired_once(self):
        # The repair response is itself still truncated at the same node
        client = FakeClient(threads={
            uri("root"): node("root", [node("a", reply_count=500)]),
            uri("a"): node("a", [node("b")], reply_count=500),
        })
        result, _, _ = crawl(client)
        assert [u for u, _ in client.thread_calls].count(uri("a")) == 1
        assert uri("b") in uris(result)

    def test_failed_repair_does_not_abort(self):
        client = FakeClient(threads={
            uri("root"): node("root", [node("a", reply_count=2), node("b", reply_count=1)]),
            uri("a"): failure(),
            uri("b"): node("b", [node("b1")]),
        })
        result, _, _ = crawl(client)
        assert uri("b1") in uris(result)
        assert result.stats.failed_fetches == 1


class TestRootQuotes:
    def test_single_quote_then_empty_page(self):
        client = FakeClient(
            threads={uri("root"): node("root")},
            quotes={uri("root"): [[post_view("q1")], []]},
        )
        result, _, _ = crawl(client)
        assert uris(result) == [uri("root"), uri("q1")]
        assert result.stats.quotes == 1
        assert client.quote_calls == [(uri("root"), None), (uri("root"), "1")]
        # Quote with no replies needs no thread fetch
        assert [u for u, _ in client.thread_calls] == [uri("root")]

    def test_follows_cursor_across_pages(self):
        client = FakeClient(
            threads={uri("root"): node("root")},
            quotes={uri("root"): [[post_view("q1")], [post_view("q2")], [post_view("q3")]]},
        )
        result, _, _ = crawl(client)
        assert uris(result) == [uri("root"), uri("q1"), uri("q2"), uri("q3")]

    def test_fetches_quote_reply_threads(self):
        client = FakeClient(
            threads={
                uri("root"): node("root"),
                uri("q1"): node("q1", [node("q1r", [node("q1rr")])]),
            },
            quotes={uri("root"): [[post_view("q1", reply_count=1)]]},
        )
        result, _, _ = crawl(client)
        assert uris(result) == [uri("root"), uri("q1"), uri("q1r"), uri("q1rr")]
        assert result.depths[uri("q1")] == 0
        assert result.depths[uri("q1rr")] == 2
        assert result.stats.quotes == 3

    def test_quote_already_in_thread_not_duplicated(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a")])},
            quotes={uri("root"): [[post_view("a", text="rediscovered")]]},
        )
        result, _, _ = crawl(client)
        assert uris(result) == [uri("root"), uri("a")]
        assert result.all_posts[1].text == "post a"

    def test_page_failure_stops_pagination_only(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=3)])},
            quotes={
                uri("root"): [[post_view("q1")], failure(), [post_view("never")]],
                uri("a"): [[post_view("qa")]],
            },
        )
        result, _, _ = crawl(client)
        assert uri("q1") in uris(result)
        assert uri("never") not in uris(result)
        assert uri("qa") in uris(result)
        assert result.stats.failed_fetches == 1

    def test_malformed_reply_in_quote_thread_dropped(self):
        broken_reply = {"post": {"cid": "x", "author": {"did": "did:plc:bob"}}}
        quote_thread = node("q", reply_count=1)
        quote_thread["replies"] = [broken_reply]
        client = FakeClient(
            threads={uri("root"): node("root"), uri("q"): quote_thread},
            quotes={uri("root"): [[post_view("q", reply_count=1)]]},
        )
        result, _, _ = crawl(client)
        assert uris(result) == [uri("root"), uri("q")]
        assert result.stats.failed_fetches == 1

    def test_raising_reply_fetch_isolated(self):
        client = FakeClient(
            threads={
                uri("root"): node("root"),
                uri("q1"): RuntimeError("socket exploded"),
                uri("q2"): node("q2", [node("q2r")]),
            },
            quotes={uri("root"): [[post_view("q1", reply_count=1), post_view("q2", reply_count=1)]]},
        )
        result, _, _ = crawl(client)
        assert uri("q2r") in uris(result)
        assert result.stats.failed_fetches == 1


class TestRecursiveQuotes:
    def test_well_quoted_reply_triggers_crawl(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=5)])},
            quotes={uri("a"): [[post_view("qa")]]},
        )
        result, _, _ = crawl(client)
        assert uri("qa") in uris(result)
        assert result.stats.recursive == 1

    def test_below_threshold_not_crawled(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=2)])},
            quotes={uri("a"): [[post_view("qa")]]},
        )
        result, _, _ = crawl(client)
        assert uri("qa") not in uris(result)
        assert client.quoted_sources() == [uri("root")]

    def test_custom_threshold(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=1)])},
            quotes={uri("a"): [[post_view("qa")]]},
        )
        result, _, _ = crawl(client, min_quotes_for_crawl=1)
        assert uri("qa") in uris(result)

    def test_quote_chain_bounded_by_max_depth(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=5)])},
            quotes={
                uri("a"): [[post_view("q2", quote_count=10)]],
                uri("q2"): [[post_view("q3", quote_count=10)]],
                uri("q3"): [[post_view("q4", quote_count=10)]],
            },
        )
        result, _, _ = crawl(client, max_quote_depth=2)
        # a is depth 1, q2 depth 2, q3 would be depth 3
        assert client.quoted_sources() == [uri("root"), uri("a"), uri("q2")]
        assert uri("q3") in uris(result)
        assert uri("q4") not in uris(result)

    def test_default_max_depth(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=5)])},
            quotes={
                uri("a"): [[post_view("q2", quote_count=10)]],
                uri("q2"): [[post_view("q3", quote_count=10)]],
                uri("q3"): [[post_view("q4", quote_count=10)]],
                uri("q4"): [[post_view("q5", quote_count=10)]],
            },
        )
        result, _, _ = crawl(client)
        assert uri("q4") in uris(result)
        assert uri("q5") not in uris(result)
        assert uri("q4") not in client.quoted_sources()

    def test_same_quote_from_two_sources_once(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=5), node("b", quote_count=5)])},
            quotes={
                uri("a"): [[post_view("shared")]],
                uri("b"): [[post_view("shared"), post_view("only-b")]],
            },
        )
        result, _, _ = crawl(client)
        counts = Counter(uris(result))
        assert counts[uri("shared")] == 1
        assert uri("only-b") in counts

    def test_source_never_queried_twice(self):
        # a and b quote each other; both are well quoted
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=5)])},
            quotes={
                uri("root"): [[post_view("b", quote_count=5)]],
                uri("a"): [[post_view("b", quote_count=5), post_view("c", quote_count=5)]],
                uri("b"): [[post_view("a", quote_count=5), post_view("c", quote_count=5)]],
                uri("c"): [[post_view("a", quote_count=5), post_view("b", quote_count=5)]],
            },
        )
        crawl(client)
        sources = Counter(client.quoted_sources())
        assert all(count == 1 for count in sources.values())
        assert set(sources) == {uri("root"), uri("a"), uri("b"), uri("c")}

    def test_replies_of_new_quotes_enqueued(self):
        client = FakeClient(
            threads={
                uri("root"): node("root", [node("a", quote_count=5)]),
                uri("qa"): node("qa", [node("hot", quote_count=4)]),
            },
            quotes={
                uri("a"): [[post_view("qa", reply_count=1)]],
                uri("hot"): [[post_view("hot-quote")]],
            },
        )
        result, _, _ = crawl(client)
        assert uri("hot") in uris(result)
        assert uri("hot-quote") in uris(result)
        assert uri("hot") in client.quoted_sources()

    def test_reply_enqueued_one_hop_deeper_than_its_source(self):
        client = FakeClient(
            threads={
                uri("root"): node("root", [node("a", quote_count=5)]),
                uri("qa"): node("qa", [node("hot", quote_count=4)]),
            },
            quotes={
                uri("a"): [[post_view("qa", reply_count=1)]],
                uri("hot"): [[post_view("hot-quote")]],
            },
        )
        # hot sits at quote depth 2, beyond a max depth of 1
        result, _, _ = crawl(client, max_quote_depth=1)
        assert uri("hot") in uris(result)
        assert uri("hot-quote") not in uris(result)

    def test_failure_isolated_within_round(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=5), node("b", quote_count=5)])},
            quotes={
                uri("a"): [failure()],
                uri("b"): [[post_view("qb")]],
            },
        )
        result, _, _ = crawl(client)
        assert uri("qb") in uris(result)
        assert result.stats.failed_fetches == 1

    def test_zero_depth_disables_recursion(self):
        client = FakeClient(
            threads={uri("root"): node("root", [node("a", quote_count=5)])},
            quotes={uri("a"): [[post_view("qa")]]},
        )
        result, _, _ = crawl(client, max_quote_depth=0)
        assert client.quoted_sources() == [uri("root")]
        assert uri("qa") not in uris(result)


class TestCallbacksAndResult:
    def make_client(self):
        return FakeClient(
            threads={
                uri("root"): node("root", [node("a", quote_count=3)]),
                uri("q1"): node("q1", [node("q1r")]),
            },
            quotes={
                uri("root"): [[post_view("q1", reply_count=1)]],
                uri("a"): [[post_view("qa")]],
            },
        )

    def test_batches_cover_every_post_once(self):
        result, _, batches = crawl(self.make_client())
        batched = [p.uri for batch in batches for p in batch]
        assert sorted(batched) == sorted(uris(result))
        assert len(batched) == len(set(batched))
        assert all(batch for batch in batches)

    def test_progress_stages_in_order(self):
        result, progress, _ = crawl(self.make_client())
        stages = [p.stage for p in progress]
        assert stages[0] == "thread"
        assert progress[0].fetched == 0
        first_seen = list(dict.fromkeys(stages))
        assert first_seen == ["thread", "quotes", "recursive"]
        assert progress[-1].fetched == len(result.all_posts)

    def test_truncated_stage_reported_when_repairing(self):
        client = FakeClient(threads={
            uri("root"): node("root", [node("a", reply_count=1)]),
            uri("a"): node("a", [node("b")]),
        })
        _, progress, _ = crawl(client)
        assert "truncated" in [p.stage for p in progress]

    def test_no_duplicates_and_stats_add_up(self):
        result, _, _ = crawl(self.make_client())
        assert len(uris(result)) == len(set(uris(result)))
        assert result.stats.total == len(result.all_posts)
        assert set(result.depths) == set(uris(result))

    def test_fetch_thread_posts_wrapper(self):
        client = self.make_client()
        result = asyncio.run(fetch_thread_posts(uri("root"), client, max_quote_depth=0))
        assert uri("qa") not in uris(result)
        assert uri("q1r") in uris(result)
