"""
Data models for bsky-thread-miner.

This module defines typed data structures for the posts, thread pieces and
crawl results exchanged between the API client, the tree builder and the
fetcher. Using dataclasses provides clear structure, type hints, and easy
JSON serialization.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Generic, List, Optional, TypeVar

from .errors import ApiError

T = TypeVar("T")

RECORD_EMBED_VIEW = "app.bsky.embed.record#view"
RECORD_WITH_MEDIA_VIEW = "app.bsky.embed.recordWithMedia#view"


@dataclass(frozen=True)
class Author:
    """
    Identity of a post author.

    Attributes:
        did: Decentralized identifier (stable, e.g. "did:plc:abc123")
        handle: Current handle (e.g. "alice.bsky.social")
        display_name: Optional display name
    """
    did: str
    handle: str = ""
    display_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Author":
        return cls(
            did=data.get("did", ""),
            handle=data.get("handle", ""),
            display_name=data.get("displayName"),
        )


@dataclass(frozen=True)
class Post:
    """
    A single post as returned by the AppView (a ``PostView``).

    Posts are immutable once fetched. Counters missing from the payload
    read as 0.

    Attributes:
        uri: AT-URI, the unique identifier of the post
        cid: Content hash of the post record
        author: Who wrote it
        text: Record text body
        created_at: ISO 8601 timestamp claimed by the record
        indexed_at: ISO 8601 timestamp when the AppView indexed it
        reply_parent_uri: URI of the post this replies to, if a reply
        reply_root_uri: URI of the thread root, if a reply
        embed: Raw embed view (images, quoted record, external link...)
        reply_count: Reported number of direct replies
        repost_count: Reported number of reposts
        like_count: Reported number of likes
        quote_count: Reported number of quote posts
        raw: The untouched PostView payload

    Example:
        post = Post.from_dict({
            "uri": "at://did:plc:abc/app.bsky.feed.post/3k7",
            "cid": "bafy...",
            "author": {"did": "did:plc:abc", "handle": "alice.bsky.social"},
            "record": {"text": "hello", "createdAt": "2024-01-15T10:30:00Z"},
            "indexedAt": "2024-01-15T10:30:01Z",
            "replyCount": 2,
        })
    """
    uri: str
    cid: str
    author: Author
    text: str = ""
    created_at: Optional[str] = None
    indexed_at: Optional[str] = None
    reply_parent_uri: Optional[str] = None
    reply_root_uri: Optional[str] = None
    embed: Optional[Dict[str, Any]] = field(default=None, compare=False, hash=False, repr=False)
    reply_count: int = 0
    repost_count: int = 0
    like_count: int = 0
    quote_count: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Post":
        """Parse an API PostView. Raises KeyError when ``uri`` is missing."""
        record = data.get("record") or {}
        reply = record.get("reply") or {}
        return cls(
            uri=data["uri"],
            cid=data.get("cid", ""),
            author=Author.from_dict(data.get("author") or {}),
            text=record.get("text", ""),
            created_at=record.get("createdAt"),
            indexed_at=data.get("indexedAt"),
            reply_parent_uri=(reply.get("parent") or {}).get("uri"),
            reply_root_uri=(reply.get("root") or {}).get("uri"),
            embed=data.get("embed"),
            reply_count=data.get("replyCount") or 0,
            repost_count=data.get("repostCount") or 0,
            like_count=data.get("likeCount") or 0,
            quote_count=data.get("quoteCount") or 0,
            raw=data,
        )

    @property
    def quoted_uri(self) -> Optional[str]:
        """URI of the post this one quotes, or None."""
        embed = self.embed or {}
        embed_type = embed.get("$type")
        record = embed.get("record") or {}
        if embed_type == RECORD_EMBED_VIEW:
            return record.get("uri")
        if embed_type == RECORD_WITH_MEDIA_VIEW:
            return (record.get("record") or {}).get("uri")
        return None

    @property
    def alt_texts(self) -> List[str]:
        """Image alt texts from the record and view embeds, deduplicated in order."""
        record_embed = (self.raw.get("record") or {}).get("embed")
        texts: List[str] = []
        for embed in (record_embed, self.embed):
            if not embed:
                continue
            for images in (embed.get("images"), (embed.get("media") or {}).get("images")):
                for image in images or []:
                    alt = image.get("alt")
                    if alt and alt not in texts:
                        texts.append(alt)
        return texts

    def to_dict(self) -> dict:
        """Convert the post to a dictionary for JSON serialization.

        The raw payload is dropped; computed ``quoted_uri`` and ``alt_texts``
        are added so consumers don't need to re-walk the embed.
        """
        d = asdict(self)
        d.pop("raw")
        d["quoted_uri"] = self.quoted_uri
        d["alt_texts"] = self.alt_texts
        return d


@dataclass(frozen=True)
class TruncatedPost:
    """A post whose thread response returned fewer replies than it advertises."""
    uri: str
    expected_replies: int
    actual_replies: int


@dataclass
class QuotesPage:
    """One page of ``getQuotes`` results."""
    uri: str
    posts: List[Post] = field(default_factory=list)
    cursor: Optional[str] = None


@dataclass(frozen=True)
class RateLimitInfo:
    """
    Rate-limit snapshot parsed from response headers.

    Attributes:
        limit: Requests allowed in the window
        remaining: Requests left in the current window
        reset: Unix timestamp (seconds) when the window resets
        policy: Raw policy string, format "limit;w=window"
    """
    limit: int
    remaining: int
    reset: int
    policy: str = ""


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Success-or-error outcome of an API call.

    Exactly one of ``value`` / ``error`` is meaningful, selected by ``ok``.

    Example:
        result = await client.get_quotes(uri)
        if result.ok:
            page = result.value
        else:
            logger.warning("quotes failed: %s", result.error)
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[ApiError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ApiError) -> "Result[T]":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class FetchProgress:
    """Progress event: running post total and current crawl stage."""
    fetched: int
    stage: str


@dataclass
class CrawlStats:
    """Posts added per crawl phase, plus the number of sub-fetches that failed."""
    thread: int = 0
    truncated: int = 0
    quotes: int = 0
    recursive: int = 0
    failed_fetches: int = 0

    @property
    def total(self) -> int:
        return self.thread + self.truncated + self.quotes + self.recursive

    def to_dict(self) -> dict:
        d = asdict(self)
        d["total"] = self.total
        return d


@dataclass
class ThreadFetchResult:
    """
    Final artifact of a crawl.

    Attributes:
        all_posts: Deduplicated posts in discovery order
        root_post: The thread root, or None when the initial fetch failed
        depths: Reply depth per URI (thread root and quote posts are 0)
        stats: Per-phase counters
    """
    all_posts: List[Post] = field(default_factory=list)
    root_post: Optional[Post] = None
    depths: Dict[str, int] = field(default_factory=dict)
    stats: CrawlStats = field(default_factory=CrawlStats)

    def to_dict(self) -> dict:
        posts = []
        for post in self.all_posts:
            d = post.to_dict()
            d["depth"] = self.depths.get(post.uri, 0)
            posts.append(d)
        return {
            "root_uri": self.root_post.uri if self.root_post else None,
            "root_post": self.root_post.to_dict() if self.root_post else None,
            "stats": self.stats.to_dict(),
            "posts": posts,
        }
