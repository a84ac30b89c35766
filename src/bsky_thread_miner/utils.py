"""
Utility functions for bsky-thread-miner.

This module provides helpers for converting between bsky.app web URLs and
AT-URIs, and for parsing the ISO 8601 timestamps the API returns.
"""

import logging
import re
from datetime import datetime
from typing import NamedTuple, Optional

from .errors import InvalidPostUrlError

logger = logging.getLogger(__name__)

POST_COLLECTION = "app.bsky.feed.post"
WEB_BASE_URL = "https://bsky.app"

_WEB_POST_RE = re.compile(
    r"^https?://(?:www\.)?bsky\.app/profile/(?P<actor>[^/?#]+)/post/(?P<rkey>[A-Za-z0-9]+)"
)
_AT_URI_RE = re.compile(
    r"^at://(?P<actor>[^/]+)/(?P<collection>[^/]+)/(?P<rkey>[^/?#]+)$"
)


class PostRef(NamedTuple):
    """The two halves of a post address: who posted it and the record key."""
    actor: str
    rkey: str

    @property
    def is_did(self) -> bool:
        return self.actor.startswith("did:")


def parse_post_url(url: str) -> PostRef:
    """
    Parse a bsky.app post URL or a post AT-URI into its actor and record key.

    The actor is whatever the address carried: a handle or a DID. Handles
    must be resolved to a DID before the quotes endpoint will accept them.

    Args:
        url: e.g. "https://bsky.app/profile/alice.bsky.social/post/3k7qr5xya2c2a"
             or "at://did:plc:abc/app.bsky.feed.post/3k7qr5xya2c2a"

    Returns:
        PostRef(actor, rkey)

    Raises:
        InvalidPostUrlError: if the string is neither form

    Example:
        ref = parse_post_url("https://bsky.app/profile/alice.bsky.social/post/3k7")
        # Returns: PostRef(actor="alice.bsky.social", rkey="3k7")
    """
    url = url.strip()
    match = _WEB_POST_RE.match(url)
    if match:
        return PostRef(match.group("actor"), match.group("rkey"))

    match = _AT_URI_RE.match(url)
    if match and match.group("collection") == POST_COLLECTION:
        return PostRef(match.group("actor"), match.group("rkey"))

    raise InvalidPostUrlError(f"Not a Bluesky post URL: {url}")


def build_at_uri(actor: str, rkey: str) -> str:
    """Build a post AT-URI from a DID (or handle) and a record key."""
    return f"at://{actor}/{POST_COLLECTION}/{rkey}"


def at_uri_to_web_url(uri: str, handle: Optional[str] = None) -> str:
    """
    Convert a post AT-URI into its bsky.app web URL.

    Args:
        uri: Post AT-URI
        handle: Optional handle to show instead of the DID in the URL

    Example:
        at_uri_to_web_url("at://did:plc:abc/app.bsky.feed.post/3k7", "alice.bsky.social")
        # Returns: "https://bsky.app/profile/alice.bsky.social/post/3k7"
    """
    ref = parse_post_url(uri)
    return f"{WEB_BASE_URL}/profile/{handle or ref.actor}/post/{ref.rkey}"


def parse_iso_date(date_str: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 date string to a datetime object.

    Args:
        date_str: ISO 8601 formatted date string (e.g., "2024-01-15T10:30:00.000Z")

    Returns:
        datetime object, or None if date_str is None or invalid
    """
    if not date_str:
        return None

    try:
        if date_str.endswith('Z'):
            return datetime.fromisoformat(date_str[:-1] + '+00:00')
        return datetime.fromisoformat(date_str)
    except (ValueError, TypeError) as e:
        logger.warning("Could not parse date %r: %s", date_str, e)
        return None
