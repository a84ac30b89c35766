"""
Thread tree construction.

Turns one raw ``getPostThread`` payload (nested ThreadViewPost nodes) into a
flat, navigable ThreadTree. No I/O happens here.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .errors import ThreadUnavailableError
from .models import Post, TruncatedPost

logger = logging.getLogger(__name__)

NOT_FOUND_TYPE = "app.bsky.feed.defs#notFoundPost"
BLOCKED_TYPE = "app.bsky.feed.defs#blockedPost"

# Upper bound on ancestor walks; real threads are far shallower
MAX_ANCESTOR_DEPTH = 10000


def is_post_view(node: Any) -> bool:
    """True for a visitable ThreadViewPost, False for NotFound/Blocked markers."""
    if not isinstance(node, dict) or not isinstance(node.get("post"), dict):
        return False
    if node.get("notFound") or node.get("blocked"):
        return False
    return node.get("$type") not in (NOT_FOUND_TYPE, BLOCKED_TYPE)


class ThreadTree:
    """
    Navigable view over the posts reachable from one root.

    Attributes:
        post: The root post
        all_posts: Every post in pre-order, without duplicates
        truncated_posts: Posts that advertise more replies than were returned
    """

    def __init__(
        self,
        post: Post,
        all_posts: List[Post],
        parents: Dict[str, str],
        children: Dict[str, List[str]],
        depths: Dict[str, int],
        truncated_posts: List[TruncatedPost],
    ):
        self.post = post
        self.all_posts = all_posts
        self.truncated_posts = truncated_posts
        self._parents = parents
        self._children = children
        self._depths = depths
        self._by_uri = {p.uri: p for p in all_posts}

    def __len__(self) -> int:
        return len(self.all_posts)

    def __contains__(self, uri: str) -> bool:
        return uri in self._by_uri

    def get_post(self, uri: str) -> Optional[Post]:
        return self._by_uri.get(uri)

    def get_parent(self, uri: str) -> Optional[str]:
        """Parent URI, or None for the root and for posts with no parent in the tree."""
        return self._parents.get(uri)

    def get_children(self, uri: str) -> List[str]:
        return list(self._children.get(uri, []))

    def get_depth(self, uri: str) -> Optional[int]:
        """Distance from the root (root is 0), or None if the URI isn't in the tree."""
        return self._depths.get(uri)

    def get_branch_authors(self, uri: str) -> List[str]:
        """
        Author DIDs on the path from the root down to ``uri``.

        Each author appears once, at the position of their first post on
        the path (root author first).
        """
        chain = []
        seen_uris = set()
        current: Optional[str] = uri
        while current is not None and current not in seen_uris:
            if len(chain) >= MAX_ANCESTOR_DEPTH:
                logger.warning("Ancestor walk for %s exceeded %d steps", uri, MAX_ANCESTOR_DEPTH)
                break
            seen_uris.add(current)
            post = self._by_uri.get(current)
            if post is not None:
                chain.append(post.author.did)
            current = self._parents.get(current)

        authors: List[str] = []
        for did in reversed(chain):
            if did not in authors:
                authors.append(did)
        return authors

    def flatten_posts(self) -> List[Post]:
        return list(self.all_posts)


class ThreadBuilder:
    """Builds ThreadTree objects from API payloads or from flat post lists."""

    def build_tree(self, root: Any) -> ThreadTree:
        """
        Build a tree from a ``getPostThread`` thread node.

        Traversal is depth-first pre-order with an explicit stack, so very
        deep threads don't hit the recursion limit. NotFound/Blocked nodes
        are skipped along with their replies, as is any node whose URI was
        already seen in this payload.

        Raises:
            ThreadUnavailableError: if the root itself is NotFound/Blocked
        """
        if not is_post_view(root):
            uri = root.get("uri") if isinstance(root, dict) else None
            raise ThreadUnavailableError(
                f"Root post is not available (deleted or blocked): {uri}"
            )

        all_posts: List[Post] = []
        parents: Dict[str, str] = {}
        children: Dict[str, List[str]] = {}
        depths: Dict[str, int] = {}
        truncated: List[TruncatedPost] = []

        # (node, parent uri, depth)
        stack = [(root, None, 0)]
        while stack:
            node, parent_uri, depth = stack.pop()
            post = Post.from_dict(node["post"])
            if post.uri in depths:
                continue

            all_posts.append(post)
            depths[post.uri] = depth
            if parent_uri is not None:
                parents[post.uri] = parent_uri
                children.setdefault(parent_uri, []).append(post.uri)

            replies = node.get("replies") or []
            if post.reply_count > len(replies):
                truncated.append(TruncatedPost(
                    uri=post.uri,
                    expected_replies=post.reply_count,
                    actual_replies=len(replies),
                ))

            visitable = [r for r in replies if is_post_view(r)]
            for reply in reversed(visitable):
                stack.append((reply, post.uri, depth + 1))

        if truncated:
            logger.debug("Thread %s: %d posts, %d truncated",
                         all_posts[0].uri, len(all_posts), len(truncated))

        return ThreadTree(
            post=all_posts[0],
            all_posts=all_posts,
            parents=parents,
            children=children,
            depths=depths,
            truncated_posts=truncated,
        )

    def build_from_posts(self, root: Post, posts: Iterable[Post]) -> ThreadTree:
        """
        Build a tree over an already-collected post list (e.g. a crawl result).

        Parent links come from each post's ``reply_parent_uri``; a post whose
        parent isn't in the list (a quote post, or a reply to something never
        fetched) has no parent. Depths are counted from the root, or from the
        nearest parentless ancestor. No truncation records are produced.
        """
        all_posts: List[Post] = []
        seen = set()
        for post in [root, *posts]:
            if post.uri not in seen:
                seen.add(post.uri)
                all_posts.append(post)

        parents: Dict[str, str] = {}
        children: Dict[str, List[str]] = {}
        for post in all_posts[1:]:
            parent_uri = post.reply_parent_uri
            if parent_uri in seen and parent_uri != post.uri:
                parents[post.uri] = parent_uri
                children.setdefault(parent_uri, []).append(post.uri)

        depths: Dict[str, int] = {}
        for post in all_posts:
            depths[post.uri] = self._depth_via_parents(post.uri, parents)

        return ThreadTree(
            post=root,
            all_posts=all_posts,
            parents=parents,
            children=children,
            depths=depths,
            truncated_posts=[],
        )

    @staticmethod
    def _depth_via_parents(uri: str, parents: Dict[str, str]) -> int:
        depth = 0
        seen = {uri}
        current = parents.get(uri)
        while current is not None and current not in seen and depth < MAX_ANCESTOR_DEPTH:
            seen.add(current)
            depth += 1
            current = parents.get(current)
        return depth
