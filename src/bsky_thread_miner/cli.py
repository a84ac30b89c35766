"""CLI interface for bsky-thread-miner."""

import asyncio
import logging
from pathlib import Path

import click
import orjson
from tqdm import tqdm

from .client import BlueskyClient
from .errors import InvalidPostUrlError
from .fetcher import MAX_QUOTE_DEPTH, MIN_QUOTES_FOR_CRAWL, ThreadFetcher
from .models import FetchProgress, ThreadFetchResult
from .thread_builder import ThreadBuilder
from .utils import PostRef, build_at_uri, parse_post_url

logger = logging.getLogger(__name__)


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def main(verbose):
    """bsky-thread-miner - Crawl complete Bluesky threads, quotes included."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.argument('url')
@click.option(
    '--output', '-o',
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help='Output JSON file (default: thread_<rkey>.json)'
)
@click.option(
    '--min-quotes',
    type=click.IntRange(min=1),
    default=MIN_QUOTES_FOR_CRAWL,
    show_default=True,
    help='Quote count at which a post\'s own quotes are crawled'
)
@click.option(
    '--max-quote-depth',
    type=click.IntRange(min=0),
    default=MAX_QUOTE_DEPTH,
    show_default=True,
    help='Maximum quote-of-quote hops (0 disables the recursive crawl)'
)
def fetch(url, output, min_quotes, max_quote_depth):
    """Fetch every post of the thread at URL (bsky.app link or at:// URI)."""
    try:
        ref = parse_post_url(url)
    except InvalidPostUrlError as e:
        raise click.BadParameter(str(e), param_hint='URL')

    output = output or Path(f"thread_{ref.rkey}.json")
    result = asyncio.run(_fetch(ref, min_quotes, max_quote_depth))
    if result.root_post is None:
        raise click.ClickException(f"Could not fetch thread {url}")

    _write_result(result, output)
    stats = result.stats
    click.echo(
        f"Collected {len(result.all_posts)} posts "
        f"(thread {stats.thread}, truncated {stats.truncated}, quotes {stats.quotes}, "
        f"recursive {stats.recursive}; {stats.failed_fetches} failed fetches) -> {output}"
    )


async def _fetch(ref: PostRef, min_quotes: int, max_quote_depth: int) -> ThreadFetchResult:
    """Resolve the post's DID if needed, then run the crawl with a progress bar."""
    async with BlueskyClient() as client:
        actor = ref.actor
        if not ref.is_did:
            resolved = await client.resolve_handle(actor)
            if not resolved.ok:
                raise click.ClickException(f"Could not resolve handle {actor}: {resolved.error}")
            actor = resolved.value

        fetcher = ThreadFetcher(
            client,
            min_quotes_for_crawl=min_quotes,
            max_quote_depth=max_quote_depth,
        )

        with tqdm(desc="Fetching posts", unit="post") as pbar:
            def on_progress(progress: FetchProgress):
                pbar.set_postfix(stage=progress.stage)

            result = await fetcher.fetch(
                build_at_uri(actor, ref.rkey),
                on_progress=on_progress,
                on_posts_batch=lambda posts: pbar.update(len(posts)),
            )

        logger.info("API traffic:\n%s", client.stats.get_summary())
        return result


def _write_result(result: ThreadFetchResult, output: Path):
    """Write the crawl result as JSON, adding branch authors per post.

    Written to a temp file first and renamed, so a crash never leaves a
    half-written file behind.
    """
    data = result.to_dict()
    tree = ThreadBuilder().build_from_posts(result.root_post, result.all_posts)
    for post in data["posts"]:
        post["branch_authors"] = tree.get_branch_authors(post["uri"])

    output.parent.mkdir(parents=True, exist_ok=True)
    tmp = output.with_suffix('.tmp')
    tmp.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))
    tmp.replace(output)


if __name__ == '__main__':
    main()
