import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from discovery.config import load_config, save_config
from discovery.engine import DiscoveryEngine
from discovery.errors import ConfigurationError, StoreUnavailable
from discovery.logging_config import configure_logging
from discovery.store import load_dump

console = Console()


async def embed_missing(engine: DiscoveryEngine) -> int:
    """Embed dump items that have no vector yet. Returns how many were embedded."""
    store = engine.store
    items = [i for i in await store.recent(0.0, sys.maxsize) if i.embedding is None]
    if not items:
        return 0

    embedded = 0
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
        transient=True,
    ) as progress:
        task = progress.add_task("[cyan]Embedding content...", total=len(items))
        for item in items:
            result = await engine.embedder.embed(item.text)
            if result is not None:
                await store.save_embedding(item.id, result.vector, result.degraded)
                embedded += 1
            progress.advance(task)
    await engine.embedder.drain()
    return embedded


async def discover(args) -> int:
    config = load_config()
    store, graph = load_dump(Path(args.dump))
    engine = DiscoveryEngine(config, store, graph)

    embedded = await embed_missing(engine)
    if embedded:
        console.print(f"[dim]Embedded {embedded} items without a vector.[/]")
        if args.save:
            store.dump(Path(args.dump), graph)

    snapshot = await engine.topics.run_once()
    if snapshot is None or not snapshot.topics:
        console.print("[yellow]No topics formed this run.[/]")
        return 0

    table = Table(title=f"Topics ({len(snapshot.topics)})")
    table.add_column("Title", style="bold")
    table.add_column("Scope")
    table.add_column("Members", justify="right")
    table.add_column("Authors", justify="right")
    table.add_column("Keywords", style="dim")
    for topic in snapshot.topics:
        scope = topic.region or topic.geo_scope.value
        table.add_row(
            topic.title,
            scope,
            str(len(topic.member_ids)),
            str(topic.participant_count),
            ", ".join(topic.keywords),
        )
    console.print(table)

    if args.verbose:
        for topic in snapshot.topics:
            console.print(f"\n[bold green]{topic.title}[/] [dim]({topic.id})[/]")
            console.print(f"   [cyan]Prevailing:[/] {topic.prevailing_position}")
            console.print(f"   [magenta]Critique:[/] {topic.leading_critique}")
    return 0


async def feed(args) -> int:
    config = load_config()
    store, graph = load_dump(Path(args.dump))
    engine = DiscoveryEngine(config, store, graph)

    try:
        weights = json.loads(args.weights) if args.weights else None
        page = await engine.get_page(
            args.user, page_size=args.page_size, weights=weights, seed=args.seed
        )
    except (ConfigurationError, json.JSONDecodeError) as e:
        console.print(f"[red]Invalid weights: {e}[/]")
        return 2
    except StoreUnavailable as e:
        console.print(f"[red]Store unavailable: {e}[/]")
        return 1

    console.print(
        f"\n[bold green]Feed for {args.user}[/] [dim]({page.algorithm}, "
        f"{int(page.stats.get('candidates', 0))} candidates)[/]\n"
    )
    for idx, item in enumerate(page.items, start=1):
        snippet = " ".join(item.text.split())[:100]
        console.print(
            f"{idx:2d}. [bold]{snippet}[/bold] [dim]by {item.author_id}, "
            f"{item.engagement.likes} likes[/dim]"
        )
    if page.weights:
        console.print(f"\n[dim]Weights: {page.weights}[/]")
    return 0


def serve(args) -> int:
    import uvicorn

    if args.dump:
        os.environ["DISCOVERY_DUMP"] = args.dump
    uvicorn.run("discovery.main:app", host=args.host, port=args.port, log_config=None)
    return 0


def set_config(args) -> int:
    try:
        save_config(args.key, args.value)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        return 2
    console.print(f"[green]Saved {args.key} = {args.value}[/]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Semantic content discovery engine")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--dump", help="Seed the in-memory store from a JSON dump")

    p_discover = sub.add_parser("discover", help="Run one clustering pass over a dump")
    p_discover.add_argument("dump", help="Path to a JSON content dump")
    p_discover.add_argument(
        "--save", action="store_true", help="Write computed embeddings back to the dump"
    )
    p_discover.add_argument("-v", "--verbose", action="store_true", help="Show syntheses")

    p_feed = sub.add_parser("feed", help="Draw one ranked feed page for a user")
    p_feed.add_argument("dump", help="Path to a JSON content dump")
    p_feed.add_argument("user", help="User id to rank for")
    p_feed.add_argument("--page-size", type=int, default=None)
    p_feed.add_argument("--seed", type=int, default=None, help="Seed for reproducible draws")
    p_feed.add_argument(
        "--weights", default=None, help='JSON weight overrides, e.g. \'{"recency": 0.5, ...}\''
    )

    p_config = sub.add_parser("config", help="Persist a configuration value")
    p_config.add_argument("key")
    p_config.add_argument("value")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    if args.command == "serve":
        return serve(args)
    if args.command == "config":
        return set_config(args)
    if args.command == "discover":
        return asyncio.run(discover(args))
    return asyncio.run(feed(args))


if __name__ == "__main__":
    sys.exit(main())
