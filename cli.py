import argparse
import asyncio
import sys
from dataclasses import replace
from pathlib import Path

from rich.console import Console

from feedcore.config import load_config, load_settings, save_config
from feedcore.errors import FeedcoreError
from feedcore.json_store import open_store
from feedcore.logging_config import configure_logging
from feedcore.pipeline import Pipeline

console = Console()


def _config_path(args):
    return Path(args.config) if args.config else None


def resolve_user(args):
    """--user wins; otherwise the user saved by a previous run."""
    if getattr(args, "user", None):
        return args.user
    return load_config(_config_path(args)).get("user_id")


def build_pipeline(args):
    settings = load_settings(_config_path(args))
    if args.store:
        settings = replace(settings, store_path=args.store)
    return Pipeline(open_store(settings), settings)


def _status_color(status):
    return {"success": "green", "active": "green", "error": "red", "paused": "yellow"}.get(
        status, "white"
    )


async def cmd_sync(pipeline, args):
    result = await pipeline.run_scheduler_pass(batch_limit=args.limit)
    console.print(
        f"[bold]Synced {len(result.results)} of {result.feeds_due} due feeds[/] "
        f"([green]{result.succeeded} ok[/], [red]{result.failed} failed[/])"
    )
    for r in result.results:
        if r.not_modified:
            detail = "[dim]not modified[/]"
        elif r.success:
            detail = f"{r.articles_new} new, {r.articles_updated} updated"
        else:
            detail = f"[red]{r.error}[/]"
        console.print(f"   {r.feed_id}  {detail}")
    # Embed what this pass found so clustering sees it.
    if args.drain:
        await cmd_drain(pipeline, argparse.Namespace(limit=None))


async def cmd_drain(pipeline, args):
    result = await pipeline.run_embedding_queue_drain(limit=args.limit)
    console.print(
        f"[bold]Embedded {result.succeeded}[/] of {result.processed} processed "
        f"([yellow]{result.failed} failed[/], [red]{result.dead_lettered} dead-lettered[/], "
        f"{result.deferred} deferred, {result.skipped} unchanged); {result.remaining} pending"
    )


async def cmd_cluster(pipeline, args):
    user_id = resolve_user(args) if not args.all_users else None
    result = await pipeline.run_clustering_pass(
        user_id=user_id, time_window_hours=args.window
    )
    console.print(
        f"[bold green]{result.clusters_created} clusters[/] from {result.candidates} articles "
        f"({result.groups} groups, {result.rejected} rejected, {result.replaced} replaced)"
    )


async def cmd_expire(pipeline, args):
    deleted = pipeline.delete_expired_clusters()
    removed = pipeline.cleanup_similar_cache()
    console.print(f"Deleted {len(deleted)} expired clusters, {removed} cache entries")


async def cmd_clusters(pipeline, args):
    clusters = pipeline.get_clusters(
        user_id=resolve_user(args), include_expired=args.include_expired, limit=args.top
    )
    if not clusters:
        console.print("[yellow]No clusters.[/]")
        return
    for c in clusters:
        console.print(
            f"[bold]{c.title}[/] [dim]({c.article_count} articles, "
            f"{len(c.source_feeds)} sources, {c.generation_method})[/]"
        )
        console.print(f"   {c.summary}")
        console.print(
            f"   [dim]relevance {c.relevance_score:.2f}, similarity {c.avg_similarity:.2f}, "
            f"expires {c.expires_at:%Y-%m-%d %H:%M}[/]"
        )
        console.print("")


async def cmd_health(pipeline, args):
    if args.feed_id:
        stats = [pipeline.get_feed_health_stats(args.feed_id, days=args.days)]
    else:
        stats = pipeline.get_all_feeds_health_stats(resolve_user(args), days=args.days)
    if not stats:
        console.print("[yellow]No feeds.[/]")
        return
    for s in stats:
        color = _status_color(s["status"])
        console.print(
            f"[{color}]{s['status']:>7}[/{color}] [bold]{s['feed_name']}[/] "
            f"[dim]{s['priority']}[/] {s['success_rate']:.1f}% of {s['total_syncs']} syncs, "
            f"{s['total_new_articles']} new"
        )
        if s["last_error"]:
            console.print(f"   [red]{s['last_error']}[/]")
        if s["next_sync_at"]:
            console.print(f"   [dim]next sync {s['next_sync_at']}[/]")


async def cmd_similar(pipeline, args):
    user_id = resolve_user(args)
    if not user_id:
        console.print("[red]Error: no user. Pass --user once to save it.[/]")
        return 1
    result = pipeline.find_similar_articles(args.article_id, user_id)
    if not result.results:
        console.print(f"[yellow]{result.message}[/]")
        return 0
    for item in result.results:
        color = "green" if item.similarity > 0.85 else "yellow"
        console.print(f"[{color}]{item.similarity:.2f}[/{color}] [bold]{item.title}[/]")
        if item.url:
            console.print(f"   [dim cyan]{item.url}[/]")


async def cmd_dead_letters(pipeline, args):
    stats = pipeline.queue_stats()
    console.print(
        f"[dim]queue: {stats['pending']} pending, {stats['processing']} processing, "
        f"{stats['dead_letters']} dead letters[/]"
    )
    for dead in pipeline.list_dead_letters(limit=args.limit):
        console.print(
            f"[red]{dead.id}[/] {dead.payload.get('title', '')} "
            f"[dim]({dead.attempts} attempts, {dead.created_at:%Y-%m-%d %H:%M})[/]"
        )
        console.print(f"   {dead.error_message}")


async def cmd_requeue(pipeline, args):
    item = pipeline.requeue_dead_letter(args.dead_letter_id)
    console.print(f"Requeued article {item.article_id}")


async def cmd_add_feed(pipeline, args):
    user_id = resolve_user(args)
    if not user_id:
        console.print("[red]Error: no user. Pass --user once to save it.[/]")
        return 1
    feed = pipeline.add_feed(user_id, args.url, name=args.name or "", priority=args.priority)
    console.print(
        f"Subscribed to [bold]{feed.name}[/] ({feed.priority}, "
        f"every {feed.sync_interval_hours:g}h) as {feed.id}"
    )


async def cmd_schedule(pipeline, args):
    for entry in pipeline.get_sync_schedule(resolve_user(args)):
        custom = " custom" if entry["custom_interval"] else ""
        console.print(
            f"{entry['next_sync_at'] or 'due now':>32}  [bold]{entry['name']}[/] "
            f"[dim]{entry['priority']} {entry['interval_hours']:g}h{custom}[/]"
        )


async def cmd_priority(pipeline, args):
    feed = pipeline.update_feed_priority(args.feed_id, args.priority)
    console.print(f"{feed.name}: {feed.priority}, next sync {feed.next_sync_at}")


async def cmd_resume(pipeline, args):
    feed = pipeline.resume_feed(args.feed_id)
    console.print(f"Resumed {feed.name}")


COMMANDS = {
    "sync": cmd_sync,
    "drain": cmd_drain,
    "cluster": cmd_cluster,
    "expire": cmd_expire,
    "clusters": cmd_clusters,
    "health": cmd_health,
    "similar": cmd_similar,
    "dead-letters": cmd_dead_letters,
    "requeue": cmd_requeue,
    "add-feed": cmd_add_feed,
    "schedule": cmd_schedule,
    "priority": cmd_priority,
    "resume": cmd_resume,
}


async def main(args):
    # Save for next time if explicit
    if getattr(args, "user", None):
        save_config("user_id", args.user, _config_path(args))

    try:
        pipeline = build_pipeline(args)
    except FeedcoreError as e:
        console.print(f"[red]Error: {e}[/]")
        return 1
    try:
        return await COMMANDS[args.command](pipeline, args) or 0
    except (FeedcoreError, LookupError, ValueError) as e:
        console.print(f"[red]Error: {e}[/]")
        return 1
    finally:
        await pipeline.aclose()


def build_parser():
    parser = argparse.ArgumentParser(description="Feed ingestion and topic clustering")
    parser.add_argument("--config", help="Path to the JSON config file")
    parser.add_argument("--store", help="Path to the JSON store (overrides store_path)")
    parser.add_argument("--user", help="User id (saved for later runs)")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="Fetch every due feed")
    p.add_argument("--limit", type=int, default=None, help="Max feeds this pass")
    p.add_argument("--drain", action="store_true", help="Drain the embedding queue afterwards")

    p = sub.add_parser("drain", help="Embed queued articles")
    p.add_argument("--limit", type=int, default=None, help="Max queue items this pass")

    p = sub.add_parser("cluster", help="Recompute topic clusters")
    p.add_argument("--window", type=float, default=None, help="Time window in hours")
    p.add_argument(
        "--all-users", action="store_true", help="Cluster across every feed in the store"
    )

    sub.add_parser("expire", help="Delete expired clusters and stale cache entries")

    p = sub.add_parser("clusters", help="List current clusters")
    p.add_argument("--top", type=int, default=10, help="Number of clusters (default: 10)")
    p.add_argument("--include-expired", action="store_true")

    p = sub.add_parser("health", help="Feed health report")
    p.add_argument("feed_id", nargs="?", help="Single feed (default: all of the user's)")
    p.add_argument("--days", type=int, default=7, help="Look-back in days (default: 7)")

    p = sub.add_parser("similar", help="Articles similar to one article")
    p.add_argument("article_id")

    p = sub.add_parser("dead-letters", help="List dead-lettered embeddings")
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("requeue", help="Requeue a dead-lettered embedding")
    p.add_argument("dead_letter_id")

    p = sub.add_parser("add-feed", help="Subscribe to a feed")
    p.add_argument("url")
    p.add_argument("--name", default=None)
    p.add_argument("--priority", choices=("high", "medium", "low"), default=None)

    sub.add_parser("schedule", help="Show when each feed syncs next")

    p = sub.add_parser("priority", help="Change a feed's priority")
    p.add_argument("feed_id")
    p.add_argument("priority", choices=("high", "medium", "low"))

    p = sub.add_parser("resume", help="Reactivate a feed in error status")
    p.add_argument("feed_id")

    return parser


if __name__ == "__main__":
    args = build_parser().parse_args()
    configure_logging(args.log_level)
    sys.exit(asyncio.run(main(args)))
