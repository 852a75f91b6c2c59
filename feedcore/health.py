from __future__ import annotations

from datetime import timedelta
from typing import Optional

from feedcore.constants import HEALTH_DEFAULT_DAYS, HEALTH_RECENT_SYNCS
from feedcore.errors import FeedNotFoundError
from feedcore.models import Clock, Feed, FeedHealthStats, SyncLog, SyncLogSummary, utcnow
from feedcore.store import Store


def _summarize(log: SyncLog) -> SyncLogSummary:
    return {
        "id": log.id,
        "status": log.status,
        "started_at": log.started_at.isoformat(),
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
        "duration_ms": log.duration_ms,
        "http_status_code": log.http_status_code,
        "articles_found": log.articles_found,
        "articles_new": log.articles_new,
        "articles_updated": log.articles_updated,
        "error_message": log.error_message,
    }


def _feed_stats(store: Store, feed: Feed, days: int, clock: Clock) -> FeedHealthStats:
    since = clock() - timedelta(days=days)
    logs = store.list_sync_logs(feed.id, since=since)  # Newest first
    completed = [log for log in logs if log.status != "in_progress"]
    successes = [log for log in completed if log.status == "success"]
    failures = [log for log in completed if log.status == "error"]
    durations = [log.duration_ms for log in completed if log.duration_ms is not None]

    last_error: Optional[str] = feed.last_error
    if last_error is None and failures:
        last_error = failures[0].error_message

    return {
        "feed_id": feed.id,
        "feed_name": feed.name,
        "url": feed.url,
        "status": feed.status,
        "priority": feed.priority,
        "total_syncs": len(completed),
        "successful_syncs": len(successes),
        "failed_syncs": len(failures),
        "success_rate": round(len(successes) / len(completed) * 100, 1) if completed else 0.0,
        "avg_duration_ms": round(sum(durations) / len(durations), 1) if durations else 0.0,
        "total_new_articles": sum(log.articles_new for log in successes),
        "consecutive_failures": feed.consecutive_failures,
        "last_sync_at": logs[0].started_at.isoformat() if logs else None,
        "next_sync_at": feed.next_sync_at.isoformat() if feed.next_sync_at else None,
        "last_error": last_error,
        "recent_syncs": [_summarize(log) for log in logs[:HEALTH_RECENT_SYNCS]],
    }


def get_feed_health_stats(
    store: Store,
    feed_id: str,
    days: int = HEALTH_DEFAULT_DAYS,
    clock: Clock = utcnow,
) -> FeedHealthStats:
    """Success rate, last error and recent history of one feed over `days`."""
    feed = store.get_feed(feed_id)
    if feed is None:
        raise FeedNotFoundError(feed_id)
    return _feed_stats(store, feed, days, clock)


def get_all_feeds_health_stats(
    store: Store,
    user_id: Optional[str] = None,
    days: int = HEALTH_DEFAULT_DAYS,
    clock: Clock = utcnow,
) -> list[FeedHealthStats]:
    """Health of every feed of a user, unhealthiest first."""
    stats = [_feed_stats(store, feed, days, clock) for feed in store.list_feeds(user_id=user_id)]
    stats.sort(key=lambda s: (s["status"] != "error", s["success_rate"] if s["total_syncs"] else 100.0))
    return stats
