from datetime import timedelta

import pytest

from feedcore.errors import FeedNotFoundError
from feedcore.health import get_all_feeds_health_stats, get_feed_health_stats
from feedcore.models import SyncLog


@pytest.fixture
def add_log(store, clock):
    counter = {"n": 0}

    def _add(feed_id, status="success", hours_ago=0, duration_ms=100, articles_new=0, error=None):
        counter["n"] += 1
        started = clock() - timedelta(hours=hours_ago)
        log = SyncLog(
            id=f"log-{counter['n']}",
            feed_id=feed_id,
            started_at=started,
            status=status,
            completed_at=None if status == "in_progress" else started + timedelta(milliseconds=duration_ms),
            duration_ms=None if status == "in_progress" else duration_ms,
            http_status_code=200 if status == "success" else 500,
            articles_new=articles_new,
            error_message=error,
        )
        return store.add_sync_log(log)

    return _add


def test_feed_health_counts_and_rates(store, make_feed, add_log, clock):
    feed = make_feed()
    add_log(feed.id, "success", hours_ago=3, duration_ms=100, articles_new=4)
    add_log(feed.id, "success", hours_ago=2, duration_ms=300, articles_new=1)
    add_log(feed.id, "error", hours_ago=1, duration_ms=200, error="HTTP 500")
    add_log(feed.id, "success", hours_ago=0.5, duration_ms=200)

    stats = get_feed_health_stats(store, feed.id, clock=clock)

    assert stats["total_syncs"] == 4
    assert stats["successful_syncs"] == 3
    assert stats["failed_syncs"] == 1
    assert stats["success_rate"] == 75.0
    assert stats["avg_duration_ms"] == 200.0
    assert stats["total_new_articles"] == 5
    assert stats["last_error"] == "HTTP 500"
    assert stats["feed_name"] == feed.name


def test_recent_syncs_newest_first(store, make_feed, add_log, clock):
    feed = make_feed()
    for hours in range(12, 0, -1):
        add_log(feed.id, hours_ago=hours)

    stats = get_feed_health_stats(store, feed.id, clock=clock)

    recent = stats["recent_syncs"]
    assert len(recent) == 10
    starts = [r["started_at"] for r in recent]
    assert starts == sorted(starts, reverse=True)
    assert stats["last_sync_at"] == starts[0]


def test_window_excludes_old_logs(store, make_feed, add_log, clock):
    feed = make_feed()
    add_log(feed.id, "error", hours_ago=24 * 10, error="old failure")
    add_log(feed.id, "success", hours_ago=1)

    assert get_feed_health_stats(store, feed.id, days=7, clock=clock)["total_syncs"] == 1
    assert get_feed_health_stats(store, feed.id, days=30, clock=clock)["total_syncs"] == 2


def test_in_progress_sync_is_not_counted(store, make_feed, add_log, clock):
    feed = make_feed()
    add_log(feed.id, "success", hours_ago=2)
    add_log(feed.id, "in_progress")

    stats = get_feed_health_stats(store, feed.id, clock=clock)
    assert stats["total_syncs"] == 1
    assert stats["success_rate"] == 100.0
    assert len(stats["recent_syncs"]) == 2


def test_feed_without_history(store, make_feed, clock):
    feed = make_feed()
    stats = get_feed_health_stats(store, feed.id, clock=clock)

    assert stats["total_syncs"] == 0
    assert stats["success_rate"] == 0.0
    assert stats["avg_duration_ms"] == 0.0
    assert stats["last_sync_at"] is None
    assert stats["recent_syncs"] == []


def test_feed_last_error_wins_over_log(store, make_feed, add_log, clock):
    feed = make_feed(last_error="connection refused")
    add_log(feed.id, "error", hours_ago=1, error="HTTP 500")

    assert get_feed_health_stats(store, feed.id, clock=clock)["last_error"] == "connection refused"


def test_unknown_feed_raises(store):
    with pytest.raises(FeedNotFoundError):
        get_feed_health_stats(store, "missing")


def test_all_feeds_unhealthiest_first(store, make_feed, add_log, clock):
    healthy = make_feed()
    flaky = make_feed()
    broken = make_feed(status="error", consecutive_failures=3)
    make_feed(user_id="u2")
    add_log(healthy.id, "success", hours_ago=1)
    add_log(flaky.id, "success", hours_ago=2)
    add_log(flaky.id, "error", hours_ago=1, error="timeout")
    add_log(broken.id, "error", hours_ago=1, error="HTTP 404")

    stats = get_all_feeds_health_stats(store, user_id="u1", clock=clock)

    assert [s["feed_id"] for s in stats] == [broken.id, flaky.id, healthy.id]
    assert stats[0]["consecutive_failures"] == 3
