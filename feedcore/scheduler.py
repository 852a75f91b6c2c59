"""Due-set selection and next-sync computation for feeds."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Optional, cast

from feedcore.config import PRIORITIES, Settings
from feedcore.constants import DEFAULT_PRIORITY
from feedcore.errors import FeedNotFoundError, InvalidPriorityError
from feedcore.models import Clock, Feed, FeedPriority, ScheduleEntry, utcnow
from feedcore.retry import RetryPolicy
from feedcore.store import Store, new_id
from feedcore.url_utils import host_matches

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Scheduler:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        clock: Clock = utcnow,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy.for_feeds(settings)

    # Intervals

    def validate_priority(self, priority: str) -> FeedPriority:
        if priority not in PRIORITIES:
            raise InvalidPriorityError(priority)
        return cast(FeedPriority, priority)

    def default_priority(self, url: str) -> FeedPriority:
        if host_matches(url, self.settings.high_priority_sources):
            return "high"
        return cast(FeedPriority, DEFAULT_PRIORITY)

    def interval_for(self, feed: Feed) -> float:
        """Base interval in hours: custom override, else the priority tier."""
        if feed.custom_interval_hours:
            return float(feed.custom_interval_hours)
        return self.settings.interval_hours(feed.priority)

    def backoff_interval(self, feed: Feed) -> float:
        return self.retry_policy.backoff(
            self.interval_for(feed), feed.consecutive_failures
        )

    # Feed lifecycle

    def create_feed(
        self,
        user_id: str,
        url: str,
        name: str = "",
        priority: Optional[str] = None,
    ) -> Feed:
        tier = (
            self.validate_priority(priority)
            if priority is not None
            else self.default_priority(url)
        )
        feed = Feed(
            id=new_id(),
            user_id=user_id,
            url=url,
            name=name or url,
            priority=tier,
            sync_interval_hours=self.settings.interval_hours(tier),
            next_sync_at=None,  # Never synced: first in the due set
            created_at=self.clock(),
        )
        self.store.add_feed(feed)
        logger.info("Subscribed %s to %s (priority=%s)", user_id, url, tier)
        return feed

    def _require(self, feed_id: str) -> Feed:
        feed = self.store.get_feed(feed_id)
        if feed is None:
            raise FeedNotFoundError(feed_id)
        return feed

    # Due set

    def get_due_feeds(self, limit: Optional[int] = None) -> list[Feed]:
        limit = self.settings.scheduler_batch_limit if limit is None else limit
        return self.store.due_feeds(self.clock(), limit)

    def claim_due_feeds(self, limit: Optional[int] = None) -> list[Feed]:
        """Select the due set and push each feed's next_sync_at forward.

        The advance happens before any fetch, so a concurrent pass does not
        pick the same feeds. The real next_sync_at is written once the sync
        completes.
        """
        now = self.clock()
        claimed: list[Feed] = []
        with self.store.deferred():
            for feed in self.get_due_feeds(limit):
                original_next = feed.next_sync_at
                feed.next_sync_at = now + timedelta(hours=self.interval_for(feed))
                self.store.update_feed(feed)
                feed.next_sync_at = original_next
                claimed.append(feed)
        return claimed

    def release_feeds(self, feeds: list[Feed]) -> None:
        """Undo a claim for feeds that were never synced."""
        with self.store.deferred():
            for claimed in feeds:
                feed = self.store.get_feed(claimed.id)
                if feed is None:
                    continue
                feed.next_sync_at = claimed.next_sync_at
                self.store.update_feed(feed)

    def update_feed_schedule(
        self,
        feed_id: str,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[Feed]:
        """Record a completed attempt and set next_sync_at.

        Returns None when the feed was deleted mid-batch.
        """
        feed = self.store.get_feed(feed_id)
        if feed is None:
            logger.info("Feed %s disappeared before its schedule update", feed_id)
            return None

        now = self.clock()
        if success:
            if feed.status == "error":
                feed.status = "active"
            feed.consecutive_failures = 0
            feed.last_error = None
            feed.last_fetched_at = now
            hours = self.interval_for(feed)
        else:
            feed.consecutive_failures += 1
            feed.last_error = error_message
            hours = self.backoff_interval(feed)
            if (
                feed.status == "active"
                and self.retry_policy.exhausted(feed.consecutive_failures)
            ):
                feed.status = "error"
                logger.warning(
                    "Feed %s marked as error after %d consecutive failures",
                    feed_id,
                    feed.consecutive_failures,
                )

        feed.sync_interval_hours = self.interval_for(feed)
        feed.next_sync_at = now + timedelta(hours=hours)
        try:
            return self.store.update_feed(feed)
        except FeedNotFoundError:
            logger.info("Feed %s deleted during schedule update", feed_id)
            return None

    # Operator overrides

    def _reschedule_from_last_fetch(self, feed: Feed) -> None:
        feed.sync_interval_hours = self.interval_for(feed)
        anchor = feed.last_fetched_at or self.clock()
        feed.next_sync_at = anchor + timedelta(hours=feed.sync_interval_hours)

    def update_feed_priority(self, feed_id: str, priority: str) -> Feed:
        tier = self.validate_priority(priority)
        feed = self._require(feed_id)
        feed.priority = tier
        self._reschedule_from_last_fetch(feed)
        logger.info("Feed %s priority set to %s", feed_id, tier)
        return self.store.update_feed(feed)

    def bulk_update_priorities(
        self, updates: Mapping[str, str]
    ) -> tuple[list[Feed], dict[str, str]]:
        """Apply several priority changes; one bad entry does not stop the rest."""
        updated: list[Feed] = []
        failures: dict[str, str] = {}
        for feed_id, priority in updates.items():
            try:
                updated.append(self.update_feed_priority(feed_id, priority))
            except (FeedNotFoundError, InvalidPriorityError) as e:
                failures[feed_id] = str(e)
        return updated, failures

    def set_custom_interval(self, feed_id: str, hours: Optional[float]) -> Feed:
        if hours is not None and hours <= 0:
            raise ValueError(f"Custom interval must be positive, got {hours}")
        feed = self._require(feed_id)
        feed.custom_interval_hours = hours
        self._reschedule_from_last_fetch(feed)
        return self.store.update_feed(feed)

    def trigger_manual_sync(self, feed_ids: Iterable[str]) -> list[str]:
        """Make the given feeds due now. Unknown ids are skipped."""
        now = self.clock()
        triggered: list[str] = []
        for feed_id in feed_ids:
            feed = self.store.get_feed(feed_id)
            if feed is None:
                logger.warning("Manual sync requested for unknown feed %s", feed_id)
                continue
            feed.next_sync_at = now
            self.store.update_feed(feed)
            triggered.append(feed_id)
        return triggered

    def resume_feed(self, feed_id: str) -> Feed:
        feed = self._require(feed_id)
        feed.status = "active"
        feed.consecutive_failures = 0
        feed.last_error = None
        feed.next_sync_at = self.clock()
        return self.store.update_feed(feed)

    def pause_feed(self, feed_id: str) -> Feed:
        feed = self._require(feed_id)
        feed.status = "paused"
        return self.store.update_feed(feed)

    def get_sync_schedule(self, user_id: Optional[str] = None) -> list[ScheduleEntry]:
        entries: list[ScheduleEntry] = []
        for feed in self.store.list_feeds(user_id=user_id):
            entries.append(
                {
                    "feed_id": feed.id,
                    "name": feed.name,
                    "status": feed.status,
                    "priority": feed.priority,
                    "interval_hours": self.interval_for(feed),
                    "custom_interval": feed.custom_interval_hours is not None,
                    "last_fetched_at": _iso(feed.last_fetched_at),
                    "next_sync_at": _iso(feed.next_sync_at),
                }
            )
        entries.sort(key=lambda e: (e["next_sync_at"] is not None, e["next_sync_at"] or ""))
        return entries
