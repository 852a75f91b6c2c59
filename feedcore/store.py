"""Backing store contract and the in-memory arena implementation."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from datetime import date, datetime
from typing import Any, Optional, Protocol

from feedcore.errors import (
    ArticleNotFoundError,
    FeedNotFoundError,
    StorageError,
)
from feedcore.models import (
    Article,
    Cluster,
    DeadLetterItem,
    EmbeddingQueueItem,
    Feed,
    FeedStatus,
    QueueStatus,
    SyncLog,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


class Store(Protocol):
    """Record storage consumed by every pipeline component."""

    def ping(self) -> bool: ...
    def deferred(self) -> AbstractContextManager[None]: ...

    # Feeds
    def add_feed(self, feed: Feed) -> Feed: ...
    def get_feed(self, feed_id: str) -> Optional[Feed]: ...
    def update_feed(self, feed: Feed) -> Feed: ...
    def delete_feed(self, feed_id: str) -> bool: ...
    def list_feeds(
        self, user_id: Optional[str] = None, status: Optional[FeedStatus] = None
    ) -> list[Feed]: ...
    def due_feeds(self, now: datetime, limit: int) -> list[Feed]: ...

    # Sync logs
    def add_sync_log(self, log: SyncLog) -> SyncLog: ...
    def get_sync_log(self, log_id: str) -> Optional[SyncLog]: ...
    def update_sync_log(self, log: SyncLog) -> SyncLog: ...
    def list_sync_logs(
        self,
        feed_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[SyncLog]: ...

    # Articles
    def create_article_if_absent(self, article: Article) -> tuple[Article, bool]: ...
    def get_article(self, article_id: str) -> Optional[Article]: ...
    def get_article_by_guid(self, feed_id: str, guid: str) -> Optional[Article]: ...
    def update_article(self, article: Article) -> Article: ...
    def list_articles(
        self,
        feed_ids: Optional[Iterable[str]] = None,
        embedded_only: bool = False,
        since: Optional[datetime] = None,
    ) -> list[Article]: ...

    # Embedding queue
    def enqueue_embeddings(
        self,
        article_ids: Sequence[str],
        priority: int,
        max_attempts: int,
        now: datetime,
        user_id: Optional[str] = None,
    ) -> list[EmbeddingQueueItem]: ...
    def get_queue_item(self, item_id: str) -> Optional[EmbeddingQueueItem]: ...
    def get_queue_item_for_article(
        self, article_id: str
    ) -> Optional[EmbeddingQueueItem]: ...
    def next_queue_items(
        self, limit: int, stale_before: Optional[datetime] = None
    ) -> list[EmbeddingQueueItem]: ...
    def update_queue_item(self, item: EmbeddingQueueItem) -> EmbeddingQueueItem: ...
    def delete_queue_item(self, item_id: str) -> bool: ...
    def count_queue_items(self) -> dict[QueueStatus, int]: ...

    # Dead letters
    def add_dead_letter(self, item: DeadLetterItem) -> DeadLetterItem: ...
    def get_dead_letter(self, item_id: str) -> Optional[DeadLetterItem]: ...
    def list_dead_letters(self, limit: Optional[int] = None) -> list[DeadLetterItem]: ...
    def delete_dead_letter(self, item_id: str) -> bool: ...

    # Per-user daily usage
    def consume_daily_quota(
        self, user_id: Optional[str], operation: str, day: date, limit: int
    ) -> bool: ...
    def get_daily_usage(
        self, user_id: Optional[str], operation: str, day: date
    ) -> int: ...

    # Clusters
    def create_cluster(self, cluster: Cluster) -> Cluster: ...
    def get_cluster(self, cluster_id: str) -> Optional[Cluster]: ...
    def list_clusters(self, user_id: Optional[str] = None) -> list[Cluster]: ...
    def delete_cluster(self, cluster_id: str) -> bool: ...
    def delete_clusters_in_scope(self, user_id: Optional[str]) -> int: ...
    def delete_expired_clusters(self, now: datetime) -> list[str]: ...


class MemoryStore:
    """Dict-backed arena implementing Store.

    Every public method runs under one re-entrant lock, so compound
    operations (create-if-absent, enqueue, quota, cluster assignment) are
    atomic. Records are copied on the way in and out; callers persist
    changes through the update_* methods.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._feeds: dict[str, Feed] = {}
        self._sync_logs: dict[str, SyncLog] = {}
        self._articles: dict[str, Article] = {}
        self._article_keys: dict[tuple[str, str], str] = {}
        self._queue: dict[str, EmbeddingQueueItem] = {}
        self._queue_by_article: dict[str, str] = {}
        self._dead_letters: dict[str, DeadLetterItem] = {}
        self._usage: dict[tuple[str, str, str], int] = {}
        self._clusters: dict[str, Cluster] = {}

    def _changed(self) -> None:
        """Hook run after every mutation."""

    @contextmanager
    def deferred(self) -> Iterator[None]:
        """Group several mutations; a no-op for the in-memory arena."""
        with self._lock:
            yield

    def ping(self) -> bool:
        return True

    # Feeds

    def add_feed(self, feed: Feed) -> Feed:
        with self._lock:
            if feed.id in self._feeds:
                raise StorageError(f"Feed {feed.id} already exists")
            self._feeds[feed.id] = copy.copy(feed)
            self._changed()
            return copy.copy(feed)

    def get_feed(self, feed_id: str) -> Optional[Feed]:
        with self._lock:
            feed = self._feeds.get(feed_id)
            return copy.copy(feed) if feed else None

    def update_feed(self, feed: Feed) -> Feed:
        with self._lock:
            if feed.id not in self._feeds:
                raise FeedNotFoundError(feed.id)
            self._feeds[feed.id] = copy.copy(feed)
            self._changed()
            return copy.copy(feed)

    def delete_feed(self, feed_id: str) -> bool:
        with self._lock:
            if self._feeds.pop(feed_id, None) is None:
                return False
            for log_id in [
                log.id for log in self._sync_logs.values() if log.feed_id == feed_id
            ]:
                del self._sync_logs[log_id]
            for article in [
                a for a in self._articles.values() if a.feed_id == feed_id
            ]:
                del self._articles[article.id]
                self._article_keys.pop((article.feed_id, article.guid), None)
                queue_id = self._queue_by_article.pop(article.id, None)
                if queue_id:
                    self._queue.pop(queue_id, None)
            self._changed()
            return True

    def list_feeds(
        self, user_id: Optional[str] = None, status: Optional[FeedStatus] = None
    ) -> list[Feed]:
        with self._lock:
            feeds = [
                copy.copy(f)
                for f in self._feeds.values()
                if (user_id is None or f.user_id == user_id)
                and (status is None or f.status == status)
            ]
        return sorted(
            feeds,
            key=lambda f: (f.created_at.timestamp() if f.created_at else 0.0, f.id),
        )

    def due_feeds(self, now: datetime, limit: int) -> list[Feed]:
        with self._lock:
            due = [
                f
                for f in self._feeds.values()
                if f.status == "active"
                and (f.next_sync_at is None or f.next_sync_at <= now)
            ]
            # Never-synced first, then most overdue.
            due.sort(
                key=lambda f: (
                    f.next_sync_at is not None,
                    f.next_sync_at or now,
                    f.id,
                )
            )
            return [copy.copy(f) for f in due[: max(0, limit)]]

    # Sync logs

    def add_sync_log(self, log: SyncLog) -> SyncLog:
        with self._lock:
            if log.feed_id not in self._feeds:
                raise FeedNotFoundError(log.feed_id)
            self._sync_logs[log.id] = copy.copy(log)
            self._changed()
            return copy.copy(log)

    def get_sync_log(self, log_id: str) -> Optional[SyncLog]:
        with self._lock:
            log = self._sync_logs.get(log_id)
            return copy.copy(log) if log else None

    def update_sync_log(self, log: SyncLog) -> SyncLog:
        with self._lock:
            if log.id not in self._sync_logs:
                raise StorageError(f"Sync log {log.id} not found")
            self._sync_logs[log.id] = copy.copy(log)
            self._changed()
            return copy.copy(log)

    def list_sync_logs(
        self,
        feed_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[SyncLog]:
        with self._lock:
            logs = [
                copy.copy(log)
                for log in self._sync_logs.values()
                if log.feed_id == feed_id and (since is None or log.started_at >= since)
            ]
        logs.sort(key=lambda log: log.started_at, reverse=True)
        return logs[:limit] if limit is not None else logs

    # Articles

    def create_article_if_absent(self, article: Article) -> tuple[Article, bool]:
        """Insert unless (feed_id, guid) exists. Returns (stored, created)."""
        with self._lock:
            key = (article.feed_id, article.guid)
            existing_id = self._article_keys.get(key)
            if existing_id is not None:
                return copy.copy(self._articles[existing_id]), False
            if article.feed_id not in self._feeds:
                raise FeedNotFoundError(article.feed_id)
            self._articles[article.id] = copy.copy(article)
            self._article_keys[key] = article.id
            self._changed()
            return copy.copy(article), True

    def get_article(self, article_id: str) -> Optional[Article]:
        with self._lock:
            article = self._articles.get(article_id)
            return copy.copy(article) if article else None

    def get_article_by_guid(self, feed_id: str, guid: str) -> Optional[Article]:
        with self._lock:
            article_id = self._article_keys.get((feed_id, guid))
            return copy.copy(self._articles[article_id]) if article_id else None

    def update_article(self, article: Article) -> Article:
        with self._lock:
            current = self._articles.get(article.id)
            if current is None:
                raise ArticleNotFoundError(article.id)
            if (current.feed_id, current.guid) != (article.feed_id, article.guid):
                raise StorageError(f"Article {article.id} cannot change its (feed_id, guid)")
            self._articles[article.id] = copy.copy(article)
            self._changed()
            return copy.copy(article)

    def list_articles(
        self,
        feed_ids: Optional[Iterable[str]] = None,
        embedded_only: bool = False,
        since: Optional[datetime] = None,
    ) -> list[Article]:
        wanted = set(feed_ids) if feed_ids is not None else None
        with self._lock:
            result = []
            for a in self._articles.values():
                if wanted is not None and a.feed_id not in wanted:
                    continue
                if embedded_only and not a.has_embedding:
                    continue
                if since is not None:
                    ts = a.timestamp
                    if ts is None or ts < since:
                        continue
                result.append(copy.copy(a))
        return result

    # Embedding queue

    def enqueue_embeddings(
        self,
        article_ids: Sequence[str],
        priority: int,
        max_attempts: int,
        now: datetime,
        user_id: Optional[str] = None,
    ) -> list[EmbeddingQueueItem]:
        """Create one pending item per article id not already queued."""
        created: list[EmbeddingQueueItem] = []
        with self._lock:
            for article_id in dict.fromkeys(article_ids):
                if article_id in self._queue_by_article:
                    continue
                if article_id not in self._articles:
                    raise ArticleNotFoundError(article_id)
                item = EmbeddingQueueItem(
                    id=new_id(),
                    article_id=article_id,
                    user_id=user_id,
                    priority=priority,
                    max_attempts=max_attempts,
                    created_at=now,
                )
                self._queue[item.id] = item
                self._queue_by_article[article_id] = item.id
                created.append(copy.copy(item))
            if created:
                self._changed()
        return created

    def get_queue_item(self, item_id: str) -> Optional[EmbeddingQueueItem]:
        with self._lock:
            item = self._queue.get(item_id)
            return copy.copy(item) if item else None

    def get_queue_item_for_article(
        self, article_id: str
    ) -> Optional[EmbeddingQueueItem]:
        with self._lock:
            item_id = self._queue_by_article.get(article_id)
            return copy.copy(self._queue[item_id]) if item_id else None

    def next_queue_items(
        self, limit: int, stale_before: Optional[datetime] = None
    ) -> list[EmbeddingQueueItem]:
        """Pending items, highest priority first, oldest first within a priority.

        With stale_before, processing items last attempted before it are
        returned too, so work from an interrupted drain is picked up again.
        """
        with self._lock:
            pending = [
                i
                for i in self._queue.values()
                if i.status == "pending"
                or (
                    i.status == "processing"
                    and stale_before is not None
                    and (i.last_attempt_at is None or i.last_attempt_at < stale_before)
                )
            ]
            pending.sort(
                key=lambda i: (
                    -i.priority,
                    i.created_at.timestamp() if i.created_at else 0.0,
                    i.id,
                )
            )
            return [copy.copy(i) for i in pending[: max(0, limit)]]

    def update_queue_item(self, item: EmbeddingQueueItem) -> EmbeddingQueueItem:
        with self._lock:
            if item.id not in self._queue:
                raise StorageError(f"Queue item {item.id} not found")
            self._queue[item.id] = copy.copy(item)
            self._changed()
            return copy.copy(item)

    def delete_queue_item(self, item_id: str) -> bool:
        with self._lock:
            item = self._queue.pop(item_id, None)
            if item is None:
                return False
            self._queue_by_article.pop(item.article_id, None)
            self._changed()
            return True

    def count_queue_items(self) -> dict[QueueStatus, int]:
        counts: dict[QueueStatus, int] = {
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
        }
        with self._lock:
            for item in self._queue.values():
                counts[item.status] += 1
        return counts

    # Dead letters

    def add_dead_letter(self, item: DeadLetterItem) -> DeadLetterItem:
        with self._lock:
            self._dead_letters[item.id] = item
            self._changed()
            return item

    def get_dead_letter(self, item_id: str) -> Optional[DeadLetterItem]:
        with self._lock:
            return self._dead_letters.get(item_id)

    def list_dead_letters(self, limit: Optional[int] = None) -> list[DeadLetterItem]:
        with self._lock:
            items = sorted(
                self._dead_letters.values(), key=lambda d: d.created_at, reverse=True
            )
        return items[:limit] if limit is not None else items

    def delete_dead_letter(self, item_id: str) -> bool:
        with self._lock:
            if self._dead_letters.pop(item_id, None) is None:
                return False
            self._changed()
            return True

    # Per-user daily usage

    @staticmethod
    def _usage_key(user_id: Optional[str], operation: str, day: date) -> tuple[str, str, str]:
        return (user_id or "", operation, day.isoformat())

    def consume_daily_quota(
        self, user_id: Optional[str], operation: str, day: date, limit: int
    ) -> bool:
        """Increment usage if below limit. False means the limit is reached."""
        key = self._usage_key(user_id, operation, day)
        with self._lock:
            used = self._usage.get(key, 0)
            if used >= limit:
                return False
            self._usage[key] = used + 1
            self._changed()
            return True

    def get_daily_usage(self, user_id: Optional[str], operation: str, day: date) -> int:
        with self._lock:
            return self._usage.get(self._usage_key(user_id, operation, day), 0)

    # Clusters

    def create_cluster(self, cluster: Cluster) -> Cluster:
        """Persist a cluster and point every member at it in one step."""
        with self._lock:
            missing = [a for a in cluster.article_ids if a not in self._articles]
            if missing:
                raise ArticleNotFoundError(missing[0])
            self._clusters[cluster.id] = copy.deepcopy(cluster)
            for article_id in cluster.article_ids:
                self._articles[article_id].cluster_id = cluster.id
            self._changed()
            return copy.deepcopy(cluster)

    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            return copy.deepcopy(cluster) if cluster else None

    def list_clusters(self, user_id: Optional[str] = None) -> list[Cluster]:
        """Clusters of one user, or of every scope when user_id is None."""
        with self._lock:
            return [
                copy.deepcopy(c)
                for c in self._clusters.values()
                if user_id is None or c.user_id == user_id
            ]

    def _drop_cluster(self, cluster_id: str) -> None:
        cluster = self._clusters[cluster_id]
        for article_id in cluster.article_ids:
            article = self._articles.get(article_id)
            if article is not None and article.cluster_id == cluster_id:
                article.cluster_id = None
        del self._clusters[cluster_id]

    def delete_cluster(self, cluster_id: str) -> bool:
        with self._lock:
            if cluster_id not in self._clusters:
                return False
            self._drop_cluster(cluster_id)
            self._changed()
            return True

    def delete_clusters_in_scope(self, user_id: Optional[str]) -> int:
        """Drop clusters owned by user_id (None is the global scope)."""
        with self._lock:
            doomed = [c.id for c in self._clusters.values() if c.user_id == user_id]
            for cluster_id in doomed:
                self._drop_cluster(cluster_id)
            if doomed:
                self._changed()
            return len(doomed)

    def delete_expired_clusters(self, now: datetime) -> list[str]:
        with self._lock:
            doomed = [c.id for c in self._clusters.values() if c.is_expired(now)]
            for cluster_id in doomed:
                self._drop_cluster(cluster_id)
            if doomed:
                self._changed()
            return doomed

    # Snapshots

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "feeds": [f.to_dict() for f in self._feeds.values()],
                "sync_logs": [log.to_dict() for log in self._sync_logs.values()],
                "articles": [a.to_dict() for a in self._articles.values()],
                "queue": [i.to_dict() for i in self._queue.values()],
                "dead_letters": [d.to_dict() for d in self._dead_letters.values()],
                "usage": [[*key, count] for key, count in self._usage.items()],
                "clusters": [c.to_dict() for c in self._clusters.values()],
            }

    def restore(self, data: dict[str, Any]) -> None:
        with self._lock:
            self._feeds = {f.id: f for f in map(Feed.from_dict, data.get("feeds", []))}
            self._sync_logs = {
                log.id: log for log in map(SyncLog.from_dict, data.get("sync_logs", []))
            }
            self._articles = {
                a.id: a for a in map(Article.from_dict, data.get("articles", []))
            }
            self._article_keys = {(a.feed_id, a.guid): a.id for a in self._articles.values()}
            self._queue = {
                i.id: i for i in map(EmbeddingQueueItem.from_dict, data.get("queue", []))
            }
            self._queue_by_article = {i.article_id: i.id for i in self._queue.values()}
            self._dead_letters = {
                d.id: d
                for d in map(DeadLetterItem.from_dict, data.get("dead_letters", []))
            }
            self._usage = {
                (str(u), str(op), str(day)): int(count)
                for u, op, day, count in data.get("usage", [])
            }
            self._clusters = {
                c.id: c for c in map(Cluster.from_dict, data.get("clusters", []))
            }


class FallbackStore:
    """Delegates to primary if it answers ping() at construction, else to fallback."""

    def __init__(self, primary: Store, fallback: Store) -> None:
        try:
            healthy = primary.ping()
        except (StorageError, OSError) as e:
            logger.warning("Primary store ping failed: %s", e)
            healthy = False
        if healthy:
            self.active: Store = primary
        else:
            logger.warning(
                "Primary store %s unavailable, using %s",
                type(primary).__name__,
                type(fallback).__name__,
            )
            self.active = fallback
        self.using_fallback = not healthy

    def __getattr__(self, name: str) -> Any:
        return getattr(self.active, name)

