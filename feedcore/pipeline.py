"""Facade over one store: every pipeline pass and operator operation."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from typing import Optional

from feedcore.clustering import ClusterLabeller, ClusteringEngine
from feedcore.config import Settings
from feedcore.constants import CLUSTER_LIST_LIMIT, HEALTH_DEFAULT_DAYS
from feedcore.embedding import EmbeddingProvider, OpenAIEmbeddingProvider
from feedcore.embedding_queue import EmbeddingQueueManager
from feedcore.health import get_all_feeds_health_stats, get_feed_health_stats
from feedcore.logging_config import get_logger
from feedcore.models import (
    CacheStats,
    Clock,
    Cluster,
    ClusteringResult,
    DeadLetterItem,
    DrainResult,
    EmbeddingQueueItem,
    Feed,
    FeedHealthStats,
    QueueStats,
    ScheduleEntry,
    SchedulerPassResult,
    SimilarArticlesResult,
    utcnow,
)
from feedcore.scheduler import Scheduler
from feedcore.similar import SimilarArticlesService
from feedcore.store import Store
from feedcore.sync import SyncExecutor

log = get_logger(__name__)


class Pipeline:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        provider: Optional[EmbeddingProvider] = None,
        labeller: Optional[ClusterLabeller] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.provider = provider or OpenAIEmbeddingProvider(settings)
        self.labeller = labeller or ClusterLabeller(settings)

        self.similar = SimilarArticlesService(store, settings, clock=clock)
        self.scheduler = Scheduler(store, settings, clock=clock)
        self.queue = EmbeddingQueueManager(
            store,
            self.provider,
            settings,
            clock=clock,
            on_embedded=self.similar.invalidate_article,
        )
        self.sync = SyncExecutor(
            store, self.scheduler, settings, queue=self.queue, clock=clock
        )
        self.clustering = ClusteringEngine(
            store, settings, labeller=self.labeller, clock=clock
        )

    async def aclose(self) -> None:
        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()

    # Subscriptions

    def add_feed(
        self, user_id: str, url: str, name: str = "", priority: Optional[str] = None
    ) -> Feed:
        feed = self.scheduler.create_feed(user_id, url, name=name, priority=priority)
        self.similar.invalidate_user(user_id)
        log.info("feed_added", feed_id=feed.id, user_id=user_id, priority=feed.priority)
        return feed

    def remove_feed(self, feed_id: str) -> bool:
        feed = self.store.get_feed(feed_id)
        if feed is None:
            return False
        removed = self.store.delete_feed(feed_id)
        self.similar.invalidate_user(feed.user_id)
        log.info("feed_removed", feed_id=feed_id, user_id=feed.user_id)
        return removed

    # Scheduling

    async def run_scheduler_pass(
        self,
        batch_limit: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> SchedulerPassResult:
        result = await self.sync.run_scheduler_pass(batch_limit, cancel)
        log.info(
            "scheduler_pass_complete",
            feeds_due=result.feeds_due,
            succeeded=result.succeeded,
            failed=result.failed,
            cancelled=result.cancelled,
        )
        return result

    def get_sync_schedule(self, user_id: Optional[str] = None) -> list[ScheduleEntry]:
        return self.scheduler.get_sync_schedule(user_id)

    def update_feed_priority(self, feed_id: str, priority: str) -> Feed:
        return self.scheduler.update_feed_priority(feed_id, priority)

    def bulk_update_priorities(
        self, updates: Mapping[str, str]
    ) -> tuple[list[Feed], dict[str, str]]:
        return self.scheduler.bulk_update_priorities(updates)

    def set_custom_interval(self, feed_id: str, hours: Optional[float]) -> Feed:
        return self.scheduler.set_custom_interval(feed_id, hours)

    def trigger_manual_sync(self, feed_ids: Iterable[str]) -> list[str]:
        return self.scheduler.trigger_manual_sync(feed_ids)

    def resume_feed(self, feed_id: str) -> Feed:
        feed = self.scheduler.resume_feed(feed_id)
        log.info("feed_resumed", feed_id=feed_id)
        return feed

    def pause_feed(self, feed_id: str) -> Feed:
        return self.scheduler.pause_feed(feed_id)

    # Health

    def get_feed_health_stats(
        self, feed_id: str, days: int = HEALTH_DEFAULT_DAYS
    ) -> FeedHealthStats:
        return get_feed_health_stats(self.store, feed_id, days=days, clock=self.clock)

    def get_all_feeds_health_stats(
        self, user_id: Optional[str] = None, days: int = HEALTH_DEFAULT_DAYS
    ) -> list[FeedHealthStats]:
        return get_all_feeds_health_stats(
            self.store, user_id=user_id, days=days, clock=self.clock
        )

    # Embedding queue

    async def run_embedding_queue_drain(self, limit: Optional[int] = None) -> DrainResult:
        result = await self.queue.drain(limit)
        log.info(
            "embedding_drain_complete",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            dead_lettered=result.dead_lettered,
            deferred=result.deferred,
            remaining=result.remaining,
        )
        return result

    def queue_stats(self) -> QueueStats:
        return self.queue.queue_stats()

    def list_dead_letters(self, limit: Optional[int] = None) -> list[DeadLetterItem]:
        return self.queue.list_dead_letters(limit)

    def requeue_dead_letter(self, dead_letter_id: str) -> EmbeddingQueueItem:
        item = self.queue.requeue_dead_letter(dead_letter_id)
        log.info("dead_letter_requeued", dead_letter_id=dead_letter_id, article_id=item.article_id)
        return item

    # Clusters

    async def run_clustering_pass(
        self,
        user_id: Optional[str] = None,
        feed_ids: Optional[Iterable[str]] = None,
        time_window_hours: Optional[float] = None,
    ) -> ClusteringResult:
        result = await self.clustering.run_clustering_pass(
            user_id=user_id, feed_ids=feed_ids, time_window_hours=time_window_hours
        )
        log.info(
            "clustering_pass_complete",
            user_id=user_id,
            candidates=result.candidates,
            groups=result.groups,
            created=result.clusters_created,
            rejected=result.rejected,
            replaced=result.replaced,
        )
        return result

    def get_clusters(
        self,
        user_id: Optional[str] = None,
        include_expired: bool = False,
        limit: int = CLUSTER_LIST_LIMIT,
    ) -> list[Cluster]:
        return self.clustering.get_clusters(
            user_id=user_id, include_expired=include_expired, limit=limit
        )

    def delete_cluster(self, cluster_id: str) -> None:
        self.clustering.delete_cluster(cluster_id)

    def delete_expired_clusters(self) -> list[str]:
        deleted = self.clustering.delete_expired_clusters()
        log.info("clusters_expired", count=len(deleted))
        return deleted

    # Similar articles

    def find_similar_articles(self, article_id: str, user_id: str) -> SimilarArticlesResult:
        return self.similar.find_similar_articles(article_id, user_id)

    def cleanup_similar_cache(self) -> int:
        return self.similar.cleanup_expired()

    def similar_cache_stats(self) -> CacheStats:
        return self.similar.stats()
