"""Retrying embedding work queue with a dead-letter store."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Literal, Optional

from feedcore.config import Settings
from feedcore.constants import (
    EMBEDDING_OPERATION,
    EMBEDDING_REQUEUE_PRIORITY,
    EMBEDDING_STALE_PROCESSING_MINUTES,
)
from feedcore.embedding import EmbeddingProvider, content_hash, prepare_embedding_input
from feedcore.errors import (
    ArticleNotFoundError,
    DeadLetterNotFoundError,
    EmbeddingProviderError,
    PermanentEmbeddingError,
    TransientEmbeddingError,
)
from feedcore.models import (
    Article,
    Clock,
    DeadLetterItem,
    DrainResult,
    EmbeddingQueueItem,
    QueueStats,
    utcnow,
)
from feedcore.retry import RetryPolicy
from feedcore.store import Store, new_id

logger = logging.getLogger(__name__)

Outcome = Literal["succeeded", "failed", "dead_lettered", "deferred", "skipped", "missing"]


class EmbeddingQueueManager:
    def __init__(
        self,
        store: Store,
        provider: EmbeddingProvider,
        settings: Settings,
        clock: Clock = utcnow,
        retry_policy: Optional[RetryPolicy] = None,
        on_embedded: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.settings = settings
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy.for_embeddings(settings)
        self.on_embedded = on_embedded

    def add(
        self,
        article_ids: Sequence[str],
        priority: int = 0,
        user_id: Optional[str] = None,
    ) -> list[EmbeddingQueueItem]:
        """Queue articles for embedding. Ids already queued are skipped."""
        if not article_ids:
            return []
        created = self.store.enqueue_embeddings(
            article_ids,
            priority=priority,
            max_attempts=self.retry_policy.max_attempts,
            now=self.clock(),
            user_id=user_id,
        )
        if created:
            logger.debug("Queued %d of %d articles for embedding", len(created), len(article_ids))
        return created

    async def drain(self, limit: Optional[int] = None) -> DrainResult:
        result = DrainResult()
        if not self.provider.available:
            logger.warning("Embedding provider %s unavailable, skipping drain", self.provider.name)
            result.remaining = self.store.count_queue_items()["pending"]
            return result

        batch = self.settings.embedding_drain_batch_size if limit is None else limit
        stale_before = self.clock() - timedelta(minutes=EMBEDDING_STALE_PROCESSING_MINUTES)
        items = self.store.next_queue_items(batch, stale_before=stale_before)
        sem = asyncio.Semaphore(self.settings.embedding_drain_concurrency)

        async def _bounded(item: EmbeddingQueueItem) -> Outcome:
            async with sem:
                return await self._process(item)

        outcomes = await asyncio.gather(*(_bounded(item) for item in items))
        for outcome in outcomes:
            if outcome == "deferred":
                result.deferred += 1
                continue
            result.processed += 1
            if outcome == "succeeded":
                result.succeeded += 1
            elif outcome == "failed":
                result.failed += 1
            elif outcome == "dead_lettered":
                result.failed += 1
                result.dead_lettered += 1
            elif outcome == "skipped":
                result.skipped += 1

        if result.deferred:
            logger.info("Deferred %d embeddings: daily limit reached", result.deferred)
        result.remaining = self.store.count_queue_items()["pending"]
        return result

    async def _process(self, item: EmbeddingQueueItem) -> Outcome:
        article = self.store.get_article(item.article_id)
        if article is None:
            self.store.delete_queue_item(item.id)
            return "missing"

        digest = content_hash(article.title, article.excerpt)
        if article.has_embedding and article.content_hash == digest:
            self.store.delete_queue_item(item.id)
            return "skipped"

        now = self.clock()
        if not self.store.consume_daily_quota(
            item.user_id,
            EMBEDDING_OPERATION,
            now.date(),
            self.settings.embedding_daily_limit,
        ):
            return "deferred"

        item.status = "processing"
        item.last_attempt_at = now
        self.store.update_queue_item(item)

        text = prepare_embedding_input(article.title, article.excerpt)
        try:
            vector = await self.provider.embed(text)
        except EmbeddingProviderError as e:
            return self._record_failure(item, article, e)
        except asyncio.CancelledError:
            self._release(item)
            raise
        except Exception as e:
            logger.exception("Unexpected embedding error for article %s", article.id)
            return self._record_failure(
                item, article, TransientEmbeddingError(f"{type(e).__name__}: {e}")
            )

        # Reload so concurrent sync edits are not overwritten.
        current = self.store.get_article(article.id)
        if current is None:
            self.store.delete_queue_item(item.id)
            return "missing"
        current.embedding = vector
        current.embedding_status = "completed"
        current.content_hash = digest
        current.embedding_error = None
        self.store.update_article(current)
        self.store.delete_queue_item(item.id)
        if self.on_embedded is not None:
            self.on_embedded(current.id)
        return "succeeded"

    def _release(self, item: EmbeddingQueueItem) -> None:
        """Hand an interrupted item back to the queue without charging an attempt."""
        if self.store.get_queue_item(item.id) is None:
            return
        item.status = "pending"
        self.store.update_queue_item(item)
        logger.info("Embedding of article %s interrupted, returned to queue", item.article_id)

    def _record_failure(
        self, item: EmbeddingQueueItem, article: Article, error: EmbeddingProviderError
    ) -> Outcome:
        if isinstance(error, PermanentEmbeddingError):
            item.attempts = max(item.attempts + 1, item.max_attempts)
        else:
            item.attempts += 1
        item.error_message = str(error)
        item.last_attempt_at = self.clock()

        if item.attempts < item.max_attempts:
            item.status = "pending"
            self.store.update_queue_item(item)
            logger.warning(
                "Embedding failed for article %s (attempt %d/%d): %s",
                article.id,
                item.attempts,
                item.max_attempts,
                error,
            )
            return "failed"

        dead = DeadLetterItem(
            id=new_id(),
            operation=EMBEDDING_OPERATION,
            provider=self.provider.name,
            payload={
                "article_id": article.id,
                "feed_id": article.feed_id,
                "title": article.title,
                "queue_priority": item.priority,
            },
            error_message=str(error),
            attempts=item.attempts,
            created_at=self.clock(),
            last_attempt_at=item.last_attempt_at,
            user_id=item.user_id,
        )
        with self.store.deferred():
            self.store.add_dead_letter(dead)
            self.store.delete_queue_item(item.id)
            current = self.store.get_article(article.id)
            if current is not None:
                current.embedding_status = "failed"
                current.embedding_error = str(error)
                self.store.update_article(current)
        logger.error(
            "Article %s moved to dead-letter store after %d attempts: %s",
            article.id,
            item.attempts,
            error,
        )
        return "dead_lettered"

    def queue_stats(self) -> QueueStats:
        counts = self.store.count_queue_items()
        return {
            "pending": counts["pending"],
            "processing": counts["processing"],
            "completed": counts["completed"],
            "failed": counts["failed"],
            "dead_letters": len(self.store.list_dead_letters()),
        }

    def list_dead_letters(self, limit: Optional[int] = None) -> list[DeadLetterItem]:
        return self.store.list_dead_letters(limit)

    def requeue_dead_letter(self, dead_letter_id: str) -> EmbeddingQueueItem:
        """Put a dead-lettered article back on the queue with a fresh attempt budget."""
        dead = self.store.get_dead_letter(dead_letter_id)
        if dead is None:
            raise DeadLetterNotFoundError(dead_letter_id)
        article_id = str(dead.payload.get("article_id", ""))
        article = self.store.get_article(article_id)
        if article is None:
            raise ArticleNotFoundError(article_id)

        with self.store.deferred():
            article.embedding_status = "pending"
            article.embedding_error = None
            self.store.update_article(article)
            existing = self.store.get_queue_item_for_article(article_id)
            if existing is not None:
                item = existing
            else:
                item = self.add(
                    [article_id],
                    priority=int(dead.payload.get("queue_priority", EMBEDDING_REQUEUE_PRIORITY)),
                    user_id=dead.user_id,
                )[0]
            self.store.delete_dead_letter(dead_letter_id)
        logger.info("Requeued dead-letter %s (article %s)", dead_letter_id, article_id)
        return item
