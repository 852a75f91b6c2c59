"""Sync Executor: conditional fetch, parse and dedup for due feeds."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import httpx

from feedcore.config import Settings
from feedcore.constants import EMBEDDING_QUEUE_PRIORITY
from feedcore.embedding import content_hash
from feedcore.embedding_queue import EmbeddingQueueManager
from feedcore.errors import (
    FeedNotFoundError,
    FetchError,
    StorageError,
    SyncLogStateError,
)
from feedcore.models import (
    Article,
    Clock,
    Feed,
    FeedItem,
    FetchResponse,
    SchedulerPassResult,
    SyncLog,
    SyncResult,
    utcnow,
)
from feedcore.rss import fetch_feed, parse_feed
from feedcore.scheduler import Scheduler
from feedcore.store import Store, new_id

logger = logging.getLogger(__name__)


def _chunks(feeds: list[Feed], size: int) -> list[list[Feed]]:
    return [feeds[i : i + size] for i in range(0, len(feeds), size)]


class SyncExecutor:
    def __init__(
        self,
        store: Store,
        scheduler: Scheduler,
        settings: Settings,
        queue: Optional[EmbeddingQueueManager] = None,
        clock: Clock = utcnow,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.settings = settings
        self.queue = queue
        self.clock = clock
        self.client = client

    # Sync log state machine

    def _complete_log(
        self,
        log: SyncLog,
        success: bool,
        started: float,
        http_status_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> SyncLog:
        current = self.store.get_sync_log(log.id)
        if current is None:
            # Cascaded away with its feed.
            raise FeedNotFoundError(log.feed_id)
        if current.status != "in_progress":
            raise SyncLogStateError(f"Sync log {log.id} is already {current.status}")
        log.status = "success" if success else "error"
        log.completed_at = self.clock()
        log.duration_ms = int((time.monotonic() - started) * 1000)
        log.http_status_code = http_status_code
        log.error_message = error_message
        return self.store.update_sync_log(log)

    # Item upsert

    def _upsert_items(self, feed: Feed, items: list[FeedItem], log: SyncLog) -> list[str]:
        """Create or refresh articles. Returns ids that need (re-)embedding."""
        now = self.clock()
        to_embed: list[str] = []
        for item in items:
            candidate = Article(
                id=new_id(),
                feed_id=feed.id,
                guid=item.guid,
                title=item.title,
                url=item.url,
                content=item.content,
                excerpt=item.excerpt,
                author=item.author,
                published_at=item.published_at,
                fetched_at=now,
                created_at=now,
            )
            stored, created = self.store.create_article_if_absent(candidate)
            if created:
                log.articles_new += 1
                to_embed.append(stored.id)
                continue

            changed = (
                stored.title != item.title
                or stored.content != item.content
                or stored.excerpt != item.excerpt
            )
            if not changed:
                continue
            stored.title = item.title
            stored.url = item.url or stored.url
            stored.content = item.content
            stored.excerpt = item.excerpt
            stored.author = item.author or stored.author
            stored.published_at = item.published_at or stored.published_at
            stored.fetched_at = now
            if stored.content_hash != content_hash(item.title, item.excerpt):
                if stored.embedding_status == "failed":
                    stored.embedding_status = "pending"
                    stored.embedding_error = None
                to_embed.append(stored.id)
            self.store.update_article(stored)
            log.articles_updated += 1
        return to_embed

    # One feed

    async def _fetch_and_parse(
        self, client: httpx.AsyncClient, feed: Feed
    ) -> tuple[FetchResponse, list[FeedItem]]:
        timeout = self.settings.sync_fetch_timeout
        try:
            async with asyncio.timeout(timeout):
                response = await fetch_feed(
                    client, feed.url, feed.etag, feed.last_modified, timeout=timeout
                )
        except TimeoutError as e:
            raise FetchError(f"Fetch abandoned after {timeout:g}s") from e
        if response.not_modified:
            return response, []
        items = parse_feed(response.text, feed.url, self.settings.sync_max_items)
        return response, items

    async def sync_feed(self, client: httpx.AsyncClient, feed: Feed) -> SyncResult:
        started = time.monotonic()
        log = SyncLog(id=new_id(), feed_id=feed.id, started_at=self.clock())
        try:
            self.store.add_sync_log(log)
        except FeedNotFoundError:
            logger.info("Feed %s deleted before sync", feed.id)
            return SyncResult(feed_id=feed.id, success=False, error="feed deleted")

        response: Optional[FetchResponse] = None
        try:
            response, items = await self._fetch_and_parse(client, feed)
            log.articles_found = len(items)
            log.etag_received = response.etag
            log.last_modified_received = response.last_modified
            log.feed_size_bytes = response.size_bytes
            with self.store.deferred():
                to_embed = self._upsert_items(feed, items, log)
                self._complete_log(log, True, started, response.status_code)
                current = self.store.get_feed(feed.id)
                if current is not None:
                    current.etag = response.etag or current.etag
                    current.last_modified = response.last_modified or current.last_modified
                    self.store.update_feed(current)
                self.scheduler.update_feed_schedule(feed.id, success=True)
        except StorageError:
            raise
        except FeedNotFoundError:
            logger.info("Feed %s deleted mid-sync", feed.id)
            return SyncResult(feed_id=feed.id, success=False, error="feed deleted")
        except FetchError as e:
            return self._fail(feed, log, started, str(e), e.status_code)
        except Exception as e:
            logger.exception("Unexpected error syncing feed %s", feed.id)
            status = response.status_code if response is not None else None
            return self._fail(feed, log, started, f"{type(e).__name__}: {e}", status)

        if to_embed and self.queue is not None:
            self.queue.add(
                to_embed,
                priority=EMBEDDING_QUEUE_PRIORITY.get(feed.priority, 0),
                user_id=feed.user_id,
            )

        logger.info(
            "Synced feed %s: status=%s found=%d new=%d updated=%d",
            feed.id,
            response.status_code,
            log.articles_found,
            log.articles_new,
            log.articles_updated,
        )
        return SyncResult(
            feed_id=feed.id,
            success=True,
            sync_log_id=log.id,
            http_status_code=response.status_code,
            articles_found=log.articles_found,
            articles_new=log.articles_new,
            articles_updated=log.articles_updated,
            not_modified=response.not_modified,
            duration_ms=log.duration_ms or 0,
        )

    def _fail(
        self,
        feed: Feed,
        log: SyncLog,
        started: float,
        message: str,
        status_code: Optional[int],
    ) -> SyncResult:
        logger.warning("Sync failed for feed %s (%s): %s", feed.id, feed.url, message)
        with self.store.deferred():
            try:
                self._complete_log(log, False, started, status_code, message)
            except FeedNotFoundError:
                logger.info("Feed %s deleted mid-sync", feed.id)
            self.scheduler.update_feed_schedule(feed.id, success=False, error_message=message)
        return SyncResult(
            feed_id=feed.id,
            success=False,
            sync_log_id=log.id,
            http_status_code=status_code,
            error=message,
            duration_ms=log.duration_ms or 0,
        )

    # Batches

    async def sync_feeds(
        self,
        feeds: list[Feed],
        cancel: Optional[asyncio.Event] = None,
    ) -> tuple[list[SyncResult], bool]:
        """Sync feeds in fixed-size batches, one batch at a time.

        The cancel event is checked between batches; in-flight fetches finish.
        Returns (results, cancelled).
        """
        results: list[SyncResult] = []
        if not feeds:
            return results, False

        client = self.client or httpx.AsyncClient(timeout=self.settings.sync_fetch_timeout)
        try:
            for batch in _chunks(feeds, self.settings.sync_concurrency):
                if cancel is not None and cancel.is_set():
                    logger.info("Sync cancelled with %d feeds left", len(feeds) - len(results))
                    return results, True
                results.extend(
                    await asyncio.gather(*(self.sync_feed(client, f) for f in batch))
                )
        finally:
            if self.client is None:
                await client.aclose()
        return results, False

    async def run_scheduler_pass(
        self,
        batch_limit: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> SchedulerPassResult:
        feeds = self.scheduler.claim_due_feeds(batch_limit)
        results, cancelled = await self.sync_feeds(feeds, cancel)
        if cancelled:
            self.scheduler.release_feeds(feeds[len(results) :])
        return SchedulerPassResult(feeds_due=len(feeds), results=results, cancelled=cancelled)
