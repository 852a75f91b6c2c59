import asyncio
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import FakeProvider
from feedcore.constants import EMBEDDING_STALE_PROCESSING_MINUTES
from feedcore.embedding import content_hash
from feedcore.embedding_queue import EmbeddingQueueManager
from feedcore.errors import ArticleNotFoundError, DeadLetterNotFoundError


@pytest.fixture
def feed(make_feed):
    return make_feed()


@pytest.fixture
def queue(store, provider, settings, clock):
    return EmbeddingQueueManager(store, provider, settings, clock=clock)


def test_enqueue_is_idempotent(queue, store, feed, make_article):
    a = make_article(feed.id)
    b = make_article(feed.id)

    assert len(queue.add([a.id, b.id])) == 2
    assert queue.add([b.id]) == []
    assert queue.add([b.id, b.id]) == []
    assert store.count_queue_items()["pending"] == 2


def test_enqueue_unknown_article_raises(queue):
    with pytest.raises(ArticleNotFoundError):
        queue.add(["missing"])


@pytest.mark.asyncio
async def test_successful_drain_stores_vector_and_removes_item(queue, store, feed, make_article, provider):
    article = make_article(feed.id, title="Embed me", excerpt="body")
    queue.add([article.id])

    result = await queue.drain()

    assert result.processed == 1
    assert result.succeeded == 1
    assert result.remaining == 0
    stored = store.get_article(article.id)
    assert stored.embedding_status == "completed"
    assert stored.embedding is not None
    assert stored.content_hash == content_hash("Embed me", "body")
    assert store.get_queue_item_for_article(article.id) is None
    assert provider.calls == ["Embed me\n\nbody"]


@pytest.mark.asyncio
async def test_same_text_requeued_after_embedding_is_a_single_item(queue, store, feed, make_article, provider):
    a = make_article(feed.id, title="Same text")
    b = make_article(feed.id, title="Same text")
    queue.add([a.id])
    await queue.drain()

    queue.add([b.id])
    queue.add([b.id])
    assert store.count_queue_items()["pending"] == 1
    assert store.get_queue_item_for_article(b.id) is not None


@pytest.mark.asyncio
async def test_drain_orders_by_priority_then_age(queue, store, feed, make_article, clock, provider):
    old_low = make_article(feed.id, title="old low")
    queue.add([old_low.id], priority=0)
    clock.advance(minutes=1)
    new_high = make_article(feed.id, title="new high")
    queue.add([new_high.id], priority=2)
    clock.advance(minutes=1)
    newer_high = make_article(feed.id, title="newer high")
    queue.add([newer_high.id], priority=2)

    items = store.next_queue_items(10)
    assert [i.article_id for i in items] == [new_high.id, newer_high.id, old_low.id]

    result = await queue.drain(limit=2)
    assert result.succeeded == 2
    assert store.get_queue_item_for_article(old_low.id) is not None


@pytest.mark.asyncio
async def test_attempts_increase_then_dead_letter_exactly_at_max(queue, store, feed, make_article, provider):
    article = make_article(feed.id)
    queue.add([article.id])
    provider.fail_transient(times=3)

    first = await queue.drain()
    item = store.get_queue_item_for_article(article.id)
    assert first.failed == 1 and first.dead_lettered == 0
    assert item.attempts == 1
    assert item.status == "pending"
    assert item.error_message == "rate limited"
    assert store.list_dead_letters() == []

    await queue.drain()
    assert store.get_queue_item_for_article(article.id).attempts == 2
    assert store.list_dead_letters() == []

    third = await queue.drain()
    assert third.dead_lettered == 1
    assert store.get_queue_item_for_article(article.id) is None
    dead = store.list_dead_letters()
    assert len(dead) == 1
    assert dead[0].attempts == 3
    assert dead[0].payload["article_id"] == article.id
    assert dead[0].provider == "fake"
    stored = store.get_article(article.id)
    assert stored.embedding_status == "failed"
    assert stored.embedding_error == "rate limited"


@pytest.mark.asyncio
async def test_permanent_error_exhausts_immediately(queue, store, feed, make_article, provider):
    article = make_article(feed.id)
    queue.add([article.id])
    provider.fail_permanent()

    result = await queue.drain()

    assert result.dead_lettered == 1
    assert store.list_dead_letters()[0].attempts == 3


@pytest.mark.asyncio
async def test_one_failure_does_not_abort_batch(queue, store, feed, make_article, provider):
    a = make_article(feed.id)
    b = make_article(feed.id)
    queue.add([a.id, b.id])
    provider.fail_transient(times=1)

    result = await queue.drain()

    assert result.processed == 2
    assert result.succeeded == 1
    assert result.failed == 1


@pytest.mark.asyncio
async def test_daily_limit_defers_without_error(store, provider, settings, clock, feed, make_article):
    queue = EmbeddingQueueManager(
        store, provider, replace(settings, embedding_daily_limit=1), clock=clock
    )
    a = make_article(feed.id)
    b = make_article(feed.id)
    queue.add([a.id, b.id], user_id="u1")

    result = await queue.drain()
    assert result.succeeded == 1
    assert result.deferred == 1
    assert result.remaining == 1
    deferred = store.next_queue_items(10)[0]
    assert deferred.status == "pending"
    assert deferred.attempts == 0

    # Still capped on the same day.
    assert (await queue.drain()).deferred == 1

    clock.advance(days=1)
    result = await queue.drain()
    assert result.succeeded == 1
    assert result.remaining == 0


@pytest.mark.asyncio
async def test_unchanged_hash_skips_provider(queue, store, feed, make_article, provider):
    article = make_article(feed.id, title="Stable", excerpt="text")
    queue.add([article.id])
    await queue.drain()
    provider.calls.clear()

    # Forced re-enqueue with identical content.
    queue.add([article.id])
    result = await queue.drain()
    assert result.skipped == 1
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unavailable_provider_makes_drain_a_noop(store, settings, clock, feed, make_article):
    queue = EmbeddingQueueManager(store, FakeProvider(available=False), settings, clock=clock)
    article = make_article(feed.id)
    queue.add([article.id])

    result = await queue.drain()

    assert result.processed == 0
    assert result.remaining == 1


@pytest.mark.asyncio
async def test_article_deleted_while_queued_is_dropped(queue, store, feed, make_article, make_feed):
    other = make_feed()
    article = make_article(other.id)
    queue.add([article.id])
    store.delete_feed(other.id)

    result = await queue.drain()
    assert result.processed == 0
    assert store.count_queue_items()["pending"] == 0


@pytest.mark.asyncio
async def test_on_embedded_callback(store, provider, settings, clock, feed, make_article):
    callback = MagicMock()
    queue = EmbeddingQueueManager(store, provider, settings, clock=clock, on_embedded=callback)
    article = make_article(feed.id)
    queue.add([article.id])

    await queue.drain()
    callback.assert_called_once_with(article.id)


@pytest.mark.asyncio
async def test_requeue_dead_letter(queue, store, feed, make_article, provider, clock):
    article = make_article(feed.id)
    queue.add([article.id], priority=2)
    provider.fail_permanent()
    await queue.drain()
    dead = queue.list_dead_letters()[0]

    clock.advance(hours=1)
    item = queue.requeue_dead_letter(dead.id)

    assert item.article_id == article.id
    assert item.attempts == 0
    assert item.status == "pending"
    assert store.get_dead_letter(dead.id) is None
    assert store.get_article(article.id).embedding_status == "pending"

    result = await queue.drain()
    assert result.succeeded == 1
    assert store.get_article(article.id).embedding_status == "completed"


def test_requeue_unknown_dead_letter(queue):
    with pytest.raises(DeadLetterNotFoundError):
        queue.requeue_dead_letter("missing")


@pytest.mark.asyncio
async def test_queue_stats(queue, store, feed, make_article, provider):
    a = make_article(feed.id)
    b = make_article(feed.id)
    queue.add([a.id, b.id])
    provider.fail_permanent()
    await queue.drain(limit=1)

    stats = queue.queue_stats()
    assert stats["pending"] == 1
    assert stats["dead_letters"] == 1


@pytest.mark.asyncio
async def test_dead_letters_listed_newest_first(queue, store, feed, make_article, provider, clock):
    a = make_article(feed.id)
    b = make_article(feed.id)
    queue.add([a.id])
    provider.fail_permanent()
    await queue.drain()
    clock.advance(minutes=5)
    queue.add([b.id])
    provider.fail_permanent()
    await queue.drain()

    dead = queue.list_dead_letters()
    assert [d.payload["article_id"] for d in dead] == [b.id, a.id]
    assert len(queue.list_dead_letters(limit=1)) == 1
    assert dead[0].created_at - dead[1].created_at == timedelta(minutes=5)


class StalledProvider(FakeProvider):
    """Blocks every call until cancelled."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def embed(self, text):
        self.calls.append(text)
        self.started.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_cancelled_drain_returns_item_to_queue(store, settings, clock, feed, make_article, provider):
    article = make_article(feed.id)
    stalled = StalledProvider()
    first = EmbeddingQueueManager(store, stalled, settings, clock=clock)
    first.add([article.id])

    task = asyncio.create_task(first.drain())
    await stalled.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    item = store.get_queue_item_for_article(article.id)
    assert item.status == "pending"
    assert item.attempts == 0

    result = await EmbeddingQueueManager(store, provider, settings, clock=clock).drain()
    assert result.succeeded == 1
    assert store.get_article(article.id).embedding_status == "completed"
    assert store.get_queue_item_for_article(article.id) is None
    assert store.list_dead_letters() == []


@pytest.mark.asyncio
async def test_stale_processing_item_is_reclaimed(queue, store, feed, make_article, clock):
    article = make_article(feed.id)
    item = queue.add([article.id])[0]
    # Left behind by a drain whose process was killed mid-call.
    item.status = "processing"
    item.last_attempt_at = clock()
    store.update_queue_item(item)

    result = await queue.drain()
    assert result.processed == 0
    assert store.get_queue_item(item.id).status == "processing"

    clock.advance(minutes=EMBEDDING_STALE_PROCESSING_MINUTES + 1)
    result = await queue.drain()
    assert result.succeeded == 1
    assert store.get_article(article.id).embedding_status == "completed"
    assert store.count_queue_items()["processing"] == 0


@pytest.mark.asyncio
async def test_unexpected_provider_error_does_not_abort_drain(queue, store, feed, make_article, provider):
    a = make_article(feed.id, title="First")
    b = make_article(feed.id, title="Second")
    queue.add([a.id, b.id])
    provider.failures.append(RuntimeError("provider bug"))

    result = await queue.drain()

    assert result.processed == 2
    assert result.succeeded == 1
    assert result.failed == 1
    assert result.remaining == 1
    items = [store.get_queue_item_for_article(x.id) for x in (a, b)]
    [left] = [i for i in items if i is not None]
    assert left.status == "pending"
    assert left.attempts == 1
    assert "RuntimeError: provider bug" in left.error_message
    assert store.count_queue_items()["processing"] == 0
