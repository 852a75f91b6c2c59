import pytest
import respx
from httpx import Response
from structlog.testing import capture_logs

from conftest import FakeProvider, unit
from feedcore.clustering import ClusterLabeller
from feedcore.pipeline import Pipeline
from feedcore.similar import NO_FEEDS_MESSAGE

STORY = unit(1, 0.05, 0, 0)
OTHER = unit(0, 0, 1, 0)


def rss(*items):
    body = "".join(
        f"<item><title>{title}</title><guid>{guid}</guid>"
        f"<link>https://example.com/{guid}</link></item>"
        for guid, title in items
    )
    return f'<rss version="2.0"><channel><title>T</title>{body}</channel></rss>'


@pytest.fixture
def pipeline(store, settings, clock, monkeypatch):
    monkeypatch.delenv(settings.llm_api_key_env, raising=False)
    provider = FakeProvider(vectors={"Rocket": STORY, "Budget": OTHER})
    return Pipeline(store, settings, provider=provider, labeller=ClusterLabeller(settings), clock=clock)


def add_sources(pipeline, count=3):
    feeds = []
    for n in range(count):
        feed = pipeline.add_feed("u1", f"https://news{n}.example.com/rss", name=f"News {n}")
        respx.get(feed.url).mock(
            return_value=Response(
                200,
                text=rss(
                    (f"rocket-{n}", f"Rocket launch delayed by weather ({n})"),
                    (f"budget-{n}", f"Budget talks stall in council ({n})"),
                ),
            )
        )
        feeds.append(feed)
    return feeds


@pytest.mark.asyncio
@respx.mock
async def test_full_pass_sync_embed_cluster_search(pipeline, store):
    add_sources(pipeline)

    sync = await pipeline.run_scheduler_pass()
    assert sync.feeds_due == 3
    assert sync.succeeded == 3
    assert pipeline.queue_stats()["pending"] == 6

    drain = await pipeline.run_embedding_queue_drain()
    assert drain.succeeded == 6
    assert drain.remaining == 0

    clustering = await pipeline.run_clustering_pass(user_id="u1")
    assert clustering.clusters_created == 2
    clusters = pipeline.get_clusters(user_id="u1")
    assert all(c.article_count == 3 for c in clusters)
    assert all(len(c.source_feeds) == 3 for c in clusters)
    assert {c.generation_method for c in clusters} == {"vector"}

    source = next(a for a in store.list_articles() if a.title.startswith("Rocket"))
    similar = pipeline.find_similar_articles(source.id, "u1")
    assert len(similar.results) == 2
    assert all(r.title.startswith("Rocket") for r in similar.results)


@pytest.mark.asyncio
@respx.mock
async def test_second_pass_sees_nothing_due(pipeline):
    add_sources(pipeline, count=2)
    await pipeline.run_scheduler_pass()

    again = await pipeline.run_scheduler_pass()
    assert again.feeds_due == 0
    schedule = pipeline.get_sync_schedule("u1")
    assert all(entry["next_sync_at"] is not None for entry in schedule)


@pytest.mark.asyncio
@respx.mock
async def test_reembedded_result_invalidates_cached_search(pipeline, store):
    first = pipeline.add_feed("u1", "https://one.example.com/rss")
    second = pipeline.add_feed("u1", "https://two.example.com/rss")
    respx.get(first.url).mock(return_value=Response(200, text=rss(("r1", "Rocket launch delayed"))))
    route = respx.get(second.url).mock(return_value=Response(200, text=rss(("r2", "Rocket launch slips"))))
    await pipeline.run_scheduler_pass()
    await pipeline.run_embedding_queue_drain()

    source = store.get_article_by_guid(first.id, "r1")
    match = store.get_article_by_guid(second.id, "r2")
    assert [r.article_id for r in pipeline.find_similar_articles(source.id, "u1").results] == [match.id]
    assert pipeline.find_similar_articles(source.id, "u1").cached

    # The matched story is edited upstream and re-embedded.
    route.mock(return_value=Response(200, text=rss(("r2", "Rocket launch slips to Friday"))))
    pipeline.trigger_manual_sync([second.id])
    await pipeline.run_scheduler_pass()
    drain = await pipeline.run_embedding_queue_drain()
    assert drain.succeeded == 1

    result = pipeline.find_similar_articles(source.id, "u1")
    assert not result.cached
    assert result.results[0].title == "Rocket launch slips to Friday"


@pytest.mark.asyncio
@respx.mock
async def test_remove_feed_cascades_and_invalidates(pipeline, store):
    feeds = add_sources(pipeline, count=2)
    await pipeline.run_scheduler_pass()
    await pipeline.run_embedding_queue_drain()
    article = next(a for a in store.list_articles(feed_ids=[feeds[0].id]))
    assert pipeline.find_similar_articles(article.id, "u1").results

    assert pipeline.remove_feed(feeds[1].id)
    assert not pipeline.remove_feed(feeds[1].id)
    assert store.list_articles(feed_ids=[feeds[1].id]) == []

    result = pipeline.find_similar_articles(article.id, "u1")
    assert not result.cached
    assert result.results == []


def test_similar_search_for_user_without_feeds(pipeline, store, make_feed, make_article):
    feed = make_feed(user_id="u1")
    article = make_article(feed.id, embedding=STORY)
    assert pipeline.find_similar_articles(article.id, "nobody").message == NO_FEEDS_MESSAGE


def test_operations_emit_structured_events(pipeline):
    with capture_logs() as logs:
        feed = pipeline.add_feed("u1", "https://www.reuters.com/rss")
        pipeline.pause_feed(feed.id)
        pipeline.resume_feed(feed.id)
        pipeline.delete_expired_clusters()

    events = [entry["event"] for entry in logs]
    assert events == ["feed_added", "feed_resumed", "clusters_expired"]
    assert logs[0]["priority"] == "high"
    assert logs[2]["count"] == 0


@pytest.mark.asyncio
async def test_aclose_closes_provider(store, settings):
    class ClosingProvider(FakeProvider):
        closed = False

        async def aclose(self):
            self.closed = True

    provider = ClosingProvider()
    pipeline = Pipeline(store, settings, provider=provider, labeller=ClusterLabeller(settings))
    await pipeline.aclose()
    assert provider.closed
