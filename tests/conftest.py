from datetime import UTC, datetime, timedelta

import numpy as np
import pytest

from feedcore.config import Settings
from feedcore.errors import PermanentEmbeddingError, TransientEmbeddingError
from feedcore.models import Article, Feed
from feedcore.store import MemoryStore

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider:
    """Deterministic embedding provider.

    `failures` is a list of exceptions raised by successive calls before
    falling back to the vector lookup.
    """

    name = "fake"

    def __init__(self, vectors=None, dim=4, available=True):
        self.vectors = dict(vectors or {})
        self.dim = dim
        self.available = available
        self.failures = []
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        if self.failures:
            raise self.failures.pop(0)
        for key, vec in self.vectors.items():
            if text.startswith(key):
                return np.asarray(vec, dtype=np.float32)
        rng = np.random.default_rng(len(text))
        return rng.random(self.dim).astype(np.float32)

    def fail_transient(self, times=1):
        self.failures.extend(TransientEmbeddingError("rate limited") for _ in range(times))

    def fail_permanent(self, times=1):
        self.failures.extend(PermanentEmbeddingError("bad input") for _ in range(times))


def unit(*values):
    vec = np.asarray(values, dtype=np.float32)
    return vec / np.linalg.norm(vec)


def vector_at(similarity, dim=4):
    """Unit vector whose cosine with e1 is exactly `similarity`."""
    vec = np.zeros(dim, dtype=np.float32)
    vec[0] = similarity
    vec[1] = np.sqrt(max(0.0, 1.0 - similarity**2))
    return vec


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(embedding_dimensions=4)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_feed(store, clock):
    counter = {"n": 0}

    def _make(user_id="u1", url=None, priority="medium", **kwargs):
        counter["n"] += 1
        n = counter["n"]
        feed = Feed(
            id=kwargs.pop("id", f"feed-{n}"),
            user_id=user_id,
            url=url or f"https://source{n}.example.com/feed.xml",
            name=kwargs.pop("name", f"Source {n}"),
            priority=priority,
            created_at=clock(),
            **kwargs,
        )
        return store.add_feed(feed)

    return _make


@pytest.fixture
def make_article(store, clock):
    counter = {"n": 0}

    def _make(feed_id, title=None, embedding=None, **kwargs):
        counter["n"] += 1
        n = counter["n"]
        article = Article(
            id=kwargs.pop("id", f"art-{n}"),
            feed_id=feed_id,
            guid=kwargs.pop("guid", f"guid-{n}"),
            title=title or f"Article number {n}",
            url=kwargs.pop("url", f"https://example.com/a/{n}"),
            published_at=kwargs.pop("published_at", clock()),
            fetched_at=clock(),
            created_at=clock(),
            **kwargs,
        )
        if embedding is not None:
            article.embedding = np.asarray(embedding, dtype=np.float32)
            article.embedding_status = "completed"
        created, _ = store.create_article_if_absent(article)
        return created

    return _make
