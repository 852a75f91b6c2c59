"""Similar-articles search over one user's subscribed, embedded articles."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from feedcore.config import Settings
from feedcore.errors import ArticleNotFoundError
from feedcore.models import (
    CacheStats,
    Clock,
    SimilarArticle,
    SimilarArticlesResult,
    utcnow,
)
from feedcore.store import Store

logger = logging.getLogger(__name__)

NO_FEEDS_MESSAGE = "No subscribed feeds found"
NO_SOURCE_EMBEDDING_MESSAGE = "Source article does not have an embedding"
NO_CANDIDATES_MESSAGE = "No articles with embeddings found"
NO_MATCHES_MESSAGE = "No similar articles above threshold"


@dataclass
class _CacheEntry:
    results: list[SimilarArticle]
    message: Optional[str]
    created_at: datetime


class SimilarityCache:
    """Per-(user, article) result cache with a fixed TTL.

    Best-effort and process-local: losing it only costs a recomputation.
    """

    def __init__(self, ttl_seconds: float, clock: Clock = utcnow) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._entries: dict[tuple[str, str], _CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.invalidations = 0

    def _fresh(self, entry: _CacheEntry, now: datetime) -> bool:
        return now - entry.created_at < self.ttl

    def get(self, user_id: str, article_id: str) -> Optional[_CacheEntry]:
        key = (user_id, article_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._fresh(entry, self.clock()):
                del self._entries[key]
                entry = None
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    def put(
        self,
        user_id: str,
        article_id: str,
        results: list[SimilarArticle],
        message: Optional[str],
    ) -> None:
        with self._lock:
            self._entries[(user_id, article_id)] = _CacheEntry(
                results=[replace(r) for r in results],
                message=message,
                created_at=self.clock(),
            )

    def invalidate_article(self, article_id: str) -> int:
        """Drop entries whose source or any result is `article_id`."""
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if key[1] == article_id
                or any(r.article_id == article_id for r in entry.results)
            ]
            for key in stale:
                del self._entries[key]
            self.invalidations += len(stale)
        return len(stale)

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            stale = [key for key in self._entries if key[0] == user_id]
            for key in stale:
                del self._entries[key]
            self.invalidations += len(stale)
        return len(stale)

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if not self._fresh(entry, now)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "invalidations": self.invalidations,
            }


class SimilarArticlesService:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        clock: Clock = utcnow,
        cache: Optional[SimilarityCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.cache = cache or SimilarityCache(
            settings.similar_articles_cache_ttl, clock=clock
        )

    def find_similar_articles(
        self, article_id: str, user_id: str
    ) -> SimilarArticlesResult:
        """Top matches for `article_id` among the user's embedded articles.

        Empty results carry a diagnostic message instead of raising; only an
        unknown source id raises ArticleNotFoundError.
        """
        entry = self.cache.get(user_id, article_id)
        if entry is not None:
            return SimilarArticlesResult(
                article_id=article_id,
                results=[replace(r) for r in entry.results],
                message=entry.message,
                cached=True,
            )

        source = self.store.get_article(article_id)
        if source is None:
            raise ArticleNotFoundError(article_id)

        feed_ids = [feed.id for feed in self.store.list_feeds(user_id=user_id)]
        if not feed_ids:
            return SimilarArticlesResult(article_id=article_id, message=NO_FEEDS_MESSAGE)
        if not source.has_embedding or source.embedding is None:
            return SimilarArticlesResult(
                article_id=article_id, message=NO_SOURCE_EMBEDDING_MESSAGE
            )

        candidates = [
            a
            for a in self.store.list_articles(feed_ids=feed_ids, embedded_only=True)
            if a.id != article_id and a.embedding is not None
        ]

        results: list[SimilarArticle] = []
        message: Optional[str]
        if not candidates:
            message = NO_CANDIDATES_MESSAGE
        else:
            matrix = np.vstack([a.embedding for a in candidates])
            scores = cosine_similarity(source.embedding.reshape(1, -1), matrix)[0]
            threshold = self.settings.similar_articles_threshold
            ranked = sorted(
                (
                    (float(score), article)
                    for score, article in zip(scores, candidates)
                    if score >= threshold
                ),
                key=lambda pair: (-pair[0], pair[1].id),
            )
            results = [
                SimilarArticle(
                    article_id=article.id,
                    feed_id=article.feed_id,
                    title=article.title,
                    url=article.url,
                    similarity=round(score, 4),
                    published_at=article.published_at,
                )
                for score, article in ranked[: self.settings.similar_articles_max_results]
            ]
            message = None if results else NO_MATCHES_MESSAGE

        self.cache.put(user_id, article_id, results, message)
        logger.debug(
            "Similar articles for %s (user %s): %d of %d candidates",
            article_id,
            user_id,
            len(results),
            len(candidates),
        )
        return SimilarArticlesResult(
            article_id=article_id, results=results, message=message
        )

    def invalidate_article(self, article_id: str) -> int:
        return self.cache.invalidate_article(article_id)

    def invalidate_user(self, user_id: str) -> int:
        return self.cache.invalidate_user(user_id)

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        removed = self.cache.cleanup_expired(now)
        if removed:
            logger.info("Removed %d expired similar-article cache entries", removed)
        return removed

    def stats(self) -> CacheStats:
        return self.cache.stats()
