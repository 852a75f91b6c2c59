"""Clustering Engine: groups recent articles across sources into topic clusters."""

from __future__ import annotations

import logging
import os
import re
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Optional

import httpx
import numpy as np
from numpy.typing import NDArray
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components
from sklearn.metrics.pairwise import cosine_similarity
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from feedcore.config import Settings
from feedcore.constants import (
    CLUSTER_LIST_LIMIT,
    CLUSTER_RECENCY_HALF_LIFE_HOURS,
    CLUSTER_SUMMARY_MAX_CHARS,
    CLUSTER_TITLE_MAX_CHARS,
    LLM_HTTP_TIMEOUT,
    LLM_MAX_RETRIES,
    SYNC_USER_AGENT,
)
from feedcore.embedding import retry_after_seconds
from feedcore.errors import ArticleNotFoundError, ClusterNotFoundError
from feedcore.llm_utils import (
    LabelSample,
    build_label_prompt,
    build_payload,
    extract_message_text,
    parse_label,
)
from feedcore.models import (
    Article,
    Clock,
    Cluster,
    ClusteringResult,
    GenerationMethod,
    utcnow,
)
from feedcore.retry import RetryPolicy
from feedcore.store import Store, new_id

logger = logging.getLogger(__name__)

_STOPWORDS = {
    "a", "about", "after", "again", "all", "also", "an", "and", "are", "as",
    "at", "be", "been", "before", "being", "between", "both", "but", "by",
    "can", "could", "did", "do", "does", "during", "each", "for", "from",
    "had", "has", "have", "her", "here", "his", "how", "in", "into", "is",
    "it", "its", "just", "may", "might", "more", "most", "must", "new", "of",
    "on", "once", "only", "or", "other", "our", "over", "said", "same", "says",
    "should", "some", "such", "than", "that", "the", "their", "them", "then",
    "there", "these", "they", "this", "those", "through", "to", "too", "under",
    "very", "was", "were", "what", "when", "where", "which", "who", "whom",
    "whose", "why", "will", "with", "would", "your",
}
_UPPER_TOKENS = {"ai", "uk", "us", "eu", "un", "nato", "gdp", "ceo", "fbi", "nasa"}
_FALLBACK_TITLE = "Trending Topic"
_FALLBACK_SUMMARY = "Multiple sources covering this story."


def _components(adjacency: NDArray[np.bool_]) -> list[list[int]]:
    """Connected components of an undirected graph, members in index order."""
    _, labels = connected_components(csr_matrix(adjacency), directed=False)
    members: dict[int, list[int]] = {}
    for i, label in enumerate(labels.tolist()):
        members.setdefault(label, []).append(i)
    return list(members.values())


def group_by_similarity(
    embeddings: NDArray[np.float32], threshold: float
) -> tuple[list[list[int]], NDArray[np.float32]]:
    """Transitively merge every pair with cosine similarity >= threshold.

    Returns (groups of row indices, full similarity matrix).
    """
    n = embeddings.shape[0]
    if n == 0:
        return [], np.zeros((0, 0), dtype=np.float32)
    sim = cosine_similarity(embeddings).astype(np.float32)
    return _components(sim >= threshold), sim


def _tokens(text: str) -> list[str]:
    return [
        t
        for t in re.findall(r"[a-z0-9]+", text.lower())
        if len(t) > 3 and t not in _STOPWORDS
    ]


def extract_keywords(text: str) -> set[str]:
    """Significant words plus adjacent-word phrases."""
    words = _tokens(text)
    keywords = set(words)
    keywords.update(f"{a}_{b}" for a, b in zip(words, words[1:]))
    return keywords


def group_by_keywords(
    texts: Sequence[str], overlap_min: int
) -> tuple[list[list[int]], list[set[str]]]:
    keyword_sets = [extract_keywords(t) for t in texts]
    n = len(texts)
    if n == 0:
        return [], keyword_sets
    adjacency = np.zeros((n, n), dtype=bool)
    for i in range(n):
        for j in range(i + 1, n):
            if len(keyword_sets[i] & keyword_sets[j]) >= overlap_min:
                adjacency[i, j] = True
    return _components(adjacency), keyword_sets


def _mean_pairwise(values: Iterable[float]) -> float:
    collected = list(values)
    return float(sum(collected) / len(collected)) if collected else 0.0


def _jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def relevance_score(
    article_count: int,
    source_count: int,
    timeframe_end: datetime,
    now: datetime,
    half_life_hours: float = CLUSTER_RECENCY_HALF_LIFE_HOURS,
) -> float:
    """article_count * source_count * (1 + recency), recency halving every half_life."""
    age_hours = max(0.0, (now - timeframe_end).total_seconds() / 3600)
    recency = 0.5 ** (age_hours / half_life_hours)
    return round(article_count * source_count * (1 + recency), 4)


def _format_label_tokens(tokens: list[str]) -> str:
    formatted = [t.upper() if t in _UPPER_TOKENS else t.capitalize() for t in tokens]
    return " ".join(formatted[:3])


def fallback_label(articles: Sequence[Article]) -> tuple[str, str]:
    """Most frequent significant title tokens, and the first excerpt as summary."""
    counter: Counter[str] = Counter()
    for article in articles:
        for token in set(re.findall(r"[a-z0-9+#]+", article.title.lower())):
            if len(token) < 3 or token in _STOPWORDS:
                continue
            counter[token] += 1

    def _sort_key(item: tuple[str, int]) -> tuple[int, int, str]:
        token, freq = item
        return (freq, len(token), token)

    top = [t for t, _ in sorted(counter.items(), key=_sort_key, reverse=True)[:3]]
    if top:
        title = _format_label_tokens(top)
    elif articles and articles[0].title:
        title = articles[0].title[:CLUSTER_TITLE_MAX_CHARS]
    else:
        title = _FALLBACK_TITLE

    summary = next((a.excerpt for a in articles if a.excerpt), "") or _FALLBACK_SUMMARY
    return title, summary[:CLUSTER_SUMMARY_MAX_CHARS]


class LabelRetryableError(RuntimeError):
    """Rate limit, timeout or 5xx from the labelling endpoint."""

    def __init__(self, message: str, cooldown: float | None = None) -> None:
        super().__init__(message)
        self.cooldown = cooldown


class ClusterLabeller:
    """Chat-completion labeller. Any failure falls back to fallback_label."""

    def __init__(
        self,
        settings: Settings,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.settings = settings
        self.api_key = api_key or os.environ.get(settings.llm_api_key_env)
        self.url = settings.llm_api_base.rstrip("/") + "/chat/completions"
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=LLM_MAX_RETRIES)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def _complete(self, client: httpx.AsyncClient, prompt: str) -> Optional[str]:
        payload = build_payload(self.settings.llm_label_model, prompt)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_policy.max_attempts),
            retry=retry_if_exception_type(LabelRetryableError),
            wait=self.retry_policy.wait,
            reraise=True,
        ):
            with attempt:
                try:
                    resp = await client.post(
                        self.url,
                        headers={
                            "Authorization": f"Bearer {self.api_key}",
                            "Content-Type": "application/json",
                            "User-Agent": SYNC_USER_AGENT,
                        },
                        json=payload,
                    )
                except httpx.HTTPError as e:
                    raise LabelRetryableError(str(e)) from e

                if resp.status_code == 200:
                    return extract_message_text(resp.json())
                if resp.status_code == 429 or resp.status_code == 408 or resp.status_code >= 500:
                    raise LabelRetryableError(
                        f"Label API error {resp.status_code}",
                        cooldown=retry_after_seconds(resp),
                    )
                logger.error("Label API error %d: %s", resp.status_code, resp.text[:200])
                return None
        return None

    async def label(
        self, articles: Sequence[Article], source_names: Mapping[str, str]
    ) -> tuple[str, str]:
        fallback = fallback_label(articles)
        if not self.api_key:
            return fallback
        samples: list[LabelSample] = [
            (a.title, a.excerpt, source_names.get(a.feed_id, a.feed_id)) for a in articles
        ]
        prompt = build_label_prompt(samples)
        client = self.client or httpx.AsyncClient(timeout=LLM_HTTP_TIMEOUT)
        try:
            text = await self._complete(client, prompt)
        except (LabelRetryableError, ValueError) as e:
            logger.warning("Cluster labelling failed, using fallback label: %s", e)
            return fallback
        finally:
            if self.client is None:
                await client.aclose()
        return parse_label(text) or fallback


class ClusteringEngine:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        labeller: Optional[ClusterLabeller] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.labeller = labeller
        self.clock = clock

    def _scope_feed_ids(
        self, user_id: Optional[str], feed_ids: Optional[Iterable[str]]
    ) -> Optional[set[str]]:
        if feed_ids is not None:
            return set(feed_ids)
        if user_id is not None:
            return {f.id for f in self.store.list_feeds(user_id=user_id)}
        return None

    def _is_valid(self, members: Sequence[Article]) -> bool:
        sources = {a.feed_id for a in members}
        return (
            len(sources) >= self.settings.min_cluster_sources
            and len(members) >= self.settings.min_cluster_articles
        )

    async def _build_cluster(
        self,
        members: list[Article],
        avg_similarity: float,
        method: GenerationMethod,
        user_id: Optional[str],
        source_names: Mapping[str, str],
        now: datetime,
    ) -> Cluster:
        members.sort(key=lambda a: a.timestamp or now, reverse=True)
        stamps = [a.timestamp or now for a in members]
        start, end = min(stamps), max(stamps)
        sources = {a.feed_id for a in members}
        if self.labeller is not None:
            title, summary = await self.labeller.label(members, source_names)
        else:
            title, summary = fallback_label(members)
        return Cluster(
            id=new_id(),
            title=title,
            summary=summary,
            article_ids=[a.id for a in members],
            source_feeds=sources,
            timeframe_start=start,
            timeframe_end=end,
            expires_at=end + timedelta(hours=self.settings.cluster_expiry_buffer_hours),
            avg_similarity=round(avg_similarity, 4),
            relevance_score=relevance_score(len(members), len(sources), end, now),
            generation_method=method,
            user_id=user_id,
            created_at=now,
        )

    async def run_clustering_pass(
        self,
        user_id: Optional[str] = None,
        feed_ids: Optional[Iterable[str]] = None,
        time_window_hours: Optional[float] = None,
    ) -> ClusteringResult:
        """Recompute the clusters of one scope (a user, or global when user_id is None)."""
        now = self.clock()
        window = time_window_hours or self.settings.cluster_time_window_hours
        scope = self._scope_feed_ids(user_id, feed_ids)
        result = ClusteringResult()
        if scope is not None and not scope:
            result.replaced = self.store.delete_clusters_in_scope(user_id)
            return result

        articles = self.store.list_articles(feed_ids=scope, since=now - timedelta(hours=window))
        embedded = [a for a in articles if a.has_embedding]
        unembedded = [a for a in articles if not a.has_embedding]
        result.candidates = len(articles)
        source_names = {f.id: f.name for f in self.store.list_feeds(user_id=user_id)}

        candidates: list[tuple[list[Article], float, GenerationMethod]] = []

        if embedded:
            matrix = np.vstack([a.embedding for a in embedded]).astype(np.float32)
            groups, sim = group_by_similarity(matrix, self.settings.cluster_similarity_threshold)
            for group in groups:
                if len(group) < 2:
                    continue
                avg = _mean_pairwise(
                    float(sim[i, j]) for k, i in enumerate(group) for j in group[k + 1 :]
                )
                candidates.append(([embedded[i] for i in group], avg, "vector"))

        if unembedded:
            texts = [f"{a.title} {a.excerpt}" for a in unembedded]
            groups, keyword_sets = group_by_keywords(texts, self.settings.keyword_overlap_min)
            for group in groups:
                if len(group) < 2:
                    continue
                avg = _mean_pairwise(
                    _jaccard(keyword_sets[i], keyword_sets[j])
                    for k, i in enumerate(group)
                    for j in group[k + 1 :]
                )
                candidates.append(([unembedded[i] for i in group], avg, "keyword"))

        result.groups = len(candidates)
        built: list[Cluster] = []
        for members, avg, method in candidates:
            if not self._is_valid(members):
                result.rejected += 1
                continue
            built.append(
                await self._build_cluster(members, avg, method, user_id, source_names, now)
            )

        with self.store.deferred():
            result.replaced = self.store.delete_clusters_in_scope(user_id)
            for cluster in built:
                try:
                    self.store.create_cluster(cluster)
                except ArticleNotFoundError as e:
                    logger.warning("Dropping cluster %s: %s", cluster.title, e)
                    result.rejected += 1
                    continue
                result.clusters_created += 1
                result.cluster_ids.append(cluster.id)
                logger.info(
                    "Created cluster %s (%s): %d articles from %d sources",
                    cluster.id,
                    cluster.title,
                    cluster.article_count,
                    len(cluster.source_feeds),
                )
        return result

    def get_clusters(
        self,
        user_id: Optional[str] = None,
        include_expired: bool = False,
        limit: int = CLUSTER_LIST_LIMIT,
    ) -> list[Cluster]:
        """Live clusters of one scope. user_id=None is the global scope."""
        now = self.clock()
        clusters = [
            c
            for c in self.store.list_clusters(user_id=user_id)
            if c.user_id == user_id and (include_expired or not c.is_expired(now))
        ]
        clusters.sort(key=lambda c: c.relevance_score, reverse=True)
        return clusters[:limit]

    def delete_cluster(self, cluster_id: str) -> None:
        if not self.store.delete_cluster(cluster_id):
            raise ClusterNotFoundError(cluster_id)
        logger.info("Deleted cluster %s", cluster_id)

    def delete_expired_clusters(self) -> list[str]:
        deleted = self.store.delete_expired_clusters(self.clock())
        if deleted:
            logger.info("Expired %d clusters", len(deleted))
        return deleted
