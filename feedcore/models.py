"""Typed data models for the feed pipeline."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Optional, TypedDict

import numpy as np
from numpy.typing import NDArray

FeedStatus = Literal["active", "paused", "error"]
FeedPriority = Literal["high", "medium", "low"]
SyncStatus = Literal["in_progress", "success", "error"]
EmbeddingStatus = Literal["pending", "completed", "failed"]
QueueStatus = Literal["pending", "processing", "completed", "failed"]
GenerationMethod = Literal["vector", "keyword"]

Vector = NDArray[np.float32]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_in(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def _vec_out(value: Optional[Vector]) -> Optional[list[float]]:
    return [float(x) for x in value] if value is not None else None


def _vec_in(value: Any) -> Optional[Vector]:
    if value is None:
        return None
    return np.asarray(value, dtype=np.float32)


@dataclass
class Feed:
    """A subscribed content source and its polling schedule."""

    id: str
    user_id: str
    url: str
    name: str = ""
    status: FeedStatus = "active"
    priority: FeedPriority = "medium"
    sync_interval_hours: float = 24.0
    custom_interval_hours: Optional[float] = None
    next_sync_at: Optional[datetime] = None
    last_fetched_at: Optional[datetime] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Feed:
        return cls(
            id=str(d["id"]),
            user_id=str(d.get("user_id", "")),
            url=str(d.get("url", "")),
            name=str(d.get("name", "")),
            status=d.get("status", "active"),
            priority=d.get("priority", "medium"),
            sync_interval_hours=float(d.get("sync_interval_hours", 24.0)),
            custom_interval_hours=d.get("custom_interval_hours"),
            next_sync_at=_dt_in(d.get("next_sync_at")),
            last_fetched_at=_dt_in(d.get("last_fetched_at")),
            etag=d.get("etag"),
            last_modified=d.get("last_modified"),
            consecutive_failures=int(d.get("consecutive_failures", 0)),
            last_error=d.get("last_error"),
            created_at=_dt_in(d.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "url": self.url,
            "name": self.name,
            "status": self.status,
            "priority": self.priority,
            "sync_interval_hours": self.sync_interval_hours,
            "custom_interval_hours": self.custom_interval_hours,
            "next_sync_at": _dt_out(self.next_sync_at),
            "last_fetched_at": _dt_out(self.last_fetched_at),
            "etag": self.etag,
            "last_modified": self.last_modified,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "created_at": _dt_out(self.created_at),
        }


@dataclass
class SyncLog:
    """One sync attempt of one feed. Completed exactly once."""

    id: str
    feed_id: str
    started_at: datetime
    status: SyncStatus = "in_progress"
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    http_status_code: Optional[int] = None
    articles_found: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    error_message: Optional[str] = None
    etag_received: Optional[str] = None
    last_modified_received: Optional[str] = None
    feed_size_bytes: Optional[int] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SyncLog:
        return cls(
            id=str(d["id"]),
            feed_id=str(d["feed_id"]),
            started_at=datetime.fromisoformat(d["started_at"]),
            status=d.get("status", "in_progress"),
            completed_at=_dt_in(d.get("completed_at")),
            duration_ms=d.get("duration_ms"),
            http_status_code=d.get("http_status_code"),
            articles_found=int(d.get("articles_found", 0)),
            articles_new=int(d.get("articles_new", 0)),
            articles_updated=int(d.get("articles_updated", 0)),
            error_message=d.get("error_message"),
            etag_received=d.get("etag_received"),
            last_modified_received=d.get("last_modified_received"),
            feed_size_bytes=d.get("feed_size_bytes"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "feed_id": self.feed_id,
            "started_at": self.started_at.isoformat(),
            "status": self.status,
            "completed_at": _dt_out(self.completed_at),
            "duration_ms": self.duration_ms,
            "http_status_code": self.http_status_code,
            "articles_found": self.articles_found,
            "articles_new": self.articles_new,
            "articles_updated": self.articles_updated,
            "error_message": self.error_message,
            "etag_received": self.etag_received,
            "last_modified_received": self.last_modified_received,
            "feed_size_bytes": self.feed_size_bytes,
        }


@dataclass
class Article:
    """An ingested feed item. Unique per (feed_id, guid)."""

    id: str
    feed_id: str
    guid: str
    title: str
    url: Optional[str] = None
    content: str = ""
    excerpt: str = ""
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    embedding: Optional[Vector] = None
    embedding_status: EmbeddingStatus = "pending"
    content_hash: Optional[str] = None
    embedding_error: Optional[str] = None
    cluster_id: Optional[str] = None  # Weak reference, cleared when the cluster goes

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.published_at or self.fetched_at

    @property
    def has_embedding(self) -> bool:
        return self.embedding_status == "completed" and self.embedding is not None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Article:
        return cls(
            id=str(d["id"]),
            feed_id=str(d["feed_id"]),
            guid=str(d["guid"]),
            title=str(d.get("title", "")),
            url=d.get("url"),
            content=str(d.get("content", "")),
            excerpt=str(d.get("excerpt", "")),
            author=d.get("author"),
            published_at=_dt_in(d.get("published_at")),
            fetched_at=_dt_in(d.get("fetched_at")),
            created_at=_dt_in(d.get("created_at")),
            embedding=_vec_in(d.get("embedding")),
            embedding_status=d.get("embedding_status", "pending"),
            content_hash=d.get("content_hash"),
            embedding_error=d.get("embedding_error"),
            cluster_id=d.get("cluster_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "feed_id": self.feed_id,
            "guid": self.guid,
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "excerpt": self.excerpt,
            "author": self.author,
            "published_at": _dt_out(self.published_at),
            "fetched_at": _dt_out(self.fetched_at),
            "created_at": _dt_out(self.created_at),
            "embedding": _vec_out(self.embedding),
            "embedding_status": self.embedding_status,
            "content_hash": self.content_hash,
            "embedding_error": self.embedding_error,
            "cluster_id": self.cluster_id,
        }


@dataclass
class EmbeddingQueueItem:
    """Outstanding embedding work for one article."""

    id: str
    article_id: str
    user_id: Optional[str] = None
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    status: QueueStatus = "pending"
    created_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> EmbeddingQueueItem:
        return cls(
            id=str(d["id"]),
            article_id=str(d["article_id"]),
            user_id=d.get("user_id"),
            priority=int(d.get("priority", 0)),
            attempts=int(d.get("attempts", 0)),
            max_attempts=int(d.get("max_attempts", 3)),
            status=d.get("status", "pending"),
            created_at=_dt_in(d.get("created_at")),
            last_attempt_at=_dt_in(d.get("last_attempt_at")),
            error_message=d.get("error_message"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "article_id": self.article_id,
            "user_id": self.user_id,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "status": self.status,
            "created_at": _dt_out(self.created_at),
            "last_attempt_at": _dt_out(self.last_attempt_at),
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class DeadLetterItem:
    """Audit record of queue work that exhausted its attempts."""

    id: str
    operation: str
    provider: str
    payload: dict[str, Any]
    error_message: str
    attempts: int
    created_at: datetime
    last_attempt_at: Optional[datetime] = None
    user_id: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DeadLetterItem:
        return cls(
            id=str(d["id"]),
            operation=str(d["operation"]),
            provider=str(d.get("provider", "")),
            payload=dict(d.get("payload") or {}),
            error_message=str(d.get("error_message", "")),
            attempts=int(d.get("attempts", 0)),
            created_at=datetime.fromisoformat(d["created_at"]),
            last_attempt_at=_dt_in(d.get("last_attempt_at")),
            user_id=d.get("user_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "provider": self.provider,
            "payload": self.payload,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "last_attempt_at": _dt_out(self.last_attempt_at),
            "user_id": self.user_id,
        }


@dataclass
class Cluster:
    """A group of similar articles spanning several sources."""

    id: str
    title: str
    summary: str
    article_ids: list[str]
    source_feeds: set[str]
    timeframe_start: datetime
    timeframe_end: datetime
    expires_at: datetime
    avg_similarity: float
    relevance_score: float
    generation_method: GenerationMethod = "vector"
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def article_count(self) -> int:
        return len(self.article_ids)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Cluster:
        return cls(
            id=str(d["id"]),
            title=str(d.get("title", "")),
            summary=str(d.get("summary", "")),
            article_ids=list(d.get("article_ids", [])),
            source_feeds=set(d.get("source_feeds", [])),
            timeframe_start=datetime.fromisoformat(d["timeframe_start"]),
            timeframe_end=datetime.fromisoformat(d["timeframe_end"]),
            expires_at=datetime.fromisoformat(d["expires_at"]),
            avg_similarity=float(d.get("avg_similarity", 0.0)),
            relevance_score=float(d.get("relevance_score", 0.0)),
            generation_method=d.get("generation_method", "vector"),
            user_id=d.get("user_id"),
            created_at=_dt_in(d.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "article_ids": list(self.article_ids),
            "source_feeds": sorted(self.source_feeds),
            "timeframe_start": self.timeframe_start.isoformat(),
            "timeframe_end": self.timeframe_end.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "avg_similarity": self.avg_similarity,
            "relevance_score": self.relevance_score,
            "generation_method": self.generation_method,
            "user_id": self.user_id,
            "created_at": _dt_out(self.created_at),
        }


@dataclass
class FeedItem:
    """Normalized item produced by the feed parser."""

    guid: str
    title: str
    url: Optional[str]
    content: str = ""
    excerpt: str = ""
    author: Optional[str] = None
    published_at: Optional[datetime] = None


@dataclass
class FetchResponse:
    """Outcome of a conditional GET."""

    status_code: int
    text: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    size_bytes: int = 0

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


@dataclass
class SyncResult:
    """Per-feed outcome of a sync, returned to dashboards."""

    feed_id: str
    success: bool
    sync_log_id: Optional[str] = None
    http_status_code: Optional[int] = None
    articles_found: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    not_modified: bool = False
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class SchedulerPassResult:
    feeds_due: int = 0
    results: list[SyncResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class DrainResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0  # Queue exhaustion
    deferred: int = 0  # Daily quota reached; left pending
    skipped: int = 0  # Content hash unchanged
    remaining: int = 0


@dataclass
class ClusteringResult:
    candidates: int = 0
    groups: int = 0
    clusters_created: int = 0
    rejected: int = 0  # Groups below the validity bounds
    replaced: int = 0
    cluster_ids: list[str] = field(default_factory=list)


@dataclass
class SimilarArticle:
    article_id: str
    feed_id: str
    title: str
    url: Optional[str]
    similarity: float
    published_at: Optional[datetime] = None


@dataclass
class SimilarArticlesResult:
    article_id: str
    results: list[SimilarArticle] = field(default_factory=list)
    message: Optional[str] = None
    cached: bool = False


class SyncLogSummary(TypedDict):
    """Serialized SyncLog row for health reports."""

    id: str
    status: SyncStatus
    started_at: str
    completed_at: Optional[str]
    duration_ms: Optional[int]
    http_status_code: Optional[int]
    articles_found: int
    articles_new: int
    articles_updated: int
    error_message: Optional[str]


class FeedHealthStats(TypedDict):
    """Aggregated sync health for one feed."""

    feed_id: str
    feed_name: str
    url: str
    status: FeedStatus
    priority: FeedPriority
    total_syncs: int
    successful_syncs: int
    failed_syncs: int
    success_rate: float
    avg_duration_ms: float
    total_new_articles: int
    consecutive_failures: int
    last_sync_at: Optional[str]
    next_sync_at: Optional[str]
    last_error: Optional[str]
    recent_syncs: list[SyncLogSummary]


class QueueStats(TypedDict):
    pending: int
    processing: int
    completed: int
    failed: int
    dead_letters: int


class CacheStats(TypedDict):
    entries: int
    hits: int
    misses: int
    invalidations: int


class ScheduleEntry(TypedDict):
    feed_id: str
    name: str
    status: FeedStatus
    priority: FeedPriority
    interval_hours: float
    custom_interval: bool
    last_fetched_at: Optional[str]
    next_sync_at: Optional[str]
