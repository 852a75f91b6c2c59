"""Exception types raised by the feed pipeline."""

from __future__ import annotations


class FeedcoreError(Exception):
    """Base class for pipeline errors."""


class ConfigError(FeedcoreError, ValueError):
    """Raised when settings fail validation."""


class StorageError(FeedcoreError):
    """Raised when the backing store cannot complete an operation."""


class FeedNotFoundError(FeedcoreError, LookupError):
    def __init__(self, feed_id: str) -> None:
        super().__init__(f"Feed with id {feed_id} not found")
        self.feed_id = feed_id


class ArticleNotFoundError(FeedcoreError, LookupError):
    def __init__(self, article_id: str) -> None:
        super().__init__(f"Article with id {article_id} not found")
        self.article_id = article_id


class ClusterNotFoundError(FeedcoreError, LookupError):
    def __init__(self, cluster_id: str) -> None:
        super().__init__(f"Cluster with id {cluster_id} not found")
        self.cluster_id = cluster_id


class InvalidPriorityError(FeedcoreError, ValueError):
    def __init__(self, priority: str) -> None:
        super().__init__(
            f"Invalid priority value: {priority!r}. Must be 'high', 'medium', or 'low'."
        )
        self.priority = priority


class SyncLogStateError(FeedcoreError):
    """Raised when a sync log is completed more than once."""


class FetchError(FeedcoreError):
    """Network or HTTP failure while fetching a feed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(FetchError):
    """Feed payload could not be parsed into items."""


class EmbeddingProviderError(FeedcoreError):
    """Base class for embedding provider failures."""


class TransientEmbeddingError(EmbeddingProviderError):
    """Retryable provider failure (rate limit, timeout, 5xx)."""

    def __init__(self, message: str, cooldown: float | None = None) -> None:
        super().__init__(message)
        self.cooldown = cooldown


class PermanentEmbeddingError(EmbeddingProviderError):
    """Non-retryable provider failure; exhausts the remaining attempts."""


class DeadLetterNotFoundError(FeedcoreError, LookupError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Dead-letter item with id {item_id} not found")
        self.item_id = item_id
