from unittest.mock import MagicMock

from feedcore.config import Settings
from feedcore.errors import TransientEmbeddingError
from feedcore.retry import RetryPolicy


def state(exc, attempt=1):
    retry_state = MagicMock()
    retry_state.outcome.exception.return_value = exc
    retry_state.attempt_number = attempt
    return retry_state


def test_wait_honours_cooldown_up_to_max():
    policy = RetryPolicy(min_wait=1, max_wait=8)
    assert policy.wait(state(TransientEmbeddingError("slow", cooldown=3))) == 3.0
    assert policy.wait(state(TransientEmbeddingError("slow", cooldown=60))) == 8.0


def test_wait_without_cooldown_is_bounded():
    policy = RetryPolicy(min_wait=1, max_wait=8)
    for attempt in range(1, 6):
        assert 0 <= policy.wait(state(RuntimeError("x"), attempt)) <= 8


def test_policies_from_settings():
    config = Settings(embedding_max_attempts=5, feed_error_threshold=4, error_backoff_max_hours=72)
    assert RetryPolicy.for_embeddings(config).max_attempts == 5
    feeds = RetryPolicy.for_feeds(config)
    assert feeds.max_attempts == 4
    assert feeds.backoff(24, 3) == 72
    assert feeds.exhausted(4)
    assert not feeds.exhausted(3)
