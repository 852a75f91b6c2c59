from __future__ import annotations

from dataclasses import dataclass

from tenacity import RetryCallState, wait_random_exponential

from feedcore import constants as C
from feedcore.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape shared by the queue and the scheduler."""

    max_attempts: int = C.EMBEDDING_MAX_ATTEMPTS
    multiplier: float = C.ERROR_BACKOFF_MULTIPLIER
    max_delay: float = C.ERROR_BACKOFF_MAX_HOURS  # Same unit as the base delay
    min_wait: float = C.LLM_RETRY_BACKOFF_MIN  # seconds, in-call retries
    max_wait: float = C.LLM_RETRY_BACKOFF_MAX

    @classmethod
    def for_embeddings(cls, settings: Settings) -> RetryPolicy:
        return cls(max_attempts=settings.embedding_max_attempts)

    @classmethod
    def for_feeds(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.feed_error_threshold,
            multiplier=settings.error_backoff_multiplier,
            max_delay=settings.error_backoff_max_hours,
        )

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def backoff(self, base: float, failures: int) -> float:
        """Widen base by multiplier**(failures-1), capped at max_delay, never below base."""
        if failures <= 0:
            return base
        widened = base * (self.multiplier ** (failures - 1))
        return max(base, min(widened, self.max_delay))

    def wait(self, retry_state: RetryCallState) -> float:
        """tenacity wait: honour an exception's cooldown, else jittered exponential."""
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        cooldown = getattr(exc, "cooldown", None)
        if cooldown is not None:
            return min(float(cooldown), self.max_wait)
        return wait_random_exponential(min=self.min_wait, max=self.max_wait)(retry_state)
