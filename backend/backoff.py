from dataclasses import dataclass, field
from typing import Any, Callable


def linear_delay(base_sec: float) -> Callable[[int], float]:
    """Delay grows with the attempt number: base, 2*base, 3*base..."""
    return lambda attempt: base_sec * max(attempt, 0)


def always_retry(_reason: Any) -> bool:
    return True


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry rules for one channel.

    The policy holds no counters; each channel owns its attempt count and asks
    the policy whether another attempt is allowed and how long to wait first.
    """

    max_attempts: int = 5
    delay: Callable[[int], float] = field(default_factory=lambda: linear_delay(1.0))
    is_retryable: Callable[[Any], bool] = always_retry

    def can_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return max(0.0, float(self.delay(attempt)))

    def should_retry(self, attempts_made: int, reason: Any) -> bool:
        return self.can_retry(attempts_made) and self.is_retryable(reason)
