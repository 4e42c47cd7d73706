import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and exponential backoff schedule.

    ``delay_for(n)`` is the pause after the n-th failed attempt (0-based):
    ``base_delay * 2**n`` capped at ``max_delay``, scaled by a jitter factor drawn
    uniformly from ``[jitter_min, jitter_max]``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    jitter_min: float = 0.7
    jitter_max: float = 1.3

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.jitter_min > self.jitter_max:
            raise ValueError("jitter_min must not exceed jitter_max")

    def delay_for(self, attempt: int, rng: Optional[Callable[[], float]] = None) -> float:
        draw = (rng or random.random)()
        factor = self.jitter_min + (self.jitter_max - self.jitter_min) * draw
        base = min(self.base_delay * (2 ** attempt), self.max_delay)
        return base * factor

    @classmethod
    def from_section(cls, section: Dict[str, Any]) -> 'RetryPolicy':
        return cls(
            max_attempts=int(section.get('max_attempts', 3)),
            base_delay=float(section.get('base_delay_sec', 1.0)),
            max_delay=float(section.get('max_delay_sec', 8.0)),
        )
