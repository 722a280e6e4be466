"""
Module for adapting row-batch sizes to observed read latency.
"""
import logging
import math
import time
from typing import Any, Callable, Tuple

logger = logging.getLogger(__name__)


class AdaptiveBatchController:
    """Hill-climbs the batch limit toward the largest size that keeps reads near a target latency.

    Slow reads shrink the limit multiplicatively; fast reads that came back
    nearly full grow it. The limit always stays within ``[minimum, maximum]``.
    """

    def __init__(self, initial: int, minimum: int, maximum: int,
                 target_ms: float = 115.0,
                 shrink_above: float = 1.55, grow_below: float = 0.72,
                 shrink_factor: float = 0.86, grow_factor: float = 1.12,
                 full_ratio: float = 0.9):
        if minimum > maximum:
            raise ValueError(f"minimum {minimum} exceeds maximum {maximum}")
        self.minimum = minimum
        self.maximum = maximum
        self.target_ms = target_ms
        self.shrink_above = shrink_above
        self.grow_below = grow_below
        self.shrink_factor = shrink_factor
        self.grow_factor = grow_factor
        self.full_ratio = full_ratio
        self.limit = self._clamp(initial)

    def _clamp(self, value: int) -> int:
        return max(self.minimum, min(self.maximum, int(value)))

    def observe(self, elapsed_ms: float, row_count: int) -> int:
        """Record one read and return the limit to use for the next one.

        Args:
            elapsed_ms: Duration of the read in milliseconds
            row_count: Rows the read returned

        Returns:
            Updated limit
        """
        if row_count <= 0:
            return self.limit

        previous = self.limit
        if elapsed_ms > self.target_ms * self.shrink_above:
            self.limit = self._clamp(math.floor(self.limit * self.shrink_factor))
        elif (elapsed_ms < self.target_ms * self.grow_below
              and row_count >= math.floor(self.limit * self.full_ratio)):
            self.limit = self._clamp(math.floor(self.limit * self.grow_factor))

        if self.limit != previous:
            logger.debug(f"Batch limit {previous} -> {self.limit} after {elapsed_ms:.1f}ms read")
        return self.limit


def timed(fn: Callable[..., Any], *args, **kwargs) -> Tuple[Any, float]:
    """Call ``fn`` and return its result with the elapsed time in milliseconds."""
    started = time.perf_counter()
    result = fn(*args, **kwargs)
    return result, (time.perf_counter() - started) * 1000
