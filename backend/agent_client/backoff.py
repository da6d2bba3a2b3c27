"""
Reconnect backoff policies for the agent runtime.

A policy maps the number of consecutive failed attempts to the delay before
the next one. The supervisor calls reset() after a successful connect.
"""
import random
from typing import Callable


class BackoffPolicy:
    """Base policy: delay before the next reconnect attempt"""

    def next_delay(self, attempt: int) -> float:
        """
        Args:
            attempt: Consecutive failures so far (1 for the first retry)

        Returns:
            Seconds to wait before retrying
        """
        raise NotImplementedError

    def reset(self):
        pass


class ConstantBackoff(BackoffPolicy):
    """Same delay after every failure"""

    def __init__(self, delay: float = 5.0):
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay

    def next_delay(self, attempt: int) -> float:
        return self.delay


class ExponentialBackoff(BackoffPolicy):
    """
    Exponential backoff with a cap and jitter.

    delay = min(initial * multiplier ** (attempt - 1), max_delay), then scaled
    by a random factor in [0.5, 1.5) when jitter is on, and capped again.
    """

    def __init__(
        self,
        initial_delay: float = 5.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter: bool = True,
        rng: Callable[[], float] = random.random,
    ):
        if initial_delay < 0 or max_delay < initial_delay:
            raise ValueError("require 0 <= initial_delay <= max_delay")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self._rng = rng

    def next_delay(self, attempt: int) -> float:
        # Exponent capped so long outages can't overflow the float
        exponent = min(max(attempt, 1) - 1, 64)
        delay = min(self.initial_delay * (self.multiplier ** exponent), self.max_delay)

        if self.jitter:
            delay *= (0.5 + self._rng())  # 0.5x - 1.5x

        return min(delay, self.max_delay)


def build_backoff(kind: str, delay: float, max_delay: float) -> BackoffPolicy:
    """Build a policy from CLI settings ('constant' or 'exponential')"""
    if kind == "constant":
        return ConstantBackoff(delay)
    if kind == "exponential":
        return ExponentialBackoff(initial_delay=delay, max_delay=max(delay, max_delay))
    raise ValueError(f"Unknown backoff kind: {kind}")
