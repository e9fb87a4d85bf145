"""
Retry policy engine.

Pure functions: given how many attempts an occurrence has used and the job
type's policy, decide how long to wait before the next attempt and whether
the attempt budget is exhausted. Only the jitter draw is random, and the
random source is injectable.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 5.0
    max_delay: float = 300.0
    max_attempts: int = 3
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


@dataclass(frozen=True)
class RetryDecision:
    delay: float
    is_terminal: bool


def backoff_delay(attempt_count: int, policy: RetryPolicy) -> float:
    """
    Deterministic part of the delay: ``min(max_delay, base * 2**n)``.

    ``n`` counts the retries already scheduled for the occurrence, so the
    first retry (after attempt 1) waits ``base``, the second ``2 * base``...
    """
    exponent = max(attempt_count - 1, 0)
    # Cap the exponent before it overflows float range; the min() clamps anyway.
    if exponent > 62:
        return policy.max_delay
    return min(policy.max_delay, policy.base_delay * (2 ** exponent))


def next_retry(
    attempt_count: int,
    policy: RetryPolicy,
    *,
    max_attempts: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> RetryDecision:
    """
    Args:
        attempt_count: attempts already made for the current occurrence
        policy: the job type's policy
        max_attempts: the job's own ceiling; defaults to ``policy.max_attempts``
        rng: random source for jitter (module ``random`` when omitted)
    """
    ceiling = policy.max_attempts if max_attempts is None else max_attempts
    if attempt_count >= ceiling:
        return RetryDecision(delay=0.0, is_terminal=True)

    delay = backoff_delay(attempt_count, policy)
    if policy.jitter and delay > 0:
        delay += (rng or random).uniform(0, delay / 2)
    return RetryDecision(delay=delay, is_terminal=False)
