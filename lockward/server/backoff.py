import random
from datetime import timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field, model_validator


class BackoffPolicy(BaseModel):
    """Retry budget and delay curve used while waiting for a lock.

    Attributes:
        base: Delay before the second attempt.
        factor: Multiplicative growth of the delay per attempt.
        cap: Upper bound of a single delay.
        jitter: Fraction of the delay that is randomized away (0 disables jitter).
        max_attempts: Total number of acquire attempts - `None` for no limit.
        max_elapsed: Total time budget for acquiring - `None` for no limit.
    """

    base: timedelta = timedelta(seconds=1)
    factor: float = Field(default=2.0, ge=1.0)
    cap: timedelta = timedelta(seconds=30)
    jitter: float = Field(default=0.5, ge=0.0, le=1.0)
    max_attempts: Optional[int] = Field(default=10, ge=1)
    max_elapsed: Optional[timedelta] = None

    @model_validator(mode="after")
    def validate_budget(self) -> "BackoffPolicy":
        if self.max_attempts is None and self.max_elapsed is None:
            raise ValueError("Either max_attempts or max_elapsed must be set - waiting forever is not supported")

        return self


def next_delay(
    policy: BackoffPolicy,
    attempt: int,
    elapsed: float,
    rng: Callable[[], float] = random.random,
) -> float | None:
    """Compute how long to wait before the next acquire attempt.

    Args:
        policy: The backoff policy.
        attempt: The number of attempts already made (starting at 1).
        elapsed: Seconds spent since the first attempt started.
        rng: Source of randomness in [0, 1).

    Returns:
        The delay in seconds - or None if the budget is exhausted.
    """
    if policy.max_attempts is not None and attempt >= policy.max_attempts:
        return None

    remaining = None
    if policy.max_elapsed is not None:
        remaining = policy.max_elapsed.total_seconds() - elapsed
        if remaining <= 0:
            return None

    raw = min(policy.cap.total_seconds(), policy.base.total_seconds() * policy.factor ** (attempt - 1))
    delay = raw * (1 - policy.jitter * rng())
    if remaining is not None:
        delay = min(delay, remaining)

    return max(delay, 0.0)
