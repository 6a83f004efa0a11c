from __future__ import annotations

import asyncio
import random

from pydantic import BaseModel, Field, model_validator


class RetryPolicy(BaseModel):
    """Call-level retry settings for transient backend errors.

    The default of a single attempt leaves retries to re-running the whole
    pipeline.
    """

    max_attempts: int = Field(default=1, ge=1)
    base_delay: float = Field(default=1.5, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    jitter: float = Field(default=0.5, ge=0)

    @model_validator(mode="after")
    def _clamp_max_delay(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            self.max_delay = self.base_delay
        return self


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def policy_delay(policy: RetryPolicy, attempt: int) -> float:
    return min(compute_backoff(attempt, policy.base_delay, policy.jitter), policy.max_delay)


async def schedule_retry(attempt: int, policy: RetryPolicy | None = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = policy_delay(policy, attempt) if policy else compute_backoff(attempt)
    await asyncio.sleep(delay)
