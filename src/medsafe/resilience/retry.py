"""Exponential backoff retry policy."""

import random
from typing import Optional

from pydantic import BaseModel, Field

from medsafe.config import Settings, settings as default_settings


class RetryPolicy(BaseModel):
    """Exponential backoff with jitter.

    The delay before retry n (1-indexed, i.e. after attempt n failed) is
    `min(max_delay, base_delay * multiplier ** (n - 1))` plus a uniform
    jitter of up to `jitter * delay`.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=8.0, ge=0.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    class Config:
        frozen = True

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RetryPolicy":
        config = config or default_settings
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay_seconds,
            multiplier=config.retry_multiplier,
            max_delay=config.retry_max_delay_seconds,
            jitter=config.retry_jitter,
        )

    def base_delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt`, without jitter."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        delay = self.base_delay_for(attempt)
        if self.jitter and delay:
            rng = rng or random
            delay += rng.uniform(0.0, self.jitter * delay)
        return delay
