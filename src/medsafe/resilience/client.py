"""Retry + circuit-breaker wrapper around a single external dependency."""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from medsafe.config import Settings, settings as default_settings

from .circuit import CircuitBreaker, CircuitRegistry, circuit_registry
from .errors import (
    CircuitOpenError,
    DependencyError,
    DependencyFailure,
    DependencyTimeout,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilientClient:
    """Calls one dependency with timeout, exponential backoff and a breaker.

    Every call either returns the dependency's result or raises exactly one
    of `DependencyTimeout`, `DependencyError` or `CircuitOpenError`. An open
    circuit ends the call immediately, skipping the remaining attempts.
    """

    def __init__(
        self,
        name: str,
        breaker: Optional[CircuitBreaker] = None,
        policy: Optional[RetryPolicy] = None,
        timeout_seconds: Optional[float] = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        registry: Optional[CircuitRegistry] = None,
    ):
        """Initialize client.

        Args:
            name: Dependency name; also the breaker key in the registry.
            breaker: Explicit breaker. Defaults to the registry's breaker for `name`.
            policy: Retry policy.
            timeout_seconds: Per-attempt timeout, None for no timeout.
            sleep: Awaitable sleep used between attempts.
            rng: Random source for jitter.
            registry: Registry to take the breaker from.
        """
        self.name = name
        self.breaker = breaker or (registry or circuit_registry).get(name)
        self.policy = policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls,
        name: str,
        timeout_seconds: float,
        config: Optional[Settings] = None,
        **kwargs,
    ) -> "ResilientClient":
        config = config or default_settings
        return cls(
            name,
            policy=RetryPolicy.from_settings(config),
            timeout_seconds=timeout_seconds,
            **kwargs,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Invoke `fn(*args, **kwargs)` under the retry and breaker policy."""
        last_error: Optional[DependencyFailure] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return await self._attempt(fn, *args, **kwargs)
            except CircuitOpenError:
                logger.warning("%s: circuit open, failing fast", self.name)
                raise
            except DependencyFailure as e:
                last_error = e
                if attempt == self.policy.max_attempts:
                    break
                delay = self.policy.delay_for(attempt, self._rng)
                logger.warning(
                    "%s: attempt %d/%d failed (%s), retrying in %.2fs",
                    self.name,
                    attempt,
                    self.policy.max_attempts,
                    type(e).__name__,
                    delay,
                )
                await self._sleep(delay)

        logger.error(
            "%s: giving up after %d attempts", self.name, self.policy.max_attempts
        )
        raise last_error

    async def _attempt(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        ticket = self.breaker.admit()
        try:
            if self.timeout_seconds is None:
                result = await fn(*args, **kwargs)
            else:
                result = await asyncio.wait_for(
                    fn(*args, **kwargs), timeout=self.timeout_seconds
                )
        except asyncio.TimeoutError as e:
            self.breaker.record_failure(ticket)
            raise DependencyTimeout(
                self.name, f"{self.name} timed out after {self.timeout_seconds}s"
            ) from e
        except asyncio.CancelledError:
            self.breaker.release(ticket)
            raise
        except Exception as e:
            self.breaker.record_failure(ticket)
            raise DependencyError(self.name, f"{self.name} failed: {e}") from e

        self.breaker.record_success(ticket)
        return result
