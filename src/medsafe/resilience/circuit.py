"""Circuit breaker keyed by dependency name.

Each breaker is process-wide state for one external dependency. It lives
only in memory: a restart resets every breaker to closed, since it models
transient service health rather than durable state.

Admission and result recording are each a single critical section under
the breaker's lock, so no caller observes a half-applied transition. In
half-open state the trial slot is taken at admission, which lets exactly
one trial call through while all other callers fail fast.

`admit` returns a `Ticket` stamped with the breaker's generation, which
advances every time the circuit opens. A result reported with a ticket from
an earlier generation is ignored, and while half-open only the trial's
result counts.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from medsafe.config import Settings, settings as default_settings
from medsafe.models import CircuitStatus

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(BaseModel):
    """Point-in-time view of one breaker."""

    name: str
    status: CircuitStatus
    consecutive_failures: int
    last_failure_at: Optional[datetime] = None
    failure_threshold: int
    cooldown_seconds: float


@dataclass(frozen=True)
class Ticket:
    """Admission of one call: the generation it was admitted under."""

    generation: int
    trial: bool = False


class CircuitBreaker:
    """Closed / open / half-open breaker for a single dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize breaker.

        Args:
            name: Dependency name, used in logs and errors.
            failure_threshold: Consecutive failures that open the circuit.
            cooldown_seconds: Time the circuit stays open before a trial call.
            clock: Monotonic clock in seconds.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()

        self._status = CircuitStatus.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._last_failure_at: Optional[datetime] = None
        self._trial_in_flight = False
        self._generation = 0

    @property
    def status(self) -> CircuitStatus:
        with self._lock:
            self._refresh()
            return self._status

    def snapshot(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return CircuitState(
                name=self.name,
                status=self._status,
                consecutive_failures=self._failures,
                last_failure_at=self._last_failure_at,
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
            )

    def admit(self) -> Ticket:
        """Admit one call or raise `CircuitOpenError` without contacting the dependency."""
        with self._lock:
            self._refresh()
            if self._status == CircuitStatus.CLOSED:
                return Ticket(self._generation)
            if self._status == CircuitStatus.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                logger.info("Circuit %s half-open: admitting trial call", self.name)
                return Ticket(self._generation, trial=True)
            raise CircuitOpenError(self.name, f"Circuit for {self.name} is open")

    def _counts(self, ticket: Optional[Ticket]) -> bool:
        # Caller holds the lock. No ticket means a result recorded directly.
        if ticket is None:
            return True
        if ticket.generation != self._generation:
            return False
        if self._status == CircuitStatus.HALF_OPEN:
            return ticket.trial
        return True

    def record_success(self, ticket: Optional[Ticket] = None) -> None:
        with self._lock:
            self._refresh()
            if not self._counts(ticket):
                logger.debug("Circuit %s ignoring stale success", self.name)
                return
            if self._status != CircuitStatus.CLOSED:
                logger.info("Circuit %s closed after successful trial", self.name)
            self._status = CircuitStatus.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self, ticket: Optional[Ticket] = None) -> None:
        with self._lock:
            self._refresh()
            if not self._counts(ticket):
                logger.debug("Circuit %s ignoring stale failure", self.name)
                return
            self._failures += 1
            self._last_failure_at = datetime.now(timezone.utc)
            if self._status == CircuitStatus.HALF_OPEN:
                self._open()
                logger.warning("Circuit %s re-opened: trial call failed", self.name)
            elif (
                self._status == CircuitStatus.CLOSED
                and self._failures >= self.failure_threshold
            ):
                self._open()
                logger.warning(
                    "Circuit %s opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )

    def release(self, ticket: Optional[Ticket] = None) -> None:
        """Give back an unused half-open trial slot (e.g. cancelled call)."""
        with self._lock:
            if ticket is None or (ticket.trial and ticket.generation == self._generation):
                self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            self._status = CircuitStatus.CLOSED
            self._failures = 0
            self._opened_at = None
            self._last_failure_at = None
            self._trial_in_flight = False

    def _open(self) -> None:
        self._generation += 1
        self._status = CircuitStatus.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False

    def _refresh(self) -> None:
        # Caller holds the lock.
        if (
            self._status == CircuitStatus.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._status = CircuitStatus.HALF_OPEN
            self._trial_in_flight = False


class CircuitRegistry:
    """Process-wide map of dependency name to breaker."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or default_settings
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        """Get the breaker for `name`, creating it closed on first use."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self._config.circuit_failure_threshold,
                    cooldown_seconds=self._config.circuit_cooldown_seconds,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def snapshots(self) -> list[CircuitState]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.snapshot() for b in sorted(breakers, key=lambda b: b.name)]

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()


circuit_registry = CircuitRegistry()
