"""Failure handling for external dependencies.

Retry with exponential backoff, circuit breaking per dependency, and the
`ResilientClient` wrapper that combines them.
"""

from .circuit import (
    CircuitBreaker,
    CircuitRegistry,
    CircuitState,
    Ticket,
    circuit_registry,
)
from .client import ResilientClient
from .errors import (
    CircuitOpenError,
    DependencyError,
    DependencyFailure,
    DependencyTimeout,
)
from .retry import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitRegistry",
    "CircuitState",
    "Ticket",
    "circuit_registry",
    "ResilientClient",
    "RetryPolicy",
    "DependencyFailure",
    "DependencyTimeout",
    "DependencyError",
    "CircuitOpenError",
]
