"""Failure conditions returned by the resilient client wrapper."""

from typing import Optional

from medsafe.errors import ErrorCode, MedsafeError


class DependencyFailure(MedsafeError):
    """An external dependency call did not produce a result."""

    def __init__(self, dependency: str, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message or f"{dependency} call failed", code)
        self.dependency = dependency


class DependencyTimeout(DependencyFailure):
    """The dependency did not answer within the call timeout."""


class DependencyError(DependencyFailure):
    """The dependency answered with an error."""


class CircuitOpenError(DependencyFailure):
    """The circuit for the dependency is open; the call was not attempted."""

    code = ErrorCode.SERVICE_UNAVAILABLE
