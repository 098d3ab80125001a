"""Error codes and exception hierarchy surfaced by the core."""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Error codes surfaced to callers."""

    INVALID_FORMAT = "DOC_001"
    SIZE_EXCEEDED = "DOC_002"
    EXTRACTION_FAILED = "DOC_003"
    PARSE_FAILED = "DOC_004"
    INTERACTION_CHECK_INCOMPLETE = "MED_003"
    SERVICE_UNAVAILABLE = "SYS_001"
    STORAGE_ERROR = "SYS_002"


class MedsafeError(Exception):
    """Base class for all medsafe errors.

    Carries an optional `ErrorCode` so API layers can map failures
    to user-visible codes without inspecting exception types.
    """

    code: Optional[ErrorCode] = None

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class DocumentRejected(MedsafeError):
    """Upload failed synchronous validation (format or size)."""

    def __init__(self, message: str, code: ErrorCode):
        super().__init__(message, code)


class StageFailed(MedsafeError):
    """A pipeline stage ended the run; `message` is shown to the user.

    `clarify_image` marks failures the user can fix by uploading a
    clearer image.
    """

    def __init__(self, message: str, code: ErrorCode, clarify_image: bool = False):
        super().__init__(message, code)
        self.clarify_image = clarify_image


class InvalidTransition(MedsafeError):
    """A state transition is not permitted from the current state."""


class VersionConflict(MedsafeError):
    """A save was attempted from a stale version of a record."""

    def __init__(self, record_id, expected: int, actual: Optional[int]):
        super().__init__(
            f"Version conflict on {record_id}: expected {expected}, found {actual}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class PipelineConflict(MedsafeError):
    """Concurrent modification of a run detected; safe to retry."""


class RunInProgress(MedsafeError):
    """A pipeline run for this document is already active."""


class RunNotFound(MedsafeError):
    """No run exists with the given identifier for this user."""


class MedicationNotFound(MedsafeError):
    """No medication exists with the given identifier for this user."""


class AccessDenied(MedsafeError):
    """A record was addressed under a user that does not own it."""


class StorageError(MedsafeError):
    """The encrypted store failed to read or write."""

    code = ErrorCode.STORAGE_ERROR


class InteractionCheckIncomplete(MedsafeError):
    """One or more medication pairs could not be checked."""

    code = ErrorCode.INTERACTION_CHECK_INCOMPLETE


class ImmutableLogEntry(MedsafeError):
    """A medication log entry was already resolved."""
