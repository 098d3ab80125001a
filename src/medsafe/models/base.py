"""Base models and common types for the medsafe pipeline."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class RunState(str, Enum):
    """States of a document pipeline run."""

    UPLOADED = "uploaded"
    VALIDATING = "validating"
    REJECTED = "rejected"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    EXTRACTION_FAILED = "extraction_failed"
    PARSING = "parsing"
    PARSED = "parsed"
    PARSE_FAILED = "parse_failed"
    CHECKING_INTERACTIONS = "checking_interactions"
    INTERACTION_CHECK_FAILED = "interaction_check_failed"
    COMMITTED = "committed"
    COMMIT_FAILED = "commit_failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states accept no further transitions."""
        return self in TERMINAL_STATES

    @property
    def is_failed(self) -> bool:
        """Failed states, recoverable or not."""
        return self in FAILED_STATES


TERMINAL_STATES = frozenset(
    {
        RunState.REJECTED,
        RunState.EXTRACTION_FAILED,
        RunState.PARSE_FAILED,
        RunState.INTERACTION_CHECK_FAILED,
        RunState.COMMITTED,
    }
)

FAILED_STATES = frozenset(
    {
        RunState.REJECTED,
        RunState.EXTRACTION_FAILED,
        RunState.PARSE_FAILED,
        RunState.INTERACTION_CHECK_FAILED,
        RunState.COMMIT_FAILED,
    }
)


class Severity(str, Enum):
    """Interaction severity, ordered mild < moderate < severe."""

    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.MILD: 1, Severity.MODERATE: 2, Severity.SEVERE: 3}


class DoseStatus(str, Enum):
    """Status of a scheduled medication dose."""

    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class CircuitStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BaseRecord(BaseModel):
    """Base class for all records with common fields."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True  # For SQLAlchemy compatibility
