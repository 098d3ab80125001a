"""Interaction models: verdicts, warnings, cache entries and safety reports."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, computed_field, field_validator

from medsafe.errors import ErrorCode

from .base import Severity

CONSULT_PROVIDER_MESSAGE = (
    "A severe interaction was found. Consult your healthcare provider "
    "before taking these medications together."
)


class InteractionVerdict(BaseModel):
    """Result of looking up one normalized medication-name pair.

    A verdict with no severity means "no known interaction". That is a
    resolved answer and is distinct from a failed lookup.
    """

    severity: Optional[Severity] = None
    description: str = ""
    recommendation: str = ""

    class Config:
        frozen = True

    @property
    def has_interaction(self) -> bool:
        return self.severity is not None


NO_INTERACTION = InteractionVerdict()


class CacheEntry(BaseModel):
    """Cached verdict for an unordered pair of normalized names."""

    key: tuple[str, str]
    verdict: InteractionVerdict
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class InteractionWarning(BaseModel):
    """A flagged pairwise medication risk.

    Derived data: recomputed or served from cache, never edited in place.
    """

    medication_ids: tuple[UUID, UUID]
    medication_names: tuple[str, str] = ("", "")
    severity: Severity
    description: str
    recommendation: str

    class Config:
        frozen = True

    @field_validator("medication_ids")
    @classmethod
    def _sort_pair(cls, value: tuple[UUID, UUID]) -> tuple[UUID, UUID]:
        return tuple(sorted(value, key=str))


class UnresolvedPair(BaseModel):
    """A pair whose interaction status could not be determined."""

    medication_ids: tuple[UUID, UUID]
    reason: str
    error_code: ErrorCode

    @field_validator("medication_ids")
    @classmethod
    def _sort_pair(cls, value: tuple[UUID, UUID]) -> tuple[UUID, UUID]:
        return tuple(sorted(value, key=str))


class SafetyReport(BaseModel):
    """Outcome of checking new medication(s) against an active set."""

    warnings: list[InteractionWarning] = Field(default_factory=list)
    unresolved_pairs: list[UnresolvedPair] = Field(default_factory=list)
    checked_pairs: int = 0

    @computed_field
    @property
    def incomplete(self) -> bool:
        """True when at least one pair could not be resolved."""
        return bool(self.unresolved_pairs)

    @computed_field
    @property
    def consult_provider(self) -> bool:
        return requires_provider_consult(self.warnings)

    @computed_field
    @property
    def consult_message(self) -> Optional[str]:
        return CONSULT_PROVIDER_MESSAGE if self.consult_provider else None

    @computed_field
    @property
    def error_code(self) -> Optional[ErrorCode]:
        if self.incomplete:
            return ErrorCode.INTERACTION_CHECK_INCOMPLETE
        return None

    @property
    def max_severity(self) -> Optional[Severity]:
        if not self.warnings:
            return None
        return max(w.severity for w in self.warnings)

    def merge(self, other: "SafetyReport") -> "SafetyReport":
        """Combine two reports, dropping duplicate pairs."""
        return build_report(
            self.warnings + other.warnings,
            self.unresolved_pairs + other.unresolved_pairs,
            self.checked_pairs + other.checked_pairs,
        )


def requires_provider_consult(warnings: list[InteractionWarning]) -> bool:
    """Escalation rule: any severe warning requires a provider consult."""
    return any(w.severity == Severity.SEVERE for w in warnings)


def build_report(
    warnings: list[InteractionWarning],
    unresolved: list[UnresolvedPair],
    checked_pairs: int,
) -> SafetyReport:
    """Build a report with warnings sorted most severe first."""
    seen = set()
    unique_warnings = []
    for warning in sorted(warnings, key=lambda w: w.severity.rank, reverse=True):
        if warning.medication_ids in seen:
            continue
        seen.add(warning.medication_ids)
        unique_warnings.append(warning)

    seen_unresolved = set()
    unique_unresolved = []
    for pair in unresolved:
        if pair.medication_ids in seen_unresolved:
            continue
        seen_unresolved.add(pair.medication_ids)
        unique_unresolved.append(pair)

    return SafetyReport(
        warnings=unique_warnings,
        unresolved_pairs=unique_unresolved,
        checked_pairs=checked_pairs,
    )
