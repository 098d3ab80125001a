"""Medication, schedule and dose-log models."""

import re
from datetime import date, datetime, time
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator

from medsafe.errors import ImmutableLogEntry

from .base import BaseRecord, DoseStatus, utcnow

ALL_WEEKDAYS = frozenset(range(7))


def normalize_name(name: str) -> str:
    """Canonical form of a medication name used for matching and caching."""
    return re.sub(r"\s+", " ", name).strip().lower()


def normalized_pair(name_a: str, name_b: str) -> tuple[str, str]:
    """Sorted pair of normalized names; (A, B) and (B, A) give the same pair."""
    a, b = normalize_name(name_a), normalize_name(name_b)
    return (a, b) if a <= b else (b, a)


class Schedule(BaseModel):
    """Times of day a medication is taken, on a set of weekdays."""

    times: list[time] = Field(..., min_length=1)
    weekdays: frozenset[int] = Field(
        default=ALL_WEEKDAYS, description="0=Monday ... 6=Sunday"
    )
    timezone: str = Field(default="UTC", description="IANA timezone of `times`")

    @field_validator("weekdays")
    @classmethod
    def _check_weekdays(cls, value: frozenset[int]) -> frozenset[int]:
        if not value or any(d < 0 or d > 6 for d in value):
            raise ValueError("weekdays must be a non-empty subset of 0..6")
        return value

    @field_validator("times")
    @classmethod
    def _sort_times(cls, value: list[time]) -> list[time]:
        return sorted(set(value))

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def daily(cls, *times: time, timezone: str = "UTC") -> "Schedule":
        return cls(times=list(times), timezone=timezone)

    def applies_on(self, day: date) -> bool:
        return day.weekday() in self.weekdays


class Medication(BaseRecord):
    """A medication in a user's profile."""

    user_id: UUID
    name: str = Field(..., min_length=1)
    generic_name: Optional[str] = None
    dosage: str = ""
    schedule: Optional[Schedule] = None
    start_date: date = Field(default_factory=lambda: utcnow().date())
    end_date: Optional[date] = None

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.generic_name or self.name)

    def is_active(self, on: date) -> bool:
        """Check whether the medication is being taken on a given day."""
        if on < self.start_date:
            return False
        return self.end_date is None or on <= self.end_date


class MedicationLog(BaseRecord):
    """
    One scheduled dose and what happened to it.

    Append-only: a `pending` entry may be resolved once to `taken` or
    `missed`; any other change raises `ImmutableLogEntry`.
    """

    medication_id: UUID
    user_id: UUID
    scheduled_time: datetime
    taken_at: Optional[datetime] = None
    status: DoseStatus = Field(default=DoseStatus.PENDING)

    @property
    def is_resolved(self) -> bool:
        return self.status != DoseStatus.PENDING

    def resolve(
        self, status: DoseStatus, taken_at: Optional[datetime] = None
    ) -> "MedicationLog":
        """Return a copy of a pending entry resolved to taken or missed."""
        if self.status != DoseStatus.PENDING:
            raise ImmutableLogEntry(
                f"Log {self.id} is already {self.status.value}"
            )
        if status not in (DoseStatus.TAKEN, DoseStatus.MISSED):
            raise ImmutableLogEntry(
                f"Pending log {self.id} can only become taken or missed"
            )
        if status == DoseStatus.TAKEN and taken_at is None:
            taken_at = utcnow()
        return self.model_copy(
            update={
                "status": status,
                "taken_at": taken_at if status == DoseStatus.TAKEN else None,
                "updated_at": utcnow(),
            }
        )


class AdherenceReport(BaseModel):
    """Adherence figures for one medication over a date range."""

    medication_id: UUID
    start: date
    end: date
    total: int = 0
    taken: int = 0
    missed: int = 0
    skipped: int = 0
    pending: int = 0
    rate: float = Field(default=0.0, ge=0.0, le=100.0)
    streak: int = 0
