"""Adherence Engine - dose adherence rate and streak.

Occurrences are generated from a medication's schedule in the schedule's
timezone and compared in UTC. A log entry counts only when its scheduled
time equals an occurrence; other entries are ignored, so the rate always
stays within 0-100. An occurrence in the past with no log, or with a log
still pending, is an implicit miss.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Sequence
from uuid import UUID

from medsafe.config import Settings, settings as default_settings
from medsafe.errors import ImmutableLogEntry, MedicationNotFound
from medsafe.models import (
    AdherenceReport,
    DoseStatus,
    Medication,
    MedicationLog,
    Schedule,
    utcnow,
)
from medsafe.notify import EventType, LoggingNotifier, NotificationEvent, Notifier, dispatch
from medsafe.storage import RecordStore, to_utc

logger = logging.getLogger(__name__)

# Preference when several entries exist for one slot
_STATUS_PRIORITY = {
    DoseStatus.TAKEN: 3,
    DoseStatus.MISSED: 2,
    DoseStatus.SKIPPED: 1,
    DoseStatus.PENDING: 0,
}


def schedule_occurrences(
    schedule: Schedule,
    start: date,
    end: date,
    active_from: Optional[date] = None,
    active_until: Optional[date] = None,
) -> list[datetime]:
    """Scheduled dose times (UTC) on the days `start` through `end` inclusive.

    Args:
        schedule: Times of day and weekdays, in the schedule's timezone.
        start: First day of the range.
        end: Last day of the range.
        active_from: Days before this are skipped.
        active_until: Days after this are skipped.

    Returns:
        Sorted list of aware UTC datetimes.
    """
    if active_from is not None:
        start = max(start, active_from)
    if active_until is not None:
        end = min(end, active_until)

    tz = schedule.tzinfo
    occurrences = []
    day = start
    while day <= end:
        if schedule.applies_on(day):
            for t in schedule.times:
                local = datetime.combine(day, t, tzinfo=tz)
                occurrences.append(local.astimezone(timezone.utc))
        day += timedelta(days=1)
    return sorted(occurrences)


def _index_logs(medication_id: UUID, logs: Sequence[MedicationLog]) -> dict[datetime, MedicationLog]:
    by_time: dict[datetime, MedicationLog] = {}
    for log in logs:
        if log.medication_id != medication_id:
            continue
        key = to_utc(log.scheduled_time)
        current = by_time.get(key)
        if current is None or _STATUS_PRIORITY[log.status] > _STATUS_PRIORITY[current.status]:
            by_time[key] = log
    return by_time


def slot_statuses(
    occurrences: Sequence[datetime],
    logs_by_time: dict[datetime, MedicationLog],
    now: datetime,
) -> list[DoseStatus]:
    """Effective status of each occurrence as of `now`."""
    now = to_utc(now)
    statuses = []
    for occurrence in occurrences:
        log = logs_by_time.get(occurrence)
        status = log.status if log is not None else DoseStatus.PENDING
        if status == DoseStatus.PENDING and occurrence < now:
            status = DoseStatus.MISSED
        statuses.append(status)
    return statuses


def compute_streak(
    occurrences: Sequence[datetime], statuses: Sequence[DoseStatus], now: datetime
) -> int:
    """Consecutive taken doses ending at the latest occurrence at or before `now`.

    Skipped doses neither count nor break the streak.
    """
    now = to_utc(now)
    streak = 0
    for occurrence, status in zip(reversed(occurrences), reversed(statuses)):
        if occurrence > now:
            continue
        if status == DoseStatus.TAKEN:
            streak += 1
        elif status == DoseStatus.SKIPPED:
            continue
        else:
            break
    return streak


def compute_adherence(
    medication: Medication,
    logs: Sequence[MedicationLog],
    start: date,
    end: date,
    now: Optional[datetime] = None,
) -> AdherenceReport:
    """Adherence of one medication over `start` through `end` inclusive."""
    now = now or utcnow()
    occurrences = []
    if medication.schedule is not None:
        occurrences = schedule_occurrences(
            medication.schedule, start, end, medication.start_date, medication.end_date
        )

    statuses = slot_statuses(occurrences, _index_logs(medication.id, logs), now)
    total = len(occurrences)
    taken = statuses.count(DoseStatus.TAKEN)

    return AdherenceReport(
        medication_id=medication.id,
        start=start,
        end=end,
        total=total,
        taken=taken,
        missed=statuses.count(DoseStatus.MISSED),
        skipped=statuses.count(DoseStatus.SKIPPED),
        pending=statuses.count(DoseStatus.PENDING),
        rate=(taken / total) * 100 if total else 0.0,
        streak=compute_streak(occurrences, statuses, now),
    )


class AdherenceService:
    """Records dose events and reports adherence for a user's medications."""

    def __init__(
        self,
        records: RecordStore,
        notifier: Optional[Notifier] = None,
        low_adherence_threshold: float = 80.0,
        window_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records = records
        self.notifier = notifier or LoggingNotifier()
        self.low_adherence_threshold = low_adherence_threshold
        self.window_days = window_days
        self.clock = clock

    @classmethod
    def from_settings(
        cls, records: RecordStore, config: Optional[Settings] = None, **kwargs
    ) -> "AdherenceService":
        config = config or default_settings
        return cls(records, low_adherence_threshold=config.low_adherence_threshold, **kwargs)

    async def _medication(self, user_id: UUID, medication_id: UUID) -> Medication:
        medication = await self.records.get_medication(user_id, medication_id)
        if medication is None:
            raise MedicationNotFound(f"Medication {medication_id} not found")
        return medication

    async def report(
        self,
        user_id: UUID,
        medication_id: UUID,
        start: Optional[date] = None,
        end: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> AdherenceReport:
        """Adherence over a date range, by default the trailing window."""
        now = now or self.clock()
        end = end or to_utc(now).date()
        start = start or end - timedelta(days=self.window_days - 1)
        medication = await self._medication(user_id, medication_id)

        # Widen by a day so every timezone's local days are covered
        logs = await self.records.logs_in_range(
            user_id,
            medication_id,
            datetime.combine(start - timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc),
            datetime.combine(end + timedelta(days=2), datetime.min.time(), tzinfo=timezone.utc),
        )
        return compute_adherence(medication, logs, start, end, now)

    async def record_dose(
        self,
        user_id: UUID,
        medication_id: UUID,
        scheduled_time: datetime,
        status: DoseStatus,
        taken_at: Optional[datetime] = None,
    ) -> AdherenceReport:
        """Record what happened to a scheduled dose and return updated adherence.

        A pending entry for the slot is resolved; a slot with no entry gets a
        new one. An already resolved slot raises `ImmutableLogEntry`.
        """
        if status == DoseStatus.PENDING:
            raise ValueError("A dose cannot be recorded as pending")
        await self._medication(user_id, medication_id)

        now = self.clock()
        slot = to_utc(scheduled_time)
        existing = await self.records.logs_in_range(
            user_id, medication_id, slot, slot + timedelta(microseconds=1)
        )

        if existing:
            log = existing[0]
            if log.is_resolved:
                raise ImmutableLogEntry(f"Dose at {slot.isoformat()} is already {log.status.value}")
            if status == DoseStatus.SKIPPED:
                raise ImmutableLogEntry("A pending dose can only become taken or missed")
            await self.records.save_log(log.resolve(status, taken_at or now))
        else:
            await self.records.append_log(
                MedicationLog(
                    medication_id=medication_id,
                    user_id=user_id,
                    scheduled_time=slot,
                    taken_at=(taken_at or now) if status == DoseStatus.TAKEN else None,
                    status=status,
                )
            )
        logger.info("Recorded %s dose for medication %s", status.value, medication_id)

        report = await self.report(user_id, medication_id, now=now)

        if status == DoseStatus.MISSED:
            await dispatch(
                self.notifier,
                NotificationEvent(
                    type=EventType.DOSE_MISSED,
                    user_id=user_id,
                    subject_id=medication_id,
                    payload={"scheduled_time": slot.isoformat()},
                ),
            )
        if report.total and report.rate < self.low_adherence_threshold:
            await dispatch(
                self.notifier,
                NotificationEvent(
                    type=EventType.LOW_ADHERENCE,
                    user_id=user_id,
                    subject_id=medication_id,
                    payload={"rate": round(report.rate, 1), "threshold": self.low_adherence_threshold},
                ),
            )
        return report
