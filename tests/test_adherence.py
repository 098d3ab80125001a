"""Tests for adherence rate, streak and dose recording."""

import asyncio
from datetime import date, datetime, time, timedelta, timezone
from uuid import uuid4

import pytest

from medsafe.adherence import (
    AdherenceService,
    compute_adherence,
    compute_streak,
    schedule_occurrences,
)
from medsafe.errors import AccessDenied, ImmutableLogEntry, MedicationNotFound
from medsafe.models import DoseStatus, Medication, MedicationLog, Schedule
from medsafe.notify import EventType

from conftest import SteppingClock

UTC = timezone.utc


def twice_daily(user_id, start=date(2026, 3, 1), end=None):
    return Medication(
        user_id=user_id,
        name="Metformin",
        dosage="500 mg",
        schedule=Schedule.daily(time(8, 0), time(20, 0)),
        start_date=start,
        end_date=end,
    )


def log_for(medication, scheduled_time, status):
    return MedicationLog(
        medication_id=medication.id,
        user_id=medication.user_id,
        scheduled_time=scheduled_time,
        taken_at=scheduled_time if status == DoseStatus.TAKEN else None,
        status=status,
    )


class TestScheduleOccurrences:
    """Tests for expanding schedules into dose times."""

    def test_inclusive_range(self):
        """Both the first and the last day are covered."""
        schedule = Schedule.daily(time(8, 0), time(20, 0))

        occurrences = schedule_occurrences(schedule, date(2026, 3, 1), date(2026, 3, 2))

        assert occurrences == [
            datetime(2026, 3, 1, 8, tzinfo=UTC),
            datetime(2026, 3, 1, 20, tzinfo=UTC),
            datetime(2026, 3, 2, 8, tzinfo=UTC),
            datetime(2026, 3, 2, 20, tzinfo=UTC),
        ]

    def test_local_timezone(self):
        """Times are local to the schedule's timezone."""
        schedule = Schedule.daily(time(8, 0), timezone="America/New_York")

        occurrences = schedule_occurrences(schedule, date(2026, 1, 10), date(2026, 1, 10))

        assert occurrences == [datetime(2026, 1, 10, 13, tzinfo=UTC)]

    def test_weekdays(self):
        """Days outside the schedule's weekdays have no doses."""
        schedule = Schedule(times=[time(9, 0)], weekdays=frozenset({0}))

        # 2026-03-02 is a Monday
        occurrences = schedule_occurrences(schedule, date(2026, 3, 1), date(2026, 3, 8))

        assert occurrences == [datetime(2026, 3, 2, 9, tzinfo=UTC)]

    def test_active_window_clips_range(self):
        """Days before the start or after the end date are skipped."""
        schedule = Schedule.daily(time(8, 0))

        occurrences = schedule_occurrences(
            schedule,
            date(2026, 3, 1),
            date(2026, 3, 10),
            active_from=date(2026, 3, 4),
            active_until=date(2026, 3, 5),
        )

        assert [o.day for o in occurrences] == [4, 5]


class TestComputeAdherence:
    """Tests for rate and streak computation."""

    def test_implicit_misses_count(self, user_id):
        """Eight taken and two unlogged past doses give 80%."""
        medication = twice_daily(user_id)
        occurrences = schedule_occurrences(
            medication.schedule, date(2026, 3, 1), date(2026, 3, 5)
        )
        logs = [log_for(medication, t, DoseStatus.TAKEN) for t in occurrences[:8]]

        report = compute_adherence(
            medication, logs, date(2026, 3, 1), date(2026, 3, 5),
            now=datetime(2026, 3, 6, tzinfo=UTC),
        )

        assert report.total == 10
        assert report.taken == 8
        assert report.missed == 2
        assert report.rate == pytest.approx(80.0)
        assert report.streak == 0

    def test_daily_dose_over_ten_days(self, user_id):
        """A daily 08:00 dose taken on 8 of 10 days, 2 never logged, is 80%."""
        medication = Medication(
            user_id=user_id,
            name="Lisinopril",
            schedule=Schedule.daily(time(8, 0)),
            start_date=date(2026, 3, 1),
        )
        days = [date(2026, 3, 1) + timedelta(days=i) for i in range(10)]
        logs = [
            log_for(medication, datetime.combine(day, time(8, 0), tzinfo=UTC), DoseStatus.TAKEN)
            for day in days
            if day.day not in (4, 7)
        ]

        report = compute_adherence(
            medication, logs, date(2026, 3, 1), date(2026, 3, 10),
            now=datetime(2026, 3, 11, 12, tzinfo=UTC),
        )

        assert report.total == 10
        assert report.taken == 8
        assert report.missed == 2
        assert report.rate == pytest.approx(80.0)
        assert report.streak == 3

    def test_streak_counts_back_from_latest(self, user_id):
        """The streak runs back from the latest dose to the first miss."""
        medication = twice_daily(user_id)
        occurrences = schedule_occurrences(
            medication.schedule, date(2026, 3, 1), date(2026, 3, 5)
        )
        logs = [log_for(medication, t, DoseStatus.TAKEN) for t in occurrences[2:]]

        report = compute_adherence(
            medication, logs, date(2026, 3, 1), date(2026, 3, 5),
            now=datetime(2026, 3, 6, tzinfo=UTC),
        )

        assert report.rate == pytest.approx(80.0)
        assert report.streak == 8

    def test_skipped_neutral_for_streak(self, user_id):
        """Skipped doses neither extend nor break the streak."""
        medication = twice_daily(user_id)
        occurrences = schedule_occurrences(
            medication.schedule, date(2026, 3, 1), date(2026, 3, 2)
        )
        statuses = [DoseStatus.MISSED, DoseStatus.TAKEN, DoseStatus.SKIPPED, DoseStatus.TAKEN]
        logs = [log_for(medication, t, s) for t, s in zip(occurrences, statuses)]

        report = compute_adherence(
            medication, logs, date(2026, 3, 1), date(2026, 3, 2),
            now=datetime(2026, 3, 3, tzinfo=UTC),
        )

        assert report.skipped == 1
        assert report.streak == 2
        assert report.rate == pytest.approx(50.0)

    def test_future_doses_pending(self, user_id):
        """Doses after now are pending, not missed, and do not end the streak."""
        medication = twice_daily(user_id)
        logs = [log_for(medication, datetime(2026, 3, 1, 8, tzinfo=UTC), DoseStatus.TAKEN)]

        report = compute_adherence(
            medication, logs, date(2026, 3, 1), date(2026, 3, 1),
            now=datetime(2026, 3, 1, 12, tzinfo=UTC),
        )

        assert report.pending == 1
        assert report.missed == 0
        assert report.streak == 1

    def test_no_occurrences_rate_zero(self, user_id):
        """A medication with no scheduled doses has rate 0."""
        medication = Medication(user_id=user_id, name="Ibuprofen", start_date=date(2026, 3, 1))

        report = compute_adherence(
            medication, [], date(2026, 3, 1), date(2026, 3, 7),
            now=datetime(2026, 3, 8, tzinfo=UTC),
        )

        assert report.total == 0
        assert report.rate == 0.0
        assert report.streak == 0

    def test_unmatched_logs_ignored(self, user_id):
        """Logs off the schedule never push the rate past 100%."""
        medication = twice_daily(user_id)
        logs = [
            log_for(medication, datetime(2026, 3, 1, 8, tzinfo=UTC), DoseStatus.TAKEN),
            log_for(medication, datetime(2026, 3, 1, 20, tzinfo=UTC), DoseStatus.TAKEN),
            log_for(medication, datetime(2026, 3, 1, 13, 30, tzinfo=UTC), DoseStatus.TAKEN),
        ]

        report = compute_adherence(
            medication, logs, date(2026, 3, 1), date(2026, 3, 1),
            now=datetime(2026, 3, 2, tzinfo=UTC),
        )

        assert report.taken == 2
        assert report.rate == pytest.approx(100.0)

    def test_duplicate_slot_prefers_taken(self, user_id):
        """When a slot has several entries the taken one counts."""
        medication = twice_daily(user_id)
        slot = datetime(2026, 3, 1, 8, tzinfo=UTC)
        logs = [
            log_for(medication, slot, DoseStatus.MISSED),
            log_for(medication, slot, DoseStatus.TAKEN),
        ]

        report = compute_adherence(
            medication, logs, date(2026, 3, 1), date(2026, 3, 1),
            now=datetime(2026, 3, 1, 12, tzinfo=UTC),
        )

        assert report.taken == 1
        assert report.missed == 0


class TestComputeStreak:
    def test_empty(self):
        assert compute_streak([], [], datetime(2026, 3, 1, tzinfo=UTC)) == 0


class TestAdherenceService:
    """Tests for recording doses through the service."""

    @pytest.fixture
    def wall_clock(self):
        return SteppingClock(datetime(2026, 3, 2, 23, 0, tzinfo=UTC))

    @pytest.fixture
    def service(self, record_store, notifier, wall_clock):
        return AdherenceService(
            record_store, notifier, low_adherence_threshold=80.0, clock=wall_clock
        )

    @pytest.fixture
    def medication(self, record_store, user_id):
        return asyncio.run(record_store.add_medication(twice_daily(user_id)))

    def slots(self):
        return [
            datetime(2026, 3, 1, 8, tzinfo=UTC),
            datetime(2026, 3, 1, 20, tzinfo=UTC),
            datetime(2026, 3, 2, 8, tzinfo=UTC),
            datetime(2026, 3, 2, 20, tzinfo=UTC),
        ]

    def test_full_adherence(self, service, medication, notifier, user_id):
        """Recording every dose as taken gives 100% and a full streak."""
        report = None
        for slot in self.slots():
            report = asyncio.run(
                service.record_dose(user_id, medication.id, slot, DoseStatus.TAKEN)
            )

        assert report.total == 4
        assert report.rate == pytest.approx(100.0)
        assert report.streak == 4
        assert notifier.of_type(EventType.DOSE_MISSED) == []

    def test_missed_dose_notifies(self, service, medication, record_store, notifier, user_id):
        """A missed dose emits dose_missed; a rate under the threshold emits low_adherence."""
        for slot in self.slots()[:3]:
            asyncio.run(record_store.append_log(log_for(medication, slot, DoseStatus.TAKEN)))

        report = asyncio.run(
            service.record_dose(user_id, medication.id, self.slots()[3], DoseStatus.MISSED)
        )

        assert report.rate == pytest.approx(75.0)
        missed = notifier.of_type(EventType.DOSE_MISSED)
        assert len(missed) == 1
        assert missed[0].subject_id == medication.id
        assert missed[0].payload == {"scheduled_time": self.slots()[3].isoformat()}
        low = notifier.of_type(EventType.LOW_ADHERENCE)
        assert len(low) == 1
        assert low[0].payload == {"rate": 75.0, "threshold": 80.0}

    def test_no_low_adherence_at_threshold(self, service, medication, record_store, notifier, user_id):
        """Rates at or above the threshold do not notify."""
        for slot in self.slots()[:3]:
            asyncio.run(record_store.append_log(log_for(medication, slot, DoseStatus.TAKEN)))

        asyncio.run(
            service.record_dose(user_id, medication.id, self.slots()[3], DoseStatus.TAKEN)
        )

        assert notifier.of_type(EventType.LOW_ADHERENCE) == []

    def test_pending_entry_resolved(self, service, medication, record_store, wall_clock, user_id):
        """A pending entry for the slot is resolved rather than duplicated."""
        slot = self.slots()[0]
        pending = log_for(medication, slot, DoseStatus.PENDING)
        asyncio.run(record_store.append_log(pending))

        asyncio.run(service.record_dose(user_id, medication.id, slot, DoseStatus.TAKEN))

        logs = asyncio.run(
            record_store.logs_in_range(user_id, medication.id, slot, slot + timedelta(hours=1))
        )
        assert [log.id for log in logs] == [pending.id]
        assert logs[0].status == DoseStatus.TAKEN
        assert logs[0].taken_at == wall_clock()

    def test_resolved_entry_immutable(self, service, medication, user_id):
        """A slot already recorded cannot be recorded again."""
        slot = self.slots()[0]
        asyncio.run(service.record_dose(user_id, medication.id, slot, DoseStatus.MISSED))

        with pytest.raises(ImmutableLogEntry):
            asyncio.run(service.record_dose(user_id, medication.id, slot, DoseStatus.TAKEN))

    def test_pending_cannot_become_skipped(self, service, medication, record_store, user_id):
        """Pending entries resolve only to taken or missed."""
        slot = self.slots()[0]
        asyncio.run(record_store.append_log(log_for(medication, slot, DoseStatus.PENDING)))

        with pytest.raises(ImmutableLogEntry):
            asyncio.run(service.record_dose(user_id, medication.id, slot, DoseStatus.SKIPPED))

    def test_pending_status_rejected(self, service, medication, user_id):
        """A dose cannot be recorded as pending."""
        with pytest.raises(ValueError):
            asyncio.run(
                service.record_dose(user_id, medication.id, self.slots()[0], DoseStatus.PENDING)
            )

    def test_unknown_medication(self, service, user_id):
        with pytest.raises(MedicationNotFound):
            asyncio.run(service.report(user_id, uuid4()))

    def test_other_users_medication(self, service, medication, other_user_id):
        """Adherence of another user's medication is not readable."""
        with pytest.raises(AccessDenied):
            asyncio.run(service.report(other_user_id, medication.id))

    def test_default_window_ends_today(self, service, medication, user_id):
        """Without dates the report covers the trailing window up to today."""
        report = asyncio.run(service.report(user_id, medication.id))

        assert report.end == date(2026, 3, 2)
        assert report.start == date(2026, 2, 1)
        assert report.total == 4
        assert report.missed == 4
