"""Tests for the medication safety engine and medication service."""

import asyncio
from datetime import time, timedelta

import pytest

from medsafe.errors import AccessDenied, ErrorCode, InteractionCheckIncomplete
from medsafe.models import (
    CONSULT_PROVIDER_MESSAGE,
    InteractionVerdict,
    Medication,
    Schedule,
    Severity,
    utcnow,
)
from medsafe.notify import EventType
from medsafe.pipeline import DocumentPipeline
from medsafe.safety import InteractionCache, MedicationSafetyEngine, MedicationService

from conftest import FakeExtractor, FlakyLookup, make_client


def medication(user_id, name, **kwargs):
    return Medication(
        user_id=user_id,
        name=name,
        schedule=Schedule.daily(time(8, 0)),
        **kwargs,
    )


class TestMedicationSafetyEngine:
    """Tests for pairwise interaction checks."""

    def test_no_active_medications(self, make_engine, interaction_table, user_id):
        """Checking against an empty set finds nothing."""
        engine = make_engine(interaction_table)

        report = asyncio.run(engine.check(medication(user_id, "Warfarin"), []))

        assert report.warnings == []
        assert not report.incomplete
        assert report.checked_pairs == 0

    def test_severe_interaction_requires_consult(self, make_engine, interaction_table, user_id):
        """M against {E1 none, E2 severe} yields one severe warning and a consult."""
        engine = make_engine(interaction_table)
        new = medication(user_id, "Warfarin")
        metformin = medication(user_id, "Metformin")
        aspirin = medication(user_id, "Aspirin")

        report = asyncio.run(engine.check(new, [metformin, aspirin]))

        assert len(report.warnings) == 1
        warning = report.warnings[0]
        assert warning.severity == Severity.SEVERE
        assert set(warning.medication_ids) == {new.id, aspirin.id}
        assert set(warning.medication_names) == {"Warfarin", "Aspirin"}
        assert report.consult_provider
        assert report.consult_message == CONSULT_PROVIDER_MESSAGE
        assert report.checked_pairs == 2
        assert not report.incomplete

    def test_moderate_interaction_no_consult(self, make_engine, interaction_table, user_id):
        """Only severe warnings escalate."""
        engine = make_engine(interaction_table)

        report = asyncio.run(
            engine.check(medication(user_id, "Verapamil"), [medication(user_id, "Metoprolol")])
        )

        assert report.max_severity == Severity.MODERATE
        assert not report.consult_provider
        assert report.consult_message is None

    def test_generic_name_used_for_lookup(self, make_engine, interaction_table, user_id):
        """Brand names are matched through their generic name."""
        engine = make_engine(interaction_table)
        coumadin = medication(user_id, "Coumadin", generic_name="Warfarin")

        report = asyncio.run(engine.check(coumadin, [medication(user_id, "Aspirin")]))

        assert report.warnings[0].severity == Severity.SEVERE

    def test_warnings_sorted_most_severe_first(self, make_engine, interaction_table, user_id):
        """Report lists the most severe warning first."""
        engine = make_engine(interaction_table)
        new = medication(user_id, "Amlodipine")
        interaction_table.add(
            "amlodipine",
            "clarithromycin",
            InteractionVerdict(
                severity=Severity.SEVERE,
                description="Raised amlodipine exposure",
                recommendation="Avoid combination",
            ),
        )

        report = asyncio.run(
            engine.check(new, [medication(user_id, "Simvastatin"), medication(user_id, "Clarithromycin")])
        )

        assert [w.severity for w in report.warnings] == [Severity.SEVERE, Severity.MILD]

    def test_failed_pair_reported_unresolved(self, make_engine, interaction_table, user_id):
        """A failing pair is unresolved while the others still complete."""
        lookup = FlakyLookup(interaction_table, failing={frozenset(("warfarin", "aspirin"))})
        engine = make_engine(lookup, max_attempts=2)
        new = medication(user_id, "Warfarin")
        metformin = medication(user_id, "Metformin")
        aspirin = medication(user_id, "Aspirin")

        report = asyncio.run(engine.check(new, [metformin, aspirin]))

        assert report.incomplete
        assert report.error_code == ErrorCode.INTERACTION_CHECK_INCOMPLETE
        assert report.warnings == []
        assert len(report.unresolved_pairs) == 1
        assert set(report.unresolved_pairs[0].medication_ids) == {new.id, aspirin.id}
        assert report.unresolved_pairs[0].error_code == ErrorCode.INTERACTION_CHECK_INCOMPLETE
        assert lookup.calls.count(("aspirin", "warfarin")) == 2

    def test_failed_pair_not_cached(self, make_engine, interaction_table, user_id):
        """Failures are not cached; successes are."""
        lookup = FlakyLookup(interaction_table, failing={frozenset(("warfarin", "aspirin"))})
        cache = InteractionCache(ttl_seconds=3600)
        engine = make_engine(lookup, cache=cache, max_attempts=1)

        asyncio.run(
            engine.check(
                medication(user_id, "Warfarin"),
                [medication(user_id, "Metformin"), medication(user_id, "Aspirin")],
            )
        )

        assert cache.get("warfarin", "metformin") is not None
        assert cache.get("warfarin", "aspirin") is None

    def test_cached_verdict_skips_lookup(self, make_engine, interaction_table, user_id):
        """A fresh cached verdict answers without calling the dependency."""
        lookup = FlakyLookup(interaction_table)
        engine = make_engine(lookup)
        new = medication(user_id, "Warfarin")
        active = [medication(user_id, "Aspirin")]

        asyncio.run(engine.check(new, active))
        asyncio.run(engine.check(new, active))

        assert len(lookup.calls) == 1

    def test_open_circuit_marks_pairs_unavailable(self, make_engine, interaction_table, registry, user_id):
        """With the circuit open every pair is unresolved with SYS_001."""
        lookup = FlakyLookup(interaction_table)
        engine = make_engine(lookup)
        breaker = registry.get("interaction_lookup")
        for _ in range(3):
            breaker.record_failure()

        report = asyncio.run(
            engine.check(medication(user_id, "Warfarin"), [medication(user_id, "Aspirin")])
        )

        assert report.incomplete
        assert report.unresolved_pairs[0].error_code == ErrorCode.SERVICE_UNAVAILABLE
        assert lookup.calls == []

    def test_self_excluded_from_active_set(self, make_engine, interaction_table, user_id):
        """The new medication is never paired with itself."""
        engine = make_engine(interaction_table)
        new = medication(user_id, "Warfarin")

        report = asyncio.run(engine.check(new, [new]))

        assert report.checked_pairs == 0

    @pytest.mark.parametrize(
        "first, second",
        [
            ("Warfarin", "Aspirin"),
            ("Verapamil", "Metoprolol"),
            ("Amlodipine", "Simvastatin"),
            ("Metformin", "Warfarin"),
        ],
    )
    def test_pair_order_irrelevant(self, make_engine, interaction_table, user_id, first, second):
        """Checking A against B and B against A gives the same verdict."""
        a = medication(user_id, first)
        b = medication(user_id, second)

        forward = asyncio.run(make_engine(interaction_table).check(a, [b]))
        backward = asyncio.run(make_engine(interaction_table).check(b, [a]))

        assert forward.warnings == backward.warnings
        assert forward.consult_provider == backward.consult_provider
        assert not forward.incomplete and not backward.incomplete

    def test_injected_empty_cache_is_used(self, interaction_table, registry, sleep, user_id):
        """A cache passed in is kept even while it is still empty."""
        shared = InteractionCache(ttl_seconds=3600)
        engine = MedicationSafetyEngine(
            interaction_table,
            client=make_client("interaction_lookup", registry, sleep),
            cache=shared,
        )

        asyncio.run(engine.check(medication(user_id, "Warfarin"), [medication(user_id, "Aspirin")]))

        assert engine.cache is shared
        assert len(shared) == 1

    def test_pipeline_shares_injected_cache(
        self, run_store, record_store, interaction_table, registry, test_settings
    ):
        shared = InteractionCache(ttl_seconds=3600)

        pipeline = DocumentPipeline.from_settings(
            run_store,
            record_store,
            FakeExtractor(),
            interaction_table,
            test_settings,
            registry=registry,
            cache=shared,
        )

        assert pipeline.interactions.engine.cache is shared


class TestMedicationService:
    """Tests for adding medications behind the interaction check."""

    @pytest.fixture
    def service(self, make_engine, interaction_table, record_store, notifier):
        return MedicationService(make_engine(interaction_table), record_store, notifier)

    def test_add_stores_medication(self, service, record_store, user_id):
        """A clean medication is stored and becomes active."""
        added = asyncio.run(service.add_medication(user_id, medication(user_id, "Metformin")))

        active = asyncio.run(record_store.active_medications(user_id, utcnow().date()))
        assert [m.id for m in active] == [added.medication.id]
        assert added.report.warnings == []

    def test_severe_interaction_notifies(self, service, notifier, user_id):
        """A severe warning still stores the medication and emits an event."""
        asyncio.run(service.add_medication(user_id, medication(user_id, "Aspirin")))

        added = asyncio.run(service.add_medication(user_id, medication(user_id, "Warfarin")))

        assert added.report.consult_provider
        events = notifier.of_type(EventType.SEVERE_INTERACTION_DETECTED)
        assert len(events) == 1
        assert events[0].subject_id == added.medication.id

    def test_inactive_medications_ignored(self, service, user_id):
        """Medications that ended are not part of the active set."""
        yesterday = utcnow().date() - timedelta(days=1)
        asyncio.run(
            service.add_medication(
                user_id,
                medication(user_id, "Aspirin", start_date=yesterday - timedelta(days=10), end_date=yesterday),
            )
        )

        added = asyncio.run(service.add_medication(user_id, medication(user_id, "Warfarin")))

        assert added.report.warnings == []

    def test_other_users_medications_ignored(self, service, user_id, other_user_id):
        """Only the caller's own medications are checked against."""
        asyncio.run(service.add_medication(other_user_id, medication(other_user_id, "Aspirin")))

        added = asyncio.run(service.add_medication(user_id, medication(user_id, "Warfarin")))

        assert added.report.checked_pairs == 0

    def test_wrong_owner_denied(self, service, user_id, other_user_id):
        """A medication owned by someone else is refused."""
        with pytest.raises(AccessDenied):
            asyncio.run(service.add_medication(user_id, medication(other_user_id, "Aspirin")))

    def test_require_complete_refuses_incomplete(
        self, make_engine, interaction_table, record_store, user_id
    ):
        """With require_complete an unresolved pair blocks the add."""
        lookup = FlakyLookup(interaction_table, failing={frozenset(("warfarin", "aspirin"))})
        service = MedicationService(make_engine(lookup, max_attempts=1), record_store)
        asyncio.run(service.add_medication(user_id, medication(user_id, "Aspirin")))

        with pytest.raises(InteractionCheckIncomplete) as exc_info:
            asyncio.run(
                service.add_medication(
                    user_id, medication(user_id, "Warfarin"), require_complete=True
                )
            )

        assert exc_info.value.code == ErrorCode.INTERACTION_CHECK_INCOMPLETE
        active = asyncio.run(record_store.active_medications(user_id, utcnow().date()))
        assert [m.name for m in active] == ["Aspirin"]

    def test_incomplete_allowed_by_default(
        self, make_engine, interaction_table, record_store, user_id
    ):
        """Without require_complete the medication is stored and flagged."""
        lookup = FlakyLookup(interaction_table, failing={frozenset(("warfarin", "aspirin"))})
        service = MedicationService(make_engine(lookup, max_attempts=1), record_store)
        asyncio.run(service.add_medication(user_id, medication(user_id, "Aspirin")))

        added = asyncio.run(service.add_medication(user_id, medication(user_id, "Warfarin")))

        assert added.report.incomplete
        assert not added.report.consult_provider
