"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import pytest

from medsafe.clients import Extractor, InteractionLookup, TableInteractionLookup
from medsafe.config import Settings
from medsafe.models import ExtractionResult, InteractionVerdict
from medsafe.notify import RecordingNotifier
from medsafe.pipeline import (
    CommitStage,
    DocumentPipeline,
    ExtractionStage,
    InteractionStage,
    ParseStage,
    UploadValidator,
)
from medsafe.resilience import CircuitRegistry, ResilientClient, RetryPolicy
from medsafe.safety import InteractionCache, MedicationSafetyEngine
from medsafe.storage import InMemoryRecordStore, InMemoryRunStore, RecordCipher

PRESCRIPTION_TEXT = """\
City Clinic - Outpatient Prescription
Diagnosis: Atrial fibrillation (I48.91)
Medications:
1. Warfarin 5 mg OD
2. Metoprolol 25 mg BD PO
Labs:
INR 2.4
Instructions:
Avoid alcohol
"""

NO_ENTITY_TEXT = "Thank you for visiting\nPlease bring this card next time\n"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SteppingClock:
    """Wall clock returning aware UTC datetimes, advanced by hand."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Awaitable sleep that records requested delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeExtractor(Extractor):
    """Extractor returning scripted results or raising scripted errors."""

    def __init__(self, text: str = PRESCRIPTION_TEXT, confidence: float = 0.92, errors=None):
        self.text = text
        self.confidence = confidence
        self.errors = list(errors or [])
        self.calls: list[str] = []

    async def extract(self, source_ref: str) -> ExtractionResult:
        self.calls.append(source_ref)
        if self.errors:
            raise self.errors.pop(0)
        return ExtractionResult(text=self.text, confidence=self.confidence, engine="fake")


class FlakyLookup(InteractionLookup):
    """Table lookup that fails for chosen pairs."""

    def __init__(self, table: TableInteractionLookup, failing: Optional[set] = None):
        self.table = table
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    async def lookup(self, name_a: str, name_b: str) -> InteractionVerdict:
        self.calls.append((name_a, name_b))
        if frozenset((name_a, name_b)) in self.failing:
            raise ConnectionError("interaction service unreachable")
        return await self.table.lookup(name_a, name_b)


@pytest.fixture
def test_settings():
    """Settings with fast retries."""
    return Settings(
        encryption_key=RecordCipher.generate_key(),
        retry_base_delay_seconds=0.01,
        retry_jitter=0.0,
        circuit_failure_threshold=3,
        circuit_cooldown_seconds=30.0,
    )


@pytest.fixture
def cipher():
    return RecordCipher(RecordCipher.generate_key())


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def other_user_id():
    return uuid4()


@pytest.fixture
def run_store(cipher):
    return InMemoryRunStore(cipher)


@pytest.fixture
def record_store(cipher):
    return InMemoryRecordStore(cipher)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def registry(test_settings, clock):
    return CircuitRegistry(config=test_settings, clock=clock)


@pytest.fixture
def interaction_table():
    return TableInteractionLookup(
        {
            "warfarin|aspirin": {
                "severity": "severe",
                "description": "Increased risk of bleeding",
                "recommendation": "Avoid combination unless directed by a physician",
            },
            "metoprolol|verapamil": {
                "severity": "moderate",
                "description": "Additive slowing of heart rate",
                "recommendation": "Monitor heart rate",
            },
            "simvastatin|amlodipine": {
                "severity": "mild",
                "description": "Raised statin exposure",
                "recommendation": "Limit simvastatin dose",
            },
        }
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


def make_client(name, registry, sleep, max_attempts=3, timeout_seconds=1.0):
    return ResilientClient(
        name,
        breaker=registry.get(name),
        policy=RetryPolicy(max_attempts=max_attempts, base_delay=0.01, jitter=0.0),
        timeout_seconds=timeout_seconds,
        sleep=sleep,
    )


@pytest.fixture
def make_engine(registry, sleep):
    """Factory for a safety engine over a given lookup."""

    def _make(lookup, cache=None, max_attempts=3):
        return MedicationSafetyEngine(
            lookup,
            client=make_client("interaction_lookup", registry, sleep, max_attempts),
            cache=cache if cache is not None else InteractionCache(ttl_seconds=3600),
        )

    return _make


@pytest.fixture
def make_pipeline(run_store, record_store, registry, sleep, notifier, interaction_table):
    """Factory for a pipeline wired to in-memory stores and fakes."""

    def _make(
        extractor=None,
        lookup=None,
        records=None,
        commit_attempts=3,
        stage_timeout_seconds=5.0,
        confidence_threshold=0.6,
    ):
        records = records or record_store
        engine = MedicationSafetyEngine(
            lookup if lookup is not None else interaction_table,
            client=make_client("interaction_lookup", registry, sleep),
            cache=InteractionCache(ttl_seconds=3600),
        )
        return DocumentPipeline(
            run_store,
            records,
            extraction=ExtractionStage(
                extractor or FakeExtractor(),
                client=make_client("extraction", registry, sleep),
                confidence_threshold=confidence_threshold,
            ),
            interactions=InteractionStage(engine, records),
            parse=ParseStage(min_entities=1),
            commit=CommitStage(
                records,
                RetryPolicy(max_attempts=commit_attempts, base_delay=0.01, jitter=0.0),
                sleep=sleep,
            ),
            validator=UploadValidator(
                max_bytes=10 * 1024 * 1024,
                accepted_content_types=["image/jpeg", "image/png"],
            ),
            notifier=notifier,
            stage_timeout_seconds=stage_timeout_seconds,
        )

    return _make
