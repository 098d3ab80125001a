"""Store contracts consumed by the pipeline and the engines.

Every method is scoped by the presented user identifier. Implementations
receive only already-encrypted payloads for protected fields and never see
plaintext PHI in their persistence layer.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from medsafe.models import (
    CommittedDocument,
    DocumentRun,
    MedicalData,
    Medication,
    MedicationLog,
    RunState,
    SafetyReport,
)


def to_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RunStore(ABC):
    """Persistence of document runs with optimistic concurrency."""

    @abstractmethod
    async def create(self, run: DocumentRun) -> DocumentRun:
        """Persist a new run."""

    @abstractmethod
    async def get(self, run_id: UUID) -> DocumentRun:
        """Load a run; raises `RunNotFound`."""

    @abstractmethod
    async def save(self, run: DocumentRun, expected_version: int) -> DocumentRun:
        """Replace the stored run if its version is still `expected_version`.

        Raises:
            VersionConflict: The stored version differs.
        """

    @abstractmethod
    async def find_by_hash(self, user_id: UUID, source_hash: str) -> list[DocumentRun]:
        """Runs of a user created from the same upload bytes, newest first."""

    @abstractmethod
    async def list_in_states(
        self, states: Iterable[RunState], entered_before: datetime
    ) -> list[DocumentRun]:
        """Runs in any of `states` since before `entered_before`."""

    @abstractmethod
    async def runs_for_user(self, user_id: UUID) -> list[DocumentRun]:
        """All runs of a user, newest first."""


class RecordStore(ABC):
    """Encrypted store of committed documents, medications and dose logs."""

    @abstractmethod
    async def commit_document(
        self,
        user_id: UUID,
        document_id: UUID,
        source_ref: str,
        medical_data: MedicalData,
        interaction_report: Optional[SafetyReport] = None,
    ) -> CommittedDocument:
        """Write source reference and data as one unit, keyed by document id.

        Re-committing the same document id replaces the previous unit.

        Raises:
            StorageError: Nothing was written.
        """

    @abstractmethod
    async def get_document(self, user_id: UUID, document_id: UUID) -> Optional[CommittedDocument]:
        """Committed document of the user, or None."""

    @abstractmethod
    async def documents_for_user(self, user_id: UUID) -> list[CommittedDocument]:
        """All committed documents of a user, newest first."""

    @abstractmethod
    async def add_medication(self, medication: Medication) -> Medication:
        """Persist a medication under its owning user."""

    @abstractmethod
    async def get_medication(self, user_id: UUID, medication_id: UUID) -> Optional[Medication]:
        """Medication of the user, or None."""

    @abstractmethod
    async def active_medications(self, user_id: UUID, on: date) -> list[Medication]:
        """The user's medications active on `on`."""

    @abstractmethod
    async def append_log(self, log: MedicationLog) -> MedicationLog:
        """Append a new dose log entry."""

    @abstractmethod
    async def get_log(self, user_id: UUID, log_id: UUID) -> Optional[MedicationLog]:
        """Dose log entry of the user, or None."""

    @abstractmethod
    async def save_log(self, log: MedicationLog) -> MedicationLog:
        """Store the resolution of a pending entry.

        Raises:
            ImmutableLogEntry: The stored entry is already resolved.
        """

    @abstractmethod
    async def logs_in_range(
        self,
        user_id: UUID,
        medication_id: UUID,
        start: datetime,
        end: datetime,
    ) -> list[MedicationLog]:
        """Log entries with `start <= scheduled_time < end`, oldest first."""
