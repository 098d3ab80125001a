"""In-process stores holding encrypted records.

Used by tests and the CLI's ephemeral mode. Records are kept as ciphertext
with only the identifiers and timestamps needed for lookups in the clear,
the same split the SQL tables use.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional
from uuid import UUID

from medsafe.errors import (
    AccessDenied,
    ImmutableLogEntry,
    MedicationNotFound,
    RunNotFound,
    VersionConflict,
)
from medsafe.models import (
    CommittedDocument,
    DocumentRun,
    MedicalData,
    Medication,
    MedicationLog,
    RunState,
    SafetyReport,
    utcnow,
)

from .base import RecordStore, RunStore, to_utc
from .crypto import RecordCipher


@dataclass
class _Row:
    user_id: UUID
    payload: bytes
    created_at: datetime


@dataclass
class _RunRow(_Row):
    state: RunState
    version: int
    state_entered_at: datetime
    source_hash: Optional[str]


@dataclass
class _LogRow(_Row):
    medication_id: UUID
    scheduled_time: datetime
    resolved: bool


class InMemoryRunStore(RunStore):
    """Dictionary-backed `RunStore`."""

    def __init__(self, cipher: RecordCipher):
        self.cipher = cipher
        self._rows: dict[UUID, _RunRow] = {}

    def _row_for(self, run: DocumentRun) -> _RunRow:
        return _RunRow(
            user_id=run.user_id,
            payload=self.cipher.encrypt_model(run),
            created_at=to_utc(run.created_at),
            state=run.state,
            version=run.version,
            state_entered_at=to_utc(run.state_entered_at),
            source_hash=run.source_hash,
        )

    def _load(self, row: _RunRow) -> DocumentRun:
        return self.cipher.decrypt_model(DocumentRun, row.payload)

    async def create(self, run: DocumentRun) -> DocumentRun:
        if run.id in self._rows:
            raise VersionConflict(run.id, expected=run.version, actual=self._rows[run.id].version)
        self._rows[run.id] = self._row_for(run)
        return run

    async def get(self, run_id: UUID) -> DocumentRun:
        row = self._rows.get(run_id)
        if row is None:
            raise RunNotFound(f"Run {run_id} not found")
        return self._load(row)

    async def save(self, run: DocumentRun, expected_version: int) -> DocumentRun:
        row = self._rows.get(run.id)
        if row is None:
            raise RunNotFound(f"Run {run.id} not found")
        if row.version != expected_version:
            raise VersionConflict(run.id, expected=expected_version, actual=row.version)
        self._rows[run.id] = self._row_for(run)
        return run

    async def find_by_hash(self, user_id: UUID, source_hash: str) -> list[DocumentRun]:
        rows = [
            r for r in self._rows.values()
            if r.user_id == user_id and r.source_hash == source_hash
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [self._load(r) for r in rows]

    async def list_in_states(
        self, states: Iterable[RunState], entered_before: datetime
    ) -> list[DocumentRun]:
        wanted = set(states)
        cutoff = to_utc(entered_before)
        rows = [
            r for r in self._rows.values()
            if r.state in wanted and r.state_entered_at < cutoff
        ]
        rows.sort(key=lambda r: r.state_entered_at)
        return [self._load(r) for r in rows]

    async def runs_for_user(self, user_id: UUID) -> list[DocumentRun]:
        rows = [r for r in self._rows.values() if r.user_id == user_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [self._load(r) for r in rows]


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed `RecordStore`."""

    def __init__(self, cipher: RecordCipher):
        self.cipher = cipher
        self._documents: dict[UUID, _Row] = {}
        self._medications: dict[UUID, _Row] = {}
        self._logs: dict[UUID, _LogRow] = {}

    @staticmethod
    def _check_owner(row: Optional[_Row], user_id: UUID, record_id: UUID) -> None:
        if row is not None and row.user_id != user_id:
            raise AccessDenied(f"Record {record_id} does not belong to user {user_id}")

    # Documents

    async def commit_document(
        self,
        user_id: UUID,
        document_id: UUID,
        source_ref: str,
        medical_data: MedicalData,
        interaction_report: Optional[SafetyReport] = None,
    ) -> CommittedDocument:
        self._check_owner(self._documents.get(document_id), user_id, document_id)
        document = CommittedDocument(
            document_id=document_id,
            user_id=user_id,
            source_ref=source_ref,
            medical_data=medical_data,
            interaction_report=interaction_report,
        )
        # Single assignment: the unit is either fully present or absent
        self._documents[document_id] = _Row(
            user_id=user_id,
            payload=self.cipher.encrypt_model(document),
            created_at=to_utc(document.committed_at),
        )
        return document

    async def get_document(self, user_id: UUID, document_id: UUID) -> Optional[CommittedDocument]:
        row = self._documents.get(document_id)
        self._check_owner(row, user_id, document_id)
        if row is None:
            return None
        return self.cipher.decrypt_model(CommittedDocument, row.payload)

    async def documents_for_user(self, user_id: UUID) -> list[CommittedDocument]:
        rows = sorted(
            (r for r in self._documents.values() if r.user_id == user_id),
            key=lambda r: r.created_at,
            reverse=True,
        )
        return [self.cipher.decrypt_model(CommittedDocument, r.payload) for r in rows]

    # Medications

    async def add_medication(self, medication: Medication) -> Medication:
        self._check_owner(self._medications.get(medication.id), medication.user_id, medication.id)
        self._medications[medication.id] = _Row(
            user_id=medication.user_id,
            payload=self.cipher.encrypt_model(medication),
            created_at=to_utc(medication.created_at),
        )
        return medication

    async def get_medication(self, user_id: UUID, medication_id: UUID) -> Optional[Medication]:
        row = self._medications.get(medication_id)
        self._check_owner(row, user_id, medication_id)
        if row is None:
            return None
        return self.cipher.decrypt_model(Medication, row.payload)

    async def active_medications(self, user_id: UUID, on: date) -> list[Medication]:
        rows = sorted(
            (r for r in self._medications.values() if r.user_id == user_id),
            key=lambda r: r.created_at,
        )
        medications = [self.cipher.decrypt_model(Medication, r.payload) for r in rows]
        return [m for m in medications if m.is_active(on)]

    # Dose logs

    def _log_row(self, log: MedicationLog) -> _LogRow:
        return _LogRow(
            user_id=log.user_id,
            payload=self.cipher.encrypt_model(log),
            created_at=to_utc(log.created_at),
            medication_id=log.medication_id,
            scheduled_time=to_utc(log.scheduled_time),
            resolved=log.is_resolved,
        )

    async def append_log(self, log: MedicationLog) -> MedicationLog:
        if log.id in self._logs:
            raise ImmutableLogEntry(f"Log {log.id} already exists")
        if await self.get_medication(log.user_id, log.medication_id) is None:
            raise MedicationNotFound(f"Medication {log.medication_id} not found")
        self._logs[log.id] = self._log_row(log)
        return log

    async def get_log(self, user_id: UUID, log_id: UUID) -> Optional[MedicationLog]:
        row = self._logs.get(log_id)
        self._check_owner(row, user_id, log_id)
        if row is None:
            return None
        return self.cipher.decrypt_model(MedicationLog, row.payload)

    async def save_log(self, log: MedicationLog) -> MedicationLog:
        row = self._logs.get(log.id)
        if row is None:
            raise ImmutableLogEntry(f"Log {log.id} does not exist")
        self._check_owner(row, log.user_id, log.id)
        if row.resolved:
            raise ImmutableLogEntry(f"Log {log.id} is already resolved")
        self._logs[log.id] = self._log_row(log.model_copy(update={"updated_at": utcnow()}))
        return log

    async def logs_in_range(
        self,
        user_id: UUID,
        medication_id: UUID,
        start: datetime,
        end: datetime,
    ) -> list[MedicationLog]:
        start, end = to_utc(start), to_utc(end)
        rows = sorted(
            (
                r for r in self._logs.values()
                if r.user_id == user_id
                and r.medication_id == medication_id
                and start <= r.scheduled_time < end
            ),
            key=lambda r: r.scheduled_time,
        )
        return [self.cipher.decrypt_model(MedicationLog, r.payload) for r in rows]
