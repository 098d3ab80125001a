"""Repository layer for database CRUD operations.

Repositories work inside a caller-owned session and translate between
domain models and encrypted ORM rows.
"""

from datetime import date, datetime
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medsafe.errors import AccessDenied, ImmutableLogEntry, RunNotFound, VersionConflict
from medsafe.models import (
    CommittedDocument,
    DocumentRun,
    DoseStatus,
    Medication,
    MedicationLog,
    RunState,
)

from .base import to_utc
from .crypto import RecordCipher
from .orm_models import (
    DocumentRunORM,
    MedicalRecordORM,
    MedicationLogORM,
    MedicationORM,
)


def _check_owner(row, user_id: UUID, record_id: UUID) -> None:
    if row is not None and row.user_id != user_id:
        raise AccessDenied(f"Record {record_id} does not belong to user {user_id}")


class DocumentRunRepository:
    """Repository for DocumentRun operations."""

    def __init__(self, session: AsyncSession, cipher: RecordCipher):
        self.session = session
        self.cipher = cipher

    def to_model(self, row: DocumentRunORM) -> DocumentRun:
        return self.cipher.decrypt_model(DocumentRun, row.payload_enc)

    async def create(self, run: DocumentRun) -> DocumentRunORM:
        """Create a new run record."""
        orm_run = DocumentRunORM(
            id=run.id,
            user_id=run.user_id,
            state=run.state,
            version=run.version,
            state_entered_at=to_utc(run.state_entered_at),
            source_hash=run.source_hash,
            payload_enc=self.cipher.encrypt_model(run),
            created_at=to_utc(run.created_at),
        )
        self.session.add(orm_run)
        await self.session.flush()
        return orm_run

    async def get_by_id(self, run_id: UUID) -> Optional[DocumentRunORM]:
        """Get run by ID."""
        result = await self.session.execute(
            select(DocumentRunORM).where(DocumentRunORM.id == run_id)
        )
        return result.scalar_one_or_none()

    async def update_versioned(self, run: DocumentRun, expected_version: int) -> None:
        """Write `run` only if the stored version still equals `expected_version`."""
        result = await self.session.execute(
            update(DocumentRunORM)
            .where(
                DocumentRunORM.id == run.id,
                DocumentRunORM.version == expected_version,
            )
            .values(
                state=run.state,
                version=run.version,
                state_entered_at=to_utc(run.state_entered_at),
                payload_enc=self.cipher.encrypt_model(run),
            )
        )
        if result.rowcount == 1:
            return

        current = await self.get_by_id(run.id)
        if current is None:
            raise RunNotFound(f"Run {run.id} not found")
        raise VersionConflict(run.id, expected=expected_version, actual=current.version)

    async def list_by_hash(self, user_id: UUID, source_hash: str) -> Sequence[DocumentRunORM]:
        """Get a user's runs for the same upload bytes (deduplication)."""
        result = await self.session.execute(
            select(DocumentRunORM)
            .where(
                DocumentRunORM.user_id == user_id,
                DocumentRunORM.source_hash == source_hash,
            )
            .order_by(DocumentRunORM.created_at.desc())
        )
        return result.scalars().all()

    async def list_in_states(
        self, states: Iterable[RunState], entered_before: datetime
    ) -> Sequence[DocumentRunORM]:
        """Get runs sitting in any of `states` since before a cutoff."""
        result = await self.session.execute(
            select(DocumentRunORM)
            .where(
                DocumentRunORM.state.in_(list(states)),
                DocumentRunORM.state_entered_at < to_utc(entered_before),
            )
            .order_by(DocumentRunORM.state_entered_at)
        )
        return result.scalars().all()

    async def list_for_user(self, user_id: UUID) -> Sequence[DocumentRunORM]:
        result = await self.session.execute(
            select(DocumentRunORM)
            .where(DocumentRunORM.user_id == user_id)
            .order_by(DocumentRunORM.created_at.desc())
        )
        return result.scalars().all()


class MedicalRecordRepository:
    """Repository for committed document operations."""

    def __init__(self, session: AsyncSession, cipher: RecordCipher):
        self.session = session
        self.cipher = cipher

    def to_model(self, row: MedicalRecordORM) -> CommittedDocument:
        return self.cipher.decrypt_model(CommittedDocument, row.payload_enc)

    async def get_by_id(self, user_id: UUID, document_id: UUID) -> Optional[MedicalRecordORM]:
        row = await self.session.get(MedicalRecordORM, document_id)
        _check_owner(row, user_id, document_id)
        return row

    async def upsert(self, document: CommittedDocument) -> MedicalRecordORM:
        """Insert or replace the committed unit for a document id."""
        row = await self.get_by_id(document.user_id, document.document_id)
        payload = self.cipher.encrypt_model(document)
        if row is None:
            row = MedicalRecordORM(
                document_id=document.document_id,
                user_id=document.user_id,
                committed_at=to_utc(document.committed_at),
                payload_enc=payload,
            )
            self.session.add(row)
        else:
            row.committed_at = to_utc(document.committed_at)
            row.payload_enc = payload
        await self.session.flush()
        return row

    async def list_for_user(self, user_id: UUID) -> Sequence[MedicalRecordORM]:
        result = await self.session.execute(
            select(MedicalRecordORM)
            .where(MedicalRecordORM.user_id == user_id)
            .order_by(MedicalRecordORM.committed_at.desc())
        )
        return result.scalars().all()


class MedicationRepository:
    """Repository for Medication operations."""

    def __init__(self, session: AsyncSession, cipher: RecordCipher):
        self.session = session
        self.cipher = cipher

    def to_model(self, row: MedicationORM) -> Medication:
        return self.cipher.decrypt_model(Medication, row.payload_enc)

    async def create(self, medication: Medication) -> MedicationORM:
        """Create a new medication record."""
        orm_med = MedicationORM(
            id=medication.id,
            user_id=medication.user_id,
            start_date=medication.start_date,
            end_date=medication.end_date,
            payload_enc=self.cipher.encrypt_model(medication),
            created_at=to_utc(medication.created_at),
        )
        self.session.add(orm_med)
        await self.session.flush()
        return orm_med

    async def get_by_id(self, user_id: UUID, medication_id: UUID) -> Optional[MedicationORM]:
        row = await self.session.get(MedicationORM, medication_id)
        _check_owner(row, user_id, medication_id)
        return row

    async def list_active(self, user_id: UUID, on: date) -> Sequence[MedicationORM]:
        """Get a user's medications whose date range covers `on`."""
        result = await self.session.execute(
            select(MedicationORM)
            .where(
                MedicationORM.user_id == user_id,
                MedicationORM.start_date <= on,
                or_(MedicationORM.end_date.is_(None), MedicationORM.end_date >= on),
            )
            .order_by(MedicationORM.created_at)
        )
        return result.scalars().all()


class MedicationLogRepository:
    """Repository for append-only dose log operations."""

    def __init__(self, session: AsyncSession, cipher: RecordCipher):
        self.session = session
        self.cipher = cipher

    def to_model(self, row: MedicationLogORM) -> MedicationLog:
        return self.cipher.decrypt_model(MedicationLog, row.payload_enc)

    async def create(self, log: MedicationLog) -> MedicationLogORM:
        """Append a new dose log entry."""
        orm_log = MedicationLogORM(
            id=log.id,
            user_id=log.user_id,
            medication_id=log.medication_id,
            scheduled_time=to_utc(log.scheduled_time),
            status=log.status,
            payload_enc=self.cipher.encrypt_model(log),
            created_at=to_utc(log.created_at),
        )
        self.session.add(orm_log)
        await self.session.flush()
        return orm_log

    async def get_by_id(self, user_id: UUID, log_id: UUID) -> Optional[MedicationLogORM]:
        row = await self.session.get(MedicationLogORM, log_id)
        _check_owner(row, user_id, log_id)
        return row

    async def resolve(self, log: MedicationLog) -> None:
        """Store the resolution of an entry that is still pending."""
        result = await self.session.execute(
            update(MedicationLogORM)
            .where(
                MedicationLogORM.id == log.id,
                MedicationLogORM.user_id == log.user_id,
                MedicationLogORM.status == DoseStatus.PENDING,
            )
            .values(status=log.status, payload_enc=self.cipher.encrypt_model(log))
        )
        if result.rowcount != 1:
            current = await self.get_by_id(log.user_id, log.id)
            if current is None:
                raise ImmutableLogEntry(f"Log {log.id} does not exist")
            raise ImmutableLogEntry(f"Log {log.id} is already {current.status.value}")

    async def list_in_range(
        self,
        user_id: UUID,
        medication_id: UUID,
        start: datetime,
        end: datetime,
    ) -> Sequence[MedicationLogORM]:
        result = await self.session.execute(
            select(MedicationLogORM)
            .where(
                MedicationLogORM.user_id == user_id,
                MedicationLogORM.medication_id == medication_id,
                MedicationLogORM.scheduled_time >= to_utc(start),
                MedicationLogORM.scheduled_time < to_utc(end),
            )
            .order_by(MedicationLogORM.scheduled_time)
        )
        return result.scalars().all()
