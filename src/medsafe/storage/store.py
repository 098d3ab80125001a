"""SQL-backed implementations of the store contracts."""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncGenerator, Iterable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medsafe.errors import MedicationNotFound, RunNotFound, StorageError
from medsafe.models import (
    CommittedDocument,
    DocumentRun,
    MedicalData,
    Medication,
    MedicationLog,
    RunState,
    SafetyReport,
)

from .base import RecordStore, RunStore
from .crypto import RecordCipher
from .database import session_scope
from .repositories import (
    DocumentRunRepository,
    MedicalRecordRepository,
    MedicationLogRepository,
    MedicationRepository,
)

logger = logging.getLogger(__name__)


class _SqlStore:
    def __init__(self, factory: async_sessionmaker[AsyncSession], cipher: RecordCipher):
        self.factory = factory
        self.cipher = cipher

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transaction whose driver errors surface as `StorageError`."""
        try:
            async with session_scope(self.factory) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Database operation failed: %s", e)
            raise StorageError(f"Database operation failed: {e.__class__.__name__}") from e


class SqlRunStore(_SqlStore, RunStore):
    """`RunStore` over the `document_runs` table."""

    async def create(self, run: DocumentRun) -> DocumentRun:
        async with self._session() as session:
            await DocumentRunRepository(session, self.cipher).create(run)
        return run

    async def get(self, run_id: UUID) -> DocumentRun:
        async with self._session() as session:
            repo = DocumentRunRepository(session, self.cipher)
            row = await repo.get_by_id(run_id)
            if row is None:
                raise RunNotFound(f"Run {run_id} not found")
            return repo.to_model(row)

    async def save(self, run: DocumentRun, expected_version: int) -> DocumentRun:
        async with self._session() as session:
            await DocumentRunRepository(session, self.cipher).update_versioned(
                run, expected_version
            )
        return run

    async def find_by_hash(self, user_id: UUID, source_hash: str) -> list[DocumentRun]:
        async with self._session() as session:
            repo = DocumentRunRepository(session, self.cipher)
            return [repo.to_model(r) for r in await repo.list_by_hash(user_id, source_hash)]

    async def list_in_states(
        self, states: Iterable[RunState], entered_before: datetime
    ) -> list[DocumentRun]:
        async with self._session() as session:
            repo = DocumentRunRepository(session, self.cipher)
            rows = await repo.list_in_states(states, entered_before)
            return [repo.to_model(r) for r in rows]

    async def runs_for_user(self, user_id: UUID) -> list[DocumentRun]:
        async with self._session() as session:
            repo = DocumentRunRepository(session, self.cipher)
            return [repo.to_model(r) for r in await repo.list_for_user(user_id)]


class SqlRecordStore(_SqlStore, RecordStore):
    """`RecordStore` over the medical record, medication and log tables."""

    async def commit_document(
        self,
        user_id: UUID,
        document_id: UUID,
        source_ref: str,
        medical_data: MedicalData,
        interaction_report: Optional[SafetyReport] = None,
    ) -> CommittedDocument:
        document = CommittedDocument(
            document_id=document_id,
            user_id=user_id,
            source_ref=source_ref,
            medical_data=medical_data,
            interaction_report=interaction_report,
        )
        async with self._session() as session:
            await MedicalRecordRepository(session, self.cipher).upsert(document)
        return document

    async def get_document(self, user_id: UUID, document_id: UUID) -> Optional[CommittedDocument]:
        async with self._session() as session:
            repo = MedicalRecordRepository(session, self.cipher)
            row = await repo.get_by_id(user_id, document_id)
            return repo.to_model(row) if row is not None else None

    async def documents_for_user(self, user_id: UUID) -> list[CommittedDocument]:
        async with self._session() as session:
            repo = MedicalRecordRepository(session, self.cipher)
            return [repo.to_model(r) for r in await repo.list_for_user(user_id)]

    async def add_medication(self, medication: Medication) -> Medication:
        async with self._session() as session:
            await MedicationRepository(session, self.cipher).create(medication)
        return medication

    async def get_medication(self, user_id: UUID, medication_id: UUID) -> Optional[Medication]:
        async with self._session() as session:
            repo = MedicationRepository(session, self.cipher)
            row = await repo.get_by_id(user_id, medication_id)
            return repo.to_model(row) if row is not None else None

    async def active_medications(self, user_id: UUID, on: date) -> list[Medication]:
        async with self._session() as session:
            repo = MedicationRepository(session, self.cipher)
            return [repo.to_model(r) for r in await repo.list_active(user_id, on)]

    async def append_log(self, log: MedicationLog) -> MedicationLog:
        async with self._session() as session:
            medication = await MedicationRepository(session, self.cipher).get_by_id(
                log.user_id, log.medication_id
            )
            if medication is None:
                raise MedicationNotFound(f"Medication {log.medication_id} not found")
            await MedicationLogRepository(session, self.cipher).create(log)
        return log

    async def get_log(self, user_id: UUID, log_id: UUID) -> Optional[MedicationLog]:
        async with self._session() as session:
            repo = MedicationLogRepository(session, self.cipher)
            row = await repo.get_by_id(user_id, log_id)
            return repo.to_model(row) if row is not None else None

    async def save_log(self, log: MedicationLog) -> MedicationLog:
        async with self._session() as session:
            await MedicationLogRepository(session, self.cipher).resolve(log)
        return log

    async def logs_in_range(
        self,
        user_id: UUID,
        medication_id: UUID,
        start: datetime,
        end: datetime,
    ) -> list[MedicationLog]:
        async with self._session() as session:
            repo = MedicationLogRepository(session, self.cipher)
            rows = await repo.list_in_range(user_id, medication_id, start, end)
            return [repo.to_model(r) for r in rows]


def create_sql_stores(
    factory: async_sessionmaker[AsyncSession], cipher: RecordCipher
) -> tuple[SqlRunStore, SqlRecordStore]:
    return SqlRunStore(factory, cipher), SqlRecordStore(factory, cipher)
