"""Storage layer for medsafe.

Provides encrypted persistence of runs, committed documents, medications
and dose logs, via SQLAlchemy or in process.
"""

from .base import RecordStore, RunStore, to_utc
from .crypto import RecordCipher
from .database import (
    Base,
    close_db,
    create_engine_for,
    create_session_factory,
    init_db,
    session_scope,
)
from .memory import InMemoryRecordStore, InMemoryRunStore
from .orm_models import (
    DocumentRunORM,
    MedicalRecordORM,
    MedicationLogORM,
    MedicationORM,
)
from .repositories import (
    DocumentRunRepository,
    MedicalRecordRepository,
    MedicationLogRepository,
    MedicationRepository,
)
from .store import SqlRecordStore, SqlRunStore, create_sql_stores

__all__ = [
    # Contracts
    "RunStore",
    "RecordStore",
    "to_utc",
    # Encryption
    "RecordCipher",
    # Database
    "Base",
    "create_engine_for",
    "create_session_factory",
    "session_scope",
    "init_db",
    "close_db",
    # ORM Models
    "DocumentRunORM",
    "MedicalRecordORM",
    "MedicationORM",
    "MedicationLogORM",
    # Repositories
    "DocumentRunRepository",
    "MedicalRecordRepository",
    "MedicationRepository",
    "MedicationLogRepository",
    # Stores
    "InMemoryRunStore",
    "InMemoryRecordStore",
    "SqlRunStore",
    "SqlRecordStore",
    "create_sql_stores",
]
