"""SQLAlchemy ORM models for medsafe.

Each table keeps the identifiers, states and timestamps needed for lookups
in plain columns. Everything else, including all PHI, lives in the
Fernet-encrypted `payload_enc` column.
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medsafe.models.base import DoseStatus, RunState

from .database import Base


class DocumentRunORM(Base):
    """Document run table - pipeline state per uploaded document."""

    __tablename__ = "document_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    # Processing state
    state: Mapped[RunState] = mapped_column(
        Enum(RunState), default=RunState.UPLOADED, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state_entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    source_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Encrypted DocumentRun
    payload_enc: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_document_runs_user_hash", "user_id", "source_hash"),
        Index("ix_document_runs_state", "state", "state_entered_at"),
    )


class MedicalRecordORM(Base):
    """Committed document table - source reference and parsed data as one row."""

    __tablename__ = "medical_records"

    document_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    committed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    # Encrypted CommittedDocument
    payload_enc: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    __table_args__ = (
        Index("ix_medical_records_user", "user_id", "committed_at"),
    )


class MedicationORM(Base):
    """Medication table - a user's medication profile."""

    __tablename__ = "medications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Encrypted Medication
    payload_enc: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    # Relationships
    logs: Mapped[list["MedicationLogORM"]] = relationship(
        back_populates="medication", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_medications_user", "user_id", "start_date"),
    )


class MedicationLogORM(Base):
    """Medication log table - append-only dose history."""

    __tablename__ = "medication_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    medication_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("medications.id", ondelete="CASCADE"), nullable=False
    )
    scheduled_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    status: Mapped[DoseStatus] = mapped_column(
        Enum(DoseStatus), default=DoseStatus.PENDING, nullable=False
    )

    # Encrypted MedicationLog
    payload_enc: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    medication: Mapped["MedicationORM"] = relationship(back_populates="logs")

    __table_args__ = (
        Index("ix_medication_logs_schedule", "user_id", "medication_id", "scheduled_time"),
    )
