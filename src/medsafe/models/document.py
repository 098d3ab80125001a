"""Document run and structured medical data models."""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from medsafe.errors import ErrorCode, InvalidTransition

from .base import BaseRecord, RunState, utcnow
from .interaction import SafetyReport


class MedicationMention(BaseModel):
    """A medication named in a document."""

    kind: Literal["medication"] = "medication"
    raw_text: str = Field(..., description="Text span as it appears in the source")
    name: str
    strength: Optional[float] = None
    unit: Optional[str] = None
    frequency: Optional[str] = Field(None, description="e.g. BD, TDS, once daily")
    route: Optional[str] = None

    class Config:
        frozen = True

    @property
    def dosage(self) -> str:
        if self.strength is None:
            return ""
        strength = f"{self.strength:g}"
        return f"{strength} {self.unit}" if self.unit else strength


class DiagnosisMention(BaseModel):
    """A diagnosis or condition named in a document."""

    kind: Literal["diagnosis"] = "diagnosis"
    raw_text: str
    text: str
    icd10_code: Optional[str] = None

    class Config:
        frozen = True


class LabResultMention(BaseModel):
    """A lab test with its value."""

    kind: Literal["lab_result"] = "lab_result"
    raw_text: str
    test_name: str
    value: Union[float, str]
    unit: Optional[str] = None
    flag: Optional[str] = Field(None, description="H, L, HH, LL, etc.")

    class Config:
        frozen = True

    @property
    def is_abnormal(self) -> bool:
        return self.flag is not None and self.flag.upper() in {
            "H", "L", "HH", "LL", "A", "HIGH", "LOW", "ABNORMAL", "CRITICAL"
        }


class InstructionMention(BaseModel):
    """Free-text patient instruction."""

    kind: Literal["instruction"] = "instruction"
    raw_text: str
    text: str

    class Config:
        frozen = True


Mention = Annotated[
    Union[MedicationMention, DiagnosisMention, LabResultMention, InstructionMention],
    Field(discriminator="kind"),
]


class MedicalData(BaseModel):
    """Structured output of a successful parse, in source order."""

    entities: list[Mention] = Field(default_factory=list)

    class Config:
        frozen = True

    @property
    def medications(self) -> list[MedicationMention]:
        return [e for e in self.entities if isinstance(e, MedicationMention)]

    @property
    def diagnoses(self) -> list[DiagnosisMention]:
        return [e for e in self.entities if isinstance(e, DiagnosisMention)]

    @property
    def lab_results(self) -> list[LabResultMention]:
        return [e for e in self.entities if isinstance(e, LabResultMention)]

    @property
    def instructions(self) -> list[InstructionMention]:
        return [e for e in self.entities if isinstance(e, InstructionMention)]

    @property
    def entity_count(self) -> int:
        return len(self.entities)


class ExtractionResult(BaseModel):
    """Response of the extraction dependency."""

    text: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    engine: Optional[str] = None


class DocumentUpload(BaseModel):
    """An upload presented for processing by an authenticated user."""

    user_id: UUID
    source_ref: str = Field(..., description="Reference to the stored original image")
    content_type: str
    size_bytes: int = Field(..., ge=0)
    source_hash: Optional[str] = Field(None, description="SHA-256 for idempotent resubmission")


ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.UPLOADED: frozenset({RunState.VALIDATING}),
    RunState.VALIDATING: frozenset({RunState.EXTRACTING, RunState.REJECTED}),
    RunState.EXTRACTING: frozenset({RunState.EXTRACTED, RunState.EXTRACTION_FAILED}),
    RunState.EXTRACTED: frozenset({RunState.PARSING}),
    RunState.PARSING: frozenset({RunState.PARSED, RunState.PARSE_FAILED}),
    RunState.PARSED: frozenset(
        {RunState.CHECKING_INTERACTIONS, RunState.COMMITTED, RunState.COMMIT_FAILED}
    ),
    RunState.CHECKING_INTERACTIONS: frozenset(
        {RunState.COMMITTED, RunState.COMMIT_FAILED, RunState.INTERACTION_CHECK_FAILED}
    ),
    RunState.COMMIT_FAILED: frozenset({RunState.COMMITTED, RunState.COMMIT_FAILED}),
}


class DocumentRun(BaseRecord):
    """
    A single document's trip through the pipeline.

    Mutated only by the pipeline, and only through `transition`, which
    returns a new record with the version counter incremented. Terminal
    states are immutable.
    """

    user_id: UUID
    state: RunState = Field(default=RunState.UPLOADED)

    # Source
    source_ref: str
    content_type: str
    size_bytes: int = Field(..., ge=0)
    source_hash: Optional[str] = None

    # Extraction
    extracted_text: Optional[str] = None
    extraction_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)

    # Parsing and interaction checking
    medical_data: Optional[MedicalData] = None
    interaction_report: Optional[SafetyReport] = None

    # Failure info
    error_code: Optional[ErrorCode] = None
    error_detail: Optional[str] = None

    # Concurrency control
    version: int = Field(default=0, ge=0)
    state_entered_at: datetime = Field(default_factory=utcnow)

    superseded_run_id: Optional[UUID] = Field(
        None, description="Failed run this run was resubmitted for"
    )

    @classmethod
    def from_upload(
        cls, upload: DocumentUpload, superseded_run_id: Optional[UUID] = None
    ) -> "DocumentRun":
        return cls(
            user_id=upload.user_id,
            source_ref=upload.source_ref,
            content_type=upload.content_type,
            size_bytes=upload.size_bytes,
            source_hash=upload.source_hash,
            superseded_run_id=superseded_run_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_committed(self) -> bool:
        return self.state == RunState.COMMITTED

    def can_transition(self, new_state: RunState) -> bool:
        return new_state in ALLOWED_TRANSITIONS.get(self.state, frozenset())

    def transition(
        self, new_state: RunState, now: Optional[datetime] = None, **changes
    ) -> "DocumentRun":
        """Return a copy in `new_state` with the version bumped by one."""
        if self.is_terminal:
            raise InvalidTransition(
                f"Run {self.id} is terminal in state {self.state.value}"
            )
        if not self.can_transition(new_state):
            raise InvalidTransition(
                f"Run {self.id} cannot move from {self.state.value} to {new_state.value}"
            )
        now = now or utcnow()
        update = dict(changes)
        update.update(
            state=new_state,
            version=self.version + 1,
            state_entered_at=now,
            updated_at=now,
        )
        return self.model_copy(update=update)

    def fail(
        self,
        new_state: RunState,
        code: ErrorCode,
        detail: str,
        now: Optional[datetime] = None,
    ) -> "DocumentRun":
        """Transition into a failed state with an error code attached."""
        return self.transition(new_state, now=now, error_code=code, error_detail=detail)


class CommittedDocument(BaseModel):
    """Decrypted view of a committed document: original reference plus data."""

    document_id: UUID
    user_id: UUID
    source_ref: str
    medical_data: MedicalData
    interaction_report: Optional[SafetyReport] = None
    committed_at: datetime = Field(default_factory=utcnow)
