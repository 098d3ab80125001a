"""Record models for the medsafe pipeline.

Pydantic models for data flowing through the document pipeline, the
medication safety engine and the adherence engine. Models support JSON
serialization (encrypted before storage) and SQLAlchemy compatibility
via `from_attributes = True`.

Model Hierarchy:
- DocumentRun → MedicalData → Mentions (tagged union)
- DocumentRun → SafetyReport → InteractionWarnings
- Medication → Schedule, MedicationLog → AdherenceReport
"""

from .base import (
    FAILED_STATES,
    TERMINAL_STATES,
    BaseRecord,
    CircuitStatus,
    DoseStatus,
    RunState,
    Severity,
    utcnow,
)
from .document import (
    ALLOWED_TRANSITIONS,
    CommittedDocument,
    DiagnosisMention,
    DocumentRun,
    DocumentUpload,
    ExtractionResult,
    InstructionMention,
    LabResultMention,
    MedicalData,
    MedicationMention,
    Mention,
)
from .interaction import (
    CONSULT_PROVIDER_MESSAGE,
    NO_INTERACTION,
    CacheEntry,
    InteractionVerdict,
    InteractionWarning,
    SafetyReport,
    UnresolvedPair,
    build_report,
    requires_provider_consult,
)
from .medication import (
    AdherenceReport,
    Medication,
    MedicationLog,
    Schedule,
    normalize_name,
    normalized_pair,
)

__all__ = [
    # Base types
    "BaseRecord",
    "CircuitStatus",
    "DoseStatus",
    "FAILED_STATES",
    "RunState",
    "Severity",
    "TERMINAL_STATES",
    "utcnow",
    # Document
    "ALLOWED_TRANSITIONS",
    "CommittedDocument",
    "DocumentRun",
    "DocumentUpload",
    "ExtractionResult",
    "MedicalData",
    "Mention",
    "MedicationMention",
    "DiagnosisMention",
    "LabResultMention",
    "InstructionMention",
    # Interaction
    "CONSULT_PROVIDER_MESSAGE",
    "NO_INTERACTION",
    "CacheEntry",
    "InteractionVerdict",
    "InteractionWarning",
    "SafetyReport",
    "UnresolvedPair",
    "build_report",
    "requires_provider_consult",
    # Medication
    "AdherenceReport",
    "Medication",
    "MedicationLog",
    "Schedule",
    "normalize_name",
    "normalized_pair",
]
