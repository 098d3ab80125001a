"""Document pipeline for medsafe.

Stages:
1. stage_validate - Size and format checks (synchronous)
2. stage_extract - Text extraction with a confidence gate
3. stage_parse - Rule-based medical entity parsing
4. stage_interactions - Medication interaction check
5. stage_commit - Encrypted commit as one unit

`DocumentPipeline` persists every transition with optimistic concurrency;
`PipelineCoordinator` serializes execution per run and scopes it per user.
"""

from .coordinator import PipelineCoordinator
from .runner import CONFLICT_ATTEMPTS, TIMED_STAGES, DocumentPipeline
from .stage_commit import CommitStage
from .stage_extract import EXTRACTION_DEPENDENCY, LOW_CONFIDENCE_MESSAGE, ExtractionStage
from .stage_interactions import InteractionStage, mentions_as_medications
from .stage_parse import MedicalTextParser, ParseStage
from .stage_validate import UploadValidator, compute_file_hash, upload_from_path

__all__ = [
    # Validation
    "UploadValidator",
    "compute_file_hash",
    "upload_from_path",
    # Extraction
    "EXTRACTION_DEPENDENCY",
    "LOW_CONFIDENCE_MESSAGE",
    "ExtractionStage",
    # Parsing
    "MedicalTextParser",
    "ParseStage",
    # Interactions
    "InteractionStage",
    "mentions_as_medications",
    # Commit
    "CommitStage",
    # Orchestration
    "CONFLICT_ATTEMPTS",
    "TIMED_STAGES",
    "DocumentPipeline",
    "PipelineCoordinator",
]
