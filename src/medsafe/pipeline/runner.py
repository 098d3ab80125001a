"""Document Pipeline - explicit, persisted state machine.

A run moves through

    uploaded → validating → extracting → extracted → parsing → parsed
             → [checking_interactions] → committed

with failure exits at each stage. Every step saves the run with the
version it observed, so two writers can never both advance a run from the
same version. Runs can be resumed from any non-terminal persisted state.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from medsafe.clients.extraction import Extractor
from medsafe.clients.interactions import InteractionLookup
from medsafe.config import Settings, settings as default_settings
from medsafe.errors import (
    DocumentRejected,
    ErrorCode,
    InvalidTransition,
    PipelineConflict,
    StageFailed,
    StorageError,
    VersionConflict,
)
from medsafe.models import DocumentRun, RunState, SafetyReport, utcnow
from medsafe.notify import EventType, LoggingNotifier, NotificationEvent, Notifier, dispatch
from medsafe.resilience import CircuitRegistry, ResilientClient, circuit_registry
from medsafe.safety import INTERACTION_DEPENDENCY, InteractionCache, MedicationSafetyEngine
from medsafe.storage import RecordStore, RunStore

from .stage_commit import CommitStage
from .stage_extract import ExtractionStage
from .stage_interactions import InteractionStage
from .stage_parse import ParseStage
from .stage_validate import UploadValidator

logger = logging.getLogger(__name__)

CONFLICT_ATTEMPTS = 3

EXTRACTION_TIMEOUT_MESSAGE = "Text extraction took too long. Please try again."
INTERACTION_TIMEOUT_MESSAGE = "The interaction check took too long and did not finish."
COMMIT_FAILED_MESSAGE = "Your document could not be saved. We will retry automatically."

# States whose work is bounded by the stage timeout, and where they go on expiry
TIMED_STAGES = {
    RunState.EXTRACTING: (
        RunState.EXTRACTION_FAILED,
        ErrorCode.EXTRACTION_FAILED,
        EXTRACTION_TIMEOUT_MESSAGE,
    ),
    RunState.CHECKING_INTERACTIONS: (
        RunState.INTERACTION_CHECK_FAILED,
        ErrorCode.INTERACTION_CHECK_INCOMPLETE,
        INTERACTION_TIMEOUT_MESSAGE,
    ),
}


class DocumentPipeline:
    """Drives document runs through their stages."""

    def __init__(
        self,
        runs: RunStore,
        records: RecordStore,
        extraction: ExtractionStage,
        interactions: InteractionStage,
        parse: Optional[ParseStage] = None,
        commit: Optional[CommitStage] = None,
        validator: Optional[UploadValidator] = None,
        notifier: Optional[Notifier] = None,
        stage_timeout_seconds: float = 120.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize pipeline.

        Args:
            runs: Store of run state.
            records: Encrypted store for committed documents.
            extraction: Extraction stage (dependency + confidence gate).
            interactions: Interaction-check stage.
            parse: Parsing stage.
            commit: Commit stage.
            validator: Upload validator.
            notifier: Receiver of fire-and-forget events.
            stage_timeout_seconds: Bound on the extraction and interaction stages.
            clock: Source of transition timestamps.
        """
        self.runs = runs
        self.records = records
        self.extraction = extraction
        self.interactions = interactions
        self.parse = parse or ParseStage()
        self.commit = commit or CommitStage(records)
        self.validator = validator or UploadValidator.from_settings()
        self.notifier = notifier or LoggingNotifier()
        self.stage_timeout_seconds = stage_timeout_seconds
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        runs: RunStore,
        records: RecordStore,
        extractor: Extractor,
        lookup: InteractionLookup,
        config: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        registry: Optional[CircuitRegistry] = None,
        cache: Optional[InteractionCache] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "DocumentPipeline":
        """Build a pipeline with every threshold taken from settings."""
        config = config or default_settings
        registry = registry or circuit_registry

        lookup_client = ResilientClient.from_settings(
            INTERACTION_DEPENDENCY,
            config.lookup_timeout_seconds,
            config,
            registry=registry,
            sleep=sleep,
        )
        engine = MedicationSafetyEngine(lookup, client=lookup_client, cache=cache, config=config)

        return cls(
            runs,
            records,
            extraction=ExtractionStage.from_settings(
                extractor, config, registry=registry, sleep=sleep
            ),
            interactions=InteractionStage(engine, records),
            parse=ParseStage(min_entities=config.min_entities),
            commit=CommitStage.from_settings(records, config, sleep=sleep),
            validator=UploadValidator.from_settings(config),
            notifier=notifier,
            stage_timeout_seconds=config.stage_timeout_seconds,
        )

    # Driving

    async def process(self, run_id: UUID) -> DocumentRun:
        """Advance a run until it is terminal or waiting for a commit retry."""
        run = await self.runs.get(run_id)
        while not run.is_terminal and run.state != RunState.COMMIT_FAILED:
            run = await self.step(run)
        return run

    async def step(self, run: DocumentRun) -> DocumentRun:
        """Execute the work for the run's current state and persist the result."""
        state = run.state
        if state == RunState.UPLOADED:
            return await self._move(run, RunState.VALIDATING)
        if state == RunState.VALIDATING:
            return await self._validate(run)
        if state == RunState.EXTRACTING:
            return await self._extract(run)
        if state == RunState.EXTRACTED:
            return await self._move(run, RunState.PARSING)
        if state == RunState.PARSING:
            return await self._parse(run)
        if state == RunState.PARSED:
            if run.medical_data is not None and run.medical_data.medications:
                return await self._move(run, RunState.CHECKING_INTERACTIONS)
            return await self._commit(run)
        if state == RunState.CHECKING_INTERACTIONS:
            return await self._check_interactions(run)
        raise InvalidTransition(f"Run {run.id} in state {state.value} has no pending step")

    async def retry_commit(self, run_id: UUID) -> DocumentRun:
        """Re-run the whole commit of a run left in `commit_failed`."""
        run = await self.runs.get(run_id)
        if run.state != RunState.COMMIT_FAILED:
            raise InvalidTransition(
                f"Run {run.id} is {run.state.value}, only commit_failed runs can be retried"
            )
        logger.info("Retrying commit of run %s", run.id)
        return await self._commit(run)

    async def expire(self, run: DocumentRun) -> DocumentRun:
        """Force a run stuck in a timed stage into that stage's failed state."""
        if run.state not in TIMED_STAGES:
            return run
        failed_state, code, message = TIMED_STAGES[run.state]
        logger.warning("Run %s exceeded the stage timeout in %s", run.id, run.state.value)
        return await self._fail(run, failed_state, code, message)

    # Stages

    async def _validate(self, run: DocumentRun) -> DocumentRun:
        try:
            self.validator.validate(run)
        except DocumentRejected as e:
            return await self._fail(run, RunState.REJECTED, e.code, e.message)
        return await self._move(run, RunState.EXTRACTING)

    async def _extract(self, run: DocumentRun) -> DocumentRun:
        try:
            result = await asyncio.wait_for(
                self.extraction.run(run.source_ref), timeout=self.stage_timeout_seconds
            )
        except asyncio.TimeoutError:
            return await self.expire(run)
        except StageFailed as e:
            return await self._stage_failed(run, RunState.EXTRACTION_FAILED, e)

        return await self._move(
            run,
            RunState.EXTRACTED,
            extracted_text=result.text,
            extraction_confidence=result.confidence,
        )

    async def _parse(self, run: DocumentRun) -> DocumentRun:
        try:
            data = self.parse.run(run.extracted_text or "")
        except StageFailed as e:
            return await self._stage_failed(run, RunState.PARSE_FAILED, e)
        return await self._move(run, RunState.PARSED, medical_data=data)

    async def _check_interactions(self, run: DocumentRun) -> DocumentRun:
        try:
            report = await asyncio.wait_for(
                self.interactions.run(run), timeout=self.stage_timeout_seconds
            )
        except asyncio.TimeoutError:
            return await self.expire(run)

        if report.consult_provider:
            await dispatch(
                self.notifier,
                NotificationEvent(
                    type=EventType.SEVERE_INTERACTION_DETECTED,
                    user_id=run.user_id,
                    subject_id=run.id,
                    payload={"warnings": len(report.warnings)},
                ),
            )
        return await self._commit(run, report)

    async def _commit(
        self, run: DocumentRun, report: Optional[SafetyReport] = None
    ) -> DocumentRun:
        changes = {} if report is None else {"interaction_report": report}
        unit = run.model_copy(update=changes)
        try:
            await self.commit.run(unit)
        except StorageError:
            return await self._move(
                run,
                RunState.COMMIT_FAILED,
                error_code=ErrorCode.STORAGE_ERROR,
                error_detail=COMMIT_FAILED_MESSAGE,
                **changes,
            )
        return await self._move(
            run, RunState.COMMITTED, error_code=None, error_detail=None, **changes
        )

    # Transitions

    async def _stage_failed(
        self, run: DocumentRun, failed_state: RunState, error: StageFailed
    ) -> DocumentRun:
        failed = await self._fail(run, failed_state, error.code, error.message)
        if error.clarify_image:
            await dispatch(
                self.notifier,
                NotificationEvent(
                    type=EventType.CLARIFY_IMAGE_REQUESTED,
                    user_id=run.user_id,
                    subject_id=run.id,
                    payload={"error_code": error.code.value},
                ),
            )
        return failed

    async def _fail(
        self, run: DocumentRun, failed_state: RunState, code: ErrorCode, detail: str
    ) -> DocumentRun:
        failed = await self._advance(
            run, lambda r: r.fail(failed_state, code, detail, now=self.clock())
        )
        logger.warning("Run %s failed in %s with %s", run.id, run.state.value, code.value)
        return failed

    async def _move(self, run: DocumentRun, new_state: RunState, **changes) -> DocumentRun:
        return await self._advance(
            run, lambda r: r.transition(new_state, now=self.clock(), **changes)
        )

    async def _advance(
        self, run: DocumentRun, make: Callable[[DocumentRun], DocumentRun]
    ) -> DocumentRun:
        """Save `make(run)` against the observed version.

        On a version conflict the run is re-read. If it is still in the
        state this step observed, the transition is re-applied to the fresh
        copy; if another writer moved it on, `PipelineConflict` is raised.
        """
        observed = run
        for attempt in range(1, CONFLICT_ATTEMPTS + 1):
            updated = make(observed)
            try:
                saved = await self.runs.save(updated, expected_version=observed.version)
            except VersionConflict as e:
                current = await self.runs.get(observed.id)
                if current.state != observed.state:
                    logger.error(
                        "Run %s moved to %s by another writer during %s",
                        run.id,
                        current.state.value,
                        observed.state.value,
                    )
                    raise PipelineConflict(
                        f"Run {run.id} was advanced concurrently to {current.state.value}"
                    ) from e
                logger.warning(
                    "Version conflict on run %s (attempt %d/%d), re-reading",
                    run.id,
                    attempt,
                    CONFLICT_ATTEMPTS,
                )
                observed = current
                continue

            logger.info(
                "Run %s: %s -> %s (v%d)",
                saved.id,
                observed.state.value,
                saved.state.value,
                saved.version,
            )
            return saved

        raise PipelineConflict(
            f"Run {run.id} could not be saved after {CONFLICT_ATTEMPTS} attempts"
        )
