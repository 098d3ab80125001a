"""Pipeline Coordinator - serialized, user-scoped access to runs.

At most one pipeline execution is active per run id within the process;
a second trigger for an active id raises `RunInProgress` instead of
waiting. Every entry point takes the caller's validated user id and only
touches runs that user owns.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional
from uuid import UUID

from medsafe.errors import AccessDenied, InvalidTransition, RunInProgress
from medsafe.models import DocumentRun, DocumentUpload, utcnow

from .runner import TIMED_STAGES, DocumentPipeline

logger = logging.getLogger(__name__)


class PipelineCoordinator:
    """Entry point for submitting and managing document runs."""

    def __init__(self, pipeline: DocumentPipeline):
        self.pipeline = pipeline
        self.runs = pipeline.runs
        self._active: set[UUID] = set()

    def is_active(self, run_id: UUID) -> bool:
        return run_id in self._active

    @asynccontextmanager
    async def _exclusive(self, run_id: UUID) -> AsyncGenerator[None, None]:
        # Check and claim happen without an await in between
        if run_id in self._active:
            raise RunInProgress(f"Run {run_id} is already being processed")
        self._active.add(run_id)
        try:
            yield
        finally:
            self._active.discard(run_id)

    async def get_run(self, user_id: UUID, run_id: UUID) -> DocumentRun:
        run = await self.runs.get(run_id)
        if run.user_id != user_id:
            raise AccessDenied(f"Run {run_id} does not belong to user {user_id}")
        return run

    async def runs_for_user(self, user_id: UUID) -> list[DocumentRun]:
        return await self.runs.runs_for_user(user_id)

    async def submit(self, upload: DocumentUpload) -> DocumentRun:
        """Create a run for an upload and process it.

        An upload whose bytes match an existing run of the same user that
        has not terminally failed returns that run instead of starting a new one.
        """
        if upload.source_hash:
            for existing in await self.runs.find_by_hash(upload.user_id, upload.source_hash):
                if not (existing.is_terminal and existing.state.is_failed):
                    logger.info(
                        "Upload matches existing run %s in %s",
                        existing.id,
                        existing.state.value,
                    )
                    return existing

        run = await self.runs.create(DocumentRun.from_upload(upload))
        logger.info("Created run %s for user %s", run.id, upload.user_id)
        return await self.process(upload.user_id, run.id)

    async def process(self, user_id: UUID, run_id: UUID) -> DocumentRun:
        """Run or resume the pipeline for one of the user's runs."""
        await self.get_run(user_id, run_id)
        async with self._exclusive(run_id):
            return await self.pipeline.process(run_id)

    async def retry_commit(self, user_id: UUID, run_id: UUID) -> DocumentRun:
        await self.get_run(user_id, run_id)
        async with self._exclusive(run_id):
            return await self.pipeline.retry_commit(run_id)

    async def resubmit(self, user_id: UUID, run_id: UUID) -> DocumentRun:
        """Start a fresh run for the source of a terminally failed run."""
        failed = await self.get_run(user_id, run_id)
        if not (failed.is_terminal and failed.state.is_failed):
            raise InvalidTransition(
                f"Run {run_id} is {failed.state.value}; only terminally failed runs can be resubmitted"
            )

        upload = DocumentUpload(
            user_id=failed.user_id,
            source_ref=failed.source_ref,
            content_type=failed.content_type,
            size_bytes=failed.size_bytes,
            source_hash=failed.source_hash,
        )
        run = await self.runs.create(
            DocumentRun.from_upload(upload, superseded_run_id=failed.id)
        )
        logger.info("Resubmitted run %s as %s", failed.id, run.id)
        return await self.process(user_id, run.id)

    async def reap_stuck(
        self, stage_timeout_seconds: Optional[float] = None, now: Optional[datetime] = None
    ) -> list[DocumentRun]:
        """Fail runs that sat in a timed stage longer than the stage timeout.

        Runs currently executing in this process are left alone.
        """
        timeout = stage_timeout_seconds or self.pipeline.stage_timeout_seconds
        cutoff = (now or utcnow()) - timedelta(seconds=timeout)

        reaped = []
        for run in await self.runs.list_in_states(TIMED_STAGES.keys(), cutoff):
            if self.is_active(run.id):
                continue
            async with self._exclusive(run.id):
                reaped.append(await self.pipeline.expire(run))
        if reaped:
            logger.warning("Reaped %d stuck runs", len(reaped))
        return reaped
