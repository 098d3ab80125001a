"""Commit Stage - Persist the document unit to the encrypted store.

The source reference, structured data and interaction report are written
as one unit keyed by the run id. A failed write is retried as a whole unit
with the retry policy's backoff; it is never partially resumed.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from medsafe.config import Settings, settings as default_settings
from medsafe.errors import StorageError
from medsafe.models import CommittedDocument, DocumentRun
from medsafe.resilience import RetryPolicy
from medsafe.storage import RecordStore

logger = logging.getLogger(__name__)


class CommitStage:
    """Writes a parsed run to the record store."""

    def __init__(
        self,
        records: RecordStore,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """Initialize commit stage.

        Args:
            records: Encrypted record store.
            policy: Attempts and backoff for whole-unit retries.
            sleep: Awaitable sleep used between attempts.
            rng: Random source for jitter.
        """
        self.records = records
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls, records: RecordStore, config: Optional[Settings] = None, **kwargs
    ) -> "CommitStage":
        config = config or default_settings
        policy = RetryPolicy.from_settings(config).model_copy(
            update={"max_attempts": config.commit_attempts}
        )
        return cls(records, policy, **kwargs)

    async def run(self, run: DocumentRun) -> CommittedDocument:
        """Commit the run's unit.

        Raises:
            StorageError: Every attempt failed.
        """
        if run.medical_data is None:
            raise ValueError(f"Run {run.id} has no medical data to commit")

        last_error: Optional[StorageError] = None
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return await self.records.commit_document(
                    user_id=run.user_id,
                    document_id=run.id,
                    source_ref=run.source_ref,
                    medical_data=run.medical_data,
                    interaction_report=run.interaction_report,
                )
            except StorageError as e:
                last_error = e
                if attempt == self.policy.max_attempts:
                    break
                delay = self.policy.delay_for(attempt, self._rng)
                logger.warning(
                    "Commit of run %s failed (attempt %d/%d), retrying in %.2fs",
                    run.id,
                    attempt,
                    self.policy.max_attempts,
                    delay,
                )
                await self._sleep(delay)

        logger.error(
            "Commit of run %s failed after %d attempts", run.id, self.policy.max_attempts
        )
        raise last_error
