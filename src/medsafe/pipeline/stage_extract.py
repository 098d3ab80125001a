"""Extraction Stage - Text from the uploaded image.

Calls the extraction dependency through a `ResilientClient` and gates the
result on confidence. Low confidence is a semantic failure and is not
retried; dependency failures are retried by the client and surface here
only after exhaustion.
"""

import logging
from typing import Optional

from medsafe.clients.extraction import Extractor
from medsafe.config import Settings, settings as default_settings
from medsafe.errors import ErrorCode, StageFailed
from medsafe.models import ExtractionResult
from medsafe.resilience import CircuitOpenError, DependencyFailure, ResilientClient

logger = logging.getLogger(__name__)

EXTRACTION_DEPENDENCY = "extraction"

LOW_CONFIDENCE_MESSAGE = "Text could not be read reliably; please upload a clearer image."


class ExtractionStage:
    """Runs text extraction for a run's source image."""

    def __init__(
        self,
        extractor: Extractor,
        client: Optional[ResilientClient] = None,
        confidence_threshold: float = 0.6,
    ):
        """Initialize extraction stage.

        Args:
            extractor: Extraction dependency.
            client: Resilient wrapper for extraction calls.
            confidence_threshold: Minimum confidence to accept the text.
        """
        self.extractor = extractor
        self.client = client or ResilientClient.from_settings(
            EXTRACTION_DEPENDENCY, default_settings.extraction_timeout_seconds
        )
        self.confidence_threshold = confidence_threshold

    @classmethod
    def from_settings(
        cls, extractor: Extractor, config: Optional[Settings] = None, **kwargs
    ) -> "ExtractionStage":
        config = config or default_settings
        client = ResilientClient.from_settings(
            EXTRACTION_DEPENDENCY, config.extraction_timeout_seconds, config, **kwargs
        )
        return cls(extractor, client, config.confidence_threshold)

    async def run(self, source_ref: str) -> ExtractionResult:
        """Extract text from `source_ref`.

        Raises:
            StageFailed: Dependency exhausted (DOC_003, or SYS_001 with the
                circuit open) or confidence below the threshold (DOC_003).
        """
        try:
            result = await self.client.call(self.extractor.extract, source_ref)
        except CircuitOpenError as e:
            raise StageFailed(
                "The text extraction service is temporarily unavailable. Please try again later.",
                ErrorCode.SERVICE_UNAVAILABLE,
            ) from e
        except DependencyFailure as e:
            logger.error("Extraction failed after retries: %s", type(e).__name__)
            raise StageFailed(
                "Text extraction failed. Please try again.",
                ErrorCode.EXTRACTION_FAILED,
            ) from e

        if result.confidence < self.confidence_threshold:
            logger.info(
                "Extraction confidence %.2f below threshold %.2f",
                result.confidence,
                self.confidence_threshold,
            )
            raise StageFailed(
                LOW_CONFIDENCE_MESSAGE, ErrorCode.EXTRACTION_FAILED, clarify_image=True
            )
        return result
