"""Medication Safety Engine - pairwise interaction checks.

For a newly added medication M and the user's active set {E1..En}, each
pair (M, Ei) is resolved independently: from the interaction cache if a
fresh verdict exists, otherwise through the resilient lookup client. A
failed pair never aborts the others and is never treated as "no
interaction"; it is reported as unresolved and the report is flagged
incomplete.
"""

import asyncio
import logging
from typing import Optional, Sequence

from medsafe.clients.interactions import InteractionLookup
from medsafe.config import Settings, settings as default_settings
from medsafe.errors import ErrorCode
from medsafe.models import (
    InteractionVerdict,
    InteractionWarning,
    Medication,
    SafetyReport,
    UnresolvedPair,
    build_report,
)
from medsafe.resilience import CircuitOpenError, DependencyFailure, ResilientClient

from .cache import InteractionCache, pair_key

logger = logging.getLogger(__name__)

INTERACTION_DEPENDENCY = "interaction_lookup"


class MedicationSafetyEngine:
    """Checks a medication against an active set for interactions."""

    def __init__(
        self,
        lookup: InteractionLookup,
        client: Optional[ResilientClient] = None,
        cache: Optional[InteractionCache] = None,
        config: Optional[Settings] = None,
    ):
        """Initialize engine.

        Args:
            lookup: Interaction-lookup dependency.
            client: Resilient wrapper for lookup calls.
            cache: Verdict cache shared across checks.
            config: Settings for default client and cache.
        """
        config = config or default_settings
        self.lookup = lookup
        self.client = client or ResilientClient.from_settings(
            INTERACTION_DEPENDENCY, config.lookup_timeout_seconds, config
        )
        self.cache = cache if cache is not None else InteractionCache(
            config.interaction_cache_ttl_seconds
        )

    async def lookup_pair(self, name_a: str, name_b: str) -> InteractionVerdict:
        """Resolve one name pair, cache first.

        Raises:
            DependencyFailure: The lookup failed after retries.
        """
        cached = self.cache.get(name_a, name_b)
        if cached is not None:
            return cached

        first, second = pair_key(name_a, name_b)
        verdict = await self.client.call(self.lookup.lookup, first, second)
        self.cache.put(first, second, verdict)
        return verdict

    async def check(
        self, new: Medication, active: Sequence[Medication]
    ) -> SafetyReport:
        """Check `new` against every other medication in `active`."""
        others = [m for m in active if m.id != new.id]
        if not others:
            return SafetyReport()

        outcomes = await asyncio.gather(
            *(self._check_one(new, other) for other in others)
        )

        warnings = []
        unresolved = []
        for outcome in outcomes:
            if isinstance(outcome, UnresolvedPair):
                unresolved.append(outcome)
            elif outcome is not None:
                warnings.append(outcome)

        report = build_report(warnings, unresolved, checked_pairs=len(others))
        if report.incomplete:
            logger.warning(
                "Interaction check for medication %s incomplete: %d of %d pairs unresolved",
                new.id,
                len(report.unresolved_pairs),
                len(others),
            )
        return report

    async def _check_one(self, new: Medication, other: Medication):
        try:
            verdict = await self.lookup_pair(new.normalized_name, other.normalized_name)
        except DependencyFailure as e:
            code = (
                ErrorCode.SERVICE_UNAVAILABLE
                if isinstance(e, CircuitOpenError)
                else ErrorCode.INTERACTION_CHECK_INCOMPLETE
            )
            return UnresolvedPair(
                medication_ids=(new.id, other.id),
                reason=type(e).__name__,
                error_code=code,
            )

        if not verdict.has_interaction:
            return None
        return make_warning(new, other, verdict)


def make_warning(
    a: Medication, b: Medication, verdict: InteractionVerdict
) -> InteractionWarning:
    """Warning for a pair, with names aligned to the sorted id pair."""
    first, second = sorted((a, b), key=lambda m: str(m.id))
    return InteractionWarning(
        medication_ids=(first.id, second.id),
        medication_names=(first.name, second.name),
        severity=verdict.severity,
        description=verdict.description,
        recommendation=verdict.recommendation,
    )
