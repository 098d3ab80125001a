"""Adding medications to a profile behind an interaction check."""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional
from uuid import UUID

from medsafe.errors import AccessDenied, InteractionCheckIncomplete
from medsafe.models import Medication, SafetyReport, utcnow
from medsafe.notify import EventType, LoggingNotifier, NotificationEvent, Notifier, dispatch
from medsafe.storage import RecordStore

from .engine import MedicationSafetyEngine

logger = logging.getLogger(__name__)


@dataclass
class MedicationAdded:
    """A stored medication and the check it passed through."""

    medication: Medication
    report: SafetyReport


class MedicationService:
    """Checks a new medication against the user's active set, then stores it."""

    def __init__(
        self,
        engine: MedicationSafetyEngine,
        records: RecordStore,
        notifier: Optional[Notifier] = None,
    ):
        self.engine = engine
        self.records = records
        self.notifier = notifier or LoggingNotifier()

    async def check_against_profile(
        self, user_id: UUID, medication: Medication, on: Optional[date] = None
    ) -> SafetyReport:
        """Run the interaction check without storing anything."""
        if medication.user_id != user_id:
            raise AccessDenied(f"Medication {medication.id} does not belong to user {user_id}")
        active = await self.records.active_medications(user_id, on or utcnow().date())
        return await self.engine.check(medication, active)

    async def add_medication(
        self,
        user_id: UUID,
        medication: Medication,
        require_complete: bool = False,
    ) -> MedicationAdded:
        """Check and persist a medication.

        Args:
            user_id: Validated identity of the caller.
            medication: Medication to add; must belong to `user_id`.
            require_complete: Refuse to store when any pair is unresolved.

        Raises:
            InteractionCheckIncomplete: `require_complete` is set and the
                check could not resolve every pair.
        """
        report = await self.check_against_profile(user_id, medication)

        if report.incomplete and require_complete:
            raise InteractionCheckIncomplete(
                f"{len(report.unresolved_pairs)} medication pair(s) could not be checked"
            )

        stored = await self.records.add_medication(medication)
        logger.info(
            "Added medication %s for user %s (%d warnings, incomplete=%s)",
            stored.id,
            user_id,
            len(report.warnings),
            report.incomplete,
        )

        if report.consult_provider:
            await dispatch(
                self.notifier,
                NotificationEvent(
                    type=EventType.SEVERE_INTERACTION_DETECTED,
                    user_id=user_id,
                    subject_id=stored.id,
                    payload={"warnings": len(report.warnings)},
                ),
            )
        return MedicationAdded(medication=stored, report=report)
