"""Interaction Stage - Check parsed medications against the active profile.

Each medication mentioned in the document is checked against the user's
active medications and against the mentions before it in the same
document. Per-mention reports are merged; unresolved pairs make the merged
report incomplete without failing the stage.
"""

import logging
from datetime import date
from typing import Optional

from medsafe.models import DocumentRun, Medication, SafetyReport, utcnow
from medsafe.safety.engine import MedicationSafetyEngine
from medsafe.storage import RecordStore

logger = logging.getLogger(__name__)


def mentions_as_medications(run: DocumentRun) -> list[Medication]:
    """Transient medications for the distinct drugs mentioned in a run."""
    if run.medical_data is None:
        return []

    medications = []
    seen = set()
    for mention in run.medical_data.medications:
        medication = Medication(
            user_id=run.user_id,
            name=mention.name,
            dosage=mention.dosage,
        )
        if medication.normalized_name in seen:
            continue
        seen.add(medication.normalized_name)
        medications.append(medication)
    return medications


class InteractionStage:
    """Runs the safety engine for a parsed document."""

    def __init__(self, engine: MedicationSafetyEngine, records: RecordStore):
        self.engine = engine
        self.records = records

    async def run(self, run: DocumentRun, on: Optional[date] = None) -> SafetyReport:
        mentioned = mentions_as_medications(run)
        active = await self.records.active_medications(run.user_id, on or utcnow().date())

        report = SafetyReport()
        for index, medication in enumerate(mentioned):
            others = [
                m for m in active + mentioned[:index]
                if m.normalized_name != medication.normalized_name
            ]
            report = report.merge(await self.engine.check(medication, others))

        logger.info(
            "Interaction check for run %s: %d medications, %d pairs, %d warnings, incomplete=%s",
            run.id,
            len(mentioned),
            report.checked_pairs,
            len(report.warnings),
            report.incomplete,
        )
        return report
