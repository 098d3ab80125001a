"""Medication safety: interaction cache, pairwise engine and profile service."""

from .cache import InteractionCache, pair_key
from .engine import INTERACTION_DEPENDENCY, MedicationSafetyEngine, make_warning
from .service import MedicationAdded, MedicationService

__all__ = [
    # Cache
    "InteractionCache",
    "pair_key",
    # Engine
    "INTERACTION_DEPENDENCY",
    "MedicationSafetyEngine",
    "make_warning",
    # Service
    "MedicationAdded",
    "MedicationService",
]
