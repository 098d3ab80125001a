"""Interaction-lookup dependency boundary.

The knowledge base itself is external. `InteractionLookup` is the contract
the safety engine consumes; `TableInteractionLookup` serves it from a JSON
table of the form::

    {
        "aspirin|warfarin": {
            "severity": "severe",
            "description": "Increased bleeding risk",
            "recommendation": "Avoid combination"
        }
    }
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from medsafe.models import NO_INTERACTION, InteractionVerdict, normalized_pair

logger = logging.getLogger(__name__)


class InteractionLookup(ABC):
    """Queries interactions for a normalized medication-name pair."""

    @abstractmethod
    async def lookup(self, name_a: str, name_b: str) -> InteractionVerdict:
        """Return the verdict for the pair, or raise on dependency failure."""


class TableInteractionLookup(InteractionLookup):
    """Lookup backed by an in-memory table loaded from JSON."""

    def __init__(self, table: Optional[dict[str, dict]] = None):
        self._table: dict[tuple[str, str], InteractionVerdict] = {}
        for key, record in (table or {}).items():
            self.add(*key.split("|", 1), InteractionVerdict(**record))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TableInteractionLookup":
        with open(path, "r", encoding="utf-8") as f:
            table = json.load(f)
        logger.info("Loaded %d interaction records from %s", len(table), path)
        return cls(table)

    def __len__(self) -> int:
        return len(self._table)

    def add(self, name_a: str, name_b: str, verdict: InteractionVerdict) -> None:
        self._table[normalized_pair(name_a, name_b)] = verdict

    async def lookup(self, name_a: str, name_b: str) -> InteractionVerdict:
        await asyncio.sleep(0)
        return self._table.get(normalized_pair(name_a, name_b), NO_INTERACTION)
