"""Fire-and-forget notification events.

The pipeline and adherence engine emit events; delivery belongs to whatever
`Notifier` is plugged in. A failing notifier never affects the caller.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from medsafe.models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of notification the core emits."""

    CLARIFY_IMAGE_REQUESTED = "clarify_image_requested"
    SEVERE_INTERACTION_DETECTED = "severe_interaction_detected"
    DOSE_MISSED = "dose_missed"
    LOW_ADHERENCE = "low_adherence"


class NotificationEvent(BaseModel):
    """An event addressed to one user. Payload carries identifiers, not PHI."""

    type: EventType
    user_id: UUID
    subject_id: Optional[UUID] = Field(None, description="Run, medication or log id")
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True


class Notifier(ABC):
    """Consumer of notification events."""

    @abstractmethod
    async def emit(self, event: NotificationEvent) -> None:
        """Dispatch an event."""


class LoggingNotifier(Notifier):
    """Notifier that records events in the application log."""

    async def emit(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification %s for user %s (subject %s)",
            event.type.value,
            event.user_id,
            event.subject_id,
        )


class RecordingNotifier(Notifier):
    """Notifier that keeps emitted events in memory."""

    def __init__(self):
        self.events: list[NotificationEvent] = []

    async def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[NotificationEvent]:
        return [e for e in self.events if e.type == event_type]


async def dispatch(notifier: Notifier, event: NotificationEvent) -> None:
    """Emit an event, logging and discarding any dispatch failure."""
    try:
        await notifier.emit(event)
    except Exception:
        logger.exception("Notification dispatch failed for %s", event.type.value)
