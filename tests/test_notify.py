"""Tests for notification dispatch."""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

from medsafe.notify import EventType, LoggingNotifier, NotificationEvent, RecordingNotifier, dispatch


def make_event(event_type=EventType.DOSE_MISSED):
    return NotificationEvent(type=event_type, user_id=uuid4(), subject_id=uuid4())


class TestDispatch:
    """Tests for fire-and-forget delivery."""

    def test_delivers_event(self):
        notifier = RecordingNotifier()
        event = make_event()

        asyncio.run(dispatch(notifier, event))

        assert notifier.events == [event]
        assert notifier.of_type(EventType.LOW_ADHERENCE) == []

    def test_failing_notifier_does_not_raise(self, caplog):
        """A notifier error is logged and never reaches the caller."""
        notifier = AsyncMock()
        notifier.emit.side_effect = RuntimeError("push gateway down")

        asyncio.run(dispatch(notifier, make_event(EventType.LOW_ADHERENCE)))

        notifier.emit.assert_awaited_once()
        assert "Notification dispatch failed for low_adherence" in caplog.text

    def test_logging_notifier(self, caplog):
        caplog.set_level("INFO", logger="medsafe.notify")
        event = make_event(EventType.CLARIFY_IMAGE_REQUESTED)

        asyncio.run(LoggingNotifier().emit(event))

        assert "clarify_image_requested" in caplog.text
