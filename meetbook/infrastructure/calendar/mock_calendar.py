from __future__ import annotations

import logging
from datetime import datetime

from meetbook.application.exceptions import InvalidInput
from meetbook.application.ports.calendar import CalendarPort
from meetbook.domain.entities.calendar_event import CalendarEvent, EventInput
from meetbook.domain.entities.time_window import TimeWindow


class MockCalendar(CalendarPort):
    def __init__(self, busy: list[TimeWindow] | None = None) -> None:
        self._busy: list[TimeWindow] = list(busy or [])
        self._events: dict[str, TimeWindow] = {}
        self._sequence = 0
        self._logger = logging.getLogger(__name__)

    async def list_busy_windows(self, calendar_id: str, start: datetime, end: datetime) -> list[TimeWindow]:
        if start.tzinfo is None or end.tzinfo is None:
            raise InvalidInput("range boundaries must be timezone-aware")
        if start >= end:
            raise InvalidInput("range start must be before range end")
        query = TimeWindow(start, end)
        windows = [w for w in [*self._busy, *self._events.values()] if w.overlaps(query)]
        return sorted(windows)

    async def create_event(self, calendar_id: str, event: EventInput) -> CalendarEvent:
        self._sequence += 1
        event_id = f"mock_event_{self._sequence}"
        self._events[event_id] = event.window
        self._logger.info(
            "Mock calendar event created",
            extra={
                "event_id": event_id,
                "start": event.window.start.isoformat(),
                "end": event.window.end.isoformat(),
                "title": event.summary,
            },
        )
        return CalendarEvent(event_id=event_id, hangout_link=f"https://meet.example.com/{event_id}")

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        if self._events.pop(event_id, None) is not None:
            self._logger.info("Mock calendar event cancelled", extra={"event_id": event_id})
