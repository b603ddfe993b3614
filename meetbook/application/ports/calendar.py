from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from meetbook.domain.entities.calendar_event import CalendarEvent, EventInput
from meetbook.domain.entities.time_window import TimeWindow


class CalendarPort(ABC):
    @abstractmethod
    async def list_busy_windows(self, calendar_id: str, start: datetime, end: datetime) -> list[TimeWindow]:
        """List busy windows in [start, end), ordered by start."""
        raise NotImplementedError

    @abstractmethod
    async def create_event(self, calendar_id: str, event: EventInput) -> CalendarEvent:
        """Create calendar event with attendees. Returns the created event."""
        raise NotImplementedError

    @abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete calendar event."""
        raise NotImplementedError
