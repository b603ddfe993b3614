from __future__ import annotations

from dataclasses import dataclass, field

from meetbook.domain.entities.time_window import TimeWindow


@dataclass(frozen=True)
class EventInput:
    summary: str
    window: TimeWindow
    description: str = ""
    attendees: list[str] = field(default_factory=list)
    request_id: str | None = None  # conference create request id


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    html_link: str | None = None
    hangout_link: str | None = None

    @property
    def meet_url(self) -> str | None:
        return self.hangout_link or self.html_link
