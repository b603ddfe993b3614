from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from meetbook.domain.entities.time_window import TimeWindow


@dataclass(frozen=True, order=True)
class Slot:
    window: TimeWindow
    owner_id: str
    rule_id: str

    @property
    def start(self) -> datetime:
        return self.window.start

    @property
    def end(self) -> datetime:
        return self.window.end

    @property
    def slot_id(self) -> str:
        return self.window.start.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class AvailabilityDay:
    date: str  # YYYY-MM-DD in the owner's timezone
    slots: list[Slot]


@dataclass(frozen=True)
class Availability:
    timezone: str
    generated_at: datetime
    days: list[AvailabilityDay]
