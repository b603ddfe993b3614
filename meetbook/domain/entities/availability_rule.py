from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass(frozen=True)
class AvailabilityRule:
    rule_id: str
    owner_id: str
    open_from: time  # local to `timezone`
    open_until: time
    slot_minutes: int = 30
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    timezone: str = "UTC"
    weekdays: frozenset[int] = field(default_factory=lambda: frozenset(range(7)))  # Monday == 0
    valid_from: date | None = None
    valid_until: date | None = None  # inclusive

    def __post_init__(self) -> None:
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"rule {self.rule_id!r} has unknown timezone {self.timezone!r}") from e

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def slot_duration(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)

    @property
    def buffer_before(self) -> timedelta:
        return timedelta(minutes=max(self.buffer_before_minutes, 0))

    @property
    def buffer_after(self) -> timedelta:
        return timedelta(minutes=max(self.buffer_after_minutes, 0))

    def applies_on(self, day: date) -> bool:
        if self.valid_from is not None and day < self.valid_from:
            return False
        if self.valid_until is not None and day > self.valid_until:
            return False
        return day.weekday() in self.weekdays
