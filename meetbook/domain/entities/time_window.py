from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta


@dataclass(frozen=True, order=True)
class TimeWindow:
    """Half-open interval [start, end) between two timezone-aware instants."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("time window boundaries must be timezone-aware")
        if self.start >= self.end:
            raise ValueError(
                f"time window start must be before end ({self.start.isoformat()} >= {self.end.isoformat()})"
            )
        # Normalise to UTC so equality and hashing ignore the source offset.
        object.__setattr__(self, "start", self.start.astimezone(UTC))
        object.__setattr__(self, "end", self.end.astimezone(UTC))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: TimeWindow) -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def covers(self, other: TimeWindow) -> bool:
        return self.start <= other.start and other.end <= self.end

    def expand(self, before: timedelta, after: timedelta) -> TimeWindow:
        return TimeWindow(self.start - before, self.end + after)


def merge_windows(windows: list[TimeWindow]) -> list[TimeWindow]:
    """Sort windows and coalesce the ones that overlap or touch."""
    if not windows:
        return []

    ordered = sorted(windows)
    merged = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = TimeWindow(last.start, current.end)
            continue
        merged.append(current)
    return merged
