"""Baseline data the in-memory fallback stores are populated with at startup."""

from __future__ import annotations

from datetime import time

from meetbook.core.config import Settings
from meetbook.domain.entities.availability_rule import AvailabilityRule

WEEKDAYS = frozenset(range(5))


def default_rules(settings: Settings) -> list[AvailabilityRule]:
    return [
        AvailabilityRule(
            rule_id="default-weekdays",
            owner_id=settings.OWNER_ID,
            open_from=time(hour=settings.WORKDAY_START_HOUR),
            open_until=time(hour=settings.WORKDAY_END_HOUR),
            slot_minutes=settings.SLOT_DURATION_MINUTES if settings.SLOT_DURATION_MINUTES > 0 else 30,
            buffer_before_minutes=max(settings.BUFFER_MINUTES, 0),
            buffer_after_minutes=max(settings.BUFFER_MINUTES, 0),
            timezone=settings.BUSINESS_TIMEZONE,
            weekdays=WEEKDAYS,
        )
    ]
