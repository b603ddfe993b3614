from __future__ import annotations

from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from meetbook.application.use_cases.availability import AvailabilityUseCase
from meetbook.application.use_cases.booking import BookingUseCase
from meetbook.domain.entities.availability_rule import AvailabilityRule
from meetbook.domain.entities.reservation import Requester
from meetbook.domain.entities.time_window import TimeWindow
from meetbook.infrastructure.calendar.mock_calendar import MockCalendar
from meetbook.infrastructure.mail.mock_mailer import MockMailer
from meetbook.infrastructure.store.memory_store import (
    MemoryAvailabilityRuleStore,
    MemoryBlacklistStore,
    MemoryNotificationStore,
    MemoryReservationStore,
)

# Monday; the booking day below is the following day.
NOW = datetime(2026, 3, 2, 6, 0, tzinfo=UTC)
DAY = datetime(2026, 3, 3, tzinfo=UTC)
OWNER = "owner-1"


def at(hour: int, minute: int = 0, day: datetime = DAY) -> datetime:
    return day.replace(hour=hour, minute=minute)


def window(start_hour: int, start_minute: int, end_hour: int, end_minute: int) -> TimeWindow:
    return TimeWindow(at(start_hour, start_minute), at(end_hour, end_minute))


@pytest.fixture
def rule() -> AvailabilityRule:
    return AvailabilityRule(
        rule_id="weekdays",
        owner_id=OWNER,
        open_from=time(9, 0),
        open_until=time(17, 0),
        slot_minutes=30,
        timezone="UTC",
        weekdays=frozenset(range(5)),
    )


@pytest.fixture
def requester() -> Requester:
    return Requester(name="Ada Lovelace", email="ada@example.com", topic="Intro", agenda="Say hello")


@pytest.fixture
def rule_store(rule: AvailabilityRule) -> MemoryAvailabilityRuleStore:
    return MemoryAvailabilityRuleStore([rule])


@pytest.fixture
def reservation_store() -> MemoryReservationStore:
    return MemoryReservationStore()


@pytest.fixture
def calendar() -> MockCalendar:
    return MockCalendar(busy=[window(10, 0, 10, 30)])


@pytest.fixture
def blacklist_store() -> MemoryBlacklistStore:
    return MemoryBlacklistStore()


@pytest.fixture
def notification_store() -> MemoryNotificationStore:
    return MemoryNotificationStore()


@pytest.fixture
def mailer() -> MockMailer:
    return MockMailer()


@pytest.fixture
def availability(rule_store, reservation_store, calendar) -> AvailabilityUseCase:
    return AvailabilityUseCase(
        rules=rule_store,
        reservations=reservation_store,
        calendar=calendar,
        calendar_id="primary",
        timezone=ZoneInfo("UTC"),
        horizon_days=7,
        call_timeout=2.0,
        clock=lambda: NOW,
    )


@pytest.fixture
def booking(
    availability, reservation_store, calendar, blacklist_store, notification_store, mailer
) -> BookingUseCase:
    return BookingUseCase(
        availability=availability,
        reservations=reservation_store,
        calendar=calendar,
        calendar_id="primary",
        minimum_lead=timedelta(minutes=15),
        max_duration=timedelta(minutes=240),
        call_timeout=2.0,
        blacklist=blacklist_store,
        notifications=notification_store,
        mailer=mailer,
        notification_sender="owner@example.com",
        clock=lambda: NOW,
    )
