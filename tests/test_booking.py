from __future__ import annotations

import asyncio
from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from conftest import DAY, NOW, OWNER, at, window
from meetbook.application.exceptions import (
    BookingConfirmationFailed,
    GatewayUnavailable,
    InvalidInput,
    PersistenceUnavailable,
    RequesterBlocked,
    ReservationNotFound,
    SlotUnavailable,
)
from meetbook.application.ports.errors import StoreUnavailableError
from meetbook.application.ports.mailer import MailerPort
from meetbook.application.reliability import RetryPolicy
from meetbook.application.use_cases.availability import AvailabilityUseCase
from meetbook.application.use_cases.booking import BookingUseCase
from meetbook.domain.entities.blacklist import BlacklistEntry
from meetbook.domain.entities.notification import NotificationKind, NotificationStatus
from meetbook.domain.entities.reservation import Requester, ReservationStatus
from meetbook.domain.entities.time_window import TimeWindow
from meetbook.infrastructure.calendar.mock_calendar import MockCalendar
from meetbook.infrastructure.store.memory_store import (
    MemoryAvailabilityRuleStore,
    MemoryBlacklistStore,
    MemoryNotificationStore,
    MemoryReservationStore,
)


class _SlowBusyCalendar(MockCalendar):
    async def list_busy_windows(self, calendar_id, start, end):
        await asyncio.sleep(0.01)
        return await super().list_busy_windows(calendar_id, start, end)


class _FailingCreateCalendar(MockCalendar):
    async def create_event(self, calendar_id, event):
        raise GatewayUnavailable("insert failed", status_code=500)


class _HangingCreateCalendar(MockCalendar):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def create_event(self, calendar_id, event):
        self.started.set()
        await asyncio.sleep(3600)
        raise AssertionError("unreachable")


class _FailingDeleteCalendar(MockCalendar):
    async def delete_event(self, calendar_id, event_id):
        raise GatewayUnavailable("delete failed", status_code=500)


class _UnconfirmableStore(MemoryReservationStore):
    async def update_status(self, reservation_id, status, **kwargs):
        if status is ReservationStatus.confirmed:
            raise StoreUnavailableError("disk went away")
        return await super().update_status(reservation_id, status, **kwargs)


class _SlowAckStore(MemoryReservationStore):
    """Commits the pending row, then takes a long time to acknowledge it."""

    def __init__(self, ack_delay: float) -> None:
        super().__init__()
        self.ack_delay = ack_delay
        self.committed = asyncio.Event()

    async def insert_pending(self, reservation):
        stored = await super().insert_pending(reservation)
        self.committed.set()
        await asyncio.sleep(self.ack_delay)
        return stored


class _BrokenInsertStore(MemoryReservationStore):
    async def insert_pending(self, reservation):
        raise StoreUnavailableError("database is locked")


class _HangingReadStore(MemoryReservationStore):
    async def get(self, reservation_id):
        await asyncio.sleep(3600)

    async def find_by_lookup_hash(self, lookup_hash):
        await asyncio.sleep(3600)

    async def list_reservations(self, owner_id, statuses=None):
        await asyncio.sleep(3600)


class _FlakyCreateCalendar(MockCalendar):
    def __init__(self) -> None:
        super().__init__()
        self.create_calls = 0

    async def create_event(self, calendar_id, event):
        self.create_calls += 1
        if self.create_calls == 1:
            raise GatewayUnavailable("backend error", status_code=503)
        return await super().create_event(calendar_id, event)


class _FailingMailer(MailerPort):
    async def send(self, message):
        raise GatewayUnavailable("Gmail API error 500", status_code=500)


class _BrokenBlacklist(MemoryBlacklistStore):
    async def find_by_email(self, email):
        raise StoreUnavailableError("blacklist table unreadable")


def _booking(rule, calendar, reservations=None, call_timeout: float = 2.0, **kwargs) -> BookingUseCase:
    reservations = reservations or MemoryReservationStore()
    availability = AvailabilityUseCase(
        rules=MemoryAvailabilityRuleStore([rule]),
        reservations=reservations,
        calendar=calendar,
        calendar_id="primary",
        timezone=ZoneInfo("UTC"),
        clock=lambda: NOW,
    )
    return BookingUseCase(
        availability=availability,
        reservations=reservations,
        calendar=calendar,
        calendar_id="primary",
        call_timeout=call_timeout,
        clock=lambda: NOW,
        **kwargs,
    )


async def test_reserve_confirms_with_event_and_meet_url(booking, requester):
    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    assert reservation.status is ReservationStatus.confirmed
    assert reservation.external_event_id == "mock_event_1"
    assert reservation.meet_url == "https://meet.example.com/mock_event_1"
    assert reservation.lookup_hash
    assert reservation.requester.email == "ada@example.com"


async def test_second_reserve_of_same_slot_is_unavailable(booking, requester):
    await booking.reserve(OWNER, requester, window(9, 0, 9, 30))
    with pytest.raises(SlotUnavailable):
        await booking.reserve(OWNER, Requester(name="Grace", email="grace@example.com"), window(9, 0, 9, 30))


async def test_confirmed_window_disappears_from_availability(booking, availability, requester):
    await booking.reserve(OWNER, requester, window(11, 0, 11, 30))
    slots = await availability.compute_slots(OWNER, DAY, DAY + timedelta(days=1))
    assert at(11, 0) not in [s.start for s in slots]


async def test_busy_slot_is_rejected_without_creating_a_record(booking, reservation_store, requester):
    with pytest.raises(SlotUnavailable):
        await booking.reserve(OWNER, requester, window(10, 0, 10, 30))
    assert await reservation_store.list_reservations(OWNER) == []


async def test_concurrent_reserves_yield_one_success(rule, requester):
    reservations = MemoryReservationStore()
    booking = _booking(rule, _SlowBusyCalendar(), reservations)

    results = await asyncio.gather(
        booking.reserve(OWNER, requester, window(13, 0, 13, 30)),
        booking.reserve(OWNER, Requester(name="Grace", email="grace@example.com"), window(13, 0, 13, 30)),
        return_exceptions=True,
    )

    assert sum(isinstance(r, SlotUnavailable) for r in results) == 1
    confirmed = [r for r in results if not isinstance(r, BaseException)]
    assert len(confirmed) == 1
    assert confirmed[0].status is ReservationStatus.confirmed
    assert len(await reservations.list_reservations(OWNER)) == 1


async def test_create_event_failure_marks_failed_and_frees_slot(rule, requester):
    reservations = MemoryReservationStore()
    booking = _booking(rule, _FailingCreateCalendar(), reservations)

    with pytest.raises(BookingConfirmationFailed) as exc_info:
        await booking.reserve(OWNER, requester, window(14, 0, 14, 30))

    stored = await reservations.get(exc_info.value.reservation_id)
    assert stored.status is ReservationStatus.failed
    assert await reservations.list_active(OWNER, at(14, 0), at(14, 30)) == []


async def test_cancellation_during_confirmation_marks_failed(rule, requester):
    reservations = MemoryReservationStore()
    calendar = _HangingCreateCalendar()
    booking = _booking(rule, calendar, reservations)

    task = asyncio.create_task(booking.reserve(OWNER, requester, window(15, 0, 15, 30)))
    await calendar.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    [stored] = await reservations.list_reservations(OWNER)
    assert stored.status is ReservationStatus.failed


async def test_confirmation_timeout_marks_failed(rule, requester):
    reservations = MemoryReservationStore()
    booking = _booking(rule, _HangingCreateCalendar(), reservations, call_timeout=0.05)

    with pytest.raises(BookingConfirmationFailed):
        await booking.reserve(OWNER, requester, window(15, 0, 15, 30))

    [stored] = await reservations.list_reservations(OWNER)
    assert stored.status is ReservationStatus.failed


async def test_unrecordable_confirmation_removes_event(rule, requester):
    calendar = MockCalendar()
    reservations = _UnconfirmableStore()
    booking = _booking(rule, calendar, reservations)

    with pytest.raises(BookingConfirmationFailed):
        await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    assert await calendar.list_busy_windows("primary", at(9, 0), at(9, 30)) == []
    [stored] = await reservations.list_reservations(OWNER)
    assert stored.status is ReservationStatus.failed


@pytest.mark.parametrize(
    "name, email",
    [
        ("", "ada@example.com"),
        ("Ada", ""),
        ("Ada", "not-an-email"),
        ("Ada", "Ada <ada@example.com>"),
    ],
)
async def test_invalid_requester_is_rejected(booking, name, email):
    with pytest.raises(InvalidInput):
        await booking.reserve(OWNER, Requester(name=name, email=email), window(9, 0, 9, 30))


async def test_misaligned_window_is_rejected(booking, requester):
    with pytest.raises(InvalidInput):
        await booking.reserve(OWNER, requester, window(9, 10, 9, 40))


async def test_minimum_lead_time_is_enforced(booking, requester):
    too_soon = NOW.replace(hour=6, minute=5)
    with pytest.raises(InvalidInput):
        await booking.reserve(OWNER, requester, TimeWindow(too_soon, too_soon + timedelta(minutes=30)))


async def test_maximum_duration_is_enforced(booking, requester):
    with pytest.raises(InvalidInput):
        await booking.reserve(OWNER, requester, window(9, 0, 13, 30))


async def test_cancel_deletes_event_and_is_idempotent(booking, calendar, requester):
    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    cancelled = await booking.cancel(reservation.reservation_id, reason="conflict")

    assert cancelled.status is ReservationStatus.cancelled
    assert cancelled.cancellation_reason == "conflict"
    assert await calendar.list_busy_windows("primary", at(9, 0), at(9, 30)) == []
    again = await booking.cancel(reservation.reservation_id)
    assert again.status is ReservationStatus.cancelled


async def test_cancel_survives_calendar_delete_failure(rule, requester):
    booking = _booking(rule, _FailingDeleteCalendar())
    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    cancelled = await booking.cancel(reservation.reservation_id)

    assert cancelled.status is ReservationStatus.cancelled


async def test_cancel_unknown_reservation(booking):
    with pytest.raises(ReservationNotFound):
        await booking.cancel("missing")


async def test_lookup_by_hash(booking, requester):
    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    found = await booking.lookup(reservation.lookup_hash)

    assert found.reservation_id == reservation.reservation_id
    with pytest.raises(ReservationNotFound):
        await booking.lookup("0" * 32)
    with pytest.raises(InvalidInput):
        await booking.lookup("  ")


async def test_list_reservations_filters_by_status(booking, requester):
    kept = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))
    dropped = await booking.reserve(OWNER, requester, window(11, 0, 11, 30))
    await booking.cancel(dropped.reservation_id)

    confirmed = await booking.list_reservations(OWNER, [ReservationStatus.confirmed])

    assert [r.reservation_id for r in confirmed] == [kept.reservation_id]
    assert len(await booking.list_reservations(OWNER)) == 2


async def test_slow_insert_ack_does_not_leave_a_pending_row(rule, requester):
    reservations = _SlowAckStore(ack_delay=0.5)
    booking = _booking(rule, MockCalendar(), reservations, call_timeout=0.05)

    with pytest.raises(PersistenceUnavailable):
        await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    [stored] = await reservations.list_reservations(OWNER)
    assert stored.status is ReservationStatus.failed
    assert await reservations.list_active(OWNER, at(9, 0), at(9, 30)) == []


async def test_cancellation_during_insert_does_not_leave_a_pending_row(rule, requester):
    reservations = _SlowAckStore(ack_delay=3600)
    booking = _booking(rule, MockCalendar(), reservations, call_timeout=0.05)

    task = asyncio.create_task(booking.reserve(OWNER, requester, window(9, 0, 9, 30)))
    await reservations.committed.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    [stored] = await reservations.list_reservations(OWNER)
    assert stored.status is ReservationStatus.failed


async def test_store_failure_on_insert_is_persistence_unavailable(rule, requester):
    calendar = MockCalendar()
    booking = _booking(rule, calendar, _BrokenInsertStore())

    with pytest.raises(PersistenceUnavailable):
        await booking.reserve(OWNER, requester, window(9, 0, 9, 30))
    assert await calendar.list_busy_windows("primary", at(9, 0), at(9, 30)) == []


async def test_blacklisted_requester_is_rejected(booking, blacklist_store, reservation_store, mailer):
    await blacklist_store.add_entry(BlacklistEntry(email="spam@example.com", reason="abuse"))

    with pytest.raises(RequesterBlocked):
        await booking.reserve(OWNER, Requester(name="Spam", email="SPAM@example.com "), window(9, 0, 9, 30))

    assert await reservation_store.list_reservations(OWNER) == []
    assert mailer.sent == []


async def test_unreadable_blacklist_blocks_booking(rule, requester):
    reservations = MemoryReservationStore()
    booking = _booking(rule, MockCalendar(), reservations, blacklist=_BrokenBlacklist())

    with pytest.raises(PersistenceUnavailable):
        await booking.reserve(OWNER, requester, window(9, 0, 9, 30))
    assert await reservations.list_reservations(OWNER) == []


async def test_confirmation_mail_is_sent_and_recorded(booking, mailer, requester):
    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    [message] = mailer.sent
    assert message.to == ["ada@example.com"]
    assert message.sender == "owner@example.com"
    assert message.subject.startswith("Meeting request confirmed")
    assert reservation.meet_url in message.body
    assert reservation.lookup_hash in message.body

    [notification] = await booking.list_notifications(reservation.reservation_id)
    assert notification.kind is NotificationKind.confirmation_email
    assert notification.status is NotificationStatus.sent


async def test_cancel_sends_cancellation_mail(booking, mailer, requester):
    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    await booking.cancel(reservation.reservation_id, reason="travelling")

    assert mailer.sent[-1].subject.startswith("Meeting cancelled")
    assert "travelling" in mailer.sent[-1].body
    kinds = [n.kind for n in await booking.list_notifications(reservation.reservation_id)]
    assert kinds == [NotificationKind.confirmation_email, NotificationKind.cancellation_email]


async def test_mail_failure_is_recorded_and_booking_stands(rule, requester):
    notifications = MemoryNotificationStore()
    booking = _booking(rule, MockCalendar(), notifications=notifications, mailer=_FailingMailer())

    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    assert reservation.status is ReservationStatus.confirmed
    [notification] = await notifications.list_for_reservation(reservation.reservation_id)
    assert notification.status is NotificationStatus.failed
    assert "500" in notification.error_message


async def test_transient_create_failure_is_retried(rule, requester):
    calendar = _FlakyCreateCalendar()
    booking = _booking(
        rule,
        calendar,
        retry_policy=RetryPolicy(max_attempts=2, initial_backoff_seconds=0.0),
    )

    reservation = await booking.reserve(OWNER, requester, window(9, 0, 9, 30))

    assert reservation.status is ReservationStatus.confirmed
    assert calendar.create_calls == 2


@pytest.mark.parametrize(
    "call",
    [
        lambda booking: booking.cancel("some-id"),
        lambda booking: booking.lookup("some-hash"),
        lambda booking: booking.list_reservations(OWNER),
        lambda booking: booking.list_notifications("some-id"),
    ],
)
async def test_hanging_store_reads_are_bounded(rule, call):
    booking = _booking(rule, MockCalendar(), _HangingReadStore(), call_timeout=0.05)

    with pytest.raises(PersistenceUnavailable):
        await call(booking)
