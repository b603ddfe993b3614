from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from email.utils import parseaddr
from zoneinfo import ZoneInfo

from meetbook.application.exceptions import (
    BookingConfirmationFailed,
    CredentialUnavailable,
    GatewayUnavailable,
    InvalidInput,
    PersistenceUnavailable,
    RequesterBlocked,
    ReservationNotFound,
    SlotUnavailable,
)
from meetbook.application.ports.blacklist import BlacklistRepository
from meetbook.application.ports.calendar import CalendarPort
from meetbook.application.ports.errors import (
    ConflictError,
    DuplicateError,
    InvalidInputError,
    NotFoundError,
    RepositoryError,
)
from meetbook.application.ports.mailer import MailerPort
from meetbook.application.ports.notifications import NotificationRepository
from meetbook.application.ports.reservations import ReservationRepository
from meetbook.application.reliability import NO_RETRY, CircuitBreaker, RetryPolicy, call_with_retry
from meetbook.application.use_cases.availability import AvailabilityUseCase, expand_rules
from meetbook.domain.entities.availability_rule import AvailabilityRule
from meetbook.domain.entities.calendar_event import CalendarEvent, EventInput
from meetbook.domain.entities.notification import (
    MailMessage,
    MeetingNotification,
    NotificationKind,
    NotificationStatus,
)
from meetbook.domain.entities.reservation import Requester, Reservation, ReservationStatus
from meetbook.domain.entities.time_window import TimeWindow


class BookingUseCase:
    def __init__(
        self,
        availability: AvailabilityUseCase,
        reservations: ReservationRepository,
        calendar: CalendarPort,
        calendar_id: str,
        minimum_lead: timedelta = timedelta(minutes=15),
        max_duration: timedelta = timedelta(minutes=240),
        meet_template: str = "",
        call_timeout: float = 8.0,
        blacklist: BlacklistRepository | None = None,
        notifications: NotificationRepository | None = None,
        mailer: MailerPort | None = None,
        notification_sender: str = "",
        notification_cc: str = "",
        display_timezone: ZoneInfo | None = None,
        retry_policy: RetryPolicy | None = None,
        calendar_breaker: CircuitBreaker | None = None,
        mail_breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._availability = availability
        self._reservations = reservations
        self._calendar = calendar
        self._calendar_id = calendar_id
        self._minimum_lead = minimum_lead
        self._max_duration = max_duration
        self._meet_template = meet_template.strip()
        self._call_timeout = call_timeout
        self._blacklist = blacklist
        self._notifications = notifications
        self._mailer = mailer
        self._notification_sender = notification_sender.strip()
        self._notification_cc = [notification_cc.strip()] if notification_cc.strip() else []
        self._display_timezone = display_timezone or ZoneInfo("UTC")
        self._retry_policy = retry_policy or NO_RETRY
        # Event inserts and mail sends are not idempotent, so a timed-out attempt is not repeated.
        self._write_policy = replace(self._retry_policy, retry_timeouts=False)
        self._calendar_breaker = calendar_breaker
        self._mail_breaker = mail_breaker
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logging.getLogger(__name__)

    async def reserve(self, owner_id: str, requester: Requester, window: TimeWindow) -> Reservation:
        """
        Reserve `window` for `requester`.
        Pending is committed before the calendar event is created; a failed or
        cancelled confirmation moves the row to failed so the slot frees up.
        A confirmation e-mail follows; its outcome is recorded but never fails
        the booking.
        """
        requester = _normalize_requester(requester)
        self._validate_window(window)
        await self._ensure_not_blocked(owner_id, requester.email)

        rules = await self._availability.load_rules(owner_id)
        try:
            rule = _matching_rule(owner_id, rules, window)
        except OverflowError as e:
            raise InvalidInput("requested window is outside the supported dates") from e
        if rule is None:
            raise InvalidInput("requested window does not match an offered slot")

        conflicts = await self._availability.find_conflicts(owner_id, window, rule.buffer_before, rule.buffer_after)
        if conflicts:
            self._logger.info("Slot taken at re-validation", extra={"owner_id": owner_id, "start": window.start.isoformat()})
            raise SlotUnavailable("requested slot is no longer available")

        pending = Reservation(
            reservation_id=uuid.uuid4().hex,
            owner_id=owner_id,
            window=window,
            requester=requester,
            lookup_hash=secrets.token_hex(16),
        )
        stored = await self._insert_pending(pending)

        self._logger.info(
            "Reservation pending",
            extra={"reservation_id": stored.reservation_id, "owner_id": owner_id, "start": window.start.isoformat()},
        )
        confirmed = await self._confirm(stored)
        await self._notify(confirmed, NotificationKind.confirmation_email)
        return confirmed

    async def cancel(self, reservation_id: str, reason: str = "") -> Reservation:
        reservation = await self._get(reservation_id)

        if reservation.status is ReservationStatus.cancelled:
            return reservation
        if reservation.status is ReservationStatus.failed:
            raise InvalidInput("failed reservations cannot be cancelled")

        try:
            async with asyncio.timeout(self._call_timeout):
                cancelled = await self._reservations.update_status(
                    reservation.reservation_id, ReservationStatus.cancelled, reason=reason
                )
        except NotFoundError as e:
            raise ReservationNotFound(f"reservation {reservation_id!r} not found") from e
        except InvalidInputError as e:
            raise InvalidInput(f"reservation cannot be cancelled: {e}") from e
        except (RepositoryError, TimeoutError) as e:
            raise PersistenceUnavailable("reservation could not be cancelled") from e
        self._logger.info("Reservation cancelled", extra={"reservation_id": reservation_id})

        if cancelled.external_event_id:
            await self._delete_event_quietly(cancelled.external_event_id, reservation_id)
        await self._notify(cancelled, NotificationKind.cancellation_email)
        return cancelled

    async def lookup(self, lookup_hash: str) -> Reservation:
        normalized = lookup_hash.strip()
        if not normalized:
            raise InvalidInput("lookup hash is required")
        try:
            async with asyncio.timeout(self._call_timeout):
                return await self._reservations.find_by_lookup_hash(normalized)
        except NotFoundError as e:
            raise ReservationNotFound("reservation not found") from e
        except (RepositoryError, TimeoutError) as e:
            raise PersistenceUnavailable("reservation could not be loaded") from e

    async def list_reservations(
        self,
        owner_id: str,
        statuses: Iterable[ReservationStatus] | None = None,
    ) -> list[Reservation]:
        try:
            async with asyncio.timeout(self._call_timeout):
                return await self._reservations.list_reservations(owner_id, statuses)
        except (RepositoryError, TimeoutError) as e:
            raise PersistenceUnavailable("reservations could not be listed") from e

    async def list_notifications(self, reservation_id: str) -> list[MeetingNotification]:
        await self._get(reservation_id)
        if self._notifications is None:
            return []
        try:
            async with asyncio.timeout(self._call_timeout):
                return await self._notifications.list_for_reservation(reservation_id)
        except (RepositoryError, TimeoutError) as e:
            raise PersistenceUnavailable("notification history could not be loaded") from e

    async def _get(self, reservation_id: str) -> Reservation:
        try:
            async with asyncio.timeout(self._call_timeout):
                return await self._reservations.get(reservation_id)
        except NotFoundError as e:
            raise ReservationNotFound(f"reservation {reservation_id!r} not found") from e
        except (RepositoryError, TimeoutError) as e:
            raise PersistenceUnavailable("reservation could not be loaded") from e

    async def _ensure_not_blocked(self, owner_id: str, email: str) -> None:
        if self._blacklist is None:
            return
        try:
            async with asyncio.timeout(self._call_timeout):
                await self._blacklist.find_by_email(email)
        except NotFoundError:
            return
        except (RepositoryError, TimeoutError) as e:
            raise PersistenceUnavailable("blacklist status could not be checked") from e
        self._logger.info("Blocked requester rejected", extra={"owner_id": owner_id})
        raise RequesterBlocked("email address is blocked from scheduling")

    async def _insert_pending(self, pending: Reservation) -> Reservation:
        # Shielded so a timeout or cancellation does not abandon a write that may still commit.
        insert = asyncio.ensure_future(self._reservations.insert_pending(pending))
        try:
            async with asyncio.timeout(self._call_timeout):
                return await asyncio.shield(insert)
        except (DuplicateError, ConflictError) as e:
            self._logger.info(
                "Slot taken at commit",
                extra={"owner_id": pending.owner_id, "start": pending.window.start.isoformat()},
            )
            raise SlotUnavailable("requested slot is no longer available") from e
        except asyncio.CancelledError:
            await asyncio.shield(self._abandon_insert(insert, pending, "request cancelled while storing"))
            raise
        except TimeoutError as e:
            await asyncio.shield(self._abandon_insert(insert, pending, "store timed out"))
            raise PersistenceUnavailable("reservation could not be stored in time") from e
        except RepositoryError as e:
            raise PersistenceUnavailable("reservation could not be stored") from e

    async def _abandon_insert(self, insert: asyncio.Future[Reservation], pending: Reservation, reason: str) -> None:
        """Give an abandoned insert one more timeout to settle, then mark whatever it stored as failed."""
        try:
            async with asyncio.timeout(self._call_timeout):
                await insert
        except RepositoryError:
            return  # rejected, nothing stored
        except TimeoutError:
            pass
        await self._mark_failed(pending, reason)

    async def _confirm(self, reservation: Reservation) -> Reservation:
        try:
            event = await call_with_retry(
                "calendar booking",
                lambda: self._calendar.create_event(self._calendar_id, self._event_input(reservation)),
                policy=self._write_policy,
                breaker=self._calendar_breaker,
                timeout=self._call_timeout,
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._mark_failed(reservation, "request cancelled before confirmation"))
            raise
        except (GatewayUnavailable, CredentialUnavailable, TimeoutError) as e:
            await self._mark_failed(reservation, str(e) or type(e).__name__)
            raise BookingConfirmationFailed(
                "calendar event could not be created", reservation_id=reservation.reservation_id
            ) from e

        confirmed = await self._record_confirmation(reservation, event)
        self._logger.info(
            "Reservation confirmed",
            extra={"reservation_id": confirmed.reservation_id, "event_id": event.event_id},
        )
        return confirmed

    async def _record_confirmation(self, reservation: Reservation, event: CalendarEvent) -> Reservation:
        update = asyncio.ensure_future(
            self._reservations.update_status(
                reservation.reservation_id,
                ReservationStatus.confirmed,
                external_event_id=event.event_id,
                meet_url=event.meet_url,
            )
        )
        try:
            async with asyncio.timeout(self._call_timeout):
                return await asyncio.shield(update)
        except (RepositoryError, TimeoutError) as e:
            error = e

        self._logger.error(
            "Confirmed event could not be recorded",
            extra={"reservation_id": reservation.reservation_id, "event_id": event.event_id, "error": str(error)},
        )
        current = await self._mark_failed(reservation, "confirmation could not be recorded")
        if current is not None and current.status is ReservationStatus.confirmed:
            # The confirmation write landed after all.
            return current
        await self._delete_event_quietly(event.event_id, reservation.reservation_id)
        raise BookingConfirmationFailed(
            "reservation could not be confirmed", reservation_id=reservation.reservation_id
        ) from error

    async def _mark_failed(self, reservation: Reservation, reason: str) -> Reservation | None:
        """Move the reservation to failed. Returns the stored row when it can be read, None otherwise."""
        self._logger.warning(
            "Marking reservation failed",
            extra={"reservation_id": reservation.reservation_id, "reason": reason},
        )
        try:
            async with asyncio.timeout(self._call_timeout):
                return await self._reservations.update_status(reservation.reservation_id, ReservationStatus.failed)
        except NotFoundError:
            self._logger.info("No stored reservation to mark failed", extra={"reservation_id": reservation.reservation_id})
            return None
        except InvalidInputError:
            # Already moved on (confirmed or cancelled); report what is stored.
            try:
                async with asyncio.timeout(self._call_timeout):
                    return await self._reservations.get(reservation.reservation_id)
            except (RepositoryError, TimeoutError):
                return None
        except (RepositoryError, TimeoutError) as e:
            self._logger.error(
                "Failed to record reservation failure",
                extra={"reservation_id": reservation.reservation_id, "error": str(e) or type(e).__name__},
            )
            return None

    async def _delete_event_quietly(self, event_id: str, reservation_id: str) -> None:
        try:
            await call_with_retry(
                "calendar cleanup",
                lambda: self._calendar.delete_event(self._calendar_id, event_id),
                policy=self._retry_policy,
                breaker=self._calendar_breaker,
                timeout=self._call_timeout,
            )
        except (GatewayUnavailable, CredentialUnavailable, TimeoutError) as e:
            self._logger.warning(
                "Calendar event cleanup failed",
                extra={"reservation_id": reservation_id, "event_id": event_id, "error": str(e)},
            )

    async def _notify(self, reservation: Reservation, kind: NotificationKind) -> MeetingNotification | None:
        if self._mailer is None:
            return None

        message = self._mail_message(reservation, kind)
        status, error_message = NotificationStatus.sent, ""
        try:
            await call_with_retry(
                kind.value,
                lambda: self._mailer.send(message),
                policy=self._write_policy,
                breaker=self._mail_breaker,
                timeout=self._call_timeout,
            )
        except (GatewayUnavailable, CredentialUnavailable, TimeoutError) as e:
            status, error_message = NotificationStatus.failed, str(e) or type(e).__name__
            self._logger.warning(
                "Notification not delivered",
                extra={"reservation_id": reservation.reservation_id, "kind": kind.value, "error": error_message},
            )

        if self._notifications is None:
            return None
        notification = MeetingNotification(
            reservation_id=reservation.reservation_id,
            kind=kind,
            status=status,
            error_message=error_message,
        )
        try:
            async with asyncio.timeout(self._call_timeout):
                return await self._notifications.record(notification)
        except (RepositoryError, TimeoutError) as e:
            self._logger.error(
                "Notification history not recorded",
                extra={"reservation_id": reservation.reservation_id, "kind": kind.value, "error": str(e)},
            )
            return None

    def _validate_window(self, window: TimeWindow) -> None:
        if window.start < self._clock() + self._minimum_lead:
            minutes = int(self._minimum_lead.total_seconds() // 60)
            raise InvalidInput(f"reservation must start at least {minutes} minutes in the future")
        if window.duration > self._max_duration:
            raise InvalidInput("requested duration exceeds the maximum allowed duration")

    def _event_input(self, reservation: Reservation) -> EventInput:
        requester = reservation.requester
        if self._meet_template:
            summary = f"{self._meet_template} - {requester.name}"
        else:
            summary = f"Consultation with {requester.name}"

        description = f"Meeting with {requester.name} ({requester.email})\n"
        if requester.topic:
            description += f"\nTopic: {requester.topic}\n"
        if requester.agenda:
            description += f"\nAgenda:\n{requester.agenda}\n"

        return EventInput(
            summary=summary,
            window=reservation.window,
            description=description,
            attendees=[requester.email],
            request_id=f"booking-{reservation.reservation_id}",
        )

    def _mail_message(self, reservation: Reservation, kind: NotificationKind) -> MailMessage:
        requester = reservation.requester
        start = reservation.window.start.astimezone(self._display_timezone)
        when = start.strftime("%a, %d %b %Y %H:%M %Z")
        minutes = int(reservation.window.duration.total_seconds() // 60)

        if kind is NotificationKind.confirmation_email:
            subject = f"Meeting request confirmed: {when}"
            body = f"Hi {requester.name},\n\nYour meeting has been scheduled for {when} (duration: {minutes} minutes).\n"
            if requester.agenda:
                body += f"\nAgenda:\n{requester.agenda}\n"
            if reservation.meet_url:
                body += f"\nJoin via Google Meet: {reservation.meet_url}\n"
        else:
            subject = f"Meeting cancelled: {when}"
            body = f"Hi {requester.name},\n\nYour meeting on {when} has been cancelled.\n"
            if reservation.cancellation_reason:
                body += f"\nReason: {reservation.cancellation_reason}\n"

        body += f"\nReservation reference: {reservation.lookup_hash}\n"
        return MailMessage(
            sender=self._notification_sender,
            to=[requester.email],
            cc=list(self._notification_cc),
            subject=subject,
            body=body,
        )


def _matching_rule(owner_id: str, rules: list[AvailabilityRule], window: TimeWindow) -> AvailabilityRule | None:
    by_id = {rule.rule_id: rule for rule in rules}
    for slot in expand_rules(owner_id, rules, window.start, window.end):
        if slot.window == window:
            return by_id[slot.rule_id]
    return None


def _normalize_requester(requester: Requester) -> Requester:
    name = requester.name.strip()
    email = requester.email.strip().lower()
    if not name:
        raise InvalidInput("name is required")
    if not email:
        raise InvalidInput("email is required")
    _, address = parseaddr(email)
    if address != email or "@" not in address or address.startswith("@") or address.endswith("@"):
        raise InvalidInput("email format is invalid")
    return replace(requester, name=name, email=email, topic=requester.topic.strip(), agenda=requester.agenda.strip())
