from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime

from meetbook.application.ports.availability_rules import AvailabilityRuleAdminRepository
from meetbook.application.ports.blacklist import BlacklistRepository
from meetbook.application.ports.errors import ConflictError, DuplicateError, InvalidInputError, NotFoundError
from meetbook.application.ports.notifications import NotificationRepository
from meetbook.application.ports.reservations import ReservationRepository
from meetbook.domain.entities.availability_rule import AvailabilityRule
from meetbook.domain.entities.blacklist import BlacklistEntry
from meetbook.domain.entities.notification import MeetingNotification
from meetbook.domain.entities.reservation import Reservation, ReservationStatus
from meetbook.domain.entities.time_window import TimeWindow


ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.pending: frozenset(
        {ReservationStatus.confirmed, ReservationStatus.failed, ReservationStatus.cancelled}
    ),
    ReservationStatus.confirmed: frozenset({ReservationStatus.cancelled}),
    ReservationStatus.failed: frozenset(),
    ReservationStatus.cancelled: frozenset(),
}


def check_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidInputError(f"reservation cannot move from {current.value} to {target.value}")


class MemoryAvailabilityRuleStore(AvailabilityRuleAdminRepository):
    def __init__(self, rules: Iterable[AvailabilityRule] | None = None) -> None:
        self._rules: dict[str, dict[str, AvailabilityRule]] = {}
        for rule in rules or []:
            self._rules.setdefault(rule.owner_id, {})[rule.rule_id] = rule

    async def list_rules(self, owner_id: str) -> list[AvailabilityRule]:
        rules = self._rules.get(owner_id)
        if not rules:
            raise NotFoundError(f"no availability rules for owner {owner_id!r}")
        return sorted(rules.values(), key=lambda r: r.rule_id)

    async def upsert_rule(self, rule: AvailabilityRule) -> AvailabilityRule:
        self._rules.setdefault(rule.owner_id, {})[rule.rule_id] = rule
        return rule

    async def delete_rule(self, owner_id: str, rule_id: str) -> None:
        if self._rules.get(owner_id, {}).pop(rule_id, None) is None:
            raise NotFoundError(f"availability rule {rule_id!r} not found")


class MemoryReservationStore(ReservationRepository):
    def __init__(self, reservations: Iterable[Reservation] | None = None) -> None:
        self._reservations: dict[str, Reservation] = {r.reservation_id: r for r in reservations or []}
        self._lock = asyncio.Lock()

    async def insert_pending(self, reservation: Reservation) -> Reservation:
        if reservation.status is not ReservationStatus.pending:
            raise InvalidInputError("only pending reservations can be inserted")

        async with self._lock:
            if reservation.reservation_id in self._reservations:
                raise DuplicateError(f"reservation {reservation.reservation_id!r} already exists")
            for existing in self._active_for(reservation.owner_id):
                if existing.window == reservation.window:
                    raise DuplicateError("an active reservation already holds this window")
                if existing.window.overlaps(reservation.window):
                    raise ConflictError("an active reservation overlaps this window")

            now = datetime.now(UTC)
            stored = replace(reservation, created_at=reservation.created_at or now, updated_at=now)
            self._reservations[stored.reservation_id] = stored
            return stored

    async def get(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise NotFoundError(f"reservation {reservation_id!r} not found")
        return reservation

    async def find_by_lookup_hash(self, lookup_hash: str) -> Reservation:
        for reservation in self._reservations.values():
            if reservation.lookup_hash == lookup_hash:
                return reservation
        raise NotFoundError("reservation not found")

    async def list_active(self, owner_id: str, start: datetime, end: datetime) -> list[Reservation]:
        query = TimeWindow(start, end)
        matches = [r for r in self._active_for(owner_id) if r.window.overlaps(query)]
        return sorted(matches, key=lambda r: r.window)

    async def list_reservations(
        self,
        owner_id: str,
        statuses: Iterable[ReservationStatus] | None = None,
    ) -> list[Reservation]:
        wanted = set(statuses or [])
        matches = [
            r
            for r in self._reservations.values()
            if r.owner_id == owner_id and (not wanted or r.status in wanted)
        ]
        return sorted(matches, key=lambda r: r.window, reverse=True)

    async def update_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        *,
        external_event_id: str | None = None,
        meet_url: str | None = None,
        reason: str = "",
    ) -> Reservation:
        async with self._lock:
            current = await self.get(reservation_id)
            check_transition(current.status, status)
            if status is ReservationStatus.confirmed and not (external_event_id or current.external_event_id):
                raise InvalidInputError("confirmed reservations require an external event id")

            updated = replace(
                current,
                status=status,
                external_event_id=external_event_id or current.external_event_id,
                meet_url=meet_url or current.meet_url,
                cancellation_reason=reason.strip() if status is ReservationStatus.cancelled else current.cancellation_reason,
                updated_at=datetime.now(UTC),
            )
            self._reservations[reservation_id] = updated
            return updated

    def _active_for(self, owner_id: str) -> list[Reservation]:
        return [r for r in self._reservations.values() if r.owner_id == owner_id and r.status.occupies_slot]


class MemoryBlacklistStore(BlacklistRepository):
    def __init__(self, entries: Iterable[BlacklistEntry] | None = None) -> None:
        self._entries: dict[int, BlacklistEntry] = {}
        self._next_id = 1
        for entry in entries or []:
            self._store(entry)

    async def find_by_email(self, email: str) -> BlacklistEntry:
        normalized = email.strip().lower()
        for entry in self._entries.values():
            if entry.email == normalized:
                return entry
        raise NotFoundError("email is not blacklisted")

    async def list_entries(self) -> list[BlacklistEntry]:
        return sorted(self._entries.values(), key=lambda e: e.entry_id or 0)

    async def add_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        email = entry.email.strip().lower()
        if not email:
            raise InvalidInputError("blacklist email is required")
        if any(existing.email == email for existing in self._entries.values()):
            raise DuplicateError(f"{email} is already blacklisted")
        return self._store(entry)

    async def remove_entry(self, entry_id: int) -> None:
        if self._entries.pop(entry_id, None) is None:
            raise NotFoundError(f"blacklist entry {entry_id} not found")

    def _store(self, entry: BlacklistEntry) -> BlacklistEntry:
        stored = replace(
            entry,
            email=entry.email.strip().lower(),
            entry_id=self._next_id,
            created_at=entry.created_at or datetime.now(UTC),
        )
        self._entries[stored.entry_id] = stored
        self._next_id += 1
        return stored


class MemoryNotificationStore(NotificationRepository):
    def __init__(self) -> None:
        self._records: list[MeetingNotification] = []

    async def record(self, notification: MeetingNotification) -> MeetingNotification:
        stored = replace(
            notification,
            notification_id=len(self._records) + 1,
            created_at=notification.created_at or datetime.now(UTC),
        )
        self._records.append(stored)
        return stored

    async def list_for_reservation(self, reservation_id: str) -> list[MeetingNotification]:
        return [n for n in self._records if n.reservation_id == reservation_id]
