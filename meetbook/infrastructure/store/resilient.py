"""Per-call degrade-to-in-memory decorator for repositories.

A call goes to the primary store first. When it fails because the backing
store is absent or misconfigured, the same call is re-issued against the
in-memory fallback and that result is returned. Every other error reaches
the caller unchanged. Nothing is sticky: the next call tries the primary
again.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from meetbook.application.ports.availability_rules import AvailabilityRuleAdminRepository
from meetbook.application.ports.blacklist import BlacklistRepository
from meetbook.application.ports.errors import (
    AccessDeniedError,
    NotFoundError,
    SchemaMissingError,
    StoreUnavailableError,
)
from meetbook.application.ports.notifications import NotificationRepository
from meetbook.application.ports.reservations import ReservationRepository
from meetbook.domain.entities.availability_rule import AvailabilityRule
from meetbook.domain.entities.blacklist import BlacklistEntry
from meetbook.domain.entities.notification import MeetingNotification
from meetbook.domain.entities.reservation import Reservation, ReservationStatus


logger = logging.getLogger(__name__)

_RAW_STORE_MISSING_MARKERS = ("no such table", "unable to open database file")


@dataclass(frozen=True)
class FallbackPolicy:
    entity: str
    fallback_on_not_found: bool = False


RULES_POLICY = FallbackPolicy(entity="availability_rules", fallback_on_not_found=True)
# Reservations never fall back on a plain miss: a lookup for an unknown id must stay unknown.
RESERVATIONS_POLICY = FallbackPolicy(entity="reservations", fallback_on_not_found=False)
BLACKLIST_POLICY = FallbackPolicy(entity="blacklist_entries", fallback_on_not_found=False)
NOTIFICATIONS_POLICY = FallbackPolicy(entity="meeting_notifications", fallback_on_not_found=False)


def should_fallback(exc: BaseException, policy: FallbackPolicy) -> bool:
    if isinstance(exc, NotFoundError):
        return policy.fallback_on_not_found
    if isinstance(exc, (SchemaMissingError, AccessDeniedError, StoreUnavailableError)):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).lower()
        return any(marker in message for marker in _RAW_STORE_MISSING_MARKERS)
    return False


class ResilientStoreSelector:
    def __init__(self, primary: Any, fallback: Any, port: type, policy: FallbackPolicy) -> None:
        for role, store in (("primary", primary), ("fallback", fallback)):
            if not isinstance(store, port):
                raise TypeError(
                    f"{policy.entity} {role} store {type(store).__name__} does not implement {port.__name__}"
                )
        self._primary = primary
        self._fallback = fallback
        self._policy = policy

    @property
    def policy(self) -> FallbackPolicy:
        return self._policy

    async def call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await getattr(self._primary, operation)(*args, **kwargs)
        except Exception as e:
            if not should_fallback(e, self._policy):
                raise
            logger.warning(
                "Primary store unavailable, serving from in-memory fallback",
                extra={
                    "entity": self._policy.entity,
                    "operation": operation,
                    "reason": type(e).__name__,
                },
            )
            return await getattr(self._fallback, operation)(*args, **kwargs)


class ResilientAvailabilityRuleStore(AvailabilityRuleAdminRepository):
    def __init__(
        self,
        primary: AvailabilityRuleAdminRepository,
        fallback: AvailabilityRuleAdminRepository,
        policy: FallbackPolicy = RULES_POLICY,
    ) -> None:
        self._selector = ResilientStoreSelector(primary, fallback, AvailabilityRuleAdminRepository, policy)

    async def list_rules(self, owner_id: str) -> list[AvailabilityRule]:
        return await self._selector.call("list_rules", owner_id)

    async def upsert_rule(self, rule: AvailabilityRule) -> AvailabilityRule:
        return await self._selector.call("upsert_rule", rule)

    async def delete_rule(self, owner_id: str, rule_id: str) -> None:
        await self._selector.call("delete_rule", owner_id, rule_id)


class ResilientReservationStore(ReservationRepository):
    def __init__(
        self,
        primary: ReservationRepository,
        fallback: ReservationRepository,
        policy: FallbackPolicy = RESERVATIONS_POLICY,
    ) -> None:
        self._selector = ResilientStoreSelector(primary, fallback, ReservationRepository, policy)

    async def insert_pending(self, reservation: Reservation) -> Reservation:
        return await self._selector.call("insert_pending", reservation)

    async def get(self, reservation_id: str) -> Reservation:
        return await self._selector.call("get", reservation_id)

    async def find_by_lookup_hash(self, lookup_hash: str) -> Reservation:
        return await self._selector.call("find_by_lookup_hash", lookup_hash)

    async def list_active(self, owner_id: str, start: datetime, end: datetime) -> list[Reservation]:
        return await self._selector.call("list_active", owner_id, start, end)

    async def list_reservations(
        self,
        owner_id: str,
        statuses: Iterable[ReservationStatus] | None = None,
    ) -> list[Reservation]:
        return await self._selector.call("list_reservations", owner_id, statuses)

    async def update_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        *,
        external_event_id: str | None = None,
        meet_url: str | None = None,
        reason: str = "",
    ) -> Reservation:
        return await self._selector.call(
            "update_status",
            reservation_id,
            status,
            external_event_id=external_event_id,
            meet_url=meet_url,
            reason=reason,
        )


class ResilientBlacklistStore(BlacklistRepository):
    def __init__(
        self,
        primary: BlacklistRepository,
        fallback: BlacklistRepository,
        policy: FallbackPolicy = BLACKLIST_POLICY,
    ) -> None:
        self._selector = ResilientStoreSelector(primary, fallback, BlacklistRepository, policy)

    async def find_by_email(self, email: str) -> BlacklistEntry:
        return await self._selector.call("find_by_email", email)

    async def list_entries(self) -> list[BlacklistEntry]:
        return await self._selector.call("list_entries")

    async def add_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        return await self._selector.call("add_entry", entry)

    async def remove_entry(self, entry_id: int) -> None:
        await self._selector.call("remove_entry", entry_id)


class ResilientNotificationStore(NotificationRepository):
    def __init__(
        self,
        primary: NotificationRepository,
        fallback: NotificationRepository,
        policy: FallbackPolicy = NOTIFICATIONS_POLICY,
    ) -> None:
        self._selector = ResilientStoreSelector(primary, fallback, NotificationRepository, policy)

    async def record(self, notification: MeetingNotification) -> MeetingNotification:
        return await self._selector.call("record", notification)

    async def list_for_reservation(self, reservation_id: str) -> list[MeetingNotification]:
        return await self._selector.call("list_for_reservation", reservation_id)
