from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime

from meetbook.domain.entities.reservation import Reservation, ReservationStatus


class ReservationRepository(ABC):
    @abstractmethod
    async def insert_pending(self, reservation: Reservation) -> Reservation:
        """
        Atomically insert a pending reservation.
        Raises DuplicateError when an active reservation holds the identical window,
        ConflictError when an active reservation of the same owner overlaps it.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, reservation_id: str) -> Reservation:
        """Raises NotFoundError when the id is unknown."""
        raise NotImplementedError

    @abstractmethod
    async def find_by_lookup_hash(self, lookup_hash: str) -> Reservation:
        """Raises NotFoundError when the hash is unknown."""
        raise NotImplementedError

    @abstractmethod
    async def list_active(self, owner_id: str, start: datetime, end: datetime) -> list[Reservation]:
        """List pending/confirmed reservations of an owner overlapping [start, end)."""
        raise NotImplementedError

    @abstractmethod
    async def list_reservations(
        self,
        owner_id: str,
        statuses: Iterable[ReservationStatus] | None = None,
    ) -> list[Reservation]:
        """List reservations of an owner, newest start first."""
        raise NotImplementedError

    @abstractmethod
    async def update_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        *,
        external_event_id: str | None = None,
        meet_url: str | None = None,
        reason: str = "",
    ) -> Reservation:
        """Transition a reservation. Raises NotFoundError / InvalidInputError."""
        raise NotImplementedError
