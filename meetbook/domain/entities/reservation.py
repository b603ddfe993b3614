from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from meetbook.domain.entities.time_window import TimeWindow


class ReservationStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def occupies_slot(self) -> bool:
        return self in (ReservationStatus.pending, ReservationStatus.confirmed)


ACTIVE_STATUSES = frozenset({ReservationStatus.pending, ReservationStatus.confirmed})


@dataclass(frozen=True)
class Requester:
    name: str
    email: str
    topic: str = ""
    agenda: str = ""


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    owner_id: str
    window: TimeWindow
    requester: Requester
    lookup_hash: str
    status: ReservationStatus = ReservationStatus.pending
    external_event_id: str | None = None
    meet_url: str | None = None
    cancellation_reason: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
