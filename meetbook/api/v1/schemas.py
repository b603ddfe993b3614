from datetime import datetime
from pydantic import BaseModel, Field

from meetbook.domain.entities.notification import MeetingNotification, NotificationKind, NotificationStatus
from meetbook.domain.entities.reservation import Reservation, ReservationStatus
from meetbook.domain.entities.slot import Availability, Slot


class SlotSchema(BaseModel):
    slot_id: str
    start: datetime
    end: datetime
    rule_id: str

    @classmethod
    def from_slot(cls, slot: Slot) -> "SlotSchema":
        return cls(slot_id=slot.slot_id, start=slot.start, end=slot.end, rule_id=slot.rule_id)


class SlotsResponseSchema(BaseModel):
    owner_id: str
    slots: list[SlotSchema]


class AvailabilityDaySchema(BaseModel):
    date: str
    slots: list[SlotSchema]


class AvailabilityResponseSchema(BaseModel):
    owner_id: str
    timezone: str
    generated_at: datetime
    days: list[AvailabilityDaySchema]

    @classmethod
    def from_availability(cls, owner_id: str, availability: Availability) -> "AvailabilityResponseSchema":
        return cls(
            owner_id=owner_id,
            timezone=availability.timezone,
            generated_at=availability.generated_at,
            days=[
                AvailabilityDaySchema(date=day.date, slots=[SlotSchema.from_slot(s) for s in day.slots])
                for day in availability.days
            ],
        )


class RequesterSchema(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    topic: str = Field(default="", max_length=200)
    agenda: str = Field(default="", max_length=4000)


class ReservationRequestSchema(BaseModel):
    start: datetime
    end: datetime
    requester: RequesterSchema


class ReservationSchema(BaseModel):
    reservation_id: str
    owner_id: str
    start: datetime
    end: datetime
    status: ReservationStatus
    name: str
    email: str
    topic: str = ""
    lookup_hash: str
    external_event_id: str | None = None
    meet_url: str | None = None
    cancellation_reason: str = ""

    @classmethod
    def from_reservation(cls, reservation: Reservation) -> "ReservationSchema":
        return cls(
            reservation_id=reservation.reservation_id,
            owner_id=reservation.owner_id,
            start=reservation.window.start,
            end=reservation.window.end,
            status=reservation.status,
            name=reservation.requester.name,
            email=reservation.requester.email,
            topic=reservation.requester.topic,
            lookup_hash=reservation.lookup_hash,
            external_event_id=reservation.external_event_id,
            meet_url=reservation.meet_url,
            cancellation_reason=reservation.cancellation_reason,
        )


class ReservationListResponseSchema(BaseModel):
    owner_id: str
    reservations: list[ReservationSchema]


class NotificationSchema(BaseModel):
    notification_id: int | None = None
    kind: NotificationKind
    status: NotificationStatus
    error_message: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_notification(cls, notification: MeetingNotification) -> "NotificationSchema":
        return cls(
            notification_id=notification.notification_id,
            kind=notification.kind,
            status=notification.status,
            error_message=notification.error_message,
            created_at=notification.created_at,
        )


class NotificationListResponseSchema(BaseModel):
    reservation_id: str
    notifications: list[NotificationSchema]
