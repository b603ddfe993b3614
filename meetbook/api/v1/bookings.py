import logging
from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query

from meetbook.api.v1.schemas import (
    AvailabilityResponseSchema,
    NotificationListResponseSchema,
    NotificationSchema,
    ReservationListResponseSchema,
    ReservationRequestSchema,
    ReservationSchema,
    SlotSchema,
    SlotsResponseSchema,
)
from meetbook.application.exceptions import (
    AvailabilityUnavailable,
    BookingConfirmationFailed,
    BookingError,
    CredentialUnavailable,
    GatewayUnavailable,
    InvalidInput,
    PersistenceUnavailable,
    RequesterBlocked,
    ReservationNotFound,
    SlotUnavailable,
)
from meetbook.application.use_cases.availability import AvailabilityUseCase
from meetbook.application.use_cases.booking import BookingUseCase
from meetbook.core.config import settings
from meetbook.domain.entities.reservation import Requester, ReservationStatus
from meetbook.domain.entities.time_window import TimeWindow
from meetbook.wiring.dependencies import get_availability_use_case, get_booking_use_case

router = APIRouter()
logger = logging.getLogger(__name__)


def _http_error(e: BookingError) -> HTTPException:
    if isinstance(e, InvalidInput):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, RequesterBlocked):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ReservationNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SlotUnavailable):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, BookingConfirmationFailed):
        return HTTPException(status_code=502, detail={"message": str(e), "reservation_id": e.reservation_id})
    if isinstance(e, (CredentialUnavailable, GatewayUnavailable, AvailabilityUnavailable, PersistenceUnavailable)):
        return HTTPException(status_code=503, detail=str(e))
    logger.error("Unmapped booking error", extra={"error": str(e)})
    return HTTPException(status_code=500, detail="internal error")


@router.get("/owners/{owner_id}/slots", response_model=SlotsResponseSchema)
async def list_slots(
    owner_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    uc: AvailabilityUseCase = Depends(get_availability_use_case),
):
    try:
        slots = await uc.compute_slots(owner_id, start, end)
    except BookingError as e:
        raise _http_error(e)

    return SlotsResponseSchema(owner_id=owner_id, slots=[SlotSchema.from_slot(s) for s in slots])


@router.get("/owners/{owner_id}/availability", response_model=AvailabilityResponseSchema)
async def get_availability(
    owner_id: str,
    start_date: date | None = Query(None),
    days: int | None = Query(None, ge=1, le=62),
    uc: AvailabilityUseCase = Depends(get_availability_use_case),
):
    try:
        availability = await uc.get_availability(
            owner_id,
            start_date=start_date,
            days=days,
            minimum_lead=timedelta(minutes=settings.MINIMUM_LEAD_MINUTES),
        )
    except BookingError as e:
        raise _http_error(e)

    return AvailabilityResponseSchema.from_availability(owner_id, availability)


@router.post("/owners/{owner_id}/reservations", response_model=ReservationSchema, status_code=201)
async def create_reservation(
    owner_id: str,
    req: ReservationRequestSchema,
    uc: BookingUseCase = Depends(get_booking_use_case),
):
    try:
        window = TimeWindow(req.start, req.end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        reservation = await uc.reserve(
            owner_id,
            Requester(
                name=req.requester.name,
                email=req.requester.email,
                topic=req.requester.topic,
                agenda=req.requester.agenda,
            ),
            window,
        )
    except BookingError as e:
        raise _http_error(e)

    return ReservationSchema.from_reservation(reservation)


@router.get("/owners/{owner_id}/reservations", response_model=ReservationListResponseSchema)
async def list_reservations(
    owner_id: str,
    status: list[ReservationStatus] | None = Query(None),
    uc: BookingUseCase = Depends(get_booking_use_case),
):
    try:
        reservations = await uc.list_reservations(owner_id, status)
    except BookingError as e:
        raise _http_error(e)

    return ReservationListResponseSchema(
        owner_id=owner_id,
        reservations=[ReservationSchema.from_reservation(r) for r in reservations],
    )


@router.get("/reservations/{lookup_hash}", response_model=ReservationSchema)
async def lookup_reservation(
    lookup_hash: str,
    uc: BookingUseCase = Depends(get_booking_use_case),
):
    try:
        reservation = await uc.lookup(lookup_hash)
    except BookingError as e:
        raise _http_error(e)

    return ReservationSchema.from_reservation(reservation)


@router.delete("/reservations/{reservation_id}", response_model=ReservationSchema)
async def cancel_reservation(
    reservation_id: str,
    reason: str = Query("", max_length=500),
    uc: BookingUseCase = Depends(get_booking_use_case),
):
    try:
        reservation = await uc.cancel(reservation_id, reason=reason)
    except BookingError as e:
        raise _http_error(e)

    return ReservationSchema.from_reservation(reservation)


@router.get("/reservations/{reservation_id}/notifications", response_model=NotificationListResponseSchema)
async def list_notifications(
    reservation_id: str,
    uc: BookingUseCase = Depends(get_booking_use_case),
):
    try:
        notifications = await uc.list_notifications(reservation_id)
    except BookingError as e:
        raise _http_error(e)

    return NotificationListResponseSchema(
        reservation_id=reservation_id,
        notifications=[NotificationSchema.from_notification(n) for n in notifications],
    )
