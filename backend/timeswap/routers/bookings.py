from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, Query

from timeswap.auth import assert_actor_authorized
from timeswap.errors import ExchangeError
from timeswap.models import Booking, BookingRequest, BookingStatusUpdateRequest, Property, PropertyRegisterRequest
from timeswap.routers.http_errors import raise_http_error
from timeswap.services.exchange_store import exchange_store
from timeswap.services.notification_store import notification_store

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("/properties", response_model=Property)
def register_property(request: PropertyRegisterRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.host_user_id, authorization=authorization)
    try:
        return exchange_store.register_property(request.property_id, request.host_user_id, request.name)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.post("", response_model=Booking, status_code=201)
def create_booking(
    request: BookingRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.guest_user_id, authorization=authorization)
    try:
        booking = exchange_store.create_booking(request)
    except ExchangeError as exc:
        raise_http_error(exc)
    background_tasks.add_task(
        notification_store.notify_parties,
        recipients=[booking.host_user_id],
        actor_user_id=booking.guest_user_id,
        title="New booking request",
        body=f"{booking.guest_user_id} requested {booking.interval.start:%Y-%m-%d} to {booking.interval.end:%Y-%m-%d}",
        category="booking",
        related_id=booking.id,
        related_type="booking",
    )
    return booking


@router.get("", response_model=list[Booking])
def list_bookings(
    user_id: Optional[str] = Query(default=None),
    role: Optional[str] = Query(default=None),
):
    try:
        return exchange_store.list_bookings(user_id=user_id, role=role)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.post("/{booking_id}/status", response_model=Booking)
def update_booking_status(
    booking_id: str,
    request: BookingStatusUpdateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        booking = exchange_store.update_booking_status(booking_id=booking_id, update=request)
    except ExchangeError as exc:
        raise_http_error(exc)
    background_tasks.add_task(
        notification_store.notify_parties,
        recipients=[booking.guest_user_id, booking.host_user_id],
        actor_user_id=request.actor_user_id,
        title="Booking updated",
        body=f"Booking {booking.id} is now {booking.status}",
        category="booking",
        related_id=booking.id,
        related_type="booking",
    )
    return booking
