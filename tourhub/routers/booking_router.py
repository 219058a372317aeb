import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import (
    get_current_admin,
    get_current_host,
    get_current_tourist_user,
    get_current_user,
    require_roles,
)
from ..database import get_db
from ..pagination import PageParams
from ..rate_limits import booking_limiter, payment_limiter

router = APIRouter(prefix="/bookings", tags=["Bookings"])

get_booking_owner = require_roles(models.UserRole.TOURIST, models.UserRole.ADMIN)
get_booking_manager = require_roles(models.UserRole.HOST, models.UserRole.ADMIN)


class BookingFilters:
    def __init__(
            self,
            booking_status: Optional[models.BookingStatus] = Query(None, alias="status"),
            payment_status: Optional[models.PaymentStatus] = None,
            min_price: Optional[Decimal] = None,
            max_price: Optional[Decimal] = None,
            start_date: Optional[datetime.datetime] = None,
            end_date: Optional[datetime.datetime] = None,
    ):
        self.values = {
            "status": booking_status,
            "payment_status": payment_status,
            "min_price": min_price,
            "max_price": max_price,
            "start_date": schemas.to_naive_utc(start_date),
            "end_date": schemas.to_naive_utc(end_date),
        }


@router.post(
    "/",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_limiter)],
)
def create_booking(
        booking: schemas.BookingCreate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_tourist_user),
):
    """
    Create a new booking for the authenticated tourist.
    """
    return crud.bookings.create_booking(db, current_user, booking)


@router.get("/my-bookings", response_model=schemas.Page[schemas.BookingRead])
def read_my_bookings(
        filters: BookingFilters = Depends(),
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_tourist_user),
):
    items, meta = crud.bookings.get_my_bookings(db, current_user, params, **filters.values)
    return {"meta": meta, "data": items}


@router.get("/host-bookings", response_model=schemas.Page[schemas.BookingRead])
def read_host_bookings(
        filters: BookingFilters = Depends(),
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    items, meta = crud.bookings.get_host_bookings(db, host, params, **filters.values)
    return {"meta": meta, "data": items}


@router.get("/", response_model=schemas.Page[schemas.BookingRead])
def read_all_bookings(
        filters: BookingFilters = Depends(),
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    items, meta = crud.bookings.get_all_bookings(db, params, **filters.values)
    return {"meta": meta, "data": items}


@router.get("/stats/host", response_model=schemas.HostBookingStats)
def host_stats(db: Session = Depends(get_db), host: models.Host = Depends(get_current_host)):
    return crud.bookings.host_booking_stats(db, host)


@router.get("/stats/tourist", response_model=schemas.TouristBookingStats)
def tourist_stats(
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_tourist_user),
):
    return crud.bookings.tourist_booking_stats(db, current_user)


@router.get("/{booking_id}", response_model=schemas.BookingRead)
def read_booking(
        booking_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
):
    return crud.bookings.get_booking_for_user(db, booking_id, current_user)


@router.get("/{booking_id}/payment-info", response_model=schemas.BookingPaymentInfo)
def read_payment_info(
        booking_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_booking_owner),
):
    return crud.bookings.get_payment_info(db, booking_id, current_user)


@router.post(
    "/{booking_id}/pay",
    response_model=schemas.CheckoutResponse,
    dependencies=[Depends(payment_limiter)],
)
def pay_booking(
        booking_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_tourist_user),
):
    """
    Returns a Stripe Checkout URL for a pending booking.
    An open checkout session is reused instead of creating a second one.
    """
    return crud.payments.initiate_booking_payment(db, booking_id, current_user)


@router.patch("/{booking_id}", response_model=schemas.BookingRead)
def update_booking(
        booking_id: int,
        data: schemas.BookingUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_booking_owner),
):
    return crud.bookings.update_booking(db, booking_id, current_user, data)


@router.patch("/{booking_id}/status", response_model=schemas.BookingRead)
def update_booking_status(
        booking_id: int,
        data: schemas.BookingStatusUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_booking_manager),
):
    return crud.bookings.update_booking_status(db, booking_id, current_user, data.status)


@router.patch("/{booking_id}/cancel", response_model=schemas.BookingRead)
def cancel_booking(
        booking_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_booking_owner),
):
    return crud.bookings.cancel_booking(db, booking_id, current_user)


@router.delete("/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_booking(
        booking_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    crud.bookings.delete_booking(db, booking_id)
