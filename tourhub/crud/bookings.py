import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from .. import models, schemas
from ..exceptions import BadRequestError, ForbiddenError, NotFoundError
from ..pagination import PageParams, paginate
from . import outbox
from .reviews import recompute_ratings

logger = logging.getLogger("tourhub")


# --- Capacity ---

def confirmed_participants(db: Session, tour_id: int, exclude_booking_id: Optional[int] = None) -> int:
    query = db.query(func.coalesce(func.sum(models.Booking.number_of_people), 0)).filter(
        models.Booking.tour_id == tour_id,
        models.Booking.status == models.BookingStatus.CONFIRMED,
    )
    if exclude_booking_id is not None:
        query = query.filter(models.Booking.id != exclude_booking_id)
    return int(query.scalar())


def reserve_seats(db: Session, tour_id: int, seats: int) -> bool:
    """
    Increments the tour's group size only if it stays within max_group_size.
    A single conditional UPDATE, so two concurrent reservations for the last
    seats cannot both succeed. Returns False when the tour is full.
    Note: Does NOT commit.
    """
    stmt = (
        update(models.Tour)
        .where(
            models.Tour.id == tour_id,
            models.Tour.current_group_size + seats <= models.Tour.max_group_size,
        )
        .values(current_group_size=models.Tour.current_group_size + seats)
        .execution_options(synchronize_session=False)
    )
    reserved = db.execute(stmt).rowcount == 1
    _expire_group_size(db, tour_id)
    return reserved


def release_seats(db: Session, tour_id: int, seats: int) -> None:
    """Gives seats back, never going below zero. Does NOT commit."""
    stmt = (
        update(models.Tour)
        .where(models.Tour.id == tour_id)
        .values(current_group_size=case(
            (models.Tour.current_group_size >= seats, models.Tour.current_group_size - seats),
            else_=0,
        ))
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    _expire_group_size(db, tour_id)


def _expire_group_size(db: Session, tour_id: int) -> None:
    tour = db.get(models.Tour, tour_id)
    if tour is not None:
        db.expire(tour, ["current_group_size"])


def _available_seats(db: Session, tour: models.Tour) -> int:
    db.refresh(tour, ["current_group_size"])
    return max(tour.max_group_size - tour.current_group_size, 0)


# --- Creation ---

def create_booking(db: Session, user: models.User, data: schemas.BookingCreate) -> models.Booking:
    """
    Creates a booking for the tourist.

    Stripe bookings start PENDING and are confirmed by payment settlement.
    Cash-on-delivery bookings are confirmed right away: the seats are reserved
    and a PENDING COD payment is recorded in the same transaction.
    """
    tourist = user.tourist
    if tourist is None:
        raise ForbiddenError("Only tourists can book tours")

    tour = db.get(models.Tour, data.tour_id)
    if tour is None:
        raise NotFoundError("Tour not found")
    if not tour.is_active:
        raise BadRequestError("This tour is not available for booking")
    if tour.start_date <= models.utcnow():
        raise BadRequestError("This tour has already started")

    existing = db.query(models.Booking).filter(
        models.Booking.user_id == user.id,
        models.Booking.tour_id == tour.id,
        models.Booking.status.in_([models.BookingStatus.PENDING, models.BookingStatus.CONFIRMED]),
    ).first()
    if existing is not None:
        raise BadRequestError("You already have a booking for this tour")

    booked = confirmed_participants(db, tour.id)
    if booked + data.number_of_people > tour.max_group_size:
        available = max(tour.max_group_size - booked, 0)
        raise BadRequestError(f"Only {available} spots available for this tour")

    total_amount = data.total_amount
    if total_amount is None:
        total_amount = Decimal(tour.price) * data.number_of_people

    is_cod = data.payment_method == models.PaymentMethod.COD
    db_booking = models.Booking(
        tour_id=tour.id,
        user_id=user.id,
        tourist_id=tourist.id,
        number_of_people=data.number_of_people,
        total_amount=total_amount,
        special_requests=data.special_requests,
        payment_method=data.payment_method,
        status=models.BookingStatus.CONFIRMED if is_cod else models.BookingStatus.PENDING,
        payment_status=models.PaymentStatus.PENDING,
        is_reviewed=False,
    )
    db.add(db_booking)
    db.flush()
    outbox.add_booking_event(db, "booking.created", db_booking)

    if is_cod:
        if not reserve_seats(db, tour.id, data.number_of_people):
            db.rollback()
            raise BadRequestError(f"Only {_available_seats(db, tour)} spots available for this tour")
        db.add(models.Payment(
            user_id=user.id,
            booking_id=db_booking.id,
            amount=total_amount,
            payment_method=models.PaymentMethod.COD,
            status=models.PaymentStatus.PENDING,
            description=f"Cash on delivery for booking #{db_booking.id}",
        ))
        outbox.add_booking_event(db, "booking.confirmed", db_booking)

    db.commit()
    db.refresh(db_booking)
    logger.info(f"Booking {db_booking.id} created for tour {tour.id} by user {user.id}")
    return db_booking


# --- Reads ---

def _apply_filters(
        query,
        status: Optional[models.BookingStatus] = None,
        payment_status: Optional[models.PaymentStatus] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        start_date: Optional[datetime.datetime] = None,
        end_date: Optional[datetime.datetime] = None,
):
    if status is not None:
        query = query.filter(models.Booking.status == status)
    if payment_status is not None:
        query = query.filter(models.Booking.payment_status == payment_status)
    if min_price is not None:
        query = query.filter(models.Booking.total_amount >= min_price)
    if max_price is not None:
        query = query.filter(models.Booking.total_amount <= max_price)
    if start_date is not None:
        query = query.filter(models.Booking.booking_date >= start_date)
    if end_date is not None:
        query = query.filter(models.Booking.booking_date <= end_date)
    return query


def get_my_bookings(db: Session, user: models.User, params: PageParams, **filters):
    query = db.query(models.Booking).filter(models.Booking.user_id == user.id)
    return paginate(_apply_filters(query, **filters), params, models.Booking)


def get_host_bookings(db: Session, host: models.Host, params: PageParams, **filters):
    query = db.query(models.Booking).join(models.Tour).filter(models.Tour.host_id == host.id)
    return paginate(_apply_filters(query, **filters), params, models.Booking)


def get_all_bookings(db: Session, params: PageParams, **filters):
    return paginate(_apply_filters(db.query(models.Booking), **filters), params, models.Booking)


def get_booking(db: Session, booking_id: int) -> models.Booking:
    db_booking = db.get(models.Booking, booking_id)
    if db_booking is None:
        raise NotFoundError("Booking not found")
    return db_booking


def _is_tour_host(user: models.User, booking: models.Booking) -> bool:
    return user.host is not None and booking.tour.host_id == user.host.id


def get_booking_for_user(db: Session, booking_id: int, user: models.User) -> models.Booking:
    db_booking = get_booking(db, booking_id)
    if (
            user.role != models.UserRole.ADMIN
            and db_booking.user_id != user.id
            and not _is_tour_host(user, db_booking)
    ):
        raise ForbiddenError("You do not have access to this booking")
    return db_booking


def get_payment_info(db: Session, booking_id: int, user: models.User) -> schemas.BookingPaymentInfo:
    db_booking = get_booking(db, booking_id)
    if db_booking.user_id != user.id and user.role != models.UserRole.ADMIN:
        raise ForbiddenError("You can only view payment info for your own bookings")

    payment = db.query(models.Payment).filter(
        models.Payment.booking_id == db_booking.id,
        models.Payment.status.in_([*models.LIVE_PAYMENT_STATUSES, models.PaymentStatus.COMPLETED]),
    ).order_by(models.Payment.id.desc()).first()

    is_paid = db_booking.payment_status == models.PaymentStatus.COMPLETED
    can_pay = (
            db_booking.status == models.BookingStatus.PENDING
            and db_booking.payment_method == models.PaymentMethod.STRIPE
            and not is_paid
    )
    return schemas.BookingPaymentInfo(
        booking_id=db_booking.id,
        total_amount=db_booking.total_amount,
        status=db_booking.status,
        payment_status=db_booking.payment_status,
        payment_method=db_booking.payment_method,
        is_paid=is_paid,
        can_pay=can_pay,
        payment=payment,
    )


def _status_counts(query) -> dict:
    rows = query.with_entities(models.Booking.status, func.count(models.Booking.id)).group_by(
        models.Booking.status
    ).all()
    counts = {status: 0 for status in models.BookingStatus}
    for status, count in rows:
        counts[status] = count
    return counts


def host_booking_stats(db: Session, host: models.Host) -> schemas.HostBookingStats:
    base = db.query(models.Booking).join(models.Tour).filter(models.Tour.host_id == host.id)
    counts = _status_counts(base)
    revenue = base.filter(
        models.Booking.payment_status == models.PaymentStatus.COMPLETED
    ).with_entities(func.coalesce(func.sum(models.Booking.total_amount), 0)).scalar()
    upcoming = base.filter(
        models.Booking.status == models.BookingStatus.CONFIRMED,
        models.Tour.start_date > models.utcnow(),
    ).count()
    return schemas.HostBookingStats(
        total_bookings=sum(counts.values()),
        pending=counts[models.BookingStatus.PENDING],
        confirmed=counts[models.BookingStatus.CONFIRMED],
        cancelled=counts[models.BookingStatus.CANCELLED],
        completed=counts[models.BookingStatus.COMPLETED],
        total_revenue=revenue,
        upcoming_bookings=upcoming,
    )


def tourist_booking_stats(db: Session, user: models.User) -> schemas.TouristBookingStats:
    base = db.query(models.Booking).filter(models.Booking.user_id == user.id)
    counts = _status_counts(base)
    spent = base.filter(
        models.Booking.payment_status == models.PaymentStatus.COMPLETED
    ).with_entities(func.coalesce(func.sum(models.Booking.total_amount), 0)).scalar()
    upcoming = base.join(models.Tour).filter(
        models.Booking.status == models.BookingStatus.CONFIRMED,
        models.Tour.start_date > models.utcnow(),
    ).count()
    return schemas.TouristBookingStats(
        total_bookings=sum(counts.values()),
        pending=counts[models.BookingStatus.PENDING],
        confirmed=counts[models.BookingStatus.CONFIRMED],
        cancelled=counts[models.BookingStatus.CANCELLED],
        completed=counts[models.BookingStatus.COMPLETED],
        total_spent=spent,
        upcoming_trips=upcoming,
    )


# --- Updates ---

def update_booking(
        db: Session, booking_id: int, user: models.User, data: schemas.BookingUpdate
) -> models.Booking:
    db_booking = get_booking(db, booking_id)
    if db_booking.user_id != user.id and user.role != models.UserRole.ADMIN:
        raise ForbiddenError("You can only update your own bookings")
    if db_booking.status in models.TERMINAL_BOOKING_STATUSES:
        raise BadRequestError("Cannot update a cancelled or completed booking")

    changes = data.model_dump(exclude_unset=True)
    if "special_requests" in changes:
        db_booking.special_requests = changes["special_requests"]

    new_count = changes.get("number_of_people")
    if new_count is not None and new_count != db_booking.number_of_people:
        _change_participants(db, db_booking, new_count)

    db.commit()
    db.refresh(db_booking)
    return db_booking


def _change_participants(db: Session, booking: models.Booking, new_count: int) -> None:
    if booking.payment_status == models.PaymentStatus.COMPLETED:
        raise BadRequestError("Cannot change the number of people on a paid booking")

    tour = booking.tour
    delta = new_count - booking.number_of_people

    if booking.status == models.BookingStatus.CONFIRMED:
        if delta > 0:
            if not reserve_seats(db, tour.id, delta):
                available = _available_seats(db, tour)
                db.rollback()
                raise BadRequestError(f"Only {available} spots available for this tour")
        else:
            release_seats(db, tour.id, -delta)
    else:
        booked = confirmed_participants(db, tour.id)
        if booked + new_count > tour.max_group_size:
            raise BadRequestError(
                f"Only {max(tour.max_group_size - booked, 0)} spots available for this tour"
            )

    booking.number_of_people = new_count
    booking.total_amount = Decimal(tour.price) * new_count

    for payment in booking.payments:
        if payment.status not in models.LIVE_PAYMENT_STATUSES:
            continue
        if payment.payment_method == models.PaymentMethod.COD:
            payment.amount = booking.total_amount
        else:
            # The open checkout was created for the old amount
            payment.status = models.PaymentStatus.CANCELLED
            payment.failure_reason = "Booking amount changed"
    if booking.payment_status == models.PaymentStatus.PROCESSING:
        booking.payment_status = models.PaymentStatus.PENDING


def cancel(db: Session, booking: models.Booking, reason: Optional[str] = None) -> None:
    """
    Moves a PENDING or CONFIRMED booking to CANCELLED.
    A CONFIRMED booking gives its seats back; in-flight payments are cancelled.
    Note: Does NOT commit.
    """
    if booking.status == models.BookingStatus.CANCELLED:
        raise BadRequestError("Booking is already cancelled")
    if booking.status == models.BookingStatus.COMPLETED:
        raise BadRequestError("Cannot cancel a completed booking")

    if booking.status == models.BookingStatus.CONFIRMED:
        release_seats(db, booking.tour_id, booking.number_of_people)

    for payment in booking.payments:
        if payment.status in models.LIVE_PAYMENT_STATUSES:
            payment.status = models.PaymentStatus.CANCELLED
            payment.failure_reason = "Booking cancelled"

    booking.status = models.BookingStatus.CANCELLED
    if booking.payment_status in models.LIVE_PAYMENT_STATUSES:
        booking.payment_status = models.PaymentStatus.CANCELLED
    outbox.add_booking_event(db, "booking.cancelled", booking, reason=reason)


def cancel_booking(db: Session, booking_id: int, user: models.User) -> models.Booking:
    db_booking = get_booking(db, booking_id)
    if db_booking.user_id != user.id and user.role != models.UserRole.ADMIN:
        raise ForbiddenError("You can only cancel your own bookings")
    cancel(db, db_booking, reason=f"Cancelled by user {user.id}")
    db.commit()
    db.refresh(db_booking)
    logger.info(f"Booking {booking_id} cancelled by user {user.id}")
    return db_booking


def complete(db: Session, booking: models.Booking) -> None:
    """Note: Does NOT commit."""
    booking.status = models.BookingStatus.COMPLETED
    outbox.add_booking_event(db, "booking.completed", booking)


def update_booking_status(
        db: Session, booking_id: int, user: models.User, status: models.BookingStatus
) -> models.Booking:
    """
    Host/admin status change. Only CANCELLED and COMPLETED can be requested:
    CONFIRMED is reached through payment settlement or cash on delivery.
    """
    db_booking = get_booking(db, booking_id)
    if user.role != models.UserRole.ADMIN and not _is_tour_host(user, db_booking):
        raise ForbiddenError("You can only manage bookings for your own tours")

    if status == models.BookingStatus.CANCELLED:
        cancel(db, db_booking, reason=f"Cancelled by user {user.id}")
    elif status == models.BookingStatus.COMPLETED:
        if db_booking.status != models.BookingStatus.CONFIRMED:
            raise BadRequestError("Only confirmed bookings can be completed")
        if models.utcnow() < db_booking.tour.end_date:
            raise BadRequestError("Cannot complete booking before tour ends")
        complete(db, db_booking)
    else:
        raise BadRequestError("Booking status can only be changed to CANCELLED or COMPLETED")

    db.commit()
    db.refresh(db_booking)
    logger.info(f"Booking {booking_id} moved to {status.value} by user {user.id}")
    return db_booking


def delete_booking(db: Session, booking_id: int) -> None:
    db_booking = get_booking(db, booking_id)
    if db_booking.status == models.BookingStatus.CONFIRMED:
        release_seats(db, db_booking.tour_id, db_booking.number_of_people)

    review = db.query(models.Review).filter(models.Review.booking_id == db_booking.id).first()
    if review is not None:
        db.delete(review)
        db.flush()
        recompute_ratings(db, review.tour_id, review.host_id)

    for payment in list(db_booking.payments):
        db.delete(payment)
    db.delete(db_booking)
    db.commit()
    logger.info(f"Booking {booking_id} deleted")
