import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import models, schemas
from ..exceptions import BadRequestError, ForbiddenError, NotFoundError
from ..pagination import PageParams, paginate, search_filter
from . import bookings, subscriptions

logger = logging.getLogger("tourhub")


def create_tour(db: Session, host: models.Host, data: schemas.TourCreate) -> models.Tour:
    subscriptions.take_tour_slot(db, host)

    db_tour = models.Tour(
        host_id=host.id,
        current_group_size=0,
        is_active=True,
        is_featured=False,
        **data.model_dump(),
    )
    db.add(db_tour)
    db.commit()
    db.refresh(db_tour)
    logger.info(f"Tour {db_tour.id} created by host {host.id}")
    return db_tour


def list_tours(
        db: Session,
        params: PageParams,
        search: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        start_date: Optional[datetime.datetime] = None,
        end_date: Optional[datetime.datetime] = None,
        category: Optional[str] = None,
        difficulty: Optional[str] = None,
        destination: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_featured: Optional[bool] = None,
        host_id: Optional[int] = None,
):
    query = db.query(models.Tour)
    condition = search_filter(
        search,
        models.Tour.title,
        models.Tour.description,
        models.Tour.destination,
        models.Tour.city,
        models.Tour.country,
        models.Tour.category,
    )
    if condition is not None:
        query = query.filter(condition)
    if min_price is not None:
        query = query.filter(models.Tour.price >= min_price)
    if max_price is not None:
        query = query.filter(models.Tour.price <= max_price)
    if start_date is not None:
        query = query.filter(models.Tour.start_date >= start_date)
    if end_date is not None:
        query = query.filter(models.Tour.end_date <= end_date)
    if category:
        query = query.filter(models.Tour.category == category)
    if difficulty:
        query = query.filter(models.Tour.difficulty == difficulty)
    if destination:
        query = query.filter(models.Tour.destination.ilike(f"%{destination}%"))
    if is_active is not None:
        query = query.filter(models.Tour.is_active.is_(is_active))
    if is_featured is not None:
        query = query.filter(models.Tour.is_featured.is_(is_featured))
    if host_id is not None:
        query = query.filter(models.Tour.host_id == host_id)
    return paginate(query, params, models.Tour)


def get_tour(db: Session, tour_id: int) -> models.Tour:
    db_tour = db.get(models.Tour, tour_id)
    if db_tour is None:
        raise NotFoundError("Tour not found")
    return db_tour


def view_tour(db: Session, tour_id: int) -> models.Tour:
    db_tour = get_tour(db, tour_id)
    db.execute(
        update(models.Tour)
        .where(models.Tour.id == tour_id)
        .values(views=models.Tour.views + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(db_tour)
    return db_tour


def _check_can_manage(tour: models.Tour, user: models.User) -> None:
    if user.role == models.UserRole.ADMIN:
        return
    if user.host is None or tour.host_id != user.host.id:
        raise ForbiddenError("You can only manage your own tours")


def update_tour(db: Session, tour_id: int, user: models.User, data: schemas.TourUpdate) -> models.Tour:
    db_tour = get_tour(db, tour_id)
    _check_can_manage(db_tour, user)

    changes = {
        key: value for key, value in data.model_dump(exclude_unset=True).items()
        if value is not None
    }
    if "is_featured" in changes and user.role != models.UserRole.ADMIN:
        raise ForbiddenError("Only admins can feature tours")

    start_date = changes.get("start_date", db_tour.start_date)
    end_date = changes.get("end_date", db_tour.end_date)
    if end_date <= start_date:
        raise BadRequestError("Tour end date must be after start date")
    if changes.get("max_group_size", db_tour.max_group_size) < db_tour.current_group_size:
        raise BadRequestError("Max group size cannot be lower than the number of confirmed participants")

    for key, value in changes.items():
        setattr(db_tour, key, value)
    db.commit()
    db.refresh(db_tour)
    return db_tour


def delete_tour(db: Session, tour_id: int, user: models.User) -> None:
    db_tour = get_tour(db, tour_id)
    _check_can_manage(db_tour, user)

    has_bookings = db.query(models.Booking.id).filter(models.Booking.tour_id == db_tour.id).first()
    if has_bookings is not None:
        raise BadRequestError("Cannot delete a tour that has bookings")

    subscriptions.release_tour_slot(db, db_tour.host)
    db.delete(db_tour)
    db.commit()
    logger.info(f"Tour {tour_id} deleted by user {user.id}")


def complete_tour(db: Session, tour_id: int, user: models.User) -> schemas.TourCompletion:
    """
    Completes every CONFIRMED booking of a finished tour and takes the tour
    off sale, in one transaction.
    """
    db_tour = get_tour(db, tour_id)
    _check_can_manage(db_tour, user)
    if models.utcnow() < db_tour.end_date:
        raise BadRequestError("Cannot complete tour before the end date")

    confirmed = db.query(models.Booking).filter(
        models.Booking.tour_id == db_tour.id,
        models.Booking.status == models.BookingStatus.CONFIRMED,
    ).all()
    for db_booking in confirmed:
        bookings.complete(db, db_booking)

    db_tour.is_active = False
    db.commit()
    logger.info(f"Tour {tour_id} completed, {len(confirmed)} bookings moved to COMPLETED")
    return schemas.TourCompletion(tour_id=db_tour.id, completed_bookings=len(confirmed))
