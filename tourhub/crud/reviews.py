import logging
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from .. import models, schemas
from ..exceptions import BadRequestError, ForbiddenError, NotFoundError
from ..pagination import PageParams, paginate

logger = logging.getLogger("tourhub")


def _rating_aggregate(db: Session, column, value):
    average, total = db.query(
        func.coalesce(func.avg(models.Review.rating), 0),
        func.count(models.Review.id),
    ).filter(
        column == value,
        models.Review.is_approved.is_(True),
        models.Review.is_deleted.is_(False),
    ).one()
    return round(float(average), 2), int(total)


def recompute_ratings(db: Session, tour_id: int, host_id: int) -> None:
    """
    Recomputes the denormalized rating of a tour and its host from every
    approved, non-deleted review. Note: Does NOT commit.
    """
    average, total = _rating_aggregate(db, models.Review.tour_id, tour_id)
    db.execute(
        update(models.Tour)
        .where(models.Tour.id == tour_id)
        .values(average_rating=average, total_reviews=total)
        .execution_options(synchronize_session=False)
    )

    average, total = _rating_aggregate(db, models.Review.host_id, host_id)
    db.execute(
        update(models.Host)
        .where(models.Host.id == host_id)
        .values(average_rating=average, total_reviews=total)
        .execution_options(synchronize_session=False)
    )

    for model, key in ((models.Tour, tour_id), (models.Host, host_id)):
        instance = db.get(model, key)
        if instance is not None:
            db.expire(instance, ["average_rating", "total_reviews"])


def create_review(db: Session, user: models.User, data: schemas.ReviewCreate) -> models.Review:
    booking = db.get(models.Booking, data.booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if booking.user_id != user.id:
        raise ForbiddenError("You can only review your own bookings")
    if booking.status != models.BookingStatus.COMPLETED:
        raise BadRequestError("You can only review completed tours")

    review = db.query(models.Review).filter(models.Review.booking_id == booking.id).first()
    if review is not None and not review.is_deleted:
        raise BadRequestError("You have already reviewed this booking")

    if review is None:
        review = models.Review(
            booking_id=booking.id,
            tour_id=booking.tour_id,
            host_id=booking.tour.host_id,
            tourist_id=booking.tourist_id,
        )
        db.add(review)

    # A soft-deleted review is written over, one row per booking
    review.rating = data.rating
    review.comment = data.comment
    review.is_approved = False
    review.is_deleted = False
    booking.is_reviewed = True
    db.flush()

    recompute_ratings(db, review.tour_id, review.host_id)
    db.commit()
    db.refresh(review)
    logger.info(f"Review {review.id} created for booking {booking.id}")
    return review


def _visible(db: Session):
    return db.query(models.Review).filter(
        models.Review.is_approved.is_(True),
        models.Review.is_deleted.is_(False),
    )


def list_reviews(
        db: Session,
        params: PageParams,
        tour_id: Optional[int] = None,
        host_id: Optional[int] = None,
        rating: Optional[int] = None,
):
    query = _visible(db)
    if tour_id is not None:
        query = query.filter(models.Review.tour_id == tour_id)
    if host_id is not None:
        query = query.filter(models.Review.host_id == host_id)
    if rating is not None:
        query = query.filter(models.Review.rating == rating)
    return paginate(query, params, models.Review)


def get_tour_reviews(db: Session, tour_id: int, params: PageParams) -> schemas.TourReviews:
    tour = db.get(models.Tour, tour_id)
    if tour is None:
        raise NotFoundError("Tour not found")

    items, meta = list_reviews(db, params, tour_id=tour_id)
    rows = _visible(db).filter(models.Review.tour_id == tour_id).with_entities(
        models.Review.rating, func.count(models.Review.id)
    ).group_by(models.Review.rating).all()
    distribution = {star: 0 for star in range(1, 6)}
    for star, count in rows:
        distribution[star] = count

    return schemas.TourReviews(
        meta=meta,
        data=items,
        average_rating=tour.average_rating,
        total_reviews=tour.total_reviews,
        rating_distribution=distribution,
    )


def get_host_reviews(db: Session, host_id: int, params: PageParams):
    if db.get(models.Host, host_id) is None:
        raise NotFoundError("Host not found")
    return list_reviews(db, params, host_id=host_id)


def get_my_reviews(db: Session, user: models.User, params: PageParams):
    if user.tourist is None:
        raise ForbiddenError("Only tourists have reviews")
    query = db.query(models.Review).filter(
        models.Review.tourist_id == user.tourist.id,
        models.Review.is_deleted.is_(False),
    )
    return paginate(query, params, models.Review)


def get_review(db: Session, review_id: int) -> models.Review:
    review = db.get(models.Review, review_id)
    if review is None or review.is_deleted:
        raise NotFoundError("Review not found")
    return review


def _check_owner_or_admin(review: models.Review, user: models.User) -> None:
    if user.role == models.UserRole.ADMIN:
        return
    if user.tourist is None or review.tourist_id != user.tourist.id:
        raise ForbiddenError("You can only modify your own reviews")


def update_review(
        db: Session, review_id: int, user: models.User, data: schemas.ReviewUpdate
) -> models.Review:
    review = get_review(db, review_id)
    _check_owner_or_admin(review, user)

    changes = {
        key: value for key, value in data.model_dump(exclude_unset=True).items()
        if value is not None or key == "comment"
    }
    if "is_approved" in changes and user.role != models.UserRole.ADMIN:
        raise ForbiddenError("Only admins can approve reviews")

    approval_changed = "is_approved" in changes and changes["is_approved"] != review.is_approved

    for key, value in changes.items():
        setattr(review, key, value)
    db.flush()

    # Rating edits wait for the next approval change to count
    if approval_changed:
        recompute_ratings(db, review.tour_id, review.host_id)

    db.commit()
    db.refresh(review)
    return review


def delete_review(db: Session, review_id: int, user: models.User) -> None:
    """Soft delete; the booking can be reviewed again afterwards."""
    review = get_review(db, review_id)
    _check_owner_or_admin(review, user)

    review.is_deleted = True
    review.booking.is_reviewed = False
    db.flush()

    recompute_ratings(db, review.tour_id, review.host_id)
    db.commit()
    logger.info(f"Review {review_id} deleted by user {user.id}")
