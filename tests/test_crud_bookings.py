from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from tourhub import crud, models, schemas
from tourhub.exceptions import BadRequestError, ForbiddenError

from conftest import make_booking, make_tour, make_user


# --- Seat reservation ---

def test_reserve_seats_within_capacity(db_session: Session, host_user):
    tour = make_tour(db_session, host_user.host, max_group_size=2)

    assert crud.bookings.reserve_seats(db_session, tour.id, 2) is True
    db_session.commit()

    assert tour.current_group_size == 2


def test_reserve_seats_never_overbooks(db_session: Session, host_user):
    """Two reservations racing for the last seats: only one fits."""
    tour = make_tour(db_session, host_user.host, max_group_size=3)

    first = crud.bookings.reserve_seats(db_session, tour.id, 2)
    second = crud.bookings.reserve_seats(db_session, tour.id, 2)
    db_session.commit()

    assert (first, second) == (True, False)
    assert tour.current_group_size == 2


def test_release_seats_never_goes_negative(db_session: Session, host_user):
    tour = make_tour(db_session, host_user.host, current_group_size=1)

    crud.bookings.release_seats(db_session, tour.id, 3)
    db_session.commit()

    assert tour.current_group_size == 0


def test_confirmed_participants_ignores_other_statuses(db_session: Session, host_user, tourist, other_tourist):
    tour = make_tour(db_session, host_user.host)
    make_booking(db_session, tourist, tour, people=2, status=models.BookingStatus.CONFIRMED)
    make_booking(db_session, other_tourist, tour, people=4)

    assert crud.bookings.confirmed_participants(db_session, tour.id) == 2


# --- Creation checks ---

def test_create_booking_requires_tourist_profile():
    mock_db = MagicMock(spec=Session)
    user = models.User(id=1, role=models.UserRole.HOST)

    with pytest.raises(ForbiddenError):
        crud.bookings.create_booking(mock_db, user, schemas.BookingCreate(tour_id=1, number_of_people=1))
    mock_db.get.assert_not_called()


def test_create_booking_inactive_tour(db_session: Session, host_user, tourist):
    tour = make_tour(db_session, host_user.host, is_active=False)

    with pytest.raises(BadRequestError) as exc:
        crud.bookings.create_booking(db_session, tourist, schemas.BookingCreate(tour_id=tour.id, number_of_people=1))
    assert exc.value.detail == "This tour is not available for booking"


def test_create_booking_keeps_client_total(db_session: Session, host_user, tourist):
    tour = make_tour(db_session, host_user.host)

    booking = crud.bookings.create_booking(
        db_session, tourist, schemas.BookingCreate(tour_id=tour.id, number_of_people=2, total_amount="180.00")
    )

    assert float(booking.total_amount) == 180.0


def test_cod_booking_refused_when_tour_filled_concurrently(db_session: Session, host_user, tourist):
    # The counter says full even though no CONFIRMED rows exist yet
    tour = make_tour(db_session, host_user.host, max_group_size=2, current_group_size=2)

    with pytest.raises(BadRequestError) as exc:
        crud.bookings.create_booking(
            db_session,
            tourist,
            schemas.BookingCreate(tour_id=tour.id, number_of_people=1, payment_method=models.PaymentMethod.COD),
        )

    assert exc.value.detail == "Only 0 spots available for this tour"
    assert db_session.query(models.Booking).count() == 0
    assert db_session.query(models.Payment).count() == 0


# --- Cancellation ---

def test_cancel_pending_booking_cancels_live_payments(db_session: Session, host_user, tourist):
    tour = make_tour(db_session, host_user.host)
    booking = make_booking(db_session, tourist, tour, payment_status=models.PaymentStatus.PROCESSING)
    payment = models.Payment(
        user_id=tourist.id, booking_id=booking.id, amount=booking.total_amount,
        status=models.PaymentStatus.PROCESSING, stripe_session_id="cs_1",
    )
    db_session.add(payment)
    db_session.commit()

    crud.bookings.cancel_booking(db_session, booking.id, tourist)

    db_session.refresh(payment)
    assert booking.status == models.BookingStatus.CANCELLED
    assert booking.payment_status == models.PaymentStatus.CANCELLED
    assert payment.status == models.PaymentStatus.CANCELLED
    assert tour.current_group_size == 0


def test_cancel_completed_booking_refused(db_session: Session, host_user, tourist):
    booking = make_booking(
        db_session, tourist, make_tour(db_session, host_user.host), status=models.BookingStatus.COMPLETED
    )
    with pytest.raises(BadRequestError) as exc:
        crud.bookings.cancel_booking(db_session, booking.id, tourist)
    assert exc.value.detail == "Cannot cancel a completed booking"


def test_cancel_someone_elses_booking(db_session: Session, host_user, tourist):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host))
    stranger = make_user(db_session, models.UserRole.TOURIST, "stranger@example.com")

    with pytest.raises(ForbiddenError):
        crud.bookings.cancel_booking(db_session, booking.id, stranger)


# --- Participant changes ---

def test_growing_confirmed_cod_booking_reserves_and_updates_payment(db_session: Session, host_user, tourist):
    tour = make_tour(db_session, host_user.host, max_group_size=5, current_group_size=2)
    booking = make_booking(
        db_session, tourist, tour, people=2,
        status=models.BookingStatus.CONFIRMED, payment_method=models.PaymentMethod.COD,
    )
    payment = models.Payment(
        user_id=tourist.id, booking_id=booking.id, amount=booking.total_amount,
        payment_method=models.PaymentMethod.COD, status=models.PaymentStatus.PENDING,
    )
    db_session.add(payment)
    db_session.commit()

    crud.bookings.update_booking(db_session, booking.id, tourist, schemas.BookingUpdate(number_of_people=4))

    db_session.refresh(payment)
    assert tour.current_group_size == 4
    assert float(payment.amount) == 400.0


def test_growing_confirmed_booking_past_capacity_refused(db_session: Session, host_user, tourist):
    tour = make_tour(db_session, host_user.host, max_group_size=3, current_group_size=2)
    booking = make_booking(db_session, tourist, tour, people=2, status=models.BookingStatus.CONFIRMED)

    with pytest.raises(BadRequestError) as exc:
        crud.bookings.update_booking(db_session, booking.id, tourist, schemas.BookingUpdate(number_of_people=4))

    assert exc.value.detail == "Only 1 spots available for this tour"
    db_session.refresh(booking)
    assert booking.number_of_people == 2
