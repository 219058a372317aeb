import json
from decimal import Decimal
from unittest.mock import MagicMock

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from tourhub import crud, models, payment_gateway

from conftest import auth_header, make_booking, make_tour, make_user

WEBHOOK_HEADERS = {"stripe-signature": "t=1,v1=test"}


def _checkout_event(event_id: str, checkout: dict, booking_id: int, payment_intent: str = "pi_1",
                    event_type: str = "checkout.session.completed", payment_status: str = "paid") -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": checkout["session_id"],
                "payment_status": payment_status,
                "payment_intent": payment_intent,
                "metadata": {"paymentId": str(checkout["payment_id"]), "bookingId": str(booking_id)},
            }
        },
    }


def _pay(client: TestClient, booking: models.Booking, user: models.User) -> dict:
    response = client.post(f"/bookings/{booking.id}/pay", headers=auth_header(user))
    assert response.status_code == 200
    return response.json()


def _deliver(client: TestClient, stripe_mock, event: dict):
    stripe_mock.construct_event.return_value = event
    return client.post("/payments/webhook", content=json.dumps(event).encode(), headers=WEBHOOK_HEADERS)


def test_pay_creates_checkout_session(client: TestClient, db_session: Session, stripe_mock, host_user, tourist):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host), people=2)

    checkout = _pay(client, booking, tourist)

    assert checkout["checkout_url"].startswith("https://checkout.stripe.test/")
    kwargs = stripe_mock.create_checkout_session.call_args.kwargs
    assert kwargs["amount"] == Decimal("200.00")
    assert kwargs["metadata"]["bookingId"] == str(booking.id)
    assert kwargs["customer_email"] == "tourist@example.com"

    db_session.refresh(booking)
    assert booking.payment_status == models.PaymentStatus.PROCESSING
    payment = db_session.get(models.Payment, checkout["payment_id"])
    assert payment.status == models.PaymentStatus.PROCESSING
    assert payment.stripe_session_id == checkout["session_id"]


def test_pay_reuses_open_checkout_session(client: TestClient, db_session: Session, stripe_mock, host_user, tourist):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host))
    first = _pay(client, booking, tourist)

    stripe_mock.retrieve_checkout_session.return_value = MagicMock(
        id=first["session_id"], url=first["checkout_url"], status="open"
    )
    second = _pay(client, booking, tourist)

    assert second["payment_id"] == first["payment_id"]
    assert stripe_mock.create_checkout_session.call_count == 1


def test_pay_cod_booking_refused(client: TestClient, db_session: Session, stripe_mock, host_user, tourist):
    booking = make_booking(
        db_session, tourist, make_tour(db_session, host_user.host),
        status=models.BookingStatus.CONFIRMED, payment_method=models.PaymentMethod.COD,
    )
    response = client.post(f"/bookings/{booking.id}/pay", headers=auth_header(tourist))
    assert response.status_code == 400
    assert response.json()["detail"] == "Cash on delivery bookings are paid on the tour"


def test_paid_webhook_confirms_booking_and_credits_host(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    tour = make_tour(db_session, host_user.host, max_group_size=2)
    booking = make_booking(db_session, tourist, tour, people=2)
    checkout = _pay(client, booking, tourist)

    response = _deliver(client, stripe_mock, _checkout_event("evt_1", checkout, booking.id))

    assert response.status_code == 200
    assert response.json() == {"received": True}

    db_session.expire_all()
    booking = db_session.get(models.Booking, booking.id)
    assert booking.status == models.BookingStatus.CONFIRMED
    assert booking.payment_status == models.PaymentStatus.COMPLETED
    assert db_session.get(models.Tour, tour.id).current_group_size == 2

    host = db_session.get(models.Host, host_user.host.id)
    assert host.balance == Decimal("170.00")
    assert host.total_earnings == Decimal("170.00")
    assert db_session.get(models.Tourist, tourist.tourist.id).total_spent == Decimal("200.00")

    payment = db_session.get(models.Payment, checkout["payment_id"])
    assert payment.status == models.PaymentStatus.COMPLETED
    assert payment.transaction_id == "pi_1"
    assert payment.paid_at is not None

    events = [json.loads(e.payload)["event"] for e in db_session.query(models.OutboxEvent)]
    assert events == ["booking.confirmed"]


def test_duplicate_webhook_is_applied_once(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    tour = make_tour(db_session, host_user.host)
    booking = make_booking(db_session, tourist, tour)
    checkout = _pay(client, booking, tourist)
    event = _checkout_event("evt_dup", checkout, booking.id)

    _deliver(client, stripe_mock, event)
    second = _deliver(client, stripe_mock, event)

    assert second.status_code == 200
    assert second.json() == {"received": True, "duplicate": True}
    db_session.expire_all()
    assert db_session.get(models.Host, host_user.host.id).balance == Decimal("85.00")
    assert db_session.get(models.Tour, tour.id).current_group_size == 1
    assert db_session.query(models.WebhookEvent).count() == 1


def test_redelivery_with_new_event_id_does_not_double_credit(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host))
    checkout = _pay(client, booking, tourist)

    _deliver(client, stripe_mock, _checkout_event("evt_a", checkout, booking.id))
    _deliver(client, stripe_mock, _checkout_event("evt_b", checkout, booking.id))

    db_session.expire_all()
    assert db_session.get(models.Host, host_user.host.id).balance == Decimal("85.00")


def test_host_balance_accumulates_over_payments(
        client: TestClient, db_session: Session, stripe_mock, host_user
):
    tour = make_tour(db_session, host_user.host, price=Decimal("40.00"))
    for i in range(3):
        user = make_user(db_session, models.UserRole.TOURIST, f"t{i}@example.com")
        booking = make_booking(db_session, user, tour)
        checkout = _pay(client, booking, user)
        _deliver(client, stripe_mock, _checkout_event(f"evt_{i}", checkout, booking.id, payment_intent=f"pi_{i}"))

    db_session.expire_all()
    host = db_session.get(models.Host, host_user.host.id)
    assert host.balance == Decimal("102.00")
    assert db_session.get(models.Tour, tour.id).total_earnings == Decimal("120.00")


def test_capacity_exceeded_at_settlement_is_refunded(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist, other_tourist
):
    tour = make_tour(db_session, host_user.host, max_group_size=2)
    first = make_booking(db_session, tourist, tour, people=2)
    second = make_booking(db_session, other_tourist, tour, people=2)
    first_checkout = _pay(client, first, tourist)
    second_checkout = _pay(client, second, other_tourist)

    _deliver(client, stripe_mock, _checkout_event("evt_first", first_checkout, first.id, "pi_first"))
    response = _deliver(client, stripe_mock, _checkout_event("evt_second", second_checkout, second.id, "pi_second"))

    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(models.Tour, tour.id).current_group_size == 2

    rejected = db_session.get(models.Booking, second.id)
    assert rejected.status == models.BookingStatus.CANCELLED
    assert rejected.payment_status == models.PaymentStatus.FAILED

    payment = db_session.get(models.Payment, second_checkout["payment_id"])
    assert payment.status == models.PaymentStatus.FAILED
    assert payment.failure_reason == "Tour capacity exceeded at settlement"
    assert payment.refunded_at is not None
    stripe_mock.create_refund.assert_called_once_with("pi_second", payment.id)

    assert db_session.get(models.Host, host_user.host.id).balance == Decimal("170.00")


def test_failed_refund_is_left_for_retry(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist, other_tourist
):
    tour = make_tour(db_session, host_user.host, max_group_size=1)
    first = make_booking(db_session, tourist, tour)
    second = make_booking(db_session, other_tourist, tour)
    first_checkout = _pay(client, first, tourist)
    second_checkout = _pay(client, second, other_tourist)
    stripe_mock.create_refund.side_effect = payment_gateway.StripeError("network down")

    _deliver(client, stripe_mock, _checkout_event("evt_1", first_checkout, first.id, "pi_1"))
    response = _deliver(client, stripe_mock, _checkout_event("evt_2", second_checkout, second.id, "pi_2"))

    assert response.status_code == 200
    db_session.expire_all()
    payment = db_session.get(models.Payment, second_checkout["payment_id"])
    assert payment.status == models.PaymentStatus.FAILED
    assert payment.refunded_at is None


def test_checkout_for_old_amount_is_refunded_after_participant_change(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    tour = make_tour(db_session, host_user.host)
    booking = make_booking(db_session, tourist, tour)
    stale = _pay(client, booking, tourist)
    response = client.patch(f"/bookings/{booking.id}", json={"number_of_people": 5}, headers=auth_header(tourist))
    assert response.status_code == 200

    response = _deliver(client, stripe_mock, _checkout_event("evt_stale", stale, booking.id, "pi_stale"))

    assert response.status_code == 200
    db_session.expire_all()
    booking = db_session.get(models.Booking, booking.id)
    assert booking.status == models.BookingStatus.PENDING
    assert booking.payment_status != models.PaymentStatus.COMPLETED
    assert db_session.get(models.Tour, tour.id).current_group_size == 0

    payment = db_session.get(models.Payment, stale["payment_id"])
    assert payment.status == models.PaymentStatus.FAILED
    assert payment.failure_reason == "Checkout no longer matches the booking"
    assert payment.refunded_at is not None
    stripe_mock.create_refund.assert_called_once_with("pi_stale", payment.id)
    assert db_session.get(models.Host, host_user.host.id).balance == 0

    # A fresh checkout for the new amount still goes through
    fresh = _pay(client, booking, tourist)
    assert stripe_mock.create_checkout_session.call_args.kwargs["amount"] == Decimal("500.00")
    _deliver(client, stripe_mock, _checkout_event("evt_fresh", fresh, booking.id, "pi_fresh"))
    db_session.expire_all()
    assert db_session.get(models.Booking, booking.id).status == models.BookingStatus.CONFIRMED
    assert db_session.get(models.Tour, tour.id).current_group_size == 5


def test_invalid_signature_rejected(client: TestClient, db_session: Session, stripe_mock):
    stripe_mock.construct_event.side_effect = payment_gateway.SignatureVerificationError(
        "No signatures found matching the expected signature for payload", "t=1,v1=bad"
    )

    response = client.post("/payments/webhook", content=b"{}", headers=WEBHOOK_HEADERS)

    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid webhook signature"}
    assert db_session.query(models.WebhookEvent).count() == 0


def test_missing_signature_header_rejected(client: TestClient):
    response = client.post("/payments/webhook", content=b'{"id": "evt_1"}')
    assert response.status_code == 400


def test_expired_session_fails_payment(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host))
    checkout = _pay(client, booking, tourist)

    response = _deliver(
        client, stripe_mock,
        _checkout_event("evt_exp", checkout, booking.id, event_type="checkout.session.expired"),
    )

    assert response.status_code == 200
    db_session.expire_all()
    payment = db_session.get(models.Payment, checkout["payment_id"])
    assert payment.status == models.PaymentStatus.FAILED
    assert payment.failure_reason == "Checkout session expired"
    booking = db_session.get(models.Booking, booking.id)
    assert booking.status == models.BookingStatus.PENDING
    assert booking.payment_status == models.PaymentStatus.FAILED

    # The tourist can start a fresh checkout
    retry = _pay(client, booking, tourist)
    assert retry["payment_id"] != checkout["payment_id"]


def test_unpaid_completion_does_not_confirm(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host))
    checkout = _pay(client, booking, tourist)

    _deliver(client, stripe_mock, _checkout_event("evt_u", checkout, booking.id, payment_status="unpaid"))

    db_session.expire_all()
    assert db_session.get(models.Booking, booking.id).status == models.BookingStatus.PENDING
    assert db_session.get(models.Host, host_user.host.id).balance == 0


def test_payment_history_and_host_earnings(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host))
    checkout = _pay(client, booking, tourist)
    _deliver(client, stripe_mock, _checkout_event("evt_h", checkout, booking.id))

    history = client.get("/payments/history", headers=auth_header(tourist)).json()
    assert history["meta"]["total"] == 1
    assert history["data"][0]["status"] == "COMPLETED"

    earnings = client.get("/payments/host-earnings", headers=auth_header(host_user)).json()
    assert earnings["balance"] == 85
    assert earnings["paid_bookings"] == 1
    assert earnings["gross_revenue"] == 100
    assert len(earnings["monthly"]) == 1


def test_host_share_kept_exact_in_earnings(
        client: TestClient, db_session: Session, stripe_mock, host_user, tourist
):
    booking = make_booking(db_session, tourist, make_tour(db_session, host_user.host, price=Decimal("33.33")))
    checkout = _pay(client, booking, tourist)
    _deliver(client, stripe_mock, _checkout_event("evt_cents", checkout, booking.id))

    db_session.expire_all()
    earnings = crud.payments.get_host_earnings(db_session, db_session.get(models.Host, host_user.host.id))
    assert isinstance(earnings.balance, Decimal)
    assert earnings.balance == Decimal("28.33")

    data = client.get("/payments/host-earnings", headers=auth_header(host_user)).json()
    assert data["balance"] == 28.33
    assert data["gross_revenue"] == 33.33
