"""
Checkout initiation and webhook-driven settlement.

Settlement is written for at-least-once delivery: every provider event id is
recorded once, a payment is credited at most once (``credited_at``), and all
counters move through SQL-side increments or conditional updates.
"""
import logging
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models, payment_gateway, schemas
from ..config import settings
from ..exceptions import BadRequestError, ForbiddenError, NotFoundError, PaymentGatewayError
from ..pagination import PageParams, paginate
from . import bookings, outbox, subscriptions

logger = logging.getLogger("tourhub.payments")

CENT = Decimal("0.01")


def host_share(amount: Decimal) -> Decimal:
    return (Decimal(amount) * settings.HOST_EARNING_RATE).quantize(CENT, rounding=ROUND_HALF_UP)


# --- Initiation ---

def _live_payments(db: Session, booking_id: Optional[int] = None, subscription_id: Optional[int] = None):
    query = db.query(models.Payment).filter(models.Payment.status.in_(models.LIVE_PAYMENT_STATUSES))
    if booking_id is not None:
        query = query.filter(models.Payment.booking_id == booking_id)
    else:
        query = query.filter(models.Payment.subscription_id == subscription_id)
    return query.order_by(models.Payment.id.desc()).all()


def _reusable_session(db: Session, live_payments: List[models.Payment]):
    """
    Returns ``(payment, session)`` for a live payment whose checkout session is
    still open. Every other live payment is superseded and marked FAILED.
    """
    reusable = None
    for payment in live_payments:
        session = None
        if reusable is None and payment.stripe_session_id:
            try:
                session = payment_gateway.retrieve_checkout_session(payment.stripe_session_id)
            except payment_gateway.StripeError as e:
                logger.warning(f"Could not retrieve checkout session {payment.stripe_session_id}: {e}")

        if session is not None and session.status == "open" and session.url:
            reusable = (payment, session)
            continue

        payment.status = models.PaymentStatus.FAILED
        payment.failure_reason = "Superseded by a new checkout session"
    return reusable


def _start_checkout(
        db: Session,
        user: models.User,
        amount: Decimal,
        product_name: str,
        success_url: str,
        cancel_url: str,
        booking: Optional[models.Booking] = None,
        subscription: Optional[models.Subscription] = None,
) -> schemas.CheckoutResponse:
    live = _live_payments(
        db,
        booking_id=booking.id if booking is not None else None,
        subscription_id=subscription.id if subscription is not None else None,
    )
    reusable = _reusable_session(db, live)
    if reusable is not None:
        payment, session = reusable
        db.commit()
        logger.info(f"Reusing open checkout session {session.id} for payment {payment.id}")
        return schemas.CheckoutResponse(payment_id=payment.id, session_id=session.id, checkout_url=session.url)

    payment = models.Payment(
        user_id=user.id,
        booking_id=booking.id if booking is not None else None,
        subscription_id=subscription.id if subscription is not None else None,
        amount=amount,
        currency=settings.CURRENCY,
        payment_method=models.PaymentMethod.STRIPE,
        status=models.PaymentStatus.PENDING,
        description=product_name,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)

    metadata = {"paymentId": str(payment.id), "userId": str(user.id)}
    if booking is not None:
        metadata["bookingId"] = str(booking.id)
    if subscription is not None:
        metadata["subscriptionId"] = str(subscription.id)

    try:
        session = payment_gateway.create_checkout_session(
            amount=amount,
            product_name=product_name,
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=user.email,
        )
    except payment_gateway.StripeError as e:
        logger.error(f"Failed to create checkout session for payment {payment.id}: {e}")
        payment.status = models.PaymentStatus.FAILED
        payment.failure_reason = str(e)[:255]
        db.commit()
        raise PaymentGatewayError("Could not create a checkout session, please try again")

    payment.stripe_session_id = session.id
    payment.status = models.PaymentStatus.PROCESSING
    if booking is not None:
        booking.payment_status = models.PaymentStatus.PROCESSING
    db.commit()
    logger.info(f"Checkout session {session.id} created for payment {payment.id}")
    return schemas.CheckoutResponse(payment_id=payment.id, session_id=session.id, checkout_url=session.url)


def initiate_booking_payment(db: Session, booking_id: int, user: models.User) -> schemas.CheckoutResponse:
    booking = bookings.get_booking(db, booking_id)
    if booking.user_id != user.id:
        raise ForbiddenError("You can only pay for your own bookings")
    if booking.payment_status == models.PaymentStatus.COMPLETED:
        raise BadRequestError("This booking is already paid")
    if booking.status == models.BookingStatus.CANCELLED:
        raise BadRequestError("This booking is cancelled")
    if booking.payment_method == models.PaymentMethod.COD:
        raise BadRequestError("Cash on delivery bookings are paid on the tour")
    if booking.status != models.BookingStatus.PENDING:
        raise BadRequestError("Only pending bookings can be paid")

    return _start_checkout(
        db,
        user,
        amount=booking.total_amount,
        product_name=f"{booking.tour.title} ({booking.number_of_people} people)",
        success_url=(
            f"{settings.FRONTEND_URL}/payment/success"
            f"?session_id={{CHECKOUT_SESSION_ID}}&bookingId={booking.id}"
        ),
        cancel_url=f"{settings.FRONTEND_URL}/payment/cancel?bookingId={booking.id}",
        booking=booking,
    )


def initiate_subscription_payment(
        db: Session, subscription_id: int, host: models.Host
) -> schemas.CheckoutResponse:
    subscription = subscriptions.get_subscription(db, subscription_id)
    if subscription.host_id != host.id:
        raise ForbiddenError("You can only pay for your own subscriptions")
    if subscription.status == models.SubscriptionStatus.ACTIVE:
        raise BadRequestError("This subscription is already active")
    if subscription.status != models.SubscriptionStatus.PENDING:
        raise BadRequestError("This subscription can no longer be paid")
    if subscription.plan.price <= 0:
        raise BadRequestError("Free plans do not require payment")

    return _start_checkout(
        db,
        host.user,
        amount=subscription.plan.price,
        product_name=f"{subscription.plan.name} subscription",
        success_url=(
            f"{settings.FRONTEND_URL}/subscription/success"
            f"?session_id={{CHECKOUT_SESSION_ID}}&subscriptionId={subscription.id}"
        ),
        cancel_url=f"{settings.FRONTEND_URL}/subscription/cancel?subscriptionId={subscription.id}",
        subscription=subscription,
    )


# --- Settlement ---

def _metadata_id(metadata: dict, key: str) -> Optional[int]:
    value = metadata.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _find_payment(db: Session, session: dict) -> Optional[models.Payment]:
    metadata = session.get("metadata") or {}
    payment_id = _metadata_id(metadata, "paymentId")
    payment = db.get(models.Payment, payment_id) if payment_id is not None else None
    if payment is None and session.get("id"):
        payment = db.query(models.Payment).filter(
            models.Payment.stripe_session_id == session["id"]
        ).first()
    return payment


def _increment(db: Session, model, key: int, **amounts) -> None:
    column_values = {name: getattr(model, name) + value for name, value in amounts.items()}
    db.execute(
        update(model)
        .where(model.id == key)
        .values(**column_values)
        .execution_options(synchronize_session=False)
    )
    instance = db.get(model, key)
    if instance is not None:
        db.expire(instance, list(amounts))


def _reject_paid_booking(
        db: Session, payment: models.Payment, booking: models.Booking, reason: str, keep_booking: bool = False
) -> None:
    """
    The charge was captured but the booking cannot take it. The payment is
    failed and flagged for a refund, issued once this transaction commits.
    With keep_booking the booking stays open for a fresh checkout.
    """
    payment.status = models.PaymentStatus.FAILED
    payment.failure_reason = reason
    if booking.status == models.BookingStatus.PENDING and not keep_booking:
        booking.status = models.BookingStatus.CANCELLED
        booking.payment_status = models.PaymentStatus.FAILED
    outbox.add_booking_event(db, "booking.refunded", booking, payment_id=payment.id, reason=reason)
    logger.warning(f"Payment {payment.id} for booking {booking.id} rejected: {reason}")


def _settle_booking(db: Session, payment: models.Payment, booking: models.Booking) -> None:
    if booking.payment_status == models.PaymentStatus.COMPLETED:
        _reject_paid_booking(db, payment, booking, "Booking was already paid")
        return
    if booking.status != models.BookingStatus.PENDING:
        _reject_paid_booking(db, payment, booking, f"Booking is {booking.status.value.lower()}")
        return
    # A checkout made before the participant count changed no longer covers the booking
    if (
            payment.status not in models.LIVE_PAYMENT_STATUSES
            or Decimal(payment.amount) != Decimal(booking.total_amount)
    ):
        _reject_paid_booking(db, payment, booking, "Checkout no longer matches the booking", keep_booking=True)
        return
    if not bookings.reserve_seats(db, booking.tour_id, booking.number_of_people):
        _reject_paid_booking(db, payment, booking, "Tour capacity exceeded at settlement")
        return

    now = models.utcnow()
    payment.status = models.PaymentStatus.COMPLETED
    payment.credited_at = now
    booking.status = models.BookingStatus.CONFIRMED
    booking.payment_status = models.PaymentStatus.COMPLETED

    for other in booking.payments:
        if other.id != payment.id and other.status in models.LIVE_PAYMENT_STATUSES:
            other.status = models.PaymentStatus.CANCELLED
            other.failure_reason = "Booking paid through another checkout"

    amount = Decimal(payment.amount)
    share = host_share(amount)
    tour = booking.tour
    _increment(db, models.Tour, tour.id, total_earnings=amount)
    _increment(db, models.Host, tour.host_id, balance=share, total_earnings=share)
    _increment(db, models.Tourist, booking.tourist_id, total_spent=amount)

    outbox.add_booking_event(db, "booking.confirmed", booking, payment_id=payment.id)
    logger.info(
        f"Booking {booking.id} confirmed by payment {payment.id}: "
        f"{booking.number_of_people} seats, host {tour.host_id} credited {share}"
    )


def _settle_subscription(db: Session, payment: models.Payment, subscription: models.Subscription) -> None:
    if subscription.status != models.SubscriptionStatus.PENDING:
        payment.status = models.PaymentStatus.FAILED
        payment.failure_reason = f"Subscription is {subscription.status.value.lower()}"
        logger.warning(f"Payment {payment.id} for subscription {subscription.id} rejected: {payment.failure_reason}")
        return

    payment.status = models.PaymentStatus.COMPLETED
    payment.credited_at = models.utcnow()
    subscriptions.activate_subscription(db, subscription)


def _handle_checkout_completed(db: Session, session: dict) -> Optional[models.Payment]:
    """Returns the payment when its captured charge has to be refunded."""
    metadata = session.get("metadata") or {}
    booking_id = _metadata_id(metadata, "bookingId")
    subscription_id = _metadata_id(metadata, "subscriptionId")
    if (booking_id is None) == (subscription_id is None):
        logger.warning(f"Checkout session {session.get('id')} has ambiguous metadata: {metadata}")
        return None

    payment = _find_payment(db, session)
    if payment is None or payment.booking_id != booking_id or payment.subscription_id != subscription_id:
        logger.warning(f"No payment matches checkout session {session.get('id')}")
        return None
    if payment.status == models.PaymentStatus.COMPLETED or payment.credited_at is not None:
        logger.info(f"Payment {payment.id} already settled, skipping")
        return None

    payment.stripe_session_id = session.get("id") or payment.stripe_session_id
    payment.transaction_id = session.get("payment_intent") or payment.transaction_id

    if session.get("payment_status") != "paid":
        payment.status = models.PaymentStatus.FAILED
        payment.failure_reason = f"Checkout completed with payment status {session.get('payment_status')}"
        if payment.booking is not None and payment.booking.status == models.BookingStatus.PENDING:
            payment.booking.payment_status = models.PaymentStatus.FAILED
        return None

    payment.paid_at = models.utcnow()
    if payment.booking is not None:
        _settle_booking(db, payment, payment.booking)
    else:
        _settle_subscription(db, payment, payment.subscription)

    if payment.status == models.PaymentStatus.FAILED:
        return payment
    return None


def _handle_checkout_expired(db: Session, session: dict) -> None:
    payment = _find_payment(db, session)
    if payment is None:
        logger.warning(f"No payment matches expired checkout session {session.get('id')}")
        return
    if payment.status not in models.LIVE_PAYMENT_STATUSES:
        return

    payment.status = models.PaymentStatus.FAILED
    payment.failure_reason = "Checkout session expired"

    subscription = payment.subscription
    if subscription is not None and subscription.status == models.SubscriptionStatus.PENDING:
        subscription.status = models.SubscriptionStatus.CANCELLED
        subscription.cancelled_at = models.utcnow()

    booking = payment.booking
    if (
            booking is not None
            and booking.status == models.BookingStatus.PENDING
            and booking.payment_status in models.LIVE_PAYMENT_STATUSES
    ):
        booking.payment_status = models.PaymentStatus.FAILED
    logger.info(f"Payment {payment.id} failed: checkout session expired")


def _record_event(db: Session, event_id: str, event_type: str) -> bool:
    """Returns False when this provider event was already processed."""
    if db.query(models.WebhookEvent.id).filter(models.WebhookEvent.event_id == event_id).first():
        return False
    db.add(models.WebhookEvent(event_id=event_id, event_type=event_type))
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return False
    return True


def handle_webhook(db: Session, payload: bytes, sig_header: Optional[str]) -> dict:
    """
    Verifies and applies one provider event.

    The event record and every state change commit together; any error rolls
    back and propagates so the provider redelivers the event.
    """
    try:
        event = payment_gateway.construct_event(payload, sig_header)
    except (payment_gateway.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Rejected webhook with invalid signature or payload: {e}")
        raise BadRequestError("Invalid webhook signature")

    event_id = event.get("id")
    event_type = event.get("type", "")
    data_object = (event.get("data") or {}).get("object") or {}

    to_refund = None
    try:
        if event_id and not _record_event(db, event_id, event_type):
            logger.info(f"Duplicate webhook event {event_id} ({event_type}) ignored")
            return {"received": True, "duplicate": True}

        if event_type == "checkout.session.completed":
            to_refund = _handle_checkout_completed(db, data_object)
        elif event_type == "checkout.session.expired":
            _handle_checkout_expired(db, data_object)
        elif event_type == "payment_intent.succeeded":
            logger.info(f"PaymentIntent {data_object.get('id')} succeeded")
        elif event_type == "payment_intent.payment_failed":
            logger.info(f"PaymentIntent {data_object.get('id')} failed")
        else:
            logger.debug(f"Unhandled webhook event type {event_type}")

        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"Error processing webhook event {event_id} ({event_type})")
        raise

    if to_refund is not None:
        issue_refund(db, to_refund)
    return {"received": True}


# --- Refunds ---

def issue_refund(db: Session, payment: models.Payment) -> bool:
    """
    Refunds a captured charge that settlement rejected. A failure is logged
    and left for the maintenance scheduler to retry.
    """
    if payment.refunded_at is not None:
        return True
    if not payment.transaction_id:
        logger.error(f"Payment {payment.id} needs a refund but has no payment intent")
        return False
    try:
        payment_gateway.create_refund(payment.transaction_id, payment.id)
    except payment_gateway.StripeError as e:
        logger.error(f"Refund for payment {payment.id} failed: {e}")
        return False
    payment.refunded_at = models.utcnow()
    db.commit()
    return True


def retry_pending_refunds(db: Session) -> int:
    """Captured (paid_at set) but FAILED payments without a refund yet."""
    pending = db.query(models.Payment).filter(
        models.Payment.status == models.PaymentStatus.FAILED,
        models.Payment.paid_at.is_not(None),
        models.Payment.refunded_at.is_(None),
        models.Payment.transaction_id.is_not(None),
    ).all()
    return sum(1 for payment in pending if issue_refund(db, payment))


# --- Reads ---

def get_payment_history(
        db: Session, user: models.User, params: PageParams, status: Optional[models.PaymentStatus] = None
):
    query = db.query(models.Payment).filter(models.Payment.user_id == user.id)
    if status is not None:
        query = query.filter(models.Payment.status == status)
    return paginate(query, params, models.Payment)


def get_host_earnings(db: Session, host: models.Host) -> schemas.HostEarnings:
    payments = db.query(models.Payment).join(
        models.Booking, models.Payment.booking_id == models.Booking.id
    ).join(models.Tour).filter(
        models.Tour.host_id == host.id,
        models.Payment.status == models.PaymentStatus.COMPLETED,
    ).order_by(models.Payment.paid_at.desc()).all()

    monthly = defaultdict(Decimal)
    gross = Decimal("0")
    for payment in payments:
        gross += Decimal(payment.amount)
        if payment.paid_at is not None:
            monthly[payment.paid_at.strftime("%Y-%m")] += host_share(payment.amount)

    return schemas.HostEarnings(
        balance=host.balance,
        total_earnings=host.total_earnings,
        paid_bookings=len(payments),
        gross_revenue=gross,
        monthly=[
            schemas.MonthlyAmount(month=month, amount=amount)
            for month, amount in sorted(monthly.items())
        ],
        payments=payments,
    )


def get_all_payments(
        db: Session,
        params: PageParams,
        status: Optional[models.PaymentStatus] = None,
        user_id: Optional[int] = None,
) -> schemas.AdminPaymentsPage:
    query = db.query(models.Payment)
    if status is not None:
        query = query.filter(models.Payment.status == status)
    if user_id is not None:
        query = query.filter(models.Payment.user_id == user_id)
    items, meta = paginate(query, params, models.Payment)

    total_amount = db.query(func.coalesce(func.sum(models.Payment.amount), 0)).filter(
        models.Payment.status == models.PaymentStatus.COMPLETED
    ).scalar()
    rows = db.query(models.Payment.status, func.count(models.Payment.id)).group_by(models.Payment.status).all()
    status_counts = {status.value: 0 for status in models.PaymentStatus}
    for row_status, count in rows:
        status_counts[row_status.value] = count

    return schemas.AdminPaymentsPage(
        meta=meta,
        data=items,
        summary=schemas.PaymentSummary(total_amount=total_amount, status_counts=status_counts),
    )


def get_payment(db: Session, payment_id: int, user: models.User) -> models.Payment:
    payment = db.get(models.Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    if payment.user_id != user.id and user.role != models.UserRole.ADMIN:
        raise ForbiddenError("You can only view your own payments")
    return payment
