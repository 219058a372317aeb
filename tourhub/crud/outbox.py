import json

from sqlalchemy.orm import Session

from .. import models
from ..config import settings


def add_booking_event(db: Session, event_type: str, booking: models.Booking, **extra):
    """
    Adds a booking lifecycle event to the outbox.
    Note: Does NOT commit. The caller commits it together with the state change.
    """
    payload = {
        "event": event_type,
        "booking_id": booking.id,
        "tour_id": booking.tour_id,
        "user_id": booking.user_id,
        "number_of_people": booking.number_of_people,
        "total_amount": str(booking.total_amount),
        "status": booking.status.value,
        "payment_status": booking.payment_status.value,
        "occurred_at": models.utcnow().isoformat(),
    }
    payload.update(extra)

    db_outbox_event = models.OutboxEvent(
        topic=settings.KAFKA_BOOKING_TOPIC,
        payload=json.dumps(payload),
        status="PENDING"
    )
    db.add(db_outbox_event)
    return db_outbox_event
