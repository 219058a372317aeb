import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime.datetime:
    return datetime.datetime.utcnow()


Money = Numeric(12, 2)


# --- Enums ---
class UserRole(str, PyEnum):
    ADMIN = "ADMIN"
    HOST = "HOST"
    TOURIST = "TOURIST"


class UserStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    DELETED = "DELETED"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, PyEnum):
    STRIPE = "STRIPE"
    COD = "COD"


class SubscriptionStatus(str, PyEnum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PayoutStatus(str, PyEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PayoutMethod(str, PyEnum):
    STRIPE = "STRIPE"
    BANK = "BANK"


LIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
TERMINAL_BOOKING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.COMPLETED)


# --- Identity ---
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), nullable=False)
    status = Column(SQLEnum(UserStatus), default=UserStatus.ACTIVE, nullable=False)
    need_password_change = Column(Boolean, default=False, nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    tourist = relationship("Tourist", back_populates="user", uselist=False)
    host = relationship("Host", back_populates="user", uselist=False)
    admin = relationship("Admin", back_populates="user", uselist=False)


class Tourist(Base):
    __tablename__ = "tourists"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    profile_photo = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    total_spent = Column(Money, default=Decimal("0"), nullable=False)

    user = relationship("User", back_populates="tourist")


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    contact_number = Column(String(50), nullable=True)

    user = relationship("User", back_populates="admin")


class Host(Base):
    __tablename__ = "hosts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50), nullable=True)
    bio = Column(Text, nullable=True)
    profile_photo = Column(String, nullable=True)

    # Spendable funds; mutated only by settlement and payout transactions.
    balance = Column(Money, default=Decimal("0"), nullable=False)
    total_earnings = Column(Money, default=Decimal("0"), nullable=False)
    last_payout_at = Column(TIMESTAMP, nullable=True)
    stripe_account_id = Column(String(255), nullable=True)

    tour_limit = Column(Integer, nullable=False)
    current_tour_count = Column(Integer, default=0, nullable=False)
    blog_limit = Column(Integer, nullable=True)  # NULL = unlimited
    current_blog_count = Column(Integer, default=0, nullable=False)

    # Back-reference only. The subscriptions table already points here,
    # so no FK is enforced in this direction.
    subscription_id = Column(Integer, nullable=True)

    average_rating = Column(Float, default=0.0, nullable=False)
    total_reviews = Column(Integer, default=0, nullable=False)

    user = relationship("User", back_populates="host")
    tours = relationship("Tour", back_populates="host")


# --- Catalog ---
class Tour(Base):
    __tablename__ = "tours"

    id = Column(Integer, primary_key=True, index=True)
    host_id = Column(Integer, ForeignKey("hosts.id"), index=True, nullable=False)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    destination = Column(String(255), index=True, nullable=False)
    city = Column(String(255), nullable=True)
    country = Column(String(255), nullable=True)
    category = Column(String(50), nullable=True)
    difficulty = Column(String(50), nullable=True)

    price = Column(Money, nullable=False)
    max_group_size = Column(Integer, nullable=False)
    current_group_size = Column(Integer, default=0, nullable=False)

    start_date = Column(TIMESTAMP, nullable=False)
    end_date = Column(TIMESTAMP, nullable=False)

    images = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    is_featured = Column(Boolean, default=False, nullable=False)
    views = Column(Integer, default=0, nullable=False)

    average_rating = Column(Float, default=0.0, nullable=False)
    total_reviews = Column(Integer, default=0, nullable=False)
    total_earnings = Column(Money, default=Decimal("0"), nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    host = relationship("Host", back_populates="tours")
    bookings = relationship("Booking", back_populates="tour")

    __table_args__ = (
        CheckConstraint("max_group_size > 0", name="ck_tours_max_group_size_positive"),
        CheckConstraint("current_group_size >= 0", name="ck_tours_current_group_size_non_negative"),
    )


# --- Booking & payment ---
class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    tour_id = Column(Integer, ForeignKey("tours.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    tourist_id = Column(Integer, ForeignKey("tourists.id"), index=True, nullable=False)

    number_of_people = Column(Integer, nullable=False)
    total_amount = Column(Money, nullable=False)
    special_requests = Column(Text, nullable=True)

    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    payment_method = Column(SQLEnum(PaymentMethod), default=PaymentMethod.STRIPE, nullable=False)
    is_reviewed = Column(Boolean, default=False, nullable=False)

    booking_date = Column(TIMESTAMP, default=utcnow)
    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    tour = relationship("Tour", back_populates="bookings")
    tourist = relationship("Tourist")
    payments = relationship("Payment", back_populates="booking", order_by="Payment.id.desc()")

    __table_args__ = (
        CheckConstraint("number_of_people > 0", name="ck_bookings_number_of_people_positive"),
        Index("ix_bookings_tour_status", "tour_id", "status"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)

    # A payment settles either a booking or a subscription, never both.
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), index=True, nullable=True)

    amount = Column(Money, nullable=False)
    currency = Column(String(10), default="usd", nullable=False)
    payment_method = Column(SQLEnum(PaymentMethod), default=PaymentMethod.STRIPE, nullable=False)
    status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    description = Column(String(500), nullable=True)

    stripe_session_id = Column(String(255), index=True, nullable=True)
    transaction_id = Column(String(255), nullable=True)
    paid_at = Column(TIMESTAMP, nullable=True)

    # Set once the settlement side effects (balances, counters) were applied.
    credited_at = Column(TIMESTAMP, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    refunded_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="payments")
    subscription = relationship("Subscription", back_populates="payments")

    __table_args__ = (
        CheckConstraint(
            "booking_id IS NULL OR subscription_id IS NULL",
            name="ck_payments_single_target",
        ),
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(100), nullable=False)
    received_at = Column(TIMESTAMP, default=utcnow)


# --- Subscriptions ---
class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Money, nullable=False)
    duration = Column(Integer, default=12, nullable=False)  # months
    tour_limit = Column(Integer, nullable=False)
    blog_limit = Column(Integer, nullable=True)  # NULL = unlimited
    features = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    host_id = Column(Integer, ForeignKey("hosts.id"), index=True, nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(SQLEnum(SubscriptionStatus), default=SubscriptionStatus.PENDING, nullable=False)

    start_date = Column(TIMESTAMP, nullable=True)
    end_date = Column(TIMESTAMP, nullable=True)

    tour_limit = Column(Integer, nullable=False)
    remaining_tours = Column(Integer, nullable=False)
    blog_limit = Column(Integer, nullable=True)
    remaining_blogs = Column(Integer, nullable=True)

    cancelled_at = Column(TIMESTAMP, nullable=True)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    host = relationship("Host", foreign_keys=[host_id])
    plan = relationship("SubscriptionPlan")
    payments = relationship("Payment", back_populates="subscription")


# --- Payouts ---
class Payout(Base):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, index=True)
    host_id = Column(Integer, ForeignKey("hosts.id"), index=True, nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(10), default="usd", nullable=False)
    method = Column(SQLEnum(PayoutMethod), default=PayoutMethod.STRIPE, nullable=False)
    status = Column(SQLEnum(PayoutStatus), default=PayoutStatus.PENDING, nullable=False)
    bank_details = Column(JSON, nullable=True)
    transaction_id = Column(String(255), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    processed_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    host = relationship("Host")

    __table_args__ = (
        Index("ix_payouts_status", "status"),
    )


# --- User content ---
class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), unique=True, nullable=False)
    tour_id = Column(Integer, ForeignKey("tours.id"), index=True, nullable=False)
    host_id = Column(Integer, ForeignKey("hosts.id"), index=True, nullable=False)
    tourist_id = Column(Integer, ForeignKey("tourists.id"), index=True, nullable=False)

    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    is_approved = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking")
    tour = relationship("Tour")
    tourist = relationship("Tourist")

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
    )


class Blog(Base):
    __tablename__ = "blogs"

    id = Column(Integer, primary_key=True, index=True)
    host_id = Column(Integer, ForeignKey("hosts.id"), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    cover_image = Column(String, nullable=True)
    tags = Column(JSON, default=list)
    is_approved = Column(Boolean, default=False, nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    host = relationship("Host")


# --- Transactional outbox ---
class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    # The Kafka topic to send the message to
    topic = Column(String(255), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)

    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
