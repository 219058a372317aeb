import datetime
from decimal import Decimal
from typing import Annotated, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, EmailStr, Field, PlainSerializer, field_validator, model_validator

from .models import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    PayoutMethod,
    PayoutStatus,
    SubscriptionStatus,
    UserRole,
    UserStatus,
)

T = TypeVar("T")

# Kept as Decimal in responses, written to JSON as a number
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def to_naive_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    # Timestamps are stored as naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


class MessageResponse(BaseModel):
    message: str


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class Page(BaseModel, Generic[T]):
    meta: PageMeta
    data: List[T]


# --- Auth ---
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    need_password_change: bool


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str = Field(min_length=6)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    new_password: str = Field(min_length=6)


# --- Users ---
class TouristRegister(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    location: Optional[str] = None
    bio: Optional[str] = None
    profile_photo: Optional[str] = None


class HostRegister(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    phone: Optional[str] = None
    bio: Optional[str] = None
    profile_photo: Optional[str] = None


class AdminCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    contact_number: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    phone: Optional[str] = None
    profile_photo: Optional[str] = None
    contact_number: Optional[str] = None
    stripe_account_id: Optional[str] = None


class UserStatusUpdate(BaseModel):
    status: UserStatus


class TouristRead(BaseModel):
    id: int
    name: str
    email: str
    profile_photo: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    total_spent: Money

    class Config:
        from_attributes = True


class HostRead(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    bio: Optional[str] = None
    profile_photo: Optional[str] = None
    balance: Money
    total_earnings: Money
    tour_limit: int
    current_tour_count: int
    blog_limit: Optional[int] = None
    current_blog_count: int
    subscription_id: Optional[int] = None
    average_rating: float
    total_reviews: int
    stripe_account_id: Optional[str] = None
    last_payout_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class AdminRead(BaseModel):
    id: int
    name: str
    email: str
    contact_number: Optional[str] = None

    class Config:
        from_attributes = True


class UserRead(BaseModel):
    id: int
    email: str
    role: UserRole
    status: UserStatus
    need_password_change: bool
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class ProfileRead(UserRead):
    tourist: Optional[TouristRead] = None
    host: Optional[HostRead] = None
    admin: Optional[AdminRead] = None


# --- Tours ---
class TourBase(BaseModel):
    title: str = Field(min_length=1)
    description: str
    destination: str
    city: Optional[str] = None
    country: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    price: Decimal = Field(gt=0)
    max_group_size: int = Field(gt=0)
    start_date: datetime.datetime
    end_date: datetime.datetime
    images: List[str] = []

    @field_validator("start_date", "end_date")
    @classmethod
    def naive_dates(cls, value):
        return to_naive_utc(value)


class TourCreate(TourBase):
    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date <= self.start_date:
            raise ValueError("Tour end date must be after start date")
        return self


class TourUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    destination: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, gt=0)
    max_group_size: Optional[int] = Field(default=None, gt=0)
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    images: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def naive_dates(cls, value):
        return to_naive_utc(value)


class TourRead(BaseModel):
    id: int
    host_id: int
    title: str
    description: str
    destination: str
    city: Optional[str] = None
    country: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    price: Money
    max_group_size: int
    current_group_size: int
    start_date: datetime.datetime
    end_date: datetime.datetime
    images: List[str] = []
    is_active: bool
    is_featured: bool
    views: int
    average_rating: float
    total_reviews: int
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class TourCompletion(BaseModel):
    tour_id: int
    completed_bookings: int


# --- Bookings ---
class BookingCreate(BaseModel):
    tour_id: int
    number_of_people: int = Field(ge=1)
    # Defaults to tour price x participants when omitted
    total_amount: Optional[Decimal] = Field(default=None, gt=0)
    special_requests: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.STRIPE


class BookingUpdate(BaseModel):
    number_of_people: Optional[int] = Field(default=None, ge=1)
    special_requests: Optional[str] = None


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class TourSummary(BaseModel):
    id: int
    title: str
    destination: str
    price: Money
    start_date: datetime.datetime
    end_date: datetime.datetime

    class Config:
        from_attributes = True


class BookingRead(BaseModel):
    id: int
    tour_id: int
    user_id: int
    tourist_id: int
    number_of_people: int
    total_amount: Money
    special_requests: Optional[str] = None
    status: BookingStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    is_reviewed: bool
    booking_date: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None
    tour: Optional[TourSummary] = None

    class Config:
        from_attributes = True


# --- Payments ---
class PaymentRead(BaseModel):
    id: int
    user_id: int
    booking_id: Optional[int] = None
    subscription_id: Optional[int] = None
    amount: Money
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    description: Optional[str] = None
    stripe_session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime.datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class CheckoutResponse(BaseModel):
    payment_id: int
    session_id: str
    checkout_url: str


class BookingPaymentInfo(BaseModel):
    booking_id: int
    total_amount: Money
    status: BookingStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    is_paid: bool
    can_pay: bool
    payment: Optional[PaymentRead] = None


class HostBookingStats(BaseModel):
    total_bookings: int
    pending: int
    confirmed: int
    cancelled: int
    completed: int
    total_revenue: Money
    upcoming_bookings: int


class TouristBookingStats(BaseModel):
    total_bookings: int
    pending: int
    confirmed: int
    cancelled: int
    completed: int
    total_spent: Money
    upcoming_trips: int


class MonthlyAmount(BaseModel):
    month: str
    amount: Money


class HostEarnings(BaseModel):
    balance: Money
    total_earnings: Money
    paid_bookings: int
    gross_revenue: Money
    monthly: List[MonthlyAmount]
    payments: List[PaymentRead]


class PaymentSummary(BaseModel):
    total_amount: Money
    status_counts: Dict[str, int]


class AdminPaymentsPage(Page[PaymentRead]):
    summary: PaymentSummary


# --- Subscriptions ---
class PlanCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    duration: int = Field(default=12, ge=1)
    tour_limit: int = Field(ge=0)
    blog_limit: Optional[int] = Field(default=None, ge=0)
    features: List[str] = []
    is_active: bool = True


class PlanUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, ge=1)
    tour_limit: Optional[int] = Field(default=None, ge=0)
    blog_limit: Optional[int] = Field(default=None, ge=0)
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None


class PlanRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: Money
    duration: int
    tour_limit: int
    blog_limit: Optional[int] = None
    features: List[str] = []
    is_active: bool

    class Config:
        from_attributes = True


class SubscriptionCreate(BaseModel):
    plan_id: int


class SubscriptionRead(BaseModel):
    id: int
    host_id: int
    plan_id: int
    status: SubscriptionStatus
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    tour_limit: int
    remaining_tours: int
    blog_limit: Optional[int] = None
    remaining_blogs: Optional[int] = None
    cancelled_at: Optional[datetime.datetime] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    plan: Optional[PlanRead] = None

    class Config:
        from_attributes = True


class SubscriptionCreated(BaseModel):
    subscription: SubscriptionRead
    payment_id: Optional[int] = None
    checkout_url: Optional[str] = None


class CurrentSubscription(BaseModel):
    plan_name: str
    is_free: bool
    tour_limit: int
    current_tour_count: int
    blog_limit: Optional[int] = None
    current_blog_count: int
    subscription: Optional[SubscriptionRead] = None


class SubscriptionAdminUpdate(BaseModel):
    status: Optional[SubscriptionStatus] = None
    extend_days: Optional[int] = Field(default=None, ge=1)
    # Relative adjustments, may be negative
    adjust_tour_limit: Optional[int] = None
    adjust_blog_limit: Optional[int] = None
    admin_notes: Optional[str] = None


# --- Payouts ---
class PayoutCreate(BaseModel):
    amount: Decimal
    method: PayoutMethod = PayoutMethod.STRIPE
    bank_details: Optional[dict] = None


class PayoutRead(BaseModel):
    id: int
    host_id: int
    amount: Money
    currency: str
    method: PayoutMethod
    status: PayoutStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class PayoutProcess(BaseModel):
    status: PayoutStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


class PayoutSummary(BaseModel):
    total_paid_out: Money
    pending_amount: Money
    completed_count: int
    pending_count: int
    failed_count: int


class PayoutHistory(Page[PayoutRead]):
    summary: PayoutSummary


class PayoutStats(BaseModel):
    balance: Money
    total_earnings: Money
    last_payout_at: Optional[datetime.datetime] = None
    minimum_payout: Money
    can_request_payout: bool
    recent_payouts: List[PayoutRead]


# --- Reviews ---
class ReviewCreate(BaseModel):
    booking_id: int
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = None
    # Only honoured for admins
    is_approved: Optional[bool] = None


class ReviewRead(BaseModel):
    id: int
    booking_id: int
    tour_id: int
    host_id: int
    tourist_id: int
    rating: int
    comment: Optional[str] = None
    is_approved: bool
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class TourReviews(Page[ReviewRead]):
    average_rating: float
    total_reviews: int
    rating_distribution: Dict[int, int]


# --- Blogs ---
class BlogCreate(BaseModel):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    cover_image: Optional[str] = None
    tags: List[str] = []


class BlogUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    cover_image: Optional[str] = None
    tags: Optional[List[str]] = None


class BlogApproval(BaseModel):
    is_approved: bool


class BlogRead(BaseModel):
    id: int
    host_id: int
    title: str
    content: str
    cover_image: Optional[str] = None
    tags: List[str] = []
    is_approved: bool
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True
