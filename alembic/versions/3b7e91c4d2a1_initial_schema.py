"""initial schema

Revision ID: 3b7e91c4d2a1
Revises:
Create Date: 2026-10-18 09:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b7e91c4d2a1'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


userrole_enum = sa.Enum('ADMIN', 'HOST', 'TOURIST', name='userrole')
userstatus_enum = sa.Enum('ACTIVE', 'BLOCKED', 'DELETED', name='userstatus')
bookingstatus_enum = sa.Enum('PENDING', 'CONFIRMED', 'CANCELLED', 'COMPLETED', name='bookingstatus')
paymentstatus_enum = sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED', name='paymentstatus')
paymentmethod_enum = sa.Enum('STRIPE', 'COD', name='paymentmethod')
subscriptionstatus_enum = sa.Enum('PENDING', 'ACTIVE', 'CANCELLED', 'EXPIRED', name='subscriptionstatus')
payoutstatus_enum = sa.Enum('PENDING', 'COMPLETED', 'FAILED', name='payoutstatus')
# SQLAlchemy stores enum member names, not values
payoutmethod_enum = sa.Enum('STRIPE', 'BANK', name='payoutmethod')

MONEY = sa.Numeric(12, 2)


def _timestamps():
    return [
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=True),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('role', userrole_enum, nullable=False),
        sa.Column('status', userstatus_enum, nullable=False),
        sa.Column('need_password_change', sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'tourists',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('profile_photo', sa.String(), nullable=True),
        sa.Column('bio', sa.Text(), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('total_spent', MONEY, nullable=False, server_default='0'),
    )
    op.create_index('ix_tourists_id', 'tourists', ['id'])

    op.create_table(
        'admins',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('contact_number', sa.String(50), nullable=True),
    )
    op.create_index('ix_admins_id', 'admins', ['id'])

    op.create_table(
        'hosts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('bio', sa.Text(), nullable=True),
        sa.Column('profile_photo', sa.String(), nullable=True),
        sa.Column('balance', MONEY, nullable=False, server_default='0'),
        sa.Column('total_earnings', MONEY, nullable=False, server_default='0'),
        sa.Column('last_payout_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('stripe_account_id', sa.String(255), nullable=True),
        sa.Column('tour_limit', sa.Integer(), nullable=False),
        sa.Column('current_tour_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('blog_limit', sa.Integer(), nullable=True),
        sa.Column('current_blog_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('average_rating', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_reviews', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_hosts_id', 'hosts', ['id'])

    op.create_table(
        'tours',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('hosts.id'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('destination', sa.String(255), nullable=False),
        sa.Column('city', sa.String(255), nullable=True),
        sa.Column('country', sa.String(255), nullable=True),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('difficulty', sa.String(50), nullable=True),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('max_group_size', sa.Integer(), nullable=False),
        sa.Column('current_group_size', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_date', sa.TIMESTAMP(), nullable=False),
        sa.Column('end_date', sa.TIMESTAMP(), nullable=False),
        sa.Column('images', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_featured', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('views', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('average_rating', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_reviews', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_earnings', MONEY, nullable=False, server_default='0'),
        *_timestamps(),
        sa.CheckConstraint('max_group_size > 0', name='ck_tours_max_group_size_positive'),
        sa.CheckConstraint('current_group_size >= 0', name='ck_tours_current_group_size_non_negative'),
    )
    op.create_index('ix_tours_id', 'tours', ['id'])
    op.create_index('ix_tours_host_id', 'tours', ['host_id'])
    op.create_index('ix_tours_destination', 'tours', ['destination'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('duration', sa.Integer(), nullable=False, server_default='12'),
        sa.Column('tour_limit', sa.Integer(), nullable=False),
        sa.Column('blog_limit', sa.Integer(), nullable=True),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_subscription_plans_id', 'subscription_plans', ['id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('hosts.id'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('status', subscriptionstatus_enum, nullable=False),
        sa.Column('start_date', sa.TIMESTAMP(), nullable=True),
        sa.Column('end_date', sa.TIMESTAMP(), nullable=True),
        sa.Column('tour_limit', sa.Integer(), nullable=False),
        sa.Column('remaining_tours', sa.Integer(), nullable=False),
        sa.Column('blog_limit', sa.Integer(), nullable=True),
        sa.Column('remaining_blogs', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_host_id', 'subscriptions', ['host_id'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tour_id', sa.Integer(), sa.ForeignKey('tours.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('tourist_id', sa.Integer(), sa.ForeignKey('tourists.id'), nullable=False),
        sa.Column('number_of_people', sa.Integer(), nullable=False),
        sa.Column('total_amount', MONEY, nullable=False),
        sa.Column('special_requests', sa.Text(), nullable=True),
        sa.Column('status', bookingstatus_enum, nullable=False),
        sa.Column('payment_status', paymentstatus_enum, nullable=False),
        sa.Column('payment_method', paymentmethod_enum, nullable=False),
        sa.Column('is_reviewed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('booking_date', sa.TIMESTAMP(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('number_of_people > 0', name='ck_bookings_number_of_people_positive'),
    )
    op.create_index('ix_bookings_id', 'bookings', ['id'])
    op.create_index('ix_bookings_tour_id', 'bookings', ['tour_id'])
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_bookings_tourist_id', 'bookings', ['tourist_id'])
    op.create_index('ix_bookings_tour_status', 'bookings', ['tour_id', 'status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id'), nullable=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='usd'),
        sa.Column('payment_method', paymentmethod_enum, nullable=False),
        sa.Column('status', paymentstatus_enum, nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('stripe_session_id', sa.String(255), nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('credited_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('refunded_at', sa.TIMESTAMP(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('booking_id IS NULL OR subscription_id IS NULL', name='ck_payments_single_target'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_booking_id', 'payments', ['booking_id'])
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_stripe_session_id', 'payments', ['stripe_session_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False, unique=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('received_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('hosts.id'), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='usd'),
        sa.Column('method', payoutmethod_enum, nullable=False),
        sa.Column('status', payoutstatus_enum, nullable=False),
        sa.Column('bank_details', sa.JSON(), nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('processed_at', sa.TIMESTAMP(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payouts_id', 'payouts', ['id'])
    op.create_index('ix_payouts_host_id', 'payouts', ['host_id'])
    op.create_index('ix_payouts_status', 'payouts', ['status'])

    op.create_table(
        'reviews',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, unique=True),
        sa.Column('tour_id', sa.Integer(), sa.ForeignKey('tours.id'), nullable=False),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('hosts.id'), nullable=False),
        sa.Column('tourist_id', sa.Integer(), sa.ForeignKey('tourists.id'), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('is_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint('rating >= 1 AND rating <= 5', name='ck_reviews_rating_range'),
    )
    op.create_index('ix_reviews_id', 'reviews', ['id'])
    op.create_index('ix_reviews_tour_id', 'reviews', ['tour_id'])
    op.create_index('ix_reviews_host_id', 'reviews', ['host_id'])
    op.create_index('ix_reviews_tourist_id', 'reviews', ['tourist_id'])

    op.create_table(
        'blogs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('hosts.id'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('cover_image', sa.String(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('is_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('ix_blogs_id', 'blogs', ['id'])
    op.create_index('ix_blogs_host_id', 'blogs', ['host_id'])

    op.create_table(
        'outbox_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('topic', sa.String(255), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('ix_outbox_events_id', 'outbox_events', ['id'])
    op.create_index('ix_outbox_events_status', 'outbox_events', ['status'])


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        'outbox_events', 'blogs', 'reviews', 'payouts', 'webhook_events', 'payments',
        'bookings', 'subscriptions', 'subscription_plans', 'tours', 'hosts', 'admins',
        'tourists', 'users',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum in (
        payoutmethod_enum, payoutstatus_enum, subscriptionstatus_enum, paymentmethod_enum,
        paymentstatus_enum, bookingstatus_enum, userstatus_enum, userrole_enum,
    ):
        enum.drop(bind, checkfirst=True)
