import calendar
import datetime
import logging
from typing import Optional

from sqlalchemy import case, or_, update
from sqlalchemy.orm import Session

from .. import models, schemas
from ..config import settings
from ..exceptions import BadRequestError, ForbiddenError, NotFoundError
from ..pagination import PageParams, paginate, search_filter

logger = logging.getLogger("tourhub")

FREE_PLAN_NAME = "Free"


def add_months(value: datetime.datetime, months: int) -> datetime.datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


# --- Plans ---

def create_plan(db: Session, data: schemas.PlanCreate) -> models.SubscriptionPlan:
    if db.query(models.SubscriptionPlan).filter(models.SubscriptionPlan.name == data.name).first():
        raise BadRequestError("A plan with this name already exists")
    plan = models.SubscriptionPlan(**data.model_dump())
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


def list_plans(
        db: Session,
        params: PageParams,
        search: Optional[str] = None,
        min_price=None,
        max_price=None,
        active_only: bool = True,
):
    query = db.query(models.SubscriptionPlan)
    if active_only:
        query = query.filter(models.SubscriptionPlan.is_active.is_(True))
    condition = search_filter(search, models.SubscriptionPlan.name, models.SubscriptionPlan.description)
    if condition is not None:
        query = query.filter(condition)
    if min_price is not None:
        query = query.filter(models.SubscriptionPlan.price >= min_price)
    if max_price is not None:
        query = query.filter(models.SubscriptionPlan.price <= max_price)
    return paginate(query, params, models.SubscriptionPlan, default_sort="price")


def get_plan(db: Session, plan_id: int) -> models.SubscriptionPlan:
    plan = db.get(models.SubscriptionPlan, plan_id)
    if plan is None:
        raise NotFoundError("Subscription plan not found")
    return plan


def update_plan(db: Session, plan_id: int, data: schemas.PlanUpdate) -> models.SubscriptionPlan:
    plan = get_plan(db, plan_id)
    changes = data.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] != plan.name:
        if db.query(models.SubscriptionPlan).filter(models.SubscriptionPlan.name == changes["name"]).first():
            raise BadRequestError("A plan with this name already exists")
    for key, value in changes.items():
        if value is None and key != "blog_limit" and key != "description":
            continue
        setattr(plan, key, value)
    db.commit()
    db.refresh(plan)
    return plan


def delete_plan(db: Session, plan_id: int) -> None:
    """Plans still referenced by past subscriptions are only deactivated."""
    plan = get_plan(db, plan_id)
    subscriptions = db.query(models.Subscription).filter(models.Subscription.plan_id == plan.id)
    if subscriptions.filter(models.Subscription.status == models.SubscriptionStatus.ACTIVE).count():
        raise BadRequestError("Cannot delete a plan with active subscriptions")

    if subscriptions.count():
        plan.is_active = False
    else:
        db.delete(plan)
    db.commit()


def free_limits(db: Session):
    plan = db.query(models.SubscriptionPlan).filter(models.SubscriptionPlan.name == FREE_PLAN_NAME).first()
    if plan is None:
        return settings.FREE_TOUR_LIMIT, settings.FREE_BLOG_LIMIT
    return plan.tour_limit, plan.blog_limit


# --- Host limits ---

def apply_free_limits(db: Session, host: models.Host) -> None:
    """Reverts a host to the free plan. Counters are clamped to the new limits."""
    tour_limit, blog_limit = free_limits(db)
    host.tour_limit = tour_limit
    host.current_tour_count = min(host.current_tour_count, tour_limit)
    host.blog_limit = blog_limit
    if blog_limit is not None:
        host.current_blog_count = min(host.current_blog_count, blog_limit)
    host.subscription_id = None


def activate_subscription(db: Session, subscription: models.Subscription) -> None:
    """
    Starts the subscription now and moves the host onto the plan's limits.
    Note: Does NOT commit.
    """
    plan = subscription.plan
    now = models.utcnow()
    subscription.status = models.SubscriptionStatus.ACTIVE
    subscription.start_date = now
    subscription.end_date = add_months(now, plan.duration)
    subscription.tour_limit = plan.tour_limit
    subscription.remaining_tours = plan.tour_limit
    subscription.blog_limit = plan.blog_limit
    subscription.remaining_blogs = plan.blog_limit

    host = subscription.host
    host.tour_limit = plan.tour_limit
    host.current_tour_count = 0
    host.blog_limit = plan.blog_limit
    host.current_blog_count = 0
    host.subscription_id = subscription.id
    logger.info(f"Subscription {subscription.id} activated for host {host.id} until {subscription.end_date}")


def expire_subscription(db: Session, subscription: models.Subscription) -> None:
    """Note: Does NOT commit."""
    subscription.status = models.SubscriptionStatus.EXPIRED
    host = subscription.host
    if host.subscription_id == subscription.id:
        apply_free_limits(db, host)
    logger.info(f"Subscription {subscription.id} of host {host.id} expired")


def refresh_host_limits(db: Session, host: models.Host) -> None:
    """Expires the host's subscription on the spot if its end date has passed."""
    if host.subscription_id is None:
        return
    subscription = db.get(models.Subscription, host.subscription_id)
    if (
            subscription is not None
            and subscription.status == models.SubscriptionStatus.ACTIVE
            and subscription.end_date is not None
            and subscription.end_date < models.utcnow()
    ):
        expire_subscription(db, subscription)
        db.commit()
        db.refresh(host)


def expire_due_subscriptions(db: Session) -> int:
    due = db.query(models.Subscription).filter(
        models.Subscription.status == models.SubscriptionStatus.ACTIVE,
        models.Subscription.end_date < models.utcnow(),
    ).all()
    for subscription in due:
        expire_subscription(db, subscription)
    if due:
        db.commit()
    return len(due)


def tour_limit_message(host: models.Host) -> str:
    return (
        f"You have reached your tour limit ({host.current_tour_count}/{host.tour_limit}). "
        "Please upgrade your subscription to create more tours."
    )


def blog_limit_message(host: models.Host) -> str:
    return (
        f"You have reached your blog limit ({host.current_blog_count}/{host.blog_limit}). "
        "Please upgrade your subscription to create more blogs."
    )


def _execute(db: Session, stmt) -> int:
    return db.execute(stmt.execution_options(synchronize_session=False)).rowcount


def take_tour_slot(db: Session, host: models.Host) -> None:
    """
    Counts one more tour against the host's limit with a single conditional
    UPDATE, failing if the limit was reached concurrently. Does NOT commit.
    """
    taken = _execute(db, update(models.Host).where(
        models.Host.id == host.id,
        models.Host.current_tour_count < models.Host.tour_limit,
    ).values(current_tour_count=models.Host.current_tour_count + 1))
    db.expire(host, ["current_tour_count"])
    if taken != 1:
        raise ForbiddenError(tour_limit_message(host))

    if host.subscription_id is not None:
        _execute(db, update(models.Subscription).where(
            models.Subscription.id == host.subscription_id,
            models.Subscription.status == models.SubscriptionStatus.ACTIVE,
            models.Subscription.remaining_tours > 0,
        ).values(remaining_tours=models.Subscription.remaining_tours - 1))


def release_tour_slot(db: Session, host: models.Host) -> None:
    _execute(db, update(models.Host).where(models.Host.id == host.id).values(
        current_tour_count=case(
            (models.Host.current_tour_count > 0, models.Host.current_tour_count - 1),
            else_=0,
        )
    ))
    db.expire(host, ["current_tour_count"])

    if host.subscription_id is not None:
        _execute(db, update(models.Subscription).where(
            models.Subscription.id == host.subscription_id,
            models.Subscription.status == models.SubscriptionStatus.ACTIVE,
            models.Subscription.remaining_tours < models.Subscription.tour_limit,
        ).values(remaining_tours=models.Subscription.remaining_tours + 1))


def take_blog_slot(db: Session, host: models.Host) -> None:
    taken = _execute(db, update(models.Host).where(
        models.Host.id == host.id,
        or_(
            models.Host.blog_limit.is_(None),
            models.Host.current_blog_count < models.Host.blog_limit,
        ),
    ).values(current_blog_count=models.Host.current_blog_count + 1))
    db.expire(host, ["current_blog_count"])
    if taken != 1:
        raise ForbiddenError(blog_limit_message(host))

    if host.subscription_id is not None:
        _execute(db, update(models.Subscription).where(
            models.Subscription.id == host.subscription_id,
            models.Subscription.status == models.SubscriptionStatus.ACTIVE,
            models.Subscription.remaining_blogs.is_not(None),
            models.Subscription.remaining_blogs > 0,
        ).values(remaining_blogs=models.Subscription.remaining_blogs - 1))


def release_blog_slot(db: Session, host: models.Host) -> None:
    _execute(db, update(models.Host).where(models.Host.id == host.id).values(
        current_blog_count=case(
            (models.Host.current_blog_count > 0, models.Host.current_blog_count - 1),
            else_=0,
        )
    ))
    db.expire(host, ["current_blog_count"])

    if host.subscription_id is not None:
        _execute(db, update(models.Subscription).where(
            models.Subscription.id == host.subscription_id,
            models.Subscription.status == models.SubscriptionStatus.ACTIVE,
            models.Subscription.remaining_blogs.is_not(None),
            models.Subscription.remaining_blogs < models.Subscription.blog_limit,
        ).values(remaining_blogs=models.Subscription.remaining_blogs + 1))


# --- Host subscriptions ---

def _open_subscription(db: Session, host: models.Host) -> Optional[models.Subscription]:
    return db.query(models.Subscription).filter(
        models.Subscription.host_id == host.id,
        models.Subscription.status.in_([
            models.SubscriptionStatus.ACTIVE,
            models.SubscriptionStatus.PENDING,
        ]),
    ).order_by(models.Subscription.id.desc()).first()


def create_subscription(db: Session, host: models.Host, plan_id: int) -> models.Subscription:
    """
    Creates a subscription for the host. Free plans are active immediately;
    paid plans stay PENDING until their checkout settles.
    """
    plan = get_plan(db, plan_id)
    if not plan.is_active:
        raise BadRequestError("This plan is not available")

    refresh_host_limits(db, host)
    if _open_subscription(db, host) is not None:
        raise BadRequestError("You already have an active or pending subscription")

    subscription = models.Subscription(
        host_id=host.id,
        plan_id=plan.id,
        status=models.SubscriptionStatus.PENDING,
        tour_limit=plan.tour_limit,
        remaining_tours=plan.tour_limit,
        blog_limit=plan.blog_limit,
        remaining_blogs=plan.blog_limit,
    )
    db.add(subscription)
    db.flush()

    if plan.price == 0:
        activate_subscription(db, subscription)

    db.commit()
    db.refresh(subscription)
    logger.info(f"Subscription {subscription.id} ({plan.name}) created for host {host.id}")
    return subscription


def get_current_subscription(db: Session, host: models.Host) -> schemas.CurrentSubscription:
    refresh_host_limits(db, host)
    subscription = db.query(models.Subscription).filter(
        models.Subscription.host_id == host.id,
        models.Subscription.status == models.SubscriptionStatus.ACTIVE,
    ).order_by(models.Subscription.id.desc()).first()

    if subscription is None:
        return schemas.CurrentSubscription(
            plan_name=FREE_PLAN_NAME,
            is_free=True,
            tour_limit=host.tour_limit,
            current_tour_count=host.current_tour_count,
            blog_limit=host.blog_limit,
            current_blog_count=host.current_blog_count,
        )
    return schemas.CurrentSubscription(
        plan_name=subscription.plan.name,
        is_free=subscription.plan.price == 0,
        tour_limit=host.tour_limit,
        current_tour_count=host.current_tour_count,
        blog_limit=host.blog_limit,
        current_blog_count=host.current_blog_count,
        subscription=subscription,
    )


def _cancel(db: Session, subscription: models.Subscription) -> None:
    subscription.status = models.SubscriptionStatus.CANCELLED
    subscription.cancelled_at = models.utcnow()
    for payment in subscription.payments:
        if payment.status in models.LIVE_PAYMENT_STATUSES:
            payment.status = models.PaymentStatus.CANCELLED
            payment.failure_reason = "Subscription cancelled"
    host = subscription.host
    if host.subscription_id == subscription.id:
        apply_free_limits(db, host)


def cancel_subscription(db: Session, host: models.Host) -> models.Subscription:
    subscription = _open_subscription(db, host)
    if subscription is None:
        raise NotFoundError("No active subscription found")
    _cancel(db, subscription)
    db.commit()
    db.refresh(subscription)
    logger.info(f"Subscription {subscription.id} cancelled by host {host.id}")
    return subscription


def get_host_subscriptions(db: Session, host: models.Host, params: PageParams):
    query = db.query(models.Subscription).filter(models.Subscription.host_id == host.id)
    return paginate(query, params, models.Subscription)


# --- Admin ---

def list_subscriptions(
        db: Session,
        params: PageParams,
        status: Optional[models.SubscriptionStatus] = None,
        host_id: Optional[int] = None,
        plan_id: Optional[int] = None,
):
    query = db.query(models.Subscription)
    if status is not None:
        query = query.filter(models.Subscription.status == status)
    if host_id is not None:
        query = query.filter(models.Subscription.host_id == host_id)
    if plan_id is not None:
        query = query.filter(models.Subscription.plan_id == plan_id)
    return paginate(query, params, models.Subscription)


def get_subscription(db: Session, subscription_id: int) -> models.Subscription:
    subscription = db.get(models.Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


def admin_update_subscription(
        db: Session, subscription_id: int, data: schemas.SubscriptionAdminUpdate
) -> models.Subscription:
    subscription = get_subscription(db, subscription_id)
    host = subscription.host

    if data.status is not None and data.status != subscription.status:
        if data.status == models.SubscriptionStatus.ACTIVE:
            if subscription.status != models.SubscriptionStatus.PENDING:
                raise BadRequestError("Only pending subscriptions can be activated")
            if _open_subscription(db, host) not in (None, subscription):
                raise BadRequestError("Host already has another active or pending subscription")
            activate_subscription(db, subscription)
        elif data.status == models.SubscriptionStatus.CANCELLED:
            _cancel(db, subscription)
        elif data.status == models.SubscriptionStatus.EXPIRED:
            expire_subscription(db, subscription)
        else:
            raise BadRequestError("A subscription cannot be moved back to PENDING")

    if data.extend_days:
        base = subscription.end_date or models.utcnow()
        subscription.end_date = base + datetime.timedelta(days=data.extend_days)

    is_linked = host.subscription_id == subscription.id
    if data.adjust_tour_limit is not None:
        subscription.tour_limit = max(1, subscription.tour_limit + data.adjust_tour_limit)
        subscription.remaining_tours = max(0, subscription.remaining_tours + data.adjust_tour_limit)
        if is_linked:
            host.tour_limit = subscription.tour_limit

    if data.adjust_blog_limit is not None and subscription.blog_limit is not None:
        subscription.blog_limit = max(0, subscription.blog_limit + data.adjust_blog_limit)
        subscription.remaining_blogs = max(0, (subscription.remaining_blogs or 0) + data.adjust_blog_limit)
        if is_linked:
            host.blog_limit = subscription.blog_limit

    if data.admin_notes:
        subscription.admin_notes = data.admin_notes

    db.commit()
    db.refresh(subscription)
    return subscription


def delete_subscription(db: Session, subscription_id: int) -> None:
    subscription = get_subscription(db, subscription_id)
    if subscription.status == models.SubscriptionStatus.ACTIVE:
        raise BadRequestError("Cannot delete an active subscription")
    if any(p.status == models.PaymentStatus.COMPLETED for p in subscription.payments):
        raise BadRequestError("Cannot delete a subscription with completed payments")

    for payment in list(subscription.payments):
        db.delete(payment)
    if subscription.host.subscription_id == subscription.id:
        subscription.host.subscription_id = None
    db.delete(subscription)
    db.commit()
