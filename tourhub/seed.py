import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from . import models, schemas
from .config import settings
from .crud import users
from .database import SessionLocal

logger = logging.getLogger("tourhub")

DEFAULT_SUBSCRIPTION_PLANS = [
    {
        "name": "Free",
        "description": "Perfect for new hosts starting out",
        "price": Decimal("0"),
        "duration": 12,
        "tour_limit": 4,
        "blog_limit": 5,
        "features": [
            "Create up to 4 tours per year",
            "Create up to 5 blog posts",
            "Basic profile listing",
            "Customer support",
        ],
    },
    {
        "name": "Standard",
        "description": "For growing hosts who want more exposure",
        "price": Decimal("9.99"),
        "duration": 12,
        "tour_limit": 12,
        "blog_limit": 25,
        "features": [
            "Create up to 12 tours per year",
            "Create up to 25 blog posts",
            "Featured in search results",
            "Priority customer support",
        ],
    },
    {
        "name": "Premium",
        "description": "For professional hosts seeking maximum exposure",
        "price": Decimal("19.99"),
        "duration": 12,
        "tour_limit": 50,
        "blog_limit": None,
        "features": [
            "Create up to 50 tours per year",
            "Create unlimited blog posts",
            "Featured in search results",
            "Priority customer support",
        ],
    },
]


def seed_subscription_plans(db: Session) -> int:
    """Creates the default plans that are missing; existing plans are left alone."""
    created = 0
    for plan_data in DEFAULT_SUBSCRIPTION_PLANS:
        exists = db.query(models.SubscriptionPlan).filter(
            models.SubscriptionPlan.name == plan_data["name"]
        ).first()
        if exists is None:
            db.add(models.SubscriptionPlan(is_active=True, **plan_data))
            created += 1
            logger.info(f"Created subscription plan: {plan_data['name']}")
    db.commit()
    return created


def seed_admin(db: Session):
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return None
    if users.get_user_by_email(db, settings.ADMIN_EMAIL) is not None:
        return None
    admin = users.create_admin(
        db,
        schemas.AdminCreate(name="Admin", email=settings.ADMIN_EMAIL, password=settings.ADMIN_PASSWORD),
        need_password_change=True,
    )
    logger.info(f"Created admin user {admin.email}")
    return admin


def run_startup_seeds() -> None:
    db = SessionLocal()
    try:
        seed_subscription_plans(db)
        seed_admin(db)
    except Exception as e:
        logger.error(f"Startup seeding failed: {e}")
        db.rollback()
        raise
    finally:
        db.close()
