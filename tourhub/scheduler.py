import asyncio
import logging

from sqlalchemy.orm import Session

from .config import settings
from .crud import payments, payouts, subscriptions
from .database import SessionLocal

logger = logging.getLogger("tourhub.scheduler")


def run_maintenance(db: Session) -> dict:
    """
    One maintenance pass: expire subscriptions past their end date,
    re-drive stale Stripe payouts and retry refunds that failed at settlement.
    """
    expired = subscriptions.expire_due_subscriptions(db)
    if expired:
        logger.info(f"Expired {expired} subscriptions.")

    redriven = payouts.reconcile_stale_payouts(db)
    if redriven:
        logger.info(f"Re-drove {redriven} stale payouts.")

    refunded = payments.retry_pending_refunds(db)
    if refunded:
        logger.info(f"Issued {refunded} pending refunds.")

    return {"expired_subscriptions": expired, "redriven_payouts": redriven, "refunds": refunded}


async def run_maintenance_scheduler():
    """
    Main background loop for the scheduler.
    """
    while True:
        logger.info("Scheduler waking up for maintenance...")
        db: Session = SessionLocal()
        try:
            # Stripe calls are blocking, keep them off the event loop
            await asyncio.to_thread(run_maintenance, db)
        except Exception as e:
            logger.error(f"Error in maintenance scheduler loop: {e}")
            db.rollback()
        finally:
            db.close()

        await asyncio.sleep(settings.SCHEDULER_POLL_SECONDS)
