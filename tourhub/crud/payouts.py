"""
Host payouts.

A payout is two-phase: the balance is debited and a PENDING payout recorded
in one transaction, then the Stripe transfer is attempted. The transfer uses
an idempotency key derived from the payout id, so the maintenance scheduler
can safely re-drive payouts left PENDING by a crash between the two phases.
"""
import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from .. import models, payment_gateway, schemas
from ..config import settings
from ..exceptions import BadRequestError, NotFoundError, PaymentGatewayError
from ..pagination import PageParams, paginate

logger = logging.getLogger("tourhub.payouts")

CENT = Decimal("0.01")


def _format_amount(value) -> str:
    value = Decimal(value)
    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return str(value.quantize(CENT))


def request_payout(db: Session, host: models.Host, data: schemas.PayoutCreate) -> models.Payout:
    amount = Decimal(data.amount).quantize(CENT)
    if amount <= 0:
        raise BadRequestError("Payout amount must be greater than 0")
    if amount < settings.MIN_PAYOUT_AMOUNT:
        raise BadRequestError(f"Minimum payout amount is ${_format_amount(settings.MIN_PAYOUT_AMOUNT)}")
    if data.method == models.PayoutMethod.BANK and not data.bank_details:
        raise BadRequestError("Bank details are required for bank payouts")

    debited = db.execute(
        update(models.Host)
        .where(models.Host.id == host.id, models.Host.balance >= amount)
        .values(balance=models.Host.balance - amount)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.expire(host, ["balance"])
    if debited != 1:
        raise BadRequestError(
            f"Insufficient balance. Available: {_format_amount(host.balance)}, "
            f"Requested: {_format_amount(amount)}"
        )

    payout = models.Payout(
        host_id=host.id,
        amount=amount,
        currency=settings.CURRENCY,
        method=data.method,
        status=models.PayoutStatus.PENDING,
        bank_details=data.bank_details,
    )
    db.add(payout)
    db.commit()
    db.refresh(payout)
    logger.info(f"Payout {payout.id} of {amount} requested by host {host.id}")

    if payout.method == models.PayoutMethod.STRIPE and host.stripe_account_id:
        process_payout(db, payout)
        db.refresh(payout)
    return payout


def process_payout(db: Session, payout: models.Payout, raise_on_failure: bool = True) -> bool:
    """Attempts the Stripe transfer for a PENDING payout."""
    host = payout.host
    try:
        transfer_id = payment_gateway.create_transfer(payout.amount, host.stripe_account_id, payout.id)
    except payment_gateway.StripeError as e:
        logger.error(f"Transfer for payout {payout.id} failed: {e}")
        fail_payout(db, payout, str(e)[:500])
        if raise_on_failure:
            raise PaymentGatewayError("Payout transfer failed, the amount was returned to your balance")
        return False

    complete_payout(db, payout, transfer_id)
    return True


def complete_payout(db: Session, payout: models.Payout, transaction_id: Optional[str]) -> bool:
    now = models.utcnow()
    completed = db.execute(
        update(models.Payout)
        .where(models.Payout.id == payout.id, models.Payout.status == models.PayoutStatus.PENDING)
        .values(status=models.PayoutStatus.COMPLETED, transaction_id=transaction_id, processed_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if completed:
        payout.host.last_payout_at = now
    db.commit()
    db.refresh(payout)
    if completed:
        logger.info(f"Payout {payout.id} completed ({transaction_id})")
    return completed


def fail_payout(db: Session, payout: models.Payout, reason: str) -> bool:
    """
    Moves a PENDING payout to FAILED and credits the amount back.
    Only the transition out of PENDING credits, so it happens at most once.
    """
    failed = db.execute(
        update(models.Payout)
        .where(models.Payout.id == payout.id, models.Payout.status == models.PayoutStatus.PENDING)
        .values(status=models.PayoutStatus.FAILED, failure_reason=reason, processed_at=models.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if failed:
        db.execute(
            update(models.Host)
            .where(models.Host.id == payout.host_id)
            .values(balance=models.Host.balance + payout.amount)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    db.refresh(payout)
    if failed:
        logger.warning(f"Payout {payout.id} failed, {payout.amount} credited back to host {payout.host_id}")
    return failed


def reconcile_stale_payouts(db: Session) -> int:
    """Re-drives Stripe payouts left PENDING for longer than the configured threshold."""
    cutoff = models.utcnow() - datetime.timedelta(minutes=settings.STALE_PAYOUT_MINUTES)
    stale = db.query(models.Payout).join(models.Host).filter(
        models.Payout.status == models.PayoutStatus.PENDING,
        models.Payout.method == models.PayoutMethod.STRIPE,
        models.Payout.created_at < cutoff,
        models.Host.stripe_account_id.is_not(None),
    ).all()
    for payout in stale:
        logger.info(f"Re-driving stale payout {payout.id}")
        process_payout(db, payout, raise_on_failure=False)
    return len(stale)


# --- Reads ---

def _summary(db: Session, host_id: Optional[int] = None) -> schemas.PayoutSummary:
    query = db.query(
        models.Payout.status,
        func.count(models.Payout.id),
        func.coalesce(func.sum(models.Payout.amount), 0),
    )
    if host_id is not None:
        query = query.filter(models.Payout.host_id == host_id)
    rows = {status: (count, total) for status, count, total in query.group_by(models.Payout.status).all()}

    completed = rows.get(models.PayoutStatus.COMPLETED, (0, 0))
    pending = rows.get(models.PayoutStatus.PENDING, (0, 0))
    failed = rows.get(models.PayoutStatus.FAILED, (0, 0))
    return schemas.PayoutSummary(
        total_paid_out=completed[1],
        pending_amount=pending[1],
        completed_count=completed[0],
        pending_count=pending[0],
        failed_count=failed[0],
    )


def get_payout_history(
        db: Session, host: models.Host, params: PageParams, status: Optional[models.PayoutStatus] = None
) -> schemas.PayoutHistory:
    query = db.query(models.Payout).filter(models.Payout.host_id == host.id)
    if status is not None:
        query = query.filter(models.Payout.status == status)
    items, meta = paginate(query, params, models.Payout)
    return schemas.PayoutHistory(meta=meta, data=items, summary=_summary(db, host.id))


def get_payout_stats(db: Session, host: models.Host) -> schemas.PayoutStats:
    recent = db.query(models.Payout).filter(
        models.Payout.host_id == host.id
    ).order_by(models.Payout.created_at.desc(), models.Payout.id.desc()).limit(5).all()
    return schemas.PayoutStats(
        balance=host.balance,
        total_earnings=host.total_earnings,
        last_payout_at=host.last_payout_at,
        minimum_payout=settings.MIN_PAYOUT_AMOUNT,
        can_request_payout=Decimal(host.balance) >= settings.MIN_PAYOUT_AMOUNT,
        recent_payouts=recent,
    )


# --- Admin ---

def list_payouts(
        db: Session,
        params: PageParams,
        status: Optional[models.PayoutStatus] = None,
        host_id: Optional[int] = None,
) -> schemas.PayoutHistory:
    query = db.query(models.Payout)
    if status is not None:
        query = query.filter(models.Payout.status == status)
    if host_id is not None:
        query = query.filter(models.Payout.host_id == host_id)
    items, meta = paginate(query, params, models.Payout)
    return schemas.PayoutHistory(meta=meta, data=items, summary=_summary(db, host_id))


def process_payout_manually(db: Session, payout_id: int, data: schemas.PayoutProcess) -> models.Payout:
    """Settles a PENDING payout by hand, e.g. a bank transfer done outside Stripe."""
    payout = db.get(models.Payout, payout_id)
    if payout is None:
        raise NotFoundError("Payout not found")
    if payout.status != models.PayoutStatus.PENDING:
        raise BadRequestError("Only pending payouts can be processed")

    if data.status == models.PayoutStatus.COMPLETED:
        complete_payout(db, payout, data.transaction_id)
    elif data.status == models.PayoutStatus.FAILED:
        fail_payout(db, payout, data.failure_reason or "Rejected by admin")
    else:
        raise BadRequestError("Payout status can only be changed to COMPLETED or FAILED")
    return payout
