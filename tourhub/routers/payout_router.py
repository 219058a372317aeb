from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import get_current_admin, get_current_host
from ..database import get_db
from ..pagination import PageParams
from ..rate_limits import payout_limiter

router = APIRouter(prefix="/payouts", tags=["Payouts"])


@router.post(
    "/request",
    response_model=schemas.PayoutRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(payout_limiter)],
)
def request_payout(
        data: schemas.PayoutCreate,
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    """
    Debits the balance and, for Stripe payouts to a connected account,
    transfers the amount right away. Bank payouts stay PENDING for an admin.
    """
    return crud.payouts.request_payout(db, host, data)


@router.get("/history", response_model=schemas.PayoutHistory)
def payout_history(
        payout_status: Optional[models.PayoutStatus] = Query(None, alias="status"),
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    return crud.payouts.get_payout_history(db, host, params, status=payout_status)


@router.get("/stats", response_model=schemas.PayoutStats)
def payout_stats(db: Session = Depends(get_db), host: models.Host = Depends(get_current_host)):
    return crud.payouts.get_payout_stats(db, host)


@router.get("/", response_model=schemas.PayoutHistory)
def list_payouts(
        payout_status: Optional[models.PayoutStatus] = Query(None, alias="status"),
        host_id: Optional[int] = None,
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.payouts.list_payouts(db, params, status=payout_status, host_id=host_id)


@router.patch("/{payout_id}", response_model=schemas.PayoutRead)
def process_payout(
        payout_id: int,
        data: schemas.PayoutProcess,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.payouts.process_payout_manually(db, payout_id, data)
