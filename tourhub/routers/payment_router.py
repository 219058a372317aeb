from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import get_current_admin, get_current_host, get_current_user
from ..database import get_db
from ..pagination import PageParams

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook")
async def stripe_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None),
        db: Session = Depends(get_db),
):
    """
    Stripe webhook endpoint. The signature is verified before anything else;
    processing errors propagate as 500 so Stripe redelivers the event.
    """
    payload = await request.body()
    return await run_in_threadpool(crud.payments.handle_webhook, db, payload, stripe_signature)


@router.get("/history", response_model=schemas.Page[schemas.PaymentRead])
def payment_history(
        payment_status: Optional[models.PaymentStatus] = Query(None, alias="status"),
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
):
    items, meta = crud.payments.get_payment_history(db, current_user, params, status=payment_status)
    return {"meta": meta, "data": items}


@router.get("/host-earnings", response_model=schemas.HostEarnings)
def host_earnings(db: Session = Depends(get_db), host: models.Host = Depends(get_current_host)):
    return crud.payments.get_host_earnings(db, host)


@router.get("/", response_model=schemas.AdminPaymentsPage)
def all_payments(
        payment_status: Optional[models.PaymentStatus] = Query(None, alias="status"),
        user_id: Optional[int] = None,
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.payments.get_all_payments(db, params, status=payment_status, user_id=user_id)


@router.get("/{payment_id}", response_model=schemas.PaymentRead)
def read_payment(
        payment_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
):
    return crud.payments.get_payment(db, payment_id, current_user)
