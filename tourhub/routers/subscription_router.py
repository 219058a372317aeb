from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..auth import get_current_admin, get_current_host
from ..database import get_db
from ..pagination import PageParams
from ..rate_limits import payment_limiter

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


# --- Plans ---

@router.get("/plans", response_model=schemas.Page[schemas.PlanRead])
def list_plans(
        search: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
):
    items, meta = crud.subscriptions.list_plans(
        db, params, search=search, min_price=min_price, max_price=max_price
    )
    return {"meta": meta, "data": items}


@router.get("/plans/{plan_id}", response_model=schemas.PlanRead)
def read_plan(plan_id: int, db: Session = Depends(get_db)):
    return crud.subscriptions.get_plan(db, plan_id)


@router.post("/plans", response_model=schemas.PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
        data: schemas.PlanCreate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.subscriptions.create_plan(db, data)


@router.patch("/plans/{plan_id}", response_model=schemas.PlanRead)
def update_plan(
        plan_id: int,
        data: schemas.PlanUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.subscriptions.update_plan(db, plan_id, data)


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_plan(
        plan_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    crud.subscriptions.delete_plan(db, plan_id)


# --- Host ---

@router.post("/", response_model=schemas.SubscriptionCreated, status_code=status.HTTP_201_CREATED)
def create_subscription(
        data: schemas.SubscriptionCreate,
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    """
    Free plans are activated immediately. Paid plans are created PENDING and
    the response carries the checkout URL.
    """
    subscription = crud.subscriptions.create_subscription(db, host, data.plan_id)
    if subscription.status == models.SubscriptionStatus.ACTIVE:
        return {"subscription": subscription}

    checkout = crud.payments.initiate_subscription_payment(db, subscription.id, host)
    db.refresh(subscription)
    return {
        "subscription": subscription,
        "payment_id": checkout.payment_id,
        "checkout_url": checkout.checkout_url,
    }


@router.post(
    "/{subscription_id}/pay",
    response_model=schemas.CheckoutResponse,
    dependencies=[Depends(payment_limiter)],
)
def pay_subscription(
        subscription_id: int,
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    return crud.payments.initiate_subscription_payment(db, subscription_id, host)


@router.get("/current", response_model=schemas.CurrentSubscription)
def current_subscription(db: Session = Depends(get_db), host: models.Host = Depends(get_current_host)):
    return crud.subscriptions.get_current_subscription(db, host)


@router.get("/my-subscriptions", response_model=schemas.Page[schemas.SubscriptionRead])
def my_subscriptions(
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        host: models.Host = Depends(get_current_host),
):
    items, meta = crud.subscriptions.get_host_subscriptions(db, host, params)
    return {"meta": meta, "data": items}


@router.post("/cancel", response_model=schemas.SubscriptionRead)
def cancel_subscription(db: Session = Depends(get_db), host: models.Host = Depends(get_current_host)):
    return crud.subscriptions.cancel_subscription(db, host)


# --- Admin ---

@router.get("/", response_model=schemas.Page[schemas.SubscriptionRead])
def list_subscriptions(
        subscription_status: Optional[models.SubscriptionStatus] = Query(None, alias="status"),
        host_id: Optional[int] = None,
        plan_id: Optional[int] = None,
        params: PageParams = Depends(),
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    items, meta = crud.subscriptions.list_subscriptions(
        db, params, status=subscription_status, host_id=host_id, plan_id=plan_id
    )
    return {"meta": meta, "data": items}


@router.get("/{subscription_id}", response_model=schemas.SubscriptionRead)
def read_subscription(
        subscription_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.subscriptions.get_subscription(db, subscription_id)


@router.patch("/{subscription_id}", response_model=schemas.SubscriptionRead)
def update_subscription(
        subscription_id: int,
        data: schemas.SubscriptionAdminUpdate,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    return crud.subscriptions.admin_update_subscription(db, subscription_id, data)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscription(
        subscription_id: int,
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_admin),
):
    crud.subscriptions.delete_subscription(db, subscription_id)
