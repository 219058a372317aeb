import datetime
import json
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from tourhub import crud, models

from conftest import auth_header, make_tour


def make_plan(db: Session, name: str, price: str, tour_limit: int, blog_limit=None, **fields) -> models.SubscriptionPlan:
    plan = models.SubscriptionPlan(
        name=name, price=Decimal(price), tour_limit=tour_limit, blog_limit=blog_limit, **fields
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


def _active_subscription(db: Session, host: models.Host, plan: models.SubscriptionPlan, **fields):
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
    crud.subscriptions.activate_subscription(db, subscription)
    for key, value in fields.items():
        setattr(subscription, key, value)
    db.commit()
    db.refresh(subscription)
    return subscription


# --- Plans ---

def test_admin_creates_plan(client: TestClient, admin):
    response = client.post(
        "/subscriptions/plans",
        json={"name": "Pro", "price": "29.00", "tour_limit": 20, "blog_limit": None, "features": ["Priority"]},
        headers=auth_header(admin),
    )

    assert response.status_code == 201
    assert response.json()["price"] == 29
    assert response.json()["blog_limit"] is None


def test_duplicate_plan_name_refused(client: TestClient, db_session: Session, admin):
    make_plan(db_session, "Pro", "29", 20)
    response = client.post(
        "/subscriptions/plans", json={"name": "Pro", "price": "9", "tour_limit": 5}, headers=auth_header(admin)
    )
    assert response.status_code == 400


def test_host_cannot_create_plan(client: TestClient, host_user):
    response = client.post(
        "/subscriptions/plans", json={"name": "Pro", "price": "9", "tour_limit": 5}, headers=auth_header(host_user)
    )
    assert response.status_code == 403


def test_list_plans_filters_by_price(client: TestClient, db_session: Session):
    make_plan(db_session, "Free", "0", 4, 5)
    make_plan(db_session, "Pro", "29", 20)
    make_plan(db_session, "Retired", "15", 10, is_active=False)

    data = client.get("/subscriptions/plans?min_price=1").json()

    assert data["meta"]["total"] == 1
    assert data["data"][0]["name"] == "Pro"


def test_plan_with_history_is_deactivated_not_deleted(client: TestClient, db_session: Session, host_user, admin):
    plan = make_plan(db_session, "Pro", "29", 20)
    db_session.add(models.Subscription(
        host_id=host_user.host.id, plan_id=plan.id, status=models.SubscriptionStatus.CANCELLED,
        tour_limit=20, remaining_tours=20,
    ))
    db_session.commit()

    response = client.delete(f"/subscriptions/plans/{plan.id}", headers=auth_header(admin))

    assert response.status_code == 204
    db_session.expire_all()
    assert db_session.get(models.SubscriptionPlan, plan.id).is_active is False


# --- Host subscriptions ---

def test_free_plan_activates_immediately(client: TestClient, db_session: Session, host_user):
    plan = make_plan(db_session, "Starter", "0", 6, 8)

    response = client.post("/subscriptions/", json={"plan_id": plan.id}, headers=auth_header(host_user))

    assert response.status_code == 201
    data = response.json()
    assert data["subscription"]["status"] == "ACTIVE"
    assert data["checkout_url"] is None
    db_session.expire_all()
    host = db_session.get(models.Host, host_user.host.id)
    assert host.tour_limit == 6
    assert host.blog_limit == 8
    assert host.subscription_id == data["subscription"]["id"]


def test_paid_plan_returns_checkout_and_activates_on_webhook(
        client: TestClient, db_session: Session, stripe_mock, host_user
):
    plan = make_plan(db_session, "Pro", "29", 20, None, duration=1)

    response = client.post("/subscriptions/", json={"plan_id": plan.id}, headers=auth_header(host_user))

    assert response.status_code == 201
    data = response.json()
    assert data["subscription"]["status"] == "PENDING"
    assert data["checkout_url"].startswith("https://checkout.stripe.test/")
    metadata = stripe_mock.create_checkout_session.call_args.kwargs["metadata"]
    assert metadata["subscriptionId"] == str(data["subscription"]["id"])
    assert "bookingId" not in metadata

    event = {
        "id": "evt_sub",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": f"cs_test_{data['payment_id']}",
            "payment_status": "paid",
            "payment_intent": "pi_sub",
            "metadata": metadata,
        }},
    }
    stripe_mock.construct_event.return_value = event
    webhook = client.post(
        "/payments/webhook", content=json.dumps(event).encode(), headers={"stripe-signature": "t=1,v1=x"}
    )

    assert webhook.status_code == 200
    db_session.expire_all()
    subscription = db_session.get(models.Subscription, data["subscription"]["id"])
    assert subscription.status == models.SubscriptionStatus.ACTIVE
    assert subscription.end_date > subscription.start_date
    host = db_session.get(models.Host, host_user.host.id)
    assert host.tour_limit == 20
    assert host.blog_limit is None
    # Subscription money is platform revenue
    assert host.balance == 0


def test_expired_subscription_checkout_cancels_subscription(
        client: TestClient, db_session: Session, stripe_mock, host_user
):
    plan = make_plan(db_session, "Pro", "29", 20)
    data = client.post("/subscriptions/", json={"plan_id": plan.id}, headers=auth_header(host_user)).json()
    metadata = stripe_mock.create_checkout_session.call_args.kwargs["metadata"]

    event = {
        "id": "evt_sub_exp",
        "type": "checkout.session.expired",
        "data": {"object": {"id": f"cs_test_{data['payment_id']}", "metadata": metadata}},
    }
    stripe_mock.construct_event.return_value = event
    webhook = client.post(
        "/payments/webhook", content=json.dumps(event).encode(), headers={"stripe-signature": "t=1,v1=x"}
    )

    assert webhook.status_code == 200
    db_session.expire_all()
    payment = db_session.get(models.Payment, data["payment_id"])
    assert payment.status == models.PaymentStatus.FAILED
    assert payment.failure_reason == "Checkout session expired"
    subscription = db_session.get(models.Subscription, data["subscription"]["id"])
    assert subscription.status == models.SubscriptionStatus.CANCELLED
    assert subscription.cancelled_at is not None
    assert db_session.get(models.Host, host_user.host.id).subscription_id is None

    # The host may start over with a new checkout
    again = client.post("/subscriptions/", json={"plan_id": plan.id}, headers=auth_header(host_user))
    assert again.status_code == 201


def test_second_open_subscription_refused(client: TestClient, db_session: Session, stripe_mock, host_user):
    plan = make_plan(db_session, "Pro", "29", 20)
    client.post("/subscriptions/", json={"plan_id": plan.id}, headers=auth_header(host_user))

    response = client.post("/subscriptions/", json={"plan_id": plan.id}, headers=auth_header(host_user))

    assert response.status_code == 400
    assert response.json()["detail"] == "You already have an active or pending subscription"


def test_cancel_reverts_to_free_limits(client: TestClient, db_session: Session, host_user):
    make_plan(db_session, "Free", "0", 3, 2)
    plan = make_plan(db_session, "Pro", "29", 20, 10)
    _active_subscription(db_session, host_user.host, plan)
    for _ in range(5):
        make_tour(db_session, host_user.host)
    host_user.host.current_tour_count = 5
    db_session.commit()

    response = client.post("/subscriptions/cancel", headers=auth_header(host_user))

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    db_session.expire_all()
    host = db_session.get(models.Host, host_user.host.id)
    assert host.tour_limit == 3
    assert host.current_tour_count == 3
    assert host.subscription_id is None


def test_cancel_without_subscription(client: TestClient, host_user):
    response = client.post("/subscriptions/cancel", headers=auth_header(host_user))
    assert response.status_code == 404
    assert response.json()["detail"] == "No active subscription found"


def test_current_subscription_defaults_to_free(client: TestClient, host_user):
    data = client.get("/subscriptions/current", headers=auth_header(host_user)).json()
    assert data["plan_name"] == "Free"
    assert data["is_free"] is True
    assert data["tour_limit"] == 4
    assert data["subscription"] is None


def test_expired_subscription_is_detected_on_read(client: TestClient, db_session: Session, host_user):
    plan = make_plan(db_session, "Pro", "29", 20)
    subscription = _active_subscription(
        db_session, host_user.host, plan, end_date=models.utcnow() - datetime.timedelta(days=1)
    )

    data = client.get("/subscriptions/current", headers=auth_header(host_user)).json()

    assert data["plan_name"] == "Free"
    db_session.expire_all()
    assert db_session.get(models.Subscription, subscription.id).status == models.SubscriptionStatus.EXPIRED


def test_expire_due_subscriptions(db_session: Session, host_user):
    plan = make_plan(db_session, "Pro", "29", 20)
    _active_subscription(db_session, host_user.host, plan, end_date=models.utcnow() - datetime.timedelta(hours=1))

    assert crud.subscriptions.expire_due_subscriptions(db_session) == 1

    db_session.refresh(host_user.host)
    assert host_user.host.tour_limit == 4
    assert host_user.host.subscription_id is None
    assert crud.subscriptions.expire_due_subscriptions(db_session) == 0


def test_tour_creation_decrements_remaining_tours(client: TestClient, db_session: Session, host_user):
    plan = make_plan(db_session, "Pro", "29", 2)
    subscription = _active_subscription(db_session, host_user.host, plan)
    start = models.utcnow() + datetime.timedelta(days=5)
    payload = {
        "title": "Douro Valley", "description": "Vineyards", "destination": "Douro", "price": "90",
        "max_group_size": 6, "start_date": start.isoformat(),
        "end_date": (start + datetime.timedelta(days=1)).isoformat(),
    }

    assert client.post("/tour/", json=payload, headers=auth_header(host_user)).status_code == 201
    assert client.post("/tour/", json=payload, headers=auth_header(host_user)).status_code == 201
    third = client.post("/tour/", json=payload, headers=auth_header(host_user))

    assert third.status_code == 403
    db_session.expire_all()
    assert db_session.get(models.Subscription, subscription.id).remaining_tours == 0


# --- Admin ---

def test_admin_extends_and_adjusts_subscription(client: TestClient, db_session: Session, host_user, admin):
    plan = make_plan(db_session, "Pro", "29", 20, 10)
    subscription = _active_subscription(db_session, host_user.host, plan)
    old_end = subscription.end_date

    response = client.patch(
        f"/subscriptions/{subscription.id}",
        json={"extend_days": 30, "adjust_tour_limit": 5, "admin_notes": "Loyalty bonus"},
        headers=auth_header(admin),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["tour_limit"] == 25
    assert data["admin_notes"] == "Loyalty bonus"
    db_session.expire_all()
    assert db_session.get(models.Subscription, subscription.id).end_date == old_end + datetime.timedelta(days=30)
    assert db_session.get(models.Host, host_user.host.id).tour_limit == 25


def test_admin_activates_pending_subscription(client: TestClient, db_session: Session, stripe_mock, host_user, admin):
    plan = make_plan(db_session, "Pro", "29", 20)
    created = client.post("/subscriptions/", json={"plan_id": plan.id}, headers=auth_header(host_user)).json()

    response = client.patch(
        f"/subscriptions/{created['subscription']['id']}", json={"status": "ACTIVE"}, headers=auth_header(admin)
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ACTIVE"


def test_admin_cannot_delete_active_subscription(client: TestClient, db_session: Session, host_user, admin):
    subscription = _active_subscription(db_session, host_user.host, make_plan(db_session, "Pro", "29", 20))
    response = client.delete(f"/subscriptions/{subscription.id}", headers=auth_header(admin))
    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot delete an active subscription"


def test_admin_lists_subscriptions_by_status(client: TestClient, db_session: Session, host_user, admin):
    _active_subscription(db_session, host_user.host, make_plan(db_session, "Pro", "29", 20))

    data = client.get("/subscriptions/?status=ACTIVE", headers=auth_header(admin)).json()

    assert data["meta"]["total"] == 1
    assert data["data"][0]["plan"]["name"] == "Pro"
