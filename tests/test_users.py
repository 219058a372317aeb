from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from tourhub import models

from conftest import auth_header


def test_register_tourist(client: TestClient, db_session: Session):
    response = client.post(
        "/users/register/tourist",
        json={"name": "Ana", "email": "Ana@Example.com", "password": "secret123", "location": "Porto"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["email"] == "ana@example.com"
    assert data["role"] == "TOURIST"
    assert data["tourist"]["location"] == "Porto"
    assert data["tourist"]["total_spent"] == 0


def test_register_duplicate_email(client: TestClient, tourist):
    response = client.post(
        "/users/register/tourist",
        json={"name": "Again", "email": "tourist@example.com", "password": "secret123"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "User with this email already exists"


def test_register_host_uses_free_plan_limits(client: TestClient, db_session: Session):
    db_session.add(models.SubscriptionPlan(name="Free", price=0, duration=12, tour_limit=3, blog_limit=2))
    db_session.commit()

    response = client.post(
        "/users/register/host",
        json={"name": "Hugo", "email": "hugo@example.com", "password": "secret123"},
    )

    assert response.status_code == 201
    host = response.json()["host"]
    assert host["tour_limit"] == 3
    assert host["blog_limit"] == 2
    assert host["balance"] == 0


def test_register_host_falls_back_to_configured_limits(client: TestClient):
    response = client.post(
        "/users/register/host",
        json={"name": "Hugo", "email": "hugo@example.com", "password": "secret123"},
    )
    host = response.json()["host"]
    assert host["tour_limit"] == 4
    assert host["blog_limit"] == 5


def test_update_profile_ignores_fields_of_other_roles(client: TestClient, tourist):
    response = client.patch(
        "/users/me",
        json={"bio": "Loves hiking", "phone": "123", "stripe_account_id": "acct_1"},
        headers=auth_header(tourist),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["tourist"]["bio"] == "Loves hiking"
    assert data["host"] is None


def test_host_sets_stripe_account(client: TestClient, host_user):
    response = client.patch("/users/me", json={"stripe_account_id": "acct_123"}, headers=auth_header(host_user))
    assert response.json()["host"]["stripe_account_id"] == "acct_123"


def test_admin_lists_users_with_filters(client: TestClient, admin, tourist, host_user):
    response = client.get("/users/?role=HOST", headers=auth_header(admin))

    assert response.status_code == 200
    data = response.json()
    assert data["meta"]["total"] == 1
    assert data["data"][0]["email"] == "host@example.com"


def test_admin_blocks_user_and_user_loses_access(client: TestClient, admin, tourist):
    response = client.patch(f"/users/{tourist.id}/status", json={"status": "BLOCKED"}, headers=auth_header(admin))

    assert response.status_code == 200
    assert response.json()["status"] == "BLOCKED"
    assert client.get("/auth/me", headers=auth_header(tourist)).status_code == 401


def test_admin_cannot_change_own_status(client: TestClient, admin):
    response = client.patch(f"/users/{admin.id}/status", json={"status": "BLOCKED"}, headers=auth_header(admin))
    assert response.status_code == 400
    assert response.json()["detail"] == "You cannot change your own status"


def test_delete_user_is_soft(client: TestClient, db_session: Session, admin, tourist):
    response = client.delete(f"/users/{tourist.id}", headers=auth_header(admin))

    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(models.User, tourist.id).status == models.UserStatus.DELETED


def test_admin_creates_admin(client: TestClient, admin):
    response = client.post(
        "/users/admin",
        json={"name": "Second", "email": "second@example.com", "password": "secret123"},
        headers=auth_header(admin),
    )
    assert response.status_code == 201
    assert response.json()["admin"]["name"] == "Second"
