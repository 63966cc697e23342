from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from accounts import seed_admin
from auth import create_token, hash_password, require_role, resolve_user, verify_password
from errors import AuthenticationError, AuthorizationError
from settings import get_settings

PASSWORD = "secret123"


def test_password_hashing():
    hashed = hash_password("hunter22")
    assert hashed != "hunter22"
    assert verify_password("hunter22", hashed)
    assert not verify_password("hunter23", hashed)
    assert not verify_password("hunter22", "")


def test_register_creates_plain_user(client, db):
    res = client.post(
        "/auth/register",
        json={"name": "Meera Iyer", "email": "Meera@Shop.io", "password": "secret123", "role": "admin"},
    )

    assert res.status_code == 201
    data = res.json()["data"]
    assert data["user"]["role"] == "user"
    assert data["user"]["email"] == "meera@shop.io"
    assert "passwordHash" not in data["user"]
    assert res.cookies.get("token") == data["token"]
    assert db["user"].find_one({"email": "meera@shop.io"})["password_hash"] != "secret123"


def test_register_stores_full_account(client, db):
    client.post("/auth/register", json={"name": "  Meera Iyer ", "email": "meera@shop.io", "password": "secret123"})

    stored = db["user"].find_one({"email": "meera@shop.io"})
    assert stored["name"] == "Meera Iyer"
    assert stored["is_active"] is True
    assert stored["total_orders"] == 0
    assert stored["cart"] == []
    assert stored["phone"] is None
    assert stored["address"] is None
    assert stored["last_login"] is not None
    assert stored["created_at"] == stored["updated_at"]


def test_register_duplicate_email(client, customer):
    res = client.post("/auth/register", json={"name": "Asha", "email": "asha@shop.io", "password": "secret123"})
    assert res.status_code == 400
    assert res.json()["message"] == "Email already registered"


def test_register_validation(client):
    res = client.post("/auth/register", json={"name": "A", "email": "nope", "password": "123"})
    assert res.status_code == 400
    assert {e["field"] for e in res.json()["errors"]} == {"name", "email", "password"}


def test_login_and_cookie_session(client, customer):
    res = client.post("/auth/login", json={"email": "asha@shop.io", "password": PASSWORD})

    assert res.status_code == 200
    token = res.json()["data"]["token"]
    claims = jwt.get_unverified_claims(token)
    assert claims["id"] == str(customer["_id"])
    assert claims["role"] == "user"

    # the cookie set at login authenticates later requests
    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.json()["data"]["user"]["email"] == "asha@shop.io"
    assert me.json()["data"]["user"]["lastLogin"] is not None

    client.post("/auth/logout")
    client.cookies.clear()
    assert client.get("/auth/me").status_code == 401


def test_login_wrong_password(client, customer):
    res = client.post("/auth/login", json={"email": "asha@shop.io", "password": "wrong-one"})
    assert res.status_code == 401
    assert res.json() == {"success": False, "message": "Invalid email or password"}


def test_login_inactive_account(client, make_user):
    make_user(email="gone@shop.io", is_active=False)
    res = client.post("/auth/login", json={"email": "gone@shop.io", "password": PASSWORD})
    assert res.status_code == 401
    assert "deactivated" in res.json()["message"]


def test_missing_token(client):
    res = client.get("/auth/me")
    assert res.status_code == 401
    assert res.json()["message"] == "Access denied. No authentication token provided."


def test_expired_token(client, customer):
    token = create_token({"id": str(customer["_id"]), "email": customer["email"]}, expires_minutes=-1)
    res = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Authentication token expired"


def test_tampered_token(client, customer):
    settings = get_settings()
    token = jwt.encode(
        {"id": str(customer["_id"]), "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "not-the-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    res = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid authentication token"


def test_malformed_header(client):
    assert client.get("/auth/me", headers={"Authorization": "Token abc"}).status_code == 401


def test_role_is_read_from_account(db, customer):
    # a token claiming admin does not grant admin
    token = create_token({"id": str(customer["_id"]), "email": customer["email"], "role": "admin"})
    user = resolve_user(db, token)
    assert user.role == "user"
    with pytest.raises(AuthorizationError):
        require_role("admin")(user)


def test_deactivated_user_token_is_rejected(db, make_user):
    user = make_user(email="late@shop.io")
    token = create_token({"id": str(user["_id"]), "email": user["email"]})
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": False}})
    with pytest.raises(AuthenticationError) as exc:
        resolve_user(db, token)
    assert exc.value.detail == "User account is inactive"


def test_bad_token_on_checkout_means_guest(place, make_product):
    shirt = make_product()
    res = place((shirt, "M", 1), headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 201
    assert res.json()["data"]["order"]["userId"] is None


def test_seed_admin(db, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "Boss@Shop.io")
    monkeypatch.setenv("ADMIN_PASSWORD", "admin-pass")
    get_settings.cache_clear()
    try:
        seed_admin(db)
        seed_admin(db)
    finally:
        get_settings.cache_clear()
    admins = list(db["user"].find({"role": "admin"}))
    assert [a["email"] for a in admins] == ["boss@shop.io"]
    assert verify_password("admin-pass", admins[0]["password_hash"])


def test_admin_user_management(client, db, customer, admin, admin_headers, customer_headers):
    listed = client.get("/admin/users", headers=admin_headers).json()["data"]
    assert listed["pagination"]["totalUsers"] == 2
    assert all("passwordHash" not in u for u in listed["users"])

    res = client.patch(f"/admin/users/{customer['_id']}/status", json={"isActive": False}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"]["user"]["isActive"] is False
    assert client.get("/auth/me", headers=customer_headers).status_code == 401

    own = client.patch(f"/admin/users/{admin['_id']}/status", json={"isActive": False}, headers=admin_headers)
    assert own.status_code == 403
    assert client.get("/admin/users", headers=customer_headers).status_code == 401
