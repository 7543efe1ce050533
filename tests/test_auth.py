from datetime import timedelta

from app import log_level
from auth import has_permission, valid_pin


def test_login_returns_token_and_permissions(client):
    resp = client.post("/api/auth/login", json={"username": "admin", "pin": "1234"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["token"]
    assert body["user"]["username"] == "admin"
    assert body["user"]["permissions"] == ["*"]
    assert "pin_hash" not in body["user"]


def test_login_rejects_wrong_pin_and_unknown_user(client):
    resp = client.post("/api/auth/login", json={"username": "admin", "pin": "9999"})
    assert resp.status_code == 401
    assert resp.get_json() == {"success": False, "error": "Invalid username or PIN"}

    resp = client.post("/api/auth/login", json={"username": "ghost", "pin": "1234"})
    assert resp.status_code == 401


def test_login_requires_fields_and_json(client):
    assert client.post("/api/auth/login", json={"username": "admin"}).status_code == 400
    assert client.post("/api/auth/login", data="username=admin").status_code == 400


def test_inactive_user_cannot_log_in(client, make_user):
    make_user("ram", "waiter", pin="2222", is_active=False)
    resp = client.post("/api/auth/login", json={"username": "ram", "pin": "2222"})
    assert resp.status_code == 401


def test_protected_routes_require_bearer_token(client):
    resp = client.get("/api/restaurant/orders")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "Authentication required"

    resp = client.get("/api/restaurant/orders", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


def test_logout_revokes_session(client, admin_headers):
    assert client.get("/api/auth/me", headers=admin_headers).status_code == 200

    resp = client.post("/api/auth/logout", headers=admin_headers)
    assert resp.status_code == 200

    assert client.get("/api/auth/me", headers=admin_headers).status_code == 401


def test_verify_endpoint(client, admin_headers):
    token = admin_headers["Authorization"].split(" ", 1)[1]
    resp = client.post("/api/auth/verify", json={"token": token})
    assert resp.status_code == 200
    assert resp.get_json()["valid"] is True

    resp = client.post("/api/auth/verify", json={"token": "garbage"})
    assert resp.status_code == 401
    assert resp.get_json()["valid"] is False

    assert client.post("/api/auth/verify", json={}).status_code == 401


def test_expired_session_is_rejected(app, client, admin_headers):
    from database import db, now_utc, UserSession

    with app.app_context():
        UserSession.query.update({"expires_at": now_utc() - timedelta(minutes=1)})
        db.session.commit()

    assert client.get("/api/auth/me", headers=admin_headers).status_code == 401

    with app.app_context():
        assert UserSession.query.count() == 0


def test_login_registers_device(app, client):
    resp = client.post("/api/auth/login", json={"username": "admin", "pin": "1234", "deviceId": "till-01"})
    assert resp.status_code == 200
    headers = {"Authorization": f"Bearer {resp.get_json()['token']}"}

    devices = client.get("/api/admin/devices", headers=headers).get_json()["devices"]
    assert [d["device_id"] for d in devices] == ["till-01"]


def test_role_permission_map():
    assert has_permission("admin", "anything.at_all")
    assert has_permission("cashier", "bills.create")
    assert has_permission("cashier", "payments.view")
    assert not has_permission("cashier", "kots.update")
    assert has_permission("waiter", "orders.create")
    assert not has_permission("waiter", "bills.view")
    assert has_permission("kitchen", "orders.update")
    assert not has_permission("kitchen", "orders.create")
    assert not has_permission("", "menu.view")


def test_waiter_is_forbidden_from_billing(client, staff_headers):
    headers = staff_headers("waiter")
    resp = client.get("/api/restaurant/bills", headers=headers)
    assert resp.status_code == 403
    assert resp.get_json() == {"success": False, "error": "Forbidden - Insufficient permissions"}


def test_valid_pin():
    assert valid_pin("0000")
    assert valid_pin(1234)
    for bad in ("123", "12345", "12a4", "", None, " 123"):
        assert not valid_pin(bad)


def test_health_and_system_init(client):
    assert client.get("/api/health").get_json()["status"] == "ok"
    resp = client.post("/api/system/init")
    assert resp.get_json()["message"] == "Already initialized"


def test_unknown_routes_return_json(client, admin_headers):
    resp = client.get("/api/nope", headers=admin_headers)
    assert resp.status_code == 404
    assert resp.get_json()["success"] is False
    assert client.delete("/api/health").status_code == 405


def test_log_level_falls_back_to_info():
    assert log_level("debug") == "DEBUG"
    assert log_level(" warning ") == "WARNING"
    assert log_level("loud") == "INFO"
    assert log_level("") == "INFO"
    assert log_level(None) == "INFO"
