import os

import pytest

os.environ.setdefault("POS_DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("POS_LOG_LEVEL", "WARNING")


@pytest.fixture()
def app():
    """
    Flask app bound to a fresh in-memory database with the sample menu and tables.
    """
    from app import app as pos_app, seed_defaults, seed_sample_data
    from database import db

    pos_app.config.update(TESTING=True)
    with pos_app.app_context():
        db.drop_all()
        db.create_all()
        seed_defaults()
        seed_sample_data()
    yield pos_app
    with pos_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, username, pin):
    resp = client.post("/api/auth/login", json={"username": username, "pin": pin})
    assert resp.status_code == 200, resp.get_json()
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


@pytest.fixture()
def login(client):
    def _do(username="admin", pin="1234"):
        return _login(client, username, pin)
    return _do


@pytest.fixture()
def admin_headers(login):
    return login()


@pytest.fixture()
def make_user(app):
    from database import db, User

    def _make(username, role, pin="1111", is_active=True):
        with app.app_context():
            u = User(username=username, full_name=username.title(), role=role, is_active=is_active)
            u.set_pin(pin)
            db.session.add(u)
            db.session.commit()
            return u.id
    return _make


@pytest.fixture()
def staff_headers(make_user, login):
    """
    Create a user with the given role and return bearer headers for them.
    """
    def _headers(role, username=None, pin="1111"):
        username = username or f"{role}1"
        make_user(username, role, pin)
        return login(username, pin)
    return _headers


@pytest.fixture()
def menu_id(app):
    from database import MenuItem

    def _lookup(code):
        with app.app_context():
            return MenuItem.query.filter_by(item_code=code).one().id
    return _lookup


@pytest.fixture()
def table_id(app):
    from database import DiningTable

    def _lookup(number):
        with app.app_context():
            return DiningTable.query.filter_by(table_number=number).one().id
    return _lookup


@pytest.fixture()
def place_order(client, admin_headers, menu_id):
    """
    Order 2x Chicken Momo (180) and 1x Soft Drink (50): subtotal 410.00.
    """
    def _place(headers=None, **extra):
        body = {
            "items": [
                {"menu_item_id": menu_id("MAIN001"), "quantity": 2},
                {"menu_item_id": menu_id("BEV001"), "quantity": 1},
            ],
        }
        body.update(extra)
        resp = client.post("/api/restaurant/orders", json=body, headers=headers or admin_headers)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()
    return _place
