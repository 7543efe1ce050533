# auth.py
import re
import secrets
from datetime import timedelta
from functools import wraps

from flask import abort, current_app, request
from flask_login import LoginManager, login_required, current_user
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from database import db, now_utc, Role, User, UserSession, Device


login_manager = LoginManager()

PIN_RE = re.compile(r"^\d{4}$")

ROLE_PERMISSIONS = {
    Role.ADMIN.value: ["*"],
    Role.CASHIER.value: [
        "bills.*", "payments.*", "orders.view", "tables.view",
        "menu.view", "customers.*", "held_bills.*",
    ],
    Role.WAITER.value: [
        "orders.*", "tables.*", "menu.view",
        "kots.view", "kots.create", "held_bills.*",
    ],
    Role.KITCHEN.value: [
        "kots.*", "orders.view", "orders.update",
        "menu.view", "inventory.view",
    ],
}


def norm_role(role) -> str:
    return (role or "").strip().lower()


def has_permission(role, permission) -> bool:
    granted = ROLE_PERMISSIONS.get(norm_role(role), [])
    if "*" in granted or permission in granted:
        return True
    area = permission.split(".", 1)[0]
    return f"{area}.*" in granted


def valid_pin(pin) -> bool:
    return isinstance(pin, (str, int)) and bool(PIN_RE.match(str(pin)))


def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="pos-session")


def session_ttl() -> timedelta:
    return timedelta(hours=int(current_app.config.get("POS_SESSION_HOURS", 24)))


def authenticate(username, pin):
    """Return the active user matching username and PIN, or None."""
    username = (username or "").strip()
    if not username or not pin:
        return None
    user = User.query.filter(db.func.lower(User.username) == username.lower()).first()
    if not user or not user.is_active or not user.check_pin(pin):
        return None
    return user


def issue_session(user, device_id=None, ip_address=None):
    """Create a session row for the user and return (token, expires_at)."""
    key = secrets.token_hex(24)
    expires_at = now_utc() + session_ttl()
    db.session.add(UserSession(
        session_key=key,
        user_id=user.id,
        device_id=device_id,
        ip_address=ip_address,
        expires_at=expires_at,
    ))
    db.session.commit()
    token = _serializer().dumps({"sid": key, "uid": user.id})
    return token, expires_at


def _session_for_token(token):
    if not token:
        return None
    try:
        data = _serializer().loads(token, max_age=int(session_ttl().total_seconds()))
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(data, dict):
        return None
    return UserSession.query.filter_by(session_key=data.get("sid"), user_id=data.get("uid")).first()


def verify_token(token):
    """Resolve a bearer token to its user. Expired sessions are removed."""
    sess = _session_for_token(token)
    if not sess:
        return None
    if sess.expires_at <= now_utc():
        db.session.delete(sess)
        db.session.commit()
        return None
    user = db.session.get(User, sess.user_id)
    if not user or not user.is_active:
        return None
    return user


def revoke_token(token) -> bool:
    sess = _session_for_token(token)
    if not sess:
        return False
    db.session.delete(sess)
    db.session.commit()
    return True


def revoke_user_sessions(user_id, commit=True):
    n = UserSession.query.filter_by(user_id=user_id).delete()
    if commit:
        db.session.commit()
    return n


def register_device(device_id, user_id, device_type="pos", ip_address=None):
    dev = Device.query.filter_by(device_id=device_id).first()
    if not dev:
        dev = Device(device_id=device_id)
        db.session.add(dev)
    dev.user_id = user_id
    dev.device_type = device_type or dev.device_type or "pos"
    dev.ip_address = ip_address
    dev.last_seen = now_utc()
    dev.is_active = True
    db.session.commit()
    return dev


def bearer_token(req=None):
    req = req or request
    header = req.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


@login_manager.request_loader
def load_user_from_request(req):
    return verify_token(bearer_token(req))


def require_permission(permission):
    def deco(fn):
        @wraps(fn)
        @login_required
        def wrapper(*args, **kwargs):
            if not has_permission(getattr(current_user, "role", ""), permission):
                abort(403, description="Forbidden - Insufficient permissions")
            return fn(*args, **kwargs)
        return wrapper
    return deco
