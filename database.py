# database.py
import enum
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy import event
from sqlalchemy.engine import Engine
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    if isinstance(dbapi_conn, sqlite3.Connection):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def now_utc():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.00")


def dec3(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.000")


def iso(dt):
    return dt.isoformat() if dt else None


@contextmanager
def atomic():
    """Run a group of writes as one transaction.

    Commits when the block exits cleanly, rolls back and re-raises otherwise.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ---------------------------
# Enums
# ---------------------------

class Role(str, enum.Enum):
    ADMIN = "admin"
    CASHIER = "cashier"
    WAITER = "waiter"
    KITCHEN = "kitchen"


class OrderType(str, enum.Enum):
    DINE_IN = "dine-in"
    TAKEAWAY = "takeaway"
    DELIVERY = "delivery"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderItemStatus(str, enum.Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"


class KotStatus(str, enum.Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"


class KotItemStatus(str, enum.Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    COMPLETED = "completed"


class KitchenStation(str, enum.Enum):
    HOT_KITCHEN = "hot-kitchen"
    COLD_KITCHEN = "cold-kitchen"
    BAR = "bar"
    TANDOOR = "tandoor"
    GRILL = "grill"


class TableStatus(str, enum.Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    CLEANING = "cleaning"


class BillStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    VOID = "void"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    ESEWA = "esewa"
    KHALTI = "khalti"
    BANK = "bank"
    CREDIT = "credit"


def enum_values(enum_cls):
    return {e.value for e in enum_cls}


CLOSED_ORDER_STATUSES = {OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value}


# ---------------------------
# Staff, sessions, audit
# ---------------------------

class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, index=True, nullable=False)
    pin_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(140), nullable=False)
    role = db.Column(db.String(30), nullable=False, default=Role.WAITER.value)
    email = db.Column(db.String(160))
    phone = db.Column(db.String(40))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)

    def set_pin(self, pin):
        self.pin_hash = generate_password_hash(str(pin))

    def check_pin(self, pin):
        return check_password_hash(self.pin_hash, str(pin))

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "role": self.role,
            "email": self.email,
            "phone": self.phone,
            "is_active": bool(self.is_active),
            "created_at": iso(self.created_at),
        }


class UserSession(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    session_key = db.Column(db.String(64), unique=True, index=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = db.Column(db.String(120))
    ip_address = db.Column(db.String(80))
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=now_utc)


class Device(db.Model):
    __tablename__ = "devices"

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(120), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    device_type = db.Column(db.String(40), default="pos")
    ip_address = db.Column(db.String(80))
    is_active = db.Column(db.Boolean, default=True)
    last_seen = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "device_id": self.device_id,
            "user_id": self.user_id,
            "device_type": self.device_type,
            "ip_address": self.ip_address,
            "is_active": bool(self.is_active),
            "last_seen": iso(self.last_seen),
        }


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    action = db.Column(db.String(80), nullable=False)
    entity = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    ip = db.Column(db.String(80))
    details_json = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=now_utc)


# ---------------------------
# Settings
# ---------------------------

class SystemSetting(db.Model):
    __tablename__ = "system_settings"

    id = db.Column(db.Integer, primary_key=True)
    setting_key = db.Column(db.String(120), unique=True, nullable=False)
    setting_value = db.Column(db.String(1000), nullable=False, default="")
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)


DEFAULT_SETTINGS = {
    "vat_percentage": "13",
    "service_charge_percentage": "10",
    "restaurant_name": "Himalayan Restaurant",
    "restaurant_address": "Kathmandu, Nepal",
    "restaurant_phone": "+977-1-4123456",
    "restaurant_email": "info@himalayanrestaurant.com",
    "vat_number": "",
    "currency_symbol": "Rs",
    "bank_qr_image": "",
    "esewa_qr_image": "",
}

NUMERIC_SETTINGS = {"vat_percentage", "service_charge_percentage"}


def setting_get(key, default=None):
    row = SystemSetting.query.filter_by(setting_key=str(key)).first()
    if not row:
        return default
    return row.setting_value


def setting_set(key, value, commit=True):
    k = str(key)
    v = "" if value is None else str(value)
    row = SystemSetting.query.filter_by(setting_key=k).first()
    if not row:
        row = SystemSetting(setting_key=k, setting_value=v)
        db.session.add(row)
    else:
        row.setting_value = v
    if commit:
        db.session.commit()
    return v


def setting_decimal(key) -> Decimal:
    return money(setting_get(key, DEFAULT_SETTINGS.get(key, "0")))


def settings_dict():
    out = dict(DEFAULT_SETTINGS)
    for row in SystemSetting.query.all():
        out[row.setting_key] = row.setting_value
    for k in NUMERIC_SETTINGS:
        try:
            out[k] = float(out[k])
        except (TypeError, ValueError):
            out[k] = float(DEFAULT_SETTINGS[k])
    return out


def ensure_default_settings():
    for k, v in DEFAULT_SETTINGS.items():
        if setting_get(k) is None:
            setting_set(k, v, commit=False)
    db.session.commit()


# ---------------------------
# Menu
# ---------------------------

class MenuCategory(db.Model):
    __tablename__ = "menu_categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(140), nullable=False, unique=True)
    description = db.Column(db.String(500))
    display_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "display_order": self.display_order,
            "is_active": bool(self.is_active),
        }


class MenuItem(db.Model):
    __tablename__ = "menu_items"

    id = db.Column(db.Integer, primary_key=True)
    item_code = db.Column(db.String(40), unique=True, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("menu_categories.id"), nullable=False)
    name = db.Column(db.String(180), nullable=False)
    description = db.Column(db.String(500))
    base_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    preparation_time = db.Column(db.Integer, default=15)
    station = db.Column(db.String(30), default=KitchenStation.HOT_KITCHEN.value)
    is_vegetarian = db.Column(db.Boolean, default=False)
    is_spicy = db.Column(db.Boolean, default=False)
    is_available = db.Column(db.Boolean, default=True)
    display_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)

    category = db.relationship("MenuCategory", lazy="joined")
    variants = db.relationship(
        "MenuItemVariant", cascade="all, delete-orphan",
        order_by="MenuItemVariant.id", lazy="selectin"
    )

    def to_dict(self, with_variants=False):
        out = {
            "id": self.id,
            "item_code": self.item_code,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "name": self.name,
            "description": self.description,
            "base_price": str(money(self.base_price)),
            "preparation_time": self.preparation_time,
            "station": self.station,
            "is_vegetarian": bool(self.is_vegetarian),
            "is_spicy": bool(self.is_spicy),
            "is_available": bool(self.is_available),
            "display_order": self.display_order,
        }
        if with_variants:
            out["variants"] = [v.to_dict() for v in self.variants]
        return out


class MenuItemVariant(db.Model):
    __tablename__ = "menu_item_variants"

    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    price_modifier = db.Column(db.Numeric(10, 2), default=0)
    is_available = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "price_modifier": str(money(self.price_modifier)),
            "is_available": bool(self.is_available),
        }


class MenuItemIngredient(db.Model):
    __tablename__ = "menu_item_ingredients"

    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=False)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False)
    quantity_required = db.Column(db.Numeric(14, 3), nullable=False, default=0)


# ---------------------------
# Floor
# ---------------------------

class DiningTable(db.Model):
    __tablename__ = "tables"

    id = db.Column(db.Integer, primary_key=True)
    table_number = db.Column(db.String(40), nullable=False, unique=True)
    table_type = db.Column(db.String(40), default="regular")
    floor = db.Column(db.String(40), default="Ground Floor")
    section = db.Column(db.String(60))
    capacity = db.Column(db.Integer, default=4)
    min_capacity = db.Column(db.Integer, default=1)
    status = db.Column(db.String(30), default=TableStatus.AVAILABLE.value)
    current_order_id = db.Column(db.Integer)
    waiter_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    occupied_at = db.Column(db.DateTime)
    position_x = db.Column(db.Integer, default=0)
    position_y = db.Column(db.Integer, default=0)
    shape = db.Column(db.String(20), default="square")
    color = db.Column(db.String(20))
    notes = db.Column(db.String(300))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "table_number": self.table_number,
            "table_type": self.table_type,
            "floor": self.floor,
            "section": self.section,
            "capacity": self.capacity,
            "min_capacity": self.min_capacity,
            "status": self.status,
            "current_order_id": self.current_order_id,
            "waiter_id": self.waiter_id,
            "occupied_at": iso(self.occupied_at),
            "position_x": self.position_x,
            "position_y": self.position_y,
            "shape": self.shape,
            "color": self.color,
            "notes": self.notes,
            "is_active": bool(self.is_active),
        }


# ---------------------------
# Customers
# ---------------------------

class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(140), nullable=False)
    phone = db.Column(db.String(40), unique=True)
    email = db.Column(db.String(160))
    address = db.Column(db.String(400))
    credit_limit = db.Column(db.Numeric(12, 2), default=0)
    credit_balance = db.Column(db.Numeric(12, 2), default=0)
    total_purchases = db.Column(db.Integer, default=0)
    total_spent = db.Column(db.Numeric(12, 2), default=0)
    loyalty_points = db.Column(db.Integer, default=0)
    notes = db.Column(db.String(600))
    last_purchase_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "credit_limit": str(money(self.credit_limit)),
            "credit_balance": str(money(self.credit_balance)),
            "total_purchases": self.total_purchases or 0,
            "total_spent": str(money(self.total_spent)),
            "loyalty_points": self.loyalty_points or 0,
            "notes": self.notes,
            "last_purchase_at": iso(self.last_purchase_at),
            "created_at": iso(self.created_at),
        }


class CreditPayment(db.Model):
    __tablename__ = "credit_payments"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(30), default=PaymentMethod.CASH.value)
    notes = db.Column(db.String(300))
    received_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "amount": str(money(self.amount)),
            "payment_method": self.payment_method,
            "notes": self.notes,
            "received_by": self.received_by,
            "created_at": iso(self.created_at),
        }


# ---------------------------
# Orders and kitchen
# ---------------------------

class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(60), unique=True, index=True, nullable=False)
    table_id = db.Column(db.Integer, db.ForeignKey("tables.id", ondelete="SET NULL"))
    waiter_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="SET NULL"))
    customer_name = db.Column(db.String(140))
    customer_phone = db.Column(db.String(40))
    order_type = db.Column(db.String(30), default=OrderType.DINE_IN.value)
    status = db.Column(db.String(30), default=OrderStatus.PENDING.value, index=True)
    total_amount = db.Column(db.Numeric(12, 2), default=0)
    notes = db.Column(db.String(600))
    cancel_reason = db.Column(db.String(300))

    created_at = db.Column(db.DateTime, default=now_utc, index=True)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)
    ready_at = db.Column(db.DateTime)
    served_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    items = db.relationship(
        "OrderItem", cascade="all, delete-orphan",
        order_by="OrderItem.id", lazy="selectin", back_populates="order"
    )
    table = db.relationship("DiningTable", foreign_keys=[table_id])
    waiter = db.relationship("User", foreign_keys=[waiter_id])

    @property
    def is_closed(self):
        return self.status in CLOSED_ORDER_STATUSES

    def to_dict(self, with_items=False):
        out = {
            "id": self.id,
            "order_number": self.order_number,
            "table_id": self.table_id,
            "table_number": self.table.table_number if self.table else None,
            "waiter_id": self.waiter_id,
            "waiter_name": self.waiter.full_name if self.waiter else None,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "order_type": self.order_type,
            "status": self.status,
            "total_amount": str(money(self.total_amount)),
            "item_count": len(self.items),
            "notes": self.notes,
            "cancel_reason": self.cancel_reason,
            "created_at": iso(self.created_at),
            "ready_at": iso(self.ready_at),
            "served_at": iso(self.served_at),
            "completed_at": iso(self.completed_at),
            "cancelled_at": iso(self.cancelled_at),
        }
        if with_items:
            out["items"] = [oi.to_dict() for oi in self.items]
        return out


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"))
    variant_id = db.Column(db.Integer, db.ForeignKey("menu_item_variants.id", ondelete="SET NULL"))
    menu_item_name = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    special_instructions = db.Column(db.String(300))
    status = db.Column(db.String(30), default=OrderItemStatus.PENDING.value)
    created_at = db.Column(db.DateTime, default=now_utc)

    order = db.relationship("Order", back_populates="items")

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "menu_item_id": self.menu_item_id,
            "variant_id": self.variant_id,
            "menu_item_name": self.menu_item_name,
            "quantity": self.quantity,
            "unit_price": str(money(self.unit_price)),
            "subtotal": str(money(self.subtotal)),
            "special_instructions": self.special_instructions,
            "status": self.status,
        }


class Kot(db.Model):
    __tablename__ = "kots"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    station = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(30), default=KotStatus.PENDING.value, index=True)
    prepared_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    printed_at = db.Column(db.DateTime, default=now_utc)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=now_utc)

    order = db.relationship("Order")
    items = db.relationship(
        "KotItem", cascade="all, delete-orphan",
        order_by="KotItem.id", lazy="selectin"
    )

    @property
    def kot_number(self):
        return f"KOT-{self.id:05d}" if self.id else None

    def to_dict(self, with_items=True):
        order = self.order
        table = order.table if order else None
        out = {
            "id": self.id,
            "kot_number": self.kot_number,
            "order_id": self.order_id,
            "order_number": order.order_number if order else None,
            "order_type": order.order_type if order else None,
            "table_number": table.table_number if table else None,
            "station": self.station,
            "status": self.status,
            "prepared_by": self.prepared_by,
            "printed_at": iso(self.printed_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }
        if with_items:
            out["items"] = [ki.to_dict() for ki in self.items]
        return out


class KotItem(db.Model):
    __tablename__ = "kot_items"

    id = db.Column(db.Integer, primary_key=True)
    kot_id = db.Column(db.Integer, db.ForeignKey("kots.id", ondelete="CASCADE"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    special_instructions = db.Column(db.String(300))
    status = db.Column(db.String(30), default=KotItemStatus.PENDING.value)

    order_item = db.relationship("OrderItem")

    def to_dict(self):
        return {
            "id": self.id,
            "kot_id": self.kot_id,
            "order_item_id": self.order_item_id,
            "menu_item_id": self.menu_item_id,
            "item_name": self.order_item.menu_item_name if self.order_item else None,
            "quantity": self.quantity,
            "special_instructions": self.special_instructions,
            "status": self.status,
        }


# ---------------------------
# Billing
# ---------------------------

class Bill(db.Model):
    __tablename__ = "bills"

    id = db.Column(db.Integer, primary_key=True)
    bill_number = db.Column(db.String(60), unique=True, index=True, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    table_id = db.Column(db.Integer, db.ForeignKey("tables.id", ondelete="SET NULL"))
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="SET NULL"))
    customer_name = db.Column(db.String(140))
    customer_phone = db.Column(db.String(40))

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    service_charge_percent = db.Column(db.Numeric(6, 2), default=0)
    service_charge = db.Column(db.Numeric(12, 2), default=0)
    tax_percent = db.Column(db.Numeric(6, 2), default=0)
    tax = db.Column(db.Numeric(12, 2), default=0)
    discount_amount = db.Column(db.Numeric(12, 2), default=0)
    discount_type = db.Column(db.String(20))
    discount_reason = db.Column(db.String(300))
    grand_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    status = db.Column(db.String(20), default=BillStatus.UNPAID.value, index=True)
    cashier_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime, default=now_utc, index=True)
    paid_at = db.Column(db.DateTime)

    order = db.relationship("Order")
    payments = db.relationship(
        "BillPayment", cascade="all, delete-orphan",
        order_by="BillPayment.id", lazy="selectin"
    )

    def to_dict(self, with_payments=True):
        order = self.order
        out = {
            "id": self.id,
            "bill_number": self.bill_number,
            "order_id": self.order_id,
            "order_number": order.order_number if order else None,
            "table_id": self.table_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "subtotal": str(money(self.subtotal)),
            "service_charge_percent": str(money(self.service_charge_percent)),
            "service_charge": str(money(self.service_charge)),
            "tax_percent": str(money(self.tax_percent)),
            "tax": str(money(self.tax)),
            "discount_amount": str(money(self.discount_amount)),
            "discount_type": self.discount_type,
            "discount_reason": self.discount_reason,
            "grand_total": str(money(self.grand_total)),
            "status": self.status,
            "cashier_id": self.cashier_id,
            "created_at": iso(self.created_at),
            "paid_at": iso(self.paid_at),
        }
        if with_payments:
            out["payments"] = [p.to_dict() for p in self.payments]
        return out


class BillPayment(db.Model):
    __tablename__ = "bill_payments"

    id = db.Column(db.Integer, primary_key=True)
    bill_id = db.Column(db.Integer, db.ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_method = db.Column(db.String(30), nullable=False, default=PaymentMethod.CASH.value)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    reference_number = db.Column(db.String(120))
    notes = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=now_utc, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "bill_id": self.bill_id,
            "payment_method": self.payment_method,
            "amount": str(money(self.amount)),
            "reference_number": self.reference_number,
            "notes": self.notes or {},
            "created_at": iso(self.created_at),
        }


class HeldBill(db.Model):
    __tablename__ = "held_bills"

    id = db.Column(db.Integer, primary_key=True)
    held_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    table_id = db.Column(db.Integer, db.ForeignKey("tables.id", ondelete="SET NULL"))
    customer_name = db.Column(db.String(140))
    notes = db.Column(db.String(600))
    total = db.Column(db.Numeric(12, 2), default=0)
    created_at = db.Column(db.DateTime, default=now_utc)

    items = db.relationship(
        "HeldBillItem", cascade="all, delete-orphan",
        order_by="HeldBillItem.id", lazy="selectin"
    )

    def to_dict(self, with_items=False):
        out = {
            "id": self.id,
            "held_by": self.held_by,
            "table_id": self.table_id,
            "customer_name": self.customer_name,
            "notes": self.notes,
            "total": str(money(self.total)),
            "item_count": len(self.items),
            "created_at": iso(self.created_at),
        }
        if with_items:
            out["items"] = [i.to_dict() for i in self.items]
        return out


class HeldBillItem(db.Model):
    __tablename__ = "held_bill_items"

    id = db.Column(db.Integer, primary_key=True)
    held_bill_id = db.Column(db.Integer, db.ForeignKey("held_bills.id", ondelete="CASCADE"), nullable=False)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id", ondelete="SET NULL"))
    item_name = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    special_instructions = db.Column(db.String(300))

    def to_dict(self):
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "item_name": self.item_name,
            "quantity": self.quantity,
            "price": str(money(self.price)),
            "special_instructions": self.special_instructions,
        }


# ---------------------------
# Inventory and expenses
# ---------------------------

class Ingredient(db.Model):
    __tablename__ = "ingredients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), unique=True, nullable=False)
    unit = db.Column(db.String(30), nullable=False, default="pcs")
    stock = db.Column(db.Numeric(14, 3), default=0)
    min_stock = db.Column(db.Numeric(14, 3), default=5)
    cost_per_unit = db.Column(db.Numeric(12, 2), default=0)
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)

    @property
    def is_low(self):
        return dec3(self.stock) <= dec3(self.min_stock)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "unit": self.unit,
            "stock": str(dec3(self.stock)),
            "min_stock": str(dec3(self.min_stock)),
            "cost_per_unit": str(money(self.cost_per_unit)),
            "is_low": self.is_low,
            "updated_at": iso(self.updated_at),
        }


class IngredientHistory(db.Model):
    __tablename__ = "ingredient_history"

    id = db.Column(db.Integer, primary_key=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id", ondelete="CASCADE"), nullable=False, index=True)
    change_type = db.Column(db.String(30), nullable=False)
    quantity_change = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    previous_stock = db.Column(db.Numeric(14, 3), default=0)
    new_stock = db.Column(db.Numeric(14, 3), default=0)
    reason = db.Column(db.String(300))
    reference = db.Column(db.String(120))
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "change_type": self.change_type,
            "quantity_change": str(dec3(self.quantity_change)),
            "previous_stock": str(dec3(self.previous_stock)),
            "new_stock": str(dec3(self.new_stock)),
            "reason": self.reason,
            "reference": self.reference,
            "user_id": self.user_id,
            "created_at": iso(self.created_at),
        }


class Expense(db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.String(300), nullable=False)
    category = db.Column(db.String(80), default="general")
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    purchase_date = db.Column(db.Date)
    supplier = db.Column(db.String(160))
    notes = db.Column(db.String(600))
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "description": self.description,
            "category": self.category,
            "amount": str(money(self.amount)),
            "purchase_date": self.purchase_date.isoformat() if self.purchase_date else None,
            "supplier": self.supplier,
            "notes": self.notes,
            "created_at": iso(self.created_at),
        }
