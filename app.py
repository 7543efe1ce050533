# app.py
import os
import io
import logging
import secrets
from datetime import datetime, timedelta, date, time as dtime, timezone
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo

import click
from flask import Flask, request, jsonify, send_file, abort
from flask_login import login_required, current_user
from sqlalchemy import or_ as sa_or, case

from reportlab.lib.pagesizes import A5
from reportlab.pdfgen import canvas

from database import (
    db, atomic,
    now_utc, money, dec3, iso,
    setting_set, setting_decimal, settings_dict, ensure_default_settings,
    DEFAULT_SETTINGS, NUMERIC_SETTINGS,
    enum_values, CLOSED_ORDER_STATUSES,
    Role, OrderType, OrderStatus, OrderItemStatus, KotStatus, KotItemStatus,
    KitchenStation, TableStatus, BillStatus, PaymentMethod,
    User, Device, AuditLog,
    MenuCategory, MenuItem, MenuItemVariant, MenuItemIngredient,
    DiningTable, Customer, CreditPayment,
    Order, OrderItem, Kot, KotItem,
    Bill, BillPayment, HeldBill, HeldBillItem,
    Ingredient, IngredientHistory, Expense,
)
from auth import (
    login_manager, require_permission, norm_role, valid_pin,
    authenticate, issue_session, verify_token, revoke_token, revoke_user_sessions,
    register_device, bearer_token, ROLE_PERMISSIONS,
)


BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DB_PATH = os.path.join(BASE_DIR, "pos_restaurant.db")

app = Flask(__name__)

app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", secrets.token_hex(32))
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("POS_DATABASE_URL", f"sqlite:///{DB_PATH}")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["POS_SESSION_HOURS"] = int(os.environ.get("POS_SESSION_HOURS", "24"))
app.config["POS_TIMEZONE"] = os.environ.get("POS_TIMEZONE", "Asia/Kathmandu")

def log_level(name):
    """Level name for app.logger; unknown names fall back to INFO."""
    name = (name or "").strip().upper()
    return name if isinstance(logging.getLevelName(name), int) else "INFO"


app.logger.setLevel(log_level(os.environ.get("POS_LOG_LEVEL")))

db.init_app(app)
login_manager.init_app(app)

app.logger.info("Using database: %s", app.config["SQLALCHEMY_DATABASE_URI"])


ORDER_STATUSES = enum_values(OrderStatus)
ORDER_ITEM_STATUSES = enum_values(OrderItemStatus)
ORDER_TYPES = enum_values(OrderType)
KOT_STATUSES = enum_values(KotStatus)
KOT_ITEM_STATUSES = enum_values(KotItemStatus)
STATIONS = enum_values(KitchenStation)
TABLE_STATUSES = enum_values(TableStatus)
PAYMENT_METHODS = enum_values(PaymentMethod)
ROLES = enum_values(Role)

ORDER_TIMESTAMPS = {
    OrderStatus.READY.value: "ready_at",
    OrderStatus.SERVED.value: "served_at",
    OrderStatus.COMPLETED.value: "completed_at",
    OrderStatus.CANCELLED.value: "cancelled_at",
}
TABLE_RELEASING = {
    OrderStatus.SERVED.value,
    OrderStatus.COMPLETED.value,
    OrderStatus.CANCELLED.value,
}
KOT_DONE = {KotStatus.READY.value, KotStatus.SERVED.value, KotStatus.COMPLETED.value}

AMOUNT_TOLERANCE = Decimal("0.01")


# ---------------------------
# Request helpers
# ---------------------------

def json_error(message, code=400, **extra):
    body = {"success": False, "error": message}
    body.update(extra)
    return jsonify(body), code


def require_json():
    if not request.is_json:
        return json_error("Expected JSON body", 400)
    return None


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def to_int(v, default=None):
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def to_bool(v, default=False):
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def to_amount(v):
    """Parse a money amount; None when it is not a finite number."""
    if v is None or isinstance(v, bool) or v == "":
        return None
    try:
        d = Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return money(d)


def to_qty(v):
    if v is None or isinstance(v, bool) or v == "":
        return None
    try:
        d = Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None
    return dec3(d) if d.is_finite() else None


def parse_day(v):
    if not v:
        return None
    try:
        return date.fromisoformat(str(v)[:10])
    except ValueError:
        return None


def client_ip():
    return request.headers.get("X-Forwarded-For", request.remote_addr)


def taken(model, condition, own_id=None):
    """True when another row of model already matches condition."""
    q = model.query.filter(condition)
    if own_id is not None:
        q = q.filter(model.id != own_id)
    return q.first() is not None


def staff_id(v):
    uid = to_int(v)
    if uid and db.session.get(User, uid):
        return uid
    return None


def business_tz():
    return ZoneInfo(app.config["POS_TIMEZONE"])


def local_today():
    return datetime.now(business_tz()).date()


def day_bounds_utc(day_from, day_to=None):
    """Naive UTC [start, end) covering the local calendar days day_from..day_to."""
    tz = business_tz()
    day_to = day_to or day_from
    start = datetime.combine(day_from, dtime.min, tzinfo=tz)
    end = datetime.combine(day_to + timedelta(days=1), dtime.min, tzinfo=tz)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


def local_day_of(dt):
    if not dt:
        return None
    return dt.replace(tzinfo=timezone.utc).astimezone(business_tz()).date()


# ---------------------------
# Auth wiring and error handlers
# ---------------------------

@login_manager.unauthorized_handler
def _unauthorized():
    return json_error("Authentication required", 401)


def _describe(e, fallback):
    desc = getattr(e, "description", None)
    if desc and desc != type(e).description:
        return desc
    return fallback


@app.errorhandler(400)
def _err_400(e):
    return json_error(_describe(e, "Bad request"), 400)


@app.errorhandler(403)
def _err_403(e):
    return json_error(_describe(e, "Forbidden"), 403)


@app.errorhandler(404)
def _err_404(e):
    return json_error(_describe(e, "Not found"), 404)


@app.errorhandler(405)
def _err_405(_e):
    return json_error("Method not allowed", 405)


@app.errorhandler(500)
def _err_500(_e):
    db.session.rollback()
    return json_error("Internal server error", 500)


def audit(action, entity, entity_id=None, details=None, user_id=None, commit=True):
    if user_id is None and getattr(current_user, "is_authenticated", False):
        user_id = int(current_user.id)

    db.session.add(AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        ip=client_ip(),
        details_json=(details or {}),
        created_at=now_utc()
    ))
    if commit:
        db.session.commit()


# ---------------------------
# Order lifecycle
# ---------------------------

def next_number(prefix):
    return f"{prefix}-{now_utc():%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def build_order_item(payload):
    """Validate one requested line and price it from the menu.

    Returns (OrderItem, None) or (None, error message). The item is not
    added to the session.
    """
    if not isinstance(payload, dict):
        return None, "Invalid item"
    item_id = to_int(payload.get("menu_item_id"))
    if not item_id:
        return None, "menu_item_id is required for every item"
    qty = to_int(payload.get("quantity", 1))
    if not qty or qty <= 0:
        return None, "Quantity must be a positive integer"

    mi = db.session.get(MenuItem, item_id)
    if not mi:
        return None, f"Menu item {item_id} not found"
    if not mi.is_available:
        return None, f"{mi.name} is not available"

    unit_price = money(mi.base_price)
    name = mi.name
    variant_id = None
    if payload.get("variant_id") not in (None, ""):
        variant = db.session.get(MenuItemVariant, to_int(payload.get("variant_id"), 0))
        if not variant or variant.menu_item_id != mi.id:
            return None, f"Invalid variant for {mi.name}"
        variant_id = variant.id
        unit_price = money(unit_price + money(variant.price_modifier))
        name = f"{mi.name} ({variant.name})"

    note = (payload.get("special_instructions") or "").strip() or None
    return OrderItem(
        menu_item_id=mi.id,
        variant_id=variant_id,
        menu_item_name=name,
        quantity=qty,
        unit_price=unit_price,
        subtotal=money(unit_price * qty),
        special_instructions=note,
        status=OrderItemStatus.PENDING.value,
    ), None


def build_order_items(payloads):
    if not isinstance(payloads, list) or not payloads:
        return None, "No items provided"
    items = []
    for p in payloads:
        oi, err = build_order_item(p)
        if err:
            return None, err
        items.append(oi)
    return items, None


def refresh_order_total(order):
    total = sum((money(oi.subtotal) for oi in order.items), Decimal("0.00"))
    order.total_amount = money(total)
    return order.total_amount


def occupy_table(table, order):
    table.status = TableStatus.OCCUPIED.value
    table.current_order_id = order.id
    table.waiter_id = order.waiter_id
    table.occupied_at = now_utc()


def clear_table(table):
    table.status = TableStatus.AVAILABLE.value
    table.current_order_id = None
    table.waiter_id = None
    table.occupied_at = None


def release_table(order):
    if not order.table_id:
        return
    table = db.session.get(DiningTable, order.table_id)
    if table and table.current_order_id == order.id:
        clear_table(table)


def set_order_status(order, status, cancel_reason=None):
    """Move an order to a new status. Caller commits."""
    order.status = status
    stamp = ORDER_TIMESTAMPS.get(status)
    if stamp:
        setattr(order, stamp, now_utc())
    if status == OrderStatus.CANCELLED.value:
        order.cancel_reason = cancel_reason
    if status in TABLE_RELEASING:
        release_table(order)
    if status == OrderStatus.COMPLETED.value:
        apply_recipe_deduction(order)


def sync_order_from_items(order):
    if order.status not in (OrderStatus.PENDING.value, OrderStatus.PREPARING.value):
        return
    statuses = [oi.status for oi in order.items]
    if statuses and all(s in (OrderItemStatus.READY.value, OrderItemStatus.SERVED.value) for s in statuses):
        set_order_status(order, OrderStatus.READY.value)
    elif order.status == OrderStatus.PENDING.value and any(s != OrderItemStatus.PENDING.value for s in statuses):
        order.status = OrderStatus.PREPARING.value


def sync_order_from_kots(order):
    if not order or order.status not in (OrderStatus.PENDING.value, OrderStatus.PREPARING.value):
        return
    kots = Kot.query.filter_by(order_id=order.id).all()
    items_done = all(
        oi.status in (OrderItemStatus.READY.value, OrderItemStatus.SERVED.value) for oi in order.items
    )
    if kots and items_done and all(k.status in KOT_DONE for k in kots):
        set_order_status(order, OrderStatus.READY.value)
    elif order.status == OrderStatus.PENDING.value and any(k.status != KotStatus.PENDING.value for k in kots):
        order.status = OrderStatus.PREPARING.value


# ---------------------------
# Kitchen tickets
# ---------------------------

def create_kot(order, station, lines, prepared_by=None):
    """lines: (order_item, quantity, special_instructions) tuples."""
    kot = Kot(
        order_id=order.id,
        station=station,
        status=KotStatus.PENDING.value,
        prepared_by=prepared_by,
        printed_at=now_utc(),
    )
    for oi, qty, note in lines:
        kot.items.append(KotItem(
            order_item_id=oi.id,
            menu_item_id=oi.menu_item_id,
            quantity=qty,
            special_instructions=note,
            status=KotItemStatus.PENDING.value,
        ))
    db.session.add(kot)
    return kot


def send_items_to_kitchen(order, order_items):
    """One ticket per station for the given items. Items must be flushed."""
    groups = {}
    for oi in order_items:
        mi = db.session.get(MenuItem, oi.menu_item_id) if oi.menu_item_id else None
        station = mi.station if mi and mi.station in STATIONS else KitchenStation.HOT_KITCHEN.value
        groups.setdefault(station, []).append((oi, oi.quantity, oi.special_instructions))
    return [create_kot(order, station, lines) for station, lines in groups.items()]


def set_kot_status(kot, status, user_id=None):
    kot.status = status
    if status == KotStatus.PREPARING.value:
        kot.started_at = kot.started_at or now_utc()
        if user_id:
            kot.prepared_by = user_id
    elif status in KOT_DONE:
        kot.completed_at = kot.completed_at or now_utc()
        for ki in kot.items:
            mark_order_item_ready(ki.order_item)
    db.session.flush()
    sync_order_from_kots(kot.order)


def mark_order_item_ready(oi):
    if oi and oi.status in (OrderItemStatus.PENDING.value, OrderItemStatus.PREPARING.value):
        oi.status = OrderItemStatus.READY.value


def set_kot_item_status(item, status, user_id=None):
    item.status = status
    kot = db.session.get(Kot, item.kot_id)
    if status == KotItemStatus.COMPLETED.value:
        mark_order_item_ready(item.order_item)
    elif status == KotItemStatus.PREPARING.value and item.order_item \
            and item.order_item.status == OrderItemStatus.PENDING.value:
        item.order_item.status = OrderItemStatus.PREPARING.value

    if all(ki.status == KotItemStatus.COMPLETED.value for ki in kot.items):
        if kot.status not in KOT_DONE:
            set_kot_status(kot, KotStatus.READY.value, user_id)
    else:
        if status == KotItemStatus.PREPARING.value and kot.status == KotStatus.PENDING.value:
            set_kot_status(kot, KotStatus.PREPARING.value, user_id)
        if kot.order:
            sync_order_from_items(kot.order)
    return kot


def complete_all_kot_items(kot, user_id=None):
    for ki in kot.items:
        ki.status = KotItemStatus.COMPLETED.value
        mark_order_item_ready(ki.order_item)
    set_kot_status(kot, KotStatus.READY.value, user_id)


def kot_stats(day):
    start, end = day_bounds_utc(day)
    kots = Kot.query.filter(Kot.printed_at >= start, Kot.printed_at < end).all()

    def summarize(rows):
        prep = [
            (k.completed_at - k.printed_at).total_seconds() / 60.0
            for k in rows if k.completed_at and k.printed_at
        ]
        out = {"total": len(rows)}
        for s in (KotStatus.PENDING.value, KotStatus.PREPARING.value,
                  KotStatus.READY.value, KotStatus.COMPLETED.value):
            out[s] = sum(1 for k in rows if k.status == s)
        out["avg_prep_minutes"] = round(sum(prep) / len(prep), 1) if prep else 0
        return out

    stats = summarize(kots)
    by_station = {}
    for k in kots:
        by_station.setdefault(k.station, []).append(k)
    stats["by_station"] = [dict(station=s, **summarize(rows)) for s, rows in sorted(by_station.items())]
    stats["date"] = day.isoformat()
    return stats


# ---------------------------
# Inventory
# ---------------------------

def stock_change(ingredient, delta, change_type, reason=None, reference=None, user_id=None):
    """Apply a stock delta and write the history row. Caller commits."""
    previous = dec3(ingredient.stock)
    ingredient.stock = dec3(previous + dec3(delta))
    db.session.add(IngredientHistory(
        ingredient_id=ingredient.id,
        change_type=change_type,
        quantity_change=dec3(delta),
        previous_stock=previous,
        new_stock=ingredient.stock,
        reason=reason,
        reference=reference,
        user_id=user_id,
        created_at=now_utc()
    ))
    return ingredient.stock


def apply_recipe_deduction(order):
    for oi in order.items:
        if not oi.menu_item_id:
            continue
        lines = MenuItemIngredient.query.filter_by(menu_item_id=oi.menu_item_id).all()
        for line in lines:
            ing = db.session.get(Ingredient, line.ingredient_id)
            if not ing:
                continue
            qty = dec3(Decimal(str(line.quantity_required)) * oi.quantity)
            stock_change(ing, -qty, "sale", f"Order {order.order_number}", order.order_number)


# ---------------------------
# Billing
# ---------------------------

def compute_bill_totals(subtotal, discount=None, service_pct=None, tax_pct=None):
    subtotal = money(subtotal)
    service_pct = money(setting_decimal("service_charge_percentage") if service_pct is None else service_pct)
    tax_pct = money(setting_decimal("vat_percentage") if tax_pct is None else tax_pct)
    discount = money(discount or 0)

    service_charge = money(subtotal * service_pct / Decimal("100"))
    tax = money(subtotal * tax_pct / Decimal("100"))
    grand_total = max(Decimal("0.00"), money(subtotal + service_charge + tax - discount))

    return {
        "subtotal": subtotal,
        "service_charge_percent": service_pct,
        "service_charge": service_charge,
        "tax_percent": tax_pct,
        "tax": tax,
        "discount_amount": discount,
        "grand_total": grand_total,
    }


def new_bill(order, totals, discount_type=None, discount_reason=None, customer=None):
    bill = Bill(
        bill_number=next_number("BILL"),
        order_id=order.id,
        table_id=order.table_id,
        customer_id=customer.id if customer else order.customer_id,
        customer_name=(customer.name if customer else None) or order.customer_name,
        customer_phone=(customer.phone if customer else None) or order.customer_phone,
        discount_type=discount_type,
        discount_reason=discount_reason,
        status=BillStatus.UNPAID.value,
        cashier_id=int(current_user.id) if getattr(current_user, "is_authenticated", False) else None,
        **totals
    )
    db.session.add(bill)
    return bill


def bill_paid_total(bill) -> Decimal:
    return money(sum((money(p.amount) for p in bill.payments), Decimal("0.00")))


def credit_error(customer, amount):
    limit = money(customer.credit_limit)
    if limit > 0 and money(customer.credit_balance) + money(amount) > limit:
        return f"Credit limit exceeded for {customer.name}"
    return None


def settle_bill(bill):
    """Mark a bill paid and close its order. Caller commits.

    Credit tenders on the bill are added to the customer's balance here.
    """
    bill.status = BillStatus.PAID.value
    bill.paid_at = now_utc()

    order = bill.order
    if order and not order.is_closed:
        set_order_status(order, OrderStatus.COMPLETED.value)

    customer = db.session.get(Customer, bill.customer_id) if bill.customer_id else None
    if customer:
        credit = sum(
            (money(p.amount) for p in bill.payments if p.payment_method == PaymentMethod.CREDIT.value),
            Decimal("0.00")
        )
        customer.credit_balance = money(money(customer.credit_balance) + credit)
        customer.total_purchases = (customer.total_purchases or 0) + 1
        customer.total_spent = money(money(customer.total_spent) + money(bill.grand_total))
        customer.loyalty_points = (customer.loyalty_points or 0) + int(money(bill.grand_total) // 100)
        customer.last_purchase_at = now_utc()


def receipt_payload(bill):
    order = bill.order
    table = order.table if order else None
    s = settings_dict()
    return {
        "bill_number": bill.bill_number,
        "order_number": order.order_number if order else None,
        "table_number": table.table_number if table else None,
        "restaurant": {
            "name": s["restaurant_name"],
            "address": s["restaurant_address"],
            "phone": s["restaurant_phone"],
            "vat_number": s["vat_number"],
            "currency_symbol": s["currency_symbol"],
        },
        "customer_name": bill.customer_name,
        "items": [oi.to_dict() for oi in order.items] if order else [],
        "subtotal": str(money(bill.subtotal)),
        "service_charge_percent": str(money(bill.service_charge_percent)),
        "service_charge": str(money(bill.service_charge)),
        "tax_percent": str(money(bill.tax_percent)),
        "tax": str(money(bill.tax)),
        "discount": str(money(bill.discount_amount)),
        "grand_total": str(money(bill.grand_total)),
        "payments": [p.to_dict() for p in bill.payments],
        "paid_at": iso(bill.paid_at),
        "cashier": current_user.full_name if getattr(current_user, "is_authenticated", False) else None,
    }


def build_receipt_pdf_bytes(bill):
    order = bill.order
    s = settings_dict()
    cur = s["currency_symbol"]

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A5)
    w, h = A5

    x = 36
    y = h - 40
    lh = 13

    c.setFont("Helvetica-Bold", 14)
    c.drawString(x, y, str(s["restaurant_name"]))
    y -= 18
    c.setFont("Helvetica", 9)
    for line in (s["restaurant_address"], s["restaurant_phone"]):
        if line:
            c.drawString(x, y, str(line)[:80])
            y -= 11
    if s["vat_number"]:
        c.drawString(x, y, f"VAT No: {s['vat_number']}")
        y -= 11

    y -= 6
    c.setFont("Helvetica", 10)
    c.drawString(x, y, f"Bill No: {bill.bill_number}")
    y -= lh
    if order:
        c.drawString(x, y, f"Order No: {order.order_number}   Type: {order.order_type}")
        y -= lh
        if order.table:
            c.drawString(x, y, f"Table: {order.table.table_number}")
            y -= lh
    c.drawString(x, y, f"Date: {iso(bill.paid_at or bill.created_at) or ''}")
    y -= lh + 4

    c.setFont("Helvetica-Bold", 11)
    c.drawString(x, y, "Items")
    y -= lh
    c.setFont("Helvetica", 10)
    for oi in (order.items if order else []):
        txt = f"{oi.quantity} x {oi.menu_item_name} @ {money(oi.unit_price)} = {money(oi.subtotal)}"
        c.drawString(x, y, txt[:80])
        y -= lh
        if y < 90:
            c.showPage()
            y = h - 40
            c.setFont("Helvetica", 10)

    y -= 8
    c.drawString(x, y, f"Subtotal: {cur} {money(bill.subtotal)}")
    y -= lh
    c.drawString(x, y, f"Service Charge ({money(bill.service_charge_percent)}%): {cur} {money(bill.service_charge)}")
    y -= lh
    c.drawString(x, y, f"VAT ({money(bill.tax_percent)}%): {cur} {money(bill.tax)}")
    y -= lh
    if money(bill.discount_amount) > 0:
        c.drawString(x, y, f"Discount: {cur} {money(bill.discount_amount)}")
        y -= lh
    c.setFont("Helvetica-Bold", 12)
    c.drawString(x, y, f"Grand Total: {cur} {money(bill.grand_total)}")
    y -= 18

    if bill.payments:
        c.setFont("Helvetica-Bold", 11)
        c.drawString(x, y, "Payments")
        y -= lh
        c.setFont("Helvetica", 10)
        for p in bill.payments:
            c.drawString(x, y, f"{p.payment_method}  {money(p.amount)}  {p.reference_number or ''}".strip()[:80])
            y -= lh
            if y < 60:
                c.showPage()
                y = h - 40
                c.setFont("Helvetica", 10)

    c.setFont("Helvetica", 9)
    c.drawString(x, 36, "Thank you. Please visit again.")
    c.showPage()
    c.save()

    buf.seek(0)
    return buf.getvalue()


# ---------------------------
# System init and seeding
# ---------------------------

SAMPLE_CATEGORIES = ["Appetizers", "Main Course", "Desserts", "Beverages", "Specials"]

SAMPLE_MENU = [
    ("APP001", "Spring Rolls", "Appetizers", 250, KitchenStation.HOT_KITCHEN),
    ("APP002", "Chicken Wings", "Appetizers", 350, KitchenStation.GRILL),
    ("MAIN001", "Chicken Momo", "Main Course", 180, KitchenStation.HOT_KITCHEN),
    ("MAIN002", "Veg Momo", "Main Course", 150, KitchenStation.HOT_KITCHEN),
    ("MAIN003", "Chicken Chowmein", "Main Course", 200, KitchenStation.HOT_KITCHEN),
    ("MAIN004", "Veg Chowmein", "Main Course", 180, KitchenStation.HOT_KITCHEN),
    ("MAIN005", "Dal Bhat", "Main Course", 250, KitchenStation.HOT_KITCHEN),
    ("DES001", "Ice Cream", "Desserts", 100, KitchenStation.COLD_KITCHEN),
    ("DES002", "Gulab Jamun", "Desserts", 80, KitchenStation.COLD_KITCHEN),
    ("BEV001", "Soft Drink", "Beverages", 50, KitchenStation.BAR),
    ("BEV002", "Fresh Juice", "Beverages", 120, KitchenStation.BAR),
    ("BEV003", "Tea", "Beverages", 30, KitchenStation.BAR),
    ("BEV004", "Coffee", "Beverages", 60, KitchenStation.BAR),
]

SAMPLE_TABLES = [
    ("T1", "regular", "Ground", None, 4),
    ("T2", "regular", "Ground", None, 4),
    ("T3", "regular", "Ground", None, 6),
    ("T4", "vip", "First", "VIP-A", 8),
    ("T5", "vip", "First", "VIP-A", 6),
    ("T6", "outdoor", "Rooftop", None, 4),
    ("T7", "outdoor", "Rooftop", None, 4),
    ("T8", "event", "Second", "Hall", 20),
]


def seed_defaults():
    """Default settings and, on an empty user table, the admin account."""
    ensure_default_settings()
    if User.query.count() == 0:
        admin = User(
            username="admin",
            full_name="System Administrator",
            role=Role.ADMIN.value,
            email="admin@restaurant.com",
        )
        admin.set_pin("1234")
        db.session.add(admin)
        db.session.commit()
        app.logger.info("Created default admin user (admin / 1234)")
        return admin
    return None


def seed_sample_data():
    cats = {}
    for i, name in enumerate(SAMPLE_CATEGORIES):
        cat = MenuCategory.query.filter_by(name=name).first()
        if not cat:
            cat = MenuCategory(name=name, display_order=i)
            db.session.add(cat)
            db.session.flush()
        cats[name] = cat

    for code, name, cat_name, price, station in SAMPLE_MENU:
        if MenuItem.query.filter_by(item_code=code).first():
            continue
        db.session.add(MenuItem(
            item_code=code, name=name, category_id=cats[cat_name].id,
            base_price=money(price), station=station.value,
        ))

    for number, ttype, floor, section, capacity in SAMPLE_TABLES:
        if DiningTable.query.filter_by(table_number=number).first():
            continue
        db.session.add(DiningTable(
            table_number=number, table_type=ttype, floor=floor,
            section=section, capacity=capacity, min_capacity=1,
        ))
    db.session.commit()


@app.cli.command("init-db")
@click.option("--sample", is_flag=True, help="Also load the sample menu and tables.")
def init_db_command(sample):
    """Create tables, default settings and the admin user."""
    db.create_all()
    seed_defaults()
    if sample:
        seed_sample_data()
    click.echo("Database initialized.")


@app.route("/api/system/init", methods=["POST"])
def api_system_init():
    db.create_all()
    admin = seed_defaults()
    if admin:
        audit("seed", "user", admin.id, {"note": "Default admin created"}, user_id=admin.id)
        return jsonify({"success": True, "message": "Initialized. Default admin: admin / PIN 1234"})
    return jsonify({"success": True, "message": "Already initialized"})


@app.get("/api/health")
def api_health():
    return jsonify({"success": True, "status": "ok", "time": iso(now_utc())})


# ---------------------------
# Auth
# ---------------------------

def user_payload(user):
    out = user.to_dict()
    out["permissions"] = ROLE_PERMISSIONS.get(norm_role(user.role), [])
    return out


@app.route("/api/auth/login", methods=["POST"])
def api_login():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    username = (data.get("username") or "").strip()
    pin = str(data.get("pin") or "").strip()
    if not username or not pin:
        return json_error("Username and PIN are required", 400)

    user = authenticate(username, pin)
    if not user:
        app.logger.info("Failed login for %r from %s", username, client_ip())
        return json_error("Invalid username or PIN", 401)

    device_id = (data.get("deviceId") or data.get("device_id") or "").strip() or None
    token, expires_at = issue_session(user, device_id=device_id, ip_address=client_ip())
    if device_id:
        register_device(device_id, user.id, data.get("deviceType") or "pos", client_ip())
    audit("login", "user", user.id, {"device_id": device_id}, user_id=user.id)

    return jsonify({
        "success": True,
        "token": token,
        "expires_at": iso(expires_at),
        "user": user_payload(user),
    })


@app.route("/api/auth/verify", methods=["POST"])
def api_verify():
    token = json_body().get("token") or bearer_token()
    if not token:
        return jsonify({"success": False, "valid": False, "error": "No token provided"}), 401
    user = verify_token(token)
    if not user:
        return jsonify({"success": False, "valid": False, "error": "Invalid or expired session"}), 401
    return jsonify({"success": True, "valid": True, "user": user_payload(user)})


@app.route("/api/auth/logout", methods=["POST"])
def api_logout():
    token = json_body().get("token") or bearer_token()
    user = verify_token(token) if token else None
    if token:
        revoke_token(token)
    if user:
        audit("logout", "user", user.id, user_id=user.id)
    return jsonify({"success": True, "message": "Logged out"})


@app.route("/api/auth/me", methods=["GET"])
@login_required
def api_me():
    return jsonify({"success": True, "user": user_payload(current_user)})


# ---------------------------
# Menu
# ---------------------------

MENU_FIELDS = (
    "name", "description", "category_id", "base_price", "preparation_time", "station",
    "is_vegetarian", "is_spicy", "is_available", "display_order", "item_code",
)


def apply_menu_fields(mi, data, creating=False):
    """Copy validated menu fields from data onto mi; return an error or None."""
    if creating or "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return "Name is required"
        mi.name = name
    if creating or "category_id" in data:
        cat = db.session.get(MenuCategory, to_int(data.get("category_id"), 0))
        if not cat:
            return "Category not found"
        mi.category_id = cat.id
    if creating or "base_price" in data:
        price = to_amount(data.get("base_price"))
        if price is None or price < 0:
            return "base_price must be a non-negative number"
        mi.base_price = price
    if "station" in data:
        if data.get("station") not in STATIONS:
            return f"Invalid station. Must be one of: {', '.join(sorted(STATIONS))}"
        mi.station = data["station"]
    if "item_code" in data:
        code = (data.get("item_code") or "").strip() or None
        if code:
            if taken(MenuItem, MenuItem.item_code == code, mi.id):
                return "Item code already exists"
        mi.item_code = code
    if "description" in data:
        mi.description = (data.get("description") or "").strip() or None
    if "preparation_time" in data:
        mi.preparation_time = max(0, to_int(data.get("preparation_time"), 0))
    if "display_order" in data:
        mi.display_order = to_int(data.get("display_order"), 0)
    for flag in ("is_vegetarian", "is_spicy", "is_available"):
        if flag in data:
            setattr(mi, flag, to_bool(data.get(flag)))
    return None


def replace_variants(mi, variants):
    if not isinstance(variants, list):
        return "variants must be a list"
    parsed = []
    for v in variants:
        name = (v.get("name") or "").strip() if isinstance(v, dict) else ""
        mod = to_amount(v.get("price_modifier", 0)) if isinstance(v, dict) else None
        if not name or mod is None:
            return "Each variant needs a name and a numeric price_modifier"
        parsed.append(MenuItemVariant(name=name, price_modifier=mod, is_available=to_bool(v.get("is_available"), True)))
    mi.variants = parsed
    return None


def create_menu_item(data):
    mi = MenuItem()
    err = apply_menu_fields(mi, data, creating=True)
    if not err and "variants" in data:
        err = replace_variants(mi, data.get("variants"))
    if err:
        return None, err
    db.session.add(mi)
    db.session.flush()
    if not mi.item_code:
        mi.item_code = f"ITEM{mi.id:04d}"
    db.session.commit()
    audit("create", "menu_item", mi.id, {"name": mi.name})
    return mi, None


def update_menu_item(mi, data):
    err = apply_menu_fields(mi, data)
    if not err and "variants" in data:
        err = replace_variants(mi, data.get("variants"))
    if err:
        db.session.rollback()
        return err
    db.session.commit()
    audit("update", "menu_item", mi.id, {k: data[k] for k in MENU_FIELDS if k in data})
    return None


def delete_menu_item(mi):
    if OrderItem.query.filter_by(menu_item_id=mi.id).first():
        return "Item has order history; mark it unavailable instead"
    MenuItemIngredient.query.filter_by(menu_item_id=mi.id).delete()
    HeldBillItem.query.filter_by(menu_item_id=mi.id).update({"menu_item_id": None})
    audit("delete", "menu_item", mi.id, {"name": mi.name}, commit=False)
    db.session.delete(mi)
    db.session.commit()
    return None


@app.get("/api/restaurant/menu")
@require_permission("menu.view")
def api_menu_list():
    item_id = request.args.get("id")
    if item_id:
        mi = db.get_or_404(MenuItem, to_int(item_id, 0), description="Menu item not found")
        return jsonify({"success": True, "item": mi.to_dict(with_variants=True)})

    if request.args.get("type") == "categories":
        cats = MenuCategory.query.filter_by(is_active=True) \
            .order_by(MenuCategory.display_order.asc(), MenuCategory.name.asc()).all()
        return jsonify({"success": True, "categories": [c.to_dict() for c in cats]})

    q = MenuItem.query
    category = request.args.get("category")
    if category:
        q = q.filter(MenuItem.category_id == to_int(category, 0))
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(sa_or(MenuItem.name.ilike(like), MenuItem.item_code.ilike(like), MenuItem.description.ilike(like)))
    if request.args.get("vegetarian") is not None:
        q = q.filter(MenuItem.is_vegetarian.is_(to_bool(request.args.get("vegetarian"))))
    available = request.args.get("available")
    if available is not None:
        q = q.filter(MenuItem.is_available.is_(to_bool(available)))
    elif category:
        q = q.filter(MenuItem.is_available.is_(True))
    if request.args.get("station"):
        q = q.filter(MenuItem.station == request.args.get("station"))

    items = q.order_by(MenuItem.category_id.asc(), MenuItem.display_order.asc(), MenuItem.name.asc()).all()
    return jsonify({
        "success": True,
        "items": [mi.to_dict(with_variants=True) for mi in items],
        "count": len(items),
    })


@app.post("/api/restaurant/menu")
@require_permission("menu.create")
def api_menu_create():
    bad = require_json()
    if bad:
        return bad
    mi, err = create_menu_item(request.get_json())
    if err:
        return json_error(err, 400)
    return jsonify({"success": True, "message": "Menu item created", "item": mi.to_dict(with_variants=True)}), 201


@app.patch("/api/restaurant/menu")
@require_permission("menu.update")
def api_menu_update():
    data = json_body()
    item_id = to_int(data.get("id"))
    if not item_id:
        return json_error("Item ID is required", 400)
    mi = db.get_or_404(MenuItem, item_id, description="Menu item not found")

    if data.get("action") == "toggle-availability":
        mi.is_available = not bool(mi.is_available)
        db.session.commit()
        audit("toggle", "menu_item", mi.id, {"is_available": mi.is_available})
        return jsonify({"success": True, "item": mi.to_dict(with_variants=True)})

    fields = {k: v for k, v in data.items() if k not in ("id", "action")}
    err = update_menu_item(mi, fields)
    if err:
        return json_error(err, 400)
    return jsonify({"success": True, "message": "Menu item updated", "item": mi.to_dict(with_variants=True)})


@app.delete("/api/restaurant/menu")
@require_permission("menu.delete")
def api_menu_delete():
    item_id = to_int(request.args.get("id"))
    if not item_id:
        return json_error("Item ID is required", 400)
    mi = db.get_or_404(MenuItem, item_id, description="Menu item not found")
    err = delete_menu_item(mi)
    if err:
        return json_error(err, 400)
    return jsonify({"success": True, "message": "Menu item deleted"})


@app.get("/api/restaurant/menu/categories")
@require_permission("menu.view")
def api_categories_list():
    include_inactive = to_bool(request.args.get("includeInactive"))
    q = MenuCategory.query
    if not include_inactive:
        q = q.filter_by(is_active=True)
    cats = q.order_by(MenuCategory.display_order.asc(), MenuCategory.name.asc()).all()

    counts = dict(
        db.session.query(MenuItem.category_id, db.func.count(MenuItem.id))
        .group_by(MenuItem.category_id).all()
    )
    out = []
    for c in cats:
        row = c.to_dict()
        row["item_count"] = counts.get(c.id, 0)
        out.append(row)
    return jsonify({"success": True, "categories": out})


@app.post("/api/restaurant/menu/categories")
@require_permission("menu.create")
def api_categories_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    name = (data.get("name") or "").strip()
    if not name:
        return json_error("Category name is required", 400)
    if MenuCategory.query.filter(db.func.lower(MenuCategory.name) == name.lower()).first():
        return json_error("Category already exists", 400)

    cat = MenuCategory(
        name=name,
        description=(data.get("description") or "").strip() or None,
        display_order=to_int(data.get("display_order"), 0),
        is_active=to_bool(data.get("is_active"), True),
    )
    db.session.add(cat)
    db.session.commit()
    audit("create", "menu_category", cat.id, {"name": name})
    return jsonify({"success": True, "category": cat.to_dict()}), 201


# ---------------------------
# Orders
# ---------------------------

def order_detail(order):
    kots = Kot.query.filter_by(order_id=order.id).order_by(Kot.id.asc()).all()
    bills = Bill.query.filter_by(order_id=order.id).order_by(Bill.id.asc()).all()
    return {
        "success": True,
        "order": order.to_dict(),
        "items": [oi.to_dict() for oi in order.items],
        "kots": [k.to_dict() for k in kots],
        "bills": [b.to_dict() for b in bills],
    }


def change_order_status(order, status, cancel_reason=None):
    """Shared by PATCH /orders and PUT /orders/<id>; returns a response."""
    if status not in ORDER_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(sorted(ORDER_STATUSES))}", 400)
    if order.is_closed:
        return json_error("Order is closed", 400)

    if status == OrderStatus.CANCELLED.value:
        bill = open_bill_for(order.id)
        if bill and bill.payments:
            return json_error("Order has payments on an open bill", 400, bill_id=bill.id)
        if bill:
            bill.status = BillStatus.VOID.value

    set_order_status(order, status, cancel_reason=cancel_reason)
    audit(status if status == OrderStatus.CANCELLED.value else "status", "order", order.id,
          {"status": status, "cancel_reason": cancel_reason}, commit=False)
    db.session.commit()
    return jsonify({"success": True, "message": "Order updated", "order": order.to_dict()})


@app.get("/api/restaurant/orders")
@require_permission("orders.view")
def api_orders_list():
    q = Order.query
    status = request.args.get("status")
    if status:
        q = q.filter(Order.status.in_([s.strip() for s in status.split(",") if s.strip()]))
    waiter_id = to_int(request.args.get("waiter_id"))
    if waiter_id:
        q = q.filter(Order.waiter_id == waiter_id)
    order_type = request.args.get("order_type")
    if order_type:
        q = q.filter(Order.order_type == order_type)
    table_id = to_int(request.args.get("table_id"))
    if table_id:
        q = q.filter(Order.table_id == table_id)

    limit = min(max(to_int(request.args.get("limit"), 100), 1), 500)
    orders = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()
    return jsonify({"success": True, "orders": [o.to_dict() for o in orders], "count": len(orders)})


@app.post("/api/restaurant/orders")
@require_permission("orders.create")
def api_orders_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()

    order_type = data.get("order_type") or OrderType.DINE_IN.value
    if order_type not in ORDER_TYPES:
        return json_error(f"Invalid order type. Must be one of: {', '.join(sorted(ORDER_TYPES))}", 400)

    items, err = build_order_items(data.get("items"))
    if err:
        return json_error(err, 400)

    table = None
    if data.get("table_id") not in (None, ""):
        table = db.session.get(DiningTable, to_int(data.get("table_id"), 0))
        if not table or not table.is_active:
            return json_error("Table not found", 404)
        if table.current_order_id:
            current = db.session.get(Order, table.current_order_id)
            if current and not current.is_closed:
                return json_error(f"Table {table.table_number} already has an open order", 400)

    customer = None
    if data.get("customer_id") not in (None, ""):
        customer = db.session.get(Customer, to_int(data.get("customer_id"), 0))
        if not customer:
            return json_error("Customer not found", 404)

    if norm_role(current_user.role) == Role.WAITER.value:
        waiter_id = int(current_user.id)
    else:
        waiter_id = staff_id(data.get("waiter_id")) or int(current_user.id)

    with atomic():
        order = Order(
            order_number=next_number("ORD"),
            table_id=table.id if table else None,
            waiter_id=waiter_id,
            customer_id=customer.id if customer else None,
            customer_name=(data.get("customer_name") or (customer.name if customer else "") or "").strip() or None,
            customer_phone=(data.get("customer_phone") or (customer.phone if customer else "") or "").strip() or None,
            order_type=order_type,
            status=OrderStatus.PENDING.value,
            notes=(data.get("notes") or "").strip() or None,
        )
        order.items.extend(items)
        refresh_order_total(order)
        db.session.add(order)
        db.session.flush()

        if table:
            occupy_table(table, order)
        kots = send_items_to_kitchen(order, items) if to_bool(data.get("send_to_kitchen")) else []
        audit("create", "order", order.id, {
            "order_number": order.order_number,
            "total": str(order.total_amount),
            "kots": len(kots),
        }, commit=False)

    app.logger.info("Order %s created with %d item(s)", order.order_number, len(items))
    body = order_detail(order)
    body.update({"message": "Order created", "order_id": order.id, "order_number": order.order_number})
    return jsonify(body), 201


@app.patch("/api/restaurant/orders")
@require_permission("orders.update")
def api_orders_patch():
    data = json_body()
    order_id = to_int(data.get("id"))
    if not order_id:
        return json_error("Order ID is required", 400)
    order = db.get_or_404(Order, order_id, description="Order not found")
    return change_order_status(order, data.get("status"), data.get("cancel_reason"))


@app.get("/api/restaurant/orders/<int:order_id>")
@require_permission("orders.view")
def api_order_get(order_id):
    order = db.get_or_404(Order, order_id, description="Order not found")
    return jsonify(order_detail(order))


@app.put("/api/restaurant/orders/<int:order_id>")
@require_permission("orders.update")
def api_order_put(order_id):
    data = json_body()
    order = db.get_or_404(Order, order_id, description="Order not found")
    return change_order_status(order, data.get("status"), data.get("cancel_reason"))


@app.delete("/api/restaurant/orders/<int:order_id>")
@require_permission("orders.update")
def api_order_cancel(order_id):
    order = db.get_or_404(Order, order_id, description="Order not found")
    reason = json_body().get("cancel_reason") or request.args.get("reason")
    return change_order_status(order, OrderStatus.CANCELLED.value, reason)


@app.post("/api/restaurant/orders/<int:order_id>/items")
@require_permission("orders.update")
def api_order_add_items(order_id):
    data = json_body()
    order = db.get_or_404(Order, order_id, description="Order not found")
    if order.is_closed:
        return json_error("Order is closed", 400)
    items, err = build_order_items(data.get("items"))
    if err:
        return json_error(err, 400)

    with atomic():
        order.items.extend(items)
        refresh_order_total(order)
        refresh_open_bill(order)
        if order.status in (OrderStatus.READY.value, OrderStatus.SERVED.value):
            order.status = OrderStatus.PREPARING.value
        db.session.flush()
        if to_bool(data.get("send_to_kitchen")):
            send_items_to_kitchen(order, items)
        audit("add_items", "order", order.id, {"count": len(items), "total": str(order.total_amount)}, commit=False)

    body = order_detail(order)
    body["message"] = "Items added"
    return jsonify(body), 201


@app.put("/api/restaurant/order-items/<int:item_id>/status")
@require_permission("orders.update")
def api_order_item_status(item_id):
    status = json_body().get("status")
    if status not in ORDER_ITEM_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(sorted(ORDER_ITEM_STATUSES))}", 400)
    oi = db.get_or_404(OrderItem, item_id, description="Order item not found")
    if oi.order.is_closed:
        return json_error("Order is closed", 400)

    oi.status = status
    sync_order_from_items(oi.order)
    db.session.commit()
    return jsonify({"success": True, "item": oi.to_dict(), "order_status": oi.order.status})


# ---------------------------
# Kitchen order tickets
# ---------------------------

KOT_SORT = case(
    (Kot.status == KotStatus.PENDING.value, 0),
    (Kot.status == KotStatus.PREPARING.value, 1),
    (Kot.status == KotStatus.READY.value, 2),
    else_=3
)


@app.get("/api/restaurant/kots")
@require_permission("kots.view")
def api_kots_list():
    kot_id = request.args.get("id")
    if kot_id:
        kot = db.get_or_404(Kot, to_int(kot_id, 0), description="KOT not found")
        return jsonify({"success": True, "kot": kot.to_dict()})

    if request.args.get("type") == "stats":
        day = parse_day(request.args.get("date")) or local_today()
        return jsonify({"success": True, "stats": kot_stats(day)})

    status = request.args.get("status")
    station = request.args.get("station")
    day = parse_day(request.args.get("date"))

    q = Kot.query
    if request.args.get("type") == "active" or not (status or station or day):
        q = q.filter(Kot.status.in_([KotStatus.PENDING.value, KotStatus.PREPARING.value, KotStatus.READY.value]))
    if status:
        q = q.filter(Kot.status == status)
    if station:
        q = q.filter(Kot.station == station)
    if day:
        start, end = day_bounds_utc(day)
        q = q.filter(Kot.printed_at >= start, Kot.printed_at < end)

    limit = min(max(to_int(request.args.get("limit"), 50), 1), 500)
    kots = q.order_by(KOT_SORT, Kot.printed_at.asc(), Kot.id.asc()).limit(limit).all()
    return jsonify({"success": True, "kots": [k.to_dict() for k in kots], "count": len(kots)})


@app.post("/api/restaurant/kots")
@require_permission("kots.create")
def api_kots_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    order_id = to_int(data.get("order_id"))
    station = data.get("station")
    lines_in = data.get("items")
    if not order_id or not station or not isinstance(lines_in, list) or not lines_in:
        return json_error("Order ID, station and items are required", 400)
    if station not in STATIONS:
        return json_error(f"Invalid station. Must be one of: {', '.join(sorted(STATIONS))}", 400)

    order = db.get_or_404(Order, order_id, description="Order not found")
    if order.is_closed:
        return json_error("Order is closed", 400)

    lines = []
    for line in lines_in:
        oi = db.session.get(OrderItem, to_int(line.get("order_item_id"), 0)) if isinstance(line, dict) else None
        if not oi or oi.order_id != order.id:
            return json_error("Every item must reference an item of this order", 400)
        qty = to_int(line.get("quantity"), oi.quantity)
        if qty <= 0:
            return json_error("Quantity must be a positive integer", 400)
        note = (line.get("special_instructions") or oi.special_instructions or "").strip() or None
        lines.append((oi, qty, note))

    with atomic():
        kot = create_kot(order, station, lines, prepared_by=staff_id(data.get("prepared_by")))
        db.session.flush()
        audit("create", "kot", kot.id, {"order_id": order.id, "station": station}, commit=False)

    return jsonify({"success": True, "message": "KOT created", "kot": kot.to_dict()}), 201


@app.patch("/api/restaurant/kots")
@require_permission("kots.update")
def api_kots_patch():
    data = json_body()
    action = data.get("action")
    uid = int(current_user.id)

    if action == "update-item":
        item_id = to_int(data.get("kot_item_id"))
        status = data.get("item_status") or data.get("status")
        if not item_id or not status:
            return json_error("KOT item ID and status are required", 400)
        if status not in KOT_ITEM_STATUSES:
            return json_error(f"Invalid item status. Must be one of: {', '.join(sorted(KOT_ITEM_STATUSES))}", 400)
        item = db.get_or_404(KotItem, item_id, description="KOT item not found")
        kot = set_kot_item_status(item, status, uid)
        db.session.commit()
        return jsonify({"success": True, "message": "KOT item updated", "kot": kot.to_dict()})

    kot_id = to_int(data.get("id"))
    if not kot_id:
        return json_error("KOT ID is required", 400)
    kot = db.get_or_404(Kot, kot_id, description="KOT not found")

    if action == "complete-all":
        complete_all_kot_items(kot, uid)
        db.session.commit()
        return jsonify({"success": True, "message": "All items completed", "kot": kot.to_dict()})

    status = data.get("status")
    if status not in KOT_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(sorted(KOT_STATUSES))}", 400)
    set_kot_status(kot, status, uid)
    db.session.commit()
    return jsonify({"success": True, "message": "KOT updated", "kot": kot.to_dict()})


@app.get("/api/restaurant/kots/<int:kot_id>")
@require_permission("kots.view")
def api_kot_get(kot_id):
    kot = db.get_or_404(Kot, kot_id, description="KOT not found")
    return jsonify({"success": True, "kot": kot.to_dict()})


@app.put("/api/restaurant/kots/<int:kot_id>")
@require_permission("kots.update")
def api_kot_put(kot_id):
    data = json_body()
    status = data.get("status")
    if status not in KOT_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(sorted(KOT_STATUSES))}", 400)
    kot = db.get_or_404(Kot, kot_id, description="KOT not found")
    set_kot_status(kot, status, staff_id(data.get("prepared_by")) or int(current_user.id))
    db.session.commit()
    return jsonify({"success": True, "kot": kot.to_dict()})


@app.patch("/api/restaurant/kots/<int:kot_id>")
@require_permission("kots.update")
def api_kot_item_patch(kot_id):
    data = json_body()
    item_id = to_int(data.get("item_id"))
    status = data.get("status")
    if not item_id or status not in KOT_ITEM_STATUSES:
        return json_error("item_id and a valid status are required", 400)
    kot = db.get_or_404(Kot, kot_id, description="KOT not found")
    item = KotItem.query.filter_by(id=item_id, kot_id=kot.id).first()
    if not item:
        return json_error("KOT item not found", 404)
    set_kot_item_status(item, status, int(current_user.id))
    db.session.commit()
    return jsonify({"success": True, "kot": kot.to_dict()})


# ---------------------------
# Bills and payments
# ---------------------------

def parse_tenders(data, amount_paid):
    """Return ([(method, amount, reference)], error)."""
    split = data.get("split_payments") or []
    if split:
        if not isinstance(split, list):
            return None, "split_payments must be a list"
        tenders = []
        for sp in split:
            if not isinstance(sp, dict):
                return None, "Invalid split payment"
            method = sp.get("method") or sp.get("payment_method")
            amt = to_amount(sp.get("amount"))
            if method not in PAYMENT_METHODS:
                return None, f"Invalid payment method: {method}"
            if amt is None or amt <= 0:
                return None, "Split payment amounts must be positive"
            tenders.append((method, amt, sp.get("reference") or sp.get("reference_number")))
        return tenders, None

    method = data.get("payment_method")
    if method not in PAYMENT_METHODS:
        return None, f"Invalid payment method. Must be one of: {', '.join(sorted(PAYMENT_METHODS))}"
    return [(method, amount_paid, data.get("reference_number"))], None


def open_bill_for(order_id):
    return Bill.query.filter_by(order_id=order_id, status=BillStatus.UNPAID.value).first()


def bill_payable_error(bill):
    if bill.status == BillStatus.PAID.value:
        return "Bill is already paid"
    if bill.status == BillStatus.VOID.value:
        return "Bill is void"
    if not bill.order or bill.order.is_closed:
        return "Order is closed"
    return None


def refresh_open_bill(order):
    """Re-price the order's unpaid bill after its items change. Caller commits."""
    bill = open_bill_for(order.id)
    if not bill:
        return None
    totals = compute_bill_totals(order.total_amount, bill.discount_amount,
                                 bill.service_charge_percent, bill.tax_percent)
    for k, v in totals.items():
        setattr(bill, k, v)
    return bill


@app.get("/api/restaurant/bills")
@require_permission("bills.view")
def api_bills_get():
    bill_id = request.args.get("id")
    if bill_id:
        bill = db.get_or_404(Bill, to_int(bill_id, 0), description="Bill not found")
        return jsonify({
            "success": True,
            "bill": bill.to_dict(),
            "items": [oi.to_dict() for oi in bill.order.items] if bill.order else [],
        })

    kind = request.args.get("type")
    if kind == "today":
        start, end = day_bounds_utc(local_today())
        bills = Bill.query.filter(Bill.created_at >= start, Bill.created_at < end) \
            .order_by(Bill.created_at.desc()).all()
        return jsonify({"success": True, "bills": [b.to_dict() for b in bills], "count": len(bills)})

    if kind == "summary":
        day_from = parse_day(request.args.get("start_date") or request.args.get("startDate")) or local_today()
        day_to = parse_day(request.args.get("end_date") or request.args.get("endDate")) or day_from
        start, end = day_bounds_utc(day_from, day_to)
        bills = Bill.query.filter(Bill.created_at >= start, Bill.created_at < end) \
            .filter(Bill.status != BillStatus.VOID.value).all()
        total = sum((money(b.grand_total) for b in bills), Decimal("0.00"))
        paid = sum((money(b.grand_total) for b in bills if b.status == BillStatus.PAID.value), Decimal("0.00"))
        return jsonify({"success": True, "summary": {
            "start_date": day_from.isoformat(),
            "end_date": day_to.isoformat(),
            "total_bills": len(bills),
            "total_sales": str(money(total)),
            "average_bill": str(money(total / len(bills))) if bills else "0.00",
            "paid_amount": str(money(paid)),
            "pending_amount": str(money(total - paid)),
        }})

    if kind:
        return json_error("Invalid request type", 400)

    q = Bill.query
    if request.args.get("status"):
        q = q.filter(Bill.status == request.args.get("status"))
    limit = min(max(to_int(request.args.get("limit"), 50), 1), 500)
    bills = q.order_by(Bill.created_at.desc(), Bill.id.desc()).limit(limit).all()
    return jsonify({"success": True, "bills": [b.to_dict() for b in bills], "count": len(bills)})


def add_bill_payment(data):
    bill_id = to_int(data.get("bill_id"))
    method = data.get("payment_method")
    amount = to_amount(data.get("amount"))
    if not bill_id or not method or amount is None:
        return json_error("Bill ID, payment method and amount are required", 400)
    if method not in PAYMENT_METHODS:
        return json_error(f"Invalid payment method. Must be one of: {', '.join(sorted(PAYMENT_METHODS))}", 400)
    if amount <= 0:
        return json_error("Invalid payment amount", 400)

    bill = db.get_or_404(Bill, bill_id, description="Bill not found")
    err = bill_payable_error(bill)
    if err:
        return json_error(err, 400)
    remaining = money(bill.grand_total) - bill_paid_total(bill)
    if amount > remaining + AMOUNT_TOLERANCE:
        return json_error("Payment exceeds the remaining balance", 400, remaining=str(remaining))

    if method == PaymentMethod.CREDIT.value:
        customer = db.session.get(Customer, bill.customer_id) if bill.customer_id else None
        if not customer:
            return json_error("Customer ID required for credit payments", 400)
        pending_credit = sum(
            (money(p.amount) for p in bill.payments if p.payment_method == PaymentMethod.CREDIT.value),
            Decimal("0.00")
        )
        err = credit_error(customer, pending_credit + amount)
        if err:
            return json_error(err, 400)

    with atomic():
        bill.payments.append(BillPayment(
            payment_method=method,
            amount=amount,
            reference_number=data.get("reference_number"),
            notes={"received_by": int(current_user.id)},
        ))
        db.session.flush()
        settled = bill_paid_total(bill) + AMOUNT_TOLERANCE >= money(bill.grand_total)
        if settled:
            settle_bill(bill)
        audit("payment", "bill", bill.id, {"method": method, "amount": str(amount), "settled": settled}, commit=False)

    return jsonify({
        "success": True,
        "message": "Payment added",
        "bill": bill.to_dict(),
        "paid_total": str(bill_paid_total(bill)),
    })


@app.post("/api/restaurant/bills")
@require_permission("bills.create")
def api_bills_post():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    if data.get("action") == "add-payment":
        return add_bill_payment(data)

    order_id = to_int(data.get("order_id"))
    if not order_id:
        return json_error("Order ID is required", 400)
    order = db.get_or_404(Order, order_id, description="Order not found")
    if order.is_closed:
        return json_error("Order is closed", 400)
    if not order.items:
        return json_error("Order has no items", 400)
    if open_bill_for(order.id):
        return json_error("Order already has an open bill", 400)

    discount = to_amount(data.get("discount_amount") or 0)
    if discount is None or discount < 0:
        return json_error("Invalid discount amount", 400)
    service_pct = to_amount(data.get("service_charge_percent")) if data.get("service_charge_percent") is not None else None
    tax_pct = to_amount(data.get("tax_percent")) if data.get("tax_percent") is not None else None
    for pct in (service_pct, tax_pct):
        if pct is not None and not (0 <= pct <= 100):
            return json_error("Percentages must be between 0 and 100", 400)

    customer = None
    if data.get("customer_id") not in (None, ""):
        customer = db.session.get(Customer, to_int(data.get("customer_id"), 0))
        if not customer:
            return json_error("Customer not found", 404)

    totals = compute_bill_totals(order.total_amount, discount, service_pct, tax_pct)
    with atomic():
        bill = new_bill(order, totals, data.get("discount_type"), data.get("discount_reason"), customer)
        db.session.flush()
        audit("create", "bill", bill.id, {"order_id": order.id, "grand_total": str(totals["grand_total"])}, commit=False)

    return jsonify({"success": True, "message": "Bill created", "bill": bill.to_dict()}), 201


@app.patch("/api/restaurant/bills")
@require_permission("bills.update")
def api_bills_mark_paid():
    bill_id = to_int(json_body().get("id"))
    if not bill_id:
        return json_error("Bill ID is required", 400)
    bill = db.get_or_404(Bill, bill_id, description="Bill not found")
    err = bill_payable_error(bill)
    if err:
        return json_error(err, 400)

    with atomic():
        settle_bill(bill)
        audit("mark_paid", "bill", bill.id, {"grand_total": str(money(bill.grand_total))}, commit=False)
    return jsonify({"success": True, "message": "Bill marked as paid", "bill": bill.to_dict()})


@app.post("/api/restaurant/bills/<int:order_id>/payment")
@require_permission("payments.create")
def api_process_payment(order_id):
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()

    if not data.get("payment_method") and not data.get("split_payments"):
        return json_error("Payment method is required", 400)
    amount_paid = to_amount(data.get("amount_paid", data.get("amount")))
    if amount_paid is None or amount_paid <= 0:
        return json_error("Invalid payment amount", 400)
    discount = to_amount(data.get("discount_amount") or 0)
    if discount is None or discount < 0:
        return json_error("Invalid discount amount", 400)

    order = db.get_or_404(Order, order_id, description="Order not found")
    if order.is_closed:
        return json_error("Order is closed", 400)
    if not order.items:
        return json_error("Order has no items", 400)

    existing = open_bill_for(order.id)
    if existing and existing.payments:
        return json_error("Order has an open bill with payments; settle it with add-payment", 400)

    totals = compute_bill_totals(order.total_amount, discount)
    final_amount = totals["grand_total"]
    if abs(amount_paid - final_amount) > AMOUNT_TOLERANCE:
        return json_error("Payment amount does not match bill total", 400,
                          expected=str(final_amount), received=str(amount_paid))

    tenders, err = parse_tenders(data, amount_paid)
    if err:
        return json_error(err, 400)
    tendered = sum((amt for _m, amt, _r in tenders), Decimal("0.00"))
    if abs(tendered - final_amount) > AMOUNT_TOLERANCE:
        return json_error("Split payments must add up to the bill total", 400,
                          expected=str(final_amount), received=str(tendered))

    customer = None
    customer_id = to_int(data.get("customer_id")) or order.customer_id
    if customer_id:
        customer = db.session.get(Customer, customer_id)
        if not customer:
            return json_error("Customer not found", 404)

    credit_total = sum((amt for m, amt, _r in tenders if m == PaymentMethod.CREDIT.value), Decimal("0.00"))
    if credit_total > 0:
        if not customer:
            return json_error("Customer ID required for credit payments", 400)
        err = credit_error(customer, credit_total)
        if err:
            return json_error(err, 400)

    notes = {
        "customer_name": data.get("customer_name"),
        "customer_phone": data.get("customer_phone"),
        "discount_reason": data.get("discount_reason"),
        "split": len(tenders) > 1,
    }

    with atomic():
        if existing:
            bill = existing
            for k, v in totals.items():
                setattr(bill, k, v)
            if customer:
                bill.customer_id = customer.id
        else:
            bill = new_bill(order, totals, data.get("discount_type"), data.get("discount_reason"), customer)
        if data.get("customer_name"):
            bill.customer_name = data["customer_name"].strip()
        if data.get("customer_phone"):
            bill.customer_phone = data["customer_phone"].strip()
        bill.discount_reason = data.get("discount_reason") or bill.discount_reason

        for method, amt, ref in tenders:
            bill.payments.append(BillPayment(
                payment_method=method, amount=amt, reference_number=ref, notes=notes,
            ))
        db.session.flush()
        settle_bill(bill)
        audit("payment", "order", order.id, {
            "bill_number": bill.bill_number,
            "amount": str(final_amount),
            "methods": [m for m, _a, _r in tenders],
        }, commit=False)

    app.logger.info("Order %s settled with bill %s (%s)", order.order_number, bill.bill_number, final_amount)
    return jsonify({
        "success": True,
        "message": "Payment processed successfully",
        "bill": bill.to_dict(),
        "receipt": receipt_payload(bill),
    })


@app.get("/api/restaurant/bills/<int:bill_id>/receipt.pdf")
@require_permission("bills.view")
def api_bill_receipt_pdf(bill_id):
    bill = db.get_or_404(Bill, bill_id, description="Bill not found")
    pdf = build_receipt_pdf_bytes(bill)
    return send_file(
        io.BytesIO(pdf),
        mimetype="application/pdf",
        as_attachment=False,
        download_name=f"{bill.bill_number}.pdf",
    )


@app.get("/api/restaurant/payments")
@require_permission("payments.view")
def api_payments_history():
    day_from = parse_day(request.args.get("startDate") or request.args.get("start_date"))
    day_to = parse_day(request.args.get("endDate") or request.args.get("end_date"))

    q = db.session.query(BillPayment, Bill).join(Bill, Bill.id == BillPayment.bill_id)
    if day_from or day_to:
        start, end = day_bounds_utc(day_from or day_to, day_to or day_from)
        q = q.filter(BillPayment.created_at >= start, BillPayment.created_at < end)
    if request.args.get("method"):
        q = q.filter(BillPayment.payment_method == request.args.get("method"))

    rows = q.order_by(BillPayment.created_at.desc(), BillPayment.id.desc()).limit(1000).all()
    payments = []
    by_method = {}
    for p, bill in rows:
        row = p.to_dict()
        row.update({k: v for k, v in (p.notes or {}).items() if k not in row})
        row.update({
            "bill_number": bill.bill_number,
            "order_id": bill.order_id,
            "order_number": bill.order.order_number if bill.order else None,
            "table_number": bill.order.table.table_number if bill.order and bill.order.table else None,
            "grand_total": str(money(bill.grand_total)),
        })
        payments.append(row)
        by_method[p.payment_method] = by_method.get(p.payment_method, Decimal("0.00")) + money(p.amount)

    return jsonify({
        "success": True,
        "payments": payments,
        "count": len(payments),
        "totals_by_method": {k: str(money(v)) for k, v in by_method.items()},
    })


# ---------------------------
# Tables (floor view)
# ---------------------------

def table_view(t):
    out = t.to_dict()
    order = db.session.get(Order, t.current_order_id) if t.current_order_id else None
    out["current_order"] = {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "total_amount": str(money(order.total_amount)),
        "item_count": len(order.items),
        "created_at": iso(order.created_at),
    } if order else None
    waiter = db.session.get(User, t.waiter_id) if t.waiter_id else None
    out["waiter_name"] = waiter.full_name if waiter else None
    return out


@app.get("/api/restaurant/tables")
@require_permission("tables.view")
def api_tables_list():
    q = DiningTable.query.filter(DiningTable.is_active.is_(True))
    kind = request.args.get("type")
    if kind == "available":
        q = q.filter(DiningTable.status == TableStatus.AVAILABLE.value) \
            .order_by(DiningTable.capacity.asc(), DiningTable.table_number.asc())
    elif kind == "occupied":
        q = q.filter(DiningTable.status == TableStatus.OCCUPIED.value) \
            .order_by(DiningTable.occupied_at.asc())
    else:
        for field in ("floor", "section", "status"):
            if request.args.get(field):
                q = q.filter(getattr(DiningTable, field) == request.args.get(field))
        q = q.order_by(DiningTable.floor.asc(), DiningTable.table_number.asc())

    tables = q.all()
    return jsonify({"success": True, "tables": [table_view(t) for t in tables], "count": len(tables)})


@app.get("/api/restaurant/tables/<int:table_id>")
@require_permission("tables.view")
def api_table_get(table_id):
    t = db.get_or_404(DiningTable, table_id, description="Table not found")
    return jsonify({"success": True, "table": table_view(t)})


@app.patch("/api/restaurant/tables")
@require_permission("tables.update")
def api_tables_patch():
    data = json_body()
    table_id = to_int(data.get("id"))
    action = data.get("action")
    if not table_id or not action:
        return json_error("Table ID and action are required", 400)
    t = db.get_or_404(DiningTable, table_id, description="Table not found")

    if action == "update-status":
        status = data.get("status")
        if status not in TABLE_STATUSES:
            return json_error(f"Invalid status. Must be one of: {', '.join(sorted(TABLE_STATUSES))}", 400)
        if status == TableStatus.AVAILABLE.value:
            clear_table(t)
        else:
            t.status = status
    elif action == "assign-waiter":
        waiter = db.session.get(User, to_int(data.get("waiter_id"), 0))
        if not waiter or not waiter.is_active:
            return json_error("Waiter not found", 404)
        t.waiter_id = waiter.id
    elif action == "clear":
        clear_table(t)
    else:
        return json_error("Invalid action", 400)

    audit(action, "table", t.id, {"status": t.status, "waiter_id": t.waiter_id}, commit=False)
    db.session.commit()
    return jsonify({"success": True, "message": "Table updated", "table": table_view(t)})


# ---------------------------
# Held bills
# ---------------------------

@app.get("/api/held-bills")
@require_permission("held_bills.view")
def api_held_bills_get():
    held_id = request.args.get("id")
    if held_id:
        hb = db.get_or_404(HeldBill, to_int(held_id, 0), description="Held bill not found")
        return jsonify({"success": True, "heldBill": hb.to_dict(with_items=True)})
    rows = HeldBill.query.order_by(HeldBill.created_at.desc(), HeldBill.id.desc()).all()
    return jsonify({"success": True, "heldBills": [hb.to_dict() for hb in rows]})


@app.post("/api/held-bills")
@require_permission("held_bills.create")
def api_held_bills_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    items_in = data.get("items")
    if not isinstance(items_in, list) or not items_in:
        return json_error("Items are required", 400)

    items = []
    for it in items_in:
        if not isinstance(it, dict):
            return json_error("Invalid item", 400)
        name = (it.get("item_name") or it.get("name") or "").strip()
        qty = to_int(it.get("quantity", 1))
        price = to_amount(it.get("price"))
        if not name:
            return json_error("Every item needs a name", 400)
        if not qty or qty <= 0:
            return json_error("Quantity must be a positive integer", 400)
        if price is None or price < 0:
            return json_error("Price must be a non-negative number", 400)
        menu_item_id = to_int(it.get("menu_item_id"))
        if menu_item_id and not db.session.get(MenuItem, menu_item_id):
            menu_item_id = None
        items.append(HeldBillItem(
            menu_item_id=menu_item_id, item_name=name, quantity=qty, price=price,
            special_instructions=(it.get("special_instructions") or "").strip() or None,
        ))

    table_id = to_int(data.get("table_id"))
    if table_id and not db.session.get(DiningTable, table_id):
        return json_error("Table not found", 404)

    with atomic():
        hb = HeldBill(
            held_by=staff_id(data.get("held_by")) or int(current_user.id),
            table_id=table_id,
            customer_name=(data.get("customer_name") or "").strip() or None,
            notes=(data.get("notes") or "").strip() or None,
            total=money(sum((money(i.price) * i.quantity for i in items), Decimal("0.00"))),
        )
        hb.items.extend(items)
        db.session.add(hb)
        db.session.flush()
        audit("hold", "held_bill", hb.id, {"total": str(hb.total)}, commit=False)

    return jsonify({"success": True, "heldBill": hb.to_dict(with_items=True)}), 201


@app.delete("/api/held-bills")
@require_permission("held_bills.delete")
def api_held_bills_delete():
    held_id = to_int(request.args.get("id"))
    if not held_id:
        return json_error("Held bill ID is required", 400)
    hb = db.session.get(HeldBill, held_id)
    if not hb:
        return json_error("Held bill not found", 404)
    db.session.delete(hb)
    db.session.commit()
    return jsonify({"success": True, "message": "Held bill deleted"})


@app.post("/api/held-bills/<int:held_id>/recall")
@require_permission("held_bills.update")
def api_held_bill_recall(held_id):
    hb = db.get_or_404(HeldBill, held_id, description="Held bill not found")
    payload = hb.to_dict(with_items=True)
    with atomic():
        db.session.delete(hb)
        audit("recall", "held_bill", held_id, {"total": payload["total"]}, commit=False)
    return jsonify({"success": True, "heldBill": payload})


# ---------------------------
# Admin: tables
# ---------------------------

TABLE_FIELDS = (
    "table_number", "table_type", "floor", "section", "capacity", "min_capacity",
    "status", "position_x", "position_y", "shape", "color", "notes", "is_active",
)


def apply_table_fields(t, data):
    for field in TABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "table_number":
            value = (value or "").strip()
            if not value:
                return "Table number is required"
            if taken(DiningTable, DiningTable.table_number == value, t.id):
                return "Table number already exists"
        elif field == "status":
            if value not in TABLE_STATUSES:
                return f"Invalid status. Must be one of: {', '.join(sorted(TABLE_STATUSES))}"
        elif field in ("capacity", "min_capacity"):
            value = to_int(value)
            if not value or value <= 0:
                return f"{field} must be a positive integer"
        elif field in ("position_x", "position_y"):
            value = to_int(value, 0)
        elif field == "is_active":
            value = to_bool(value, True)
        else:
            value = (str(value).strip() or None) if value is not None else None
        setattr(t, field, value)
    return None


@app.get("/api/admin/tables")
@require_permission("tables.manage")
def api_admin_tables_list():
    q = DiningTable.query
    if not to_bool(request.args.get("includeInactive")):
        q = q.filter(DiningTable.is_active.is_(True))
    tables = q.order_by(DiningTable.floor.asc(), DiningTable.table_number.asc()).all()
    return jsonify({"success": True, "tables": [table_view(t) for t in tables]})


@app.post("/api/admin/tables")
@require_permission("tables.manage")
def api_admin_tables_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    if not (data.get("table_number") or "").strip():
        return json_error("Table number is required", 400)
    t = DiningTable(status=TableStatus.AVAILABLE.value)
    err = apply_table_fields(t, data)
    if err:
        return json_error(err, 400)
    db.session.add(t)
    db.session.commit()
    audit("create", "table", t.id, {"table_number": t.table_number})
    return jsonify({"success": True, "message": "Table created", "table": t.to_dict()}), 201


@app.patch("/api/admin/tables")
@require_permission("tables.manage")
def api_admin_tables_update():
    data = json_body()
    table_id = to_int(data.get("id"))
    if not table_id:
        return json_error("Table ID is required", 400)
    t = db.get_or_404(DiningTable, table_id, description="Table not found")
    err = apply_table_fields(t, data)
    if err:
        db.session.rollback()
        return json_error(err, 400)
    db.session.commit()
    audit("update", "table", t.id, {k: data[k] for k in TABLE_FIELDS if k in data})
    return jsonify({"success": True, "message": "Table updated", "table": t.to_dict()})


@app.delete("/api/admin/tables")
@require_permission("tables.manage")
def api_admin_tables_delete():
    table_id = to_int(request.args.get("id"))
    if not table_id:
        return json_error("Table ID is required", 400)
    t = db.get_or_404(DiningTable, table_id, description="Table not found")
    if t.status == TableStatus.OCCUPIED.value or t.current_order_id:
        return json_error("Cannot delete an occupied table", 400)

    if to_bool(request.args.get("permanent")):
        db.session.delete(t)
        message = "Table permanently deleted"
    else:
        t.is_active = False
        message = "Table deactivated"
    audit("delete", "table", table_id, {"permanent": to_bool(request.args.get("permanent"))}, commit=False)
    db.session.commit()
    return jsonify({"success": True, "message": message})


# ---------------------------
# Admin: products and recipes
# ---------------------------

@app.get("/api/admin/products")
@require_permission("menu.view")
def api_admin_products_list():
    q = MenuItem.query
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(sa_or(MenuItem.name.ilike(like), MenuItem.item_code.ilike(like)))
    if request.args.get("category_id"):
        q = q.filter(MenuItem.category_id == to_int(request.args.get("category_id"), 0))
    items = q.order_by(MenuItem.name.asc()).all()
    return jsonify({"success": True, "products": [mi.to_dict(with_variants=True) for mi in items]})


@app.post("/api/admin/products")
@require_permission("menu.create")
def api_admin_products_create():
    bad = require_json()
    if bad:
        return bad
    mi, err = create_menu_item(request.get_json())
    if err:
        return json_error(err, 400)
    return jsonify({"success": True, "product": mi.to_dict(with_variants=True)}), 201


@app.get("/api/admin/products/<int:item_id>")
@require_permission("menu.view")
def api_admin_product_get(item_id):
    mi = db.get_or_404(MenuItem, item_id, description="Product not found")
    out = mi.to_dict(with_variants=True)
    out["ingredients"] = recipe_lines(mi.id)
    return jsonify({"success": True, "product": out})


@app.put("/api/admin/products/<int:item_id>")
@require_permission("menu.update")
def api_admin_product_update(item_id):
    mi = db.get_or_404(MenuItem, item_id, description="Product not found")
    err = update_menu_item(mi, json_body())
    if err:
        return json_error(err, 400)
    return jsonify({"success": True, "product": mi.to_dict(with_variants=True)})


@app.delete("/api/admin/products/<int:item_id>")
@require_permission("menu.delete")
def api_admin_product_delete(item_id):
    mi = db.get_or_404(MenuItem, item_id, description="Product not found")
    err = delete_menu_item(mi)
    if err:
        return json_error(err, 400)
    return jsonify({"success": True, "message": "Product deleted"})


def recipe_lines(menu_item_id):
    rows = db.session.query(MenuItemIngredient, Ingredient) \
        .join(Ingredient, Ingredient.id == MenuItemIngredient.ingredient_id) \
        .filter(MenuItemIngredient.menu_item_id == menu_item_id) \
        .order_by(Ingredient.name.asc()).all()
    return [{
        "ingredient_id": ing.id,
        "name": ing.name,
        "unit": ing.unit,
        "quantity_required": str(dec3(line.quantity_required)),
    } for line, ing in rows]


@app.get("/api/admin/products/<int:item_id>/ingredients")
@require_permission("menu.view")
def api_recipe_get(item_id):
    db.get_or_404(MenuItem, item_id, description="Product not found")
    return jsonify({"success": True, "ingredients": recipe_lines(item_id)})


@app.put("/api/admin/products/<int:item_id>/ingredients")
@require_permission("menu.update")
def api_recipe_replace(item_id):
    mi = db.get_or_404(MenuItem, item_id, description="Product not found")
    lines = json_body().get("ingredients")
    if not isinstance(lines, list):
        return json_error("ingredients must be a list", 400)

    parsed = {}
    for line in lines:
        ing = db.session.get(Ingredient, to_int(line.get("ingredient_id"), 0)) if isinstance(line, dict) else None
        qty = to_qty(line.get("quantity_required")) if isinstance(line, dict) else None
        if not ing:
            return json_error("Ingredient not found", 400)
        if qty is None or qty <= 0:
            return json_error("quantity_required must be positive", 400)
        parsed[ing.id] = qty

    with atomic():
        MenuItemIngredient.query.filter_by(menu_item_id=mi.id).delete()
        for ing_id, qty in parsed.items():
            db.session.add(MenuItemIngredient(menu_item_id=mi.id, ingredient_id=ing_id, quantity_required=qty))
        audit("recipe", "menu_item", mi.id, {"lines": len(parsed)}, commit=False)

    return jsonify({"success": True, "ingredients": recipe_lines(mi.id)})


# ---------------------------
# Admin: customers and credit
# ---------------------------

def apply_customer_fields(c, data, creating=False):
    if creating or "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return "Name is required"
        c.name = name
    if "phone" in data:
        phone = (data.get("phone") or "").strip() or None
        if phone and taken(Customer, Customer.phone == phone, c.id):
            return "A customer with this phone already exists"
        c.phone = phone
    for field in ("email", "address", "notes"):
        if field in data:
            setattr(c, field, (data.get(field) or "").strip() or None)
    if "credit_limit" in data:
        limit = to_amount(data.get("credit_limit") or 0)
        if limit is None or limit < 0:
            return "credit_limit must be a non-negative number"
        c.credit_limit = limit
    return None


@app.get("/api/admin/customers")
@require_permission("customers.view")
def api_customers_list():
    q = Customer.query
    phone = (request.args.get("phone") or "").strip()
    if phone:
        q = q.filter(Customer.phone == phone)
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(sa_or(Customer.name.ilike(like), Customer.phone.ilike(like), Customer.email.ilike(like)))
    if to_bool(request.args.get("with_credit")):
        q = q.filter(Customer.credit_balance > 0)
    customers = q.order_by(Customer.name.asc()).all()
    return jsonify({"success": True, "customers": [c.to_dict() for c in customers]})


@app.post("/api/admin/customers")
@require_permission("customers.create")
def api_customers_create():
    bad = require_json()
    if bad:
        return bad
    c = Customer(credit_balance=Decimal("0.00"), total_spent=Decimal("0.00"), total_purchases=0)
    err = apply_customer_fields(c, request.get_json(), creating=True)
    if err:
        return json_error(err, 400)
    db.session.add(c)
    db.session.commit()
    audit("create", "customer", c.id, {"name": c.name})
    return jsonify({"success": True, "customer": c.to_dict()}), 201


@app.put("/api/admin/customers")
@require_permission("customers.update")
def api_customers_update():
    data = json_body()
    customer_id = to_int(data.get("id"))
    if not customer_id:
        return json_error("Customer ID is required", 400)
    c = db.get_or_404(Customer, customer_id, description="Customer not found")
    err = apply_customer_fields(c, data)
    if err:
        db.session.rollback()
        return json_error(err, 400)
    db.session.commit()
    audit("update", "customer", c.id)
    return jsonify({"success": True, "customer": c.to_dict()})


@app.delete("/api/admin/customers")
@require_permission("customers.delete")
def api_customers_delete():
    customer_id = to_int(request.args.get("id"))
    if not customer_id:
        return json_error("Customer ID is required", 400)
    c = db.session.get(Customer, customer_id)
    if not c:
        return json_error("Customer not found", 404, changes=0)
    if money(c.credit_balance) > 0:
        return json_error("Customer has an outstanding credit balance", 400, changes=0)

    with atomic():
        Order.query.filter_by(customer_id=c.id).update({"customer_id": None})
        Bill.query.filter_by(customer_id=c.id).update({"customer_id": None})
        db.session.delete(c)
        audit("delete", "customer", customer_id, {"name": c.name}, commit=False)
    return jsonify({"success": True, "message": "Customer deleted", "changes": 1})


@app.get("/api/admin/customers/<int:customer_id>/credit-payments")
@require_permission("customers.view")
def api_credit_payments_list(customer_id):
    c = db.get_or_404(Customer, customer_id, description="Customer not found")
    rows = CreditPayment.query.filter_by(customer_id=c.id).order_by(CreditPayment.created_at.desc()).all()
    return jsonify({"success": True, "customer": c.to_dict(), "payments": [r.to_dict() for r in rows]})


@app.post("/api/admin/customers/<int:customer_id>/credit-payments")
@require_permission("customers.update")
def api_credit_payment_create(customer_id):
    data = json_body()
    c = db.get_or_404(Customer, customer_id, description="Customer not found")
    amount = to_amount(data.get("amount"))
    if amount is None or amount <= 0:
        return json_error("Invalid payment amount", 400)
    if amount > money(c.credit_balance):
        return json_error("Payment exceeds the outstanding credit balance", 400,
                          credit_balance=str(money(c.credit_balance)))
    method = data.get("payment_method") or PaymentMethod.CASH.value
    if method not in PAYMENT_METHODS or method == PaymentMethod.CREDIT.value:
        return json_error("Invalid payment method", 400)

    with atomic():
        c.credit_balance = money(money(c.credit_balance) - amount)
        payment = CreditPayment(
            customer_id=c.id, amount=amount, payment_method=method,
            notes=(data.get("notes") or "").strip() or None,
            received_by=int(current_user.id),
        )
        db.session.add(payment)
        db.session.flush()
        audit("credit_payment", "customer", c.id, {"amount": str(amount), "method": method}, commit=False)

    return jsonify({"success": True, "payment": payment.to_dict(), "customer": c.to_dict()}), 201


# ---------------------------
# Admin: employees
# ---------------------------

@app.get("/api/admin/employees")
@require_permission("employees.view")
def api_employees_list():
    q = User.query
    if request.args.get("role"):
        q = q.filter(User.role == norm_role(request.args.get("role")))
    users = q.order_by(User.full_name.asc()).all()
    return jsonify({"success": True, "employees": [u.to_dict() for u in users]})


@app.post("/api/admin/employees")
@require_permission("employees.create")
def api_employees_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    username = (data.get("username") or "").strip()
    full_name = (data.get("full_name") or "").strip()
    role = norm_role(data.get("role"))
    pin = str(data.get("pin") or "")

    if not username or not full_name or not pin:
        return json_error("Username, full name and PIN are required", 400)
    if role not in ROLES:
        return json_error(f"Invalid role. Must be one of: {', '.join(sorted(ROLES))}", 400)
    if not valid_pin(pin):
        return json_error("PIN must be exactly 4 digits", 400)
    if User.query.filter(db.func.lower(User.username) == username.lower()).first():
        return json_error("Username already exists", 400)

    u = User(
        username=username,
        full_name=full_name,
        role=role,
        email=(data.get("email") or "").strip() or None,
        phone=(data.get("phone") or "").strip() or None,
        is_active=to_bool(data.get("is_active"), True),
    )
    u.set_pin(pin)
    db.session.add(u)
    db.session.commit()
    audit("create", "user", u.id, {"username": username, "role": role})
    return jsonify({"success": True, "employee": u.to_dict()}), 201


@app.put("/api/admin/employees")
@require_permission("employees.update")
def api_employees_update():
    data = json_body()
    user_id = to_int(data.get("id"))
    if not user_id:
        return json_error("Employee ID is required", 400)
    u = db.get_or_404(User, user_id, description="Employee not found")

    if "username" in data:
        username = (data.get("username") or "").strip()
        if not username:
            return json_error("Username is required", 400)
        clash = User.query.filter(db.func.lower(User.username) == username.lower(), User.id != u.id).first()
        if clash:
            return json_error("Username already exists", 400)
        u.username = username
    if "role" in data:
        role = norm_role(data.get("role"))
        if role not in ROLES:
            return json_error(f"Invalid role. Must be one of: {', '.join(sorted(ROLES))}", 400)
        u.role = role
    if "full_name" in data:
        full_name = (data.get("full_name") or "").strip()
        if not full_name:
            return json_error("Full name is required", 400)
        u.full_name = full_name
    for field in ("email", "phone"):
        if field in data:
            setattr(u, field, (data.get(field) or "").strip() or None)
    if data.get("pin"):
        if not valid_pin(data.get("pin")):
            return json_error("PIN must be exactly 4 digits", 400)
        u.set_pin(data["pin"])
        revoke_user_sessions(u.id, commit=False)
    if "is_active" in data:
        u.is_active = to_bool(data.get("is_active"), True)
        if not u.is_active:
            revoke_user_sessions(u.id, commit=False)

    db.session.commit()
    audit("update", "user", u.id, {k: data[k] for k in ("username", "role", "is_active") if k in data})
    return jsonify({"success": True, "employee": u.to_dict()})


@app.delete("/api/admin/employees")
@require_permission("employees.delete")
def api_employees_delete():
    user_id = to_int(request.args.get("id"))
    if not user_id:
        return json_error("Employee ID is required", 400)
    u = db.get_or_404(User, user_id, description="Employee not found")
    if u.id == int(current_user.id):
        return json_error("You cannot delete your own account", 400)

    referenced = Order.query.filter_by(waiter_id=u.id).first() or Bill.query.filter_by(cashier_id=u.id).first()
    with atomic():
        revoke_user_sessions(u.id, commit=False)
        if referenced:
            u.is_active = False
        else:
            db.session.delete(u)
        audit("delete", "user", user_id, {"deactivated": bool(referenced)}, commit=False)

    if referenced:
        return jsonify({"success": True, "deactivated": True,
                        "message": "Employee has order history and was deactivated"})
    return jsonify({"success": True, "message": "Employee deleted"})


@app.put("/api/admin/employees/<int:user_id>/pin")
@require_permission("employees.update")
def api_employee_pin(user_id):
    new_pin = json_body().get("new_pin")
    if not valid_pin(new_pin):
        return json_error("PIN must be exactly 4 digits", 400)
    u = db.get_or_404(User, user_id, description="Employee not found")

    with atomic():
        u.set_pin(new_pin)
        revoke_user_sessions(u.id, commit=False)
        audit("pin_change", "user", u.id, commit=False)
    return jsonify({"success": True, "message": "PIN updated successfully"})


@app.get("/api/admin/devices")
@require_permission("devices.view")
def api_devices_list():
    q = Device.query
    if not to_bool(request.args.get("includeInactive")):
        q = q.filter(Device.is_active.is_(True))
    devices = q.order_by(Device.last_seen.desc()).all()
    return jsonify({"success": True, "devices": [d.to_dict() for d in devices]})


# ---------------------------
# Admin: settings
# ---------------------------

@app.get("/api/admin/settings")
@login_required
def api_settings_get():
    return jsonify({"success": True, "settings": settings_dict()})


@app.put("/api/admin/settings")
@require_permission("settings.update")
def api_settings_update():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    incoming = data.get("settings") if isinstance(data.get("settings"), dict) else data

    changed = {}
    for key, value in incoming.items():
        if key not in DEFAULT_SETTINGS:
            continue
        if key in NUMERIC_SETTINGS:
            pct = to_amount(value)
            if pct is None or not (0 <= pct <= 100):
                return json_error(f"{key} must be a number between 0 and 100", 400)
            value = int(pct) if pct == pct.to_integral() else pct
        changed[key] = "" if value is None else str(value)

    if not changed:
        return json_error("No valid settings provided", 400)
    for key, value in changed.items():
        setting_set(key, value, commit=False)
    audit("update", "settings", None, changed, commit=False)
    db.session.commit()
    return jsonify({"success": True, "message": "Settings updated", "settings": settings_dict()})


# ---------------------------
# Admin: reports and dashboard
# ---------------------------

def report_window(period):
    """(day_from, day_to) in business-local dates, or (None, None) for all time."""
    today = local_today()
    if period == "today":
        return today, today
    if period == "week":
        return today - timedelta(days=6), today
    if period == "month":
        return today - timedelta(days=29), today
    if period == "custom":
        day_from = parse_day(request.args.get("startDate"))
        day_to = parse_day(request.args.get("endDate")) or today
        if not day_from or day_from > day_to:
            abort(400, description="A valid startDate and endDate are required for custom reports")
        return day_from, day_to
    if period == "all":
        return None, None
    abort(400, description="Invalid period. Use today, week, month, custom or all")


def paid_bills_between(start=None, end=None):
    q = Bill.query.filter(Bill.status == BillStatus.PAID.value)
    if start is not None:
        q = q.filter(Bill.paid_at >= start, Bill.paid_at < end)
    return q.all()


@app.get("/api/admin/reports")
@require_permission("reports.view")
def api_reports():
    period = request.args.get("period", "today")
    day_from, day_to = report_window(period)
    start, end = day_bounds_utc(day_from, day_to) if day_from else (None, None)

    bills = paid_bills_between(start, end)
    total_sales = sum((money(b.grand_total) for b in bills), Decimal("0.00"))
    customers = {b.customer_id or b.customer_phone for b in bills if b.customer_id or b.customer_phone}

    pq = db.session.query(BillPayment.payment_method, db.func.count(BillPayment.id), db.func.sum(BillPayment.amount)) \
        .join(Bill, Bill.id == BillPayment.bill_id).filter(Bill.status == BillStatus.PAID.value)
    if start is not None:
        pq = pq.filter(Bill.paid_at >= start, Bill.paid_at < end)
    methods = [
        {"method": m, "count": n, "total": str(money(s or 0))}
        for m, n, s in pq.group_by(BillPayment.payment_method).all()
    ]

    iq = db.session.query(
        OrderItem.menu_item_name,
        db.func.sum(OrderItem.quantity),
        db.func.sum(OrderItem.subtotal),
    ).join(Order, Order.id == OrderItem.order_id).filter(Order.status == OrderStatus.COMPLETED.value)
    if start is not None:
        iq = iq.filter(Order.completed_at >= start, Order.completed_at < end)
    top = iq.group_by(OrderItem.menu_item_name) \
        .order_by(db.func.sum(OrderItem.subtotal).desc()).limit(10).all()

    eq = Expense.query
    if day_from:
        eq = eq.filter(Expense.purchase_date >= day_from, Expense.purchase_date <= day_to)
    total_expenses = sum((money(e.amount) for e in eq.all()), Decimal("0.00"))

    return jsonify({"success": True, "report": {
        "period": period,
        "start_date": day_from.isoformat() if day_from else None,
        "end_date": day_to.isoformat() if day_to else None,
        "totalSales": str(money(total_sales)),
        "totalOrders": len(bills),
        "avgOrderValue": str(money(total_sales / len(bills))) if bills else "0.00",
        "uniqueCustomers": len(customers),
        "totalExpenses": str(money(total_expenses)),
        "paymentMethods": methods,
        "topItems": [
            {"name": name, "quantity": int(qty or 0), "revenue": str(money(rev or 0))}
            for name, qty, rev in top
        ],
    }})


@app.get("/api/admin/dashboard")
@require_permission("reports.view")
def api_dashboard():
    today = local_today()
    t_start, t_end = day_bounds_utc(today)
    today_bills = paid_bills_between(t_start, t_end)
    today_sales = sum((money(b.grand_total) for b in today_bills), Decimal("0.00"))
    today_orders = Order.query.filter(
        Order.status == OrderStatus.COMPLETED.value,
        Order.completed_at >= t_start, Order.completed_at < t_end,
    ).count()

    w_start, w_end = day_bounds_utc(today - timedelta(days=6), today)
    weekly = {(today - timedelta(days=i)).isoformat(): Decimal("0.00") for i in range(6, -1, -1)}
    for b in paid_bills_between(w_start, w_end):
        key = local_day_of(b.paid_at).isoformat()
        if key in weekly:
            weekly[key] += money(b.grand_total)

    m_start, m_end = day_bounds_utc(today - timedelta(days=29), today)
    p_start, p_end = day_bounds_utc(today - timedelta(days=59), today - timedelta(days=30))
    month_bills = paid_bills_between(m_start, m_end)
    month_sales = sum((money(b.grand_total) for b in month_bills), Decimal("0.00"))
    prev_sales = sum((money(b.grand_total) for b in paid_bills_between(p_start, p_end)), Decimal("0.00"))
    growth = float(((month_sales - prev_sales) / prev_sales) * 100) if prev_sales > 0 else (100.0 if month_sales > 0 else 0.0)

    by_type = {}
    for b in month_bills:
        kind = b.order.order_type if b.order else "unknown"
        by_type[kind] = by_type.get(kind, Decimal("0.00")) + money(b.grand_total)

    low_stock = Ingredient.query.filter(Ingredient.stock <= Ingredient.min_stock) \
        .order_by(Ingredient.name.asc()).all()

    return jsonify({"success": True, "dashboard": {
        "todaySales": str(money(today_sales)),
        "todayOrders": today_orders,
        "totalProducts": MenuItem.query.count(),
        "totalEmployees": User.query.filter(User.is_active.is_(True)).count(),
        "weeklySales": [{"date": d, "total": str(money(v))} for d, v in weekly.items()],
        "revenueSources": [{"order_type": k, "total": str(money(v))} for k, v in sorted(by_type.items())],
        "lowStockItems": [i.to_dict() for i in low_stock],
        "monthlySales": str(money(month_sales)),
        "growthPercent": round(growth, 1),
        "avgOrderValue": str(money(month_sales / len(month_bills))) if month_bills else "0.00",
        "activeOrders": Order.query.filter(Order.status.notin_(list(CLOSED_ORDER_STATUSES))).count(),
    }})


# ---------------------------
# Admin: expenses
# ---------------------------

def apply_expense_fields(e, data, creating=False):
    if creating or "description" in data:
        desc = (data.get("description") or "").strip()
        if not desc:
            return "Description is required"
        e.description = desc
    if creating or "amount" in data:
        amount = to_amount(data.get("amount"))
        if amount is None or amount <= 0:
            return "Amount must be a positive number"
        e.amount = amount
    if "purchase_date" in data:
        if data.get("purchase_date") and not parse_day(data.get("purchase_date")):
            return "purchase_date must be YYYY-MM-DD"
        e.purchase_date = parse_day(data.get("purchase_date"))
    elif creating:
        e.purchase_date = local_today()
    for field in ("category", "supplier", "notes"):
        if field in data:
            setattr(e, field, (data.get(field) or "").strip() or None)
    return None


@app.get("/api/admin/expenses")
@require_permission("expenses.view")
def api_expenses_list():
    q = Expense.query
    day_from = parse_day(request.args.get("startDate"))
    day_to = parse_day(request.args.get("endDate"))
    if day_from:
        q = q.filter(Expense.purchase_date >= day_from)
    if day_to:
        q = q.filter(Expense.purchase_date <= day_to)
    if request.args.get("category"):
        q = q.filter(Expense.category == request.args.get("category"))
    rows = q.order_by(Expense.purchase_date.desc(), Expense.id.desc()).all()
    total = sum((money(e.amount) for e in rows), Decimal("0.00"))
    return jsonify({"success": True, "expenses": [e.to_dict() for e in rows], "total": str(money(total))})


@app.post("/api/admin/expenses")
@require_permission("expenses.create")
def api_expenses_create():
    bad = require_json()
    if bad:
        return bad
    e = Expense(created_by=int(current_user.id))
    err = apply_expense_fields(e, request.get_json(), creating=True)
    if err:
        return json_error(err, 400)
    db.session.add(e)
    db.session.commit()
    audit("create", "expense", e.id, {"amount": str(money(e.amount))})
    return jsonify({"success": True, "expense": e.to_dict()}), 201


@app.put("/api/admin/expenses")
@require_permission("expenses.update")
def api_expenses_update():
    data = json_body()
    expense_id = to_int(data.get("id"))
    if not expense_id:
        return json_error("Expense ID is required", 400)
    e = db.get_or_404(Expense, expense_id, description="Expense not found")
    err = apply_expense_fields(e, data)
    if err:
        db.session.rollback()
        return json_error(err, 400)
    db.session.commit()
    return jsonify({"success": True, "expense": e.to_dict()})


@app.delete("/api/admin/expenses")
@require_permission("expenses.delete")
def api_expenses_delete():
    expense_id = to_int(request.args.get("id"))
    if not expense_id:
        return json_error("Expense ID is required", 400)
    e = db.get_or_404(Expense, expense_id, description="Expense not found")
    db.session.delete(e)
    audit("delete", "expense", expense_id, commit=False)
    db.session.commit()
    return jsonify({"success": True, "message": "Expense deleted"})


# ---------------------------
# Inventory
# ---------------------------

@app.get("/api/ingredients")
@require_permission("inventory.view")
def api_ingredients_list():
    q = Ingredient.query
    search = (request.args.get("search") or "").strip()
    if search:
        q = q.filter(Ingredient.name.ilike(f"%{search}%"))
    if to_bool(request.args.get("low_stock")):
        q = q.filter(Ingredient.stock <= Ingredient.min_stock)
    rows = q.order_by(Ingredient.name.asc()).all()
    return jsonify({"success": True, "ingredients": [i.to_dict() for i in rows]})


@app.post("/api/ingredients")
@require_permission("inventory.create")
def api_ingredients_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    name = (data.get("name") or "").strip()
    unit = (data.get("unit") or "").strip()
    if not name or not unit:
        return json_error("Name and unit are required", 400)
    if Ingredient.query.filter(db.func.lower(Ingredient.name) == name.lower()).first():
        return json_error("Ingredient already exists", 400)

    stock = to_qty(data.get("stock", 0))
    min_stock = to_qty(data.get("min_stock", 5))
    cost = to_amount(data.get("cost_per_unit", 0))
    if stock is None or stock < 0 or min_stock is None or min_stock < 0 or cost is None or cost < 0:
        return json_error("stock, min_stock and cost_per_unit must be non-negative numbers", 400)

    with atomic():
        ing = Ingredient(name=name, unit=unit, stock=Decimal("0.000"), min_stock=min_stock, cost_per_unit=cost)
        db.session.add(ing)
        db.session.flush()
        if stock > 0:
            stock_change(ing, stock, "initial", "Initial stock", user_id=int(current_user.id))
        audit("create", "ingredient", ing.id, {"name": name, "stock": str(stock)}, commit=False)

    return jsonify({"success": True, "ingredient": ing.to_dict()}), 201


@app.put("/api/ingredients")
@require_permission("inventory.update")
def api_ingredients_update():
    data = json_body()
    ing_id = to_int(data.get("id"))
    if not ing_id:
        return json_error("Ingredient ID is required", 400)
    ing = db.get_or_404(Ingredient, ing_id, description="Ingredient not found")

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return json_error("Name is required", 400)
        clash = Ingredient.query.filter(db.func.lower(Ingredient.name) == name.lower(), Ingredient.id != ing.id).first()
        if clash:
            return json_error("Ingredient already exists", 400)
        ing.name = name
    if "unit" in data:
        ing.unit = (data.get("unit") or "").strip() or ing.unit
    if "min_stock" in data:
        min_stock = to_qty(data.get("min_stock"))
        if min_stock is None or min_stock < 0:
            return json_error("min_stock must be a non-negative number", 400)
        ing.min_stock = min_stock
    if "cost_per_unit" in data:
        cost = to_amount(data.get("cost_per_unit"))
        if cost is None or cost < 0:
            return json_error("cost_per_unit must be a non-negative number", 400)
        ing.cost_per_unit = cost
    if "stock" in data:
        stock = to_qty(data.get("stock"))
        if stock is None or stock < 0:
            return json_error("stock must be a non-negative number", 400)
        delta = stock - dec3(ing.stock)
        if delta != 0:
            stock_change(ing, delta, "adjustment", data.get("reason") or "Stock edited",
                         user_id=int(current_user.id))

    audit("update", "ingredient", ing.id, commit=False)
    db.session.commit()
    return jsonify({"success": True, "ingredient": ing.to_dict()})


@app.delete("/api/ingredients")
@require_permission("inventory.delete")
def api_ingredients_delete():
    ing_id = to_int(request.args.get("id"))
    if not ing_id:
        return json_error("Ingredient ID is required", 400)
    ing = db.get_or_404(Ingredient, ing_id, description="Ingredient not found")
    if MenuItemIngredient.query.filter_by(ingredient_id=ing.id).first():
        return json_error("Ingredient is used in recipes", 400)
    db.session.delete(ing)
    audit("delete", "ingredient", ing_id, {"name": ing.name}, commit=False)
    db.session.commit()
    return jsonify({"success": True, "message": "Ingredient deleted"})


@app.post("/api/ingredients/<int:ing_id>/adjust")
@require_permission("inventory.update")
def api_ingredient_adjust(ing_id):
    data = json_body()
    ing = db.get_or_404(Ingredient, ing_id, description="Ingredient not found")
    qty = to_qty(data.get("quantity_change", data.get("quantity")))
    change_type = data.get("change_type") or "adjustment"
    if qty is None or qty == 0:
        return json_error("quantity_change must be a non-zero number", 400)
    if change_type not in ("add", "remove", "adjustment", "waste"):
        return json_error("Invalid change type", 400)
    if change_type == "add":
        qty = abs(qty)
    elif change_type in ("remove", "waste"):
        qty = -abs(qty)
    if dec3(ing.stock) + qty < 0:
        return json_error("Insufficient stock", 400, stock=str(dec3(ing.stock)))

    new_stock = stock_change(ing, qty, change_type, data.get("reason"), data.get("reference"),
                             user_id=int(current_user.id))
    audit("stock_adjust", "ingredient", ing.id, {"change": str(qty), "type": change_type}, commit=False)
    db.session.commit()
    return jsonify({"success": True, "ingredient": ing.to_dict(), "new_stock": str(new_stock)})


@app.get("/api/ingredients/<int:ing_id>/history")
@require_permission("inventory.view")
def api_ingredient_history(ing_id):
    ing = db.get_or_404(Ingredient, ing_id, description="Ingredient not found")
    limit = min(max(to_int(request.args.get("limit"), 100), 1), 1000)
    rows = IngredientHistory.query.filter_by(ingredient_id=ing.id) \
        .order_by(IngredientHistory.created_at.desc(), IngredientHistory.id.desc()).limit(limit).all()
    return jsonify({"success": True, "ingredient": ing.to_dict(), "history": [r.to_dict() for r in rows]})


# ---------------------------
# Audit
# ---------------------------

@app.get("/api/audit-logs")
@require_permission("audit.view")
def api_audit_logs():
    q = AuditLog.query
    if request.args.get("entity"):
        q = q.filter(AuditLog.entity == request.args.get("entity"))
    if request.args.get("action"):
        q = q.filter(AuditLog.action == request.args.get("action"))
    limit = min(max(to_int(request.args.get("limit"), 200), 1), 1000)
    rows = q.order_by(AuditLog.id.desc()).limit(limit).all()
    return jsonify({"success": True, "logs": [{
        "id": r.id,
        "user_id": r.user_id,
        "action": r.action,
        "entity": r.entity,
        "entity_id": r.entity_id,
        "ip": r.ip,
        "details": r.details_json or {},
        "created_at": iso(r.created_at),
    } for r in rows]})


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
        seed_defaults()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")), debug=False)
