from datetime import date, timedelta


def pay(client, headers, order_id, amount="504.30", **body):
    body.setdefault("payment_method", "cash")
    return client.post(f"/api/restaurant/bills/{order_id}/payment", json=dict(body, amount_paid=amount),
                       headers=headers)


# customers

def test_customer_crud(client, admin_headers):
    post = lambda body: client.post("/api/admin/customers", json=body, headers=admin_headers)
    resp = post({"name": "Ram Thapa", "phone": "9811111111", "email": "ram@example.com", "credit_limit": 2000})
    assert resp.status_code == 201
    ram = resp.get_json()["customer"]
    assert ram["credit_limit"] == "2000.00"
    assert ram["credit_balance"] == "0.00"

    assert post({"name": "Other", "phone": "9811111111"}).status_code == 400
    assert post({"phone": "9822222222"}).status_code == 400
    assert post({"name": "Bad", "credit_limit": -5}).status_code == 400
    post({"name": "Hari Karki", "phone": "9833333333"})

    found = client.get("/api/admin/customers?search=thapa", headers=admin_headers).get_json()["customers"]
    assert [c["id"] for c in found] == [ram["id"]]
    by_phone = client.get("/api/admin/customers?phone=9833333333", headers=admin_headers).get_json()["customers"]
    assert [c["name"] for c in by_phone] == ["Hari Karki"]

    resp = client.put("/api/admin/customers", json={"id": ram["id"], "address": "Lalitpur"}, headers=admin_headers)
    assert resp.get_json()["customer"]["address"] == "Lalitpur"
    resp = client.put("/api/admin/customers", json={"id": ram["id"], "phone": "9833333333"}, headers=admin_headers)
    assert resp.status_code == 400

    resp = client.delete(f"/api/admin/customers?id={ram['id']}", headers=admin_headers)
    assert resp.get_json() == {"success": True, "message": "Customer deleted", "changes": 1}


def test_delete_missing_customer_reports_no_changes(client, admin_headers):
    resp = client.delete("/api/admin/customers?id=9999", headers=admin_headers)
    assert resp.status_code == 404
    assert resp.get_json() == {"success": False, "error": "Customer not found", "changes": 0}


def test_credit_balance_and_repayment(client, admin_headers, place_order):
    cid = client.post("/api/admin/customers", json={"name": "Maya Gurung", "phone": "9844444444"},
                      headers=admin_headers).get_json()["customer"]["id"]
    pay(client, admin_headers, place_order()["order_id"], payment_method="credit", customer_id=cid)

    owing = client.get("/api/admin/customers?with_credit=1", headers=admin_headers).get_json()["customers"]
    assert [c["id"] for c in owing] == [cid]

    resp = client.delete(f"/api/admin/customers?id={cid}", headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["changes"] == 0

    url = f"/api/admin/customers/{cid}/credit-payments"
    resp = client.post(url, json={"amount": 600}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["credit_balance"] == "504.30"
    assert client.post(url, json={"amount": 100, "payment_method": "credit"}, headers=admin_headers).status_code == 400

    resp = client.post(url, json={"amount": 300, "payment_method": "esewa"}, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.get_json()["customer"]["credit_balance"] == "204.30"
    client.post(url, json={"amount": "204.30"}, headers=admin_headers)

    history = client.get(url, headers=admin_headers).get_json()
    assert history["customer"]["credit_balance"] == "0.00"
    assert sorted(p["amount"] for p in history["payments"]) == ["204.30", "300.00"]
    assert client.delete(f"/api/admin/customers?id={cid}", headers=admin_headers).status_code == 200


# employees

def test_employee_create_and_login(client, admin_headers):
    post = lambda body: client.post("/api/admin/employees", json=body, headers=admin_headers)
    resp = post({"username": "ram", "full_name": "Ram Bahadur", "role": "Waiter", "pin": "4321"})
    assert resp.status_code == 201
    assert resp.get_json()["employee"]["role"] == "waiter"
    assert "pin_hash" not in resp.get_json()["employee"]

    assert post({"username": "x", "full_name": "X", "role": "waiter", "pin": "12"}).status_code == 400
    assert post({"username": "x", "full_name": "X", "role": "chef", "pin": "1234"}).status_code == 400
    assert post({"username": "ADMIN", "full_name": "X", "role": "waiter", "pin": "1234"}).status_code == 400
    assert post({"username": "x", "role": "waiter", "pin": "1234"}).status_code == 400

    resp = client.post("/api/auth/login", json={"username": "ram", "pin": "4321"})
    assert resp.status_code == 200
    assert "orders.*" in resp.get_json()["user"]["permissions"]

    waiters = client.get("/api/admin/employees?role=waiter", headers=admin_headers).get_json()["employees"]
    assert [e["username"] for e in waiters] == ["ram"]


def test_pin_change_revokes_sessions(client, admin_headers, make_user, login):
    uid = make_user("sita", "cashier", pin="1111")
    headers = login("sita", "1111")

    url = f"/api/admin/employees/{uid}/pin"
    assert client.put(url, json={"new_pin": "12345"}, headers=admin_headers).status_code == 400
    assert client.put(url, json={"new_pin": "2468"}, headers=admin_headers).status_code == 200

    assert client.get("/api/auth/me", headers=headers).status_code == 401
    assert client.post("/api/auth/login", json={"username": "sita", "pin": "1111"}).status_code == 401
    assert client.post("/api/auth/login", json={"username": "sita", "pin": "2468"}).status_code == 200


def test_deactivating_employee_logs_them_out(client, admin_headers, make_user, login):
    uid = make_user("gopal", "kitchen")
    headers = login("gopal", "1111")

    resp = client.put("/api/admin/employees", json={"id": uid, "is_active": False}, headers=admin_headers)
    assert resp.get_json()["employee"]["is_active"] is False
    assert client.get("/api/auth/me", headers=headers).status_code == 401

    resp = client.put("/api/admin/employees", json={"id": uid, "role": "owner"}, headers=admin_headers)
    assert resp.status_code == 400


def test_employee_delete_rules(client, admin_headers, make_user, staff_headers, place_order, app):
    from database import User

    with app.app_context():
        admin_id = User.query.filter_by(username="admin").one().id
    resp = client.delete(f"/api/admin/employees?id={admin_id}", headers=admin_headers)
    assert resp.status_code == 400

    spare = make_user("spare", "cashier")
    resp = client.delete(f"/api/admin/employees?id={spare}", headers=admin_headers)
    assert resp.get_json()["message"] == "Employee deleted"
    assert client.delete(f"/api/admin/employees?id={spare}", headers=admin_headers).status_code == 404

    place_order(headers=staff_headers("waiter", username="busy"))
    with app.app_context():
        busy = User.query.filter_by(username="busy").one().id
    resp = client.delete(f"/api/admin/employees?id={busy}", headers=admin_headers)
    assert resp.get_json()["deactivated"] is True
    with app.app_context():
        assert User.query.filter_by(username="busy").one().is_active is False


def test_employees_need_admin(client, staff_headers):
    assert client.get("/api/admin/employees", headers=staff_headers("cashier")).status_code == 403


# settings

def test_settings_change_bill_math(client, admin_headers, staff_headers, place_order):
    settings = client.get("/api/admin/settings", headers=staff_headers("waiter")).get_json()["settings"]
    assert settings["vat_percentage"] == 13.0
    assert settings["restaurant_name"] == "Himalayan Restaurant"

    resp = client.put("/api/admin/settings", json={"settings": {"vat_percentage": 15}}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()["settings"]["vat_percentage"] == 15.0

    order_id = place_order()["order_id"]
    resp = pay(client, admin_headers, order_id, amount="512.50")
    assert resp.status_code == 200
    assert resp.get_json()["bill"]["tax"] == "61.50"


def test_settings_validation(client, admin_headers, staff_headers):
    put = lambda body, headers=admin_headers: client.put("/api/admin/settings", json=body, headers=headers)
    assert put({"vat_percentage": 150}).status_code == 400
    assert put({"service_charge_percentage": "abc"}).status_code == 400
    assert put({"favourite_colour": "blue"}).status_code == 400
    assert put({"restaurant_name": "Everest Kitchen"}).get_json()["settings"]["restaurant_name"] == "Everest Kitchen"
    assert put({"restaurant_name": "Nope"}, headers=staff_headers("cashier")).status_code == 403


# reports and dashboard

def test_reports_today(client, admin_headers, place_order):
    pay(client, admin_headers, place_order()["order_id"])
    client.post("/api/admin/expenses", json={"description": "Gas cylinder", "amount": 1500},
                headers=admin_headers)

    report = client.get("/api/admin/reports?period=today", headers=admin_headers).get_json()["report"]
    assert report["totalSales"] == "504.30"
    assert report["totalOrders"] == 1
    assert report["avgOrderValue"] == "504.30"
    assert report["totalExpenses"] == "1500.00"
    assert report["paymentMethods"] == [{"method": "cash", "count": 1, "total": "504.30"}]
    assert report["topItems"][0] == {"name": "Chicken Momo", "quantity": 2, "revenue": "360.00"}


def test_report_periods(client, admin_headers):
    get = lambda qs: client.get(f"/api/admin/reports?{qs}", headers=admin_headers)
    assert get("period=week").get_json()["report"]["totalOrders"] == 0
    assert get("period=all").get_json()["report"]["start_date"] is None
    assert get("period=yearly").status_code == 400
    resp = get("period=custom")
    assert resp.status_code == 400
    assert "startDate" in resp.get_json()["error"]

    start = (date.today() - timedelta(days=3)).isoformat()
    assert get(f"period=custom&startDate={start}").status_code == 200


def test_dashboard(client, admin_headers, place_order):
    pay(client, admin_headers, place_order()["order_id"])
    place_order()

    dash = client.get("/api/admin/dashboard", headers=admin_headers).get_json()["dashboard"]
    assert dash["todaySales"] == "504.30"
    assert dash["todayOrders"] == 1
    assert dash["totalProducts"] == 13
    assert dash["activeOrders"] == 1
    assert dash["monthlySales"] == "504.30"
    assert dash["growthPercent"] == 100.0
    assert len(dash["weeklySales"]) == 7
    assert sum(float(d["total"]) for d in dash["weeklySales"]) == 504.30
    assert dash["revenueSources"] == [{"order_type": "dine-in", "total": "504.30"}]


def test_reports_need_admin(client, staff_headers):
    assert client.get("/api/admin/dashboard", headers=staff_headers("cashier")).status_code == 403


# expenses

def test_expense_crud(client, admin_headers):
    post = lambda body: client.post("/api/admin/expenses", json=body, headers=admin_headers)
    resp = post({"description": "Vegetables", "amount": 800, "category": "Supplies", "purchase_date": "2026-01-05"})
    assert resp.status_code == 201
    veg = resp.get_json()["expense"]
    assert veg["purchase_date"] == "2026-01-05"
    post({"description": "Rent", "amount": 20000, "category": "Rent", "purchase_date": "2026-01-01"})

    assert post({"description": "Bad", "amount": 0}).status_code == 400
    assert post({"amount": 10}).status_code == 400
    assert post({"description": "Bad", "amount": 1, "purchase_date": "yesterday"}).status_code == 400

    body = client.get("/api/admin/expenses?category=Supplies", headers=admin_headers).get_json()
    assert body["total"] == "800.00"
    january = client.get("/api/admin/expenses?startDate=2026-01-01&endDate=2026-01-31",
                         headers=admin_headers).get_json()
    assert [e["description"] for e in january["expenses"]] == ["Vegetables", "Rent"]

    resp = client.put("/api/admin/expenses", json={"id": veg["id"], "amount": 850}, headers=admin_headers)
    assert resp.get_json()["expense"]["amount"] == "850.00"

    assert client.delete(f"/api/admin/expenses?id={veg['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/expenses?id={veg['id']}", headers=admin_headers).status_code == 404


# audit trail

def test_audit_log_records_actions(client, admin_headers, staff_headers):
    client.post("/api/admin/customers", json={"name": "Audit Me"}, headers=admin_headers)

    logs = client.get("/api/audit-logs?entity=customer", headers=admin_headers).get_json()["logs"]
    assert [(l["action"], l["details"]["name"]) for l in logs] == [("create", "Audit Me")]

    logins = client.get("/api/audit-logs?action=login", headers=admin_headers).get_json()["logs"]
    assert logins

    assert client.get("/api/audit-logs", headers=staff_headers("waiter")).status_code == 403
