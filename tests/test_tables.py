def test_floor_view_lists_active_tables(client, admin_headers):
    body = client.get("/api/restaurant/tables", headers=admin_headers).get_json()
    assert body["count"] == 8
    floors = [t["floor"] for t in body["tables"]]
    assert floors == sorted(floors)

    ground = client.get("/api/restaurant/tables?floor=Ground", headers=admin_headers).get_json()
    assert [t["table_number"] for t in ground["tables"]] == ["T1", "T2", "T3"]
    assert client.get("/api/restaurant/tables/9999", headers=admin_headers).status_code == 404


def test_available_and_occupied_filters(client, admin_headers, place_order, table_id):
    place_order(table_id=table_id("T4"))

    occupied = client.get("/api/restaurant/tables?type=occupied", headers=admin_headers).get_json()
    assert [t["table_number"] for t in occupied["tables"]] == ["T4"]
    assert occupied["tables"][0]["current_order"]["status"] == "pending"

    available = client.get("/api/restaurant/tables?type=available", headers=admin_headers).get_json()
    assert available["count"] == 7
    capacities = [t["capacity"] for t in available["tables"]]
    assert capacities == sorted(capacities)


def test_status_updates_and_clear(client, admin_headers, place_order, table_id):
    t5 = table_id("T5")
    patch = lambda body: client.patch("/api/restaurant/tables", json=body, headers=admin_headers)

    resp = patch({"id": t5, "action": "update-status", "status": "reserved"})
    assert resp.get_json()["table"]["status"] == "reserved"
    assert patch({"id": t5, "action": "update-status", "status": "dirty"}).status_code == 400
    assert patch({"id": t5, "action": "fold"}).status_code == 400
    assert patch({"action": "clear"}).status_code == 400

    t6 = table_id("T6")
    place_order(table_id=t6)
    resp = patch({"id": t6, "action": "clear"})
    table = resp.get_json()["table"]
    assert table["status"] == "available"
    assert table["current_order_id"] is None
    assert table["occupied_at"] is None


def test_assign_waiter(client, admin_headers, make_user, table_id):
    waiter = make_user("gita", "waiter")
    resp = client.patch("/api/restaurant/tables", json={
        "id": table_id("T7"), "action": "assign-waiter", "waiter_id": waiter,
    }, headers=admin_headers)
    assert resp.get_json()["table"]["waiter_name"] == "Gita"

    resp = client.patch("/api/restaurant/tables", json={
        "id": table_id("T7"), "action": "assign-waiter", "waiter_id": 9999,
    }, headers=admin_headers)
    assert resp.status_code == 404


def test_cashier_cannot_change_tables(client, staff_headers, table_id):
    headers = staff_headers("cashier")
    assert client.get("/api/restaurant/tables", headers=headers).status_code == 200
    resp = client.patch("/api/restaurant/tables", json={"id": table_id("T1"), "action": "clear"}, headers=headers)
    assert resp.status_code == 403


def test_admin_table_crud(client, admin_headers):
    resp = client.post("/api/admin/tables", json={
        "table_number": "R1", "floor": "Rooftop", "capacity": 2, "shape": "round",
    }, headers=admin_headers)
    assert resp.status_code == 201
    table = resp.get_json()["table"]
    assert table["status"] == "available"

    dup = client.post("/api/admin/tables", json={"table_number": "R1", "capacity": 2}, headers=admin_headers)
    assert dup.status_code == 400
    assert client.post("/api/admin/tables", json={"table_number": "R2", "capacity": 0},
                       headers=admin_headers).status_code == 400

    resp = client.patch("/api/admin/tables", json={"id": table["id"], "capacity": 4, "notes": "By the window"},
                        headers=admin_headers)
    assert resp.get_json()["table"]["capacity"] == 4
    resp = client.patch("/api/admin/tables", json={"id": table["id"], "table_number": "T1"}, headers=admin_headers)
    assert resp.status_code == 400

    resp = client.delete(f"/api/admin/tables?id={table['id']}", headers=admin_headers)
    assert resp.get_json()["message"] == "Table deactivated"
    active = client.get("/api/admin/tables", headers=admin_headers).get_json()["tables"]
    assert table["id"] not in [t["id"] for t in active]
    everything = client.get("/api/admin/tables?includeInactive=true", headers=admin_headers).get_json()["tables"]
    assert table["id"] in [t["id"] for t in everything]

    resp = client.delete(f"/api/admin/tables?id={table['id']}&permanent=true", headers=admin_headers)
    assert resp.get_json()["message"] == "Table permanently deleted"
    assert client.delete(f"/api/admin/tables?id={table['id']}", headers=admin_headers).status_code == 404


def test_occupied_table_cannot_be_deleted(client, admin_headers, place_order, table_id):
    t8 = table_id("T8")
    place_order(table_id=t8)
    resp = client.delete(f"/api/admin/tables?id={t8}", headers=admin_headers)
    assert resp.status_code == 400
