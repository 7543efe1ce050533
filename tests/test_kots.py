def _kots(body, station):
    return next(k for k in body["kots"] if k["station"] == station)


def test_create_kot_validation(client, admin_headers, place_order):
    body = place_order()
    order_id = body["order_id"]
    line = {"order_item_id": body["items"][0]["id"]}

    post = lambda payload: client.post("/api/restaurant/kots", json=payload, headers=admin_headers)
    assert post({"order_id": order_id, "station": "hot-kitchen"}).status_code == 400
    resp = post({"order_id": order_id, "station": "pizza-oven", "items": [line]})
    assert resp.status_code == 400
    assert "Invalid station" in resp.get_json()["error"]
    assert post({"order_id": 9999, "station": "bar", "items": [line]}).status_code == 404

    other = place_order()
    resp = post({"order_id": other["order_id"], "station": "bar", "items": [line]})
    assert resp.status_code == 400

    resp = post({"order_id": order_id, "station": "grill", "items": [line]})
    assert resp.status_code == 201
    kot = resp.get_json()["kot"]
    assert kot["status"] == "pending"
    assert kot["kot_number"].startswith("KOT-")
    assert kot["items"][0]["quantity"] == 2


def test_completing_every_item_marks_kot_ready(client, admin_headers, place_order):
    body = place_order(send_to_kitchen=True)
    bar = _kots(body, "bar")
    item_id = bar["items"][0]["id"]

    resp = client.patch("/api/restaurant/kots", json={
        "action": "update-item", "kot_item_id": item_id, "item_status": "completed",
    }, headers=admin_headers)
    assert resp.status_code == 200
    kot = resp.get_json()["kot"]
    assert kot["status"] == "ready"
    assert kot["completed_at"]


def test_partial_items_keep_kot_open(client, admin_headers, place_order):
    body = place_order()
    order_id = body["order_id"]
    lines = [{"order_item_id": i["id"]} for i in body["items"]]
    kot = client.post("/api/restaurant/kots", json={"order_id": order_id, "station": "hot-kitchen", "items": lines},
                      headers=admin_headers).get_json()["kot"]

    first = kot["items"][0]["id"]
    resp = client.patch(f"/api/restaurant/kots/{kot['id']}", json={"item_id": first, "status": "preparing"},
                        headers=admin_headers)
    assert resp.get_json()["kot"]["status"] == "preparing"

    resp = client.patch(f"/api/restaurant/kots/{kot['id']}", json={"item_id": first, "status": "completed"},
                        headers=admin_headers)
    assert resp.get_json()["kot"]["status"] == "preparing"

    second = kot["items"][1]["id"]
    resp = client.patch(f"/api/restaurant/kots/{kot['id']}", json={"item_id": second, "status": "completed"},
                        headers=admin_headers)
    assert resp.get_json()["kot"]["status"] == "ready"

    order = client.get(f"/api/restaurant/orders/{order_id}", headers=admin_headers).get_json()["order"]
    assert order["status"] == "ready"


def test_kot_status_drives_order_status(client, admin_headers, place_order):
    body = place_order(send_to_kitchen=True)
    order_id = body["order_id"]
    hot, bar = _kots(body, "hot-kitchen"), _kots(body, "bar")

    resp = client.patch("/api/restaurant/kots", json={"id": hot["id"], "status": "preparing"}, headers=admin_headers)
    assert resp.get_json()["kot"]["started_at"]
    order = client.get(f"/api/restaurant/orders/{order_id}", headers=admin_headers).get_json()["order"]
    assert order["status"] == "preparing"

    client.patch("/api/restaurant/kots", json={"action": "complete-all", "id": hot["id"]}, headers=admin_headers)
    order = client.get(f"/api/restaurant/orders/{order_id}", headers=admin_headers).get_json()["order"]
    assert order["status"] == "preparing"

    resp = client.patch("/api/restaurant/kots", json={"action": "complete-all", "id": bar["id"]}, headers=admin_headers)
    assert resp.get_json()["kot"]["status"] == "ready"
    detail = client.get(f"/api/restaurant/orders/{order_id}", headers=admin_headers).get_json()
    assert detail["order"]["status"] == "ready"
    assert {i["status"] for i in detail["items"]} == {"ready"}


def test_kot_status_validation(client, admin_headers, place_order):
    body = place_order(send_to_kitchen=True)
    kot_id = body["kots"][0]["id"]
    assert client.patch("/api/restaurant/kots", json={"id": kot_id, "status": "burnt"},
                        headers=admin_headers).status_code == 400
    assert client.patch("/api/restaurant/kots", json={"status": "ready"}, headers=admin_headers).status_code == 400
    assert client.patch("/api/restaurant/kots", json={"id": 9999, "status": "ready"},
                        headers=admin_headers).status_code == 404
    assert client.put(f"/api/restaurant/kots/{kot_id}", json={"status": "served"},
                      headers=admin_headers).status_code == 200
    assert client.get("/api/restaurant/kots/9999", headers=admin_headers).status_code == 404


def test_active_list_and_filters(client, admin_headers, place_order):
    body = place_order(send_to_kitchen=True)
    bar = _kots(body, "bar")

    active = client.get("/api/restaurant/kots?type=active", headers=admin_headers).get_json()
    assert active["count"] == 2

    client.patch("/api/restaurant/kots", json={"id": bar["id"], "status": "completed"}, headers=admin_headers)
    active = client.get("/api/restaurant/kots", headers=admin_headers).get_json()
    assert [k["station"] for k in active["kots"]] == ["hot-kitchen"]

    by_station = client.get("/api/restaurant/kots?station=bar", headers=admin_headers).get_json()
    assert [k["id"] for k in by_station["kots"]] == [bar["id"]]


def test_kot_stats(client, admin_headers, place_order):
    body = place_order(send_to_kitchen=True)
    client.patch("/api/restaurant/kots", json={"action": "complete-all", "id": _kots(body, "bar")["id"]},
                 headers=admin_headers)

    stats = client.get("/api/restaurant/kots?type=stats", headers=admin_headers).get_json()["stats"]
    assert stats["total"] == 2
    assert stats["pending"] == 1
    assert stats["ready"] == 1
    assert {s["station"] for s in stats["by_station"]} == {"bar", "hot-kitchen"}


def test_kot_permissions(client, staff_headers, place_order):
    body = place_order(send_to_kitchen=True)
    kot_id = body["kots"][0]["id"]

    waiter = staff_headers("waiter")
    assert client.get("/api/restaurant/kots", headers=waiter).status_code == 200
    assert client.patch("/api/restaurant/kots", json={"id": kot_id, "status": "preparing"},
                        headers=waiter).status_code == 403

    kitchen = staff_headers("kitchen")
    assert client.patch("/api/restaurant/kots", json={"id": kot_id, "status": "preparing"},
                        headers=kitchen).status_code == 200


def test_order_waits_for_items_not_yet_ticketed(client, admin_headers, place_order):
    body = place_order()
    order_id = body["order_id"]
    kot = client.post("/api/restaurant/kots", json={
        "order_id": order_id, "station": "hot-kitchen", "items": [{"order_item_id": body["items"][0]["id"]}],
    }, headers=admin_headers).get_json()["kot"]

    resp = client.patch("/api/restaurant/kots", json={"action": "complete-all", "id": kot["id"]}, headers=admin_headers)
    assert resp.get_json()["kot"]["status"] == "ready"

    detail = client.get(f"/api/restaurant/orders/{order_id}", headers=admin_headers).get_json()
    assert detail["order"]["status"] == "preparing"
    assert [i["status"] for i in detail["items"]] == ["ready", "pending"]
