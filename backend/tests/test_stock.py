from datetime import timedelta

from pharmaflow.core.clock import utc_today
from pharmaflow.models import Location


def _days(n):
    return (utc_today() + timedelta(days=n)).isoformat()


def _move(client, headers, **body):
    return client.post("/api/v1/stock/movements", json=body, headers=headers)


def _stocked(tenant, make_product, add_stock, quantity=10, expires_at="2099-12-31"):
    p = make_product(tenant["headers"])
    loc = tenant["branches"][0]["locationId"]
    batch = add_stock(tenant["headers"], p["id"], loc, quantity, expires_at=expires_at)["batch"]
    return p, batch, loc


# ---- movements ----
def test_transfer_between_branches(client, tenant, make_product, add_stock):
    p, batch, src = _stocked(tenant, make_product, add_stock)
    dst = tenant["branches"][1]["locationId"]

    r = _move(client, tenant["headers"], type="TRANSFER", productId=p["id"], batchId=batch["id"],
              fromLocationId=src, toLocationId=dst, quantity="4")
    assert r.status_code == 201, r.text
    data = r.json()["data"]
    assert data["fromBalance"]["quantity"] == 6.0
    assert data["toBalance"]["quantity"] == 4.0
    assert data["fulfilledRequestIds"] == []

    balances = client.get("/api/v1/stock/balances", params={"locationId": dst}, headers=tenant["headers"]).json()
    assert [b["quantity"] for b in balances["data"]] == [4.0]
    assert balances["meta"]["count"] == 1


def test_out_with_insufficient_stock(client, tenant, make_product, add_stock):
    p, batch, loc = _stocked(tenant, make_product, add_stock)
    r = _move(client, tenant["headers"], type="OUT", productId=p["id"], batchId=batch["id"],
              fromLocationId=loc, quantity="20")
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "Insufficient stock"
    assert body["meta"]["code"] == "INSUFFICIENT_STOCK"
    assert body["meta"]["available"] == 10.0


def test_movement_side_validation(client, tenant, make_product, add_stock):
    p, batch, loc = _stocked(tenant, make_product, add_stock)
    other = tenant["branches"][1]["locationId"]

    both = _move(client, tenant["headers"], type="ADJUSTMENT", productId=p["id"], batchId=batch["id"],
                 fromLocationId=loc, toLocationId=other, quantity="1")
    assert both.status_code == 400

    no_from = _move(client, tenant["headers"], type="OUT", productId=p["id"], quantity="1")
    assert no_from.status_code == 400
    assert no_from.json()["error"] == "fromLocationId is required"

    up = _move(client, tenant["headers"], type="ADJUSTMENT", productId=p["id"], batchId=batch["id"],
               toLocationId=loc, quantity="2.5")
    assert up.status_code == 201
    assert up.json()["data"]["toBalance"]["quantity"] == 12.5

    bad_type = _move(client, tenant["headers"], type="LOSS", productId=p["id"], toLocationId=loc, quantity="1")
    assert bad_type.status_code == 422


def test_movement_into_foreign_location(client, tenant, make_tenant, make_product):
    p = make_product(tenant["headers"])
    other = make_tenant()
    r = _move(client, tenant["headers"], type="IN", productId=p["id"],
              toLocationId=other["branches"][0]["locationId"], quantity="1")
    assert r.status_code == 404
    assert r.json()["error"] == "Location not found"


def test_expired_batch_is_blocked_and_audited(client, tenant, make_product, add_stock):
    p, batch, loc = _stocked(tenant, make_product, add_stock, quantity=5, expires_at="2020-01-01")

    r = _move(client, tenant["headers"], type="OUT", productId=p["id"], batchId=batch["id"],
              fromLocationId=loc, quantity="1")
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "Batch expired"
    assert body["meta"]["code"] == "BATCH_EXPIRED"
    assert body["meta"]["batchId"] == batch["id"]
    assert body["meta"]["expiresAt"] == "2020-01-01"

    events = client.get(
        "/api/v1/audit/events",
        params={"action": "stock.expiry.blocked", "includePayload": True},
        headers=tenant["headers"],
    ).json()["data"]["items"]
    assert len(events) == 1
    assert events[0]["entityId"] == batch["id"]
    assert events[0]["metadata"]["operation"] == "stock.movement.create"

    # the balance was left untouched
    balances = client.get("/api/v1/stock/balances", params={"productId": p["id"]}, headers=tenant["headers"])
    assert balances.json()["data"][0]["quantity"] == 5.0


def test_bulk_transfer(client, tenant, make_product, add_stock):
    src = tenant["branches"][0]
    dst = tenant["branches"][1]
    a, batch_a, _ = _stocked(tenant, make_product, add_stock)
    b, batch_b, _ = _stocked(tenant, make_product, add_stock, quantity=3)

    r = client.post(
        "/api/v1/stock/bulk-transfers",
        json={
            "fromLocationId": src["locationId"],
            "toLocationId": dst["locationId"],
            "fromWarehouseId": src["id"],
            "items": [
                {"productId": a["id"], "batchId": batch_a["id"], "quantity": "5"},
                {"productId": b["id"], "batchId": batch_b["id"], "quantity": "3"},
            ],
        },
        headers=tenant["headers"],
    )
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["meta"]["count"] == 2
    assert body["data"]["referenceType"] == "BULK_TRANSFER"
    moves = [i["createdMovement"] for i in body["data"]["items"]]
    assert {m["referenceId"] for m in moves} == {body["data"]["referenceId"]}
    assert body["data"]["items"][1]["fromBalance"]["quantity"] == 0.0


def test_bulk_transfer_rejects_mismatched_warehouse(client, tenant, make_product, add_stock):
    p, batch, src = _stocked(tenant, make_product, add_stock)
    r = client.post(
        "/api/v1/stock/bulk-transfers",
        json={
            "fromLocationId": src,
            "toLocationId": tenant["branches"][1]["locationId"],
            "fromWarehouseId": tenant["branches"][1]["id"],
            "items": [{"productId": p["id"], "batchId": batch["id"], "quantity": "1"}],
        },
        headers=tenant["headers"],
    )
    assert r.status_code == 400


def test_stock_routes_need_permission(client, tenant, make_user, make_product):
    seller = make_user(tenant, ["VENTAS"])
    p = make_product(tenant["headers"])
    r = _move(client, seller["headers"], type="IN", productId=p["id"],
              toLocationId=tenant["branches"][0]["locationId"], quantity="1")
    assert r.status_code == 403
    assert client.get("/api/v1/stock/balances", headers=seller["headers"]).status_code == 200


# ---- expiry ----
def test_expiry_summary(client, tenant, make_product, add_stock):
    p = make_product(tenant["headers"])
    loc = tenant["branches"][0]["locationId"]
    for days in (200, -5, 60, 10):
        add_stock(tenant["headers"], p["id"], loc, 1, expires_at=_days(days))

    r = client.get("/api/v1/stock/expiry/summary", headers=tenant["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert [i["status"] for i in data["items"]] == ["EXPIRED", "RED", "YELLOW", "GREEN"]
    assert [i["daysToExpire"] for i in data["items"]] == [-5, 10, 60, 200]
    assert data["items"][0]["sku"] == p["sku"]
    assert data["nextCursor"] is None
    assert data["generatedAt"].endswith("Z")

    red = client.get("/api/v1/stock/expiry/summary", params={"status": "RED"}, headers=tenant["headers"]).json()
    assert [i["daysToExpire"] for i in red["data"]["items"]] == [10]

    soon = client.get(
        "/api/v1/stock/expiry/summary", params={"daysToExpireMax": 60}, headers=tenant["headers"]
    ).json()["data"]["items"]
    assert [i["daysToExpire"] for i in soon] == [-5, 10, 60]

    elsewhere = client.get(
        "/api/v1/stock/expiry/summary", params={"warehouseId": tenant["branches"][1]["id"]}, headers=tenant["headers"]
    ).json()["data"]["items"]
    assert elsewhere == []


def test_expiry_summary_pagination(client, tenant, make_product, add_stock):
    p = make_product(tenant["headers"])
    loc = tenant["branches"][0]["locationId"]
    for days in (5, 6, 7):
        add_stock(tenant["headers"], p["id"], loc, 1, expires_at=_days(days))

    first = client.get("/api/v1/stock/expiry/summary", params={"take": 2}, headers=tenant["headers"]).json()["data"]
    assert [i["daysToExpire"] for i in first["items"]] == [5, 6]
    assert first["nextCursor"] == first["items"][-1]["balanceId"]
    rest = client.get(
        "/api/v1/stock/expiry/summary", params={"take": 2, "cursor": first["nextCursor"]}, headers=tenant["headers"]
    ).json()["data"]
    assert [i["daysToExpire"] for i in rest["items"]] == [7]


def test_fefo_suggestions(client, tenant, make_product, add_stock):
    p = make_product(tenant["headers"])
    branch = tenant["branches"][0]
    late = add_stock(tenant["headers"], p["id"], branch["locationId"], 4, expires_at=_days(100))["batch"]
    early = add_stock(tenant["headers"], p["id"], branch["locationId"], 2, expires_at=_days(20))["batch"]
    add_stock(tenant["headers"], p["id"], branch["locationId"], 9, expires_at=_days(-1))

    url = "/api/v1/stock/fefo-suggestions"
    r = client.get(url, params={"productId": p["id"], "locationId": branch["locationId"]}, headers=tenant["headers"])
    assert r.status_code == 200
    assert [s["batchId"] for s in r.json()["data"]] == [early["id"], late["id"]]
    assert r.json()["data"][0]["availableQuantity"] == 2.0

    by_wh = client.get(url, params={"productId": p["id"], "warehouseId": branch["id"]}, headers=tenant["headers"])
    assert [s["batchId"] for s in by_wh.json()["data"]] == [early["id"], late["id"]]

    r = client.get(url, params={"productId": p["id"]}, headers=tenant["headers"])
    assert r.status_code == 400
    assert r.json()["error"] == "locationId or warehouseId is required"


def test_fefo_by_warehouse_sums_batch_across_locations(client, db, tenant, make_product, add_stock):
    p, batch, src = _stocked(tenant, make_product, add_stock)
    branch = tenant["branches"][0]
    shelf = Location(TenantID=tenant["id"], WarehouseID=branch["id"], Code="BIN-02", Type="BIN")
    db.add(shelf)
    db.commit()

    r = _move(client, tenant["headers"], type="TRANSFER", productId=p["id"], batchId=batch["id"],
              fromLocationId=src, toLocationId=shelf.LocationID, quantity="4")
    assert r.status_code == 201, r.text

    rows = client.get(
        "/api/v1/stock/fefo-suggestions", params={"productId": p["id"], "warehouseId": branch["id"]},
        headers=tenant["headers"],
    ).json()["data"]
    assert len(rows) == 1
    assert rows[0]["batchId"] == batch["id"]
    assert rows[0]["quantity"] == 10.0
    assert rows[0]["availableQuantity"] == 10.0
    assert rows[0]["locationId"] is None


# ---- movement requests ----
def _request(client, headers, warehouse_id, product_id, quantity):
    return client.post(
        "/api/v1/stock/movement-requests",
        json={"warehouseId": warehouse_id, "requestedByName": "Sucursal", "items": [
            {"productId": product_id, "quantity": str(quantity)}
        ]},
        headers=headers,
    )


def test_transfer_fulfills_open_requests(client, tenant, make_product, add_stock):
    p, batch, src = _stocked(tenant, make_product, add_stock)
    dst = tenant["branches"][1]

    r = _request(client, tenant["headers"], dst["id"], p["id"], 5)
    assert r.status_code == 201, r.text
    req = r.json()["data"]
    assert req["status"] == "OPEN"
    assert req["requestedCity"] == "COCHABAMBA"
    assert req["confirmationStatus"] == "PENDING"

    first = _move(client, tenant["headers"], type="TRANSFER", productId=p["id"], batchId=batch["id"],
                  fromLocationId=src, toLocationId=dst["locationId"], quantity="3")
    assert first.json()["data"]["fulfilledRequestIds"] == []

    listed = client.get("/api/v1/stock/movement-requests", headers=tenant["headers"]).json()["data"]
    assert listed[0]["items"][0]["remainingQuantity"] == 2.0

    second = _move(client, tenant["headers"], type="TRANSFER", productId=p["id"], batchId=batch["id"],
                   fromLocationId=src, toLocationId=dst["locationId"], quantity="2")
    assert second.json()["data"]["fulfilledRequestIds"] == [req["id"]]

    done = client.get(
        "/api/v1/stock/movement-requests", params={"status": "FULFILLED"}, headers=tenant["headers"]
    ).json()["data"]
    assert [x["id"] for x in done] == [req["id"]]


def test_request_needs_a_warehouse_city(client, make_tenant, make_product):
    t = make_tenant(cities=("LA PAZ", None))
    p = make_product(t["headers"])
    r = _request(client, t["headers"], t["branches"][1]["id"], p["id"], 1)
    assert r.status_code == 409
    assert r.json()["error"] == "Warehouse has no city"


def test_bulk_fulfill(client, tenant, make_product, add_stock):
    p, batch, src = _stocked(tenant, make_product, add_stock)
    dst = tenant["branches"][1]
    r1 = _request(client, tenant["headers"], dst["id"], p["id"], 3).json()["data"]
    r2 = _request(client, tenant["headers"], dst["id"], p["id"], 2).json()["data"]

    r = client.post(
        "/api/v1/stock/movement-requests/bulk-fulfill",
        json={
            "requestIds": [r1["id"], r2["id"]],
            "fromLocationId": src,
            "toLocationId": dst["locationId"],
            "lines": [{"productId": p["id"], "batchId": batch["id"], "quantity": "5"}],
        },
        headers=tenant["headers"],
    )
    assert r.status_code == 201, r.text
    data = r.json()["data"]
    assert data["referenceType"] == "REQUEST_BULK_FULFILL"
    assert data["destinationCity"] == "COCHABAMBA"
    assert len(data["createdMovements"]) == 1
    assert sorted(data["fulfilledRequestIds"]) == sorted([r1["id"], r2["id"]])

    again = client.post(
        "/api/v1/stock/movement-requests/bulk-fulfill",
        json={
            "requestIds": [r1["id"]],
            "fromLocationId": src,
            "toLocationId": dst["locationId"],
            "lines": [{"productId": p["id"], "batchId": batch["id"], "quantity": "1"}],
        },
        headers=tenant["headers"],
    )
    assert again.status_code == 409


def test_branch_confirms_fulfilled_request(client, tenant, make_product, add_stock, make_user):
    p, batch, src = _stocked(tenant, make_product, add_stock)
    dst = tenant["branches"][1]
    branch_admin = make_user(tenant, ["BRANCH_ADMIN"], warehouse_id=dst["id"])
    other_branch = make_user(tenant, ["BRANCH_ADMIN"], warehouse_id=tenant["branches"][0]["id"])

    req = _request(client, branch_admin["headers"], dst["id"], p["id"], 2).json()["data"]
    url = f"/api/v1/stock/movement-requests/{req['id']}/confirm"

    early = client.patch(url, json={"action": "ACCEPT"}, headers=branch_admin["headers"])
    assert early.status_code == 409
    assert early.json()["error"] == "La solicitud todavía no fue atendida"

    _move(client, tenant["headers"], type="TRANSFER", productId=p["id"], batchId=batch["id"],
          fromLocationId=src, toLocationId=dst["locationId"], quantity="2")

    assert client.patch(url, json={"action": "ACCEPT"}, headers=tenant["headers"]).status_code == 403
    assert client.patch(url, json={"action": "ACCEPT"}, headers=other_branch["headers"]).status_code == 403

    r = client.patch(url, json={"action": "ACCEPT", "note": "Recibido"}, headers=branch_admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["confirmationStatus"] == "ACCEPTED"
    assert r.json()["data"]["confirmationNote"] == "Recibido"

    repeat = client.patch(url, json={"action": "REJECT"}, headers=branch_admin["headers"])
    assert repeat.status_code == 409
    assert repeat.json()["error"] == "La solicitud ya fue confirmada"


def test_branch_user_requests_only_for_own_city(client, tenant, make_product, make_user):
    p = make_product(tenant["headers"])
    seller = make_user(tenant, ["BRANCH_SELLER"], warehouse_id=tenant["branches"][0]["id"])
    r = _request(client, seller["headers"], tenant["branches"][1]["id"], p["id"], 1)
    assert r.status_code == 403

    _request(client, tenant["headers"], tenant["branches"][1]["id"], p["id"], 1)
    own = _request(client, seller["headers"], tenant["branches"][0]["id"], p["id"], 1).json()["data"]
    listed = client.get("/api/v1/stock/movement-requests", headers=seller["headers"]).json()["data"]
    assert [x["id"] for x in listed] == [own["id"]]

    by_city = client.get(
        "/api/v1/stock/movement-requests", params={"city": "cochabamba"}, headers=tenant["headers"]
    ).json()["data"]
    assert {x["requestedCity"] for x in by_city} == {"COCHABAMBA"}


def test_cancel_request(client, tenant, make_product):
    p = make_product(tenant["headers"])
    req = _request(client, tenant["headers"], tenant["branches"][0]["id"], p["id"], 1).json()["data"]
    url = f"/api/v1/stock/movement-requests/{req['id']}/cancel"

    r = client.post(url, headers=tenant["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "CANCELLED"

    again = client.post(url, headers=tenant["headers"])
    assert again.status_code == 409
    assert again.json()["error"] == "Only OPEN requests can be cancelled"


# ---- returns ----
def test_returns(client, tenant, make_product, add_stock):
    p, batch, loc = _stocked(tenant, make_product, add_stock)
    r = client.post(
        "/api/v1/stock/returns",
        json={
            "toLocationId": loc,
            "reason": "Devolución de cliente",
            "items": [{"productId": p["id"], "batchId": batch["id"], "quantity": "2"}],
        },
        headers=tenant["headers"],
    )
    assert r.status_code == 201, r.text
    ret = r.json()["data"]
    assert ret["reason"] == "Devolución de cliente"
    assert ret["toLocation"]["code"] == "BIN-01"
    assert ret["items"][0]["quantity"] == 2.0

    balances = client.get("/api/v1/stock/balances", params={"productId": p["id"]}, headers=tenant["headers"])
    assert balances.json()["data"][0]["quantity"] == 12.0

    listed = client.get("/api/v1/stock/returns", headers=tenant["headers"]).json()["data"]
    assert [x["id"] for x in listed] == [ret["id"]]
    assert client.get(
        "/api/v1/stock/returns", params={"warehouseId": tenant["branches"][1]["id"]}, headers=tenant["headers"]
    ).json()["data"] == []


def test_returns_need_stock_manage(client, tenant, make_product, make_user):
    p = make_product(tenant["headers"])
    seller = make_user(tenant, ["VENTAS"])
    r = client.post(
        "/api/v1/stock/returns",
        json={"toLocationId": tenant["branches"][0]["locationId"], "reason": "x",
              "items": [{"productId": p["id"], "quantity": "1"}]},
        headers=seller["headers"],
    )
    assert r.status_code == 403
