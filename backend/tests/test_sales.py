import uuid
from datetime import date, timedelta

import pytest

from pharmaflow.core.clock import utc_today
from pharmaflow.core.db import SessionLocal
from pharmaflow.models import TenantModule

SALES = "/api/v1/sales"


@pytest.fixture
def customer(client, tenant):
    r = client.post(
        "/api/v1/customers",
        json={"name": f"Farmacia {uuid.uuid4().hex[:6]}", "city": "LA PAZ", "address": "Av. Arce 100"},
        headers=tenant["headers"],
    )
    assert r.status_code == 201, r.text
    return r.json()["data"]


def _balances(client, headers, product_id):
    rows = client.get("/api/v1/stock/balances", params={"productId": product_id}, headers=headers).json()["data"]
    return {b["batchId"]: b for b in rows}


def _quote_body(customer, product, **extra):
    body = {
        "customerId": customer["id"],
        "paymentMode": "CREDIT_30",
        "deliveryDays": 2,
        "globalDiscountPct": "5",
        "lines": [{"productId": product["id"], "quantity": "10", "discountPct": "10"}],
    }
    body.update(extra)
    return body


# ---- quotes ----
def test_quote_totals_and_numbering(client, tenant, customer, make_product):
    year = date.today().year
    p = make_product(tenant["headers"], price="2.00")

    r = client.post(f"{SALES}/quotes", json=_quote_body(customer, p), headers=tenant["headers"])
    assert r.status_code == 201, r.text
    q = r.json()["data"]
    assert q["number"] == f"COT{year}-1"
    assert q["status"] == "CREATED"
    assert q["subtotal"] == 18.0
    assert q["globalDiscountAmount"] == 0.9
    assert q["total"] == 17.1
    assert q["deliveryCity"] == "LA PAZ"
    assert q["deliveryAddress"] == "Av. Arce 100"
    assert q["lines"][0]["unitPrice"] == 2.0
    assert q["lines"][0]["total"] == 18.0

    listed = client.get(f"{SALES}/quotes", params={"customerSearch": customer["name"][:12]}, headers=tenant["headers"])
    items = listed.json()["data"]["items"]
    assert [x["id"] for x in items] == [q["id"]]
    assert "lines" not in items[0]


def test_discounts_are_clamped(client, tenant, customer, make_product):
    p = make_product(tenant["headers"], price="2.00")
    body = _quote_body(customer, p, globalDiscountPct="250")
    body["lines"][0]["discountPct"] = "-10"
    q = client.post(f"{SALES}/quotes", json=body, headers=tenant["headers"]).json()["data"]
    assert q["subtotal"] == 20.0
    assert q["globalDiscountPct"] == 100.0
    assert q["total"] == 0.0


def test_quote_with_unknown_product(client, tenant, customer):
    body = {"customerId": customer["id"], "lines": [{"productId": str(uuid.uuid4()), "quantity": "1"}]}
    r = client.post(f"{SALES}/quotes", json=body, headers=tenant["headers"])
    assert r.status_code == 400


def test_update_and_delete_quote(client, tenant, customer, make_product):
    p = make_product(tenant["headers"], price="2.00")
    other = make_product(tenant["headers"], price="5.00", name="Ibuprofeno 400mg")
    q = client.post(f"{SALES}/quotes", json=_quote_body(customer, p), headers=tenant["headers"]).json()["data"]

    body = {"customerId": customer["id"], "lines": [{"productId": other["id"], "quantity": "2"}]}
    r = client.put(f"{SALES}/quotes/{q['id']}", json=body, headers=tenant["headers"])
    assert r.status_code == 200, r.text
    updated = r.json()["data"]
    assert [l["productId"] for l in updated["lines"]] == [other["id"]]
    assert updated["total"] == 10.0
    assert updated["version"] == 2

    r = client.delete(f"{SALES}/quotes/{q['id']}", headers=tenant["headers"])
    assert r.status_code == 200
    assert r.json()["data"] == {"id": q["id"], "deleted": True}
    assert client.get(f"{SALES}/quotes/{q['id']}", headers=tenant["headers"]).status_code == 404


def test_process_quote_with_shortage(client, tenant, customer, make_product, add_stock):
    year = date.today().year
    p = make_product(tenant["headers"], price="2.00")
    add_stock(tenant["headers"], p["id"], tenant["branches"][0]["locationId"], 6)
    q = client.post(f"{SALES}/quotes", json=_quote_body(customer, p), headers=tenant["headers"]).json()["data"]

    r = client.post(f"{SALES}/quotes/{q['id']}/process", headers=tenant["headers"])
    assert r.status_code == 201, r.text
    body = r.json()
    order = body["data"]
    assert order["status"] == "CONFIRMED"
    assert order["number"] == f"OV{year}-1"
    assert order["quoteId"] == q["id"]
    assert order["lines"][0]["unitPrice"] == 1.71
    assert order["deliveryDate"] == (utc_today() + timedelta(days=2)).isoformat()
    assert sum(res["quantity"] for res in order["reservations"]) == 6.0
    assert body["meta"]["shortages"][0]["missing"] == 4.0

    again = client.post(f"{SALES}/quotes/{q['id']}/process", headers=tenant["headers"])
    assert again.status_code == 409
    assert again.json()["error"] == "Quote already processed"

    assert client.delete(f"{SALES}/quotes/{q['id']}", headers=tenant["headers"]).status_code == 409


# ---- orders ----
def test_order_lifecycle_with_fefo(client, tenant, customer, make_product, add_stock):
    p = make_product(tenant["headers"], price="3.00")
    loc = tenant["branches"][0]["locationId"]
    late = add_stock(tenant["headers"], p["id"], loc, 8, expires_at="2031-01-01")["batch"]
    early = add_stock(tenant["headers"], p["id"], loc, 2, expires_at="2030-01-01")["batch"]

    r = client.post(
        f"{SALES}/orders",
        json={"customerId": customer["id"], "lines": [{"productId": p["id"], "quantity": "3"}]},
        headers=tenant["headers"],
    )
    assert r.status_code == 201, r.text
    order = r.json()["data"]
    assert order["status"] == "DRAFT"
    assert order["total"] == 9.0
    assert order["reservations"] == []

    r = client.post(f"{SALES}/orders/{order['id']}/confirm", json={"version": 1}, headers=tenant["headers"])
    assert r.status_code == 200, r.text
    confirmed = r.json()["data"]
    assert confirmed["status"] == "CONFIRMED"
    reserved = {res["batchId"]: res["quantity"] for res in confirmed["reservations"]}
    assert reserved == {early["id"]: 2.0, late["id"]: 1.0}
    assert "meta" not in r.json()

    early_balance = _balances(client, tenant["headers"], p["id"])[early["id"]]
    assert early_balance["reservedQuantity"] == 2.0
    holds = client.get(
        "/api/v1/stock/reservations", params={"balanceId": early_balance["id"]}, headers=tenant["headers"]
    ).json()["data"]
    assert holds[0]["order"] == order["number"]
    assert holds[0]["client"] == customer["name"]
    assert holds[0]["quantity"] == 2.0

    # reserved units cannot leave through a plain movement
    blocked = client.post(
        "/api/v1/stock/movements",
        json={"type": "OUT", "productId": p["id"], "batchId": early["id"], "fromLocationId": loc, "quantity": "1"},
        headers=tenant["headers"],
    )
    assert blocked.status_code == 409
    assert blocked.json()["meta"]["code"] == "STOCK_RESERVED"

    r = client.post(
        f"{SALES}/orders/{order['id']}/fulfill",
        json={"version": confirmed["version"], "fromLocationId": loc},
        headers=tenant["headers"],
    )
    assert r.status_code == 200, r.text
    assert r.json()["data"]["status"] == "FULFILLED"
    assert r.json()["data"]["reservations"] == []

    after = _balances(client, tenant["headers"], p["id"])
    assert after[early["id"]]["quantity"] == 2.0
    assert after[early["id"]]["reservedQuantity"] == 0.0
    assert after[late["id"]]["quantity"] == 5.0
    assert after[late["id"]]["reservedQuantity"] == 0.0

    done = r.json()["data"]
    cancel = client.post(f"{SALES}/orders/{order['id']}/cancel", json={"version": done["version"]}, headers=tenant["headers"])
    assert cancel.status_code == 409


def test_cancel_confirmed_order_releases_stock(client, tenant, customer, make_product, add_stock):
    p = make_product(tenant["headers"])
    batch = add_stock(tenant["headers"], p["id"], tenant["branches"][0]["locationId"], 5)["batch"]
    order = client.post(
        f"{SALES}/orders",
        json={"customerId": customer["id"], "lines": [{"productId": p["id"], "quantity": "5"}]},
        headers=tenant["headers"],
    ).json()["data"]
    confirmed = client.post(f"{SALES}/orders/{order['id']}/confirm", json={"version": 1}, headers=tenant["headers"]).json()["data"]
    assert _balances(client, tenant["headers"], p["id"])[batch["id"]]["availableQuantity"] == 0.0

    stale = client.post(f"{SALES}/orders/{order['id']}/cancel", json={"version": 1}, headers=tenant["headers"])
    assert stale.status_code == 409
    assert stale.json()["error"] == "Version conflict"

    r = client.post(f"{SALES}/orders/{order['id']}/cancel", json={"version": confirmed["version"]}, headers=tenant["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "CANCELLED"
    assert _balances(client, tenant["headers"], p["id"])[batch["id"]]["reservedQuantity"] == 0.0


def test_order_lists(client, tenant, customer, make_product):
    p = make_product(tenant["headers"])
    body = {"customerId": customer["id"], "lines": [{"productId": p["id"], "quantity": "1"}]}
    a = client.post(f"{SALES}/orders", json=body, headers=tenant["headers"]).json()["data"]
    b = client.post(f"{SALES}/orders", json=body, headers=tenant["headers"]).json()["data"]
    client.post(f"{SALES}/orders/{a['id']}/cancel", json={"version": 1}, headers=tenant["headers"])

    drafts = client.get(f"{SALES}/orders", params={"status": "DRAFT"}, headers=tenant["headers"]).json()["data"]
    assert [o["id"] for o in drafts["items"]] == [b["id"]]
    assert client.get(f"{SALES}/orders/{uuid.uuid4()}", headers=tenant["headers"]).status_code == 404


def test_sales_module_disabled(client, tenant):
    s = SessionLocal()
    try:
        s.query(TenantModule).filter(
            TenantModule.TenantID == tenant["id"], TenantModule.Code == "SALES"
        ).update({TenantModule.Enabled: False})
        s.commit()
    finally:
        s.close()
    r = client.get(f"{SALES}/orders", headers=tenant["headers"])
    assert r.status_code == 403
    assert r.json()["error"] == "Module disabled"


def test_fulfill_needs_stock_move_and_warehouse_module(client, tenant, customer, make_user, make_product, add_stock):
    seller = make_user(tenant, ["VENTAS"])
    p = make_product(tenant["headers"])
    loc = tenant["branches"][0]["locationId"]
    batch = add_stock(tenant["headers"], p["id"], loc, 4)["batch"]
    order = client.post(
        f"{SALES}/orders",
        json={"customerId": customer["id"], "lines": [{"productId": p["id"], "quantity": "4"}]},
        headers=seller["headers"],
    ).json()["data"]
    r = client.post(f"{SALES}/orders/{order['id']}/confirm", json={"version": 1}, headers=seller["headers"])
    assert r.status_code == 200, r.text
    body = {"version": r.json()["data"]["version"], "fromLocationId": loc}

    # VENTAS sells but does not move stock
    r = client.post(f"{SALES}/orders/{order['id']}/fulfill", json=body, headers=seller["headers"])
    assert r.status_code == 403
    assert _balances(client, tenant["headers"], p["id"])[batch["id"]]["quantity"] == 4.0

    s = SessionLocal()
    try:
        s.query(TenantModule).filter(
            TenantModule.TenantID == tenant["id"], TenantModule.Code == "WAREHOUSE"
        ).update({TenantModule.Enabled: False})
        s.commit()
    finally:
        s.close()
    r = client.post(f"{SALES}/orders/{order['id']}/fulfill", json=body, headers=tenant["headers"])
    assert r.status_code == 403
    assert r.json()["error"] == "Module disabled"


# ---- deliveries and payments ----
def test_deliver_and_pay(client, tenant, customer, make_product, add_stock):
    p = make_product(tenant["headers"], price="2.00")
    batch = add_stock(tenant["headers"], p["id"], tenant["branches"][0]["locationId"], 10)["batch"]
    q = client.post(f"{SALES}/quotes", json=_quote_body(customer, p), headers=tenant["headers"]).json()["data"]
    order = client.post(f"{SALES}/quotes/{q['id']}/process", headers=tenant["headers"]).json()["data"]

    pending = client.get(f"{SALES}/deliveries", headers=tenant["headers"]).json()["data"]
    assert [d["id"] for d in pending] == [order["id"]]
    assert pending[0]["deliveryDays"] == 2
    assert pending[0]["reservedQuantity"] == 10.0
    assert client.get(f"{SALES}/deliveries", params={"cities": "ORURO"}, headers=tenant["headers"]).json()["data"] == []

    r = client.post(f"{SALES}/deliveries/{order['id']}/deliver", json={"version": 1}, headers=tenant["headers"])
    assert r.status_code == 200, r.text
    delivered = r.json()["data"]
    assert delivered["status"] == "FULFILLED"
    assert delivered["deliveredAt"] is not None
    assert _balances(client, tenant["headers"], p["id"])[batch["id"]]["quantity"] == 0.0

    again = client.post(f"{SALES}/deliveries/{order['id']}/deliver", json={"version": 2}, headers=tenant["headers"])
    assert again.status_code == 409

    due = client.get(f"{SALES}/payments", headers=tenant["headers"]).json()["data"]
    assert [x["id"] for x in due] == [order["id"]]
    assert due[0]["creditDays"] == 30
    assert due[0]["total"] == 17.1
    assert due[0]["paidAt"] is None

    r = client.post(f"{SALES}/payments/{order['id']}/pay", json={"version": delivered["version"]}, headers=tenant["headers"])
    assert r.status_code == 200
    paid = r.json()["data"]
    assert paid["paidAt"] is not None

    twice = client.post(f"{SALES}/payments/{order['id']}/pay", json={"version": paid["version"]}, headers=tenant["headers"])
    assert twice.status_code == 409
    assert twice.json()["error"] == "Order already paid"

    assert client.get(f"{SALES}/payments", headers=tenant["headers"]).json()["data"] == []
    settled = client.get(f"{SALES}/payments", params={"status": "PAID"}, headers=tenant["headers"]).json()["data"]
    assert [x["id"] for x in settled] == [order["id"]]


def test_deliver_without_reservations(client, tenant, customer, make_product):
    p = make_product(tenant["headers"])
    order = client.post(
        f"{SALES}/orders",
        json={"customerId": customer["id"], "lines": [{"productId": p["id"], "quantity": "1"}]},
        headers=tenant["headers"],
    ).json()["data"]
    r = client.post(f"{SALES}/orders/{order['id']}/confirm", json={"version": 1}, headers=tenant["headers"])
    assert r.json()["meta"]["shortages"][0]["missing"] == 1.0
    r = client.post(f"{SALES}/deliveries/{order['id']}/deliver", json={"version": 2}, headers=tenant["headers"])
    assert r.status_code == 409
    assert r.json()["error"] == "No reservations to deliver"


def test_branch_seller_quotes_only_own_city(client, tenant, make_user, make_product):
    seller = make_user(tenant, ["BRANCH_SELLER"], warehouse_id=tenant["branches"][0]["id"])
    p = make_product(tenant["headers"])
    far = client.post(
        "/api/v1/customers", json={"name": "Farmacia Lejana", "city": "COCHABAMBA"}, headers=tenant["headers"]
    ).json()["data"]
    r = client.post(
        f"{SALES}/quotes",
        json={"customerId": far["id"], "lines": [{"productId": p["id"], "quantity": "1"}]},
        headers=seller["headers"],
    )
    assert r.status_code == 403
