import uuid

import pytest
from fastapi import HTTPException

from pharmaflow.models import Location
from pharmaflow.services.common import transaction

URL = "/api/v1/warehouses"


def _raise_limit(client, platform_admin, tenant, limit):
    r = client.patch(
        f"/api/v1/platform/tenants/{tenant['id']}", json={"branchLimit": limit}, headers=platform_admin["headers"]
    )
    assert r.status_code == 200, r.text


def test_list_warehouses(client, tenant):
    r = client.get(URL, headers=tenant["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert [w["code"] for w in data["items"]] == ["BR-01", "BR-02"]
    assert data["items"][0]["city"] == "LA PAZ"
    assert data["items"][0]["version"] == 1
    assert data["nextCursor"] is None

    page = client.get(URL, params={"take": 1}, headers=tenant["headers"]).json()["data"]
    assert [w["code"] for w in page["items"]] == ["BR-01"]
    rest = client.get(URL, params={"take": 1, "cursor": page["nextCursor"]}, headers=tenant["headers"]).json()["data"]
    assert [w["code"] for w in rest["items"]] == ["BR-02"]


def test_any_user_can_read_warehouses(client, tenant, make_user):
    seller = make_user(tenant, ["VENTAS"])
    assert client.get(URL, headers=seller["headers"]).status_code == 200
    r = client.post(URL, json={"code": "X", "name": "X"}, headers=seller["headers"])
    assert r.status_code == 403


def test_create_respects_branch_limit(client, platform_admin, tenant):
    r = client.post(URL, json={"code": "br-03", "name": "Sucursal Sur"}, headers=tenant["headers"])
    assert r.status_code == 409
    assert r.json()["error"] == "Branch limit reached"

    _raise_limit(client, platform_admin, tenant, 4)
    r = client.post(URL, json={"code": "br-03", "name": " Sucursal Sur ", "city": "santa cruz"}, headers=tenant["headers"])
    assert r.status_code == 201, r.text
    wh = r.json()["data"]
    assert wh["code"] == "BR-03"
    assert wh["name"] == "Sucursal Sur"
    assert wh["city"] == "SANTA CRUZ"

    locations = client.get(f"{URL}/{wh['id']}/locations", headers=tenant["headers"]).json()["data"]
    assert [loc["code"] for loc in locations] == ["BIN-01"]

    dup = client.post(URL, json={"code": "BR-03", "name": "Otra"}, headers=tenant["headers"])
    assert dup.status_code == 409
    assert dup.json()["error"] == "Warehouse code already exists"


def test_update_warehouse(client, tenant):
    branch = tenant["branches"][1]
    url = f"{URL}/{branch['id']}"

    r = client.patch(url, json={"version": 1, "name": "Central", "city": " oruro "}, headers=tenant["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["name"] == "Central"
    assert data["city"] == "ORURO"
    assert data["version"] == 2

    stale = client.patch(url, json={"version": 1, "name": "Otra"}, headers=tenant["headers"])
    assert stale.status_code == 409

    missing = client.patch(f"{URL}/{uuid.uuid4()}", json={"version": 1, "name": "x"}, headers=tenant["headers"])
    assert missing.status_code == 404
    assert missing.json()["error"] == "Warehouse not found"


def test_locations_of_foreign_warehouse(client, tenant, make_tenant):
    other = make_tenant()
    r = client.get(f"{URL}/{other['branches'][0]['id']}/locations", headers=tenant["headers"])
    assert r.status_code == 404


def test_transaction_maps_unique_to_409_and_other_integrity_errors_to_400(db, tenant):
    branch = tenant["branches"][0]

    def _bin(code, kind="BIN"):
        return Location(TenantID=tenant["id"], WarehouseID=branch["id"], Code=code, Type=kind)

    with pytest.raises(HTTPException) as exc:
        with transaction(db, "add_location", conflict_detail="Location code already exists"):
            db.add(_bin("BIN-01"))
    assert exc.value.status_code == 409
    assert exc.value.detail == "Location code already exists"

    with pytest.raises(HTTPException) as exc:
        with transaction(db, "add_location", conflict_detail="Location code already exists"):
            db.add(_bin("BIN-09", kind="CRATE"))
    assert exc.value.status_code == 400
    assert exc.value.detail.startswith("db_error:")
