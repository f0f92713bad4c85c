import uuid

URL = "/api/v1/customers"


def _create(client, headers, **fields):
    body = {"name": f"Farmacia {uuid.uuid4().hex[:6]}"}
    body.update(fields)
    return client.post(URL, json=body, headers=headers)


def test_create_customer(client, tenant):
    r = _create(client, tenant["headers"], name="Farmacia Central", nit="1020304", city=" la paz ", email="")
    assert r.status_code == 201, r.text
    c = r.json()["data"]
    assert c["city"] == "LA PAZ"
    assert c["email"] is None
    assert c["creditEnabled"] is False
    assert c["creditDays"] is None
    assert c["version"] == 1


def test_duplicate_customers(client, tenant):
    _create(client, tenant["headers"], name="Farmacia Sol", nit="55-66 77")

    r = _create(client, tenant["headers"], nit="556677")
    assert r.status_code == 409
    assert r.json()["error"] == "Cliente duplicado: ya existe un cliente con el mismo NIT."

    r = _create(client, tenant["headers"], name="  farmacia   SOL ")
    assert r.status_code == 409
    assert r.json()["error"] == "Cliente duplicado: ya existe un cliente con el mismo nombre."


def test_credit_requires_days(client, tenant):
    r = _create(client, tenant["headers"], creditEnabled=True)
    assert r.status_code == 400
    assert r.json()["error"] == "creditDays es requerido cuando el crédito está habilitado"

    r = _create(client, tenant["headers"], creditEnabled=True, creditDays=30)
    assert r.status_code == 201
    assert r.json()["data"]["creditDays"] == 30


def test_update_customer(client, tenant):
    a = _create(client, tenant["headers"], name="Botica Norte", creditEnabled=True, creditDays=15).json()["data"]
    _create(client, tenant["headers"], name="Botica Sur")
    url = f"{URL}/{a['id']}"

    r = client.patch(url, json={"version": 1, "name": "botica sur"}, headers=tenant["headers"])
    assert r.status_code == 409
    assert r.json()["error"] == "Cliente duplicado: ya existe otro cliente con el mismo nombre."

    r = client.patch(url, json={"version": 1, "creditEnabled": False, "city": "cochabamba"}, headers=tenant["headers"])
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["creditEnabled"] is False
    assert data["creditDays"] is None
    assert data["city"] == "COCHABAMBA"
    assert data["version"] == 2

    stale = client.patch(url, json={"version": 1, "phone": "777"}, headers=tenant["headers"])
    assert stale.status_code == 409
    assert stale.json()["error"] == "Version conflict"


def test_list_and_filter_by_city(client, tenant):
    lp = _create(client, tenant["headers"], name="Droguería Illimani", city="LA PAZ").json()["data"]
    cb = _create(client, tenant["headers"], name="Droguería Tunari", city="Cochabamba").json()["data"]

    found = client.get(URL, params={"q": "drogu"}, headers=tenant["headers"]).json()["data"]
    assert {c["id"] for c in found["items"]} == {lp["id"], cb["id"]}

    only_cb = client.get(URL, params={"cities": "cochabamba"}, headers=tenant["headers"]).json()["data"]
    assert [c["id"] for c in only_cb["items"]] == [cb["id"]]

    assert client.get(f"{URL}/{uuid.uuid4()}", headers=tenant["headers"]).status_code == 404


def test_branch_cities(client, tenant):
    r = client.get(f"{URL}/branch-cities", headers=tenant["headers"])
    assert r.status_code == 200
    assert r.json()["data"] == ["COCHABAMBA", "LA PAZ"]


def test_branch_user_is_limited_to_own_city(client, tenant, make_user):
    branch = tenant["branches"][0]
    seller = make_user(tenant, ["BRANCH_SELLER"], warehouse_id=branch["id"])
    other = _create(client, tenant["headers"], city="COCHABAMBA").json()["data"]

    r = _create(client, seller["headers"], city="COCHABAMBA")
    assert r.status_code == 403

    own = _create(client, seller["headers"], city=branch["city"])
    assert own.status_code == 201

    items = client.get(URL, headers=seller["headers"]).json()["data"]["items"]
    assert {c["city"] for c in items} == {branch["city"]}
    assert client.get(f"{URL}/{other['id']}", headers=seller["headers"]).status_code == 404


def test_branch_user_without_warehouse(client, tenant, make_user):
    seller = make_user(tenant, ["BRANCH_SELLER"])
    r = client.get(URL, headers=seller["headers"])
    assert r.status_code == 409
    assert r.json()["error"] == "Seleccione su sucursal antes de continuar"
