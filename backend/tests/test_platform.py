import uuid

from pharmaflow.services import domain_service

from conftest import PASSWORD


def _tenant_payload(**overrides):
    suffix = uuid.uuid4().hex[:8]
    body = {
        "name": f"Farmacia {suffix}",
        "branchCount": 2,
        "adminEmail": f"admin-{suffix}@pharma-test.com",
        "adminPassword": PASSWORD,
        "contactName": "Ana Rojas",
        "contactEmail": f"ana-{suffix}@pharma-test.com",
        "contactPhone": "+59171234567",
        "subscriptionMonths": 6,
    }
    body.update(overrides)
    return body


def _unique_domain():
    return f"farmacia-{uuid.uuid4().hex[:8]}.com"


# ---- tenants ----
def test_platform_routes_need_platform_permission(client, tenant):
    r = client.get("/api/v1/platform/tenants", headers=tenant["headers"])
    assert r.status_code == 403
    assert r.json() == {"ok": False, "error": "Forbidden"}


def test_create_tenant_provisions_admin_and_branches(client, platform_admin, login):
    payload = _tenant_payload()
    r = client.post("/api/v1/platform/tenants", json=payload, headers=platform_admin["headers"])
    assert r.status_code == 201, r.text
    data = r.json()["data"]
    assert data["name"] == payload["name"]
    assert data["subscriptionExpiresAt"]

    headers = login(payload["adminEmail"])
    warehouses = client.get("/api/v1/warehouses", headers=headers).json()["data"]["items"]
    assert [w["code"] for w in warehouses] == ["BR-01", "BR-02"]
    assert warehouses[0]["name"] == "Sucursal 1"
    locations = client.get(f"/api/v1/warehouses/{warehouses[0]['id']}/locations", headers=headers).json()["data"]
    assert [loc["code"] for loc in locations] == ["BIN-01"]


def test_create_tenant_rejects_taken_email(client, platform_admin, tenant):
    r = client.post(
        "/api/v1/platform/tenants",
        json=_tenant_payload(adminEmail=tenant["email"]),
        headers=platform_admin["headers"],
    )
    assert r.status_code == 409
    assert r.json()["error"] == "Email already exists"


def test_create_tenant_with_primary_domain_resolves_login_host(client, platform_admin, login):
    domain = _unique_domain()
    payload = _tenant_payload(primaryDomain=f"https://{domain.upper()}/")
    r = client.post("/api/v1/platform/tenants", json=payload, headers=platform_admin["headers"])
    assert r.status_code == 201, r.text

    branding = client.get("/api/v1/public/tenant/branding", headers={"X-Forwarded-Host": domain})
    assert branding.status_code == 200
    assert branding.json()["data"]["tenantName"] == payload["name"]

    dup = client.post(
        "/api/v1/platform/tenants", json=_tenant_payload(primaryDomain=domain), headers=platform_admin["headers"]
    )
    assert dup.status_code == 409
    assert dup.json()["error"] == "Domain already in use"


def test_list_tenants_search(client, platform_admin, tenant):
    r = client.get("/api/v1/platform/tenants", params={"q": tenant["name"]}, headers=platform_admin["headers"])
    assert r.status_code == 200
    items = r.json()["data"]["items"]
    assert [t["id"] for t in items] == [tenant["id"]]
    assert items[0]["branchLimit"] == 2


def test_update_tenant(client, platform_admin, tenant):
    url = f"/api/v1/platform/tenants/{tenant['id']}"
    r = client.patch(url, json={}, headers=platform_admin["headers"])
    assert r.status_code == 400
    assert r.json()["error"] == "Nothing to update"

    r = client.patch(url, json={"branchLimit": 5}, headers=platform_admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["branchLimit"] == 5

    r = client.patch(url, json={"isActive": False}, headers=platform_admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["isActive"] is False
    assert client.get("/api/v1/auth/me", headers=tenant["headers"]).status_code == 401


def test_update_unknown_tenant(client, platform_admin):
    r = client.patch(
        f"/api/v1/platform/tenants/{uuid.uuid4()}", json={"branchLimit": 2}, headers=platform_admin["headers"]
    )
    assert r.status_code == 404


def test_extend_subscription(client, platform_admin, tenant):
    before = client.get("/api/v1/tenant/subscription", headers=tenant["headers"]).json()["data"]
    r = client.patch(
        f"/api/v1/platform/tenants/{tenant['id']}/subscription",
        json={"extensionMonths": 3},
        headers=platform_admin["headers"],
    )
    assert r.status_code == 200
    after = client.get("/api/v1/tenant/subscription", headers=tenant["headers"]).json()["data"]
    assert after["daysRemaining"] > before["daysRemaining"] + 80


# ---- users ----
def test_create_tenant_admin_and_list_users(client, platform_admin, tenant, login):
    email = f"second-{uuid.uuid4().hex[:6]}@pharma-test.com"
    r = client.post(
        "/api/v1/platform/tenant-admins",
        json={"tenantId": tenant["id"], "email": email, "password": PASSWORD, "fullName": "Segundo Admin"},
        headers=platform_admin["headers"],
    )
    assert r.status_code == 201, r.text
    assert r.json()["data"]["tenantName"] == tenant["name"]

    me = client.get("/api/v1/auth/me", headers=login(email)).json()["data"]
    assert [role["code"] for role in me["roles"]] == ["TENANT_ADMIN"]

    users = client.get(
        "/api/v1/platform/users", params={"tenantId": tenant["id"]}, headers=platform_admin["headers"]
    ).json()["data"]["items"]
    assert {u["email"] for u in users} == {tenant["email"], email}

    dup = client.post(
        "/api/v1/platform/tenant-admins",
        json={"tenantId": tenant["id"], "email": email, "password": PASSWORD},
        headers=platform_admin["headers"],
    )
    assert dup.status_code == 409


def test_deactivate_user_revokes_access(client, platform_admin, tenant):
    pair = client.post("/api/v1/auth/login", json={"email": tenant["email"], "password": PASSWORD}).json()["data"]
    me = client.get("/api/v1/auth/me", headers=tenant["headers"]).json()["data"]

    r = client.patch(
        f"/api/v1/platform/users/{me['id']}/status", json={"isActive": False}, headers=platform_admin["headers"]
    )
    assert r.status_code == 200
    assert r.json()["data"]["isActive"] is False

    assert client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]}).status_code == 401
    assert client.get("/api/v1/auth/me", headers=tenant["headers"]).status_code == 401
    r = client.post("/api/v1/auth/login", json={"email": tenant["email"], "password": PASSWORD})
    assert r.status_code == 401


def test_reset_password(client, platform_admin, tenant, login):
    me = client.get("/api/v1/auth/me", headers=tenant["headers"]).json()["data"]
    r = client.post(f"/api/v1/platform/users/{me['id']}/reset-password", headers=platform_admin["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["userId"] == me["id"]
    assert data["emailSent"] is False

    old = client.post("/api/v1/auth/login", json={"email": tenant["email"], "password": PASSWORD})
    assert old.status_code == 401
    login(tenant["email"], data["temporaryPassword"])


# ---- domains ----
def test_domain_lifecycle(client, platform_admin, tenant, monkeypatch):
    domain = _unique_domain()
    base = f"/api/v1/platform/tenants/{tenant['id']}/domains"

    r = client.post(base, json={"domain": f"HTTPS://{domain}:8443/x", "isPrimary": True},
                    headers=platform_admin["headers"])
    assert r.status_code == 201, r.text
    created = r.json()["data"]
    assert created["domain"] == domain
    assert created["isPrimary"] is True
    token = created["verification"]["token"]
    assert created["verification"]["url"] == f"https://{domain}/.well-known/pharmaflow-domain-verification"

    # the well-known endpoint serves the pending token for the requesting host
    wk = client.get("/.well-known/pharmaflow-domain-verification", headers={"X-Forwarded-Host": domain})
    assert wk.status_code == 200
    assert wk.text == token
    assert wk.headers["cache-control"] == "no-store"

    monkeypatch.setattr(domain_service, "fetch_verification_token", lambda d, t: "something-else")
    r = client.post(f"{base}/{domain}/verify", headers=platform_admin["headers"])
    assert r.status_code == 409
    assert r.json()["error"] == "Verification failed: token mismatch"
    assert r.json()["meta"]["observed"] == "something-else"

    monkeypatch.setattr(domain_service, "fetch_verification_token", lambda d, t: None)
    r = client.post(f"{base}/{domain}/verify", headers=platform_admin["headers"])
    assert r.status_code == 409
    assert r.json()["error"] == "Verification failed: unreachable"

    seen = {}

    def fake_fetch(d, timeout_ms):
        seen["args"] = (d, timeout_ms)
        return token

    monkeypatch.setattr(domain_service, "fetch_verification_token", fake_fetch)
    r = client.post(f"{base}/{domain}/verify", json={"timeoutMs": 2000}, headers=platform_admin["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["ok"] is True
    assert data["alreadyVerified"] is False
    assert data["verifiedAt"]
    assert seen["args"] == (domain, 2000)

    r = client.post(f"{base}/{domain}/verify", headers=platform_admin["headers"])
    assert r.json()["data"]["alreadyVerified"] is True

    wk = client.get("/.well-known/pharmaflow-domain-verification", headers={"X-Forwarded-Host": domain})
    assert wk.status_code == 404
    assert wk.text == "not-found"

    listed = client.get(base, headers=platform_admin["headers"]).json()["data"]
    assert [d["domain"] for d in listed] == [domain]
    assert listed[0]["verifiedAt"]


def test_domain_validation(client, platform_admin, tenant):
    base = f"/api/v1/platform/tenants/{tenant['id']}/domains"
    for bad in ("localhost", "farmacia.local", "10.0.0.1", "farmacia"):
        r = client.post(base, json={"domain": bad}, headers=platform_admin["headers"])
        assert r.status_code == 400, bad

    domain = _unique_domain()
    assert client.post(base, json={"domain": domain}, headers=platform_admin["headers"]).status_code == 201
    r = client.post(base, json={"domain": domain}, headers=platform_admin["headers"])
    assert r.status_code == 409
    assert r.json()["error"] == "Domain already in use"


def test_verify_unknown_domain(client, platform_admin, tenant):
    r = client.post(
        f"/api/v1/platform/tenants/{tenant['id']}/domains/nope.example.com/verify",
        headers=platform_admin["headers"],
    )
    assert r.status_code == 404


# ---- customer import ----
CSV_TEXT = (
    "Nombre;NIT;Ciudad;Correo Electrónico;Teléfono 1;Dirección\n"
    "Farmacia Central;1234-5;la paz;central@pharma-test.com;70000001;Av. Arce 1\n"
    ";;;;;\n"
    "Botica Norte;;cochabamba;;70000002;\n"
    "Farmacia Central Dup;12345;la paz;;;\n"
    ";999;;;;\n"
)


def test_import_customers_dry_run_then_apply(client, platform_admin, tenant):
    url = f"/api/v1/platform/tenants/{tenant['id']}/import/customers"
    r = client.post(url, json={"csv": CSV_TEXT, "dryRun": True}, headers=platform_admin["headers"])
    assert r.status_code == 200, r.text
    summary = r.json()["data"]
    assert summary["dryRun"] is True
    assert summary["totalRows"] == 4
    assert summary["toCreate"] == 2
    assert summary["skippedDuplicateInFile"] == 1
    assert summary["skippedExisting"] == 0
    assert summary["errors"] == [{"row": 6, "message": "Missing name"}]
    assert summary["preview"][0]["city"] == "LA PAZ"
    assert summary["preview"][0]["email"] == "central@pharma-test.com"
    assert "created" not in summary

    customers = client.get("/api/v1/customers", headers=tenant["headers"]).json()["data"]["items"]
    assert customers == []

    r = client.post(url, json={"csv": CSV_TEXT, "dryRun": False}, headers=platform_admin["headers"])
    assert r.json()["data"]["created"] == 2
    customers = client.get("/api/v1/customers", headers=tenant["headers"]).json()["data"]["items"]
    assert sorted(c["name"] for c in customers) == ["Botica Norte", "Farmacia Central"]

    r = client.post(url, json={"csv": CSV_TEXT, "dryRun": True}, headers=platform_admin["headers"])
    assert r.json()["data"]["toCreate"] == 0
    assert r.json()["data"]["skippedExisting"] == 2


def test_import_customers_unknown_tenant(client, platform_admin):
    r = client.post(
        f"/api/v1/platform/tenants/{uuid.uuid4()}/import/customers",
        json={"csv": "Nombre\nA\n"},
        headers=platform_admin["headers"],
    )
    assert r.status_code == 404


def test_import_customers_rejects_empty_csv_and_inactive_tenant(client, platform_admin, make_tenant):
    target = make_tenant()
    url = f"/api/v1/platform/tenants/{target['id']}/import/customers"

    r = client.post(url, json={"csv": "Nombre;NIT\n", "dryRun": True}, headers=platform_admin["headers"])
    assert r.status_code == 400
    assert r.json()["error"] == "CSV vacío o sin filas"

    client.patch(f"/api/v1/platform/tenants/{target['id']}", json={"isActive": False}, headers=platform_admin["headers"])
    r = client.post(url, json={"csv": CSV_TEXT, "dryRun": True}, headers=platform_admin["headers"])
    assert r.status_code == 404
    assert r.json()["error"] == "Tenant not found"
