import uuid

from conftest import PASSWORD


def _roles(client, headers):
    return {r["code"]: r for r in client.get("/api/v1/admin/roles", headers=headers).json()["data"]}


def test_permission_catalog_hides_platform(client, tenant):
    r = client.get("/api/v1/admin/permissions", headers=tenant["headers"])
    assert r.status_code == 200
    codes = [p["code"] for p in r.json()["data"]]
    assert "platform:tenants:manage" not in codes
    assert "stock:read" in codes
    assert codes == sorted(codes)
    assert r.json()["meta"]["count"] == len(codes)


def test_system_roles_are_provisioned(client, tenant):
    roles = _roles(client, tenant["headers"])
    assert set(roles) == {"VENTAS", "LOGISTICA", "BRANCH_SELLER", "BRANCH_ADMIN", "LABORATORIO", "TENANT_ADMIN"}
    assert all(r["isSystem"] for r in roles.values())
    assert "scope:branch" in roles["BRANCH_SELLER"]["permissionCodes"]
    assert "stock:move" in roles["BRANCH_ADMIN"]["permissionCodes"]
    assert "scope:branch" not in roles["TENANT_ADMIN"]["permissionCodes"]


def test_create_role(client, tenant):
    r = client.post(
        "/api/v1/admin/roles",
        json={"code": "auditor", "name": "Auditor", "permissionCodes": ["audit:read", "catalog:read"]},
        headers=tenant["headers"],
    )
    assert r.status_code == 201, r.text
    role = r.json()["data"]
    assert role["code"] == "AUDITOR"
    assert role["isSystem"] is False
    assert sorted(role["permissionCodes"]) == ["audit:read", "catalog:read"]

    dup = client.post("/api/v1/admin/roles", json={"code": "Auditor", "name": "Otro"}, headers=tenant["headers"])
    assert dup.status_code == 409

    r = client.put(
        f"/api/v1/admin/roles/{role['id']}/permissions",
        json={"permissionCodes": ["stock:read"]},
        headers=tenant["headers"],
    )
    assert r.status_code == 200
    assert r.json()["data"]["permissionCodes"] == ["stock:read"]


def test_create_role_rejects_unknown_and_platform_permissions(client, tenant):
    r = client.post(
        "/api/v1/admin/roles",
        json={"code": "BAD", "name": "Bad", "permissionCodes": ["nope:read", "catalog:read"]},
        headers=tenant["headers"],
    )
    assert r.status_code == 400
    assert r.json()["error"] == "Unknown permissions: nope:read"

    r = client.post(
        "/api/v1/admin/roles",
        json={"code": "SNEAKY", "name": "Sneaky", "permissionCodes": ["platform:tenants:manage"]},
        headers=tenant["headers"],
    )
    assert r.status_code == 403


def test_replace_permissions_of_unknown_role(client, tenant):
    r = client.put(f"/api/v1/admin/roles/{uuid.uuid4()}/permissions", json={}, headers=tenant["headers"])
    assert r.status_code == 404


def test_user_lifecycle(client, tenant, login):
    roles = _roles(client, tenant["headers"])
    branch = tenant["branches"][0]
    email = f"Vendedor-{uuid.uuid4().hex[:6]}@Pharma-Test.com"

    r = client.post(
        "/api/v1/admin/users",
        json={
            "email": email,
            "password": PASSWORD,
            "fullName": "Vendedor",
            "roleIds": [roles["BRANCH_SELLER"]["id"]],
            "warehouseId": branch["id"],
        },
        headers=tenant["headers"],
    )
    assert r.status_code == 201, r.text
    user = r.json()["data"]
    assert user["email"] == email.lower()
    assert [role["code"] for role in user["roles"]] == ["BRANCH_SELLER"]
    assert user["warehouse"]["city"] == branch["city"]

    dup = client.post(
        "/api/v1/admin/users", json={"email": email, "password": PASSWORD}, headers=tenant["headers"]
    )
    assert dup.status_code == 409

    headers = login(email.lower())
    me = client.get("/api/v1/auth/me", headers=headers).json()["data"]
    assert "scope:branch" in me["permissions"]
    assert me["warehouse"]["id"] == branch["id"]

    r = client.put(
        f"/api/v1/admin/users/{user['id']}/roles",
        json={"roleIds": [roles["VENTAS"]["id"], roles["LOGISTICA"]["id"]]},
        headers=tenant["headers"],
    )
    assert r.status_code == 200
    assert [role["code"] for role in r.json()["data"]["roles"]] == ["LOGISTICA", "VENTAS"]
    me = client.get("/api/v1/auth/me", headers=headers).json()["data"]
    assert "scope:branch" not in me["permissions"]
    assert "stock:move" in me["permissions"]

    r = client.patch(
        f"/api/v1/admin/users/{user['id']}/warehouse", json={"warehouseId": None}, headers=tenant["headers"]
    )
    assert r.status_code == 200
    assert r.json()["data"]["warehouse"] is None

    listed = client.get("/api/v1/admin/users", params={"q": "vendedor"}, headers=tenant["headers"]).json()["data"]
    assert [u["id"] for u in listed["items"]] == [user["id"]]


def test_user_with_foreign_warehouse_or_role(client, tenant, make_tenant):
    other = make_tenant()
    r = client.post(
        "/api/v1/admin/users",
        json={
            "email": f"x-{uuid.uuid4().hex[:6]}@pharma-test.com",
            "password": PASSWORD,
            "warehouseId": other["branches"][0]["id"],
        },
        headers=tenant["headers"],
    )
    assert r.status_code == 404
    assert r.json()["error"] == "Warehouse not found"

    foreign_role = _roles(client, other["headers"])["VENTAS"]["id"]
    r = client.post(
        "/api/v1/admin/users",
        json={"email": f"y-{uuid.uuid4().hex[:6]}@pharma-test.com", "password": PASSWORD, "roleIds": [foreign_role]},
        headers=tenant["headers"],
    )
    assert r.status_code == 400


def test_admin_routes_need_permission(client, tenant, make_user):
    seller = make_user(tenant, ["VENTAS"])
    assert client.get("/api/v1/admin/roles", headers=seller["headers"]).status_code == 403
    assert client.get("/api/v1/admin/users", headers=seller["headers"]).status_code == 403
