import uuid

from pharmaflow.core.db import SessionLocal
from pharmaflow.models import AppUser, Tenant
from pharmaflow.services.platform_service import provision_tenant

from conftest import PASSWORD


def _provision_same_email(email, domains):
    s = SessionLocal()
    try:
        for domain in domains:
            provision_tenant(
                s,
                name=f"Farmacia {uuid.uuid4().hex[:6]}",
                branch_count=1,
                admin_email=email,
                admin_password=PASSWORD,
                contact_name=None,
                contact_email=None,
                contact_phone=None,
                subscription_months=12,
                primary_domain=domain,
            )
        s.commit()
    finally:
        s.close()


def test_login_returns_token_pair(client, tenant):
    r = client.post("/api/v1/auth/login", json={"email": tenant["email"].upper(), "password": PASSWORD})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["accessToken"]
    assert data["refreshToken"]
    assert data["tokenType"] == "bearer"
    assert data["expiresIn"] == 15 * 60


def test_login_wrong_password(client, tenant):
    r = client.post("/api/v1/auth/login", json={"email": tenant["email"], "password": "nope-nope"})
    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": "Invalid credentials"}


def test_login_unknown_email(client):
    r = client.post("/api/v1/auth/login", json={"email": "ghost@pharma-test.com", "password": PASSWORD})
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid credentials"


def test_login_invalid_body_is_validation_error(client):
    r = client.post("/api/v1/auth/login", json={"email": "not-an-email"})
    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "Validation error"
    assert body["meta"]["errors"]


def test_login_inactive_tenant(client, tenant):
    s = SessionLocal()
    try:
        s.get(Tenant, tenant["id"]).IsActive = False
        s.commit()
    finally:
        s.close()
    r = client.post("/api/v1/auth/login", json={"email": tenant["email"], "password": PASSWORD})
    assert r.status_code == 401


def test_ambiguous_email_needs_tenant_host(client, login):
    email = f"shared-{uuid.uuid4().hex[:6]}@pharma-test.com"
    domain = f"farmacia-{uuid.uuid4().hex[:6]}.com"
    _provision_same_email(email, [domain, None])

    r = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert r.status_code == 409
    assert r.json()["error"] == "Ambiguous tenant for email; use tenant domain"

    headers = login(email, host=domain)
    me = client.get("/api/v1/auth/me", headers=headers).json()["data"]
    s = SessionLocal()
    try:
        user = s.query(AppUser).filter(AppUser.UserID == me["id"]).one()
        assert user.tenant.domains[0].Domain == domain
    finally:
        s.close()


def test_refresh_rotates_and_rejects_reuse(client, tenant):
    pair = client.post("/api/v1/auth/login", json={"email": tenant["email"], "password": PASSWORD}).json()["data"]

    r = client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
    assert r.status_code == 200
    new_pair = r.json()["data"]
    assert new_pair["refreshToken"] != pair["refreshToken"]

    again = client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
    assert again.status_code == 401
    assert again.json()["error"] == "Invalid refresh token"


def test_logout_revokes_refresh_token(client, tenant):
    pair = client.post("/api/v1/auth/login", json={"email": tenant["email"], "password": PASSWORD}).json()["data"]
    r = client.post("/api/v1/auth/logout", json={"refreshToken": pair["refreshToken"]})
    assert r.status_code == 200
    r = client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
    assert r.status_code == 401


def test_me_lists_roles_and_permissions(client, tenant):
    r = client.get("/api/v1/auth/me", headers=tenant["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["email"] == tenant["email"]
    assert data["tenant"]["id"] == tenant["id"]
    assert data["tenant"]["country"] == "BO"
    assert [role["code"] for role in data["roles"]] == ["TENANT_ADMIN"]
    assert data["permissions"] == sorted(data["permissions"])
    assert "admin:users:manage" in data["permissions"]
    assert "scope:branch" not in data["permissions"]
    assert "platform:tenants:manage" not in data["permissions"]
    assert data["warehouse"] is None


def test_me_requires_bearer_token(client):
    r = client.get("/api/v1/auth/me")
    assert r.status_code == 401
    assert r.json()["error"] == "Unauthorized"
    assert r.headers["www-authenticate"] == "Bearer"


def test_lenient_authorization_header(client, tenant):
    token = tenant["headers"]["Authorization"].split(" ", 1)[1]
    r = client.get("/api/v1/auth/me", headers={"Authorization": f'"Bearer Bearer {token}"'})
    assert r.status_code == 200


def test_garbage_token_is_unauthorized(client):
    r = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer abc.def.ghi"})
    assert r.status_code == 401
