import os
import tempfile
import uuid

import pytest

# Settings are read at import time by pharmaflow.core.*
_TMP = tempfile.mkdtemp(prefix="pharmaflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["JWT_ACCESS_SECRET"] = "test-access-secret-0123456789"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret-0123456789"
os.environ["REPORT_SCHEDULER_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["WEB_ORIGIN"] = "http://web.pharma-test.com"
os.environ["LOG_LEVEL"] = "WARNING"
for _k in ("SMTP_HOST", "SMTP_USER", "SMTP_PASS", "SMTP_FROM"):
    os.environ.pop(_k, None)

from fastapi.testclient import TestClient  # noqa: E402

from pharmaflow.core.db import Base, SessionLocal, engine  # noqa: E402
from pharmaflow.main import app  # noqa: E402
from pharmaflow.models import Warehouse  # noqa: E402
from pharmaflow.scripts.seed import ensure_platform_tenant  # noqa: E402
from pharmaflow.services.platform_service import provision_tenant  # noqa: E402

PASSWORD = "Secret123!"
PLATFORM_EMAIL = "root@supernovatel.com"

Base.metadata.create_all(engine)


@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture(scope="session")
def login(client):
    def _login(email, password=PASSWORD, host=None):
        headers = {"X-Forwarded-Host": host} if host else None
        r = client.post("/api/v1/auth/login", json={"email": email, "password": password}, headers=headers)
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['data']['accessToken']}"}
    return _login


@pytest.fixture(scope="session")
def platform_admin(login):
    s = SessionLocal()
    try:
        tenant = ensure_platform_tenant(s, PLATFORM_EMAIL, PASSWORD)
        s.commit()
        tenant_id = tenant.TenantID
    finally:
        s.close()
    return {"tenantId": tenant_id, "email": PLATFORM_EMAIL, "headers": login(PLATFORM_EMAIL)}


@pytest.fixture
def make_tenant(login):
    """Provisions a tenant straight through the service; warehouses get the given cities."""
    def _make(branch_count=2, cities=("LA PAZ", "COCHABAMBA"), subscription_months=12, admin_email=None):
        suffix = uuid.uuid4().hex[:8]
        email = admin_email or f"admin-{suffix}@pharma-test.com"
        s = SessionLocal()
        try:
            tenant = provision_tenant(
                s,
                name=f"Farmacia {suffix}",
                branch_count=branch_count,
                admin_email=email,
                admin_password=PASSWORD,
                contact_name="Contacto",
                contact_email=f"contacto-{suffix}@pharma-test.com",
                contact_phone="+59170000000",
                subscription_months=subscription_months,
            )
            warehouses = (
                s.query(Warehouse).filter(Warehouse.TenantID == tenant.TenantID).order_by(Warehouse.Code).all()
            )
            for wh, city in zip(warehouses, cities):
                wh.City = city
            s.flush()
            branches = [
                {
                    "id": wh.WarehouseID,
                    "code": wh.Code,
                    "city": wh.City,
                    "locationId": wh.locations[0].LocationID,
                }
                for wh in warehouses
            ]
            s.commit()
            tenant_id = tenant.TenantID
            name = tenant.Name
        finally:
            s.close()
        return {
            "id": tenant_id,
            "name": name,
            "email": email,
            "headers": login(email),
            "branches": branches,
        }
    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def make_user(client, login):
    """Creates a user through the admin API with the given role codes and logs it in."""
    def _make(tenant, role_codes, warehouse_id=None):
        roles = client.get("/api/v1/admin/roles", headers=tenant["headers"]).json()["data"]
        by_code = {r["code"]: r["id"] for r in roles}
        email = f"user-{uuid.uuid4().hex[:8]}@pharma-test.com"
        r = client.post(
            "/api/v1/admin/users",
            json={
                "email": email,
                "password": PASSWORD,
                "fullName": "Usuario Prueba",
                "roleIds": [by_code[c] for c in role_codes],
                "warehouseId": warehouse_id,
            },
            headers=tenant["headers"],
        )
        assert r.status_code == 201, r.text
        return {"id": r.json()["data"]["id"], "email": email, "headers": login(email)}
    return _make


@pytest.fixture
def make_product(client):
    def _make(headers, sku=None, price="2.00", name="Paracetamol 500mg"):
        r = client.post(
            "/api/v1/products",
            json={
                "sku": sku or f"SKU-{uuid.uuid4().hex[:6]}",
                "name": name,
                "genericName": "Paracetamol",
                "cost": "1.00",
                "price": price,
            },
            headers=headers,
        )
        assert r.status_code == 201, r.text
        return r.json()["data"]
    return _make


@pytest.fixture
def add_stock(client):
    """Creates a batch with initial stock at a location; returns the batch creation payload."""
    def _add(headers, product_id, location_id, quantity, expires_at="2099-12-31", batch_number=None):
        body = {
            "expiresAt": expires_at,
            "status": "RELEASED",
            "initialStock": {"quantity": str(quantity), "toLocationId": location_id},
        }
        if batch_number:
            body["batchNumber"] = batch_number
        r = client.post(f"/api/v1/products/{product_id}/batches", json=body, headers=headers)
        assert r.status_code == 201, r.text
        return r.json()["data"]
    return _add
