# backend/pharmaflow/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.api import UTF8JSONResponse, fail
from .core.config import get_settings
from .core.errors import ApiError
from .core.logging_setup import configure_logging
from .models import AuditImmutableError

# --- Routers ---
from .routers.admin import router as admin_router
from .routers.audit import router as audit_router
from .routers.auth import router as auth_router
from .routers.catalog import router as catalog_router
from .routers.contact import router as contact_router
from .routers.customers import router as customers_router
from .routers.dashboards import router as dashboards_router
from .routers.health import router as health_router
from .routers.platform import router as platform_router
from .routers.products import router as products_router
from .routers.reports import router as reports_router
from .routers.sales import router as sales_router
from .routers.stock import router as stock_router
from .routers.tenant import router as tenant_router
from .routers.warehouses import router as warehouses_router
from .routers.well_known import router as well_known_router

from .services.report_scheduler import ReportScheduler

settings = get_settings()
configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="PharmaFlow API", default_response_class=UTF8JSONResponse)


# JSON Content-Type charset
@app.middleware("http")
async def _force_json_charset(request, call_next):
    resp = await call_next(request)
    ct = resp.headers.get("content-type", "")
    if ct.lower().startswith("application/json") and "charset=" not in ct.lower():
        resp.headers["content-type"] = "application/json; charset=utf-8"
    return resp


# -----------------------------
# Global error envelope
# -----------------------------
@app.exception_handler(ApiError)
async def api_error_to_envelope(request: Request, exc: ApiError):
    return fail(str(exc.detail), status_code=exc.status_code, meta=exc.meta or None, headers=exc.headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_to_envelope(request: Request, exc: StarletteHTTPException):
    return fail(
        str(exc.detail) if exc.detail else exc.__class__.__name__,
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_to_envelope(request: Request, exc: RequestValidationError):
    return fail("Validation error", status_code=422, meta={"errors": jsonable_encoder(exc.errors())})


@app.exception_handler(AuditImmutableError)
async def audit_immutable_to_envelope(request: Request, exc: AuditImmutableError):
    return fail("Audit events are immutable", status_code=409)


# -----------------------------
# CORS
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---- Report scheduler ----
scheduler = ReportScheduler() if settings.REPORT_SCHEDULER_ENABLED else None


@app.on_event("startup")
def _start_scheduler():
    if scheduler is not None:
        scheduler.start()


@app.on_event("shutdown")
def _stop_scheduler():
    if scheduler is not None:
        scheduler.stop()


# =========================
# Router registration
# =========================
app.include_router(health_router)
app.include_router(well_known_router)
app.include_router(auth_router)
app.include_router(platform_router)
app.include_router(admin_router)
app.include_router(tenant_router)
app.include_router(contact_router)
app.include_router(audit_router)
app.include_router(catalog_router)
app.include_router(products_router)
app.include_router(stock_router)
app.include_router(warehouses_router)
app.include_router(customers_router)
app.include_router(sales_router)
app.include_router(reports_router)
app.include_router(dashboards_router)

logger.info("PharmaFlow API ready: %d routes", len(app.routes))
