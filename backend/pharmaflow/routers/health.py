# backend/pharmaflow/routers/health.py
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..core.api import ok
from ..core.clock import iso, utcnow
from ..core.db import get_db

SERVICE_NAME = "pharmaflow-api"

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/api/v1/health")
def health():
    return ok({"status": "ok", "service": SERVICE_NAME, "time": iso(utcnow())})


@router.get("/api/v1/db-ping")
def db_ping(db: Session = Depends(get_db)):
    val = db.execute(text("SELECT 1")).scalar()
    return ok({"db": "ok", "select1": val})
