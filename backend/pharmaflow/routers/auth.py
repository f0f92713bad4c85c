# backend/pharmaflow/routers/auth.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..core.api import ok
from ..core.db import get_db
from ..core.hosts import request_host
from ..core.security import AuthDep
from ..schemas.auth import LoginRequest, RefreshRequest
from ..services import auth_service

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login")
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    tokens = auth_service.login(db, email=payload.email, password=payload.password, host=request_host(request))
    return ok(tokens)


@router.post("/refresh")
def refresh(payload: RefreshRequest, db: Session = Depends(get_db)):
    return ok(auth_service.refresh(db, refresh_token=payload.refreshToken))


@router.post("/logout")
def logout(payload: RefreshRequest, db: Session = Depends(get_db)):
    auth_service.logout(db, refresh_token=payload.refreshToken)
    return ok({"ok": True})


@router.get("/me")
def me(ctx: AuthDep, db: Session = Depends(get_db)):
    return ok(auth_service.me(db, user_id=ctx.user_id, tenant_id=ctx.tenant_id))
