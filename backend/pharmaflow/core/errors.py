# backend/pharmaflow/core/errors.py
from typing import Any, Dict, Optional

from fastapi import HTTPException


class ApiError(HTTPException):
    """HTTPException carrying extra envelope meta (e.g. a machine readable code)."""

    def __init__(self, status_code: int, detail: str, meta: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(status_code=status_code, detail=detail)
        self.code = code
        self.meta = dict(meta or {})
        if code:
            self.meta.setdefault("code", code)


class StockError(ApiError):
    """Stock rule violations (expired batch, insufficient stock)."""
