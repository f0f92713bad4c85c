# backend/pharmaflow/core/api.py
from __future__ import annotations
from typing import Any, Dict, Optional, Sequence
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse


# UTF-8 charset on every JSON response
class UTF8JSONResponse(JSONResponse):
    media_type = "application/json; charset=utf-8"


def num(value) -> Optional[float]:
    """Decimal -> float for JSON output (None stays None)."""
    if value is None:
        return None
    return float(value)


def list_meta(
    items: Optional[Sequence[Any]] = None,
    extra: Optional[Dict[str, Any]] = None,
    next_cursor: Optional[str] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    if items is not None:
        meta["count"] = len(items)
    if next_cursor is not None:
        meta["nextCursor"] = next_cursor
    if extra:
        meta.update(extra)
    return meta


def ok(data: Any = True, meta: Optional[Dict[str, Any]] = None, status_code: int = 200):
    payload: Dict[str, Any] = {"ok": True, "data": jsonable_encoder(data)}
    if meta:
        payload["meta"] = jsonable_encoder(meta)
    return UTF8JSONResponse(content=payload, status_code=status_code)


def fail(error: str, status_code: int = 400, meta: Optional[Dict[str, Any]] = None, headers=None):
    payload: Dict[str, Any] = {"ok": False, "error": error}
    if meta:
        payload["meta"] = jsonable_encoder(meta)
    return UTF8JSONResponse(content=payload, status_code=status_code, headers=headers)


def plain(text: str, status_code: int = 200):
    return PlainTextResponse(content=text, status_code=status_code, headers={"Cache-Control": "no-store"})
