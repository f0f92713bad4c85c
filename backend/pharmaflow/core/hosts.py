# backend/pharmaflow/core/hosts.py
import re
from typing import Optional

from fastapi import Request

_PORT_RE = re.compile(r":\d+$")


def normalize_host(raw) -> Optional[str]:
    """First entry of a (possibly comma separated) host header, lowercased, port stripped."""
    if not isinstance(raw, str):
        return None
    v = raw.strip().lower()
    if not v:
        return None
    first = v.split(",")[0].strip()
    host = _PORT_RE.sub("", first)
    return host or None


def request_host(request: Request) -> Optional[str]:
    return normalize_host(request.headers.get("x-forwarded-host")) or normalize_host(request.headers.get("host"))
