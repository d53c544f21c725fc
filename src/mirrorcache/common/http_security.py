"""Guard for the operator-only /metrics endpoint."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """With a token configured, demand it as a bearer credential; otherwise allow loopback peers only."""
    if token:
        supplied = request.headers.get("authorization") or ""
        if not hmac.compare_digest(supplied.encode(), f"Bearer {token}".encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return
    client = request.client
    if not _is_loopback(client.host if client else None):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to loopback clients")
