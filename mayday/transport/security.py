# mayday/transport/security.py
"""
Who may read /metrics.

With METRICS_TOKEN set, callers present it as a Bearer token. Without
it, only callers on INTERNAL_NETWORKS get through.
"""
from __future__ import annotations

import hmac
import ipaddress
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mayday.config import settings
from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)

bearer = HTTPBearer(scheme_name="Metrics Token", auto_error=False)

_UNAUTHORIZED = {"WWW-Authenticate": "Bearer"}


@lru_cache(maxsize=1)
def _internal_networks() -> tuple:
    parsed = []
    for cidr in filter(None, (c.strip() for c in settings.internal_networks.split(","))):
        try:
            parsed.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring malformed INTERNAL_NETWORKS entry: {cidr}")
    return tuple(parsed)


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in net for net in _internal_networks())


def _caller_ip(request: Request) -> str:
    # First X-Forwarded-For hop is trusted only behind a known proxy
    if settings.trust_proxy_headers and request.headers.get("X-Forwarded-For"):
        return request.headers["X-Forwarded-For"].split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> None:
    token = settings.metrics_token

    if token:
        if credentials is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Authentication required", headers=_UNAUTHORIZED)
        if not hmac.compare_digest(credentials.credentials, token):
            logger.warning("Rejected /metrics request with a wrong token")
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid credentials", headers=_UNAUTHORIZED)
        return

    caller = _caller_ip(request)
    if not _is_internal_ip(caller):
        logger.warning(f"Rejected /metrics request from {caller}")
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Forbidden")
