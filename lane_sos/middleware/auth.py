"""Operator authentication for the emergency dashboard.

Operators share one dashboard key (``X-Admin-API-Key``, checked against
``ADMIN_API_KEY`` in constant time) and name themselves in
``X-Operator-Id``.  :func:`require_operator` resolves both into an
:class:`Operator`; routes that act on an incident depend on
:func:`require_acting_operator`, which also insists on the operator id so
every manual escalation and admin response is attributed.

Failure mapping:
    * no key configured -- open in development, 503 in production
    * key missing       -- 401
    * key wrong         -- 403
    * acting without id -- 400
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import Depends, Header, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from config.settings import settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_dashboard_key = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


class Operator(BaseModel):
    """Who is calling the dashboard endpoints."""

    operator_id: str | None = None
    authenticated: bool = False


def _denied(request: Request, status_code: int, detail: str, event: str, operator_id: str | None) -> HTTPException:
    logger.warning(
        event,
        path=request.url.path,
        operator_id=operator_id,
        client_ip=request.client.host if request.client else "unknown",
    )
    headers = {"WWW-Authenticate": "ApiKey"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


async def require_operator(
    request: Request,
    api_key: str | None = Security(_dashboard_key),
    operator_id: str | None = Header(default=None, alias="X-Operator-Id"),
) -> Operator:
    """Check the dashboard key and return the calling :class:`Operator`."""
    operator_id = (operator_id or "").strip() or None
    configured_key = settings.admin_api_key

    if not configured_key:
        if settings.is_production:
            logger.error("operator_auth.key_not_configured_production", path=request.url.path)
            raise HTTPException(status_code=503, detail="Operator authentication is not configured.")
        logger.warning("operator_auth.open_development", path=request.url.path, operator_id=operator_id)
        return Operator(operator_id=operator_id)

    if not api_key:
        raise _denied(request, 401, "Missing X-Admin-API-Key header.", "operator_auth.key_missing", operator_id)

    if not hmac.compare_digest(api_key.encode(), configured_key.encode()):
        raise _denied(request, 403, "Invalid operator key.", "operator_auth.key_rejected", operator_id)

    return Operator(operator_id=operator_id, authenticated=True)


async def require_acting_operator(
    request: Request,
    operator: Operator = Depends(require_operator),
) -> Operator:
    """Like :func:`require_operator`, but the operator must identify themselves."""
    if operator.operator_id is None:
        raise _denied(
            request,
            400,
            "X-Operator-Id header is required to act on an incident.",
            "operator_auth.operator_id_missing",
            None,
        )
    return operator
