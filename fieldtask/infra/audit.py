from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from fieldtask.domain.models import AuditLog, now_utc
from fieldtask.infra.db import engine

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
UNAUDITED_PATHS = frozenset({"/healthz", "/readyz"})
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
# set by routers when an entity edit was persisted without an audit entry
ENTITY_AUDIT_HEADER = "X-Audit"

logger = logging.getLogger(__name__)


def write_audit_log(
    *,
    org_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                org_id=org_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail or {},
            )
        )
        session.commit()


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in (401, 403, 404):
        return "denied"
    if status_code == 409:
        return "conflict"
    if status_code >= 400:
        return "rejected"
    return "success"


def _context_of(request: Request) -> dict[str, Any]:
    raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, None)
    return dict(raw) if isinstance(raw, dict) else {}


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Attach route-level audit facts; repeated calls merge into what is already there."""
    context = _context_of(request)
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = _deep_merge(previous, detail) if isinstance(previous, dict) else detail
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def build_audit_detail(
    request: Request,
    response: Response,
    *,
    org_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    route = request.scope.get("route")
    result: dict[str, Any] = {
        "status_code": response.status_code,
        "outcome": _outcome(response.status_code),
    }
    entity_audit = response.headers.get(ENTITY_AUDIT_HEADER)
    if entity_audit:
        result["entity_audit"] = entity_audit
    detail: dict[str, Any] = {
        "who": {"org_id": org_id, "actor_id": actor_id},
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": request.url.path,
            "route": getattr(route, "path", request.url.path),
            "client_ip": request.client.host if request.client is not None else None,
        },
        "what": {"action": action, "resource": resource, "method": request.method},
        "result": result,
    }
    return _deep_merge(detail, extra) if extra else detail


class AuditMiddleware(BaseHTTPMiddleware):
    """Writes one ``audit_logs`` row per write request, plus reads a route explicitly tagged."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        if path in UNAUDITED_PATHS:
            return response
        context = _context_of(request)
        if request.method not in WRITE_METHODS and not context:
            return response

        claims = getattr(request.state, "claims", None) or {}
        org_id = str(claims.get("org_id") or "system")
        actor_id = claims.get("sub")
        action = context.get("action") if isinstance(context.get("action"), str) else f"{request.method}:{path}"
        resource = context.get("resource") if isinstance(context.get("resource"), str) else path
        extra = context.get("detail") if isinstance(context.get("detail"), dict) else None

        try:
            write_audit_log(
                org_id=org_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=request.method,
                status_code=response.status_code,
                detail=build_audit_detail(
                    request,
                    response,
                    org_id=org_id,
                    actor_id=actor_id,
                    action=action,
                    resource=resource,
                    extra=extra,
                ),
            )
        except Exception:
            logger.exception("request audit write failed", extra={"org_id": org_id, "action": action})
        return response
