from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    FieldTaskError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from fieldtask.domain.permissions import Role
from fieldtask.infra.auth import decode_access_token
from fieldtask.infra.request_context import set_request_context
from fieldtask.services.identity_resolver import IdentityResolver
from fieldtask.services.identity_service import IdentityService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")

_identity_resolver = IdentityResolver(lookup=IdentityService().lookup_user_id)

_STATUS_BY_ERROR: tuple[tuple[type[FieldTaskError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PreconditionError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
)


def get_identity_resolver() -> IdentityResolver:
    return _identity_resolver


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("org_id"), claims.get("sub"))
    return claims


def get_current_actor(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> Actor:
    return IdentityService().build_actor(claims)


def require_roles(*roles: Role) -> Callable[[Actor], Actor]:
    allowed = frozenset(roles)

    def _checker(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(sorted(allowed))}",
            )
        return actor

    return _checker


def http_error(exc: FieldTaskError) -> HTTPException:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    if isinstance(exc, PreconditionError):
        detail: Any = {"reason_code": exc.reason_code, "message": str(exc), "detail": exc.detail}
    else:
        detail = str(exc)
    return HTTPException(status_code=status_code, detail=detail)
