from __future__ import annotations

from typing import Any


class FieldTaskError(Exception):
    pass


class ValidationError(FieldTaskError):
    pass


class AuthorizationError(FieldTaskError):
    pass


class NotFoundError(FieldTaskError):
    pass


class ConflictError(FieldTaskError):
    pass


class PreconditionError(FieldTaskError):
    def __init__(
        self,
        reason_code: str,
        message: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.detail = detail or {}


class AuthenticationError(FieldTaskError):
    pass
