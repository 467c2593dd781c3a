from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400).

    ``detail["errors"]`` lists every violated constraint, not just the first.
    """
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str = "validation failed", *, errors: Optional[list] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if errors is not None:
            detail = {**detail, "errors": list(errors)}
        super().__init__(message, detail=detail, **kwargs)

    @property
    def errors(self) -> list:
        return list(self.detail.get("errors", []))


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class BadCredentialsError(AuthenticationError):
    """Unknown email or password mismatch (401)."""

    def __init__(self, message: str = "bad credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    """Account exists but its email is not confirmed yet (403)."""

    def __init__(self, message: str = "account is not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    """Account is locked (403)."""

    def __init__(self, message: str = "account is locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenNotFoundError(NotFoundError):
    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(ValidationError):
    """Activation code expired; a fresh code has already been sent (400)."""
    error_code = "token_expired"

    def __init__(
        self,
        message: str = "Activation token has expired. A new token has been sent to the same email address",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(self, message: str = "email already exists", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "email"})
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class RoleNotInitializedError(ServerError):
    """Default role missing from the role directory (500)."""

    def __init__(self, role: str = "USER", **kwargs) -> None:
        kwargs.setdefault("detail", {"role": role})
        super().__init__(f"Role {role} wasn't initialized", **kwargs)
        self.role = role


class ActivationCodeUnavailableError(ServerError):
    """No free activation code could be drawn; the caller may retry (503)."""
    status_code = 503

    def __init__(self, message: str = "no activation code available, try again later", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "BadCredentialsError",
    "ForbiddenError",
    "AccountDisabledError",
    "AccountLockedError",
    "NotFoundError",
    "UserNotFoundError",
    "TokenNotFoundError",
    "TokenExpiredError",
    "ConflictError",
    "DuplicateEmailError",
    "ServerError",
    "RoleNotInitializedError",
    "ActivationCodeUnavailableError",
]
