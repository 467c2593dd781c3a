from __future__ import annotations

import re
import unicodedata
from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from courseauth.service.errors import ValidationError
from courseauth.service.permissions import Role, parse_role

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

MAX_NAME_LENGTH = 128
MAX_PASSWORD_LENGTH = 1024

ModelT = TypeVar("ModelT", bound=BaseModel)


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value)


def normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        raise ValueError("email must not be blank")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must not be blank")
    return value.strip()


def _require_password(value: Any) -> str:
    # Passwords are taken verbatim; only emptiness is rejected
    if not isinstance(value, str) or not value:
        raise ValueError("password must not be blank")
    return value


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_default=True)

    first_name: str = Field(default="", max_length=MAX_NAME_LENGTH)
    last_name: str = Field(default="", max_length=MAX_NAME_LENGTH)
    email: str = ""
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    role: Optional[Role] = None

    @field_validator("first_name", mode="before")
    @classmethod
    def _validate_first_name(cls, value: Any) -> str:
        return _require_text(value, "first name")

    @field_validator("last_name", mode="before")
    @classmethod
    def _validate_last_name(cls, value: Any) -> str:
        return _require_text(value, "last name")

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return normalize_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        return _require_password(value)

    @field_validator("role", mode="before")
    @classmethod
    def _validate_role(cls, value: Any) -> Optional[Role]:
        if value is None:
            return None
        try:
            return parse_role(value)
        except ValueError:
            raise ValueError(f"unknown role '{value}'") from None


class AuthenticationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_default=True)

    email: str = ""
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return normalize_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        return _require_password(value)


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_default=True)

    current_password: str = ""
    new_password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    confirmation_password: str = ""

    @field_validator("current_password", "new_password", "confirmation_password", mode="before")
    @classmethod
    def _validate_passwords(cls, value: Any) -> str:
        return _require_password(value)


def _format_errors(exc: PydanticValidationError) -> list[dict[str, str]]:
    errors = []
    for item in exc.errors():
        loc = item.get("loc") or ()
        field = ".".join(str(part) for part in loc) or "__root__"
        message = str(item.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": field, "message": message})
    return errors


def validate_payload(model: Type[ModelT], payload: ModelT | Mapping[str, Any] | None) -> ModelT:
    """Validate ``payload`` against ``model`` and report every violation at once.

    Already-built model instances are re-validated from their field values so
    a caller cannot skip checks by constructing the model directly.
    """
    if isinstance(payload, BaseModel):
        data: Any = payload.model_dump()
    elif payload is None:
        data = {}
    else:
        data = dict(payload)
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("validation failed", errors=_format_errors(exc)) from None


__all__ = [
    "RegisterRequest",
    "AuthenticationRequest",
    "ChangePasswordRequest",
    "normalize_email",
    "validate_payload",
]
