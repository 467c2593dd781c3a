from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenType(str, Enum):
    BEARER = "BEARER"
    REFRESH = "REFRESH"
    ACTIVATION = "ACTIVATION"


SESSION_TOKEN_TYPES = (TokenType.BEARER, TokenType.REFRESH)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    roles: List[str] = field(default_factory=lambda: ["USER"])
    enabled: bool = False
    locked: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        roles: Optional[List[str]] = None,
        *,
        enabled: bool = False,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            roles=list(roles or ["USER"]),
            enabled=enabled,
        )


@dataclass
class RoleRecord:
    name: str
    permissions: List[str] = field(default_factory=list)


@dataclass
class Token:
    """Persisted credential: a session JWT (access or refresh) or an activation code."""

    id: str
    token: str
    token_type: TokenType
    user_id: str
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    expired: bool = False
    revoked: bool = False
    validated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        token: str,
        token_type: TokenType,
        user_id: str,
        *,
        created_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> "Token":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            token_type=token_type,
            user_id=user_id,
            created_at=created_at or _utcnow(),
            expires_at=expires_at,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        if self.token_type == TokenType.ACTIVATION:
            return (
                self.expires_at is not None
                and now < self.expires_at
                and self.validated_at is None
                and not self.expired
            )
        if self.expired or self.revoked:
            return False
        return self.expires_at is None or now < self.expires_at

    def holds_value(self) -> bool:
        """Whether this record still claims its token value exclusively.

        Activation codes give their value back once used or retired, so the
        short code space can be recycled. Session JWTs never do.
        """
        if self.token_type == TokenType.ACTIVATION:
            return self.validated_at is None and not self.expired
        return True

    def revoke(self) -> None:
        self.expired = True
        self.revoked = True


@dataclass
class AuthenticationResponse:
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
