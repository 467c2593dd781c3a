from __future__ import annotations

import asyncio
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ContextManager, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from courseauth.config import ConfirmationMode, Settings
from courseauth.logging import email_fingerprint, get_logger
from courseauth.service.email import EmailTemplate
from courseauth.service.errors import (
    AccountDisabledError,
    ActivationCodeUnavailableError,
    AccountLockedError,
    BadCredentialsError,
    DuplicateEmailError,
    RoleNotInitializedError,
    TokenExpiredError,
    TokenNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from courseauth.service.permissions import ROLE_PERMISSIONS, Role, authorities_for
from courseauth.service.tokens import ACCESS, REFRESH
from courseauth.service.validation import (
    AuthenticationRequest,
    ChangePasswordRequest,
    RegisterRequest,
    validate_payload,
)
from courseauth.storage.errors import ConstraintViolation
from courseauth.storage.models import (
    SESSION_TOKEN_TYPES,
    AuthenticationResponse,
    RoleRecord,
    Token,
    TokenType,
    User,
)

logger = get_logger(__name__)

_MAX_CODE_ATTEMPTS = 10


class UserDirectory(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(self, user: User) -> User: ...

    def save_user(self, user: User) -> User: ...

    def lock_user(self, user_id: str) -> Optional[User]: ...

    def get_role(self, name: str) -> Optional[RoleRecord]: ...

    def save_role(self, role: RoleRecord) -> RoleRecord: ...


class TokenStore(Protocol):
    def save_token(self, token: Token) -> Token: ...

    def save_tokens(self, tokens: Iterable[Token]) -> None: ...

    def get_token(self, value: str) -> Optional[Token]: ...

    def list_valid_tokens(
        self,
        user_id: str,
        token_types: Sequence[TokenType] = SESSION_TOKEN_TYPES,
        *,
        now: Optional[datetime] = None,
    ) -> List[Token]: ...

    def transaction(self) -> ContextManager[Any]: ...


class AuthStore(UserDirectory, TokenStore, Protocol):
    """A single backend that serves both users and tokens."""


class CredentialHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def matches(self, plaintext: str, digest: str) -> bool: ...


class TokenCodec(Protocol):
    def issue(
        self, user: User, claims: Optional[dict[str, Any]] = None, *, now: Optional[datetime] = None
    ) -> str: ...

    def issue_refresh(self, user: User, *, now: Optional[datetime] = None) -> str: ...

    def verify(
        self, token: str, user: User, *, token_type: str = ACCESS, now: Optional[datetime] = None
    ) -> bool: ...

    def subject_of(self, token: str) -> Optional[str]: ...

    def expires_at(self, token: str) -> Optional[datetime]: ...


class Notifier(Protocol):
    def send(
        self,
        to_address: str,
        recipient_name: str,
        template: EmailTemplate | str,
        link_or_code: str,
        subject: str,
    ) -> bool: ...


@dataclass(frozen=True)
class AuthContext:
    """Authenticated principal, passed explicitly to whatever needs it."""

    user_id: str
    email: str
    roles: Tuple[str, ...]
    authorities: FrozenSet[str]
    token: str


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    REISSUED = "reissued"


CONFIRMATION_MESSAGES = {
    ConfirmationStatus.CONFIRMED: "Your account has been successfully activated",
    ConfirmationStatus.ALREADY_CONFIRMED: "Your account is already activated",
    ConfirmationStatus.REISSUED: "Token expired, a new token has been sent to your email",
}


@dataclass
class RegistrationResult:
    user: User
    confirmation_mode: ConfirmationMode
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    def as_response(self) -> Optional[AuthenticationResponse]:
        if not self.access_token:
            return None
        return AuthenticationResponse(
            access_token=self.access_token, refresh_token=self.refresh_token
        )


@dataclass
class _Delivery:
    user: User
    template: EmailTemplate
    link_or_code: str
    subject: str


@dataclass
class _Outbox:
    """Emails queued inside a transaction and dispatched once it commits."""

    items: List[_Delivery] = field(default_factory=list)


class AuthService:
    """Registration, login, token lifecycle and email confirmation.

    Every mutating operation runs its store calls inside one
    ``store.transaction()`` so revoke-then-save is never observed half done.
    Emails go out after the transaction on a worker thread; delivery failures
    are logged and never undo the operation that triggered them.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: CredentialHasher,
        codec: TokenCodec,
        notifier: Notifier,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher
        self.codec = codec
        self.notifier = notifier
        self.logger = logger
        self._pending: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # roles -------------------------------------------------------------------
    def seed_roles(self) -> List[RoleRecord]:
        """Write every known role and its permissions into the role directory."""
        seeded = []
        with self.store.transaction():
            for role in Role:
                record = RoleRecord(
                    name=role.value,
                    permissions=sorted(p.value for p in ROLE_PERMISSIONS[role]),
                )
                self.store.save_role(record)
                seeded.append(record)
        self.logger.info("roles_seeded", roles=[r.name for r in seeded])
        return seeded

    def ensure_default_role(self) -> RoleRecord:
        record = self.store.get_role(self.settings.default_role)
        if record is None:
            self.logger.error("default_role_missing", role=self.settings.default_role)
            raise RoleNotInitializedError(self.settings.default_role)
        return record

    # helpers -----------------------------------------------------------------
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.startswith("Bearer "):
            return None
        token = header[len("Bearer "):].strip()
        return token or None

    def _access_claims(self, user: User) -> dict[str, Any]:
        return {"full_name": user.full_name, "roles": list(user.roles)}

    def _revoke_valid_tokens(
        self,
        user_id: str,
        token_types: Sequence[TokenType],
        now: datetime,
    ) -> int:
        valid = self.store.list_valid_tokens(user_id, token_types, now=now)
        if not valid:
            return 0
        for token in valid:
            token.revoke()
        self.store.save_tokens(valid)
        self.logger.info(
            "tokens_revoked",
            user_id=user_id,
            count=len(valid),
            token_types=[t.value for t in token_types],
        )
        return len(valid)

    def _session_token(self, value: str, token_type: TokenType, user: User, now: datetime) -> Token:
        return Token.new(
            value,
            token_type,
            user.id,
            created_at=now,
            expires_at=self.codec.expires_at(value),
        )

    def _generate_code(self) -> str:
        return "".join(
            secrets.choice(string.digits)
            for _ in range(self.settings.activation_code_length)
        )

    def _new_activation_token(self, user: User, now: datetime) -> Token:
        for _ in range(_MAX_CODE_ATTEMPTS):
            code = self._generate_code()
            existing = self.store.get_token(code)
            if existing is not None:
                if existing.token_type != TokenType.ACTIVATION or existing.is_valid(now):
                    continue
                if existing.holds_value():
                    # Lapsed but never retired; release the value before reuse
                    existing.expired = True
                    self.store.save_token(existing)
            token = Token.new(
                code,
                TokenType.ACTIVATION,
                user.id,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.activation_code_ttl_minutes),
            )
            self.store.save_token(token)
            return token
        self.logger.error("activation_code_unavailable", user_id=user.id, attempts=_MAX_CODE_ATTEMPTS)
        raise ActivationCodeUnavailableError()

    def _confirmation_link(self, token: str) -> str:
        return self.settings.confirmation_url.format(token=token)

    def _link_delivery(self, user: User, access_token: str) -> _Delivery:
        return _Delivery(
            user=user,
            template=EmailTemplate.CONFIRM_EMAIL,
            link_or_code=self._confirmation_link(access_token),
            subject="Confirm your email",
        )

    def _code_delivery(self, user: User, code: str) -> _Delivery:
        return _Delivery(
            user=user,
            template=EmailTemplate.ACTIVATE_ACCOUNT,
            link_or_code=code,
            subject="Account Activation",
        )

    # notifications -----------------------------------------------------------
    def _dispatch(self, outbox: _Outbox) -> None:
        for delivery in outbox.items:
            task = asyncio.create_task(self._deliver(delivery))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, delivery: _Delivery) -> bool:
        user = delivery.user
        try:
            # Run blocking SMTP in thread to avoid blocking event loop
            delivered = await asyncio.to_thread(
                self.notifier.send,
                user.email,
                user.full_name,
                delivery.template,
                delivery.link_or_code,
                delivery.subject,
            )
        except Exception as exc:
            self.logger.error(
                "email_dispatch_failed",
                user_id=user.id,
                template=delivery.template.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if delivered is False:
            self.logger.error(
                "email_dispatch_failed",
                user_id=user.id,
                template=delivery.template.value,
                error="notifier reported failure",
            )
            return False
        self.logger.info(
            "email_dispatched", user_id=user.id, template=delivery.template.value
        )
        return True

    async def drain_notifications(self) -> None:
        """Wait for every queued email to finish sending."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # operations --------------------------------------------------------------
    async def register(
        self, payload: RegisterRequest | Mapping[str, Any]
    ) -> RegistrationResult:
        request = validate_payload(RegisterRequest, payload)
        now = self._now()
        if self.store.get_user_by_email(request.email) is not None:
            self.logger.info("register_duplicate_email", email_hash=email_fingerprint(request.email))
            raise DuplicateEmailError()

        if request.role is not None:
            role_name = request.role.value
        else:
            role_name = self.ensure_default_role().name

        user = User.new(
            email=request.email,
            password_hash=self.hasher.hash(request.password),
            first_name=request.first_name,
            last_name=request.last_name,
            roles=[role_name],
            enabled=False,
        )
        user.created_at = now
        mode = self.settings.confirmation_mode
        result = RegistrationResult(user=user, confirmation_mode=mode)
        outbox = _Outbox()
        with self.store.transaction():
            try:
                user = self.store.create_user(user)
            except ConstraintViolation as exc:
                if exc.field not in (None, "email"):
                    raise
                self.logger.info("register_duplicate_email", email_hash=email_fingerprint(request.email))
                raise DuplicateEmailError() from exc
            result.user = user
            if mode == ConfirmationMode.LINK:
                access = self.codec.issue(user, self._access_claims(user), now=now)
                refresh = self.codec.issue_refresh(user, now=now)
                self.store.save_tokens(
                    [
                        self._session_token(access, TokenType.BEARER, user, now),
                        self._session_token(refresh, TokenType.REFRESH, user, now),
                    ]
                )
                result.access_token = access
                result.refresh_token = refresh
                outbox.items.append(self._link_delivery(user, access))
            else:
                activation = self._new_activation_token(user, now)
                outbox.items.append(self._code_delivery(user, activation.token))
        self.logger.info(
            "user_registered",
            user_id=user.id,
            role=role_name,
            confirmation_mode=mode.value,
        )
        self._dispatch(outbox)
        return result

    async def authenticate(
        self, payload: AuthenticationRequest | Mapping[str, Any]
    ) -> AuthenticationResponse:
        request = validate_payload(AuthenticationRequest, payload)
        user = self.store.get_user_by_email(request.email)
        if user is None or not self.hasher.matches(request.password, user.password_hash):
            self.logger.warning(
                "login_failed",
                email_hash=email_fingerprint(request.email),
                reason="bad_credentials",
            )
            raise BadCredentialsError()
        if user.locked:
            self.logger.warning("login_failed", user_id=user.id, reason="locked")
            raise AccountLockedError()
        if not user.enabled and self.settings.require_confirmed_login:
            self.logger.warning("login_failed", user_id=user.id, reason="disabled")
            raise AccountDisabledError()

        now = self._now()
        with self.store.transaction():
            current = self.store.lock_user(user.id)
            if current is None:
                raise UserNotFoundError()
            self._revoke_valid_tokens(current.id, SESSION_TOKEN_TYPES, now)
            access = self.codec.issue(current, self._access_claims(current), now=now)
            refresh = self.codec.issue_refresh(current, now=now)
            self.store.save_tokens(
                [
                    self._session_token(access, TokenType.BEARER, current, now),
                    self._session_token(refresh, TokenType.REFRESH, current, now),
                ]
            )
        self.logger.info("user_authenticated", user_id=current.id)
        return AuthenticationResponse(access_token=access, refresh_token=refresh)

    async def refresh_token(
        self, authorization: Optional[str]
    ) -> Optional[AuthenticationResponse]:
        """Mint a new access token from a refresh token in a ``Bearer`` header.

        Returns ``None`` without touching the store when the header is missing
        or the refresh token fails any check. An authentic token whose subject
        no longer exists raises ``UserNotFoundError``.
        """
        token = self._extract_bearer(authorization)
        if token is None:
            self.logger.info("refresh_skipped", reason="missing_bearer")
            return None
        now = self._now()
        email = self.codec.subject_of(token)
        if email is None:
            self.logger.info("refresh_rejected", reason="unreadable_token")
            return None
        user = self.store.get_user_by_email(email)
        if user is None:
            raise UserNotFoundError()
        if not self.codec.verify(token, user, token_type=REFRESH, now=now):
            self.logger.info("refresh_rejected", user_id=user.id, reason="invalid_token")
            return None
        with self.store.transaction():
            self.store.lock_user(user.id)
            record = self.store.get_token(token)
            if (
                record is None
                or record.token_type != TokenType.REFRESH
                or record.user_id != user.id
                or not record.is_valid(now)
            ):
                self.logger.info("refresh_rejected", user_id=user.id, reason="revoked")
                return None
            access = self.codec.issue(user, self._access_claims(user), now=now)
            self._revoke_valid_tokens(user.id, (TokenType.BEARER,), now)
            self.store.save_token(self._session_token(access, TokenType.BEARER, user, now))
        self.logger.info("access_token_refreshed", user_id=user.id)
        return AuthenticationResponse(access_token=access, refresh_token=token)

    async def logout(self, authorization: Optional[str]) -> None:
        token = self._extract_bearer(authorization)
        if token is None:
            return
        with self.store.transaction():
            record = self.store.get_token(token)
            if record is None:
                self.logger.info("logout_unknown_token")
                return
            record.revoke()
            self.store.save_token(record)
        self.logger.info("user_logged_out", user_id=record.user_id, token_type=record.token_type.value)

    async def confirm(self, token: str) -> ConfirmationStatus:
        """Confirm an account with a link token or an activation code.

        An expired link is replaced and resent (``REISSUED``). An expired code
        is replaced and resent, then ``TokenExpiredError`` is raised so the
        caller knows to ask for the new code.
        """
        now = self._now()
        outbox = _Outbox()
        expired_code = False
        with self.store.transaction():
            record = self.store.get_token(token) if token else None
            if record is None or record.token_type == TokenType.REFRESH:
                raise TokenNotFoundError()
            user = self.store.lock_user(record.user_id)
            if user is None:
                raise UserNotFoundError()
            # Re-read under the user lock; a concurrent confirmation may have settled it
            record = self.store.get_token(token)
            if record is None or record.user_id != user.id:
                raise TokenNotFoundError()
            if record.validated_at is not None:
                self.logger.info("confirmation_repeated", user_id=user.id)
                return ConfirmationStatus.ALREADY_CONFIRMED
            if user.enabled:
                self.logger.info("confirmation_repeated", user_id=user.id)
                return ConfirmationStatus.ALREADY_CONFIRMED

            if record.token_type == TokenType.ACTIVATION:
                expired = (
                    record.expired
                    or record.expires_at is None
                    or now >= record.expires_at
                )
            else:
                expired = not record.is_valid(now) or not self.codec.verify(
                    record.token, user, now=now
                )

            if expired and record.token_type == TokenType.ACTIVATION:
                record.expired = True
                self.store.save_token(record)
                activation = self._new_activation_token(user, now)
                outbox.items.append(self._code_delivery(user, activation.token))
                expired_code = True
            elif expired:
                access = self.codec.issue(user, self._access_claims(user), now=now)
                self._revoke_valid_tokens(user.id, SESSION_TOKEN_TYPES, now)
                record.revoke()
                self.store.save_token(record)
                self.store.save_token(self._session_token(access, TokenType.BEARER, user, now))
                outbox.items.append(self._link_delivery(user, access))
            else:
                user.enabled = True
                record.validated_at = now
                self.store.save_user(user)
                self.store.save_token(record)

        self._dispatch(outbox)
        if expired_code:
            self.logger.info("activation_code_reissued", user_id=user.id)
            raise TokenExpiredError()
        if outbox.items:
            self.logger.info("confirmation_link_reissued", user_id=user.id)
            return ConfirmationStatus.REISSUED
        self.logger.info("account_confirmed", user_id=user.id)
        return ConfirmationStatus.CONFIRMED

    async def change_password(
        self,
        principal: AuthContext,
        payload: ChangePasswordRequest | Mapping[str, Any],
    ) -> None:
        request = validate_payload(ChangePasswordRequest, payload)
        user = self.store.get_user(principal.user_id)
        if user is None:
            raise UserNotFoundError()
        if not self.hasher.matches(request.current_password, user.password_hash):
            self.logger.warning("password_change_failed", user_id=user.id, reason="wrong_password")
            raise BadCredentialsError("Wrong password")
        if request.new_password != request.confirmation_password:
            raise ValidationError(
                "Passwords are not the same",
                errors=[
                    {
                        "field": "confirmation_password",
                        "message": "Passwords are not the same",
                    }
                ],
            )
        new_hash = self.hasher.hash(request.new_password)
        now = self._now()
        with self.store.transaction():
            current = self.store.lock_user(user.id)
            if current is None:
                raise UserNotFoundError()
            current.password_hash = new_hash
            self.store.save_user(current)
            self._revoke_valid_tokens(user.id, SESSION_TOKEN_TYPES, now)
        self.logger.info("password_changed", user_id=user.id)

    async def resolve_principal(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Turn a ``Bearer`` access token into an ``AuthContext``.

        The token must verify against its user and its stored record must
        still be valid. Unconfirmed accounts are refused while
        ``require_confirmed_login`` is set. Anything else yields ``None``.
        """
        token = self._extract_bearer(authorization)
        if token is None:
            return None
        now = self._now()
        email = self.codec.subject_of(token)
        if email is None:
            return None
        user = self.store.get_user_by_email(email)
        if user is None or user.locked:
            return None
        if not user.enabled and self.settings.require_confirmed_login:
            return None
        if not self.codec.verify(token, user, token_type=ACCESS, now=now):
            return None
        record = self.store.get_token(token)
        if (
            record is None
            or record.token_type != TokenType.BEARER
            or record.user_id != user.id
            or not record.is_valid(now)
        ):
            return None
        return AuthContext(
            user_id=user.id,
            email=user.email,
            roles=tuple(user.roles),
            authorities=frozenset(authorities_for(user.roles)),
            token=token,
        )
