from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from courseauth.config import Settings
from courseauth.logging import get_logger
from courseauth.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class JwtCodec:
    """HS256 JWT issuer and verifier.

    Tokens carry the user's email as ``sub`` plus ``iss``, ``aud``, ``iat``,
    ``exp``, a random ``jti`` and a ``token_type`` of ``access`` or
    ``refresh``. Every check compares against an explicit ``now`` so callers
    can evaluate a whole operation against one instant.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(
        self,
        token: str,
        *,
        now: Optional[datetime] = None,
        verify_exp: bool = True,
    ) -> Optional[dict[str, Any]]:
        """Return the claims of a well-signed token, or ``None``.

        With ``verify_exp=False`` an expired but authentic token still decodes,
        which lets callers identify whose confirmation link went stale.
        """
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        if verify_exp and self.is_expired(payload, now=now):
            return None
        return payload

    def is_expired(self, payload: dict[str, Any], *, now: Optional[datetime] = None) -> bool:
        exp = payload.get("exp")
        if not exp:
            return True
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return True
        return exp_ts <= (now or self._now()).timestamp()

    def _build(
        self,
        user: User,
        token_type: str,
        ttl_minutes: int,
        claims: Optional[dict[str, Any]],
        now: Optional[datetime],
    ) -> str:
        issued = now or self._now()
        payload: dict[str, Any] = dict(claims or {})
        payload.update(
            {
                "sub": user.email,
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "iat": int(issued.timestamp()),
                "exp": int((issued + timedelta(minutes=ttl_minutes)).timestamp()),
                "jti": uuid.uuid4().hex,
                "token_type": token_type,
            }
        )
        return self._encode_jwt(payload)

    def issue(
        self,
        user: User,
        claims: Optional[dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        return self._build(
            user, ACCESS, self.settings.access_token_ttl_minutes, claims, now
        )

    def issue_refresh(self, user: User, *, now: Optional[datetime] = None) -> str:
        return self._build(
            user, REFRESH, self.settings.refresh_token_ttl_minutes, None, now
        )

    def expires_at(self, token: str) -> Optional[datetime]:
        payload = self.decode(token, verify_exp=False)
        if not payload or not payload.get("exp"):
            return None
        return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)

    def subject_of(self, token: str) -> Optional[str]:
        """Email in ``sub`` of an authentic token, expired or not."""
        payload = self.decode(token, verify_exp=False)
        if not payload:
            return None
        subject = payload.get("sub")
        return subject if isinstance(subject, str) and subject else None

    def verify(
        self,
        token: str,
        user: User,
        *,
        token_type: str = ACCESS,
        now: Optional[datetime] = None,
    ) -> bool:
        """True when ``token`` is authentic, unexpired, of ``token_type`` and names ``user``."""
        payload = self.decode(token, now=now)
        if not payload or payload.get("token_type") != token_type:
            return False
        subject = payload.get("sub")
        return isinstance(subject, str) and subject.lower() == user.email.lower()
