from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query

from courseauth.api.schemas import (
    AuthResponse,
    ConfirmationResponse,
    Envelope,
    PrincipalResponse,
    RegisterResponse,
)
from courseauth.logging import get_logger
from courseauth.service.auth import CONFIRMATION_MESSAGES, AuthContext
from courseauth.service.permissions import has_any_authority
from courseauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.resolve_principal(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or missing bearer token", status_code=401)
    return ctx


def require_authority(*required: str):
    """Dependency factory admitting principals holding any of ``required``."""

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        if not has_any_authority(principal, *required):
            logger.warning(
                "authority_denied",
                user_id=principal.user_id,
                required=list(required),
            )
            raise _http_error("forbidden", "insufficient authority", status_code=403)
        return principal

    return _dependency


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(payload: Dict[str, Any] = Body(...)):
    """Create a disabled account and send its confirmation link or code.

    Raises:
        400: If any field is invalid (every violation is listed)
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(payload)
    tokens = result.as_response()
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=result.user.id,
            email=result.user.email,
            enabled=result.user.enabled,
            roles=list(result.user.roles),
            confirmation_mode=result.confirmation_mode.value,
            created_at=result.user.created_at,
            access_token=tokens.access_token if tokens else None,
            refresh_token=tokens.refresh_token if tokens else None,
            token_type=tokens.token_type if tokens else None,
        ),
    )


@router.post("/auth/authenticate", response_model=Envelope, tags=["auth"])
async def authenticate(payload: Dict[str, Any] = Body(...)):
    runtime = get_runtime()
    response = await runtime.auth.authenticate(payload)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            token_type=response.token_type,
        ),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(authorization: Optional[str] = Header(None)):
    """Exchange the refresh token in the Authorization header for a new access token.

    An unusable token yields ``data: null`` rather than an error.
    """
    runtime = get_runtime()
    response = await runtime.auth.refresh_token(authorization)
    if response is None:
        return Envelope(status="ok", data=None)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            token_type=response.token_type,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.auth.logout(authorization)
    return Envelope(status="ok", data={"status": "logged_out"})


async def _confirm(token: str) -> Envelope:
    runtime = get_runtime()
    status = await runtime.auth.confirm(token)
    return Envelope(
        status="ok",
        data=ConfirmationResponse(
            status=status.value, message=CONFIRMATION_MESSAGES[status]
        ),
    )


@router.get("/auth/confirm", response_model=Envelope, tags=["auth"])
async def confirm(token: str = Query(..., max_length=4096)):
    return await _confirm(token)


@router.get("/auth/activate-account", response_model=Envelope, tags=["auth"])
async def activate_account(token: str = Query(..., max_length=64)):
    return await _confirm(token)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            email=principal.email,
            roles=list(principal.roles),
            authorities=sorted(principal.authorities),
        ),
    )


@router.patch("/users/password", response_model=Envelope, tags=["users"])
async def change_password(
    payload: Dict[str, Any] = Body(...),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.change_password(principal, payload)
    return Envelope(status="ok", data={"status": "password_changed"})
