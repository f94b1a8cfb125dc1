from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException

from tokenrelay.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from tokenrelay.logging import get_logger
from tokenrelay.service.auth import AuthContext, TokenPair
from tokenrelay.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        user_id=pair.subject,
        role=pair.role,
        access_expires_at=pair.access_expires_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the caller from a bearer access token.

    Codec failures surface as 401 with their specific error code so clients
    can tell an expired token apart from a forged one.
    """
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return get_runtime().auth.authenticate(authorization)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password and start a new session.

    Any session the user already holds is replaced.

    Raises:
        401: If credentials are invalid or the user is inactive
    """
    runtime = get_runtime()
    pair = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    access_token = runtime.auth.extract_bearer(authorization)
    await runtime.auth.logout_with_tokens(
        refresh_token=body.refresh_token if body else None,
        access_token=access_token,
    )
    return Envelope(status="ok", data=LogoutResponse())


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            role=principal.role,
            expires_at=principal.expires_at,
        ),
    )
