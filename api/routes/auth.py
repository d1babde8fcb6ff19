"""
api/routes/auth.py -- Registration, login, token rotation and logout endpoints.

Routes:
  POST /api/auth/register   -- create a local user; 201
  POST /api/auth/login      -- password login; issues a token family bound to allowedIps
  POST /api/auth/refresh    -- rotate the family; old access and refresh tokens die
  POST /api/auth/logout     -- revoke every family of the caller (requires bearer)

Security:
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Refresh failures all answer 401 with the authority's error code; the
  message never echoes the presented token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import (
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPairResponse,
    UserInfo,
)
from auth.dependencies import request_ip, require_session
from auth.errors import AuthError, CredentialValidationError, IpMismatchError
from auth.models import User, Verification
from auth.sessions import SessionAuthority
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password
from core.config import get_settings

logger = logging.getLogger("ipbound.api.auth")

# Auth policy:
# - POST /api/auth/register: public
# - POST /api/auth/login:    public
# - POST /api/auth/refresh:  public -- the refresh token is the credential
# - POST /api/auth/logout:   requires a valid access token from an allowed IP
router = APIRouter()


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a local user account.

    400 on a short password or a taken username. The UNIQUE constraint in the
    store decides races between two registrations of the same name.
    """
    user_store: UserStore = request.app.state.user_store
    min_length = get_settings().min_password_length
    try:
        if len(body.password) < min_length:
            raise CredentialValidationError(f"Password must be at least {min_length} characters.")
        user_id = user_store.create_user(User(username=body.username, hashed_password=hash_password(body.password)))
    except CredentialValidationError as exc:
        raise HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message}) from exc

    logger.info("Registered user_id=%s username=%s", user_id, body.username)
    return RegisterResponse(id=user_id, username=body.username)


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; issue a token family.

    Any previous family of the user is revoked in the same step, so logging in
    again elsewhere ends the earlier session.

    Returns the same generic error for wrong username and wrong password
    ("bad_credentials") to avoid leaking username existence information.
    """
    user_store: UserStore = request.app.state.user_store
    authority: SessionAuthority = request.app.state.authority
    ip = request_ip(request)

    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        logger.info("Failed login for username=%s ip=%s", body.username, ip)
        return _no_store(
            ErrorResponse(
                error=ErrorDetail(code="bad_credentials", message="Invalid username or password.")
            ).model_dump(),
            status_code=401,
        )

    try:
        pair = authority.issue_pair(user.id, user.username, ip, body.allowed_ips)
    except IpMismatchError as exc:
        # No resolvable client address to bind the family to.
        return _no_store(
            ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, client_ip=ip)).model_dump(),
            status_code=403,
        )

    resp = LoginResponse.from_pair(
        pair,
        user=UserInfo(id=user.id, username=user.username),
        ip=pair.origin_ip,
        allowed_ips=pair.allowed_scopes,
    )
    return _no_store(resp.model_dump(by_alias=True))


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair.

    The presented token's family is revoked; reusing it afterwards fails with
    not_found. The new family keeps the original allowedIps.
    """
    authority: SessionAuthority = request.app.state.authority
    ip = request_ip(request)
    try:
        pair = authority.refresh_pair(body.refresh_token, ip)
    except AuthError as exc:
        logger.info("Refresh rejected: %s ip=%s", exc.code, ip)
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": exc.message, "client_ip": ip},
        ) from exc
    return _no_store(TokenPairResponse.from_pair(pair).model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, session: Verification = Depends(require_session)) -> MessageResponse:
    """Revoke every token family of the caller, on every device."""
    authority: SessionAuthority = request.app.state.authority
    authority.revoke_user(session.claim.user_id)
    return MessageResponse(message="Logged out.")
