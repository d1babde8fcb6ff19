"""
api/routes/session.py -- Endpoints gated by the verification gateway.

Routes:
  GET /api/protected  -- requires bearer; echoes identity, client IP, allowed IPs
  GET /api/profile    -- requires bearer; profile plus the caller's live sessions
  GET /api/public     -- optional bearer; reports whether the caller is authenticated
  GET /api/info       -- public; shows the client IP the server computed

/api/info exists for debugging proxy setups: it shows exactly which header
won the X-Forwarded-For / X-Real-IP / socket precedence.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    IpInfoResponse,
    Profile,
    ProfileResponse,
    ProtectedResponse,
    PublicResponse,
    SessionInfo,
    UserInfo,
)
from auth.dependencies import optional_session, request_ip, require_session
from auth.models import Verification
from auth.sessions import SessionAuthority
from auth.store import UserStore

router = APIRouter()


@router.get("/protected", response_model=ProtectedResponse)
async def protected(session: Verification = Depends(require_session)) -> ProtectedResponse:
    claim = session.claim
    return ProtectedResponse(
        message="Access granted.",
        user=UserInfo(id=claim.user_id, username=claim.username),
        client_ip=session.client_ip,
        allowed_ips=list(claim.allowed_scopes),
    )


@router.get("/profile", response_model=ProfileResponse)
def profile(request: Request, session: Verification = Depends(require_session)) -> ProfileResponse:
    """Return the caller's profile and every live token family they own."""
    user_store: UserStore = request.app.state.user_store
    authority: SessionAuthority = request.app.state.authority
    claim = session.claim

    user = user_store.get_by_id(claim.user_id)
    sessions = [SessionInfo.from_summary(s) for s in authority.active_sessions(claim.user_id)]
    return ProfileResponse(
        profile=Profile(
            id=claim.user_id,
            username=claim.username,
            created_at=user.created_at if user else None,
            current_ip=session.client_ip,
            allowed_ips=list(claim.allowed_scopes),
            active_sessions=len(sessions),
        ),
        sessions=sessions,
    )


@router.get("/public", response_model=PublicResponse)
def public(request: Request, session: Verification | None = Depends(optional_session)) -> PublicResponse:
    """Public route: never rejects, but recognises a valid bearer token."""
    if session is None:
        return PublicResponse(authenticated=False, ip=request_ip(request))
    return PublicResponse(
        authenticated=True,
        user=UserInfo(id=session.claim.user_id, username=session.claim.username),
        ip=session.client_ip,
    )


@router.get("/info", response_model=IpInfoResponse)
async def info(request: Request) -> IpInfoResponse:
    return IpInfoResponse(
        client_ip=request_ip(request),
        headers={
            "x-forwarded-for": request.headers.get("x-forwarded-for"),
            "x-real-ip": request.headers.get("x-real-ip"),
        },
    )
