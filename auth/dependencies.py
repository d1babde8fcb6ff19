"""
auth/dependencies.py -- FastAPI Depends() helpers: the request-time verification gateway.

Every protected route funnels through verify_request():
  1. Bearer token from "Authorization: Bearer <token>".
  2. Client IP from X-Forwarded-For (first hop), then X-Real-IP, then the
     socket peer (auth.ipscope.client_ip).
  3. SessionAuthority.validate(token, ip).

Any AuthError becomes a Verification carrying the error's code and public
message plus the computed client IP. Raw exceptions never reach the
response; non-AuthError failures (storage down) propagate to the generic
500 handler in api/main.py.

optional_session() is the soft variant (returns None unless accepted).
require_session() wraps verify_request() and raises HTTP 401 when no token
was presented, HTTP 403 when the token was rejected.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import AuthError
from auth.ipscope import client_ip
from auth.models import Verification
from auth.sessions import SessionAuthority

logger = logging.getLogger("ipbound.auth.gateway")

_BEARER_PREFIX = "Bearer "


def bearer_token(request: Request) -> str | None:
    """Return the bearer token from the Authorization header, or None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith(_BEARER_PREFIX):
        token = auth_header[len(_BEARER_PREFIX) :].strip()
        return token or None
    return None


def request_ip(request: Request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


def verify_request(request: Request) -> Verification | None:
    """Validate the request's bearer token. Returns None if no token was presented."""
    token = bearer_token(request)
    ip = request_ip(request)
    if token is None:
        return None

    authority: SessionAuthority = request.app.state.authority
    try:
        claim = authority.validate(token, ip)
    except AuthError as exc:
        logger.info("Rejected %s %s: %s ip=%s", request.method, request.url.path, exc.code, ip)
        return Verification(client_ip=ip, code=exc.code, reason=exc.message)
    return Verification(client_ip=ip, claim=claim)


def optional_session(request: Request) -> Verification | None:
    """Return an accepted Verification, or None for anonymous and rejected requests."""
    verification = verify_request(request)
    if verification is None or not verification.accepted:
        return None
    return verification


def require_session(request: Request) -> Verification:
    """Require a valid access token from an allowed IP.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: Verification = Depends(require_session)): ...
    """
    verification = verify_request(request)
    if verification is None:
        raise HTTPException(
            status_code=401,
            detail={
                "code": "missing_token",
                "message": "Bearer token required.",
                "client_ip": request_ip(request),
            },
        )
    if not verification.accepted:
        raise HTTPException(
            status_code=403,
            detail={
                "code": verification.code,
                "message": verification.reason,
                "client_ip": verification.client_ip,
            },
        )
    return verification
