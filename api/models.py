"""
API request and response models for ipbound REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, allowedIps, ...). Fields are declared
in snake_case and aliased by to_camel; populate_by_name lets tests and
handlers construct models with either spelling.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.ipscope import is_valid_scope, normalize_ip
from auth.models import SessionSummary, TokenPair

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_CAMEL_FROZEN = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/auth/register.

    Minimum password length is enforced in the route from Settings so the
    policy lives in one place.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    # bcrypt truncates beyond 72 bytes; 64 chars keeps ASCII input below that.
    password: str = Field(min_length=1, max_length=64)


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login.

    allowedIps is optional. When omitted or empty, the tokens are bound to the
    caller's own address. Each entry must be an IP literal or a dotted
    wildcard pattern such as 192.168.1.*.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=64)
    allowed_ips: Optional[list[str]] = Field(default=None, max_length=32)

    @field_validator("allowed_ips")
    @classmethod
    def validate_scopes(cls, values: Optional[list[str]]) -> Optional[list[str]]:
        """Reject malformed patterns, normalize literals, drop duplicates (order kept)."""
        if not values:
            return None
        result: list[str] = []
        for v in values:
            if not is_valid_scope(v):
                raise ValueError(f"invalid IP pattern: {v!r}")
            normalized = normalize_ip(v)
            if normalized not in result:
                result.append(normalized)
        return result


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/refresh."""

    model_config = _CAMEL

    refresh_token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str


class RegisterResponse(UserInfo):
    """Response for POST /api/auth/register."""


class TokenPairResponse(BaseModel):
    """Response for POST /api/auth/refresh. Also the base of LoginResponse."""

    model_config = _CAMEL_FROZEN

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    @classmethod
    def from_pair(cls, pair: TokenPair, **extra) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            token_type=pair.token_type,
            **extra,
        )


class LoginResponse(TokenPairResponse):
    """Response for POST /api/auth/login."""

    user: UserInfo
    ip: str
    allowed_ips: list[str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ProtectedResponse(BaseModel):
    """Response for GET /api/protected."""

    model_config = _CAMEL_FROZEN

    message: str
    user: UserInfo
    client_ip: str
    allowed_ips: list[str]


class SessionInfo(BaseModel):
    """One live token family as shown to its owner. Token values are never included."""

    model_config = _CAMEL_FROZEN

    id: int
    ip: str
    allowed_ips: list[str]
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> "SessionInfo":
        return cls(
            id=summary.id,
            ip=summary.origin_ip,
            allowed_ips=summary.allowed_scopes,
            expires_at=summary.access_expires_at,
            created_at=summary.created_at,
        )


class Profile(BaseModel):
    model_config = _CAMEL_FROZEN

    id: int
    username: str
    created_at: Optional[str] = None
    current_ip: str
    allowed_ips: list[str]
    active_sessions: int


class ProfileResponse(BaseModel):
    """Response for GET /api/profile."""

    model_config = ConfigDict(frozen=True)

    profile: Profile
    sessions: list[SessionInfo]


class PublicResponse(BaseModel):
    """Response for GET /api/public (optional authentication)."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: Optional[UserInfo] = None
    ip: str


class IpInfoResponse(BaseModel):
    """Response for GET /api/info."""

    model_config = _CAMEL_FROZEN

    client_ip: str
    headers: dict[str, Optional[str]]


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    client_ip is set on gateway rejections so callers can see which address
    the server computed for them.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    client_ip: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
