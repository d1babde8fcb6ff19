"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
authority do the work; routes map these to Pydantic response models in
api/models.py.

Timestamps are timezone-aware UTC datetimes everywhere in the domain. The
store converts to and from ISO 8601 text at the SQL boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TokenKind(str, Enum):
    """Signing domain of a token. Access and refresh tokens never cross domains."""

    access = "access"
    refresh = "refresh"


@dataclass
class User:
    """A registered identity. The token engine only consumes id and username."""

    username: str
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None


@dataclass
class TokenFamily:
    """One issuance: the linked access/refresh pair, revoked together.

    At most one non-revoked family exists per user_id. allowed_scopes is never
    empty -- it defaults to [origin_ip] at issuance.
    """

    user_id: int
    access_token: str
    refresh_token: str
    origin_ip: str
    allowed_scopes: list[str]
    access_expires_at: datetime
    refresh_expires_at: datetime
    revoked: bool = False
    created_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class SignedClaim:
    """Decoded payload of a verified token. Built at issuance, never mutated."""

    user_id: int
    username: str
    origin_ip: str
    allowed_scopes: tuple[str, ...]
    kind: TokenKind
    token_id: str
    expires_at: datetime


@dataclass
class SessionSummary:
    """What a user may see about one of their live families. Never carries token values."""

    id: int
    origin_ip: str
    allowed_scopes: list[str]
    access_expires_at: datetime
    created_at: datetime


@dataclass
class TokenPair:
    """Result of issuance or rotation, returned to the client."""

    access_token: str
    refresh_token: str
    expires_in: int
    origin_ip: str
    allowed_scopes: list[str] = field(default_factory=list)
    token_type: str = "Bearer"


@dataclass
class Verification:
    """Gateway outcome. Exactly one of claim or code is set; client_ip is always set."""

    client_ip: str
    claim: SignedClaim | None = None
    code: str | None = None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.claim is not None
