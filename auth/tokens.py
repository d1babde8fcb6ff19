"""
auth/tokens.py -- Credential signing and password hashing.

Security design decisions:
  JWT: python-jose with HS256. CredentialSigner holds two independent signing
       domains, access and refresh, each with its own secret. A token is
       accepted only if (a) its signature verifies under the secret of the
       domain the caller asked for and (b) its "type" claim names that same
       domain. Either check alone would stop a leaked access token from being
       replayed at /refresh; both together mean a compromised verifier for one
       domain still cannot mint tokens for the other.

       Secrets are injected at construction (see core.config.Settings), never
       read from module globals, so tests can build signers with their own
       keys.

       Every token carries a random jti. Two pairs issued for the same user in
       the same second would otherwise be byte-identical and collide on the
       store's UNIQUE constraints.

  Passwords: bcrypt directly. authenticate_user() always runs one bcrypt
       check, against a dummy hash when the username is unknown, so response
       time does not reveal whether a username exists [C1].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidSignatureError, TokenExpiredError, WrongKindError
from auth.models import SignedClaim, TokenKind

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("ipbound.auth.tokens")

_REQUIRED_CLAIMS = ("sub", "user_id", "ip", "allowed_ips", "type", "jti", "exp")

# ---------------------------------------------------------------------------
# Credential signer
# ---------------------------------------------------------------------------


class CredentialSigner:
    """Issue and verify signed, time-bounded tokens in two signing domains.

    Usage:
        signer = CredentialSigner(access_secret, refresh_secret, access_ttl=900, refresh_ttl=604800)
        token, claim = signer.issue(TokenKind.access, user_id=1, username="alice",
                                    origin_ip="10.0.0.5", allowed_scopes=["10.0.0.*"])
        claim = signer.verify(token, TokenKind.access)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: int = 15 * 60,
        refresh_ttl: int = 7 * 24 * 60 * 60,
        algorithm: str = "HS256",
    ) -> None:
        self._secrets = {TokenKind.access: access_secret, TokenKind.refresh: refresh_secret}
        self._ttls = {TokenKind.access: access_ttl, TokenKind.refresh: refresh_ttl}
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> CredentialSigner:
        return cls(
            settings.access_secret_key,
            settings.refresh_secret_key,
            access_ttl=settings.access_token_ttl_seconds,
            refresh_ttl=settings.refresh_token_ttl_seconds,
            algorithm=settings.jwt_algorithm,
        )

    def ttl(self, kind: TokenKind) -> int:
        """Default lifetime in seconds for tokens of the given kind."""
        return self._ttls[kind]

    def issue(
        self,
        kind: TokenKind,
        *,
        user_id: int,
        username: str,
        origin_ip: str,
        allowed_scopes: Sequence[str],
        ttl: int | None = None,
    ) -> tuple[str, SignedClaim]:
        """Sign a new token and return it together with the claim it carries.

        exp is truncated to whole seconds (JWT NumericDate) so the returned
        claim compares equal to what verify() later decodes.
        """
        now = datetime.now(timezone.utc)
        lifetime = self._ttls[kind] if ttl is None else ttl
        exp = int((now + timedelta(seconds=lifetime)).timestamp())
        claim = SignedClaim(
            user_id=user_id,
            username=username,
            origin_ip=origin_ip,
            allowed_scopes=tuple(allowed_scopes),
            kind=kind,
            token_id=str(uuid.uuid4()),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )
        payload = {
            "sub": username,
            "user_id": user_id,
            "ip": origin_ip,
            "allowed_ips": list(claim.allowed_scopes),
            "type": kind.value,
            "jti": claim.token_id,
            "iat": int(now.timestamp()),
            "exp": exp,
        }
        token = jwt.encode(payload, self._secrets[kind], algorithm=self.algorithm)
        return token, claim

    def verify(self, token: str, kind: TokenKind) -> SignedClaim:
        """Verify token in the given domain and return its claim.

        Raises:
            InvalidSignatureError: signature does not match the domain secret,
                or the token is malformed.
            TokenExpiredError: exp is in the past.
            WrongKindError: the type claim names another domain.
        """
        try:
            payload = jwt.decode(token, self._secrets[kind], algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise InvalidSignatureError() from exc

        if any(name not in payload for name in _REQUIRED_CLAIMS):
            raise InvalidSignatureError("Token is malformed.")
        if payload["type"] != kind.value:
            raise WrongKindError()

        return SignedClaim(
            user_id=payload["user_id"],
            username=payload["sub"],
            origin_ip=payload["ip"],
            allowed_scopes=tuple(payload["allowed_ips"]),
            kind=kind,
            token_id=payload["jti"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps password length
    well below that (Pydantic max_length).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1], computed once at import.
_DUMMY_HASH: str = hash_password("ipbound_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Check a username/password pair with timing equalization [C1].

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user
