"""
auth/sessions.py -- Session authority: issue, rotate, validate and revoke token families.

This is the only writer of token state. Every mutation of a user's live
family goes through issue_pair() (login), refresh_pair() (rotation) or
revoke_user() (logout), and all three run under that user's lock from a
lock arena keyed by user_id. Combined with TokenStore.replace_family() and
rotate_family() doing revoke+insert in a single transaction, at most one
non-revoked family per user is ever observable, and a refresh token is
redeemed at most once.

validate() checks cheapest first: store liveness, then signature, then IP
scope. The three checks are independent, so the order changes cost, not the
answer.

Errors from the signer and the store propagate as AuthError subclasses. The
gateway and the routes convert them to rejection responses.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from datetime import datetime, timezone

from auth.errors import IpMismatchError, TokenRevokedError
from auth.ipscope import UNKNOWN_IP, matches, normalize_ip
from auth.models import SessionSummary, SignedClaim, TokenFamily, TokenKind, TokenPair
from auth.store import TokenStore
from auth.tokens import CredentialSigner

logger = logging.getLogger("ipbound.auth.sessions")


class _UserLocks:
    """Arena of per-user mutexes. Locks are created on first use and kept."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def __call__(self, user_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock


class SessionAuthority:
    """Orchestrates CredentialSigner and TokenStore.

    Usage:
        authority = SessionAuthority(CredentialSigner.from_settings(settings), TokenStore(url))
        pair = authority.issue_pair(user.id, user.username, "10.0.0.5")
        claim = authority.validate(pair.access_token, "10.0.0.5")
        pair = authority.refresh_pair(pair.refresh_token, "10.0.0.5")
    """

    def __init__(self, signer: CredentialSigner, tokens: TokenStore) -> None:
        self.signer = signer
        self.tokens = tokens
        self._locks = _UserLocks()

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_pair(
        self,
        user_id: int,
        username: str,
        origin_ip: str,
        scopes: Sequence[str] | None = None,
    ) -> TokenPair:
        """Revoke the user's prior family and issue a new access/refresh pair.

        scopes defaults to [normalized origin_ip]. Both tokens carry the same
        origin and scopes.

        Raises:
            IpMismatchError: origin_ip could not be resolved to an address.
        """
        family, pair = self._sign_family(user_id, username, origin_ip, scopes)
        with self._locks(user_id):
            family_id = self.tokens.replace_family(family)
        logger.info(
            "Issued token family id=%s user_id=%s origin=%s scopes=%s",
            family_id,
            user_id,
            pair.origin_ip,
            pair.allowed_scopes,
        )
        return pair

    def refresh_pair(self, refresh_token: str, current_ip: str) -> TokenPair:
        """Rotate a family: verify the refresh token, check scope, reissue.

        The new family keeps the original allowed_scopes (a standing grant)
        and records current_ip as its origin. Consuming the presented family
        and inserting its successor are one store transaction, so a refresh
        token rotates at most once even under concurrent refreshes.

        Raises:
            InvalidSignatureError, TokenExpiredError, WrongKindError: signer.
            TokenNotFoundError: unknown or already rotated/revoked.
            IpMismatchError: current_ip outside the family's scopes.
        """
        claim = self.signer.verify(refresh_token, TokenKind.refresh)
        family = self.tokens.find_by_refresh_token(refresh_token)
        if not matches(current_ip, family.allowed_scopes):
            logger.info("Refresh rejected: ip_mismatch user_id=%s ip=%s", family.user_id, current_ip)
            raise IpMismatchError()
        successor, pair = self._sign_family(claim.user_id, claim.username, current_ip, family.allowed_scopes)
        with self._locks(claim.user_id):
            family_id = self.tokens.rotate_family(family.id, successor)
        logger.info(
            "Rotated token family id=%s -> id=%s user_id=%s origin=%s",
            family.id,
            family_id,
            claim.user_id,
            pair.origin_ip,
        )
        return pair

    def _sign_family(
        self,
        user_id: int,
        username: str,
        origin_ip: str,
        scopes: Sequence[str] | None,
    ) -> tuple[TokenFamily, TokenPair]:
        origin = normalize_ip(origin_ip)
        if not origin or origin == UNKNOWN_IP:
            # An unresolved caller is never recorded as an origin or a scope.
            logger.warning("Issuance refused: client address could not be resolved (user_id=%s)", user_id)
            raise IpMismatchError("Client address could not be determined.")
        allowed = list(scopes) if scopes else [origin]

        access_token, access_claim = self.signer.issue(
            TokenKind.access, user_id=user_id, username=username, origin_ip=origin, allowed_scopes=allowed
        )
        refresh_token, refresh_claim = self.signer.issue(
            TokenKind.refresh, user_id=user_id, username=username, origin_ip=origin, allowed_scopes=allowed
        )
        family = TokenFamily(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            origin_ip=origin,
            allowed_scopes=allowed,
            access_expires_at=access_claim.expires_at,
            refresh_expires_at=refresh_claim.expires_at,
            created_at=datetime.now(timezone.utc),
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.signer.ttl(TokenKind.access),
            origin_ip=origin,
            allowed_scopes=allowed,
        )
        return family, pair

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, access_token: str, current_ip: str) -> SignedClaim:
        """Return the claim of a live, correctly signed, in-scope access token.

        Raises:
            TokenRevokedError: not live in the store (revoked, rotated, expired or unknown).
            InvalidSignatureError, TokenExpiredError, WrongKindError: signer.
            IpMismatchError: current_ip outside the claim's scopes.
        """
        if not self.tokens.is_live(access_token):
            raise TokenRevokedError()
        claim = self.signer.verify(access_token, TokenKind.access)
        # Claims always carry at least the origin, so this never degrades to "allow any".
        scopes = claim.allowed_scopes or (claim.origin_ip,)
        if not matches(current_ip, scopes):
            raise IpMismatchError()
        return claim

    # ------------------------------------------------------------------
    # Revocation and listing
    # ------------------------------------------------------------------

    def revoke_user(self, user_id: int) -> int:
        """Revoke every live family of user_id (logout). Returns rows revoked."""
        with self._locks(user_id):
            revoked = self.tokens.revoke_all_for_user(user_id)
        logger.info("Revoked %d token families for user_id=%s", revoked, user_id)
        return revoked

    def active_sessions(self, user_id: int) -> list[SessionSummary]:
        return self.tokens.active_sessions(user_id)

    def sweep(self) -> int:
        """Delete families past their refresh expiry. Safe to run concurrently with everything else."""
        removed = self.tokens.sweep_expired()
        if removed:
            logger.info("Swept %d expired token families", removed)
        return removed
