"""Unit tests for auth/sessions.py -- SessionAuthority.

Covers:
- issue_pair defaults scopes to the normalized origin and keeps one live family
- refresh_pair rotates, preserves scopes, and rejects reuse / wrong IP / wrong kind
- validate accepts iff live, correctly signed, unexpired and in scope
- concurrent issuance for one user never leaves two live families
- concurrent refreshes with one refresh token rotate it exactly once
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import (
    InvalidSignatureError,
    IpMismatchError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenRevokedError,
)
from auth.models import TokenFamily, TokenKind
from auth.sessions import SessionAuthority
from auth.store import TokenStore
from auth.tokens import CredentialSigner


class TestIssuePair:
    def test_default_scope_is_normalized_origin(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "::ffff:10.0.0.5")
        assert pair.origin_ip == "10.0.0.5"
        assert pair.allowed_scopes == ["10.0.0.5"]
        assert pair.expires_in == 900
        assert pair.token_type == "Bearer"
        claim = authority.validate(pair.access_token, "10.0.0.5")
        assert claim.allowed_scopes == ("10.0.0.5",)

    def test_explicit_scopes(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5", ["192.168.1.*"])
        assert pair.allowed_scopes == ["192.168.1.*"]
        assert authority.validate(pair.access_token, "192.168.1.77").username == "alice"

    def test_family_stored_with_linked_tokens(self, authority: SessionAuthority, token_store: TokenStore) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5")
        family = token_store.find_by_access_token(pair.access_token)
        assert family.refresh_token == pair.refresh_token
        assert family.access_expires_at < family.refresh_expires_at

    def test_reissue_revokes_prior_family(self, authority: SessionAuthority, token_store: TokenStore) -> None:
        first = authority.issue_pair(1, "alice", "10.0.0.5")
        second = authority.issue_pair(1, "alice", "10.0.0.5")
        assert token_store.count_live_families(1) == 1
        with pytest.raises(TokenRevokedError):
            authority.validate(first.access_token, "10.0.0.5")
        assert authority.validate(second.access_token, "10.0.0.5").user_id == 1

    def test_other_users_unaffected(self, authority: SessionAuthority) -> None:
        alice = authority.issue_pair(1, "alice", "10.0.0.5")
        authority.issue_pair(2, "bob", "10.0.0.6")
        assert authority.validate(alice.access_token, "10.0.0.5").username == "alice"


    def test_unresolved_origin_refused(self, authority: SessionAuthority, token_store: TokenStore) -> None:
        for origin in ("unknown", "", None):
            with pytest.raises(IpMismatchError):
                authority.issue_pair(1, "alice", origin)
        assert token_store.count_live_families(1) == 0

    def test_refresh_from_unresolved_address_refused(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5", ["*.*.*.*"])
        with pytest.raises(IpMismatchError):
            authority.refresh_pair(pair.refresh_token, "unknown")
        assert authority.validate(pair.access_token, "10.0.0.5").user_id == 1


class TestRefreshPair:
    def test_rotation(self, authority: SessionAuthority) -> None:
        old = authority.issue_pair(1, "alice", "10.0.0.5", ["10.0.0.*"])
        new = authority.refresh_pair(old.refresh_token, "10.0.0.9")
        assert new.access_token != old.access_token
        assert new.allowed_scopes == ["10.0.0.*"]
        assert new.origin_ip == "10.0.0.9"
        with pytest.raises(TokenRevokedError):
            authority.validate(old.access_token, "10.0.0.5")
        assert authority.validate(new.access_token, "10.0.0.200").username == "alice"

    def test_reuse_of_rotated_refresh_token(self, authority: SessionAuthority) -> None:
        old = authority.issue_pair(1, "alice", "10.0.0.5")
        authority.refresh_pair(old.refresh_token, "10.0.0.5")
        with pytest.raises(TokenNotFoundError):
            authority.refresh_pair(old.refresh_token, "10.0.0.5")

    def test_ip_outside_scope(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5")
        with pytest.raises(IpMismatchError):
            authority.refresh_pair(pair.refresh_token, "10.0.0.6")
        # A rejected refresh must not consume the family.
        assert authority.validate(pair.access_token, "10.0.0.5").user_id == 1

    def test_access_token_cannot_refresh(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5")
        with pytest.raises(InvalidSignatureError):
            authority.refresh_pair(pair.access_token, "10.0.0.5")

    def test_after_logout(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5")
        assert authority.revoke_user(1) == 1
        with pytest.raises(TokenNotFoundError):
            authority.refresh_pair(pair.refresh_token, "10.0.0.5")


class TestValidate:
    def test_ip_mismatch(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5")
        with pytest.raises(IpMismatchError):
            authority.validate(pair.access_token, "10.0.0.6")

    def test_unknown_token_is_rejected_as_revoked(self, authority: SessionAuthority) -> None:
        with pytest.raises(TokenRevokedError):
            authority.validate("whatever", "10.0.0.5")

    def test_refresh_token_is_not_an_access_token(self, authority: SessionAuthority) -> None:
        pair = authority.issue_pair(1, "alice", "10.0.0.5")
        with pytest.raises(TokenRevokedError):
            authority.validate(pair.refresh_token, "10.0.0.5")

    def test_store_live_but_signature_expired(self, signer: CredentialSigner, token_store: TokenStore) -> None:
        """Store and signer disagree: liveness alone is not enough."""
        authority = SessionAuthority(signer, token_store)
        token, _ = signer.issue(
            TokenKind.access, user_id=1, username="alice", origin_ip="10.0.0.5", allowed_scopes=["10.0.0.5"], ttl=-5
        )
        now = datetime.now(timezone.utc)
        token_store.put(
            TokenFamily(
                user_id=1,
                access_token=token,
                refresh_token="r",
                origin_ip="10.0.0.5",
                allowed_scopes=["10.0.0.5"],
                access_expires_at=now + timedelta(minutes=5),
                refresh_expires_at=now + timedelta(days=1),
            )
        )
        with pytest.raises(TokenExpiredError):
            authority.validate(token, "10.0.0.5")

    def test_foreign_signature(self, token_store: TokenStore) -> None:
        """A token signed with another deployment's secret fails even if somehow stored."""
        issuer = CredentialSigner("x" * 40, "y" * 40)
        verifier = CredentialSigner("z" * 40, "w" * 40)
        token, claim = issuer.issue(
            TokenKind.access, user_id=1, username="alice", origin_ip="10.0.0.5", allowed_scopes=["10.0.0.5"]
        )
        token_store.put(
            TokenFamily(
                user_id=1,
                access_token=token,
                refresh_token="r",
                origin_ip="10.0.0.5",
                allowed_scopes=["10.0.0.5"],
                access_expires_at=claim.expires_at,
                refresh_expires_at=claim.expires_at + timedelta(days=1),
            )
        )
        with pytest.raises(InvalidSignatureError):
            SessionAuthority(verifier, token_store).validate(token, "10.0.0.5")


class TestActiveSessions:
    def test_lists_only_current_family(self, authority: SessionAuthority) -> None:
        authority.issue_pair(1, "alice", "10.0.0.5")
        authority.issue_pair(1, "alice", "10.0.0.6")
        sessions = authority.active_sessions(1)
        assert len(sessions) == 1
        assert sessions[0].origin_ip == "10.0.0.6"


class TestConcurrentIssuance:
    def test_single_live_family_under_contention(self, signer: CredentialSigner, tmp_path) -> None:
        """Many threads logging the same user in at once leave exactly one live family."""
        store = TokenStore(f"sqlite:///{tmp_path / 'concurrent.db'}")
        authority = SessionAuthority(signer, store)
        errors: list[Exception] = []
        start = threading.Barrier(8)

        def worker() -> None:
            try:
                start.wait()
                for _ in range(3):
                    authority.issue_pair(42, "carol", "10.0.0.5")
                    assert store.count_live_families(42) <= 1
            except Exception as exc:  # surfaced via the errors list below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        try:
            assert errors == []
            assert store.count_live_families(42) == 1
            assert len(authority.active_sessions(42)) == 1
        finally:
            store.close()


class TestConcurrentRefresh:
    def test_refresh_token_redeemed_once(self, signer: CredentialSigner, tmp_path) -> None:
        """Two refreshes racing on one token: one rotates, the other is told the token is gone."""
        store = TokenStore(f"sqlite:///{tmp_path / 'refresh_race.db'}")
        authority = SessionAuthority(signer, store)
        pair = authority.issue_pair(7, "dave", "10.0.0.5")

        # Both threads finish the lookup before either rotates.
        both_looked_up = threading.Barrier(2)
        lookup = store.find_by_refresh_token

        def synchronized_lookup(token: str) -> TokenFamily:
            family = lookup(token)
            both_looked_up.wait(timeout=5)
            return family

        store.find_by_refresh_token = synchronized_lookup
        rotated: list = []
        rejected: list[Exception] = []

        def worker() -> None:
            try:
                rotated.append(authority.refresh_pair(pair.refresh_token, "10.0.0.5"))
            except TokenNotFoundError as exc:
                rejected.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        try:
            assert len(rotated) == 1
            assert len(rejected) == 1
            assert store.count_live_families(7) == 1
            assert authority.validate(rotated[0].access_token, "10.0.0.5").username == "dave"
        finally:
            store.close()
