"""
auth/store.py -- SQLAlchemy Core persistence layer for users and token families.

Pattern: Repository + Data Mapper.
UserStore and TokenStore are the repositories; _row_to_user / _row_to_family /
_row_to_summary are the mappers. The session authority and the routes never
touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Single live family per user: replace_family() runs the revoke UPDATE and the
  INSERT inside one engine.begin() transaction. A concurrent reader sees
  either the old family live or the new family live, never both.
  rotate_family() does the same but first consumes the presented family with
  a conditional UPDATE, so a refresh token is redeemed at most once. The session
  authority additionally serializes replace_family() per user_id, so two
  writers for the same user never interleave either.

  Lookups by token value only ever return non-revoked rows. "Unknown" and
  "already revoked" are the same answer (TokenNotFoundError).

Timestamps are stored as fixed-width ISO 8601 UTC text (microsecond
precision), so lexical comparison in SQL equals chronological comparison.

DB path: ipbound_auth.db at the repository root unless DATABASE_URL is set.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateTokenError, DuplicateUserError, TokenNotFoundError
from auth.models import SessionSummary, TokenFamily, User

logger = logging.getLogger("ipbound.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("access_token", Text, nullable=False, unique=True),
    Column("refresh_token", Text, nullable=False, unique=True),
    Column("origin_ip", String(64), nullable=False),
    Column("allowed_ips", Text, nullable=False),  # JSON array of scope patterns
    Column("access_expires_at", String(32), nullable=False),
    Column("refresh_expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("idx_tokens_user_id", "user_id"),
    Index("idx_tokens_revoked", "revoked"),
)


# ---------------------------------------------------------------------------
# Engine setup
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block behind the revoke+insert writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(User(username="alice", hashed_password=hash_password("secret1")))
        user = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises DuplicateUserError if the username is taken. The UNIQUE
        constraint is the arbiter, so two concurrent registrations of the
        same name cannot both succeed.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        hashed_password=user.hashed_password,
                        created_at=_now_iso(),
                    )
                )
        except IntegrityError as exc:
            raise DuplicateUserError() from exc
        return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Token families
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for TokenFamily records, the sole durable token state.

    Only SessionAuthority writes through this class. The gateway only reads
    (is_live via SessionAuthority.validate).
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, family: TokenFamily) -> int:
        """Insert a family and return its ID. Raises DuplicateTokenError on a token collision."""
        try:
            with self.engine.begin() as conn:
                return self._insert(conn, family)
        except IntegrityError as exc:
            raise DuplicateTokenError() from exc

    def revoke_all_for_user(self, user_id: int) -> int:
        """Mark every live family of user_id revoked. Returns the number of rows changed."""
        with self.engine.begin() as conn:
            return self._revoke(conn, user_id)

    def replace_family(self, family: TokenFamily) -> int:
        """Revoke all live families of family.user_id and insert family, atomically.

        Both statements share one transaction. On DuplicateTokenError the
        revoke is rolled back too, so the user keeps their previous family.
        """
        try:
            with self.engine.begin() as conn:
                revoked = self._revoke(conn, family.user_id)
                family_id = self._insert(conn, family)
        except IntegrityError as exc:
            raise DuplicateTokenError() from exc
        if revoked:
            logger.debug("Revoked %d prior families for user_id=%s", revoked, family.user_id)
        return family_id

    def rotate_family(self, old_id: int, family: TokenFamily) -> int:
        """Consume live family old_id and replace it with family, atomically.

        The conditional UPDATE on old_id is the redemption: of two rotations
        racing on the same refresh token, only one sees rowcount 1. The loser
        gets TokenNotFoundError and nothing is inserted.
        """
        try:
            with self.engine.begin() as conn:
                consumed = conn.execute(
                    _tokens.update().where((_tokens.c.id == old_id) & (_tokens.c.revoked == 0)).values(revoked=1)
                )
                if consumed.rowcount == 0:
                    raise TokenNotFoundError()
                self._revoke(conn, family.user_id)
                family_id = self._insert(conn, family)
        except IntegrityError as exc:
            raise DuplicateTokenError() from exc
        return family_id

    def sweep_expired(self) -> int:
        """Delete families whose refresh lifetime is over. Returns rows removed.

        Storage reclamation only: such rows can no longer pass is_live() or a
        refresh signature check, so deleting them changes no answer.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.refresh_expires_at < _now_iso()))
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_refresh_token(self, refresh_token: str) -> TokenFamily:
        return self._find_live(_tokens.c.refresh_token == refresh_token)

    def find_by_access_token(self, access_token: str) -> TokenFamily:
        return self._find_live(_tokens.c.access_token == access_token)

    def is_live(self, access_token: str) -> bool:
        """True if the access token belongs to a non-revoked family whose access lifetime has not ended."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_tokens)
                .where(
                    (_tokens.c.access_token == access_token)
                    & (_tokens.c.revoked == 0)
                    & (_tokens.c.access_expires_at > _now_iso())
                )
            ).scalar()
        return (count or 0) > 0

    def active_sessions(self, user_id: int) -> list[SessionSummary]:
        """Return the user's non-revoked, non-expired families, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    _tokens.c.id,
                    _tokens.c.origin_ip,
                    _tokens.c.allowed_ips,
                    _tokens.c.access_expires_at,
                    _tokens.c.created_at,
                )
                .where(
                    (_tokens.c.user_id == user_id)
                    & (_tokens.c.revoked == 0)
                    & (_tokens.c.access_expires_at > _now_iso())
                )
                .order_by(_tokens.c.created_at.desc(), _tokens.c.id.desc())
            ).fetchall()
        return [_row_to_summary(r) for r in rows]

    def count_live_families(self, user_id: int) -> int:
        """Number of non-revoked families for user_id, expired or not. Should never exceed 1."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_tokens)
                .where((_tokens.c.user_id == user_id) & (_tokens.c.revoked == 0))
            ).scalar()
        return count or 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_live(self, condition) -> TokenFamily:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(condition & (_tokens.c.revoked == 0))).fetchone()
        if row is None:
            raise TokenNotFoundError()
        return _row_to_family(row)

    @staticmethod
    def _revoke(conn, user_id: int) -> int:
        result = conn.execute(
            _tokens.update().where((_tokens.c.user_id == user_id) & (_tokens.c.revoked == 0)).values(revoked=1)
        )
        return result.rowcount

    @staticmethod
    def _insert(conn, family: TokenFamily) -> int:
        result = conn.execute(
            _tokens.insert().values(
                user_id=family.user_id,
                access_token=family.access_token,
                refresh_token=family.refresh_token,
                origin_ip=family.origin_ip,
                allowed_ips=json.dumps(list(family.allowed_scopes)),
                access_expires_at=_to_iso(family.access_expires_at),
                refresh_expires_at=_to_iso(family.refresh_expires_at),
                revoked=1 if family.revoked else 0,
                created_at=_to_iso(family.created_at) if family.created_at else _now_iso(),
            )
        )
        return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
    )


def _row_to_family(row) -> TokenFamily:
    return TokenFamily(
        id=row.id,
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        origin_ip=row.origin_ip,
        allowed_scopes=json.loads(row.allowed_ips),
        access_expires_at=_from_iso(row.access_expires_at),
        refresh_expires_at=_from_iso(row.refresh_expires_at),
        revoked=bool(row.revoked),
        created_at=_from_iso(row.created_at),
    )


def _row_to_summary(row) -> SessionSummary:
    return SessionSummary(
        id=row.id,
        origin_ip=row.origin_ip,
        allowed_scopes=json.loads(row.allowed_ips),
        access_expires_at=_from_iso(row.access_expires_at),
        created_at=_from_iso(row.created_at),
    )
