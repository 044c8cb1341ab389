"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper.
UserStore is the repository; row_to_user / _row_to_session are the mappers.
Route and dependency code never touches SQL directly.

The users table is used document-style: following and followers are JSON
arrays serialized into Text columns. social/graph.py owns every write to
those two columns and reuses users_table / row_to_user from this module.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Email is stored lowercase and protected by a UNIQUE constraint; a duplicate
  signup raises sqlalchemy.exc.IntegrityError for the route to turn into 409.

Layer rule: no imports from api/, social/, or media/.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event, or_, select
from sqlalchemy.engine import Connection, Engine

from auth.models import Session, User

logger = logging.getLogger("mingle.auth.store")

_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

users_table = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("about", Text),
    Column("avatar", Text),  # public URL path of the resized avatar
    Column("following", Text, nullable=False, server_default="[]"),  # JSON array of user ids
    Column("followers", Text, nullable=False, server_default="[]"),  # JSON array of user ids
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)


class InvalidIdentifierError(ValueError):
    """Raised when a user id is not in the store's id format."""

    def __init__(self, value: str) -> None:
        super().__init__(f"Malformed user id: {value!r}")
        self.value = value


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and hand transaction control to SQLAlchemy.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. pysqlite's own implicit BEGIN is switched
    off; _begin_transaction() emits BEGIN instead.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_transaction(conn: Connection) -> None:
    """Emit BEGIN, or BEGIN IMMEDIATE for connections from UserStore.write_engine.

    BEGIN IMMEDIATE takes the write lock before the first read, so a
    read-modify-write of a JSON id array cannot interleave with another.
    """
    if conn.get_execution_options().get("sqlite_immediate"):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_user_id(user_id: str) -> str:
    """Return user_id unchanged, or raise InvalidIdentifierError if malformed."""
    if not isinstance(user_id, str) or not _ID_PATTERN.match(user_id):
        raise InvalidIdentifierError(user_id)
    return user_id


def load_ids(raw: str | None) -> list[str]:
    return json.loads(raw) if raw else []


def dump_ids(ids: list[str]) -> str:
    return json.dumps(ids)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Session entities.

    Usage:
        store = UserStore("sqlite:///mingle.db")
        uid = store.create_user(User(name="alice", email="a@x.io", hashed_password=hash_password("pw12")))
        user = store.get_by_id(uid)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
            event.listen(self.engine, "begin", _begin_transaction)
        # Used for read-modify-write of relationship arrays.
        self.write_engine: Engine = self.engine.execution_options(sqlite_immediate=True)
        _metadata.create_all(self.engine)

    def write_transaction(self):
        """Open a transaction that holds the write lock from its first statement.

        On SQLite this is BEGIN IMMEDIATE; on other backends callers pair it
        with SELECT ... FOR UPDATE on the rows they rewrite.
        """
        return self.write_engine.begin()

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its generated id.

        Relationship sets always start empty regardless of what the caller
        passes in. Raises sqlalchemy.exc.IntegrityError if the email is taken.
        """
        user_id = uuid.uuid4().hex
        stamp = now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                users_table.insert().values(
                    id=user_id,
                    name=user.name,
                    email=user.email.lower(),
                    hashed_password=user.hashed_password,
                    about=user.about,
                    avatar=user.avatar,
                    following=dump_ids([]),
                    followers=dump_ids([]),
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
        logger.info("Created user %s", user_id)
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by id. Returns None if not found.

        Raises InvalidIdentifierError for ids that could never exist.
        """
        check_user_id(user_id)
        with self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.id == user_id)).fetchone()
        return row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.email == email.lower())).fetchone()
        return row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users in signup order."""
        with self.engine.connect() as conn:
            rows = conn.execute(users_table.select().order_by(users_table.c.created_at)).fetchall()
        return [row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Merge-patch profile fields on an existing user.

        Accepted fields: name, email, about, avatar, hashed_password. Fields not
        passed are left untouched; updated_at is always stamped. Relationship
        columns are rejected here -- use social.graph.RelationshipManager.

        Returns True if a row was updated, False if user_id was not found.
        Raises sqlalchemy.exc.IntegrityError if the new email is taken.
        """
        check_user_id(user_id)
        allowed = {"name", "email", "about", "avatar", "hashed_password"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if fields.get("email"):
            fields["email"] = fields["email"].lower()
        fields["updated_at"] = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(users_table.update().where(users_table.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> User | None:
        """Permanently delete a user and return the removed record.

        Runs in one transaction: the row is deleted, the id is pulled from
        every other user's following/followers, and the user's sessions are
        dropped. Returns None if user_id was not found.

        Authorization (self-access) is the caller's responsibility.
        """
        check_user_id(user_id)
        with self.write_transaction() as conn:
            row = conn.execute(users_table.select().where(users_table.c.id == user_id).with_for_update()).fetchone()
            if row is None:
                return None
            deleted = row_to_user(row)
            _pull_from_relationships(conn, user_id, set(deleted.following) | set(deleted.followers))
            conn.execute(users_table.delete().where(users_table.c.id == user_id))
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        logger.info("Deleted user %s", user_id)
        return deleted

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str, expires_at: str) -> Session:
        """Open a new session for user_id. Each signin gets its own row."""
        session = Session(
            id=secrets.token_hex(32),
            user_id=user_id,
            created_at=now_iso(),
            expires_at=expires_at,
        )
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                )
            )
        return session

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_id: str) -> bool:
        """Close a session. Returns True if a row was removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def purge_expired_sessions(self) -> int:
        """Delete sessions past their expiry. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < now_iso()))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _pull_from_relationships(conn: Connection, user_id: str, related_ids: set[str]) -> None:
    """Remove user_id from the relationship sets of every user that references it.

    related_ids comes from the deleted user's own sets; the OR query also
    catches rows that reference the id without being mirrored.
    """
    needle = f'%"{user_id}"%'
    rows = conn.execute(
        select(users_table.c.id, users_table.c.following, users_table.c.followers).where(
            or_(
                users_table.c.id.in_(sorted(related_ids)),
                users_table.c.following.like(needle),
                users_table.c.followers.like(needle),
            )
        ).with_for_update()
    ).fetchall()
    for row in rows:
        if row.id == user_id:
            continue
        following = [i for i in load_ids(row.following) if i != user_id]
        followers = [i for i in load_ids(row.followers) if i != user_id]
        conn.execute(
            users_table.update()
            .where(users_table.c.id == row.id)
            .values(following=dump_ids(following), followers=dump_ids(followers))
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        about=row.about,
        avatar=row.avatar,
        following=load_ids(row.following),
        followers=load_ids(row.followers),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
