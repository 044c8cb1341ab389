"""
social/graph.py -- Follow/unfollow relationships and the "who to follow" feed.

Each user row carries two JSON id arrays:
  following -- users this user follows
  followers -- users who follow this user

The four connection-level operations below each touch exactly one column on
exactly one row (set-union or set-removal). They take an open Connection so
that RelationshipManager can run the two halves of a relationship change in a
single transaction: A.following and B.followers commit together or not at
all. Outside this module nothing writes those columns.

Each array is read, changed in Python and written back, so the read runs
under the write lock (UserStore.write_transaction plus SELECT ... FOR UPDATE).
Two concurrent follows by the same actor then serialize instead of one
overwriting the other.

Invariants maintained here:
  - a user id never appears in its own following/followers
  - A in B.followers  <=>  B in A.following
  - no duplicate ids in either array

Layer rule: imports from auth/ and core/ only.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.engine import Connection

from auth.models import User, UserCard
from auth.store import UserStore, check_user_id, dump_ids, load_ids, now_iso, row_to_user, users_table

logger = logging.getLogger("mingle.social.graph")


class RelationshipError(Exception):
    """Base class for rejected relationship changes."""


class SelfFollowError(RelationshipError):
    def __init__(self, user_id: str) -> None:
        super().__init__("You cannot follow yourself")
        self.user_id = user_id


class UnknownUserError(RelationshipError):
    def __init__(self, user_id: str) -> None:
        super().__init__("No user found")
        self.user_id = user_id


# ---------------------------------------------------------------------------
# Single-row set operations
# ---------------------------------------------------------------------------


def _rewrite_ids(conn: Connection, owner_id: str, column: str, other_id: str, add: bool) -> None:
    if owner_id == other_id:
        raise SelfFollowError(owner_id)
    col = users_table.c[column]
    raw = conn.execute(select(col).where(users_table.c.id == owner_id).with_for_update()).scalar_one_or_none()
    if raw is None:
        raise UnknownUserError(owner_id)
    ids = load_ids(raw)
    if add:
        if other_id in ids:
            return
        ids.append(other_id)
    else:
        if other_id not in ids:
            return
        ids = [i for i in ids if i != other_id]
    conn.execute(
        users_table.update().where(users_table.c.id == owner_id).values({column: dump_ids(ids), "updated_at": now_iso()})
    )


def add_following(conn: Connection, actor_id: str, target_id: str) -> None:
    """Add target_id to actor's following set."""
    _rewrite_ids(conn, actor_id, "following", target_id, add=True)


def add_follower(conn: Connection, target_id: str, actor_id: str) -> None:
    """Add actor_id to target's followers set."""
    _rewrite_ids(conn, target_id, "followers", actor_id, add=True)


def delete_following(conn: Connection, actor_id: str, target_id: str) -> None:
    """Remove target_id from actor's following set."""
    _rewrite_ids(conn, actor_id, "following", target_id, add=False)


def delete_follower(conn: Connection, target_id: str, actor_id: str) -> None:
    """Remove actor_id from target's followers set."""
    _rewrite_ids(conn, target_id, "followers", actor_id, add=False)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class RelationshipManager:
    """Applies both sides of a follow or unfollow as one transaction.

    Usage:
        graph = RelationshipManager(store)
        target = graph.follow(alice.id, bob.id)
        cards = graph.feed(alice.id)
    """

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def follow(self, actor_id: str, target_id: str) -> User:
        """Make actor follow target. Returns the updated target.

        Raises SelfFollowError before any write when actor is target, and
        UnknownUserError (rolling back) when either user does not exist.
        Following someone twice is a no-op.
        """
        self._check_pair(actor_id, target_id)
        with self.store.write_transaction() as conn:
            add_following(conn, actor_id, target_id)
            add_follower(conn, target_id, actor_id)
            target = self._load(conn, target_id)
        logger.info("User %s followed %s", actor_id, target_id)
        return target

    def unfollow(self, actor_id: str, target_id: str) -> User:
        """Make actor stop following target. Returns the updated target."""
        self._check_pair(actor_id, target_id)
        with self.store.write_transaction() as conn:
            delete_following(conn, actor_id, target_id)
            delete_follower(conn, target_id, actor_id)
            target = self._load(conn, target_id)
        logger.info("User %s unfollowed %s", actor_id, target_id)
        return target

    def feed(self, user_id: str) -> list[UserCard]:
        """Return every user that user_id does not follow, excluding user_id itself.

        Natural store order; no ranking or pagination.
        """
        check_user_id(user_id)
        with self.store.engine.connect() as conn:
            raw = conn.execute(select(users_table.c.following).where(users_table.c.id == user_id)).scalar_one_or_none()
            if raw is None:
                raise UnknownUserError(user_id)
            excluded = load_ids(raw) + [user_id]
            rows = conn.execute(
                select(users_table.c.id, users_table.c.name, users_table.c.avatar).where(users_table.c.id.not_in(excluded))
            ).fetchall()
        return [UserCard(id=row.id, name=row.name, avatar=row.avatar) for row in rows]

    @staticmethod
    def _check_pair(actor_id: str, target_id: str) -> None:
        check_user_id(actor_id)
        check_user_id(target_id)
        if actor_id == target_id:
            logger.warning("Rejected self-follow change for user %s", actor_id)
            raise SelfFollowError(actor_id)

    @staticmethod
    def _load(conn: Connection, user_id: str) -> User:
        row = conn.execute(users_table.select().where(users_table.c.id == user_id)).fetchone()
        if row is None:
            raise UnknownUserError(user_id)
        return row_to_user(row)
