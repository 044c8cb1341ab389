"""
auth/models.py -- Domain dataclasses for users and sessions.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these dataclasses own the domain shape.

Layer rule: no imports from api/, social/, or media/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """A member of the network.

    id is assigned by UserStore.create_user() (32 hex chars) and is None until
    the record is written.

    following / followers are mirror images across users: if A.following holds
    B then B.followers holds A. Only social/graph.py mutates them.

    avatar is the public URL path of the resized image, or None.
    """

    name: str
    email: str
    hashed_password: str | None = None
    id: str | None = None
    about: str | None = None
    avatar: str | None = None
    following: list[str] = field(default_factory=list)
    followers: list[str] = field(default_factory=list)
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""  # ISO 8601, stamped on every update


@dataclass
class UserCard:
    """The projection of a user shown in feeds: identity, name and avatar only."""

    id: str
    name: str
    avatar: str | None = None


@dataclass
class Session:
    """A server-side signin session.

    The signed cookie token carries the session id; signout deletes this row,
    which invalidates the token even though its signature is still valid.
    """

    user_id: str
    expires_at: str  # ISO 8601
    id: str | None = None
    created_at: str | None = None
