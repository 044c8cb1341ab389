"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and profiles.

Two token sources are checked in priority order:
  1. Session cookie (name from SESSION_COOKIE_NAME) -- set by POST /signin.
  2. Authorization: Bearer <token> header -- API clients holding the same token.

Both converge on a User object after the token signature, the server-side
session row and the user row all check out.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
resolve_profile() loads the user named in the path and reports whether the
caller is that user, as an explicit ProfileContext value.

Storage handles live on app.state and are injected through get_user_store();
handlers never reach for a module-level store.

Layer rule: no imports from api/, social/, or media/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request

from auth.models import User
from auth.store import UserStore
from auth.tokens import decode_session_token
from core.config import get_settings


@dataclass(frozen=True)
class ProfileContext:
    """Request-scoped result of resolving /users/{user_id}.

    profile is None when no user has that id; handlers that read it raise 404.
    is_self is True when the authenticated viewer is the profile owner, which
    is what unlocks update and delete.
    """

    viewer: User
    profile: User | None
    is_self: bool

    def require_profile(self) -> User:
        if self.profile is None:
            raise HTTPException(
                status_code=404,
                detail={"code": "not_found", "message": "No user found"},
            )
        return self.profile

    def require_self(self) -> User:
        profile = self.require_profile()
        if not self.is_self:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You are not authorized to perform this action"},
            )
        return profile


def get_user_store(request: Request) -> UserStore:
    return request.app.state.user_store


def read_session_token(request: Request) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    token: str | None = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via session cookie or Bearer token.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token = read_session_token(request)
    if not token:
        return None
    payload = decode_session_token(token)
    if payload is None:
        return None

    store = get_user_store(request)
    session = store.get_session(payload["sid"])
    if session is None or session.user_id != payload["sub"]:
        return None
    if datetime.fromisoformat(session.expires_at) <= datetime.now(timezone.utc):
        return None
    return store.get_by_id(session.user_id)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "You are unauthenticated. Please sign in or sign up"},
        )
    return user


def resolve_profile(
    user_id: str,
    viewer: User = Depends(get_current_user),
    store: UserStore = Depends(get_user_store),
) -> ProfileContext:
    """Load the user named by the {user_id} path parameter.

    A missing user is not an error here; the handler decides when the absence
    matters. A malformed id raises InvalidIdentifierError from the store.
    """
    profile = store.get_by_id(user_id)
    return ProfileContext(
        viewer=viewer,
        profile=profile,
        is_self=profile is not None and profile.id == viewer.id,
    )
