"""
auth/tokens.py -- Password hashing, session tokens, and cookie helpers.

Security design decisions:
  Passwords: bcrypt used directly. Its cost factor makes brute-force expensive.
       The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an email
       is registered.

  Session tokens: python-jose with HS256. A token carries the user id (sub),
       the server-side session id (sid) and an expiry. A valid signature is not
       enough on its own -- the session row must still exist, which is what
       lets signout revoke a token before it expires.

  SECRET_KEY: sourced from core.config.get_settings(), which refuses to start
       in production mode without one.

Layer rule: no imports from api/, social/, or media/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Session, User
    from auth.store import UserStore

logger = logging.getLogger("mingle.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash (salt embedded) of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first signin attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("mingle_timing_dummy")


# ---------------------------------------------------------------------------
# Session token encode / decode
# ---------------------------------------------------------------------------


def session_expiry(expire_seconds: int = 0) -> datetime:
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    return datetime.now(timezone.utc) + timedelta(seconds=duration)


def create_session_token(session: Session) -> str:
    """Sign a token that points at a server-side session row."""
    payload = {
        "sub": session.user_id,
        "sid": session.id,
        "exp": datetime.fromisoformat(session.expires_at),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> dict | None:
    """Decode and verify a session token. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "sub" not in payload or "sid" not in payload:
        return None
    return payload


def open_session(store: UserStore, user: User, expire_seconds: int = 0) -> str:
    """Create a session row for user and return its signed token."""
    session = store.create_session(user.id, session_expiry(expire_seconds).isoformat())
    logger.info("Session opened for user %s", user.id)
    return create_session_token(session)


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password signin with timing equalization.

    Always runs bcrypt whether or not the email is registered:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie.
    samesite="lax": not sent on cross-site POST.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    response.set_cookie(
        _settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        _settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
    )
