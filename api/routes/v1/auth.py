"""
api/routes/v1/auth.py -- Signup, signin and signout endpoints.

Routes:
  POST /api/v1/signup   -- create an account (public)
  POST /api/v1/signin   -- email/password signin; sets the session cookie
  GET  /api/v1/signout  -- closes the session and clears the cookie
  GET  /api/v1/me       -- the authenticated user

Security:
  POST /signin is rate-limited per client address (SIGNIN_RATE_LIMIT).
  authenticate_user() provides timing equalization -- use it, never inline.
  Signin failures use one generic message for unknown email and wrong password.
  Cache-Control: no-store on signin responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import MessageResponse, SigninRequest, SignupRequest, UserResponse
from auth.dependencies import get_current_user, get_user_store, read_session_token
from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    clear_session_cookie,
    decode_session_token,
    hash_password,
    open_session,
    set_session_cookie,
)
from core.config import get_settings

logger = logging.getLogger("mingle.api.auth")

router = APIRouter()


@router.post("/signup", response_model=UserResponse, status_code=201)
def signup(body: SignupRequest, store: UserStore = Depends(get_user_store)) -> UserResponse:
    """Register a new account. Field rules live on SignupRequest."""
    new_user = User(
        name=body.name,
        email=body.email,
        hashed_password=hash_password(body.password),
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        logger.warning("Signup rejected: email already registered")
        raise HTTPException(
            status_code=409,
            detail={"code": "email_taken", "message": "A user with the given email is already registered"},
        ) from exc
    return UserResponse.from_user(store.get_by_id(user_id))


@limiter.limit(get_settings().signin_rate_limit)  # must be ABOVE @router so the route keeps its signature
@router.post("/signin", response_model=UserResponse)
def signin(request: Request, body: SigninRequest) -> JSONResponse:
    """Authenticate with email and password; open a session and set its cookie.

    Each successful signin opens an independent session, so signing in from
    two clients leaves both signed in.
    """
    store = get_user_store(request)
    user = authenticate_user(store, body.email, body.password)
    if user is None:
        logger.warning("Signin failed from %s", request.client.host if request.client else "unknown")
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    token = open_session(store, user)
    resp = JSONResponse(status_code=200, content=UserResponse.from_user(user).model_dump())
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/signout", response_model=MessageResponse)
def signout(request: Request, store: UserStore = Depends(get_user_store)) -> JSONResponse:
    """Close the caller's session (if any) and clear the cookie. Always 200."""
    token = read_session_token(request)
    if token:
        payload = decode_session_token(token)
        if payload is not None and store.delete_session(payload["sid"]):
            logger.info("Session closed for user %s", payload["sub"])
    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    clear_session_cookie(resp)
    return resp


@router.get("/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user."""
    return UserResponse.from_user(current_user)
