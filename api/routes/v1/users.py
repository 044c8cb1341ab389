"""
api/routes/v1/users.py -- Profile, avatar, feed and follow endpoints.

Routes:
  GET    /api/v1/users                -- list users (public, no credentials)
  GET    /api/v1/users/{id}           -- profile + is_self (requires auth)
  PUT    /api/v1/users/{id}           -- merge-patch profile, optional avatar (self only)
  DELETE /api/v1/users/{id}           -- delete account (self only)
  GET    /api/v1/users/{id}/feed      -- users {id} does not follow yet (requires auth)
  POST   /api/v1/users/{id}/follow    -- caller follows {id} (requires auth)
  DELETE /api/v1/users/{id}/follow    -- caller unfollows {id} (requires auth)

Every /users/{id} route resolves the path user through resolve_profile(),
which hands back an explicit ProfileContext. A missing profile is a 404 at
the point the handler reads it; a non-owner on PUT/DELETE is a 403.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.models import ProfileResponse, UserCardResponse, UserResponse, UserSummary, parse_profile_update
from auth.dependencies import ProfileContext, get_user_store, resolve_profile
from auth.store import UserStore
from auth.tokens import clear_session_cookie
from media.avatars import AvatarError, AvatarPipeline
from social.graph import RelationshipManager, SelfFollowError, UnknownUserError

logger = logging.getLogger("mingle.api.users")

router = APIRouter()


def get_relationships(request: Request) -> RelationshipManager:
    return request.app.state.relationships


def get_avatar_pipeline(request: Request) -> AvatarPipeline:
    return request.app.state.avatars


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserSummary])
def list_users(store: UserStore = Depends(get_user_store)) -> list[UserSummary]:
    return [
        UserSummary(id=u.id, name=u.name, email=u.email, created_at=u.created_at, updated_at=u.updated_at)
        for u in store.list_users()
    ]


@router.get("/users/{user_id}", response_model=ProfileResponse)
def get_profile(ctx: ProfileContext = Depends(resolve_profile)) -> ProfileResponse:
    return ProfileResponse.from_profile(ctx.require_profile(), ctx.is_self)


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_profile(
    name: Optional[str] = Form(default=None),
    email: Optional[str] = Form(default=None),
    about: Optional[str] = Form(default=None),
    avatar: Optional[UploadFile] = File(default=None),
    ctx: ProfileContext = Depends(resolve_profile),
    store: UserStore = Depends(get_user_store),
    avatars: AvatarPipeline = Depends(get_avatar_pipeline),
) -> UserResponse:
    """Merge-patch the caller's own profile.

    Text fields are validated before the avatar is touched, and the avatar is
    validated before anything is written, so a rejected request leaves the
    stored profile (including its avatar path) unchanged. The avatar path and
    the text fields land in a single row update.
    """
    profile = ctx.require_self()

    try:
        changes = parse_profile_update(name, email, about).changes()
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "validation_error", "message": str(exc)},
        ) from exc

    avatar_path: str | None = None
    if avatar is not None and avatar.filename:
        data = await avatar.read()
        try:
            avatars.validate(avatar.content_type, data)
        except AvatarError as exc:
            raise HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message}) from exc
        avatar_path = avatars.save(data, avatar.content_type, changes.get("name", profile.name))
        changes["avatar"] = avatar_path

    try:
        updated = store.update_user(profile.id, **changes)
        user = store.get_by_id(profile.id) if updated else None
    except IntegrityError as exc:
        _discard_avatar(avatars, avatar_path)
        raise HTTPException(
            status_code=409,
            detail={"code": "email_taken", "message": "A user with the given email is already registered"},
        ) from exc
    except Exception:
        _discard_avatar(avatars, avatar_path)
        raise

    if user is None:
        # Deleted by a concurrent request after the profile was resolved.
        _discard_avatar(avatars, avatar_path)
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "No user found"})

    logger.info("Updated profile %s (%s)", profile.id, ", ".join(sorted(changes)) or "timestamp only")
    return UserResponse.from_user(user)


def _discard_avatar(avatars: AvatarPipeline, avatar_path: str | None) -> None:
    if avatar_path:
        avatars.discard(avatar_path)


@router.delete("/users/{user_id}", response_model=UserResponse)
def delete_profile(
    ctx: ProfileContext = Depends(resolve_profile),
    store: UserStore = Depends(get_user_store),
) -> JSONResponse:
    """Delete the caller's own account and end the session."""
    profile = ctx.require_self()
    deleted = store.delete_user(profile.id)
    if deleted is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "No user found"})
    resp = JSONResponse(content=UserResponse.from_user(deleted).model_dump())
    clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Feed and relationships
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/feed", response_model=list[UserCardResponse])
def get_feed(
    ctx: ProfileContext = Depends(resolve_profile),
    graph: RelationshipManager = Depends(get_relationships),
) -> list[UserCardResponse]:
    profile = ctx.require_profile()
    return [UserCardResponse.from_card(card) for card in graph.feed(profile.id)]


@router.post("/users/{user_id}/follow", response_model=UserResponse)
def follow(
    ctx: ProfileContext = Depends(resolve_profile),
    graph: RelationshipManager = Depends(get_relationships),
) -> UserResponse:
    """The caller follows {user_id}. Returns the followed user."""
    target = ctx.require_profile()
    return UserResponse.from_user(_change_relationship(graph.follow, ctx.viewer.id, target.id))


@router.delete("/users/{user_id}/follow", response_model=UserResponse)
def unfollow(
    ctx: ProfileContext = Depends(resolve_profile),
    graph: RelationshipManager = Depends(get_relationships),
) -> UserResponse:
    """The caller stops following {user_id}. Returns the unfollowed user."""
    target = ctx.require_profile()
    return UserResponse.from_user(_change_relationship(graph.unfollow, ctx.viewer.id, target.id))


def _change_relationship(operation, actor_id: str, target_id: str):
    try:
        return operation(actor_id, target_id)
    except SelfFollowError as exc:
        raise HTTPException(status_code=400, detail={"code": "self_follow", "message": str(exc)}) from exc
    except UnknownUserError as exc:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)}) from exc
