"""
API request and response models for Mingle REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Signup and profile validation raise PydanticCustomError with the exact
human-readable message, so the validation handler in api/main.py can return
the first failing message verbatim (e.g. "Enter a name").
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from auth.models import User, UserCard

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
NAME_MIN, NAME_MAX = 4, 10
PASSWORD_MIN, PASSWORD_MAX = 4, 10
ABOUT_MAX = 500


def _check_name(value: Optional[str]) -> str:
    value = "" if value is None else str(value).strip()
    if not value:
        raise PydanticCustomError("name_missing", "Enter a name")
    if not NAME_MIN <= len(value) <= NAME_MAX:
        raise PydanticCustomError("name_length", "Name must be between 4 and 10 characters")
    return value


def _check_email(value: Optional[str]) -> str:
    value = "" if value is None else str(value).strip().lower()
    if not EMAIL_PATTERN.match(value):
        raise PydanticCustomError("email_invalid", "Enter a valid email")
    return value


def _check_password(value: Optional[str]) -> str:
    value = "" if value is None else str(value)
    if not value:
        raise PydanticCustomError("password_missing", "Enter a password")
    if not PASSWORD_MIN <= len(value) <= PASSWORD_MAX:
        raise PydanticCustomError("password_length", "Password must be between 4 and 10 characters")
    return value


def first_error_message(exc_errors: list[dict]) -> str:
    """Return the message of the first failing field, or a generic fallback."""
    if not exc_errors:
        return "Invalid request."
    return str(exc_errors[0].get("msg", "Invalid request."))


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/signup.

    Fields default to None so a missing field reports its own message
    ("Enter a name") instead of pydantic's generic "Field required".
    Field order is the order errors are reported in.
    """

    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

    model_config = ConfigDict(validate_default=True)

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, value):
        return _check_name(value)

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value):
        return _check_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def validate_password(cls, value):
        return _check_password(value)


class SigninRequest(BaseModel):
    """Request body for POST /api/v1/signin."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str
    password: str


class ProfileUpdate(BaseModel):
    """Text fields of PUT /api/v1/users/{id}; all optional (merge-patch).

    Built by the route from multipart form fields, so validation errors are
    caught there with ValidationError rather than by FastAPI.
    """

    name: Optional[str] = None
    email: Optional[str] = None
    about: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, value):
        return None if value is None else _check_name(value)

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value):
        return None if value is None else _check_email(value)

    @field_validator("about", mode="before")
    @classmethod
    def validate_about(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        if len(value) > ABOUT_MAX:
            raise PydanticCustomError("about_length", "About must be at most 500 characters")
        return value

    def changes(self) -> dict:
        return self.model_dump(exclude_none=True)


def parse_profile_update(name, email, about) -> ProfileUpdate:
    """Validate form fields; raises ValueError carrying the first failing message."""
    try:
        return ProfileUpdate(name=name, email=email, about=about)
    except ValidationError as exc:
        raise ValueError(first_error_message(exc.errors())) from exc


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes credential fields."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    about: Optional[str] = None
    avatar: Optional[str] = None
    following: list[str]
    followers: list[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            about=user.about,
            avatar=user.avatar,
            following=list(user.following),
            followers=list(user.followers),
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class ProfileResponse(UserResponse):
    """Response for GET /api/v1/users/{id}: the profile plus the self-access flag."""

    is_self: bool

    @classmethod
    def from_profile(cls, user: User, is_self: bool) -> "ProfileResponse":
        return cls(**UserResponse.from_user(user).model_dump(), is_self=is_self)


class UserSummary(BaseModel):
    """One row of GET /api/v1/users."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    created_at: str
    updated_at: str


class UserCardResponse(BaseModel):
    """One suggestion in GET /api/v1/users/{id}/feed."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    avatar: Optional[str] = None

    @classmethod
    def from_card(cls, card: UserCard) -> "UserCardResponse":
        return cls(id=card.id, name=card.name, avatar=card.avatar)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
