"""
API request and response models for the protected REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Invite, User

# Profile names are matched case-insensitively; keep them to a safe charset.
PROFILE_PATTERN = r"^[A-Za-z0-9_.-]{1,64}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class InviteCreate(BaseModel):
    """Request body for POST /api/v1/invites."""

    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(min_length=1, max_length=255)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{user_id}. Omitted fields are kept."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)


class ProfileAssign(BaseModel):
    """Request body for POST /api/v1/users/{user_id}/profiles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    profile: str = Field(pattern=PROFILE_PATTERN)

    @field_validator("profile")
    @classmethod
    def lowercase(cls, value: str) -> str:
        return value.lower()


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """A user as seen by API clients."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str = ""
    image: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, name=user.name, email=user.email, image=user.image)


class InviteResponse(BaseModel):
    """A pending invite. register_path is what the invitee opens to sign up."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    token: str
    description: str
    register_path: str = ""

    @classmethod
    def from_invite(cls, invite: Invite, register_prefix: str = "") -> "InviteResponse":
        path = f"{register_prefix}/register?registration={invite.token}" if register_prefix else ""
        return cls(
            user_id=invite.user_id,
            token=invite.token,
            description=invite.description,
            register_path=path,
        )


class ProfilesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    profiles: list[str]


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
