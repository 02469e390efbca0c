"""
api/routes/v1/users.py -- User, invite and profile management REST endpoints.

Mounted inside the protected app, so AuthMiddleware has already identified
the caller before any handler here runs.

Routes:
  GET    /api/v1/me                                -- current user (any authenticated user)
  GET    /api/v1/invites                           -- pending invites (admin)
  POST   /api/v1/invites                           -- mint an invite (admin)
  GET    /api/v1/users/{user_id}                   -- one user (admin)
  PATCH  /api/v1/users/{user_id}                   -- rename / set email (admin)
  GET    /api/v1/users/{user_id}/profiles          -- profiles of a user (admin)
  POST   /api/v1/users/{user_id}/profiles          -- grant a profile (admin)
  DELETE /api/v1/users/{user_id}/profiles/{name}   -- revoke a profile (admin)
  DELETE /api/v1/users/{user_id}/links/{provider}  -- drop an OAuth link (admin)

Handlers are plain `def`: the stores are synchronous and FastAPI runs sync
handlers in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import InviteCreate, InviteResponse, ProfileAssign, ProfilesResponse, UserPatch, UserResponse
from auth.dependencies import get_current_user, require_profile
from auth.errors import UnknownUserError
from auth.models import User

ADMIN_PROFILE = "admin"

_LINK_PROVIDERS = ("github", "discord")

# Auth policy:
# - GET /api/v1/me: any user the middleware let through (get_current_user)
# - everything else: requires the admin profile (require_profile)
router = APIRouter()
require_admin = require_profile(ADMIN_PROFILE)


def _load(request: Request, user_id: str) -> User:
    try:
        return request.app.state.store.get(user_id)
    except UnknownUserError:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        ) from None


@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


@router.get("/invites", response_model=list[InviteResponse])
def list_invites(request: Request, _: User = Depends(require_admin)) -> list[InviteResponse]:
    prefix = request.app.state.register_prefix
    return [InviteResponse.from_invite(invite, prefix) for invite in request.app.state.store.list_invites()]


@router.post("/invites", response_model=InviteResponse, status_code=201)
def create_invite(request: Request, body: InviteCreate, _: User = Depends(require_admin)) -> InviteResponse:
    """Mint a placeholder user and its single-use registration token.

    The token is returned once here and in GET /invites until consumed by the
    first OAuth callback that carries it.
    """
    _, invite = request.app.state.store.create_invite(body.description)
    return InviteResponse.from_invite(invite, request.app.state.register_prefix)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: str, _: User = Depends(require_admin)) -> UserResponse:
    return UserResponse.from_user(_load(request, user_id))


@router.patch("/users/{user_id}", response_model=UserResponse)
def patch_user(request: Request, user_id: str, body: UserPatch, _: User = Depends(require_admin)) -> UserResponse:
    user = _load(request, user_id)
    if body.name is not None:
        user.name = body.name
    if body.email is not None:
        user.email = body.email
    request.app.state.store.update(user)
    return UserResponse.from_user(user)


@router.get("/users/{user_id}/profiles", response_model=ProfilesResponse)
def list_profiles(request: Request, user_id: str, _: User = Depends(require_admin)) -> ProfilesResponse:
    user = _load(request, user_id)
    return ProfilesResponse(user_id=user.id, profiles=request.app.state.store.get_profiles(user))


@router.post("/users/{user_id}/profiles", response_model=ProfilesResponse)
def add_profile(
    request: Request, user_id: str, body: ProfileAssign, _: User = Depends(require_admin)
) -> ProfilesResponse:
    store = request.app.state.store
    user = _load(request, user_id)
    store.add_profile(user, body.profile)
    return ProfilesResponse(user_id=user.id, profiles=store.get_profiles(user))


@router.delete("/users/{user_id}/profiles/{profile}", status_code=204)
def remove_profile(request: Request, user_id: str, profile: str, admin: User = Depends(require_admin)) -> Response:
    user = _load(request, user_id)
    # Revoking your own admin profile would lock the last admin out.
    if user.id == admin.id and profile.lower() == ADMIN_PROFILE:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_demotion", "message": "You cannot remove your own admin profile."},
        )
    request.app.state.store.remove_profile(user, profile)
    return Response(status_code=204)


@router.delete("/users/{user_id}/links/{provider}", status_code=204)
def unlink(request: Request, user_id: str, provider: str, _: User = Depends(require_admin)) -> Response:
    if provider not in _LINK_PROVIDERS:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Unknown provider."},
        )
    request.app.state.store.unlink(provider, _load(request, user_id))
    return Response(status_code=204)
