"""
auth/dependencies.py -- FastAPI Depends() helpers for routes behind AuthMiddleware.

The middleware has already identified the caller and stored it on
request.state; these helpers only read it back.

get_current_user() raises HTTP 401 when no user is attached (the route was
mounted outside the middleware, or the request bypassed it).
require_profile() builds a per-route guard on top of it, for apps that gate
most routes on one profile and a few on a stronger one.

Layer rule: no imports from web/, core/, or cache/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request
from starlette.concurrency import run_in_threadpool

from auth.errors import ForbiddenError
from auth.models import NONE_USER, User, load_user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request carries no user.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = load_user(request)
    if user == NONE_USER:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_profile(profile: str) -> Callable:
    """Build a dependency that demands profile.

    Raises HTTP 401 without a user, then ForbiddenError, which the app turns
    into a 403 (see api.main.forbidden_handler). The store is read from
    request.app.state.store.

        @router.delete("/users/{id}")
        async def route(user: User = Depends(require_profile("admin"))): ...
    """

    async def dependency(request: Request) -> User:
        user = get_current_user(request)
        store = request.app.state.store
        if not await run_in_threadpool(store.is_authorized, user, profile):
            raise ForbiddenError(f"user {user.id} lacks profile {profile}")
        return user

    return dependency
