"""
auth/middleware.py -- HTTP filter gating protected routes.

Pattern: Interceptor / Chain of Responsibility. AuthMiddleware is a plain
async callable with the (request, call_next) signature of Starlette's
@app.middleware("http"), so it plugs in with:

    protected.middleware("http")(AuthMiddleware(basic, ProfileAuthorization(store, "admin")))

For every request:
  1. OPTIONS short-circuits with 204 (CORS preflights carry no credentials).
  2. authn.get_user() identifies the caller; any AuthError is handed to
     authn.on_unauthorized() and the downstream handler never runs.
  3. When an Authorization is set and refuses the user, authz.on_forbidden()
     answers instead.
  4. The user is stored on request.state before call_next runs.

Cookies written by the provider while identifying the caller (first Basic
login, refreshed OAuth token) are collected on a scratch Response and copied
onto whatever response leaves the filter, the same way FastAPI merges a
Response parameter into the route's return value.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from auth.errors import AuthError
from auth.models import NOMINAL_USER, User, store_user
from auth.storage import ProfileStorage

logger = logging.getLogger("authmw.middleware")

CallNext = Callable[[Request], Awaitable[Response]]


class Authentication(Protocol):
    async def get_user(self, request: Request, response: Response) -> User:
        """Identify the caller. Raise AuthError when it cannot be done."""
        ...

    async def on_unauthorized(self, request: Request, error: Exception) -> Response: ...


class Authorization(Protocol):
    async def is_authorized(self, request: Request, user: User) -> bool: ...

    async def on_forbidden(self, request: Request, user: User) -> Response: ...


# ---------------------------------------------------------------------------
# Built-in providers
# ---------------------------------------------------------------------------


class NoopAuthentication:
    """Lets every request through as NOMINAL_USER. Used when no provider is configured."""

    async def get_user(self, request: Request, response: Response) -> User:
        return NOMINAL_USER

    async def on_unauthorized(self, request: Request, error: Exception) -> Response:
        return JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Authentication required."}},
        )


ForbiddenHandler = Callable[[Request, User, str], Response]


def _default_forbidden(request: Request, user: User, profile: str) -> Response:
    return JSONResponse(
        status_code=403,
        content={"error": {"code": "forbidden", "message": "Access denied."}},
    )


class ProfileAuthorization:
    """Authorize users holding one profile (case-insensitive).

    An empty profile authorizes everybody. The store answers False on its own
    failures, so a broken database denies rather than allows.
    """

    def __init__(self, store: ProfileStorage, profile: str, on_forbidden: ForbiddenHandler | None = None) -> None:
        self._store = store
        self._profile = profile
        self._on_forbidden = on_forbidden or _default_forbidden

    async def is_authorized(self, request: Request, user: User) -> bool:
        if not self._profile:
            return True
        return await run_in_threadpool(self._store.is_authorized, user, self._profile)

    async def on_forbidden(self, request: Request, user: User) -> Response:
        logger.info("user %s lacks profile %s for %s", user.id, self._profile, request.url.path)
        return self._on_forbidden(request, user, self._profile)


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


def _merge_cookies(source: Response, target: Response) -> Response:
    for key, value in source.raw_headers:
        if key == b"set-cookie":
            target.headers.append("set-cookie", value.decode("latin-1"))
    return target


class AuthMiddleware:
    """Authenticate, optionally authorize, then forward.

    call_next may be None: the filter then only answers 200 to authenticated
    and authorized requests, which is enough for an auth_request style probe.
    """

    def __init__(self, authn: Authentication, authz: Authorization | None = None) -> None:
        self._authn = authn
        self._authz = authz

    async def __call__(self, request: Request, call_next: CallNext | None = None) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=204)

        pending = Response()
        try:
            user = await self._authn.get_user(request, pending)
        except AuthError as exc:
            return _merge_cookies(pending, await self._authn.on_unauthorized(request, exc))

        if self._authz is not None and not await self._authz.is_authorized(request, user):
            return _merge_cookies(pending, await self._authz.on_forbidden(request, user))

        store_user(request, user)
        if call_next is None:
            return _merge_cookies(pending, Response(status_code=200))
        return _merge_cookies(pending, await call_next(request))
