"""
auth/basic.py -- HTTP Basic authentication provider.

Flow for every protected request:
  1. A valid session cookie short-circuits to its user (no KDF run).
  2. Otherwise the Authorization: Basic header is decoded, the login is
     lowercased and the password stripped of one trailing newline (a common
     artifact of `echo secret | base64`).
  3. The store verifies the credentials, upgrading legacy bcrypt hashes to
     argon2id on success.
  4. The user is written to the session cookie when the envelope is enabled,
     so the next requests skip step 3.

Password verification is a deliberately slow blocking computation; it runs
in the threadpool so the event loop keeps serving other requests.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import base64
import binascii
import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from auth.cookie import COOKIE_NAME, CookieService
from auth.errors import AuthError, MalformedContentError
from auth.models import SessionClaim, User
from auth.storage import BasicStorage

logger = logging.getLogger("authmw.basic")

_PREFIX = "Basic "


def parse_authorization(header: str) -> tuple[str, str]:
    """Return (login, password) from an Authorization header value.

    Raises MalformedContentError for a wrong scheme, undecodable payload or
    missing colon.
    """
    if not header.startswith(_PREFIX):
        raise MalformedContentError("authorization header is not basic")
    try:
        content = base64.b64decode(header[len(_PREFIX) :], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MalformedContentError(f"decode basic authentication: {exc}") from exc

    login, sep, password = content.partition(":")
    if not sep:
        raise MalformedContentError("invalid format for basic authentication")
    return login.lower(), password.removesuffix("\n")


def www_authenticate(realm: str) -> str:
    """Build the WWW-Authenticate challenge, e.g. 'Basic realm="app" charset="UTF-8"'."""
    realm_part = f'realm="{realm}" ' if realm else ""
    return f'Basic {realm_part}charset="UTF-8"'


class BasicService:
    """Authentication provider for HTTP Basic credentials.

    Usage:
        basic = BasicService(store, cookie, realm="admin")
        user = await basic.get_user(request, response)
    """

    def __init__(self, store: BasicStorage, cookie: CookieService | None = None, realm: str = "") -> None:
        self._store = store
        self._cookie = cookie
        self._realm = realm

    def _cookie_enabled(self) -> bool:
        return self._cookie is not None and self._cookie.is_enabled()

    async def get_user(self, request: Request, response: Response) -> User:
        if self._cookie_enabled():
            try:
                return self._cookie.get(request, COOKIE_NAME).user
            except AuthError:
                # Absent or stale cookie: fall back to the header.
                pass

        login, password = parse_authorization(request.headers.get("Authorization", ""))
        user = await run_in_threadpool(self._store.get_basic_user, login, password)

        if self._cookie_enabled():
            self._cookie.set(request, response, COOKIE_NAME, SessionClaim(user=user))
        return user

    async def on_unauthorized(self, request: Request, error: Exception) -> Response:
        """401 with the Basic challenge. The body never says why authentication failed."""
        if not isinstance(error, MalformedContentError):
            logger.error("basic authentication on %s %s: %s", request.method, request.url.path, error)
        return JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Authentication required."}},
            headers={"WWW-Authenticate": www_authenticate(self._realm)},
        )

    def logout(self, request: Request, response: Response) -> None:
        """Clear the session cookie. Idempotent."""
        if self._cookie is not None:
            self._cookie.clear(request, response, COOKIE_NAME)
