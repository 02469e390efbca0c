"""
auth/oauth.py -- Generic OAuth2 authorization-code provider with PKCE.

One OAuthService instance per upstream provider (GitHub, Discord...). The
provider-specific parts are injected:
  user_factory    -- builds the concrete external user from the user-info JSON
  get_handler     -- external ID -> linked User, or UnknownUserError
  create_handler  -- (invite user, external user) -> freshly created User
  update_handler  -- refreshes a linked User from the external user (optional)
  link_handler    -- moves application data from the invite placeholder to the
                     real user (optional)

HTTP surface, mounted under a prefix such as /oauth/github:
  GET /register?registration=<token>&redirect=<path>
      Starts a login, optionally consuming an invite. Stores
      {verifier, registration, redirect} under "auth:<name>:verifier:<state>"
      for 5 minutes and redirects to the provider with an S256 challenge.
  GET /callback?state=<state>&code=<code>
      Exchanges the code with the stored verifier, fetches the upstream user,
      binds it to a local user (consuming the invite when needed), sets the
      session cookie and renders the success page.
  GET /logout
      Clears the session cookie.

Security notes:
  The state is single use: a callback only succeeds for a state that exists in
  the cache, and a successful callback deletes it.

  The redirect target from /register is only accepted as a local path;
  anything else falls back to on_success_path (open-redirect prevention).

  Mutating requests (POST/PUT/PATCH/DELETE) re-check the upstream account at
  most once per update_ttl per user, so a revoked upstream token stops
  working without adding a network round trip to every request.

Layer rule: no imports from api/ or web/. Collaborators (state cache, page
renderer) are injected.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

import httpx
from authlib.common.security import generate_token
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError
from fastapi import APIRouter, Request, Response
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from auth.cookie import COOKIE_NAME, CookieService
from auth.errors import InvalidCredentialsError, UnavailableServiceError, UnknownUserError
from auth.models import OAuthState, SessionClaim, User
from auth.storage import Storage

logger = logging.getLogger("authmw.oauth")

UPDATE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

DEFAULT_STATE_TTL = 5 * 60
DEFAULT_UPDATE_TTL = 2 * 60 * 60

_INVITE_ERROR = "Unknown registration code or already used"


class ExternalUser(Protocol):
    def get_id(self) -> Any: ...


T = TypeVar("T", bound=ExternalUser)


class PageRenderer(Protocol):
    def success(self, request: Request, message: str, redirect: str = "", image: str = "") -> Response: ...

    def error(self, request: Request, status_code: int, message: str, redirect: str = "") -> Response: ...


@dataclass
class OAuthConfig:
    """Static description of an upstream provider."""

    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    user_info_url: str
    redirect_url: str = ""
    scopes: list[str] = field(default_factory=list)
    on_success_path: str = "/"
    # "client_secret_basic" or "client_secret_post", per provider.
    token_auth_method: str = "client_secret_basic"


def safe_redirect(target: str) -> str:
    """Return target when it is a local path, "" otherwise."""
    if target and target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return ""


def no_link(invite: User, user: User) -> None:
    return None


class OAuthService(Generic[T]):
    """Authentication provider driving an OAuth2 authorization-code flow.

    Usage:
        service = OAuthService("github", config, cache, store, cookie, pages,
                               user_factory=GitHubUser.from_dict,
                               get_handler=..., create_handler=...)
        app.include_router(service.router(), prefix="/oauth/github")
    """

    def __init__(
        self,
        name: str,
        config: OAuthConfig,
        cache,
        storage: Storage,
        cookie: CookieService,
        pages: PageRenderer,
        user_factory: Callable[[dict], T],
        get_handler: Callable[[Any], User],
        create_handler: Callable[[User, T], User],
        update_handler: Callable[[User, T], User] | None = None,
        link_handler: Callable[[User, User], None] = no_link,
        state_ttl: float = DEFAULT_STATE_TTL,
        update_ttl: float = DEFAULT_UPDATE_TTL,
        client_kwargs: dict | None = None,
    ) -> None:
        self.name = name
        self._config = config
        self._cache = cache
        self._storage = storage
        self._cookie = cookie
        self._pages = pages
        self._user_factory = user_factory
        self._get_handler = get_handler
        self._create_handler = create_handler
        self._update_handler = update_handler
        self._link_handler = link_handler
        self._state_ttl = state_ttl
        self._update_ttl = update_ttl
        # Extra httpx.AsyncClient arguments (timeout, transport...).
        self._client_kwargs = client_kwargs or {}

        self._verifier_prefix = f"auth:{name}:verifier:"
        self._update_prefix = f"auth:{name}:update:"

        if not cookie.is_enabled():
            logger.warning("%s OAuth provider configured without a cookie secret: logins will not persist", name)

    # ------------------------------------------------------------------
    # Upstream client
    # ------------------------------------------------------------------

    def _client(self, token: dict | None = None) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self._config.client_id,
            client_secret=self._config.client_secret,
            scope=" ".join(self._config.scopes) or None,
            redirect_uri=self._config.redirect_url or None,
            token_endpoint_auth_method=self._config.token_auth_method,
            code_challenge_method="S256",
            token_endpoint=self._config.token_url,
            token=token,
            **self._client_kwargs,
        )

    async def _fetch_user(self, client: AsyncOAuth2Client) -> T:
        resp = await client.get(self._config.user_info_url)
        resp.raise_for_status()
        return self._user_factory(resp.json())

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def router(self) -> APIRouter:
        """Return the /logout, /register and /callback routes of this provider."""
        router = APIRouter()
        router.add_api_route("/logout", self.logout, methods=["GET"], include_in_schema=False)
        router.add_api_route("/register", self.register, methods=["GET"], include_in_schema=False)
        router.add_api_route("/callback", self.callback, methods=["GET"], include_in_schema=False)
        return router

    async def logout(self, request: Request) -> Response:
        response = self._pages.success(request, "Logout success!", redirect="/")
        self._cookie.clear(request, response, COOKIE_NAME)
        return response

    async def register(self, request: Request) -> Response:
        registration = request.query_params.get("registration", "")
        redirect = safe_redirect(request.query_params.get("redirect", ""))
        return await self._redirect(request, registration, redirect)

    async def _redirect(self, request: Request, registration: str, redirect: str) -> Response:
        if registration:
            try:
                await run_in_threadpool(self._storage.get_invite_by_token, registration)
            except UnknownUserError:
                return self._pages.error(request, 200, _INVITE_ERROR)
            except Exception:
                # The callback checks the invite again inside its transaction.
                logger.exception("%s: probe registration code", self.name)

        state = generate_token(32)
        verifier = generate_token(48)
        payload = OAuthState(verifier=verifier, registration=registration, redirect=redirect)
        try:
            await self._cache.store(self._verifier_prefix + state, payload.to_json(), self._state_ttl)
        except Exception:
            logger.exception("%s: save state", self.name)
            return self._pages.error(request, 500, "Unable to start login, please retry later.")

        client = self._client()
        try:
            url, _ = client.create_authorization_url(
                self._config.authorize_url,
                state=state,
                code_verifier=verifier,
                access_type="offline",
            )
        finally:
            await client.aclose()
        return RedirectResponse(url, status_code=302)

    async def callback(self, request: Request) -> Response:
        state_key = self._verifier_prefix + request.query_params.get("state", "")
        try:
            raw = await self._cache.load(state_key)
        except Exception:
            logger.exception("%s: load state", self.name)
            return self._pages.error(request, 500, "Unable to complete login, please retry later.")
        if raw is None:
            return self._pages.error(request, 404, "State not found, please retry login.")

        try:
            payload = OAuthState.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.exception("%s: decode state", self.name)
            return self._pages.error(request, 500, "Unable to complete login, please retry later.")

        async with self._client() as client:
            try:
                await client.fetch_token(
                    self._config.token_url,
                    code=request.query_params.get("code", ""),
                    code_verifier=payload.verifier,
                )
                external = await self._fetch_user(client)
            except (OAuthError, httpx.HTTPError, ValueError, KeyError, TypeError):
                logger.exception("%s: exchange code and fetch user", self.name)
                return self._pages.error(request, 500, "Unable to reach the provider, please retry later.")
            token = dict(client.token)

        redirect = payload.redirect or self._config.on_success_path
        is_registration = bool(payload.registration)

        user: User | None = None
        try:
            user = await run_in_threadpool(self._get_handler, external.get_id())
        except UnknownUserError:
            pass
        except Exception:
            logger.exception("%s: get user %s", self.name, external.get_id())
            return self._pages.error(request, 500, "Unable to complete login, please retry later.")

        if user is not None and not is_registration:
            if self._update_handler is not None:
                try:
                    user = await run_in_threadpool(self._update_handler, user, external)
                except Exception:
                    logger.exception("%s: refresh user %s", self.name, user.id)
            return await self._callback_success(request, state_key, user, token, redirect)

        try:
            invite = await run_in_threadpool(self._storage.get_invite_by_token, payload.registration)
        except UnknownUserError:
            return self._pages.error(request, 200, _INVITE_ERROR)
        except Exception:
            logger.exception("%s: get invite", self.name)
            return self._pages.error(request, 500, "Unable to complete login, please retry later.")

        def bind() -> User:
            target = user if user is not None else self._create_handler(invite, external)
            self._link_handler(invite, target)
            if target.id != invite.id:
                self._storage.delete(invite)
            else:
                self._storage.delete_invite(invite)
            return target

        try:
            user = await run_in_threadpool(self._storage.do_atomic, bind)
        except Exception:
            logger.exception("%s: register user", self.name)
            return self._pages.error(request, 500, "Unable to complete registration, please retry later.")

        return await self._callback_success(request, state_key, user, token, redirect)

    async def _callback_success(
        self, request: Request, state_key: str, user: User, token: dict, redirect: str
    ) -> Response:
        try:
            await self._cache.delete(state_key)
        except Exception:
            logger.exception("%s: delete state", self.name)

        response = self._pages.success(request, "Login success!", redirect=redirect, image=user.image)
        self._cookie.set(request, response, COOKIE_NAME, SessionClaim(user=user, token=token))
        return response

    # ------------------------------------------------------------------
    # Authentication contract
    # ------------------------------------------------------------------

    async def get_user(self, request: Request, response: Response) -> User:
        claim = self._cookie.get(request, COOKIE_NAME)
        if not claim.user.id:
            raise InvalidCredentialsError("no user in session")

        if request.method in UPDATE_METHODS:
            await self._check_upstream(request, response, claim)
        return claim.user

    async def _check_upstream(self, request: Request, response: Response, claim: SessionClaim) -> None:
        """Re-validate the upstream account, at most once per update_ttl."""
        update_key = self._update_prefix + claim.user.id
        try:
            if await self._cache.load(update_key) is not None:
                return
        except Exception as exc:
            raise UnavailableServiceError(f"load update check: {exc}") from exc

        previous = (claim.token or {}).get("access_token")
        async with self._client(token=claim.token) as client:
            try:
                await self._fetch_user(client)
            except (OAuthError, httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                raise UnavailableServiceError(f"refresh {self.name} user: {exc}") from exc
            token = dict(client.token) if client.token else None

        if token is not None and token.get("access_token") != previous:
            self._cookie.set(request, response, COOKIE_NAME, SessionClaim(user=claim.user, token=token))

        try:
            await self._cache.store(update_key, "1", self._update_ttl)
        except Exception:
            logger.exception("%s: save update check of user %s", self.name, claim.user.id)

    async def on_unauthorized(self, request: Request, error: Exception) -> Response:
        """Send the browser through the login flow, back to the page it asked for."""
        if isinstance(error, UnavailableServiceError):
            logger.error("%s: unauthorized on %s: %s", self.name, request.url.path, error)
        target = request.url.path
        if request.url.query:
            target += "?" + request.url.query
        return await self._redirect(request, "", safe_redirect(target))
