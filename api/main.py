"""
api/main.py -- FastAPI application assembly.

create_app() wires the pieces chosen by Settings:

  store    -- UserStore (DATABASE_URL) or MemoryStore (MEMORY_USERS/MEMORY_PROFILES)
  cache    -- RedisCache, SQLiteCache or MemoryCache (STATE_CACHE_URL)
  authn    -- GitHub or Discord OAuth, Basic, or the nominal no-op (AUTH_PROVIDER)
  authz    -- ProfileAuthorization when REQUIRED_PROFILE is set

Route layout:
  /oauth/<provider>/{register,callback,logout}  -- public, drive the OAuth dance
  /basic/logout                                  -- public, Basic provider only
  /*                                             -- protected app behind AuthMiddleware

The protected app is a FastAPI sub-application mounted at "/" after the
public routes, so the login routes are matched first and never gated.

Run with:  uvicorn asgi:app --reload

Lifespan starts the state cache purge task and closes the store and the cache
on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from api.routes.v1.users import router as users_router
from auth import discord, github
from auth.basic import BasicService
from auth.cookie import CookieService
from auth.errors import ForbiddenError
from auth.memory import MemoryStore
from auth.middleware import AuthMiddleware, NoopAuthentication, ProfileAuthorization
from auth.store import UserStore
from cache.redis import RedisCache
from cache.store import MemoryCache, SQLiteCache
from core.config import Settings, get_settings
from web.pages import PageRenderer

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authmw.api")

_OAUTH_PROVIDERS = {"github": github, "discord": discord}

_PURGE_INTERVAL = 10 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Reap expired state cache entries every 10 minutes.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL)
        removed = app.state.cache.purge_expired()
        if removed:
            logger.info("Purged %d expired state entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the purge task; close cache and store on shutdown.

    Store and cache are built by create_app() because the provider routers
    need them at construction time; only their background work and teardown
    live here.
    """
    logger.info("Auth service starting up (provider=%s)", app.state.provider or "none")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    await app.state.cache.close()
    app.state.store.close()
    logger.info("Auth service shutdown complete")


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def build_store(settings: Settings):
    """UserStore when a database URL is configured, MemoryStore otherwise."""
    if settings.database_url:
        return UserStore(settings.database_url)
    return MemoryStore.from_config(settings.memory_users, settings.memory_profiles)


def build_cache(url: str):
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisCache.from_url(url)
    if url.startswith("sqlite:///"):
        return SQLiteCache(url[len("sqlite:///") :])
    if url:
        raise ValueError(f"Unsupported STATE_CACHE_URL scheme: {url.split(':', 1)[0]!r}")
    return MemoryCache()


def select_provider(settings: Settings) -> str:
    """Return "github", "discord", "basic" or "" (nominal, no authentication).

    An explicit AUTH_PROVIDER wins. Otherwise the first OAuth provider with
    both client ID and secret is used, then Basic when credentials can be
    stored.
    """
    if settings.auth_provider:
        name = settings.auth_provider.lower()
        if name not in ("basic", *_OAUTH_PROVIDERS):
            raise ValueError(f"Unknown AUTH_PROVIDER: {settings.auth_provider!r}")
        return name
    for name in _OAUTH_PROVIDERS:
        if getattr(settings, f"{name}_client_id") and getattr(settings, f"{name}_client_secret"):
            return name
    if settings.database_url or settings.memory_users:
        return "basic"
    return ""


def _default_protected() -> FastAPI:
    protected = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    protected.include_router(users_router, prefix="/api/v1", tags=["Users"])
    return protected


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; it becomes the error field as is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


async def forbidden_handler(request: Request, exc: ForbiddenError) -> JSONResponse:
    """Return 403 when a route dependency refuses the caller. The reason is logged only."""
    logger.info("Forbidden on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=403,
        content=ErrorResponse(error=ErrorDetail(code="forbidden", message="Access denied.")).model_dump(exclude_none=True),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


def _install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(ForbiddenError, forbidden_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    *,
    store=None,
    cache=None,
    protected: FastAPI | None = None,
    client_kwargs: dict | None = None,
) -> FastAPI:
    """Build the ASGI app.

    store, cache and client_kwargs (extra httpx.AsyncClient arguments for the
    OAuth upstream, e.g. a transport) override what Settings would build.
    protected is the application to gate; it defaults to the user/invite
    management API under /api/v1.
    """
    settings = settings or get_settings()
    store = store if store is not None else build_store(settings)
    cache = cache if cache is not None else build_cache(settings.state_cache_url)
    cookie = CookieService(settings.cookie_hmac_secret, settings.cookie_jwt_expiration)
    pages = PageRenderer()
    provider = select_provider(settings)

    app = FastAPI(
        title="authmw",
        description="Authentication and authorization gateway: Basic, GitHub and Discord OAuth.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.store = store
    app.state.cache = cache
    app.state.provider = provider
    _install_error_handlers(app)

    register_prefix = ""
    if provider in _OAUTH_PROVIDERS:
        register_prefix = f"/oauth/{provider}"
        service = _OAUTH_PROVIDERS[provider].new_service(
            store,
            cache,
            cookie,
            pages,
            client_id=getattr(settings, f"{provider}_client_id"),
            client_secret=getattr(settings, f"{provider}_client_secret"),
            redirect_url=getattr(settings, f"{provider}_redirect_url"),
            on_success_path=getattr(settings, f"{provider}_on_success_path"),
            state_ttl=settings.state_ttl_seconds,
            update_ttl=settings.update_check_ttl_seconds,
            client_kwargs=client_kwargs,
        )
        app.include_router(service.router(), prefix=register_prefix, tags=["OAuth"])
        authn = service
    elif provider == "basic":
        basic = BasicService(store, cookie, realm=settings.basic_realm)

        @app.get("/basic/logout", include_in_schema=False)
        async def basic_logout(request: Request):
            response = pages.success(request, "Logout success!", redirect="/")
            basic.logout(request, response)
            return response

        authn = basic
    else:
        logger.warning("No authentication provider configured: every request is let through as the nominal user")
        authn = NoopAuthentication()

    authz = ProfileAuthorization(store, settings.required_profile) if settings.required_profile else None

    protected = protected if protected is not None else _default_protected()
    protected.state.store = store
    protected.state.register_prefix = register_prefix
    protected.middleware("http")(AuthMiddleware(authn, authz))
    _install_error_handlers(protected)
    app.mount("/", protected)

    return app
