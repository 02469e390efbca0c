"""
tests/test_app_oauth.py -- End-to-end OAuth flows against a fake upstream.

The upstream (token endpoint + user-info endpoint) is an httpx.MockTransport
handed to the OAuth client through create_app(client_kwargs=...), so the real
authlib client code runs without network access. The state cache uses a
FakeClock so the 2 hour refresh debounce can be crossed instantly.

Coverage:
  - register + callback binding an invite (MemoryStore and UserStore)
  - state single use, unknown invites, local-only redirects
  - returning users refreshed from upstream, linked users consuming an invite
  - debounced upstream re-validation on mutating requests, expired tokens
  - unauthenticated requests sent through the login flow
  - Discord user parsing and flow
"""

from __future__ import annotations

import asyncio
import time
from http.cookies import SimpleCookie
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi import FastAPI, Request, Response
from fastapi.testclient import TestClient
from jose import jwt

from api.main import _default_protected, create_app
from auth.cookie import COOKIE_NAME, CookieService
from auth.discord import DiscordUser, discord_image_url
from auth.errors import UnknownUserError
from auth.github import GitHubUser, github_image_url
from auth.github import new_service as new_github_service
from auth.memory import MemoryStore
from auth.models import OAuthState, SessionClaim, User, load_user
from cache.store import MemoryCache
from tests.conftest import SECRET, FakeClock, make_settings
from web.pages import PageRenderer

UPDATE_TTL = 2 * 60 * 60


class FakeUpstream:
    """Answers the token and user-info endpoints of one provider, recording every call."""

    def __init__(self, token_path: str, user_path: str, user: dict) -> None:
        self.token_path = token_path
        self.user_path = user_path
        self.user = user
        self.user_status = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == self.token_path:
            return httpx.Response(200, json={"access_token": "ACCESS", "token_type": "bearer", "scope": ""})
        if request.method == "GET" and request.url.path == self.user_path:
            return httpx.Response(self.user_status, json=self.user)
        return httpx.Response(404, json={"message": "Not Found"})

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def _protected():
    protected = _default_protected()

    @protected.api_route("/x", methods=["GET", "POST"])
    async def x(request: Request):
        user = load_user(request)
        return {"id": user.id, "name": user.name}

    return protected


def _state_of(resp: httpx.Response) -> str:
    assert resp.status_code == 302
    return parse_qs(urlsplit(resp.headers["location"]).query)["state"][0]


def _pending_state(cache: MemoryCache, provider: str, state: str) -> OAuthState:
    raw = asyncio.run(cache.load(f"auth:{provider}:verifier:{state}"))
    assert raw is not None
    return OAuthState.from_json(raw)


def _login(client: TestClient, provider: str = "github", **params) -> httpx.Response:
    state = _state_of(client.get(f"/oauth/{provider}/register", params=params))
    return client.get(f"/oauth/{provider}/callback", params={"state": state, "code": "CODE"})


def _session_cookie(user: User, token: dict) -> str:
    """Mint an _auth cookie value the way a past callback would have."""
    request = Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "http",
            "path": "/",
            "query_string": b"",
            "headers": [],
            "server": ("testserver", 80),
        }
    )
    response = Response()
    CookieService(SECRET, 3600).set(request, response, COOKIE_NAME, SessionClaim(user=user, token=token))
    parsed = SimpleCookie()
    parsed.load(response.headers["set-cookie"])
    return parsed[COOKIE_NAME].value


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> MemoryCache:
    return MemoryCache(clock=clock)


@pytest.fixture
def github() -> FakeUpstream:
    return FakeUpstream("/login/oauth/access_token", "/user", {"id": 42, "login": "alice"})


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sql_store")


@pytest.fixture
def client(store, cache: MemoryCache, github: FakeUpstream) -> TestClient:
    settings = make_settings(
        github_client_id="client",
        github_client_secret="shh",
        github_redirect_url="http://testserver/oauth/github/callback",
    )
    app = create_app(
        settings,
        store=store,
        cache=cache,
        protected=_protected(),
        client_kwargs={"transport": httpx.MockTransport(github)},
    )
    return TestClient(app, follow_redirects=False)


class TestRegister:
    def test_redirects_to_github_with_pkce(self, client: TestClient, cache: MemoryCache) -> None:
        resp = client.get("/oauth/github/register", params={"redirect": "/home"})
        location = urlsplit(resp.headers["location"])
        query = parse_qs(location.query)
        assert f"{location.scheme}://{location.netloc}{location.path}" == "https://github.com/login/oauth/authorize"
        assert query["client_id"] == ["client"]
        assert query["response_type"] == ["code"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["code_challenge"][0]
        assert query["redirect_uri"] == ["http://testserver/oauth/github/callback"]

        pending = _pending_state(cache, "github", query["state"][0])
        assert pending.redirect == "/home"
        assert pending.registration == ""
        assert len(pending.verifier) >= 43

    def test_state_expires(self, client: TestClient, cache: MemoryCache, clock: FakeClock) -> None:
        state = _state_of(client.get("/oauth/github/register"))
        clock.advance(300)
        assert asyncio.run(cache.load(f"auth:github:verifier:{state}")) is None

    def test_foreign_redirect_is_dropped(self, client: TestClient, cache: MemoryCache) -> None:
        for target in ("https://evil.example.com/", "//evil.example.com"):
            state = _state_of(client.get("/oauth/github/register", params={"redirect": target}))
            assert _pending_state(cache, "github", state).redirect == ""

    def test_unknown_invite(self, client: TestClient) -> None:
        resp = client.get("/oauth/github/register", params={"registration": "NOPE"})
        assert resp.status_code == 200
        assert "Unknown registration code or already used" in resp.text
        assert 'class="error"' in resp.text


class TestCallback:
    def test_invite_binding(self, client: TestClient, store, github: FakeUpstream) -> None:
        placeholder, invite = store.create_invite("Alice")

        resp = _login(client, registration=invite.token, redirect="/home")

        assert resp.status_code == 200
        assert "Login success!" in resp.text
        assert 'href="/home"' in resp.text
        assert COOKIE_NAME in resp.cookies

        user = store.get_github_user(42)
        assert user.name == "alice"
        assert user.id != placeholder.id
        assert user.image == github_image_url(42)
        assert store.list_invites() == []
        with pytest.raises(UnknownUserError):
            store.get(placeholder.id)

        (token_request,) = github.calls("/login/oauth/access_token")
        form = parse_qs(token_request.content.decode())
        assert form["code"] == ["CODE"]
        assert form["client_secret"] == ["shh"]
        assert form["code_verifier"][0]
        (user_request,) = github.calls("/user")
        assert user_request.headers["authorization"] == "Bearer ACCESS"

    def test_session_reaches_protected_app(self, client: TestClient, store) -> None:
        _, invite = store.create_invite("Alice")
        _login(client, registration=invite.token)
        resp = client.get("/x")
        assert resp.status_code == 200
        assert resp.json()["name"] == "alice"

    def test_state_is_single_use(self, client: TestClient, store) -> None:
        _, invite = store.create_invite("Alice")
        state = _state_of(client.get("/oauth/github/register", params={"registration": invite.token}))
        first = client.get("/oauth/github/callback", params={"state": state, "code": "CODE"})
        second = client.get("/oauth/github/callback", params={"state": state, "code": "CODE"})
        assert first.status_code == 200
        assert second.status_code == 404

    def test_unknown_state(self, client: TestClient, github: FakeUpstream) -> None:
        resp = client.get("/oauth/github/callback", params={"state": "forged", "code": "CODE"})
        assert resp.status_code == 404
        assert github.requests == []

    def test_stranger_without_invite(self, client: TestClient, store) -> None:
        resp = _login(client)
        assert resp.status_code == 200
        assert "Unknown registration code or already used" in resp.text
        assert 'class="error"' in resp.text
        assert COOKIE_NAME not in resp.cookies
        with pytest.raises(UnknownUserError):
            store.get_github_user(42)

    def test_returning_user_is_refreshed(self, client: TestClient, store, github: FakeUpstream) -> None:
        linked = store.create_github(store.create("placeholder"), GitHubUser(id=42, login="old-login"))
        github.user = {"id": 42, "login": "alice"}

        resp = _login(client)

        assert resp.status_code == 200
        assert 'href="/"' in resp.text
        refreshed = store.get_github_user(42)
        assert refreshed.id == linked.id
        assert refreshed.name == "alice"

    def test_upstream_failure(self, client: TestClient, store, github: FakeUpstream) -> None:
        github.user_status = 500
        _, invite = store.create_invite("Alice")
        resp = _login(client, registration=invite.token)
        assert resp.status_code == 500
        assert store.list_invites() != []

    def test_logout(self, client: TestClient, store) -> None:
        _, invite = store.create_invite("Alice")
        _login(client, registration=invite.token)
        resp = client.get("/oauth/github/logout")
        assert resp.status_code == 200
        assert "max-age=-1" in resp.headers["set-cookie"].lower()
        assert client.get("/x").status_code == 302


    def test_linked_account_consumes_invite(self, store, cache: MemoryCache, github: FakeUpstream) -> None:
        linked = store.create_github(store.create("placeholder"), GitHubUser(id=42, login="alice"))
        placeholder, invite = store.create_invite("Alice")
        moves: list[tuple[str, str]] = []

        def move_data(invite_user: User, user: User) -> None:
            moves.append((invite_user.id, user.id))

        service = new_github_service(
            store,
            cache,
            CookieService(SECRET, 3600),
            PageRenderer(),
            client_id="client",
            client_secret="shh",
            link_handler=move_data,
            client_kwargs={"transport": httpx.MockTransport(github)},
        )
        app = FastAPI()
        app.include_router(service.router(), prefix="/oauth/github")

        resp = _login(TestClient(app, follow_redirects=False), registration=invite.token)

        assert resp.status_code == 200
        assert "Login success!" in resp.text
        assert moves == [(placeholder.id, linked.id)]
        assert store.get_github_user(42).id == linked.id
        assert store.list_invites() == []
        with pytest.raises(UnknownUserError):
            store.get(placeholder.id)


class TestProtected:
    @pytest.fixture
    def session(self, client: TestClient, store) -> TestClient:
        store.create_github(store.create("placeholder"), GitHubUser(id=42, login="alice"))
        assert _login(client).status_code == 200
        return client

    def test_unauthenticated_goes_through_login(self, client: TestClient, cache: MemoryCache) -> None:
        resp = client.get("/x", params={"page": "2"})
        assert resp.headers["location"].startswith("https://github.com/login/oauth/authorize?")
        assert _pending_state(cache, "github", _state_of(resp)).redirect == "/x?page=2"

    def test_reads_do_not_call_upstream(self, session: TestClient, github: FakeUpstream) -> None:
        before = len(github.calls("/user"))
        assert session.get("/x").status_code == 200
        assert session.get("/x").status_code == 200
        assert len(github.calls("/user")) == before

    def test_refresh_is_debounced(self, session: TestClient, github: FakeUpstream, clock: FakeClock) -> None:
        before = len(github.calls("/user"))

        assert session.post("/x").status_code == 200
        clock.advance(1)
        assert session.post("/x").status_code == 200
        assert len(github.calls("/user")) == before + 1

        clock.advance(UPDATE_TTL)
        assert session.post("/x").status_code == 200
        assert len(github.calls("/user")) == before + 2

    def test_revoked_upstream_account(self, session: TestClient, github: FakeUpstream) -> None:
        github.user_status = 401
        resp = session.post("/x")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://github.com/")


    def test_expired_token_is_refreshed_into_a_new_cookie(
        self, client: TestClient, store, github: FakeUpstream
    ) -> None:
        user = store.create_github(store.create("placeholder"), GitHubUser(id=42, login="alice"))
        stale = {
            "access_token": "OLD",
            "token_type": "bearer",
            "refresh_token": "R",
            "expires_at": int(time.time()) - 10,
        }
        client.cookies.set(COOKIE_NAME, _session_cookie(user, stale))

        resp = client.post("/x")

        assert resp.status_code == 200
        (refresh,) = github.calls("/login/oauth/access_token")
        form = parse_qs(refresh.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["R"]
        claims = jwt.get_unverified_claims(resp.cookies[COOKIE_NAME])
        assert claims["token"]["access_token"] == "ACCESS"
        assert claims["user"]["id"] == user.id

    def test_expired_token_without_refresh_goes_through_login(
        self, client: TestClient, store, github: FakeUpstream
    ) -> None:
        user = store.create_github(store.create("placeholder"), GitHubUser(id=42, login="alice"))
        stale = {"access_token": "OLD", "token_type": "bearer", "expires_at": int(time.time()) - 10}
        client.cookies.set(COOKIE_NAME, _session_cookie(user, stale))

        resp = client.post("/x")

        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://github.com/login/oauth/authorize?")
        assert github.calls("/user") == []


class TestDiscord:
    def test_user_from_dict(self) -> None:
        user = DiscordUser.from_dict({"id": 80351110224678912, "username": "nelly", "global_name": "Nelly", "avatar": "8342"})
        assert user == DiscordUser(id="80351110224678912", username="Nelly", avatar="8342")
        assert DiscordUser.from_dict({"id": "1", "username": "nelly", "global_name": None}).username == "nelly"

    def test_image_url(self) -> None:
        assert discord_image_url("1", "abc") == "https://cdn.discordapp.com/avatars/1/abc.webp"
        assert discord_image_url("1", "") == ""

    def test_flow(self, memory_store: MemoryStore, cache: MemoryCache) -> None:
        upstream = FakeUpstream(
            "/api/oauth2/token", "/api/users/@me", {"id": "99", "username": "bob", "global_name": None, "avatar": "a1"}
        )
        settings = make_settings(discord_client_id="client", discord_client_secret="shh")
        app = create_app(
            settings,
            store=memory_store,
            cache=cache,
            protected=_protected(),
            client_kwargs={"transport": httpx.MockTransport(upstream)},
        )
        client = TestClient(app, follow_redirects=False)
        _, invite = memory_store.create_invite("Bob")

        register = client.get("/oauth/discord/register", params={"registration": invite.token})
        location = urlsplit(register.headers["location"])
        assert location.netloc == "discord.com"
        assert parse_qs(location.query)["scope"] == ["identify"]

        state = _state_of(register)
        resp = client.get("/oauth/discord/callback", params={"state": state, "code": "CODE"})
        assert resp.status_code == 200
        user = memory_store.get_discord_user("99")
        assert user.name == "bob"
        assert user.image == discord_image_url("99", "a1")
        assert client.get("/x").json()["name"] == "bob"
