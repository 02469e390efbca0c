"""
auth/github.py -- GitHub flavour of the OAuth provider.

GitHub identifies accounts by a numeric id; the login is only a display
name and can change, so links are keyed on the id and the login refreshed
on every sign-in.

No scope is requested: /user answers with the public profile, which is all
a link needs.

Layer rule: no imports from api/, web/, or auth.store (the stores import the
helpers below, not the other way around).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from auth.cookie import CookieService
from auth.models import User
from auth.oauth import DEFAULT_STATE_TTL, DEFAULT_UPDATE_TTL, OAuthConfig, OAuthService, PageRenderer, no_link
from auth.storage import Storage

AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"
USER_URL = "https://api.github.com/user"

_AVATAR_URL = "https://avatars.githubusercontent.com/u/"


@dataclass
class GitHubUser:
    id: int
    login: str

    def get_id(self) -> int:
        return self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GitHubUser:
        return cls(id=int(data["id"]), login=str(data.get("login") or ""))


def github_image_url(github_id: int) -> str:
    """Avatar URL of a GitHub account, "" for an unset id."""
    if not github_id:
        return ""
    return f"{_AVATAR_URL}{github_id}"


class GitHubStorage(Storage, Protocol):
    def create_github(self, invite: User, github_user: GitHubUser) -> User: ...

    def get_github_user(self, github_id: int) -> User: ...

    def update_github_user(self, user: User, github_user: GitHubUser) -> User: ...


def new_service(
    store: GitHubStorage,
    cache,
    cookie: CookieService,
    pages: PageRenderer,
    *,
    client_id: str,
    client_secret: str,
    redirect_url: str = "",
    on_success_path: str = "/",
    link_handler=no_link,
    state_ttl: float = DEFAULT_STATE_TTL,
    update_ttl: float = DEFAULT_UPDATE_TTL,
    client_kwargs: dict | None = None,
) -> OAuthService[GitHubUser]:
    config = OAuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        authorize_url=AUTHORIZE_URL,
        token_url=TOKEN_URL,
        user_info_url=USER_URL,
        redirect_url=redirect_url,
        on_success_path=on_success_path,
        token_auth_method="client_secret_post",
    )
    return OAuthService(
        "github",
        config,
        cache,
        store,
        cookie,
        pages,
        user_factory=GitHubUser.from_dict,
        get_handler=store.get_github_user,
        create_handler=store.create_github,
        update_handler=store.update_github_user,
        link_handler=link_handler,
        state_ttl=state_ttl,
        update_ttl=update_ttl,
        client_kwargs=client_kwargs,
    )
