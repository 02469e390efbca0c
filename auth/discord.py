"""
auth/discord.py -- Discord flavour of the OAuth provider.

Discord ids are snowflakes, kept as strings. The display name is the
account's global_name, falling back to the unique username for accounts
that never set one. Only the "identify" scope is requested.

Layer rule: no imports from api/, web/, or auth.store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from auth.cookie import CookieService
from auth.models import User
from auth.oauth import DEFAULT_STATE_TTL, DEFAULT_UPDATE_TTL, OAuthConfig, OAuthService, PageRenderer, no_link
from auth.storage import Storage

AUTHORIZE_URL = "https://discord.com/oauth2/authorize"
TOKEN_URL = "https://discord.com/api/oauth2/token"
USER_URL = "https://discord.com/api/users/@me"
SCOPES = ["identify"]


@dataclass
class DiscordUser:
    id: str
    username: str
    avatar: str = ""

    def get_id(self) -> str:
        return self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscordUser:
        return cls(
            id=str(data["id"]),
            username=str(data.get("global_name") or data.get("username") or ""),
            avatar=str(data.get("avatar") or ""),
        )


def discord_image_url(discord_id: str, avatar: str) -> str:
    if not discord_id or not avatar:
        return ""
    return f"https://cdn.discordapp.com/avatars/{discord_id}/{avatar}.webp"


class DiscordStorage(Storage, Protocol):
    def create_discord(self, invite: User, discord_user: DiscordUser) -> User: ...

    def get_discord_user(self, discord_id: str) -> User: ...

    def update_discord_user(self, user: User, discord_user: DiscordUser) -> User: ...


def new_service(
    store: DiscordStorage,
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
) -> OAuthService[DiscordUser]:
    config = OAuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        authorize_url=AUTHORIZE_URL,
        token_url=TOKEN_URL,
        user_info_url=USER_URL,
        redirect_url=redirect_url,
        scopes=list(SCOPES),
        on_success_path=on_success_path,
        token_auth_method="client_secret_post",
    )
    return OAuthService(
        "discord",
        config,
        cache,
        store,
        cookie,
        pages,
        user_factory=DiscordUser.from_dict,
        get_handler=store.get_discord_user,
        create_handler=store.create_discord,
        update_handler=store.update_discord_user,
        link_handler=link_handler,
        state_ttl=state_ttl,
        update_ttl=update_ttl,
        client_kwargs=client_kwargs,
    )
