"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
providers do the work; these only own the shape and the JSON mapping used
by the session cookie and the OAuth state cache.

User IDs are opaque strings everywhere: storage, cookie payload, and the
JWT sub/jti claims.

Layer rule: no imports from api/, web/, core/, or cache/.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class User:
    """An authenticated identity.

    name is the display name: the Basic login, or the upstream login for
    OAuth users. profiles is only filled by stores that load memberships
    eagerly (the memory store); authorization decisions always go through
    the store's is_authorized().
    """

    id: str = ""
    name: str = ""
    email: str = ""
    image: str = ""
    profiles: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> User:
        return cls(
            id=str(data.get("id") or ""),
            name=data.get("name") or "",
            email=data.get("email") or "",
            image=data.get("image") or "",
            profiles=list(data.get("profiles") or []),
        )


# Zero value returned on every failure path.
NONE_USER = User()

# Identity attached by NoopAuthentication when no provider is configured.
NOMINAL_USER = User(id="0", name="nominal")


@dataclass
class Invite:
    """A single-use registration token bound to a placeholder user."""

    user_id: str
    token: str
    description: str = ""


@dataclass
class ExternalIdentity:
    """A link between a user and an upstream OAuth account."""

    provider: str  # "github", "discord"
    external_id: str
    user_id: str
    name: str = ""
    avatar: str = ""


@dataclass
class OAuthState:
    """Ephemeral state persisted between /register and /callback."""

    verifier: str
    registration: str = ""
    redirect: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> OAuthState:
        data = json.loads(raw)
        return cls(
            verifier=data["verifier"],
            registration=data.get("registration") or "",
            redirect=data.get("redirect") or "",
        )


@dataclass
class SessionClaim:
    """Payload carried by the session cookie.

    token is the upstream OAuth token dict for OAuth sessions and None for
    Basic sessions.
    """

    user: User
    token: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Request context helpers
#
# The user travels in request.state (the ASGI scope "state" dict), which is
# shared between a middleware and every handler below it.
# ---------------------------------------------------------------------------

_STATE_KEY = "user"


def store_user(request, user: User) -> None:
    """Attach user to the request so downstream handlers can read it."""
    setattr(request.state, _STATE_KEY, user)


def load_user(request) -> User:
    """Return the attached user, or NONE_USER when unset or of the wrong type."""
    user = getattr(request.state, _STATE_KEY, None)
    if not isinstance(user, User):
        return NONE_USER
    return user
