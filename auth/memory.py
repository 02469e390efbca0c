"""
auth/memory.py -- In-memory implementation of every storage contract.

Fed by two configuration lists (see core.config.Settings):
  memory_users     entries "id:login:password", password being an encoded
                   argon2id or legacy bcrypt hash. Duplicate IDs are rejected.
  memory_profiles  entries "id:profile1|profile2".

Suited to tests and small single-process deployments: everything lives in
dicts guarded by one re-entrant lock and vanishes on restart. do_atomic()
snapshots the whole state and restores it if the action raises.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import copy
import logging
import secrets
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

from argon2.exceptions import HashingError

from auth import passwords
from auth.discord import DiscordUser, discord_image_url
from auth.errors import ArgonError, HashMismatchError, InvalidCredentialsError, UnknownUserError
from auth.github import GitHubUser, github_image_url
from auth.models import ExternalIdentity, Invite, User

logger = logging.getLogger("authmw.memory")

R = TypeVar("R")


@dataclass
class _State:
    users: dict[str, User] = field(default_factory=dict)
    logins: dict[str, str] = field(default_factory=dict)  # login -> user_id
    hashes: dict[str, str] = field(default_factory=dict)  # user_id -> encoded hash
    profiles: dict[str, set[str]] = field(default_factory=dict)  # user_id -> lowercase profiles
    invites: dict[str, Invite] = field(default_factory=dict)  # token -> invite
    links: dict[tuple[str, str], ExternalIdentity] = field(default_factory=dict)  # (provider, external_id)


# ---------------------------------------------------------------------------
# Configuration parsing
# ---------------------------------------------------------------------------


def parse_users(entries: Iterable[str]) -> dict[str, tuple[str, str]]:
    """Parse "id:login:password" entries into {id: (login, password)}.

    Raises ValueError on a malformed entry or a duplicate ID.
    """
    users: dict[str, tuple[str, str]] = {}
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) != 3 or not parts[0]:
            raise ValueError(f"invalid format for user {entry.split(':', 1)[0]!r}: expected id:login:password")
        user_id, login, password = parts
        if user_id in users:
            raise ValueError(f"duplicate user id {user_id!r}")
        users[user_id] = (login.lower(), password)
    return users


def parse_profiles(entries: Iterable[str]) -> dict[str, set[str]]:
    """Parse "id:profile1|profile2" entries into {id: {profiles}} (lowercased)."""
    profiles: dict[str, set[str]] = {}
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) != 2 or not parts[0]:
            raise ValueError(f"invalid format for profile {entry!r}: expected id:profile1|profile2")
        user_id, names = parts
        profiles.setdefault(user_id, set()).update(p.strip().lower() for p in names.split("|") if p.strip())
    return profiles


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class MemoryStore:
    """Dict-backed store for users, credentials, profiles, invites and links.

    Usage:
        store = MemoryStore.from_config(["1:admin:$argon2id$..."], ["1:admin"])
        store.get_basic_user("admin", "secret")
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = _State()

    @classmethod
    def from_config(cls, users: Iterable[str], profiles: Iterable[str]) -> MemoryStore:
        store = cls()
        parsed_profiles = parse_profiles(profiles)
        for user_id, (login, password) in parse_users(users).items():
            store._state.users[user_id] = User(id=user_id, name=login)
            store._state.logins[login] = user_id
            store._state.hashes[user_id] = password
        for user_id, names in parsed_profiles.items():
            store._state.profiles[user_id] = set(names)
        return store

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def do_atomic(self, action: Callable[[], R]) -> R:
        """Run action under the store lock, restoring the previous state if it raises."""
        with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                return action()
            except BaseException:
                self._state = snapshot
                raise

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create(self, description: str) -> User:
        user = User(id=uuid.uuid4().hex, name=description)
        with self._lock:
            self._state.users[user.id] = user
        return copy.copy(user)

    def get(self, user_id: str) -> User:
        with self._lock:
            user = self._state.users.get(user_id)
            if user is None:
                raise UnknownUserError(f"unknown user {user_id}")
            return self._with_profiles(user)

    def update(self, user: User) -> None:
        with self._lock:
            if user.id in self._state.users:
                self._state.users[user.id] = User(id=user.id, name=user.name, email=user.email, image=user.image)

    def delete(self, user: User) -> None:
        """Remove user with its credentials, profiles, invites and links."""
        with self._lock:
            state = self._state
            state.users.pop(user.id, None)
            state.hashes.pop(user.id, None)
            state.profiles.pop(user.id, None)
            state.logins = {k: v for k, v in state.logins.items() if v != user.id}
            state.invites = {k: v for k, v in state.invites.items() if v.user_id != user.id}
            state.links = {k: v for k, v in state.links.items() if v.user_id != user.id}

    def _with_profiles(self, user: User) -> User:
        return User(
            id=user.id,
            name=user.name,
            email=user.email,
            image=user.image,
            profiles=sorted(self._state.profiles.get(user.id, ())),
        )

    # ------------------------------------------------------------------
    # Basic credentials
    # ------------------------------------------------------------------

    def get_basic_user(self, login: str, password: str) -> User:
        """Authenticate login/password, upgrading a bcrypt hash to argon2id on success."""
        with self._lock:
            user_id = self._state.logins.get(login.lower())
            encoded = self._state.hashes.get(user_id or "")
            user = self._state.users.get(user_id or "")
        if user is None or encoded is None:
            raise InvalidCredentialsError("invalid credentials")

        if passwords.is_argon(encoded):
            try:
                passwords.verify(encoded, password)
            except HashMismatchError as exc:
                raise InvalidCredentialsError("invalid credentials") from exc
            except ArgonError as exc:
                logger.error("parse stored hash of user %s: %s", user.id, exc)
                raise InvalidCredentialsError("invalid credentials") from exc
            return self._with_profiles(user)

        if not passwords.verify_bcrypt(encoded, password):
            raise InvalidCredentialsError("invalid credentials")
        try:
            self.update_password(user, password)
        except HashingError as exc:
            logger.error("upgrade password of user %s to argon2id: %s", user.id, exc)
        return self._with_profiles(user)

    def save_password(self, user: User, login: str, password: str) -> None:
        encoded = passwords.encode(password)
        with self._lock:
            self._state.logins[login.lower()] = user.id
            self._state.hashes[user.id] = encoded

    def update_password(self, user: User, password: str) -> None:
        encoded = passwords.encode(password)
        with self._lock:
            if user.id in self._state.hashes:
                self._state.hashes[user.id] = encoded

    def get_password_hash(self, user: User) -> str | None:
        with self._lock:
            return self._state.hashes.get(user.id)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def is_authorized(self, user: User, profile: str) -> bool:
        """True when profile is empty or the user holds it (case-insensitive).

        Users without any configured profile are never authorized for a
        non-empty profile.
        """
        if not profile:
            return True
        with self._lock:
            return profile.lower() in self._state.profiles.get(user.id, set())

    def add_profile(self, user: User, profile: str) -> None:
        with self._lock:
            self._state.profiles.setdefault(user.id, set()).add(profile.lower())

    def remove_profile(self, user: User, profile: str) -> None:
        with self._lock:
            self._state.profiles.get(user.id, set()).discard(profile.lower())

    def get_profiles(self, user: User) -> list[str]:
        with self._lock:
            return sorted(self._state.profiles.get(user.id, ()))

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def create_invite(self, description: str) -> tuple[User, Invite]:
        def action() -> tuple[User, Invite]:
            user = self.create(description)
            invite = Invite(user_id=user.id, token=secrets.token_hex(16), description=description)
            self._state.invites[invite.token] = invite
            return user, invite

        return self.do_atomic(action)

    def get_invite_by_token(self, token: str) -> User:
        with self._lock:
            invite = self._state.invites.get(token)
        if invite is None:
            raise UnknownUserError("unknown invite")
        return User(id=invite.user_id, name=invite.description)

    def list_invites(self) -> list[Invite]:
        with self._lock:
            return sorted(self._state.invites.values(), key=lambda i: i.description)

    def delete_invite(self, user: User) -> None:
        with self._lock:
            self._state.invites = {k: v for k, v in self._state.invites.items() if v.user_id != user.id}

    # ------------------------------------------------------------------
    # External identities
    # ------------------------------------------------------------------

    def _link(self, identity: ExternalIdentity) -> None:
        # One identity per (user, provider).
        self._state.links = {
            k: v
            for k, v in self._state.links.items()
            if not (v.user_id == identity.user_id and v.provider == identity.provider)
        }
        self._state.links[(identity.provider, identity.external_id)] = identity

    def _get_linked(self, provider: str, external_id: str) -> User:
        with self._lock:
            identity = self._state.links.get((provider, external_id))
            user = self._state.users.get(identity.user_id) if identity is not None else None
            if user is None:
                raise UnknownUserError(f"unknown {provider} user {external_id}")
            return self._with_profiles(user)

    def _refresh(self, user: User, identity: ExternalIdentity) -> User:
        user.name = identity.name
        with self._lock:
            self._link(identity)
            stored = self._state.users.get(user.id)
            if stored is not None:
                stored.name = user.name
                stored.image = user.image
        return user

    def create_github(self, invite: User, github_user: GitHubUser) -> User:
        def action() -> User:
            user = self.create(github_user.login)
            user.image = github_image_url(github_user.id)
            self._state.users[user.id].image = user.image
            self._link(ExternalIdentity("github", str(github_user.id), user.id, github_user.login, user.image))
            return user

        return self.do_atomic(action)

    def get_github_user(self, github_id: int) -> User:
        return self._get_linked("github", str(github_id))

    def update_github_user(self, user: User, github_user: GitHubUser) -> User:
        user.image = github_image_url(github_user.id)
        identity = ExternalIdentity("github", str(github_user.id), user.id, github_user.login, user.image)
        return self._refresh(user, identity)

    def create_discord(self, invite: User, discord_user: DiscordUser) -> User:
        def action() -> User:
            user = self.create(discord_user.username)
            user.image = discord_image_url(discord_user.id, discord_user.avatar)
            self._state.users[user.id].image = user.image
            self._link(ExternalIdentity("discord", discord_user.id, user.id, discord_user.username, user.image))
            return user

        return self.do_atomic(action)

    def get_discord_user(self, discord_id: str) -> User:
        return self._get_linked("discord", discord_id)

    def update_discord_user(self, user: User, discord_user: DiscordUser) -> User:
        user.image = discord_image_url(discord_user.id, discord_user.avatar)
        identity = ExternalIdentity("discord", discord_user.id, user.id, discord_user.username, user.image)
        return self._refresh(user, identity)

    def unlink(self, provider: str, user: User) -> None:
        with self._lock:
            self._state.links = {
                k: v for k, v in self._state.links.items() if not (v.user_id == user.id and v.provider == provider)
            }

    def close(self) -> None:
        """Nothing to release; present for parity with UserStore."""
