"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
and _row_to_invite are the mappers. Providers and dependencies never touch
SQL directly.

Schema: every table lives in the "auth" schema (auth.user, auth.basic,
auth.github, auth.discord, auth.invite, auth.profile, auth.user_profile).
SQLite has no schemas, so on SQLite URLs the engine maps "auth" to the main
database through schema_translate_map.

Transactions:
  Every public method runs inside _transaction(). When a caller is already
  inside do_atomic(), the method joins that connection instead of opening a
  new one, so nested calls flatten to the outermost transaction. The current
  connection is tracked in a ContextVar: each worker thread of the threadpool
  gets its own copy of the context, so concurrent requests never share it.

Security:
  All queries use bound parameters. No f-strings in SQL.
  get_basic_user() runs a dummy argon2id verification for unknown logins so
  response time does not reveal whether a login exists.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import lru_cache
from typing import TypeVar

from argon2.exceptions import HashingError
from sqlalchemy import (
    BigInteger,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateSchema

from auth import passwords
from auth.discord import DiscordUser, discord_image_url
from auth.errors import (
    ArgonError,
    HashMismatchError,
    InvalidCredentialsError,
    UnavailableServiceError,
    UnknownUserError,
)
from auth.github import GitHubUser, github_image_url
from auth.models import Invite, User

logger = logging.getLogger("authmw.store")

R = TypeVar("R")

_SCHEMA = "auth"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData(schema=_SCHEMA)

_users = Table(
    "user",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", Text, nullable=False, server_default=""),
    Column("email", Text, nullable=False, server_default=""),
    Column("image", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

_basic = Table(
    "basic",
    _metadata,
    Column("user_id", String(32), ForeignKey("auth.user.id", ondelete="CASCADE"), primary_key=True),
    Column("login", Text, nullable=False, unique=True),
    Column("password", Text, nullable=False),  # encoded argon2id or legacy bcrypt hash
)

_github = Table(
    "github",
    _metadata,
    Column("id", BigInteger, nullable=False, unique=True),
    # One GitHub account per user: user_id is the primary key.
    Column("user_id", String(32), ForeignKey("auth.user.id", ondelete="CASCADE"), primary_key=True),
    Column("login", Text, nullable=False),
)

_discord = Table(
    "discord",
    _metadata,
    Column("id", Text, nullable=False, unique=True),
    Column("user_id", String(32), ForeignKey("auth.user.id", ondelete="CASCADE"), primary_key=True),
    Column("username", Text, nullable=False),
    Column("avatar", Text, nullable=False, server_default=""),
)

_invites = Table(
    "invite",
    _metadata,
    Column("user_id", String(32), ForeignKey("auth.user.id", ondelete="CASCADE"), primary_key=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

_profiles = Table(
    "profile",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),  # stored lowercase
)

_user_profiles = Table(
    "user_profile",
    _metadata,
    Column("user_id", String(32), ForeignKey("auth.user.id", ondelete="CASCADE"), primary_key=True),
    Column("profile_id", Integer, ForeignKey("auth.profile.id", ondelete="CASCADE"), primary_key=True),
)

# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys must be on for ON DELETE CASCADE.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


@lru_cache
def _dummy_hash() -> str:
    # Computed on first use so importing the module stays cheap.
    return passwords.encode("authmw_timing_dummy")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, credentials, external identities, invites and profiles.

    Usage:
        store = UserStore("postgresql+psycopg://.../app")
        user = store.create("alice")
        store.save_password(user, "alice", "secret")
        store.get_basic_user("alice", "secret")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
        engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(engine, "connect", _set_sqlite_pragmas)
            engine = engine.execution_options(schema_translate_map={_SCHEMA: None})
        self.engine: Engine = engine
        self._current: ContextVar[Connection | None] = ContextVar(f"authmw_store_{id(self)}", default=None)
        if not is_sqlite:
            with self.engine.begin() as conn:
                conn.execute(CreateSchema(_SCHEMA, if_not_exists=True))
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        """Yield the connection of the enclosing do_atomic(), or a fresh transaction."""
        conn = self._current.get()
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as conn:
            token = self._current.set(conn)
            try:
                yield conn
            finally:
                self._current.reset(token)

    def do_atomic(self, action: Callable[[], R]) -> R:
        """Run action in one transaction: committed if it returns, rolled back if it raises."""
        with self._transaction():
            return action()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create(self, description: str) -> User:
        """Insert a new user named after description and return it."""
        user = User(id=_new_id(), name=description)
        with self._transaction() as conn:
            conn.execute(_users.insert().values(id=user.id, name=user.name, created_at=_now_iso()))
        return user

    def get(self, user_id: str) -> User:
        """Return the user with this ID or raise UnknownUserError."""
        with self._transaction() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        if row is None:
            raise UnknownUserError(f"unknown user {user_id}")
        return _row_to_user(row)

    def update(self, user: User) -> None:
        """Persist name, email and image of an existing user."""
        with self._transaction() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user.id).values(name=user.name, email=user.email, image=user.image)
            )

    def delete(self, user: User) -> None:
        """Delete a user. Credentials, links, invites and memberships cascade."""
        with self._transaction() as conn:
            conn.execute(_users.delete().where(_users.c.id == user.id))

    # ------------------------------------------------------------------
    # Basic credentials
    # ------------------------------------------------------------------

    def get_basic_user(self, login: str, password: str) -> User:
        """Authenticate login/password.

        argon2id hashes are verified directly. Any other hash is treated as
        legacy bcrypt and, on success, re-encoded to argon2id; a failed
        upgrade is logged and does not fail the login.
        """
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    select(_users.c.id, _users.c.email, _users.c.image, _basic.c.login, _basic.c.password)
                    .select_from(_users.join(_basic, _basic.c.user_id == _users.c.id))
                    .where(_basic.c.login == login.lower())
                ).fetchone()
        except SQLAlchemyError as exc:
            logger.error("get basic user: %s", exc)
            raise UnavailableServiceError("get basic user") from exc

        if row is None:
            # Equalize timing -- do NOT return before running the KDF.
            with suppress(ArgonError):
                passwords.verify(_dummy_hash(), password)
            raise InvalidCredentialsError("invalid credentials")

        user = User(id=row.id, name=row.login, email=row.email, image=row.image)

        if passwords.is_argon(row.password):
            try:
                passwords.verify(row.password, password)
            except HashMismatchError as exc:
                raise InvalidCredentialsError("invalid credentials") from exc
            except ArgonError as exc:
                logger.error("parse stored hash of user %s: %s", user.id, exc)
                raise InvalidCredentialsError("invalid credentials") from exc
            return user

        if not passwords.verify_bcrypt(row.password, password):
            raise InvalidCredentialsError("invalid credentials")

        try:
            self.update_password(user, password)
        except (SQLAlchemyError, HashingError) as exc:
            logger.error("upgrade password of user %s to argon2id: %s", user.id, exc)
        return user

    def save_password(self, user: User, login: str, password: str) -> None:
        """Create the Basic credential of user, always stored as argon2id."""
        encoded = passwords.encode(password)
        with self._transaction() as conn:
            conn.execute(_basic.insert().values(user_id=user.id, login=login.lower(), password=encoded))

    def update_password(self, user: User, password: str) -> None:
        """Replace the stored hash of user with a fresh argon2id hash."""
        encoded = passwords.encode(password)
        with self._transaction() as conn:
            conn.execute(_basic.update().where(_basic.c.user_id == user.id).values(password=encoded))

    def get_password_hash(self, user: User) -> str | None:
        """Return the encoded hash stored for user, or None without credentials."""
        with self._transaction() as conn:
            return conn.execute(select(_basic.c.password).where(_basic.c.user_id == user.id)).scalar()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def is_authorized(self, user: User, profile: str) -> bool:
        """True when profile is empty or user holds it (case-insensitive).

        Any database error is logged and denies access.
        """
        if not profile:
            return True
        try:
            with self._transaction() as conn:
                found = conn.execute(
                    select(_user_profiles.c.user_id)
                    .select_from(_user_profiles.join(_profiles, _profiles.c.id == _user_profiles.c.profile_id))
                    .where((_profiles.c.name == profile.lower()) & (_user_profiles.c.user_id == user.id))
                ).fetchone()
        except SQLAlchemyError as exc:
            logger.error("check profile %r of user %s: %s", profile, user.id, exc)
            return False
        return found is not None

    def add_profile(self, user: User, profile: str) -> None:
        """Grant profile to user, creating the profile on first use."""
        name = profile.lower()
        with self._transaction() as conn:
            profile_id = conn.execute(select(_profiles.c.id).where(_profiles.c.name == name)).scalar()
            if profile_id is None:
                profile_id = conn.execute(_profiles.insert().values(name=name)).inserted_primary_key[0]
            exists = conn.execute(
                select(func.count())
                .select_from(_user_profiles)
                .where((_user_profiles.c.user_id == user.id) & (_user_profiles.c.profile_id == profile_id))
            ).scalar()
            if not exists:
                conn.execute(_user_profiles.insert().values(user_id=user.id, profile_id=profile_id))

    def remove_profile(self, user: User, profile: str) -> None:
        with self._transaction() as conn:
            profile_id = conn.execute(select(_profiles.c.id).where(_profiles.c.name == profile.lower())).scalar()
            if profile_id is None:
                return
            conn.execute(
                _user_profiles.delete().where(
                    (_user_profiles.c.user_id == user.id) & (_user_profiles.c.profile_id == profile_id)
                )
            )

    def get_profiles(self, user: User) -> list[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                select(_profiles.c.name)
                .select_from(_user_profiles.join(_profiles, _profiles.c.id == _user_profiles.c.profile_id))
                .where(_user_profiles.c.user_id == user.id)
                .order_by(_profiles.c.name)
            ).fetchall()
        return [r.name for r in rows]

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def create_invite(self, description: str) -> tuple[User, Invite]:
        """Mint a placeholder user and a single-use token for it."""

        def action() -> tuple[User, Invite]:
            user = self.create(description)
            invite = Invite(user_id=user.id, token=secrets.token_hex(16), description=description)
            with self._transaction() as conn:
                conn.execute(
                    _invites.insert().values(user_id=user.id, token=invite.token, description=description)
                )
            return user, invite

        return self.do_atomic(action)

    def get_invite_by_token(self, token: str) -> User:
        """Return the placeholder user of the invite, or raise UnknownUserError."""
        with self._transaction() as conn:
            row = conn.execute(
                select(_invites.c.user_id, _invites.c.description).where(_invites.c.token == token)
            ).fetchone()
        if row is None:
            raise UnknownUserError("unknown invite")
        return User(id=row.user_id, name=row.description)

    def list_invites(self) -> list[Invite]:
        with self._transaction() as conn:
            rows = conn.execute(_invites.select().order_by(_invites.c.description)).fetchall()
        return [_row_to_invite(r) for r in rows]

    def delete_invite(self, user: User) -> None:
        with self._transaction() as conn:
            conn.execute(_invites.delete().where(_invites.c.user_id == user.id))

    # ------------------------------------------------------------------
    # GitHub identities
    # ------------------------------------------------------------------

    def create_github(self, invite: User, github_user: GitHubUser) -> User:
        """Create a fresh user bound to github_user. invite is left to the caller."""

        def action() -> User:
            user = self.create(github_user.login)
            user.image = github_image_url(github_user.id)
            with self._transaction() as conn:
                conn.execute(_users.update().where(_users.c.id == user.id).values(image=user.image))
                conn.execute(_github.insert().values(id=github_user.id, user_id=user.id, login=github_user.login))
            return user

        return self.do_atomic(action)

    def get_github_user(self, github_id: int) -> User:
        """Return the user linked to this GitHub account, or raise UnknownUserError."""
        with self._transaction() as conn:
            row = conn.execute(
                select(_github.c.user_id, _github.c.login, _github.c.id, _users.c.email)
                .select_from(_github.join(_users, _users.c.id == _github.c.user_id))
                .where(_github.c.id == github_id)
            ).fetchone()
        if row is None:
            raise UnknownUserError(f"unknown github user {github_id}")
        return User(id=row.user_id, name=row.login, email=row.email, image=github_image_url(row.id))

    def update_github_user(self, user: User, github_user: GitHubUser) -> User:
        """Refresh login and avatar of the GitHub link and of the user itself."""
        user.name = github_user.login
        user.image = github_image_url(github_user.id)
        with self._transaction() as conn:
            conn.execute(
                _github.update().where(_github.c.user_id == user.id).values(id=github_user.id, login=github_user.login)
            )
            conn.execute(_users.update().where(_users.c.id == user.id).values(name=user.name, image=user.image))
        return user

    # ------------------------------------------------------------------
    # Discord identities
    # ------------------------------------------------------------------

    def create_discord(self, invite: User, discord_user: DiscordUser) -> User:
        """Create a fresh user bound to discord_user. invite is left to the caller."""

        def action() -> User:
            user = self.create(discord_user.username)
            user.image = discord_image_url(discord_user.id, discord_user.avatar)
            with self._transaction() as conn:
                conn.execute(_users.update().where(_users.c.id == user.id).values(image=user.image))
                conn.execute(
                    _discord.insert().values(
                        id=discord_user.id,
                        user_id=user.id,
                        username=discord_user.username,
                        avatar=discord_user.avatar,
                    )
                )
            return user

        return self.do_atomic(action)

    def get_discord_user(self, discord_id: str) -> User:
        """Return the user linked to this Discord account, or raise UnknownUserError."""
        with self._transaction() as conn:
            row = conn.execute(
                select(_discord.c.user_id, _discord.c.username, _discord.c.id, _discord.c.avatar, _users.c.email)
                .select_from(_discord.join(_users, _users.c.id == _discord.c.user_id))
                .where(_discord.c.id == discord_id)
            ).fetchone()
        if row is None:
            raise UnknownUserError(f"unknown discord user {discord_id}")
        return User(
            id=row.user_id,
            name=row.username,
            email=row.email,
            image=discord_image_url(row.id, row.avatar),
        )

    def update_discord_user(self, user: User, discord_user: DiscordUser) -> User:
        user.name = discord_user.username
        user.image = discord_image_url(discord_user.id, discord_user.avatar)
        with self._transaction() as conn:
            conn.execute(
                _discord.update()
                .where(_discord.c.user_id == user.id)
                .values(id=discord_user.id, username=discord_user.username, avatar=discord_user.avatar)
            )
            conn.execute(_users.update().where(_users.c.id == user.id).values(name=user.name, image=user.image))
        return user

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def unlink(self, provider: str, user: User) -> None:
        """Remove the external identity of user for provider ("github" or "discord")."""
        tables = {"github": _github, "discord": _discord}
        if provider not in tables:
            raise ValueError(f"Unknown provider: {provider!r}")
        table = tables[provider]
        with self._transaction() as conn:
            conn.execute(table.delete().where(table.c.user_id == user.id))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(id=row.id, name=row.name, email=row.email, image=row.image)


def _row_to_invite(row) -> Invite:
    return Invite(user_id=row.user_id, token=row.token, description=row.description)
