"""
auth/storage.py -- Contracts the data plane must satisfy.

Both UserStore (SQLAlchemy) and MemoryStore implement every protocol here.
Providers depend on these protocols rather than on a concrete store so the
two backends stay interchangeable.

All methods are synchronous. Async callers (providers, middleware) run them
through starlette.concurrency.run_in_threadpool, the same way FastAPI runs
sync dependencies.

Layer rule: no imports from api/, web/, core/, or cache/.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, TypeVar

from auth.models import Invite, User

R = TypeVar("R")


class Storage(Protocol):
    """User lifecycle, invites and transactions."""

    def create(self, description: str) -> User:
        """Mint a new user with a fresh opaque ID."""
        ...

    def delete(self, user: User) -> None: ...

    def get_invite_by_token(self, token: str) -> User:
        """Return the placeholder user of an invite, or raise UnknownUserError."""
        ...

    def delete_invite(self, user: User) -> None: ...

    def do_atomic(self, action: Callable[[], R]) -> R:
        """Run action inside one transaction and return its result.

        Nested calls join the outermost transaction.
        """
        ...


class BasicStorage(Protocol):
    def get_basic_user(self, login: str, password: str) -> User:
        """Return the user matching login/password.

        Raises InvalidCredentialsError (unknown login or wrong password, never
        distinguished) or UnavailableServiceError.
        """
        ...


class ProfileStorage(Protocol):
    def is_authorized(self, user: User, profile: str) -> bool:
        """True when profile is empty or user holds it. Errors yield False."""
        ...


class InviteStorage(Protocol):
    def create_invite(self, description: str) -> tuple[User, Invite]: ...

    def list_invites(self) -> list[Invite]: ...
