"""
auth/errors.py -- Exception taxonomy for the auth pipeline.

Two families:
  AuthError   -- request-level outcomes. Providers raise them from get_user()
                 and the middleware turns them into 401/403 responses through
                 the provider hooks.
  ArgonError  -- encoded hash parsing and verification failures. The stores
                 collapse every ArgonError into InvalidCredentialsError so a
                 caller cannot tell which component rejected the login.

Layer rule: stdlib only.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Request-level errors
# ---------------------------------------------------------------------------


class AuthError(Exception):
    """Base class for every error a provider may raise from get_user()."""


class MalformedContentError(AuthError):
    """Missing or unparseable authorization data.

    Expected for every unauthenticated browser hit, so it is never logged.
    """


class InvalidCredentialsError(AuthError):
    """Credentials were parsed but did not match a known identity."""


class UnknownUserError(AuthError):
    """No invite or external binding for the given key."""


class UnavailableServiceError(AuthError):
    """A backend (database, upstream provider) failed transiently."""


class ForbiddenError(AuthError):
    """Authenticated, but the user lacks the required profile."""


# ---------------------------------------------------------------------------
# Argon2id encoded hash errors
# ---------------------------------------------------------------------------


class ArgonError(ValueError):
    """Base class for argon2id encode/verify failures."""


class InvalidEncodedHashError(ArgonError):
    """The encoded hash does not have the $-separated layout."""


class UnhandledAlgorithmError(ArgonError):
    """The algorithm tag is not argon2id."""


class UnhandledVersionError(ArgonError):
    """The argon2 version is not the one this build computes."""


class ParamsDecodeError(ArgonError):
    """The m=,t=,p= segment (or the version number) could not be parsed."""


class SaltDecodeError(ArgonError):
    """The salt is not strict unpadded base64."""


class HashDecodeError(ArgonError):
    """The hash is not strict unpadded base64."""


class HashMismatchError(ArgonError):
    """The password does not match the encoded hash."""
