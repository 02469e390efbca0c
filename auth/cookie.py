"""
auth/cookie.py -- Signed session cookie carrying a SessionClaim.

Security design decisions:
  JWT: python-jose with HS256 over the JSON payload
       {iss, sub, exp, iat, nbf, jti, user, token?}. sub is the user's display
       name and jti its ID. jose validates exp/nbf/iat on decode, so an expired
       or not-yet-valid cookie is rejected before the payload is read.

  Cookie attributes: Path=/, HttpOnly (XSS cannot read it), SameSite=Strict
       (never sent on cross-site requests), Secure only when the request came
       in over TLS, Max-Age equal to the JWT lifetime so both expire together.

  Disabled mode: without an HMAC secret every operation is a no-op and get()
       always reports the cookie as absent.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import InvalidCredentialsError, MalformedContentError
from auth.models import SessionClaim, User

logger = logging.getLogger("authmw.cookie")

COOKIE_NAME = "_auth"

_ALGORITHM = "HS256"
_ISSUER = "auth"


class CookieService:
    """Issue, read and clear the session cookie.

    Usage:
        cookie = CookieService(settings.cookie_hmac_secret, settings.cookie_jwt_expiration)
        cookie.set(request, response, COOKIE_NAME, SessionClaim(user=user))
        claim = cookie.get(request, COOKIE_NAME)
    """

    def __init__(self, hmac_secret: str, expiration: int) -> None:
        self._secret = hmac_secret
        self._expiration = expiration

    def is_enabled(self) -> bool:
        return bool(self._secret)

    def _encode(self, claim: SessionClaim) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": _ISSUER,
            "sub": claim.user.name,
            "exp": now + timedelta(seconds=self._expiration),
            "iat": now,
            "nbf": now,
            "jti": claim.user.id,
            "user": claim.user.to_dict(),
        }
        if claim.token is not None:
            payload["token"] = claim.token
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def set(self, request, response, name: str, claim: SessionClaim) -> None:
        """Sign claim and write it as a cookie on response."""
        if not self.is_enabled():
            return
        response.set_cookie(
            name,
            value=self._encode(claim),
            max_age=self._expiration,
            path="/",
            secure=request.url.scheme == "https",
            httponly=True,
            samesite="strict",
        )

    def get(self, request, name: str) -> SessionClaim:
        """Read and verify the named cookie.

        Raises MalformedContentError when the cookie is absent (or the envelope
        is disabled) and InvalidCredentialsError when it fails verification.
        """
        if not self.is_enabled():
            raise MalformedContentError("cookie envelope disabled")
        value = request.cookies.get(name)
        if not value:
            raise MalformedContentError(f"no {name} cookie")
        try:
            payload = jwt.decode(
                value,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=_ISSUER,
                options={"verify_aud": False},
            )
        except JWTError as exc:
            raise InvalidCredentialsError(f"parse JWT: {exc}") from exc
        user = payload.get("user")
        if not isinstance(user, dict):
            raise InvalidCredentialsError("parse JWT: missing user claim")
        return SessionClaim(user=User.from_dict(user), token=payload.get("token"))

    def clear(self, request, response, name: str) -> None:
        """Overwrite the named cookie with an empty, already-expired value."""
        if not self.is_enabled():
            return
        response.set_cookie(
            name,
            value="",
            max_age=-1,
            path="/",
            secure=request.url.scheme == "https",
            httponly=True,
            samesite="strict",
        )
