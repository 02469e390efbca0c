"""
auth/passwords.py -- argon2id and bcrypt password hashing.

Security design decisions:
  argon2id: the current scheme. Keys are derived with argon2-cffi's low-level
       hash_secret_raw() so the encoded string stays in the canonical
       "$argon2id$v=19$m=..,t=..,p=..$<salt>$<hash>" form with unpadded
       standard base64, byte-compatible with hashes minted by other
       deployments. Parameters (memory, iterations, parallelism, salt and key
       length) come from Settings once per process. Verification recomputes
       with the parameters stored in the hash, so changing them later keeps
       existing hashes valid.

  bcrypt: legacy scheme. Only verified, never written by the stores: a
       successful bcrypt login is re-encoded to argon2id by the caller.
       hash_bcrypt() exists for the CLI and for seeding test fixtures.

  Constant time: the final comparison uses hmac.compare_digest.

Layer rule: no imports from api/, web/, or cache/. Import from core/ is
allowed.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import os
import time
from dataclasses import dataclass
from functools import lru_cache

import bcrypt
from argon2.exceptions import HashingError
from argon2.low_level import ARGON2_VERSION, Type, hash_secret_raw

from auth.errors import (
    HashDecodeError,
    HashMismatchError,
    InvalidEncodedHashError,
    ParamsDecodeError,
    SaltDecodeError,
    UnhandledAlgorithmError,
    UnhandledVersionError,
)
from core.config import get_settings

ARGON_PREFIX = "$argon2id"
_ALGORITHM = "argon2id"

# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArgonParams:
    memory: int = 7168  # KiB
    iterations: int = 5
    parallelism: int = 1
    salt_length: int = 23
    key_length: int = 32


@lru_cache
def default_params() -> ArgonParams:
    """Return the process-wide argon2id parameters from Settings."""
    cfg = get_settings()
    return ArgonParams(
        memory=cfg.argon_memory,
        iterations=cfg.argon_iterations,
        parallelism=cfg.argon_parallelism,
        salt_length=cfg.argon_salt_length,
        key_length=cfg.argon_key_length,
    )


# ---------------------------------------------------------------------------
# Raw (unpadded) standard base64
# ---------------------------------------------------------------------------


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    """Decode unpadded standard base64, rejecting padding and non-canonical input."""
    if "=" in value:
        raise ValueError("padded base64")
    decoded = base64.b64decode(value + "=" * (-len(value) % 4), validate=True)
    # Leftover bits in the last character must be zero.
    if _b64encode(decoded) != value:
        raise ValueError("non-canonical base64")
    return decoded


# ---------------------------------------------------------------------------
# argon2id
# ---------------------------------------------------------------------------


def _derive(password: str, salt: bytes, params: ArgonParams, key_length: int) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=params.iterations,
        memory_cost=params.memory,
        parallelism=params.parallelism,
        hash_len=key_length,
        type=Type.ID,
        version=ARGON2_VERSION,
    )


def encode(password: str, params: ArgonParams | None = None) -> str:
    """Hash password with a fresh random salt and return the encoded string."""
    params = params or default_params()
    salt = os.urandom(params.salt_length)
    key = _derive(password, salt, params, params.key_length)
    return (
        f"${_ALGORITHM}$v={ARGON2_VERSION}"
        f"$m={params.memory},t={params.iterations},p={params.parallelism}"
        f"${_b64encode(salt)}${_b64encode(key)}"
    )


def _parse_params(segment: str) -> ArgonParams:
    values: dict[str, int] = {}
    for pair in segment.split(","):
        name, sep, raw = pair.partition("=")
        if not sep or name not in ("m", "t", "p") or name in values or not (raw.isascii() and raw.isdigit()):
            raise ParamsDecodeError(f"invalid parameter {pair!r}")
        values[name] = int(raw)
    if set(values) != {"m", "t", "p"}:
        raise ParamsDecodeError(f"expected m, t and p parameters in {segment!r}")
    if values["p"] > 255:
        raise ParamsDecodeError("parallelism out of range")
    return ArgonParams(memory=values["m"], iterations=values["t"], parallelism=values["p"])


def decode(encoded: str) -> tuple[ArgonParams, bytes, bytes]:
    """Parse an encoded hash into (params, salt, key).

    Raises one ArgonError subclass per failing component.
    """
    fields = encoded.split("$")
    if len(fields) != 6:
        raise InvalidEncodedHashError(f"expected 6 fields, got {len(fields)}")

    _, algorithm, version, params_segment, salt_segment, hash_segment = fields
    if algorithm != _ALGORITHM:
        raise UnhandledAlgorithmError(f"unhandled algorithm {algorithm!r}")

    version_name, _, version_value = version.partition("=")
    if version_name != "v" or not (version_value.isascii() and version_value.isdigit()):
        raise ParamsDecodeError(f"invalid version {version!r}")
    if int(version_value) != ARGON2_VERSION:
        raise UnhandledVersionError(f"unhandled version {version_value}")

    params = _parse_params(params_segment)

    try:
        salt = _b64decode(salt_segment)
    except (ValueError, binascii.Error) as exc:
        raise SaltDecodeError(f"decode salt: {exc}") from exc
    if not salt:
        raise SaltDecodeError("empty salt")

    try:
        key = _b64decode(hash_segment)
    except (ValueError, binascii.Error) as exc:
        raise HashDecodeError(f"decode hash: {exc}") from exc
    if not key:
        raise HashDecodeError("empty hash")

    return params, salt, key


def verify(encoded: str, password: str) -> None:
    """Check password against an encoded argon2id hash.

    Returns None on success. Raises HashMismatchError on a wrong password and
    another ArgonError subclass when the encoded hash cannot be parsed.
    """
    params, salt, key = decode(encoded)
    try:
        candidate = _derive(password, salt, params, len(key))
    except HashingError as exc:
        # Parameters parsed but rejected by the KDF (salt too short, memory too low...)
        raise ParamsDecodeError(f"compute hash: {exc}") from exc
    if not hmac.compare_digest(candidate, key):
        raise HashMismatchError("hash mismatch")


def is_argon(encoded: str) -> bool:
    return encoded.startswith(ARGON_PREFIX)


# ---------------------------------------------------------------------------
# bcrypt (legacy)
# ---------------------------------------------------------------------------


def hash_bcrypt(password: str, cost: int | None = None) -> str:
    """Return a bcrypt hash of password at the given cost (Settings.bcrypt_cost by default).

    Raises ValueError for passwords over bcrypt's 72-byte input limit.
    """
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raise ValueError("bcrypt passwords are limited to 72 bytes")
    rounds = cost if cost is not None else get_settings().bcrypt_cost
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_bcrypt(hashed: str, password: str) -> bool:
    """Return True if password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Invalid salt, or password over 72 bytes on recent bcrypt releases.
        return False


def find_best_cost(max_duration: float = 0.25) -> int:
    """Return the highest bcrypt cost whose hash completes within max_duration seconds."""
    best = 4
    for cost in range(4, 32):
        start = time.perf_counter()
        bcrypt.hashpw(b"bcrypt_score_probe", bcrypt.gensalt(rounds=cost))
        if time.perf_counter() - start > max_duration:
            break
        best = cost
    return best
