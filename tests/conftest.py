"""
tests/conftest.py -- Shared fixtures for the auth middleware test suite.

This module provides:
  - SECRET / make_settings(): a valid cookie secret and a Settings factory
  - cookie: CookieService signing with SECRET
  - sql_store: UserStore on a throwaway SQLite file
  - memory_store: empty MemoryStore
  - fast_params: cheap argon2id parameters for hashes built inside tests
  - FakeClock: injectable clock to move cache TTLs forward without sleeping

Design: SQLite files under tmp_path (not :memory:) because TestClient runs
sync handlers in a thread pool and every pooled connection must see the
same schema.

The argon2id parameters are read once per process by
auth.passwords.default_params(); the env vars below must be set before any
auth/core import so every hash minted during the run is cheap to verify.
"""

from __future__ import annotations

import os
from collections.abc import Generator

# CRITICAL: set before any auth/core import (Settings is cached on first use).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ARGON_MEMORY", "64")
os.environ.setdefault("ARGON_ITERATIONS", "1")

import pytest

from auth.cookie import CookieService
from auth.memory import MemoryStore
from auth.passwords import ArgonParams
from auth.store import UserStore
from core.config import Settings

SECRET = "0123456789abcdef0123456789abcdef"


def make_settings(**overrides) -> Settings:
    """Settings with a valid cookie secret; keyword arguments win over env."""
    values = {"cookie_hmac_secret": SECRET}
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fast_params() -> ArgonParams:
    return ArgonParams(memory=64, iterations=1, parallelism=1, salt_length=16, key_length=32)


@pytest.fixture
def cookie() -> CookieService:
    return CookieService(SECRET, 3600)


@pytest.fixture
def sql_store(tmp_path) -> Generator[UserStore, None, None]:
    store = UserStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield store
    store.close()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()
