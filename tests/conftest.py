# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared test fixtures for the verification API test suite.

Provides a controllable clock, an in-memory key manager holding a real
P-256 key, in-memory and SQLite-backed code stores, and a ready-wired
:class:`TokenIssuer`.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable

import pytest

from app.config import TokenConfig
from app.db.session import build_engine, init_database, make_session_factory
from app.verifyapi.issuer import TokenIssuer
from app.verifyapi.signer import InMemoryKeyManager
from app.verifyapi.store import InMemoryCodeStore, SQLCodeStore

KEY_ID = "token-signing"
ISSUER = "diagnosis-verification-test"
TOKEN_DURATION = timedelta(hours=24)
TEST_DATE = date(2026, 3, 1)
NOW = datetime(2026, 3, 2, 9, 30, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# =========================================================================
# Clock / config
# =========================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_config() -> TokenConfig:
    return TokenConfig(
        issuer=ISSUER,
        signing_key_id=KEY_ID,
        token_duration=TOKEN_DURATION,
    )


# =========================================================================
# Keys
# =========================================================================

@pytest.fixture
def key_manager() -> InMemoryKeyManager:
    """In-memory key manager with a fresh P-256 key under ``KEY_ID``."""
    manager = InMemoryKeyManager()
    manager.generate(KEY_ID)
    return manager


@pytest.fixture
def public_key(key_manager):
    return key_manager.public_key(KEY_ID)


# =========================================================================
# Code stores
# =========================================================================

@pytest.fixture
def memory_store(clock) -> InMemoryCodeStore:
    return InMemoryCodeStore(clock=clock)


@pytest.fixture
def sql_engine(tmp_path):
    """Isolated file-backed SQLite database with tables created."""
    engine = build_engine(f"sqlite:///{tmp_path / 'codes.db'}")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine, clock) -> SQLCodeStore:
    return SQLCodeStore(session_factory=make_session_factory(sql_engine), clock=clock)


@pytest.fixture(params=["memory", "sql"])
def code_store(request, memory_store, sql_engine, clock):
    """Both store implementations, for contract tests."""
    if request.param == "memory":
        return memory_store
    return SQLCodeStore(session_factory=make_session_factory(sql_engine), clock=clock)


@pytest.fixture
def add_code(memory_store, clock) -> Callable[..., str]:
    """Factory fixture: register a code in ``memory_store``.

    ``valid_for`` is relative to the fake clock; negative values create
    already-expired codes.
    """

    def _add(
        code: str = "XYZ789",
        test_type: str = "confirmed",
        test_date: date = TEST_DATE,
        valid_for: timedelta = timedelta(hours=1),
    ) -> str:
        memory_store.add_code(code, test_type, test_date, clock() + valid_for)
        return code

    return _add


# =========================================================================
# Issuer
# =========================================================================

@pytest.fixture
def issuer(token_config, key_manager, memory_store, clock) -> TokenIssuer:
    return TokenIssuer(
        config=token_config,
        key_manager=key_manager,
        store=memory_store,
        clock=clock,
    )
