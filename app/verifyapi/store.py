# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Verification code stores.

A code store performs the one stateful step of the exchange: it
atomically checks a verification code and, if the code is known, unused
and unexpired, marks it claimed and records the issued token.  A code
yields at most one token no matter how many callers race for it.

Failure classification
----------------------
Checks run in this order, and the first that applies wins:

1. Unknown code → :class:`CodeNotFoundError`
2. Already claimed → :class:`CodeAlreadyUsedError` (even if it has since
   expired, so a replayed code always reports reuse)
3. Past ``expires_at`` → :class:`CodeExpiredError`

Infrastructure failures surface as :class:`StoreUnavailableError`.

Implementations
---------------
* :class:`InMemoryCodeStore`: dict guarded by a lock.
* :class:`SQLCodeStore`: SQLAlchemy; the claim is a single conditional
  ``UPDATE`` so there is no window between checking and claiming.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import CODE_STORE
from app.db.models import VerificationCodeRecord, VerificationTokenRecord
from app.db.session import get_db_session
from app.verifyapi.exceptions import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    CodeNotFoundError,
    StoreUnavailableError,
)
from app.verifyapi.models import VerificationCode, VerificationToken

logger = logging.getLogger(__name__)

__all__ = [
    "CodeStore",
    "InMemoryCodeStore",
    "SQLCodeStore",
    "get_code_store",
    "reset_code_store",
]

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_token_id() -> str:
    return str(uuid.uuid4())


def _require_aware(expires_at: datetime) -> datetime:
    if expires_at.tzinfo is None or expires_at.utcoffset() is None:
        raise ValueError("expires_at must be timezone-aware")
    return expires_at


class CodeStore(ABC):
    """Contract for the atomic consume-code-and-issue-token operation."""

    @abstractmethod
    def verify_code_and_issue_token(self, code: str, duration: timedelta) -> VerificationToken:
        """Consume *code* and return the token record it produced.

        Raises:
            CodeNotFoundError, CodeAlreadyUsedError, CodeExpiredError,
            StoreUnavailableError
        """

    @abstractmethod
    def add_code(
        self,
        code: str,
        test_type: str,
        test_date: date,
        expires_at: datetime,
    ) -> VerificationCode:
        """Register a new unclaimed code.

        Raises:
            ValueError: If *code* already exists or *expires_at* is naive.
        """

    @abstractmethod
    def get_code(self, code: str) -> Optional[VerificationCode]:
        """Current state of *code*, or None."""

    @abstractmethod
    def get_token(self, token_id: str) -> Optional[VerificationToken]:
        """Token record issued under *token_id*, or None."""


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryCodeStore(CodeStore):
    """Process-local code store.  The check and the claim share one lock."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utc_now
        self._codes: Dict[str, VerificationCode] = {}
        self._tokens: Dict[str, VerificationToken] = {}
        self._lock = threading.Lock()

    def add_code(self, code, test_type, test_date, expires_at):
        record = VerificationCode(
            code=code,
            test_type=test_type,
            test_date=test_date,
            expires_at=_require_aware(expires_at),
        )
        with self._lock:
            if code in self._codes:
                raise ValueError(f"verification code {code!r} already exists")
            self._codes[code] = record
        return record

    def get_code(self, code: str) -> Optional[VerificationCode]:
        with self._lock:
            return self._codes.get(code)

    def get_token(self, token_id: str) -> Optional[VerificationToken]:
        with self._lock:
            return self._tokens.get(token_id)

    def verify_code_and_issue_token(self, code: str, duration: timedelta) -> VerificationToken:
        now = self._clock()
        with self._lock:
            record = self._codes.get(code)
            if record is None:
                raise CodeNotFoundError()
            if record.claimed:
                raise CodeAlreadyUsedError()
            if record.expires_at <= now:
                raise CodeExpiredError()

            self._codes[code] = replace(record, claimed=True)
            token = VerificationToken(
                token_id=_new_token_id(),
                test_type=record.test_type,
                test_date=record.test_date,
                expires_at=now + duration,
            )
            self._tokens[token.token_id] = token

        logger.debug("Claimed verification code, issued token %s", token.token_id)
        return token


# =============================================================================
# SQL store
# =============================================================================


def _to_db(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


class SQLCodeStore(CodeStore):
    """Code store persisted through SQLAlchemy.

    *session_factory* defaults to the application's configured
    ``SessionLocal``; tests pass a factory bound to their own engine.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utc_now

    def add_code(self, code, test_type, test_date, expires_at):
        _require_aware(expires_at)
        try:
            with get_db_session(self._session_factory) as db:
                db.add(VerificationCodeRecord(
                    code=code,
                    test_type=test_type,
                    test_date=test_date,
                    expires_at=_to_db(expires_at),
                    claimed=False,
                ))
        except IntegrityError as exc:
            raise ValueError(f"verification code {code!r} already exists") from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"failed to store verification code: {exc}") from exc
        return VerificationCode(
            code=code,
            test_type=test_type,
            test_date=test_date,
            expires_at=expires_at,
        )

    def get_code(self, code: str) -> Optional[VerificationCode]:
        with get_db_session(self._session_factory) as db:
            record = db.query(VerificationCodeRecord).filter_by(code=code).first()
            if record is None:
                return None
            return VerificationCode(
                code=record.code,
                test_type=record.test_type,
                test_date=record.test_date,
                expires_at=_from_db(record.expires_at),
                claimed=record.claimed,
            )

    def get_token(self, token_id: str) -> Optional[VerificationToken]:
        with get_db_session(self._session_factory) as db:
            record = db.query(VerificationTokenRecord).filter_by(token_id=token_id).first()
            if record is None:
                return None
            return VerificationToken(
                token_id=record.token_id,
                test_type=record.test_type,
                test_date=record.test_date,
                expires_at=_from_db(record.expires_at),
            )

    def verify_code_and_issue_token(self, code: str, duration: timedelta) -> VerificationToken:
        now = self._clock()
        db_now = _to_db(now)

        try:
            with get_db_session(self._session_factory) as db:
                result = db.execute(
                    update(VerificationCodeRecord)
                    .where(
                        VerificationCodeRecord.code == code,
                        VerificationCodeRecord.claimed.is_(False),
                        VerificationCodeRecord.expires_at > db_now,
                    )
                    .values(claimed=True)
                )

                record = db.query(VerificationCodeRecord).filter_by(code=code).first()

                if result.rowcount != 1:
                    if record is None:
                        raise CodeNotFoundError()
                    if record.claimed:
                        raise CodeAlreadyUsedError()
                    raise CodeExpiredError()

                token = VerificationToken(
                    token_id=_new_token_id(),
                    test_type=record.test_type,
                    test_date=record.test_date,
                    expires_at=now + duration,
                )
                db.add(VerificationTokenRecord(
                    token_id=token.token_id,
                    code_id=record.id,
                    test_type=token.test_type,
                    test_date=token.test_date,
                    expires_at=_to_db(token.expires_at),
                ))
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"verification code store failed: {exc}") from exc

        logger.debug("Claimed verification code, issued token %s", token.token_id)
        return token


# =============================================================================
# Singleton
# =============================================================================

_code_store: Optional[CodeStore] = None


def get_code_store() -> CodeStore:
    """Return the process-wide code store, creating it on first use."""
    global _code_store
    if _code_store is None:
        if CODE_STORE == "sql":
            _code_store = SQLCodeStore()
        elif CODE_STORE == "memory":
            _code_store = InMemoryCodeStore()
            logger.warning("Using in-memory code store; codes do not survive restarts")
        else:
            raise ValueError(f"unknown code store backend: {CODE_STORE!r}")
    return _code_store


def reset_code_store() -> None:
    """Drop the process-wide code store (for tests)."""
    global _code_store
    _code_store = None
