# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the verification code stores (app.verifyapi.store).

Contract tests run against both the in-memory and the SQLite-backed
store: error classification, single use, token record contents and
racing claims from several threads.
"""

from __future__ import annotations

import threading
from datetime import date, timedelta

import pytest
from sqlalchemy import text

from app.verifyapi.exceptions import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    CodeNotFoundError,
    StoreUnavailableError,
)

DURATION = timedelta(hours=24)


class TestExchangeContract:

    def test_success(self, code_store, clock):
        code_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))

        token = code_store.verify_code_and_issue_token("XYZ789", DURATION)

        assert token.test_type == "confirmed"
        assert token.test_date == date(2026, 3, 1)
        assert token.format_test_date() == "2026-03-01"
        assert token.expires_at == clock() + DURATION
        assert token.token_id

    def test_code_marked_claimed(self, code_store, clock):
        code_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))
        code_store.verify_code_and_issue_token("XYZ789", DURATION)

        assert code_store.get_code("XYZ789").claimed is True

    def test_not_found(self, code_store):
        with pytest.raises(CodeNotFoundError):
            code_store.verify_code_and_issue_token("NOPE00", DURATION)

    def test_expired(self, code_store, clock):
        code_store.add_code("ABC123", "confirmed", date(2026, 3, 1), clock())
        clock.advance(seconds=1)

        with pytest.raises(CodeExpiredError) as exc_info:
            code_store.verify_code_and_issue_token("ABC123", DURATION)
        assert exc_info.value.message == "verification code expired"
        assert exc_info.value.caller_error

    def test_expiry_boundary_is_exclusive(self, code_store, clock):
        code_store.add_code("ABC123", "confirmed", date(2026, 3, 1), clock())

        with pytest.raises(CodeExpiredError):
            code_store.verify_code_and_issue_token("ABC123", DURATION)

    def test_used(self, code_store, clock):
        code_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))
        code_store.verify_code_and_issue_token("XYZ789", DURATION)

        with pytest.raises(CodeAlreadyUsedError) as exc_info:
            code_store.verify_code_and_issue_token("XYZ789", DURATION)
        assert exc_info.value.message == "verification code used"

    def test_used_takes_precedence_over_expired(self, code_store, clock):
        code_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), clock() + timedelta(minutes=1))
        code_store.verify_code_and_issue_token("XYZ789", DURATION)
        clock.advance(hours=2)

        with pytest.raises(CodeAlreadyUsedError):
            code_store.verify_code_and_issue_token("XYZ789", DURATION)

    def test_expired_code_is_not_consumed(self, code_store, clock):
        code_store.add_code("ABC123", "confirmed", date(2026, 3, 1), clock())
        clock.advance(seconds=1)

        with pytest.raises(CodeExpiredError):
            code_store.verify_code_and_issue_token("ABC123", DURATION)
        assert code_store.get_code("ABC123").claimed is False

    def test_token_ids_unique(self, code_store, clock):
        ids = set()
        for i in range(5):
            code_store.add_code(f"CODE{i}", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))
            ids.add(code_store.verify_code_and_issue_token(f"CODE{i}", DURATION).token_id)
        assert len(ids) == 5

    def test_duplicate_code_rejected(self, code_store, clock):
        code_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))
        with pytest.raises(ValueError):
            code_store.add_code("XYZ789", "likely", date(2026, 3, 1), clock() + timedelta(hours=1))

    def test_naive_expiry_rejected(self, code_store, clock):
        naive = (clock() + timedelta(hours=1)).replace(tzinfo=None)
        with pytest.raises(ValueError):
            code_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), naive)
        assert code_store.get_code("XYZ789") is None

    def test_issued_token_readable(self, code_store, clock):
        code_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))
        token = code_store.verify_code_and_issue_token("XYZ789", DURATION)

        assert code_store.get_token(token.token_id) == token
        assert code_store.get_token("missing") is None


class TestConcurrentClaims:

    def test_racing_threads_single_success(self, code_store, clock):
        """Many threads racing for one code produce exactly one token."""
        code_store.add_code("RACE01", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))

        barrier = threading.Barrier(8)
        successes = []
        failures = []
        lock = threading.Lock()

        def claim():
            barrier.wait()
            try:
                token = code_store.verify_code_and_issue_token("RACE01", DURATION)
            except CodeAlreadyUsedError as exc:
                with lock:
                    failures.append(exc)
            else:
                with lock:
                    successes.append(token)

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(successes) == 1
        assert len(failures) == 7


class TestSQLStore:

    def test_token_row_written(self, sql_store, sql_engine, clock):
        sql_store.add_code("XYZ789", "confirmed", date(2026, 3, 1), clock() + timedelta(hours=1))
        token = sql_store.verify_code_and_issue_token("XYZ789", DURATION)

        with sql_engine.connect() as conn:
            rows = conn.execute(text("SELECT token_id, test_type FROM verification_tokens")).all()
        assert rows == [(token.token_id, "confirmed")]

    def test_no_token_row_on_failure(self, sql_store, sql_engine, clock):
        sql_store.add_code("ABC123", "confirmed", date(2026, 3, 1), clock())
        clock.advance(seconds=1)

        with pytest.raises(CodeExpiredError):
            sql_store.verify_code_and_issue_token("ABC123", DURATION)

        with sql_engine.connect() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM verification_tokens")).scalar()
        assert count == 0

    def test_database_failure_is_store_unavailable(self, sql_store, sql_engine):
        with sql_engine.begin() as conn:
            conn.execute(text("DROP TABLE verification_tokens"))
            conn.execute(text("DROP TABLE verification_codes"))

        with pytest.raises(StoreUnavailableError):
            sql_store.verify_code_and_issue_token("XYZ789", DURATION)
