# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Verification API models: wire formats and store records."""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

TEST_DATE_FORMAT = "%Y-%m-%d"


# =============================================================================
# Store records
# =============================================================================

@dataclass(frozen=True)
class VerificationCode:
    """A short-lived, single-use code as held by the code store."""

    code: str
    test_type: str
    test_date: date
    expires_at: datetime
    claimed: bool = False


@dataclass(frozen=True)
class VerificationToken:
    """Record produced by the store when a code is consumed.

    Attributes:
        token_id:    Unique identifier, carried as the JWT ``jti`` claim.
        test_type:   Category of the reported test result.
        test_date:   Date of the test.
        expires_at:  When the token record itself stops being valid.
    """

    token_id: str
    test_type: str
    test_date: date
    expires_at: datetime

    def format_test_date(self) -> str:
        return self.test_date.strftime(TEST_DATE_FORMAT)

    def subject(self) -> str:
        return f"{self.test_type}.{self.format_test_date()}"


def parse_subject(subject: str) -> Tuple[str, date]:
    """Split a token subject back into ``(test_type, test_date)``.

    Raises:
        ValueError: If the subject has no ``.`` separator or the date part
            does not match ``YYYY-MM-DD``.
    """
    test_type, sep, formatted = subject.rpartition(".")
    if not sep:
        raise ValueError(f"subject {subject!r} has no '.' separator")
    return test_type, datetime.strptime(formatted, TEST_DATE_FORMAT).date()


# =============================================================================
# HTTP request / response
# =============================================================================

class VerifyCodeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    verification_code: str = Field(alias="code")

    @field_validator("verification_code")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("verification code must not be empty")
        return value


class VerifyCodeResponse(BaseModel):
    testtype: str
    testdate: str
    token: str


class ErrorResponse(BaseModel):
    error: str


def error_body(message: str) -> dict:
    return ErrorResponse(error=message).model_dump()
