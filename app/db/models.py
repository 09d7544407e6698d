"""SQLAlchemy models for verification code persistence.

A row in ``verification_codes`` is claimed at most once; the claim and
the matching ``verification_tokens`` row are written in one transaction.
Timestamps are stored as naive UTC.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import DeclarativeBase


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class VerificationCodeRecord(Base):
    """Short-lived code issued to a patient after a test result is reported."""
    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    test_type = Column(String(64), nullable=False)
    test_date = Column(Date, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    claimed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class VerificationTokenRecord(Base):
    """Token issued in exchange for a claimed verification code."""
    __tablename__ = "verification_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String(64), nullable=False, unique=True)
    code_id = Column(Integer, ForeignKey("verification_codes.id"), nullable=False, unique=True)
    test_type = Column(String(64), nullable=False)
    test_date = Column(Date, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)
