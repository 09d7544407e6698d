"""Verification code exchange: signers, code stores and the token issuer."""

from .exceptions import (
    CodeAlreadyUsedError,
    CodeExchangeError,
    CodeExpiredError,
    CodeNotFoundError,
    KeyUnavailableError,
    SigningError,
    StoreUnavailableError,
    VerifyAPIError,
)
from .issuer import ExchangeState, IssueResult, TokenIssuer
from .models import VerificationToken, VerifyCodeRequest, VerifyCodeResponse
from .signer import FileKeyManager, InMemoryKeyManager, KeyManager, SigningHandle
from .store import CodeStore, InMemoryCodeStore, SQLCodeStore

__all__ = [
    "CodeAlreadyUsedError",
    "CodeExchangeError",
    "CodeExpiredError",
    "CodeNotFoundError",
    "CodeStore",
    "ExchangeState",
    "FileKeyManager",
    "InMemoryCodeStore",
    "InMemoryKeyManager",
    "IssueResult",
    "KeyManager",
    "KeyUnavailableError",
    "SQLCodeStore",
    "SigningError",
    "SigningHandle",
    "StoreUnavailableError",
    "TokenIssuer",
    "VerificationToken",
    "VerifyAPIError",
    "VerifyCodeRequest",
    "VerifyCodeResponse",
]
