# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Verification API exceptions.

Collaborator failures (key management, code store) are raised as
subclasses of :class:`VerifyAPIError` and converted into response
payloads by the token issuer.  Only expired and already-used codes are
caller errors; everything else is reported as a server failure.
"""


class VerifyAPIError(Exception):
    """Base exception for verification API errors."""

    caller_error: bool = False

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class KeyUnavailableError(VerifyAPIError):
    """The key manager could not supply an active signing key."""

    @classmethod
    def unknown(cls, key_id: str) -> "KeyUnavailableError":
        return cls(code="KEY_UNAVAILABLE", message=f"no signing key with id {key_id!r}")

    @classmethod
    def disabled(cls, key_id: str) -> "KeyUnavailableError":
        return cls(code="KEY_UNAVAILABLE", message=f"signing key {key_id!r} is disabled")

    @classmethod
    def unreadable(cls, key_id: str, reason: str) -> "KeyUnavailableError":
        return cls(code="KEY_UNAVAILABLE", message=f"signing key {key_id!r} could not be loaded: {reason}")


class SigningError(VerifyAPIError):
    """A signing handle failed to produce a signature."""

    @classmethod
    def revoked(cls, key_id: str) -> "SigningError":
        return cls(code="SIGNING_FAILED", message=f"signing key {key_id!r} was revoked")

    @classmethod
    def failed(cls, key_id: str, reason: str) -> "SigningError":
        return cls(code="SIGNING_FAILED", message=f"signing with key {key_id!r} failed: {reason}")


class CodeExchangeError(VerifyAPIError):
    """Base class for failures returned by the code store."""
    pass


class CodeNotFoundError(CodeExchangeError):
    """The verification code does not exist."""

    def __init__(self, message: str = "verification code not found"):
        super().__init__(code="CODE_NOT_FOUND", message=message)


class CodeExpiredError(CodeExchangeError):
    """The verification code existed but its validity window elapsed."""

    caller_error = True

    def __init__(self, message: str = "verification code expired"):
        super().__init__(code="CODE_EXPIRED", message=message)


class CodeAlreadyUsedError(CodeExchangeError):
    """The verification code was already exchanged for a token."""

    caller_error = True

    def __init__(self, message: str = "verification code used"):
        super().__init__(code="CODE_USED", message=message)


class StoreUnavailableError(CodeExchangeError):
    """Transient infrastructure failure unrelated to code validity."""

    def __init__(self, message: str = "verification code store unavailable"):
        super().__init__(code="STORE_UNAVAILABLE", message=message)
