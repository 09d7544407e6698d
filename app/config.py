# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Verification API configuration.

Configurable defaults may be overridden via environment variables.  The
values that shape issued tokens are bundled into an immutable
:class:`TokenConfig` which is handed to the token issuer at construction.
"""

import os
from dataclasses import dataclass
from datetime import timedelta

# =============================================================================
# TOKEN ISSUANCE
# =============================================================================

TOKEN_SIGNING_KEY: str = os.getenv("VERIFY_TOKEN_SIGNING_KEY", "token-signing")
TOKEN_ISSUER: str = os.getenv("VERIFY_TOKEN_ISSUER", "diagnosis-verification-example")
TOKEN_DURATION_SECONDS: int = int(os.getenv("VERIFY_TOKEN_DURATION_SECONDS", "86400"))

# =============================================================================
# KEY MANAGEMENT
# =============================================================================

KEY_MANAGER: str = os.getenv("VERIFY_KEY_MANAGER", "memory").lower()
SIGNING_KEYS_DIR: str = os.getenv("VERIFY_SIGNING_KEYS_DIR", "./keys")
SIGNING_KEY_PASSWORD: str = os.getenv("VERIFY_SIGNING_KEY_PASSWORD", "")

# =============================================================================
# PERSISTENCE
# =============================================================================

CODE_STORE: str = os.getenv("VERIFY_CODE_STORE", "sql").lower()
DATABASE_URL: str = os.getenv("VERIFY_DATABASE_URL", "sqlite:///./verification.db")

# =============================================================================
# NETWORK / AUTH
# =============================================================================

HTTP_HOST: str = os.getenv("VERIFY_HTTP_HOST", "0.0.0.0")
HTTP_PORT: int = int(os.getenv("VERIFY_HTTP_PORT", "8080"))


def _parse_api_keys() -> frozenset[str]:
    env_value = os.getenv("VERIFY_API_KEYS", "")
    return frozenset(key.strip() for key in env_value.split(",") if key.strip())


API_KEYS: frozenset[str] = _parse_api_keys()

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("VERIFY_LOG_LEVEL", "INFO")


# =============================================================================
# TOKEN CONFIG VALUE
# =============================================================================

@dataclass(frozen=True)
class TokenConfig:
    """Deployment settings that shape every issued verification token.

    Attributes:
        issuer:          Value of both the ``iss`` and ``aud`` claims.
        signing_key_id:  Key identifier passed to the key manager.
        token_duration:  Lifetime of the token and of the store record.
    """

    issuer: str
    signing_key_id: str
    token_duration: timedelta

    def __post_init__(self) -> None:
        if not self.issuer:
            raise ValueError("token issuer must not be empty")
        if not self.signing_key_id:
            raise ValueError("signing key id must not be empty")
        if self.token_duration <= timedelta(0):
            raise ValueError(
                f"token duration must be positive, got {self.token_duration}"
            )
        # JWT iat/exp are whole seconds.
        if self.token_duration.microseconds:
            raise ValueError(
                f"token duration must be a whole number of seconds, got {self.token_duration}"
            )


def load_token_config() -> TokenConfig:
    """Build a :class:`TokenConfig` from the module-level settings."""
    return TokenConfig(
        issuer=TOKEN_ISSUER,
        signing_key_id=TOKEN_SIGNING_KEY,
        token_duration=timedelta(seconds=TOKEN_DURATION_SECONDS),
    )
