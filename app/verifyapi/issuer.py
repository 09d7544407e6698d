# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Verification code → verification token exchange.

The :class:`TokenIssuer` runs the exchange for a single request:

1. **Validate**: the body must decode to ``{"code": "<non-empty>"}``.
   Failures are returned with transport status 200 and an error body;
   existing clients depend on this.
2. **Resolve signer**: ask the key manager for the configured key.
3. **Exchange**: consume the code in the code store.
4. **Build claims**: ``iss``/``aud``/``sub``/``jti``/``iat``/``exp``.
5. **Sign**: ES256 compact JWT.
6. **Respond**: test type, formatted test date, and the token.

Every collaborator failure is caught here and turned into exactly one
error body; the underlying error text is logged and never returned.
Nothing is retried: once step 3 succeeds the code is consumed and cannot
be restored, so a signing failure tells the caller to obtain a new code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from app.config import TokenConfig
from app.verifyapi.exceptions import CodeExchangeError, VerifyAPIError
from app.verifyapi.jws import sign_jwt
from app.verifyapi.models import (
    VerificationToken,
    VerifyCodeRequest,
    VerifyCodeResponse,
    error_body,
)
from app.verifyapi.signer import KeyManager, SigningHandle
from app.verifyapi.store import CodeStore

logger = logging.getLogger(__name__)

__all__ = [
    "ExchangeState",
    "IssueResult",
    "TokenIssuer",
    "build_claims",
]

MSG_INTERNAL = "internal server error"
MSG_SIGNER_UNAVAILABLE = "internal server error - unable to sign tokens"
MSG_SIGNING_FAILED = "error signing token, must obtain new verification code"


class ExchangeState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    SIGNER_RESOLVED = "SIGNER_RESOLVED"
    CODE_EXCHANGED = "CODE_EXCHANGED"
    CLAIMS_BUILT = "CLAIMS_BUILT"
    SIGNED = "SIGNED"
    RESPONDED = "RESPONDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class IssueResult:
    """Outcome of one exchange: transport status plus JSON body.

    ``state`` is ``RESPONDED`` or ``FAILED``; on failure ``failed_at`` is
    the last state reached before the failing step.
    """

    status_code: int
    body: Dict[str, Any]
    state: ExchangeState
    failed_at: Optional[ExchangeState] = None
    token_id: Optional[str] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.state == ExchangeState.RESPONDED


def build_claims(
    config: TokenConfig,
    token: VerificationToken,
    now: datetime,
) -> Dict[str, Any]:
    """Claim set for *token*, issued at *now* (UTC, whole seconds)."""
    issued_at = int(now.timestamp())
    return {
        "aud": config.issuer,
        "exp": issued_at + int(config.token_duration.total_seconds()),
        "jti": token.token_id,
        "iat": issued_at,
        "iss": config.issuer,
        "sub": token.subject(),
    }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Exchanges verification codes for signed verification tokens.

    Holds no per-request state; one instance serves all requests.
    """

    def __init__(
        self,
        config: TokenConfig,
        key_manager: KeyManager,
        store: CodeStore,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self._key_manager = key_manager
        self._store = store
        self._clock = clock or _utc_now

    async def issue(self, body: Union[bytes, str, Mapping[str, Any]]) -> IssueResult:
        # 1. Validate shape.
        try:
            if isinstance(body, Mapping):
                request = VerifyCodeRequest.model_validate(body)
            else:
                request = VerifyCodeRequest.model_validate_json(body)
        except ValidationError as exc:
            detail = _describe_validation_error(exc)
            logger.error("failed to bind request: %s", detail)
            return self._fail(200, f"invalid request: {detail}", ExchangeState.RECEIVED)

        # 2. Resolve the signer before touching the code, so a missing key
        # leaves the code unconsumed.
        try:
            signer = await self._key_manager.new_signer(self.config.signing_key_id)
        except Exception as exc:
            logger.error("unable to get signing key %s: %s", self.config.signing_key_id, exc)
            return self._fail(500, MSG_SIGNER_UNAVAILABLE, ExchangeState.VALIDATED)

        # 3. Exchange the short-term code for a long-term token record.
        try:
            token = self._store.verify_code_and_issue_token(
                request.verification_code,
                self.config.token_duration,
            )
        except CodeExchangeError as exc:
            logger.error("error issuing verification token: %s", exc.message)
            if exc.caller_error:
                return self._fail(400, exc.message, ExchangeState.SIGNER_RESOLVED)
            return self._fail(500, MSG_INTERNAL, ExchangeState.SIGNER_RESOLVED)
        except Exception:
            logger.exception("unexpected failure exchanging verification code")
            return self._fail(500, MSG_INTERNAL, ExchangeState.SIGNER_RESOLVED)

        # 4-5. Build claims and sign.
        claims = build_claims(self.config, token, self._clock())
        signed = self._sign(claims, signer, token)
        if signed is None:
            return self._fail(500, MSG_SIGNING_FAILED, ExchangeState.CLAIMS_BUILT, token_id=token.token_id)

        # 6. Respond.
        logger.info("Issued verification token %s (test_type=%s)", token.token_id, token.test_type)
        response = VerifyCodeResponse(
            testtype=token.test_type,
            testdate=token.format_test_date(),
            token=signed,
        )
        return IssueResult(
            status_code=200,
            body=response.model_dump(),
            state=ExchangeState.RESPONDED,
            token_id=token.token_id,
        )

    def _sign(
        self,
        claims: Dict[str, Any],
        signer: SigningHandle,
        token: VerificationToken,
    ) -> Optional[str]:
        try:
            return sign_jwt(claims, signer)
        except VerifyAPIError as exc:
            logger.error("error signing token %s: %s", token.token_id, exc.message)
        except Exception:
            logger.exception("unexpected failure signing token %s", token.token_id)
        return None

    @staticmethod
    def _fail(
        status_code: int,
        message: str,
        failed_at: ExchangeState,
        token_id: Optional[str] = None,
    ) -> IssueResult:
        return IssueResult(
            status_code=status_code,
            body=error_body(message),
            state=ExchangeState.FAILED,
            failed_at=failed_at,
            token_id=token_id,
        )


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)
