# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Compact ES256 JWT serialization.

Builds ``base64url(header).base64url(claims).base64url(signature)``
tokens using a :class:`~app.verifyapi.signer.SigningHandle`.

:func:`decode_unverified` and :func:`verify_jwt` are the inverse, used by
the test suite to check issued tokens against a P-256 public key.  They
check only the signature and algorithm, not the claims.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from app.verifyapi.signer import SigningHandle

ALGORITHM = "ES256"

_SIGNATURE_LEN = 64


class JWSError(ValueError):
    """A compact JWS could not be decoded or failed verification."""
    pass


@dataclass(frozen=True)
class DecodedToken:
    header: Dict[str, Any]
    claims: Dict[str, Any]


# ---------------------------------------------------------------------------
# base64url / JSON helpers
# ---------------------------------------------------------------------------

def b64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise JWSError(f"invalid base64url segment: {exc}") from exc


def _encode_json(obj: Dict[str, Any]) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def _decode_json(segment: str, label: str) -> Dict[str, Any]:
    try:
        obj = json.loads(b64url_decode(segment))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise JWSError(f"JSON decoding of {label} failed: {exc}") from exc
    if not isinstance(obj, dict):
        raise JWSError(f"expected JSON object for {label}, got {type(obj).__name__}")
    return obj


# ---------------------------------------------------------------------------
# Sign / verify
# ---------------------------------------------------------------------------

def sign_jwt(claims: Dict[str, Any], signer: SigningHandle) -> str:
    """Serialize *claims* and sign them with *signer* as an ES256 JWT.

    Raises:
        SigningError: Propagated from the signing handle.
    """
    header = {"alg": ALGORITHM, "typ": "JWT", "kid": signer.key_id}
    signing_input = f"{_encode_json(header)}.{_encode_json(claims)}"
    signature = signer.sign(signing_input.encode("ascii"))
    return f"{signing_input}.{b64url_encode(signature)}"


def decode_unverified(token: str) -> DecodedToken:
    """Decode header and claims without checking the signature."""
    parts = token.split(".")
    if len(parts) != 3:
        raise JWSError(f"expected 3 segments, got {len(parts)}")
    return DecodedToken(
        header=_decode_json(parts[0], "header"),
        claims=_decode_json(parts[1], "claims"),
    )


def verify_jwt(token: str, public_key: ec.EllipticCurvePublicKey) -> DecodedToken:
    """Verify an ES256 JWT and return its decoded header and claims.

    Raises:
        JWSError: If the token is malformed, uses another algorithm, or the
            signature does not verify.
    """
    decoded = decode_unverified(token)
    alg = decoded.header.get("alg")
    if alg != ALGORITHM:
        raise JWSError(f"unexpected algorithm {alg!r}")

    raw_header, raw_claims, raw_sig = token.split(".")
    signature = b64url_decode(raw_sig)
    if len(signature) != _SIGNATURE_LEN:
        raise JWSError(f"ES256 signature must be {_SIGNATURE_LEN} bytes, got {len(signature)}")

    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    try:
        public_key.verify(
            encode_dss_signature(r, s),
            f"{raw_header}.{raw_claims}".encode("ascii"),
            ec.ECDSA(hashes.SHA256()),
        )
    except InvalidSignature as exc:
        raise JWSError("signature verification failed") from exc
    return decoded
