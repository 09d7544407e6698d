# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for compact ES256 JWT encoding (app.verifyapi.jws)."""

from __future__ import annotations

import json

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from app.verifyapi.jws import (
    JWSError,
    b64url_decode,
    b64url_encode,
    decode_unverified,
    sign_jwt,
    verify_jwt,
)
from app.verifyapi.signer import ECDSASigner

CLAIMS = {"iss": "issuer", "aud": "issuer", "sub": "confirmed.2026-03-01", "jti": "t1", "iat": 1, "exp": 2}


@pytest.fixture
def signer() -> ECDSASigner:
    return ECDSASigner("k1", ec.generate_private_key(ec.SECP256R1()))


class TestSignJWT:

    def test_round_trip(self, signer):
        token = sign_jwt(CLAIMS, signer)

        decoded = verify_jwt(token, signer.public_key())

        assert decoded.header == {"alg": "ES256", "typ": "JWT", "kid": "k1"}
        assert decoded.claims == CLAIMS

    def test_no_padding(self, signer):
        token = sign_jwt(CLAIMS, signer)
        assert "=" not in token
        assert token.count(".") == 2

    def test_signature_segment_is_64_bytes(self, signer):
        token = sign_jwt(CLAIMS, signer)
        assert len(b64url_decode(token.split(".")[2])) == 64


class TestVerifyJWT:

    def test_wrong_key(self, signer):
        token = sign_jwt(CLAIMS, signer)
        other = ec.generate_private_key(ec.SECP256R1()).public_key()

        with pytest.raises(JWSError):
            verify_jwt(token, other)

    def test_tampered_claims(self, signer):
        header, _, sig = sign_jwt(CLAIMS, signer).split(".")
        forged = b64url_encode(json.dumps({**CLAIMS, "sub": "negative.2026-03-01"}).encode())

        with pytest.raises(JWSError):
            verify_jwt(f"{header}.{forged}.{sig}", signer.public_key())

    def test_wrong_algorithm(self, signer):
        _, claims, sig = sign_jwt(CLAIMS, signer).split(".")
        header = b64url_encode(json.dumps({"alg": "none"}).encode())

        with pytest.raises(JWSError, match="algorithm"):
            verify_jwt(f"{header}.{claims}.{sig}", signer.public_key())

    def test_short_signature(self, signer):
        header, claims, _ = sign_jwt(CLAIMS, signer).split(".")

        with pytest.raises(JWSError):
            verify_jwt(f"{header}.{claims}.{b64url_encode(b'short')}", signer.public_key())


class TestDecodeUnverified:

    @pytest.mark.parametrize("token", ["", "a.b", "a.b.c.d"])
    def test_wrong_segment_count(self, token):
        with pytest.raises(JWSError):
            decode_unverified(token)

    def test_non_object_claims(self):
        token = f"{b64url_encode(b'{}')}.{b64url_encode(b'[1]')}.sig"
        with pytest.raises(JWSError):
            decode_unverified(token)

    def test_invalid_json(self):
        token = f"{b64url_encode(b'{}')}.{b64url_encode(b'not json')}.sig"
        with pytest.raises(JWSError):
            decode_unverified(token)
