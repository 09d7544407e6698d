# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""ECDSA P-256 signing handles and the key managers that supply them.

A :class:`SigningHandle` is a capability bound to one private key.  It
produces ES256 signatures in the JWS wire form (raw ``r || s``, 64 bytes)
and exposes the public key for verifiers, but never the private key
itself.

Key managers resolve a configured key identifier into a handle:

* :class:`InMemoryKeyManager` holds keys in process memory.  Used for
  development deployments and by the test suite.
* :class:`FileKeyManager` loads ``<keys_dir>/<key_id>.pem`` on first use
  and caches the parsed key.

Both raise :class:`KeyUnavailableError` when no active key can be
supplied.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from app.config import (
    KEY_MANAGER,
    SIGNING_KEY_PASSWORD,
    SIGNING_KEYS_DIR,
    TOKEN_SIGNING_KEY,
)
from app.verifyapi.exceptions import KeyUnavailableError, SigningError

logger = logging.getLogger(__name__)

__all__ = [
    "ECDSASigner",
    "FileKeyManager",
    "InMemoryKeyManager",
    "KeyManager",
    "SigningHandle",
    "get_key_manager",
    "reset_key_manager",
]

# Byte length of each of r and s for P-256.
_P256_COORD_LEN = 32


class SigningHandle(ABC):
    """Capability that can produce an ES256 signature."""

    key_id: str

    @abstractmethod
    def sign(self, data: bytes) -> bytes:
        """Return the raw 64-byte ``r || s`` signature over *data*.

        Raises:
            SigningError: If the handle can no longer sign.
        """

    @abstractmethod
    def public_key(self) -> ec.EllipticCurvePublicKey:
        """Return the verification key matching this handle."""


class ECDSASigner(SigningHandle):
    """Signing handle backed by a local P-256 private key.

    *is_active* is consulted before every signature so that a key
    disabled after the handle was issued stops signing immediately.
    """

    def __init__(self, key_id: str, private_key: ec.EllipticCurvePrivateKey, is_active=None):
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise KeyUnavailableError.unreadable(key_id, f"expected P-256 key, got {private_key.curve.name}")
        self.key_id = key_id
        self._private_key = private_key
        self._is_active = is_active or (lambda: True)

    def sign(self, data: bytes) -> bytes:
        if not self._is_active():
            raise SigningError.revoked(self.key_id)
        try:
            der = self._private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise SigningError.failed(self.key_id, str(exc)) from exc
        r, s = decode_dss_signature(der)
        return r.to_bytes(_P256_COORD_LEN, "big") + s.to_bytes(_P256_COORD_LEN, "big")

    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._private_key.public_key()

    def __repr__(self) -> str:
        return f"ECDSASigner(key_id={self.key_id!r})"


class KeyManager(ABC):
    """Resolves key identifiers into signing handles."""

    @abstractmethod
    async def new_signer(self, key_id: str) -> SigningHandle:
        """Return an active signing handle for *key_id*.

        Raises:
            KeyUnavailableError: If no active key can be supplied.
        """


class InMemoryKeyManager(KeyManager):
    """Key manager holding P-256 keys in process memory."""

    def __init__(self) -> None:
        self._keys: Dict[str, ec.EllipticCurvePrivateKey] = {}
        self._disabled: Set[str] = set()
        self._lock = threading.Lock()

    def add_key(self, key_id: str, private_key: ec.EllipticCurvePrivateKey) -> None:
        with self._lock:
            self._keys[key_id] = private_key
            self._disabled.discard(key_id)

    def generate(self, key_id: str) -> ec.EllipticCurvePublicKey:
        """Create a fresh P-256 key under *key_id* and return its public half."""
        private_key = ec.generate_private_key(ec.SECP256R1())
        self.add_key(key_id, private_key)
        logger.info("Generated in-memory signing key %s", key_id)
        return private_key.public_key()

    def public_key(self, key_id: str) -> ec.EllipticCurvePublicKey:
        with self._lock:
            private_key = self._keys.get(key_id)
        if private_key is None:
            raise KeyUnavailableError.unknown(key_id)
        return private_key.public_key()

    def disable(self, key_id: str) -> None:
        """Stop *key_id* from resolving or signing, including existing handles."""
        with self._lock:
            self._disabled.add(key_id)

    def _is_active(self, key_id: str) -> bool:
        with self._lock:
            return key_id in self._keys and key_id not in self._disabled

    async def new_signer(self, key_id: str) -> SigningHandle:
        with self._lock:
            private_key = self._keys.get(key_id)
            disabled = key_id in self._disabled
        if private_key is None:
            raise KeyUnavailableError.unknown(key_id)
        if disabled:
            raise KeyUnavailableError.disabled(key_id)
        return ECDSASigner(key_id, private_key, is_active=lambda: self._is_active(key_id))


class FileKeyManager(KeyManager):
    """Key manager reading PEM-encoded P-256 private keys from a directory.

    Key identifiers map to ``<keys_dir>/<key_id>.pem``.  Both PKCS#8 and
    SEC1 (``EC PRIVATE KEY``) encodings are accepted.
    """

    def __init__(self, keys_dir: str | Path, password: Optional[bytes] = None) -> None:
        self._keys_dir = Path(keys_dir)
        self._password = password
        self._cache: Dict[str, ec.EllipticCurvePrivateKey] = {}
        self._lock = threading.Lock()

    def _path_for(self, key_id: str) -> Path:
        # Reject identifiers that would escape the key directory.
        if not key_id or "/" in key_id or "\\" in key_id or key_id.startswith("."):
            raise KeyUnavailableError.unknown(key_id)
        return self._keys_dir / f"{key_id}.pem"

    def _load(self, key_id: str) -> ec.EllipticCurvePrivateKey:
        path = self._path_for(key_id)
        try:
            pem = path.read_bytes()
        except FileNotFoundError as exc:
            raise KeyUnavailableError.unknown(key_id) from exc
        except OSError as exc:
            raise KeyUnavailableError.unreadable(key_id, str(exc)) from exc

        try:
            key = serialization.load_pem_private_key(pem, password=self._password)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyUnavailableError.unreadable(key_id, str(exc)) from exc

        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise KeyUnavailableError.unreadable(key_id, "not an elliptic-curve key")
        if not isinstance(key.curve, ec.SECP256R1):
            raise KeyUnavailableError.unreadable(key_id, f"expected P-256 key, got {key.curve.name}")
        logger.info("Loaded signing key %s from %s", key_id, path)
        return key

    async def new_signer(self, key_id: str) -> SigningHandle:
        with self._lock:
            key = self._cache.get(key_id)
        if key is None:
            key = self._load(key_id)
            with self._lock:
                self._cache[key_id] = key
        return ECDSASigner(key_id, key)


# =============================================================================
# Singleton
# =============================================================================

_key_manager: Optional[KeyManager] = None


def get_key_manager() -> KeyManager:
    """Return the process-wide key manager, creating it on first use.

    The ``memory`` backend generates the configured signing key at
    startup, so tokens it issues do not survive a restart.
    """
    global _key_manager
    if _key_manager is None:
        if KEY_MANAGER == "file":
            password = SIGNING_KEY_PASSWORD.encode() if SIGNING_KEY_PASSWORD else None
            _key_manager = FileKeyManager(SIGNING_KEYS_DIR, password=password)
            logger.info("Using file key manager at %s", SIGNING_KEYS_DIR)
        elif KEY_MANAGER == "memory":
            manager = InMemoryKeyManager()
            manager.generate(TOKEN_SIGNING_KEY)
            _key_manager = manager
            logger.warning("Using in-memory key manager; signing keys are ephemeral")
        else:
            raise ValueError(f"unknown key manager backend: {KEY_MANAGER!r}")
    return _key_manager


def reset_key_manager() -> None:
    """Drop the process-wide key manager (for tests)."""
    global _key_manager
    _key_manager = None
