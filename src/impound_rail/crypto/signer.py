"""
Receipt Signing

Receipts carry an Ed25519 signature over their canonical payload. Ed25519 is
deterministic, so re-rendering a receipt for the same payment reproduces the
same signature and the same verification code.
"""

import base64
import binascii
import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

RAW = serialization.Encoding.Raw


class SignatureAlgorithm(Enum):
    ED25519 = "Ed25519"


@dataclass(frozen=True)
class SignatureResult:
    signature: bytes
    key_id: str
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519

    @property
    def signature_b64(self) -> str:
        return base64.b64encode(self.signature).decode("ascii")


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of checking one signature. `error` is set whenever `valid` is False."""
    valid: bool
    key_id: str
    error: Optional[str] = None
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519


def key_id_for(public_key: bytes) -> str:
    """Key IDs are the first 16 hex chars of the public key's SHA-256."""
    return hashlib.sha256(public_key).hexdigest()[:16]


def verify_ed25519(public_key: bytes, data: bytes, signature: bytes) -> VerificationResult:
    """Verify with a bare public key, as a third party holding only /public-key would."""
    key_id = key_id_for(public_key)
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
    except InvalidSignature:
        return VerificationResult(False, key_id, "Signature mismatch")
    except ValueError as exc:
        # malformed key bytes
        return VerificationResult(False, key_id, str(exc))
    return VerificationResult(True, key_id)


class Ed25519Signer:
    """Holds one Ed25519 private key. A fresh key is generated when none is given."""

    algorithm = SignatureAlgorithm.ED25519

    def __init__(self, private_key_bytes: Optional[bytes] = None):
        self._key = (
            Ed25519PrivateKey.from_private_bytes(private_key_bytes)
            if private_key_bytes
            else Ed25519PrivateKey.generate()
        )
        self._raw_public = self._key.public_key().public_bytes(RAW, serialization.PublicFormat.Raw)
        self.key_id = key_id_for(self._raw_public)

    def sign(self, data: bytes) -> SignatureResult:
        return SignatureResult(self._key.sign(data), self.key_id)

    def sign_b64(self, data: bytes) -> str:
        return self.sign(data).signature_b64

    def verify(self, data: bytes, signature: bytes) -> VerificationResult:
        return verify_ed25519(self._raw_public, data, signature)

    def verify_b64(self, data: bytes, encoded: str) -> VerificationResult:
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            return VerificationResult(False, self.key_id, f"Undecodable signature: {exc}")
        return self.verify(data, raw)

    def get_public_key(self) -> bytes:
        return self._raw_public

    def get_public_key_pem(self) -> str:
        """SubjectPublicKeyInfo PEM, for distribution to verifiers."""
        pem = self._key.public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return pem.decode("ascii")

    def get_private_key(self) -> bytes:
        """Raw 32-byte seed, for encrypted storage."""
        return self._key.private_bytes(RAW, serialization.PrivateFormat.Raw, serialization.NoEncryption())


def get_signer(
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519,
    private_key_bytes: Optional[bytes] = None,
) -> Ed25519Signer:
    if algorithm is not SignatureAlgorithm.ED25519:
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")
    return Ed25519Signer(private_key_bytes)
