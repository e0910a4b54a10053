"""
Cryptographic Primitives for Impound Rail

Ed25519 receipt signatures and encrypted key storage.
"""

from .signer import (
    Ed25519Signer,
    SignatureAlgorithm,
    SignatureResult,
    VerificationResult,
    get_signer,
    key_id_for,
    verify_ed25519,
)
from .keys import KeyManager, KeyPair, KeyStatus

__all__ = [
    "Ed25519Signer",
    "SignatureAlgorithm",
    "SignatureResult",
    "VerificationResult",
    "get_signer",
    "key_id_for",
    "verify_ed25519",
    "KeyManager",
    "KeyPair",
    "KeyStatus",
]
