"""
Key Management for Impound Rail

Receipt signing keys, stored encrypted at rest with a Fernet key derived from
KEY_MASTER_SECRET. Rotated keys stay available for verification so receipts
issued before a rotation keep verifying.
"""

import base64
import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
import structlog

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .signer import Ed25519Signer, SignatureAlgorithm, VerificationResult, get_signer, verify_ed25519

logger = structlog.get_logger()

KEYS_FILE = "keys.enc"
MASTER_FILE = ".master"
LOCK_FILE = ".keys.lock"
KDF_SALT = b"impound-rail-keys-v1"
KDF_ROUNDS = 100_000


class KeyStatus:
    ACTIVE = "ACTIVE"
    ROTATED = "ROTATED"  # verify only
    REVOKED = "REVOKED"  # neither sign nor verify


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


@dataclass
class KeyPair:
    key_id: str
    public_key: bytes
    private_key: bytes
    created_at: str
    status: str = KeyStatus.ACTIVE
    algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519
    metadata: Dict[str, Any] = field(default_factory=dict)

    def public_record(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm.value,
            "public_key": _b64(self.public_key),
            "created_at": self.created_at,
            "status": self.status,
        }

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record.update(
            algorithm=self.algorithm.value,
            public_key=_b64(self.public_key),
            private_key=_b64(self.private_key),
        )
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "KeyPair":
        fields = dict(record)
        fields["algorithm"] = SignatureAlgorithm(fields.get("algorithm", "Ed25519"))
        fields["public_key"] = base64.b64decode(fields["public_key"])
        fields["private_key"] = base64.b64decode(fields["private_key"])
        return cls(**fields)


def master_fernet(storage_path: Path, secret: str) -> Fernet:
    """
    Fernet for the key file.

    With a secret the key is derived by PBKDF2. Without one a random master key
    is kept in `.master` beside the key file, which is only fit for development.
    """
    if secret:
        kdf = PBKDF2HMAC(algorithm=SHA256(), length=32, salt=KDF_SALT, iterations=KDF_ROUNDS)
        return Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8"))))

    master_path = storage_path / MASTER_FILE
    if not master_path.exists():
        master_path.write_bytes(Fernet.generate_key())
        logger.warning("master_key_generated", path=str(master_path),
                       message="Set KEY_MASTER_SECRET in production.")
    return Fernet(master_path.read_bytes())


FileStamp = Optional[Tuple[int, int, int]]


def _stamp(stat: os.stat_result) -> Tuple[int, int, int]:
    return (stat.st_ino, stat.st_mtime_ns, stat.st_size)


class EncryptedKeyFile:
    """
    One Fernet token holding every key record as JSON.

    Writes replace the file atomically, so a reader sees either the old or the
    new key set. Writers from several processes serialize on `locked()`.
    """

    def __init__(self, path: Path, fernet: Fernet):
        self.path = path
        self.lock_path = path.with_name(LOCK_FILE)
        self._fernet = fernet

    def stamp(self) -> FileStamp:
        try:
            return _stamp(self.path.stat())
        except FileNotFoundError:
            return None

    def read(self) -> Tuple[List[Dict[str, Any]], FileStamp]:
        try:
            with open(self.path, "rb") as f:
                stamp = _stamp(os.fstat(f.fileno()))
                token = f.read()
        except FileNotFoundError:
            return [], None
        try:
            plaintext = self._fernet.decrypt(token)
        except InvalidToken:
            # Starting over with a fresh key would orphan every receipt already issued.
            logger.error("key_load_failed", path=str(self.path),
                         error="wrong master secret or corrupt key file")
            raise
        return json.loads(plaintext), stamp

    def write(self, records: List[Dict[str, Any]]) -> FileStamp:
        token = self._fernet.encrypt(json.dumps(records).encode("utf-8"))
        fd, staging = tempfile.mkstemp(dir=self.path.parent, prefix=".keys-")
        try:
            with os.fdopen(fd, "wb") as out:
                out.write(token)
                out.flush()
                os.fsync(out.fileno())
            os.replace(staging, self.path)
        except BaseException:
            if os.path.exists(staging):
                os.unlink(staging)
            raise
        return self.stamp()

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Exclusive advisory lock shared by every process using this directory."""
        with open(self.lock_path, "a+b") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class KeyManager:
    """
    Encrypted storage and rotation of receipt signing keys.

    Several processes (server workers, the CLI) may share one key directory.
    The file on disk is the source of truth: it is reloaded whenever it
    changes, and every change to it is made under the directory lock after a
    fresh reload, so no process can drop a key another one wrote.
    """

    def __init__(self, storage_path: Optional[str] = None, master_secret: Optional[str] = None):
        self.storage_path = Path(storage_path or os.environ.get("KEY_STORAGE_PATH", ".keys"))
        self.storage_path.mkdir(parents=True, exist_ok=True)
        if master_secret is None:
            master_secret = os.environ.get("KEY_MASTER_SECRET", "")

        self._file = EncryptedKeyFile(self.storage_path / KEYS_FILE,
                                      master_fernet(self.storage_path, master_secret))
        self._lock = threading.RLock()
        self._lock_depth = 0
        self._signer_cache: Dict[str, Ed25519Signer] = {}
        self._by_id: Dict[str, KeyPair] = {}
        self._loaded: FileStamp = None
        self._reload()
        if self._by_id:
            logger.info("keys_loaded", count=len(self._by_id))

    def _reload(self) -> None:
        records, stamp = self._file.read()
        with self._lock:
            self._by_id = {kp.key_id: kp for kp in map(KeyPair.from_record, records)}
            self._loaded = stamp
            for key_id in list(self._signer_cache):
                keypair = self._by_id.get(key_id)
                if keypair is None or keypair.status == KeyStatus.REVOKED:
                    del self._signer_cache[key_id]

    def _refresh(self) -> None:
        """Pick up keys written by other processes."""
        if self._file.stamp() != self._loaded:
            self._reload()

    @contextmanager
    def _writing(self) -> Iterator[None]:
        # The directory lock is taken once per thread; nested calls reuse it.
        with self._lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return
            with self._file.locked():
                self._lock_depth = 1
                try:
                    self._refresh()
                    yield
                finally:
                    self._lock_depth = 0

    def _persist(self) -> None:
        self._loaded = self._file.write([kp.to_record() for kp in self._by_id.values()])

    def get_key(self, key_id: str) -> KeyPair:
        if key_id not in self._by_id:
            self._refresh()
        try:
            return self._by_id[key_id]
        except KeyError:
            raise KeyError(f"Key not found: {key_id}") from None

    def generate_key(self, metadata: Optional[Dict[str, Any]] = None) -> KeyPair:
        """Generate and persist a new active signing key."""
        signer = get_signer()
        keypair = KeyPair(
            key_id=signer.key_id,
            public_key=signer.get_public_key(),
            private_key=signer.get_private_key(),
            created_at=datetime.now(timezone.utc).isoformat(),
            metadata=dict(metadata or {}),
        )
        with self._writing():
            self._by_id[keypair.key_id] = keypair
            self._signer_cache[keypair.key_id] = signer
            self._persist()
        logger.info("key_generated", key_id=keypair.key_id)
        return keypair

    def active_key(self) -> KeyPair:
        """The newest active key, generated on first use."""
        self._refresh()
        candidates = self.list_keys(KeyStatus.ACTIVE)
        if candidates:
            return candidates[0]
        with self._writing():
            # another process may have generated one while we waited
            candidates = self.list_keys(KeyStatus.ACTIVE)
            return candidates[0] if candidates else self.generate_key()

    def get_signer(self, key_id: Optional[str] = None) -> Ed25519Signer:
        """Signer for `key_id`, or for the active key. Revoked keys cannot sign."""
        keypair = self.active_key() if key_id is None else self.get_key(key_id)
        if keypair.status == KeyStatus.REVOKED:
            raise KeyError(f"Key revoked: {keypair.key_id}")
        with self._lock:
            signer = self._signer_cache.get(keypair.key_id)
            if signer is None:
                signer = get_signer(keypair.algorithm, keypair.private_key)
                self._signer_cache[keypair.key_id] = signer
        return signer

    def rotate_key(self) -> KeyPair:
        """Demote every active key to verify-only, then generate its successor."""
        with self._writing():
            retired = [kp.key_id for kp in self.list_keys(KeyStatus.ACTIVE)]
            for key_id in retired:
                self._by_id[key_id].status = KeyStatus.ROTATED
            successor = self.generate_key(metadata={"rotated_from": retired})
        logger.info("key_rotated", old_key_ids=retired, new_key_id=successor.key_id)
        return successor

    def revoke_key(self, key_id: str) -> None:
        """Revoke a key. Receipts signed with it no longer verify."""
        with self._writing():
            self.get_key(key_id).status = KeyStatus.REVOKED
            self._signer_cache.pop(key_id, None)
            self._persist()
        logger.info("key_revoked", key_id=key_id)

    def verify(self, key_id: str, data: bytes, signature: bytes) -> VerificationResult:
        """Check against a stored public key. Unknown and revoked keys never verify."""
        self._refresh()
        keypair = self._by_id.get(key_id)
        if keypair is None or keypair.status == KeyStatus.REVOKED:
            return VerificationResult(False, key_id, "Unknown or revoked key")
        return verify_ed25519(keypair.public_key, data, signature)

    def list_keys(self, status: Optional[str] = None) -> List[KeyPair]:
        """Keys newest first, optionally only those in `status`."""
        matching = [kp for kp in self._by_id.values() if status is None or kp.status == status]
        return sorted(matching, key=lambda kp: kp.created_at, reverse=True)

    def export_public_keys(self) -> Dict[str, Dict[str, Any]]:
        """Public keys that still verify receipts, for distribution."""
        self._refresh()
        return {
            kp.key_id: kp.public_record()
            for kp in self.list_keys()
            if kp.status != KeyStatus.REVOKED
        }
