"""
Tests for Receipt Signing and Key Management
"""

import pytest
from cryptography.fernet import InvalidToken

from impound_rail.crypto.keys import KEYS_FILE, KeyManager, KeyStatus
from impound_rail.crypto.signer import (
    Ed25519Signer,
    SignatureAlgorithm,
    get_signer,
    key_id_for,
    verify_ed25519,
)


class TestEd25519Signer:
    """Test Ed25519 signature implementation."""

    def test_generate_key_pair(self):
        """Should generate a valid key pair."""
        signer = Ed25519Signer()

        assert len(signer.key_id) == 16
        assert signer.key_id == key_id_for(signer.get_public_key())
        assert signer.algorithm == SignatureAlgorithm.ED25519

    def test_sign_and_verify(self):
        signer = Ed25519Signer()
        data = b'{"receipt_number":"RCT-0123456789AB"}'

        result = signer.sign(data)

        assert len(result.signature) == 64
        assert signer.verify(data, result.signature).valid is True

    def test_wrong_data_fails_verification(self):
        signer = Ed25519Signer()
        result = signer.sign(b"amount=35000")

        verify_result = signer.verify(b"amount=3500000", result.signature)

        assert verify_result.valid is False
        assert verify_result.error == "Signature mismatch"

    def test_signatures_are_deterministic(self):
        """Re-rendering a receipt must reproduce its signature."""
        original = Ed25519Signer()
        restored = Ed25519Signer(original.get_private_key())

        assert restored.key_id == original.key_id
        assert original.sign(b"same payload").signature == restored.sign(b"same payload").signature

    def test_base64_sign_verify(self):
        signer = Ed25519Signer()
        sig_b64 = signer.sign_b64(b"test message")

        assert signer.verify_b64(b"test message", sig_b64).valid is True
        assert signer.verify_b64(b"test message", "not base64!").valid is False

    def test_verify_with_bare_public_key(self):
        signer = get_signer()
        signature = signer.sign(b"payload").signature

        assert verify_ed25519(signer.get_public_key(), b"payload", signature).valid is True
        assert verify_ed25519(b"short", b"payload", signature).valid is False

    def test_public_key_pem(self):
        assert Ed25519Signer().get_public_key_pem().startswith("-----BEGIN PUBLIC KEY-----")


class TestKeyManager:
    """Test key management functionality."""

    def test_active_key_generated_on_first_use(self, keys):
        assert keys.list_keys() == []

        active = keys.active_key()

        assert active.status == KeyStatus.ACTIVE
        assert keys.active_key().key_id == active.key_id
        assert len(keys.list_keys()) == 1

    def test_keys_persist_encrypted(self, temp_keys_dir):
        manager = KeyManager(temp_keys_dir, master_secret="s3cret")
        keypair = manager.generate_key()

        raw = (manager.storage_path / KEYS_FILE).read_bytes()
        assert keypair.key_id.encode() not in raw

        reloaded = KeyManager(temp_keys_dir, master_secret="s3cret")
        assert reloaded.active_key().key_id == keypair.key_id
        assert reloaded.get_signer().sign(b"x").signature == manager.get_signer().sign(b"x").signature

    def test_wrong_master_secret_refuses_to_load(self, temp_keys_dir):
        KeyManager(temp_keys_dir, master_secret="right").generate_key()

        with pytest.raises(InvalidToken):
            KeyManager(temp_keys_dir, master_secret="wrong")

    def test_generated_master_key_without_secret(self, temp_keys_dir):
        manager = KeyManager(temp_keys_dir, master_secret="")
        keypair = manager.generate_key()

        assert (manager.storage_path / ".master").exists()
        assert KeyManager(temp_keys_dir, master_secret="").active_key().key_id == keypair.key_id

    def test_key_rotation(self, keys):
        old = keys.active_key()
        signature = keys.get_signer().sign(b"issued before rotation").signature

        new = keys.rotate_key()

        assert new.key_id != old.key_id
        assert keys.active_key().key_id == new.key_id
        assert keys.get_key(old.key_id).status == KeyStatus.ROTATED
        assert new.metadata["rotated_from"] == [old.key_id]
        assert keys.verify(old.key_id, b"issued before rotation", signature).valid is True

    def test_key_revocation(self, keys):
        keypair = keys.generate_key()
        signature = keys.get_signer(keypair.key_id).sign(b"data").signature

        keys.revoke_key(keypair.key_id)

        assert keys.get_key(keypair.key_id).status == KeyStatus.REVOKED
        assert keys.verify(keypair.key_id, b"data", signature).valid is False
        with pytest.raises(KeyError):
            keys.get_signer(keypair.key_id)

    def test_unknown_key(self, keys):
        assert keys.verify("0000000000000000", b"data", b"sig").valid is False
        with pytest.raises(KeyError):
            keys.revoke_key("0000000000000000")

    def test_export_public_keys(self, keys):
        kept = keys.generate_key()
        revoked = keys.generate_key()
        keys.revoke_key(revoked.key_id)

        public_keys = keys.export_public_keys()

        assert set(public_keys) == {kept.key_id}
        assert "private_key" not in public_keys[kept.key_id]


class TestSharedKeyDirectory:
    """Several processes (server workers, the CLI) using one key directory."""

    SECRET = "shared-master-secret"

    def test_second_manager_adopts_existing_key(self, temp_keys_dir):
        worker_a = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        worker_b = KeyManager(temp_keys_dir, master_secret=self.SECRET)

        issued = worker_a.active_key()
        signature = worker_a.get_signer().sign(b"receipt payload").signature

        assert worker_b.active_key().key_id == issued.key_id
        assert worker_b.verify(issued.key_id, b"receipt payload", signature).valid is True

        restarted = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        assert [k.key_id for k in restarted.list_keys()] == [issued.key_id]
        assert restarted.verify(issued.key_id, b"receipt payload", signature).valid is True

    def test_stale_writer_keeps_other_keys(self, temp_keys_dir):
        worker_a = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        worker_b = KeyManager(temp_keys_dir, master_secret=self.SECRET)

        from_b = worker_b.generate_key()
        from_a = worker_a.generate_key()

        restarted = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        assert {k.key_id for k in restarted.list_keys()} == {from_a.key_id, from_b.key_id}

    def test_rotation_seen_by_other_manager(self, temp_keys_dir):
        worker_a = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        worker_b = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        old = worker_a.active_key()
        signature = worker_a.get_signer().sign(b"before rotation").signature

        new = worker_b.rotate_key()

        assert new.metadata["rotated_from"] == [old.key_id]
        assert worker_a.active_key().key_id == new.key_id
        assert worker_a.verify(old.key_id, b"before rotation", signature).valid is True

    def test_revocation_seen_by_other_manager(self, temp_keys_dir):
        worker_a = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        worker_b = KeyManager(temp_keys_dir, master_secret=self.SECRET)
        keypair = worker_a.active_key()
        signature = worker_a.get_signer().sign(b"data").signature

        worker_b.revoke_key(keypair.key_id)

        assert worker_a.verify(keypair.key_id, b"data", signature).valid is False
        assert worker_a.active_key().key_id != keypair.key_id
