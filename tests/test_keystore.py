"""
Tests for the local key metadata store.
"""

import json
import os
import stat
from datetime import datetime, timezone

import pytest

from evidence_seal.core.config import KeyStoreConfig
from evidence_seal.core.evidence import (
    BatchMembership,
    ContentHash,
    IntegrityProof,
    PathStep,
    ProofContext,
)
from evidence_seal.core.exceptions import DecryptionFailure
from evidence_seal.keystore import (
    InMemoryKeyValueStore,
    JSONFileKeyValueStore,
    KeyMetadataStore,
    ProofRecordStore,
    create_key_value_store,
)


@pytest.fixture
def sealed(cipher, case_key):
    """Ciphertext and metadata for a small payload."""
    return cipher.encrypt(b"payload", case_key, "notes.txt")


class TestKeyMetadataStore:
    """Tests for KeyMetadataStore."""

    def test_put_and_get(self, sealed, case_key):
        _, metadata = sealed
        store = KeyMetadataStore()

        store.put("file-1", metadata, case_key)
        record = store.get("file-1")

        assert record.file_id == "file-1"
        assert record.metadata == metadata
        assert record.key.material == case_key.material
        assert store.contains("file-1")

    def test_missing_record_returns_none(self):
        assert KeyMetadataStore().get("unknown") is None

    def test_require_missing_record(self):
        """Test that a missing record is reported as such, not as a bad key."""
        with pytest.raises(DecryptionFailure) as exc_info:
            KeyMetadataStore().require("unknown")

        assert exc_info.value.reason == DecryptionFailure.MISSING_KEY_RECORD
        assert exc_info.value.metadata_found is False

    def test_corrupt_record(self):
        backend = InMemoryKeyValueStore()
        backend.put("enc:file-1", "{not json")

        with pytest.raises(DecryptionFailure) as exc_info:
            KeyMetadataStore(backend).get("file-1")

        assert exc_info.value.reason == DecryptionFailure.MALFORMED_METADATA

    def test_record_with_bad_metadata(self, sealed, case_key):
        _, metadata = sealed
        backend = InMemoryKeyValueStore()
        store = KeyMetadataStore(backend)
        store.put("file-1", metadata, case_key)

        raw = json.loads(backend.get("enc:file-1"))
        del raw["metadata"]["iv"]
        backend.put("enc:file-1", json.dumps(raw))

        with pytest.raises(DecryptionFailure) as exc_info:
            store.get("file-1")

        assert exc_info.value.file_id == "file-1"

    def test_delete_and_list(self, sealed, case_key):
        _, metadata = sealed
        store = KeyMetadataStore()
        store.put("file-1", metadata, case_key)
        store.put("file-2", metadata, case_key)

        assert sorted(store.file_ids()) == ["file-1", "file-2"]
        assert store.delete("file-1") is True
        assert store.delete("file-1") is False
        assert store.file_ids() == ["file-2"]

    def test_empty_file_id_rejected(self, sealed, case_key):
        with pytest.raises(ValueError):
            KeyMetadataStore().put("", sealed[1], case_key)


class TestJSONFileKeyValueStore:
    """Tests for the JSON file backend."""

    def test_persists_across_instances(self, tmp_path, sealed, case_key):
        path = tmp_path / "keys" / "keystore.json"
        KeyMetadataStore(JSONFileKeyValueStore(path)).put("file-1", sealed[1], case_key)

        record = KeyMetadataStore(JSONFileKeyValueStore(path)).get("file-1")

        assert record is not None
        assert record.key.material == case_key.material

    def test_owner_only_permissions(self, tmp_path):
        path = tmp_path / "keystore.json"
        JSONFileKeyValueStore(path).put("a", "1")

        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600

    def test_no_temp_files_left(self, tmp_path):
        store = JSONFileKeyValueStore(tmp_path / "keystore.json")
        for i in range(5):
            store.put(f"k{i}", str(i))

        assert [p.name for p in tmp_path.iterdir()] == ["keystore.json"]
        assert store.keys("k") == [f"k{i}" for i in range(5)]

    def test_factory(self, tmp_path):
        assert isinstance(create_key_value_store(KeyStoreConfig()), InMemoryKeyValueStore)
        assert isinstance(
            create_key_value_store(KeyStoreConfig(backend="file", path=str(tmp_path / "k.json"))),
            JSONFileKeyValueStore,
        )
        with pytest.raises(ValueError):
            create_key_value_store(KeyStoreConfig(backend="keychain"))


class TestProofRecordStore:
    """Tests for locally persisted proofs."""

    def test_round_trip_with_membership(self):
        proof = IntegrityProof(
            proof_id="ZKP-1-abcdef01",
            bound_hash=ContentHash("sha256", "aa" * 32),
            issued_at=datetime.now(timezone.utc),
            context=ProofContext(case_id="CASE-1", identity="a@x.gov"),
            batch_root="bb" * 32,
        )
        membership = BatchMembership(
            batch_root="bb" * 32,
            index=0,
            path=[PathStep("cc" * 32, False)],
            leaf_count=2,
        )
        store = ProofRecordStore()

        store.put("file-1", proof, membership)

        assert store.get("file-1") == (proof, membership)
        assert store.get("file-2") is None

    def test_shares_backend_with_key_records(self, sealed, case_key):
        backend = InMemoryKeyValueStore()
        KeyMetadataStore(backend).put("file-1", sealed[1], case_key)
        proof = IntegrityProof(
            proof_id="p",
            bound_hash=ContentHash("sha256", "aa" * 32),
            issued_at=datetime.now(timezone.utc),
            context=ProofContext(case_id="CASE-1", identity="a@x.gov"),
        )
        ProofRecordStore(backend).put("file-1", proof)

        assert sorted(backend.keys()) == ["enc:file-1", "proof:file-1"]
        assert ProofRecordStore(backend).get("file-1") == (proof, None)

    def test_membership_only_record(self):
        membership = BatchMembership(
            batch_root="bb" * 32,
            index=1,
            path=[PathStep("cc" * 32, True)],
            leaf_count=2,
            anchor_receipt="0x" + "dd" * 32,
        )
        store = ProofRecordStore()

        store.put("file-1", None, membership)

        assert store.get("file-1") == (None, membership)
        assert store.get("file-1")[1].anchor_receipt == "0x" + "dd" * 32

    def test_empty_record_rejected(self):
        with pytest.raises(ValueError):
            ProofRecordStore().put("file-1", None)
