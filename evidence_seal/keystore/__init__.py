"""
Evidence Seal - Local Key Metadata Store

Client-side custody of decrypt material, keyed by the file identifier the
storage service assigns after upload. Records never leave the client.

Backends implement a plain string key-value contract so the store can be an
in-memory dict, a JSON file, an OS keychain or a test double.
"""

import base64
import binascii
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from ..core.config import KeyStoreConfig
from ..core.evidence import (
    BatchMembership,
    EncryptionKey,
    EncryptionMetadata,
    IntegrityProof,
    LocalKeyRecord,
)
from ..core.exceptions import DecryptionFailure

logger = logging.getLogger(__name__)

ENCRYPTION_PREFIX = "enc:"
PROOF_PREFIX = "proof:"


class KeyValueStore(ABC):
    """String-keyed persistent store. Single-key writes are atomic."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        """Store a value, replacing any existing one."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with prefix."""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store, mainly for tests."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class JSONFileKeyValueStore(KeyValueStore):
    """
    Store backed by a single JSON document.

    Every write rewrites the document to a temporary file in the same
    directory and swaps it in with ``os.replace``.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Key store {self.path} is not a JSON object")
        return data

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=".keystore-", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> bool:
        with self._lock:
            data = self._load()
            if key not in data:
                return False
            del data[key]
            self._save(data)
            return True

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._load() if k.startswith(prefix))


def create_key_value_store(config: KeyStoreConfig) -> KeyValueStore:
    """Build the configured backend."""
    if config.backend == "file":
        return JSONFileKeyValueStore(config.path)
    if config.backend == "memory":
        return InMemoryKeyValueStore()
    raise ValueError(f"Unknown keystore backend: {config.backend}")


class KeyMetadataStore:
    """
    Per-file encryption metadata and key material.

    ``get`` returning None is the normal outcome for files uploaded before
    encryption existed; callers treat those payloads as plaintext.
    """

    def __init__(self, backend: Optional[KeyValueStore] = None):
        self.backend = backend or InMemoryKeyValueStore()

    @staticmethod
    def _key(file_id: str) -> str:
        return f"{ENCRYPTION_PREFIX}{file_id}"

    def put(
        self,
        file_id: str,
        metadata: EncryptionMetadata,
        key: EncryptionKey,
    ) -> LocalKeyRecord:
        """Persist decrypt material for a file the service has acknowledged."""
        if not file_id:
            raise ValueError("file_id is required")

        record = {
            "file_id": file_id,
            "metadata": metadata.to_dict(),
            "key": {
                "material": base64.b64encode(key.material).decode("ascii"),
                "identity": key.identity,
                "case_id": key.case_id,
            },
        }
        self.backend.put(self._key(file_id), json.dumps(record, sort_keys=True))
        logger.debug(f"Stored key record for file {file_id}")
        return LocalKeyRecord(file_id=file_id, metadata=metadata, key=key)

    def get(self, file_id: str) -> Optional[LocalKeyRecord]:
        """
        Look up the record for a file.

        Returns:
            LocalKeyRecord, or None when no record exists

        Raises:
            DecryptionFailure: If a record exists but cannot be parsed
        """
        raw = self.backend.get(self._key(file_id))
        if raw is None:
            return None

        try:
            data = json.loads(raw)
            key_data = data["key"]
            key = EncryptionKey(
                material=base64.b64decode(key_data["material"], validate=True),
                identity=key_data["identity"],
                case_id=key_data["case_id"],
            )
            metadata_dict = data["metadata"]
        except (ValueError, KeyError, TypeError, binascii.Error) as e:
            raise DecryptionFailure(
                f"Key record for {file_id} is corrupt: {e}",
                reason=DecryptionFailure.MALFORMED_METADATA,
                file_id=file_id,
            ) from e

        try:
            metadata = EncryptionMetadata.from_dict(metadata_dict)
        except DecryptionFailure as e:
            e.file_id = file_id
            e.details["file_id"] = file_id
            raise

        return LocalKeyRecord(file_id=file_id, metadata=metadata, key=key)

    def require(self, file_id: str) -> LocalKeyRecord:
        """Like get, but a missing record raises DecryptionFailure."""
        record = self.get(file_id)
        if record is None:
            raise DecryptionFailure(
                f"No encryption metadata found for file {file_id}",
                reason=DecryptionFailure.MISSING_KEY_RECORD,
                file_id=file_id,
            )
        return record

    def contains(self, file_id: str) -> bool:
        return self.backend.get(self._key(file_id)) is not None

    def delete(self, file_id: str) -> bool:
        removed = self.backend.delete(self._key(file_id))
        if removed:
            logger.info(f"Deleted key record for file {file_id}")
        return removed

    def file_ids(self) -> List[str]:
        return [k[len(ENCRYPTION_PREFIX):] for k in self.backend.keys(ENCRYPTION_PREFIX)]


class ProofRecordStore:
    """
    Issued proofs and batch membership, keyed by file id.

    A batch member whose proof failed still gets a record holding only its
    membership, so it can be checked against the anchored root.
    """

    def __init__(self, backend: Optional[KeyValueStore] = None):
        self.backend = backend or InMemoryKeyValueStore()

    @staticmethod
    def _key(file_id: str) -> str:
        return f"{PROOF_PREFIX}{file_id}"

    def put(
        self,
        file_id: str,
        proof: Optional[IntegrityProof],
        membership: Optional[BatchMembership] = None,
    ) -> None:
        if proof is None and membership is None:
            raise ValueError(f"Nothing to record for file {file_id}")
        record = {
            "proof": proof.to_dict() if proof else None,
            "membership": membership.to_dict() if membership else None,
        }
        self.backend.put(self._key(file_id), json.dumps(record, sort_keys=True))

    def get(
        self, file_id: str
    ) -> Optional[Tuple[Optional[IntegrityProof], Optional[BatchMembership]]]:
        raw = self.backend.get(self._key(file_id))
        if raw is None:
            return None
        data = json.loads(raw)
        proof = IntegrityProof.from_dict(data["proof"]) if data.get("proof") else None
        membership = (
            BatchMembership.from_dict(data["membership"])
            if data.get("membership")
            else None
        )
        return proof, membership

    def delete(self, file_id: str) -> bool:
        return self.backend.delete(self._key(file_id))


__all__ = [
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "JSONFileKeyValueStore",
    "KeyMetadataStore",
    "ProofRecordStore",
    "create_key_value_store",
]
