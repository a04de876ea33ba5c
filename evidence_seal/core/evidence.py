"""
Evidence Seal Data Model

Records produced and consumed by the integrity and encryption pipeline.
"""

import base64
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import jsonschema

from .exceptions import DecryptionFailure


class Verdict(Enum):
    """Outcome of an integrity check."""
    VERIFIED = "verified"
    TAMPERED = "tampered"


@dataclass(frozen=True)
class ContentHash:
    """Digest of the exact original bytes of a file."""
    algorithm: str
    hexdigest: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hexdigest}"

    @classmethod
    def from_string(cls, value: str) -> "ContentHash":
        """Parse ``algorithm:hex``; a bare hex digest is taken as sha256."""
        if ":" in value:
            algorithm, hexdigest = value.split(":", 1)
        else:
            algorithm, hexdigest = "sha256", value
        return cls(algorithm=algorithm.lower(), hexdigest=hexdigest.lower())

    def short(self, length: int = 16) -> str:
        return f"{self.hexdigest[:length]}..."


ENCRYPTION_METADATA_SCHEMA = {
    "type": "object",
    "required": [
        "algorithm",
        "iv",
        "tag_length",
        "original_name",
        "original_size",
        "created_at",
    ],
    "properties": {
        "algorithm": {"type": "string"},
        "iv": {"type": "string", "minLength": 1},
        "tag_length": {"type": "integer", "minimum": 1},
        "original_name": {"type": "string"},
        "original_size": {"type": "integer", "minimum": 0},
        "created_at": {"type": "string"},
        "key_fingerprint": {"type": ["string", "null"]},
    },
}


@dataclass(frozen=True)
class EncryptionMetadata:
    """Everything needed to decrypt a payload given the matching key."""
    algorithm: str
    iv: str
    tag_length: int
    original_name: str
    original_size: int
    created_at: datetime
    key_fingerprint: Optional[str] = None

    @property
    def iv_bytes(self) -> bytes:
        return base64.b64decode(self.iv, validate=True)

    def associated_data(self) -> bytes:
        """Canonical encoding authenticated alongside the ciphertext."""
        return json.dumps(
            self.to_dict(), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "iv": self.iv,
            "tag_length": self.tag_length,
            "original_name": self.original_name,
            "original_size": self.original_size,
            "created_at": self.created_at.isoformat(),
            "key_fingerprint": self.key_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptionMetadata":
        """
        Load metadata from its dictionary form.

        Raises:
            DecryptionFailure: If the record is structurally invalid
        """
        try:
            jsonschema.validate(data, ENCRYPTION_METADATA_SCHEMA)
            created_at = datetime.fromisoformat(data["created_at"])
        except jsonschema.ValidationError as e:
            raise DecryptionFailure(
                f"Malformed encryption metadata: {e.message}",
                reason=DecryptionFailure.MALFORMED_METADATA,
            ) from e
        except ValueError as e:
            raise DecryptionFailure(
                f"Malformed encryption metadata timestamp: {e}",
                reason=DecryptionFailure.MALFORMED_METADATA,
            ) from e

        return cls(
            algorithm=data["algorithm"],
            iv=data["iv"],
            tag_length=data["tag_length"],
            original_name=data["original_name"],
            original_size=data["original_size"],
            created_at=created_at,
            key_fingerprint=data.get("key_fingerprint"),
        )


@dataclass(frozen=True)
class EncryptionKey:
    """
    Symmetric key material.

    Derived from (identity, case id); see DESIGN.md for the weakness this
    carries. The material is excluded from repr.
    """
    material: bytes = field(repr=False)
    identity: str
    case_id: str

    def fingerprint(self) -> str:
        return hashlib.sha256(b"key-fingerprint:" + self.material).hexdigest()[:16]


@dataclass(frozen=True)
class PathStep:
    """One step of a Merkle inclusion path."""
    sibling_hash: str
    sibling_is_left: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sibling_hash": self.sibling_hash,
            "position": "left" if self.sibling_is_left else "right",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PathStep":
        return cls(
            sibling_hash=data["sibling_hash"],
            sibling_is_left=data["position"] == "left",
        )


@dataclass(frozen=True)
class ProofContext:
    """Who issued a proof and for which case."""
    case_id: str
    identity: str
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "identity": self.identity,
            "description": self.description,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofContext":
        return cls(
            case_id=data["case_id"],
            identity=data["identity"],
            description=data.get("description", ""),
            extra=dict(data.get("extra") or {}),
        )


@dataclass(frozen=True)
class IntegrityProof:
    """Collaborator-issued receipt bound to one content hash."""
    proof_id: str
    bound_hash: ContentHash
    issued_at: datetime
    context: ProofContext
    batch_root: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_id": self.proof_id,
            "bound_hash": str(self.bound_hash),
            "issued_at": self.issued_at.isoformat(),
            "context": self.context.to_dict(),
            "batch_root": self.batch_root,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrityProof":
        return cls(
            proof_id=data["proof_id"],
            bound_hash=ContentHash.from_string(data["bound_hash"]),
            issued_at=datetime.fromisoformat(data["issued_at"]),
            context=ProofContext.from_dict(data["context"]),
            batch_root=data.get("batch_root"),
        )


@dataclass(frozen=True)
class BatchMembership:
    """Position of one file inside an anchored batch."""
    batch_root: str
    index: int
    path: List[PathStep]
    leaf_count: int
    policy: str = "promote"
    anchor_receipt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_root": self.batch_root,
            "index": self.index,
            "path": [step.to_dict() for step in self.path],
            "leaf_count": self.leaf_count,
            "policy": self.policy,
            "anchor_receipt": self.anchor_receipt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchMembership":
        return cls(
            batch_root=data["batch_root"],
            index=data["index"],
            path=[PathStep.from_dict(s) for s in data.get("path", [])],
            leaf_count=data["leaf_count"],
            policy=data.get("policy", "promote"),
            anchor_receipt=data.get("anchor_receipt"),
        )


@dataclass(frozen=True)
class LocalKeyRecord:
    """Decrypt material for one uploaded file. Never leaves the client."""
    file_id: str
    metadata: EncryptionMetadata
    key: EncryptionKey


@dataclass
class UploadReceipt:
    """What the pipeline hands back for each uploaded file."""
    file_id: str
    file_name: str
    content_hash: ContentHash
    metadata: EncryptionMetadata
    proof: Optional[IntegrityProof] = None
    membership: Optional[BatchMembership] = None
    proof_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "file_name": self.file_name,
            "content_hash": str(self.content_hash),
            "metadata": self.metadata.to_dict(),
            "proof": self.proof.to_dict() if self.proof else None,
            "membership": self.membership.to_dict() if self.membership else None,
            "proof_error": self.proof_error,
        }


@dataclass
class BatchUploadResult:
    """Result of a batch upload, receipts in input order."""
    receipts: List[UploadReceipt]
    merkle_root: str
    anchor_receipt: Optional[str] = None
    anchor_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def file_ids(self) -> List[str]:
        return [r.file_id for r in self.receipts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merkle_root": self.merkle_root,
            "anchor_receipt": self.anchor_receipt,
            "anchor_error": self.anchor_error,
            "created_at": self.created_at.isoformat(),
            "receipts": [r.to_dict() for r in self.receipts],
        }


@dataclass
class DownloadResult:
    """Plaintext returned by a download."""
    file_id: str
    data: bytes = field(repr=False)
    file_name: Optional[str]
    decrypted: bool
