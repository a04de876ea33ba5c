"""
Evidence Seal Exception Hierarchy

Error taxonomy for the evidence integrity and encryption pipeline.

Tamper verdicts are not represented here: a file that fails verification
yields ``Verdict.TAMPERED`` as data, never an exception.
"""

from typing import Any, Dict, Optional


class EvidenceSealError(Exception):
    """Base exception for all Evidence Seal errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "EVIDENCE_SEAL_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class HashingFailure(EvidenceSealError):
    """Raised when input cannot be read or is truncated while hashing."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        bytes_read: Optional[int] = None,
        expected_size: Optional[int] = None,
    ):
        super().__init__(
            message,
            code="HASHING_FAILURE",
            details={
                "source": source,
                "bytes_read": bytes_read,
                "expected_size": expected_size,
            },
        )
        self.source = source
        self.bytes_read = bytes_read
        self.expected_size = expected_size


class EncryptionFailure(EvidenceSealError):
    """Raised when key derivation or encryption fails."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        algorithm: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="ENCRYPTION_FAILURE",
            details={
                "stage": stage,
                "algorithm": algorithm,
            },
        )
        self.stage = stage
        self.algorithm = algorithm


class DecryptionFailure(EvidenceSealError):
    """
    Raised when a payload cannot be decrypted.

    ``reason`` distinguishes a missing key record (``missing_key_record``,
    the legacy-file path) from a record that exists but does not decrypt
    (``authentication_failed``, ``malformed_metadata``, ``size_mismatch``).
    """

    MISSING_KEY_RECORD = "missing_key_record"
    AUTHENTICATION_FAILED = "authentication_failed"
    MALFORMED_METADATA = "malformed_metadata"
    SIZE_MISMATCH = "size_mismatch"

    def __init__(
        self,
        message: str,
        reason: str = AUTHENTICATION_FAILED,
        file_id: Optional[str] = None,
    ):
        metadata_found = reason != self.MISSING_KEY_RECORD
        super().__init__(
            message,
            code="DECRYPTION_FAILURE",
            details={
                "reason": reason,
                "file_id": file_id,
                "metadata_found": metadata_found,
            },
        )
        self.reason = reason
        self.file_id = file_id
        self.metadata_found = metadata_found


class ProofIssuanceFailure(EvidenceSealError):
    """
    Raised by ledger collaborators when a receipt cannot be obtained.

    The pipeline catches this and continues the upload without a proof.
    """

    def __init__(
        self,
        message: str,
        digest: Optional[str] = None,
        endpoint: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="PROOF_ISSUANCE_FAILURE",
            details={
                "digest": digest,
                "endpoint": endpoint,
            },
        )
        self.digest = digest
        self.endpoint = endpoint


class TreeConstructionError(EvidenceSealError):
    """Raised when a Merkle tree cannot be built from the given leaves."""

    def __init__(
        self,
        message: str,
        leaf_count: int = 0,
        leaf_index: Optional[int] = None,
    ):
        super().__init__(
            message,
            code="TREE_CONSTRUCTION_ERROR",
            details={
                "leaf_count": leaf_count,
                "leaf_index": leaf_index,
            },
        )
        self.leaf_count = leaf_count
        self.leaf_index = leaf_index


class UploadFailure(EvidenceSealError):
    """Raised when the storage collaborator rejects or loses an upload."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(
            message,
            code="UPLOAD_FAILURE",
            details={
                "endpoint": endpoint,
                "status": status,
            },
        )
        self.endpoint = endpoint
        self.status = status


class EvidenceNotFoundError(EvidenceSealError):
    """Raised when the storage collaborator has no payload for a file id."""

    def __init__(self, message: str, file_id: Optional[str] = None):
        super().__init__(
            message,
            code="EVIDENCE_NOT_FOUND",
            details={"file_id": file_id},
        )
        self.file_id = file_id


class InvalidStateTransition(EvidenceSealError):
    """Raised when a proof task is driven out of order."""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        requested_state: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="INVALID_STATE_TRANSITION",
            details={
                "current_state": current_state,
                "requested_state": requested_state,
            },
        )
        self.current_state = current_state
        self.requested_state = requested_state


class ConfigurationError(EvidenceSealError):
    """Raised when configuration cannot be loaded or is inconsistent."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"errors": errors or []},
        )
        self.errors = errors or []
