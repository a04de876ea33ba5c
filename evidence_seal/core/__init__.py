"""
Evidence Seal Core Module

Data model, configuration, error taxonomy and pipeline orchestration.
"""

from .config import Config
from .evidence import (
    ContentHash,
    EncryptionMetadata,
    IntegrityProof,
    ProofContext,
    Verdict,
)
from .exceptions import (
    EvidenceSealError,
    HashingFailure,
    EncryptionFailure,
    DecryptionFailure,
    ProofIssuanceFailure,
    TreeConstructionError,
)

__all__ = [
    "Config",
    "ContentHash",
    "EncryptionMetadata",
    "IntegrityProof",
    "ProofContext",
    "Verdict",
    "EvidenceSealError",
    "HashingFailure",
    "EncryptionFailure",
    "DecryptionFailure",
    "ProofIssuanceFailure",
    "TreeConstructionError",
]
