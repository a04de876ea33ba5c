"""
Evidence Seal - Evidence Integrity and Encryption Pipeline

Content hashing, authenticated encryption, Merkle batch commitments and
integrity proofs for digital evidence, with verification that needs only
the file bytes and its proof.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Evidence Seal Team"

from .core.config import Config
from .core.engine import EvidencePipeline
from .core.evidence import ContentHash, IntegrityProof, Verdict
from .core.exceptions import (
    EvidenceSealError,
    HashingFailure,
    EncryptionFailure,
    DecryptionFailure,
    ProofIssuanceFailure,
    TreeConstructionError,
)

__all__ = [
    "EvidencePipeline",
    "Config",
    "ContentHash",
    "IntegrityProof",
    "Verdict",
    "EvidenceSealError",
    "HashingFailure",
    "EncryptionFailure",
    "DecryptionFailure",
    "ProofIssuanceFailure",
    "TreeConstructionError",
]
