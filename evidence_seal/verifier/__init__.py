"""
Evidence Seal - Integrity Verification

Recomputes a file's content hash and compares it with the hash a proof is
bound to. For batch members the root is also recomputed from the leaf and
its inclusion path and compared with the anchored root; both checks must
pass. A mismatch is a ``TAMPERED`` verdict, returned as data.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Union

from ..core.evidence import (
    BatchMembership,
    ContentHash,
    IntegrityProof,
    Verdict,
)
from ..core.exceptions import TreeConstructionError
from ..hashing import ContentHasher
from ..merkle import recompute_root

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Result of integrity verification."""
    verdict: Verdict
    computed_hash: ContentHash
    bound_hash: Optional[ContentHash]
    proof_id: Optional[str]
    hash_matches: Optional[bool]
    root_matches: Optional[bool] = None
    computed_root: Optional[str] = None
    anchored_root: Optional[str] = None
    reasons: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def verified(self) -> bool:
        return self.verdict == Verdict.VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "proof_id": self.proof_id,
            "computed_hash": str(self.computed_hash),
            "bound_hash": str(self.bound_hash) if self.bound_hash else None,
            "hash_matches": self.hash_matches,
            "root_matches": self.root_matches,
            "computed_root": self.computed_root,
            "anchored_root": self.anchored_root,
            "reasons": self.reasons,
            "timestamp": self.timestamp.isoformat(),
        }


class IntegrityVerifier:
    """
    Checks file bytes against a previously issued proof.

    Never touches the cipher: verification works on plaintext only.
    """

    def __init__(self, hasher: Optional[ContentHasher] = None):
        self.hasher = hasher or ContentHasher()

    def _hasher_for(self, proof: Optional[IntegrityProof]) -> ContentHasher:
        if proof is None or proof.bound_hash.algorithm == self.hasher.algorithm:
            return self.hasher
        return ContentHasher(
            algorithm=proof.bound_hash.algorithm,
            chunk_size=self.hasher.chunk_size,
        )

    def check(
        self,
        computed: ContentHash,
        proof: Optional[IntegrityProof],
        membership: Optional[BatchMembership] = None,
        anchored_root: Optional[str] = None,
    ) -> VerificationResult:
        """
        Compare an already computed hash with a proof.

        With no proof, a batch membership alone is checked: the recomputed
        root must equal the anchored root.
        """
        if proof is None and membership is None:
            raise ValueError("Verification needs a proof or a batch membership")

        reasons = []
        hash_matches = None
        if proof is not None:
            hash_matches = computed == proof.bound_hash
            if not hash_matches:
                reasons.append(
                    f"content hash {computed.short()} does not match "
                    f"bound hash {proof.bound_hash.short()}"
                )

        root_matches = None
        computed_root = None
        if membership is not None:
            anchored_root = (anchored_root or membership.batch_root).lower()
            try:
                computed_root = recompute_root(computed, membership.path)
                root_matches = computed_root == anchored_root
            except TreeConstructionError as e:
                root_matches = False
                reasons.append(f"inclusion path unusable: {e.message}")
            if root_matches is False and computed_root is not None:
                reasons.append(
                    f"recomputed root {computed_root[:16]}... does not match "
                    f"anchored root {anchored_root[:16]}..."
                )
            if proof and proof.batch_root and proof.batch_root.lower() != anchored_root:
                root_matches = False
                reasons.append("proof was issued for a different batch root")

        verified = hash_matches is not False and root_matches is not False
        verdict = Verdict.VERIFIED if verified else Verdict.TAMPERED

        if verdict == Verdict.TAMPERED:
            subject = f"proof {proof.proof_id}" if proof else f"batch member {membership.index}"
            logger.warning(
                f"Integrity check failed for {subject}: " + "; ".join(reasons)
            )

        return VerificationResult(
            verdict=verdict,
            computed_hash=computed,
            bound_hash=proof.bound_hash if proof else None,
            proof_id=proof.proof_id if proof else None,
            hash_matches=hash_matches,
            root_matches=root_matches,
            computed_root=computed_root,
            anchored_root=anchored_root if membership is not None else None,
            reasons=reasons,
        )

    def verify(
        self,
        data: bytes,
        proof: Optional[IntegrityProof],
        membership: Optional[BatchMembership] = None,
        anchored_root: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify in-memory bytes against a proof.

        Args:
            data: File bytes as currently held
            proof: Proof issued at upload
            membership: Batch position, for batch members
            anchored_root: Externally anchored root; defaults to the one
                recorded in membership

        Returns:
            VerificationResult; TAMPERED is a normal outcome
        """
        computed = self._hasher_for(proof).hash_bytes(data)
        return self.check(computed, proof, membership, anchored_root)

    def verify_stream(
        self,
        stream: BinaryIO,
        proof: Optional[IntegrityProof],
        membership: Optional[BatchMembership] = None,
        anchored_root: Optional[str] = None,
    ) -> VerificationResult:
        computed = self._hasher_for(proof).hash_stream(stream)
        return self.check(computed, proof, membership, anchored_root)

    def verify_file(
        self,
        path: Union[str, Path],
        proof: Optional[IntegrityProof],
        membership: Optional[BatchMembership] = None,
        anchored_root: Optional[str] = None,
    ) -> VerificationResult:
        computed = self._hasher_for(proof).hash_file(path)
        return self.check(computed, proof, membership, anchored_root)


__all__ = ["IntegrityVerifier", "VerificationResult"]
