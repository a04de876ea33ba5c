"""
Evidence Seal Pipeline

Orchestrates the evidence subsystems: hashing, encryption, proof issuance,
batch commitments, storage, local key records, verification and audit.

Upload:   bytes -> hash -> encrypt -> proof -> store -> key record
Batch:    hash all -> Merkle root -> anchor root -> encrypt/proof each
          -> store batch -> key and proof records
Download: fetch -> key record? decrypt : return as stored
Verify:   hash -> compare with bound hash (and batch root) -> acknowledge
"""

import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .config import Config
from .evidence import (
    BatchMembership,
    BatchUploadResult,
    DownloadResult,
    IntegrityProof,
    ProofContext,
    UploadReceipt,
    Verdict,
)
from .exceptions import (
    DecryptionFailure,
    EncryptionFailure,
    EvidenceNotFoundError,
    EvidenceSealError,
    HashingFailure,
    ProofIssuanceFailure,
    TreeConstructionError,
)
from ..audit import (
    AuditEventType,
    AuditOutcome,
    AuditTrail,
    InMemoryAuditSink,
    JSONLAuditSink,
)
from ..cipher import SymmetricCipher
from ..hashing import ContentHasher
from ..keystore import (
    KeyMetadataStore,
    KeyValueStore,
    ProofRecordStore,
    create_key_value_store,
)
from ..merkle import MerkleBatcher
from ..proofs import (
    IntegrityProofIssuer,
    LedgerCollaborator,
    ProgressCallback,
    ProofTask,
    create_ledger,
)
from ..storage import EvidenceStore, UploadRequest, create_evidence_store
from ..verifier import IntegrityVerifier, VerificationResult

logger = logging.getLogger(__name__)

EvidenceInput = Union[bytes, Path]


class PipelineState(Enum):
    """Pipeline operational states."""
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class PipelineMetrics:
    """Counters for the lifetime of one pipeline instance."""
    files_uploaded: int = 0
    batches_uploaded: int = 0
    proofs_missing: int = 0
    downloads: int = 0
    legacy_downloads: int = 0
    verifications: int = 0
    tampered: int = 0


class EvidencePipeline:
    """
    Main Evidence Seal pipeline.

    Every collaborator can be injected; anything not injected is built from
    the configuration.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        hasher: Optional[ContentHasher] = None,
        cipher: Optional[SymmetricCipher] = None,
        batcher: Optional[MerkleBatcher] = None,
        ledger: Optional[LedgerCollaborator] = None,
        store: Optional[EvidenceStore] = None,
        local_store: Optional[KeyValueStore] = None,
        audit: Optional[AuditTrail] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Configuration object. Uses defaults if not provided.
            hasher: Content hasher
            cipher: Symmetric cipher
            batcher: Merkle batcher
            ledger: Ledger / proof collaborator
            store: Upload and download collaborator
            local_store: Local key/value store for key and proof records
            audit: Audit trail; built from config.audit when omitted
        """
        self.config = config or Config()
        self.state = PipelineState.INITIALIZING
        self.metrics = PipelineMetrics()
        self.start_time: Optional[datetime] = None

        self.hasher = hasher or ContentHasher.from_config(self.config.hashing)
        self.cipher = cipher or SymmetricCipher.from_config(self.config.cipher)
        self.batcher = batcher or MerkleBatcher(self.config.merkle.odd_node_policy)
        self.ledger = ledger or create_ledger(self.config.ledger)
        self.store = store or create_evidence_store(self.config.storage)

        backend = local_store or create_key_value_store(self.config.keystore)
        self.key_store = KeyMetadataStore(backend)
        self.proof_store = ProofRecordStore(backend)

        self.issuer = IntegrityProofIssuer(self.hasher, self.cipher, self.ledger)
        self.verifier = IntegrityVerifier(self.hasher)
        self.audit = audit if audit is not None else self._build_audit_trail()

    def _build_audit_trail(self) -> Optional[AuditTrail]:
        audit_config = self.config.audit
        if not audit_config.enabled:
            return None

        if audit_config.storage_path:
            sink = JSONLAuditSink(audit_config.storage_path)
        else:
            sink = InMemoryAuditSink()

        hmac_key = os.environ.get(audit_config.hmac_key_env)
        if not hmac_key:
            logger.warning(
                f"{audit_config.hmac_key_env} not set; audit chain uses an "
                "ephemeral key and cannot be verified by another process"
            )
        return AuditTrail(
            sink=sink,
            hmac_key=hmac_key.encode("utf-8") if hmac_key else None,
        )

    async def start(self) -> None:
        """Open collaborator sessions and resume the audit chain."""
        logger.info("Starting evidence pipeline...")
        try:
            await self.ledger.start()
            await self.store.start()
            if self.audit:
                await self.audit.start()
        except Exception as e:
            self.state = PipelineState.ERROR
            logger.error(f"Failed to start pipeline: {e}")
            raise EvidenceSealError(f"Pipeline start failed: {e}") from e

        self.state = PipelineState.READY
        self.start_time = datetime.now(timezone.utc)
        logger.info("Evidence pipeline started")

    async def stop(self) -> None:
        """Close collaborator sessions."""
        self.state = PipelineState.SHUTTING_DOWN
        for subsystem in (self.store, self.ledger):
            try:
                await subsystem.stop()
            except Exception as e:
                logger.error(f"Error stopping {type(subsystem).__name__}: {e}")
        self.state = PipelineState.STOPPED
        logger.info("Evidence pipeline stopped")

    async def __aenter__(self) -> "EvidencePipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _audit(
        self,
        event_type: AuditEventType,
        outcome: AuditOutcome,
        context: Optional[ProofContext] = None,
        file_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        if not self.audit:
            return
        await self.audit.record(
            event_type,
            outcome,
            actor=context.identity if context else None,
            case_id=context.case_id if context else None,
            file_id=file_id,
            data=data,
        )

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        data: EvidenceInput,
        file_name: str,
        identity: str,
        case_id: str,
        description: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadReceipt:
        """
        Seal and store a single file.

        Args:
            data: Original bytes, or a path to read them from
            file_name: Original file name, kept in the encryption metadata
            identity: Uploader identity
            case_id: Case the evidence belongs to
            description: Free-text description sent with the upload
            on_progress: Called on every issuance state transition

        Returns:
            UploadReceipt; ``proof`` is None when the ledger failed

        Raises:
            HashingFailure: If the input cannot be read
            EncryptionFailure: If the key cannot be derived or encryption fails
            UploadFailure: If the storage service rejects the upload
        """
        context = ProofContext(case_id=case_id, identity=identity, description=description)

        try:
            key = self.cipher.derive_key(identity, case_id)
            task = await self.issuer.issue(data, file_name, key, context, on_progress)
            request = UploadRequest(
                ciphertext=task.ciphertext,
                metadata=task.metadata,
                content_hash=task.content_hash,
                context=context,
                proof_id=task.proof.proof_id if task.proof else None,
            )
            file_id = await self.store.upload(request)
        except EvidenceSealError as e:
            logger.error(f"Upload of {file_name} failed: {e.message}")
            await self._audit(
                AuditEventType.UPLOAD,
                AuditOutcome.FAILURE,
                context,
                file_name=file_name,
                error=e.code,
            )
            raise

        self.key_store.put(file_id, task.metadata, key)
        if task.proof:
            self.proof_store.put(file_id, task.proof)
        else:
            self.metrics.proofs_missing += 1
        self.metrics.files_uploaded += 1

        receipt = self._receipt(file_id, task)
        logger.info(
            f"Uploaded {file_name} as {file_id}",
            extra={
                "file_id": file_id,
                "case_id": case_id,
                "content_hash": task.content_hash.short(),
            },
        )
        await self._audit(
            AuditEventType.UPLOAD,
            AuditOutcome.SUCCESS if task.proof else AuditOutcome.DEGRADED,
            context,
            file_id=file_id,
            file_name=file_name,
            content_hash=str(task.content_hash),
            proof_id=receipt.proof.proof_id if receipt.proof else None,
        )
        return receipt

    @staticmethod
    def _receipt(
        file_id: str,
        task: ProofTask,
        membership: Optional[BatchMembership] = None,
    ) -> UploadReceipt:
        return UploadReceipt(
            file_id=file_id,
            file_name=task.file_name,
            content_hash=task.content_hash,
            metadata=task.metadata,
            proof=task.proof,
            membership=membership,
            proof_error=str(task.error) if task.error else None,
        )

    async def upload_batch(
        self,
        files: Sequence[Tuple[str, EvidenceInput]],
        identity: str,
        case_id: str,
        description: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchUploadResult:
        """
        Seal and store several files under one anchored Merkle root.

        Args:
            files: (file_name, data) pairs in batch order
            identity: Uploader identity
            case_id: Case the evidence belongs to
            description: Free-text description sent with the upload
            on_progress: Called on every state transition of every file;
                events carry the file's batch index

        Returns:
            BatchUploadResult with receipts in input order

        Raises:
            TreeConstructionError: If the batch is empty
            HashingFailure: If any file cannot be read; nothing is uploaded
            EncryptionFailure: If any file cannot be encrypted
            UploadFailure: If the storage service rejects the batch
        """
        context = ProofContext(case_id=case_id, identity=identity, description=description)

        try:
            if not files:
                raise TreeConstructionError(
                    "Cannot upload an empty batch", leaf_count=0
                )
            key = self.cipher.derive_key(identity, case_id)
            tasks = [
                self.issuer.task(data, name, key, context, on_progress, index=i)
                for i, (name, data) in enumerate(files)
            ]

            # gather returns results in task order whatever the completion order
            leaf_hashes = await asyncio.gather(
                *(t.hash() for t in tasks), return_exceptions=True
            )
            await self._settle(tasks, leaf_hashes, HashingFailure)
            tree = self.batcher.build_tree(leaf_hashes)
            root = tree.root

            anchor_receipt = None
            anchor_error = None
            try:
                anchor_receipt = await self.issuer.anchor_root(
                    root, context, tree.leaf_count
                )
            except ProofIssuanceFailure as e:
                anchor_error = e.message
                logger.warning(
                    f"Batch root could not be anchored: {e.message}",
                    extra={"batch_root": root[:16]},
                )

            sealed = await asyncio.gather(
                *(self._seal(t, root) for t in tasks), return_exceptions=True
            )
            await self._settle(tasks, sealed, EncryptionFailure)

            memberships = [
                BatchMembership(
                    batch_root=root,
                    index=i,
                    path=tree.path(i),
                    leaf_count=tree.leaf_count,
                    policy=tree.policy,
                    anchor_receipt=anchor_receipt,
                )
                for i in range(tree.leaf_count)
            ]
            requests = [
                UploadRequest(
                    ciphertext=t.ciphertext,
                    metadata=t.metadata,
                    content_hash=t.content_hash,
                    context=context,
                    proof_id=t.proof.proof_id if t.proof else None,
                    batch_root=root,
                    batch_index=i,
                    batch_path=[step.to_dict() for step in memberships[i].path],
                )
                for i, t in enumerate(tasks)
            ]
            file_ids = await self.store.upload_batch(requests, root, anchor_receipt)
        except EvidenceSealError as e:
            logger.error(f"Batch upload failed: {e.message}")
            await self._audit(
                AuditEventType.BATCH_UPLOAD,
                AuditOutcome.FAILURE,
                context,
                file_count=len(files),
                error=e.code,
            )
            raise

        receipts = []
        for file_id, task, membership in zip(file_ids, tasks, memberships):
            self.key_store.put(file_id, task.metadata, key)
            self.proof_store.put(file_id, task.proof, membership)
            if not task.proof:
                self.metrics.proofs_missing += 1
            receipts.append(self._receipt(file_id, task, membership))

        self.metrics.files_uploaded += len(receipts)
        self.metrics.batches_uploaded += 1

        result = BatchUploadResult(
            receipts=receipts,
            merkle_root=root,
            anchor_receipt=anchor_receipt,
            anchor_error=anchor_error,
        )
        logger.info(
            f"Uploaded batch of {len(receipts)} files",
            extra={"case_id": case_id, "batch_root": root[:16]},
        )
        degraded = anchor_error is not None or any(r.proof is None for r in receipts)
        await self._audit(
            AuditEventType.BATCH_UPLOAD,
            AuditOutcome.DEGRADED if degraded else AuditOutcome.SUCCESS,
            context,
            file_ids=file_ids,
            merkle_root=root,
            anchor_receipt=anchor_receipt,
        )
        return result

    async def _seal(self, task: ProofTask, batch_root: str) -> None:
        await task.encrypt()
        await task.commit(batch_root=batch_root)

    @staticmethod
    async def _settle(
        tasks: List[ProofTask],
        results: List[Any],
        failure_type: type,
    ) -> None:
        """
        Fail every unfinished task once any batch member has failed, then
        raise the first failure.
        """
        failed = [
            (task, result)
            for task, result in zip(tasks, results)
            if isinstance(result, BaseException)
        ]
        if not failed:
            return

        first_task, first_error = failed[0]
        for task in tasks:
            if not task.terminal:
                await task.abort(failure_type(
                    f"Batch aborted: {first_task.file_name} failed ({first_error})"
                ))
        raise first_error

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(self, file_id: str) -> DownloadResult:
        """
        Fetch a stored file and return its original bytes.

        A file with no local key record predates encryption: its payload is
        returned unchanged with ``decrypted=False``.

        Raises:
            EvidenceNotFoundError: If the storage service has no such file
            DecryptionFailure: If a key record exists but decryption fails
        """
        try:
            payload = await self.store.download(file_id)
            record = self.key_store.get(file_id)

            if record is None:
                logger.info(
                    f"No key record for {file_id}; returning stored payload as-is",
                    extra={"file_id": file_id},
                )
                self.metrics.downloads += 1
                self.metrics.legacy_downloads += 1
                await self._audit(
                    AuditEventType.DOWNLOAD,
                    AuditOutcome.SUCCESS,
                    file_id=file_id,
                    decrypted=False,
                )
                return DownloadResult(
                    file_id=file_id, data=payload, file_name=None, decrypted=False
                )

            plaintext = await asyncio.to_thread(
                self.cipher.decrypt, payload, record.metadata, record.key, file_id
            )
        except (EvidenceNotFoundError, DecryptionFailure) as e:
            logger.error(f"Download of {file_id} failed: {e.message}")
            await self._audit(
                AuditEventType.DOWNLOAD,
                AuditOutcome.FAILURE,
                file_id=file_id,
                error=e.code,
                details=e.details,
            )
            raise

        self.metrics.downloads += 1
        await self._audit(
            AuditEventType.DOWNLOAD,
            AuditOutcome.SUCCESS,
            ProofContext(case_id=record.key.case_id, identity=record.key.identity),
            file_id=file_id,
            decrypted=True,
        )
        return DownloadResult(
            file_id=file_id,
            data=plaintext,
            file_name=record.metadata.original_name,
            decrypted=True,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(
        self,
        data: EvidenceInput,
        proof: Optional[IntegrityProof],
        membership: Optional[BatchMembership] = None,
        anchored_root: Optional[str] = None,
        file_id: Optional[str] = None,
    ) -> VerificationResult:
        """
        Check file bytes against a proof and report the verdict to the ledger.

        ``proof`` may be None for a batch member whose proof was never issued;
        the file is then checked against the anchored root alone.

        Returns:
            VerificationResult; a TAMPERED verdict is returned, not raised
        """
        if isinstance(data, Path):
            result = await asyncio.to_thread(
                self.verifier.verify_file, data, proof, membership, anchored_root
            )
        else:
            result = await asyncio.to_thread(
                self.verifier.verify, data, proof, membership, anchored_root
            )

        self.metrics.verifications += 1
        if result.verdict == Verdict.TAMPERED:
            self.metrics.tampered += 1

        receipt_id = proof.proof_id if proof else membership.anchor_receipt
        if receipt_id:
            try:
                await self.ledger.acknowledge(
                    receipt_id, result.verdict, str(result.computed_hash)
                )
            except Exception as e:
                logger.warning(f"Ledger acknowledgement for {receipt_id} failed: {e}")

        await self._audit(
            AuditEventType.VERIFY,
            AuditOutcome.SUCCESS if result.verified else AuditOutcome.TAMPERED,
            proof.context if proof else None,
            file_id=file_id,
            proof_id=receipt_id,
            verdict=result.verdict.value,
            reasons=result.reasons,
        )
        return result

    async def resolve_anchored_root(
        self, membership: Optional[BatchMembership]
    ) -> Optional[str]:
        """
        Root digest the ledger holds for a batch's anchor receipt.

        Returns None when there is no anchor receipt or the ledger cannot
        resolve it; verification then falls back to the recorded root.
        """
        if membership is None or not membership.anchor_receipt:
            return None
        try:
            root = await self.ledger.lookup(membership.anchor_receipt)
        except Exception as e:
            logger.warning(f"Anchor lookup for {membership.anchor_receipt} failed: {e}")
            return None
        if root is None:
            logger.warning(
                f"Ledger cannot resolve anchor {membership.anchor_receipt}; "
                "checking against the recorded batch root",
                extra={"batch_root": membership.batch_root[:16]},
            )
        return root

    async def verify_file(self, file_id: str, data: EvidenceInput) -> VerificationResult:
        """
        Verify bytes against the proof recorded locally for a file id.

        Batch members are checked against the root the ledger anchored, when
        the ledger can resolve the anchor receipt.

        Raises:
            EvidenceNotFoundError: If neither a proof nor a batch membership
                was recorded for the file
        """
        stored = self.proof_store.get(file_id)
        if stored is None:
            raise EvidenceNotFoundError(
                f"No integrity proof recorded for file {file_id}", file_id=file_id
            )
        proof, membership = stored
        anchored_root = await self.resolve_anchored_root(membership)
        return await self.verify(data, proof, membership, anchored_root, file_id=file_id)

    def get_status(self) -> Dict[str, Any]:
        uptime = 0.0
        if self.start_time:
            uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        status = {
            "state": self.state.value,
            "uptime_seconds": uptime,
            "metrics": asdict(self.metrics),
            "odd_node_policy": self.batcher.odd_node_policy,
            "hash_algorithm": self.hasher.algorithm,
        }
        if self.audit:
            status["audit"] = self.audit.get_stats()
        return status

    def stored_file_ids(self) -> List[str]:
        return self.key_store.file_ids()


__all__ = [
    "EvidencePipeline",
    "PipelineState",
    "PipelineMetrics",
]
