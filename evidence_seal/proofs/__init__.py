"""
Evidence Seal - Integrity Proof Issuance

Drives the hash -> encrypt -> commit sequence for one logical upload unit
and records an IntegrityProof bound to the content hash.

State machine per file:
    idle -> hashing -> encrypting -> committing -> complete | failed

Any step may fail. Hashing and encryption failures are raised to the caller;
a commit failure is logged and the file continues without a proof. Every
task reaches exactly one terminal state, and progress callbacks are invoked
in state order.

Ledger collaborators accept a digest (or batch root) plus context and return
an opaque receipt identifier. ``LocalLedger`` fabricates identifiers;
``HTTPLedgerClient`` talks to a remote receipt service.
"""

import asyncio
import hashlib
import inspect
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from ..cipher import SymmetricCipher
from ..core.config import LedgerConfig
from ..core.evidence import (
    ContentHash,
    EncryptionKey,
    EncryptionMetadata,
    IntegrityProof,
    ProofContext,
    Verdict,
)
from ..core.exceptions import (
    EncryptionFailure,
    HashingFailure,
    InvalidStateTransition,
    ProofIssuanceFailure,
)
from ..hashing import ContentHasher
from ..observability import evidence_logger

logger = logging.getLogger(__name__)


class LedgerCollaborator(ABC):
    """External ledger / proof system."""

    async def start(self) -> None:
        """Open any connections."""

    async def stop(self) -> None:
        """Release any connections."""

    @abstractmethod
    async def issue(self, digest: str, context: Dict[str, Any]) -> str:
        """
        Obtain a receipt for a digest or batch root.

        Raises:
            ProofIssuanceFailure: If no receipt can be obtained
        """

    @abstractmethod
    async def acknowledge(
        self, receipt_id: str, verdict: Verdict, digest: str
    ) -> None:
        """Record a locally computed verification verdict."""

    async def lookup(self, receipt_id: str) -> Optional[str]:
        """Digest a receipt was issued for; None when it cannot be resolved."""
        return None


class LocalLedger(LedgerCollaborator):
    """
    In-process ledger that fabricates receipt identifiers.

    Proof receipts look like ``ZKP-<millis>-<8 hex>``; batch anchors look
    like transaction hashes (``0x`` + 64 hex). Each receipt keeps a binding
    hash over (digest, timestamp, nonce).
    """

    def __init__(self):
        self._receipts: Dict[str, Dict[str, Any]] = {}
        self._acknowledgements: List[Dict[str, Any]] = []

    async def issue(self, digest: str, context: Dict[str, Any]) -> str:
        issued_at = datetime.now(timezone.utc)
        nonce = os.urandom(16)
        binding_hash = hashlib.sha256(
            issued_at.isoformat().encode() + digest.encode() + nonce
        ).hexdigest()

        if context.get("kind") == "batch_anchor":
            receipt_id = f"0x{binding_hash}"
        else:
            receipt_id = f"ZKP-{int(time.time() * 1000)}-{binding_hash[:8]}"

        self._receipts[receipt_id] = {
            "digest": digest,
            "context": dict(context),
            "issued_at": issued_at.isoformat(),
            "binding_hash": binding_hash,
        }
        return receipt_id

    async def acknowledge(
        self, receipt_id: str, verdict: Verdict, digest: str
    ) -> None:
        self._acknowledgements.append({
            "receipt_id": receipt_id,
            "verdict": verdict.value,
            "digest": digest,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def lookup(self, receipt_id: str) -> Optional[str]:
        receipt = self._receipts.get(receipt_id)
        return receipt["digest"] if receipt else None

    def get_receipt(self, receipt_id: str) -> Optional[Dict[str, Any]]:
        receipt = self._receipts.get(receipt_id)
        return dict(receipt) if receipt else None

    @property
    def acknowledgements(self) -> List[Dict[str, Any]]:
        return list(self._acknowledgements)


class HTTPLedgerClient(LedgerCollaborator):
    """
    Remote receipt service client.

    POST {url}/receipts              {"digest", "context"} -> {"receipt_id"}
    POST {url}/receipts/{id}/verifications  {"verdict", "digest"}
    GET  {url}/receipts/{id}            -> {"digest", ...}
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        fallback_to_local: bool = True,
    ):
        """Initialize ledger client."""
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._fallback_to_local = fallback_to_local
        self._fallback = LocalLedger()
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._timeout)
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _local_receipt(self, digest: str, context: Dict[str, Any], reason: str) -> str:
        if not self._fallback_to_local:
            raise ProofIssuanceFailure(
                f"Ledger request failed: {reason}",
                digest=digest,
                endpoint=self._url,
            )
        logger.warning(f"Ledger unavailable ({reason}), issuing local receipt")
        return await self._fallback.issue(digest, context)

    async def issue(self, digest: str, context: Dict[str, Any]) -> str:
        if not self._session:
            return await self._local_receipt(digest, context, "client not started")

        try:
            async with self._session.post(
                f"{self._url}/receipts",
                json={"digest": digest, "context": context},
            ) as resp:
                if resp.status not in (200, 201):
                    return await self._local_receipt(
                        digest, context, f"status {resp.status}"
                    )
                body = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return await self._local_receipt(digest, context, str(e) or type(e).__name__)

        receipt_id = body.get("receipt_id") if isinstance(body, dict) else None
        if not receipt_id:
            return await self._local_receipt(digest, context, "response without receipt_id")
        return receipt_id

    async def acknowledge(
        self, receipt_id: str, verdict: Verdict, digest: str
    ) -> None:
        if not self._session:
            return
        try:
            async with self._session.post(
                f"{self._url}/receipts/{receipt_id}/verifications",
                json={"verdict": verdict.value, "digest": digest},
            ) as resp:
                if resp.status >= 400:
                    logger.warning(
                        f"Ledger rejected verification ack for {receipt_id}: "
                        f"status {resp.status}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Ledger verification ack failed: {e}")

    async def lookup(self, receipt_id: str) -> Optional[str]:
        local = await self._fallback.lookup(receipt_id)
        if local or not self._session:
            return local
        try:
            async with self._session.get(f"{self._url}/receipts/{receipt_id}") as resp:
                if resp.status != 200:
                    logger.warning(
                        f"Ledger could not resolve receipt {receipt_id}: status {resp.status}"
                    )
                    return None
                body = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Ledger receipt lookup failed: {e}")
            return None
        return body.get("digest") if isinstance(body, dict) else None


def create_ledger(config: LedgerConfig) -> LedgerCollaborator:
    """Build the configured ledger collaborator."""
    if config.backend == "http":
        return HTTPLedgerClient(
            url=config.url,
            timeout=config.timeout,
            fallback_to_local=config.fallback_to_local,
        )
    return LocalLedger()


class ProofState(Enum):
    """Per-file issuance states."""
    IDLE = "idle"
    HASHING = "hashing"
    ENCRYPTING = "encrypting"
    COMMITTING = "committing"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS = {
    ProofState.IDLE: {ProofState.HASHING, ProofState.FAILED},
    ProofState.HASHING: {ProofState.ENCRYPTING, ProofState.FAILED},
    ProofState.ENCRYPTING: {ProofState.COMMITTING, ProofState.FAILED},
    ProofState.COMMITTING: {ProofState.COMPLETE, ProofState.FAILED},
    ProofState.COMPLETE: set(),
    ProofState.FAILED: set(),
}

_PROGRESS = {
    ProofState.HASHING: 0.1,
    ProofState.ENCRYPTING: 0.4,
    ProofState.COMMITTING: 0.7,
    ProofState.COMPLETE: 1.0,
}


@dataclass
class ProgressEvent:
    """Emitted on every state transition."""
    file_name: str
    state: ProofState
    progress: float
    message: str
    index: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "state": self.state.value,
            "progress": self.progress,
            "message": self.message,
            "index": self.index,
            "error": self.error,
        }


ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class ProofTask:
    """
    One file moving through the issuance state machine.

    Steps are driven individually (``hash``, ``encrypt``, ``commit``) so a
    batch can wait for every leaf hash before committing, or all at once
    with ``run``.
    """

    def __init__(
        self,
        issuer: "IntegrityProofIssuer",
        data: Union[bytes, Path],
        file_name: str,
        key: EncryptionKey,
        context: ProofContext,
        on_progress: Optional[ProgressCallback] = None,
        index: Optional[int] = None,
    ):
        self._issuer = issuer
        self._data = data
        self.file_name = file_name
        self.key = key
        self.context = context
        self.index = index
        self._on_progress = on_progress
        self._log = evidence_logger(__name__, case_id=context.case_id)

        self.state = ProofState.IDLE
        self.history: List[ProofState] = []
        self.content_hash: Optional[ContentHash] = None
        self.ciphertext: Optional[bytes] = None
        self.metadata: Optional[EncryptionMetadata] = None
        self.proof: Optional[IntegrityProof] = None
        self.error: Optional[Exception] = None

    @property
    def terminal(self) -> bool:
        return self.state in (ProofState.COMPLETE, ProofState.FAILED)

    async def _transition(
        self,
        new_state: ProofState,
        message: str,
        error: Optional[Exception] = None,
    ) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Cannot move from {self.state.value} to {new_state.value}",
                current_state=self.state.value,
                requested_state=new_state.value,
            )

        progress = _PROGRESS.get(new_state, _PROGRESS.get(self.state, 0.0))
        self.state = new_state
        self.history.append(new_state)
        self._log.debug(message, extra={"state": new_state.value})

        if not self._on_progress:
            return

        event = ProgressEvent(
            file_name=self.file_name,
            state=new_state,
            progress=progress,
            message=message,
            index=self.index,
            error=str(error) if error else None,
        )
        try:
            result = self._on_progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Progress callback error: {e}")

    async def hash(self) -> ContentHash:
        """idle -> hashing. Computes the content hash of the original bytes."""
        await self._transition(ProofState.HASHING, f"Hashing {self.file_name}")
        hasher = self._issuer.hasher

        try:
            if isinstance(self._data, Path):
                self.content_hash = await hasher.hash_file_async(self._data)
            else:
                self.content_hash = await hasher.hash_bytes_async(self._data)
        except HashingFailure as e:
            await self._fail(e)
            raise
        except Exception as e:
            failure = HashingFailure(f"Hashing failed: {e}", source=self.file_name)
            await self._fail(failure)
            raise failure from e

        logger.debug(f"{self.file_name}: content hash {self.content_hash.short()}")
        return self.content_hash

    async def encrypt(self) -> EncryptionMetadata:
        """hashing -> encrypting. Encrypts the original bytes."""
        await self._transition(ProofState.ENCRYPTING, f"Encrypting {self.file_name}")
        cipher = self._issuer.cipher

        try:
            if isinstance(self._data, Path):
                plaintext = await asyncio.to_thread(self._data.read_bytes)
                await self._check_unchanged(plaintext)
            else:
                plaintext = self._data
            self.ciphertext, self.metadata = await asyncio.to_thread(
                cipher.encrypt, plaintext, self.key, self.file_name
            )
        except (EncryptionFailure, HashingFailure) as e:
            await self._fail(e)
            raise
        except Exception as e:
            failure = EncryptionFailure(f"Encryption failed: {e}", stage="encrypt")
            await self._fail(failure)
            raise failure from e

        return self.metadata

    async def _check_unchanged(self, plaintext: bytes) -> None:
        # the file is read twice; the encrypted bytes must be the hashed bytes
        reread = await self._issuer.hasher.hash_bytes_async(plaintext)
        if reread != self.content_hash:
            raise HashingFailure(
                f"{self.file_name} changed between hashing and encryption",
                source=str(self._data),
                bytes_read=len(plaintext),
            )

    async def commit(self, batch_root: Optional[str] = None) -> Optional[IntegrityProof]:
        """
        encrypting -> committing -> complete | failed.

        A ledger failure is not raised: the task ends ``failed`` with
        ``error`` set and ``proof`` None, and the upload proceeds.
        """
        await self._transition(
            ProofState.COMMITTING, f"Requesting proof for {self.file_name}"
        )

        digest = str(self.content_hash)
        ledger_context = {
            "kind": "proof",
            **self.context.to_dict(),
            "file_name": self.file_name,
            "batch_root": batch_root,
        }

        try:
            proof_id = await self._issuer.ledger.issue(digest, ledger_context)
        except Exception as e:
            if isinstance(e, ProofIssuanceFailure):
                failure = e
            else:
                failure = ProofIssuanceFailure(
                    f"Proof issuance failed: {e}", digest=digest
                )
                failure.__cause__ = e
            logger.warning(
                f"Continuing without proof for {self.file_name}: {failure.message}"
            )
            await self._fail(failure)
            return None

        self.proof = IntegrityProof(
            proof_id=proof_id,
            bound_hash=self.content_hash,
            issued_at=datetime.now(timezone.utc),
            context=self.context,
            batch_root=batch_root,
        )
        await self._transition(
            ProofState.COMPLETE, f"Proof {proof_id} issued for {self.file_name}"
        )
        return self.proof

    async def _fail(self, error: Exception) -> None:
        self.error = error
        await self._transition(ProofState.FAILED, f"Failed: {error}", error=error)

    async def abort(self, error: Exception) -> None:
        """Move a task that has not finished to ``failed``."""
        if not self.terminal:
            await self._fail(error)

    async def run(self, batch_root: Optional[str] = None) -> "ProofTask":
        """Drive all three steps."""
        await self.hash()
        await self.encrypt()
        await self.commit(batch_root=batch_root)
        return self


class IntegrityProofIssuer:
    """
    Issues integrity proofs for evidence files.

    Composes the content hasher, the cipher and a ledger collaborator.
    """

    def __init__(
        self,
        hasher: ContentHasher,
        cipher: SymmetricCipher,
        ledger: LedgerCollaborator,
    ):
        self.hasher = hasher
        self.cipher = cipher
        self.ledger = ledger

    def task(
        self,
        data: Union[bytes, Path],
        file_name: str,
        key: EncryptionKey,
        context: ProofContext,
        on_progress: Optional[ProgressCallback] = None,
        index: Optional[int] = None,
    ) -> ProofTask:
        return ProofTask(
            self,
            data=data,
            file_name=file_name,
            key=key,
            context=context,
            on_progress=on_progress,
            index=index,
        )

    async def issue(
        self,
        data: Union[bytes, Path],
        file_name: str,
        key: EncryptionKey,
        context: ProofContext,
        on_progress: Optional[ProgressCallback] = None,
        batch_root: Optional[str] = None,
    ) -> ProofTask:
        """Run one file through the full sequence."""
        task = self.task(data, file_name, key, context, on_progress)
        return await task.run(batch_root=batch_root)

    async def anchor_root(
        self, root: str, context: ProofContext, leaf_count: int
    ) -> str:
        """
        Anchor a batch root. Raises ProofIssuanceFailure on failure.
        """
        ledger_context = {
            "kind": "batch_anchor",
            **context.to_dict(),
            "leaf_count": leaf_count,
        }
        try:
            return await self.ledger.issue(root, ledger_context)
        except ProofIssuanceFailure:
            raise
        except Exception as e:
            raise ProofIssuanceFailure(
                f"Batch anchor failed: {e}", digest=root
            ) from e


__all__ = [
    "LedgerCollaborator",
    "LocalLedger",
    "HTTPLedgerClient",
    "create_ledger",
    "ProofState",
    "ProgressEvent",
    "ProgressCallback",
    "ProofTask",
    "IntegrityProofIssuer",
]
