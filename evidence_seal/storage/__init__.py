"""
Evidence Seal - Evidence Storage Collaborators

Upload and download contracts with the external storage service, plus
in-memory, directory and HTTP implementations.

The service receives ciphertext, encryption metadata (never the key), the
content hash, optional proof id and batch position, and case context. It
returns a file identifier per file, preserving the caller's order.
"""

import asyncio
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiohttp

from ..core.config import StorageConfig
from ..core.evidence import ContentHash, EncryptionMetadata, ProofContext
from ..core.exceptions import EvidenceNotFoundError, UploadFailure

logger = logging.getLogger(__name__)


@dataclass
class UploadRequest:
    """One file as handed to the storage service."""
    ciphertext: bytes = field(repr=False)
    metadata: EncryptionMetadata
    content_hash: ContentHash
    context: ProofContext
    proof_id: Optional[str] = None
    batch_root: Optional[str] = None
    batch_index: Optional[int] = None
    batch_path: Optional[List[Dict[str, str]]] = None

    def describe(self) -> Dict[str, Any]:
        """Everything except the ciphertext, as sent alongside it."""
        return {
            "encryption_metadata": self.metadata.to_dict(),
            "content_hash": str(self.content_hash),
            "context": self.context.to_dict(),
            "proof_id": self.proof_id,
            "batch_root": self.batch_root,
            "batch_index": self.batch_index,
            "batch_path": self.batch_path,
        }


class UploadCollaborator(ABC):
    """Accepts encrypted evidence and assigns file identifiers."""

    async def start(self) -> None:
        """Open any connections."""

    async def stop(self) -> None:
        """Release any connections."""

    @abstractmethod
    async def upload(self, request: UploadRequest) -> str:
        """Store one file; returns its file id."""

    @abstractmethod
    async def upload_batch(
        self,
        requests: List[UploadRequest],
        merkle_root: str,
        anchor_receipt: Optional[str] = None,
    ) -> List[str]:
        """Store a batch; returns file ids in request order."""


class DownloadCollaborator(ABC):
    """Returns stored ciphertext by file identifier."""

    @abstractmethod
    async def download(self, file_id: str) -> bytes:
        """
        Fetch stored bytes.

        Raises:
            EvidenceNotFoundError: If the id is unknown
        """


class EvidenceStore(UploadCollaborator, DownloadCollaborator):
    """Both roles of the storage service."""


@dataclass
class StoredEvidence:
    """Server-side view of one stored file."""
    file_id: str
    payload: bytes = field(repr=False)
    record: Dict[str, Any]
    uploaded_at: datetime


class InMemoryEvidenceStore(EvidenceStore):
    """Storage service double keeping everything in process memory."""

    def __init__(self):
        self._files: Dict[str, StoredEvidence] = {}
        self._batches: Dict[str, Dict[str, Any]] = {}

    def _store(self, payload: bytes, record: Dict[str, Any]) -> str:
        file_id = str(uuid.uuid4())
        self._files[file_id] = StoredEvidence(
            file_id=file_id,
            payload=bytes(payload),
            record=record,
            uploaded_at=datetime.now(timezone.utc),
        )
        return file_id

    async def upload(self, request: UploadRequest) -> str:
        return self._store(request.ciphertext, request.describe())

    async def upload_batch(
        self,
        requests: List[UploadRequest],
        merkle_root: str,
        anchor_receipt: Optional[str] = None,
    ) -> List[str]:
        file_ids = [self._store(r.ciphertext, r.describe()) for r in requests]
        self._batches[merkle_root] = {
            "file_ids": file_ids,
            "anchor_receipt": anchor_receipt,
        }
        return file_ids

    async def download(self, file_id: str) -> bytes:
        stored = self._files.get(file_id)
        if stored is None:
            raise EvidenceNotFoundError(
                f"No evidence stored under {file_id}", file_id=file_id
            )
        return stored.payload

    def put_plaintext(self, payload: bytes, file_name: str = "") -> str:
        """Store an unencrypted payload, as files predating encryption were."""
        return self._store(payload, {"legacy": True, "file_name": file_name})

    def replace_payload(self, file_id: str, payload: bytes) -> None:
        """Overwrite stored bytes in place."""
        self._files[file_id].payload = bytes(payload)

    def get_record(self, file_id: str) -> Optional[Dict[str, Any]]:
        stored = self._files.get(file_id)
        return dict(stored.record) if stored else None

    def get_batch(self, merkle_root: str) -> Optional[Dict[str, Any]]:
        batch = self._batches.get(merkle_root)
        return dict(batch) if batch else None


class DirectoryEvidenceStore(EvidenceStore):
    """
    Storage service backed by a local directory.

    Each file is ``<id>.bin`` with a ``<id>.json`` sidecar record.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    async def start(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _write(self, payload: bytes, record: Dict[str, Any]) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        file_id = str(uuid.uuid4())
        record = {
            **record,
            "file_id": file_id,
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
        }
        payload_path = self.root / f"{file_id}.bin"
        tmp_path = self.root / f".{file_id}.bin.tmp"
        with open(tmp_path, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, payload_path)
        with open(self.root / f"{file_id}.json", "w", encoding="utf-8") as f:
            json.dump(record, f, sort_keys=True, indent=2)
        return file_id

    async def upload(self, request: UploadRequest) -> str:
        try:
            return await asyncio.to_thread(
                self._write, request.ciphertext, request.describe()
            )
        except OSError as e:
            raise UploadFailure(f"Cannot write evidence: {e}", endpoint=str(self.root)) from e

    async def upload_batch(
        self,
        requests: List[UploadRequest],
        merkle_root: str,
        anchor_receipt: Optional[str] = None,
    ) -> List[str]:
        file_ids = []
        for request in requests:
            file_ids.append(await self.upload(request))
        batch_record = {
            "merkle_root": merkle_root,
            "anchor_receipt": anchor_receipt,
            "file_ids": file_ids,
        }
        try:
            with open(self.root / f"batch_{merkle_root[:16]}.json", "w", encoding="utf-8") as f:
                json.dump(batch_record, f, sort_keys=True, indent=2)
        except OSError as e:
            raise UploadFailure(f"Cannot write batch record: {e}", endpoint=str(self.root)) from e
        return file_ids

    async def download(self, file_id: str) -> bytes:
        path = self.root / f"{file_id}.bin"
        if not path.is_file():
            raise EvidenceNotFoundError(
                f"No evidence stored under {file_id}", file_id=file_id
            )
        return await asyncio.to_thread(path.read_bytes)

    def get_record(self, file_id: str) -> Optional[Dict[str, Any]]:
        path = self.root / f"{file_id}.json"
        if not path.is_file():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)


class HTTPEvidenceClient(EvidenceStore):
    """
    Client for the evidence storage HTTP API.

    POST {base}/upload-evidence        multipart, returns {"fileId"}
    POST {base}/upload-batch-evidence  multipart, returns {"fileIds"}
    GET  {base}/evidence/{id}/download raw ciphertext
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 60.0,
    ):
        """Initialize storage client."""
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        headers = {}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._timeout),
            headers=headers,
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _require_session(self, endpoint: str) -> aiohttp.ClientSession:
        if not self._session:
            raise UploadFailure("Storage client not started", endpoint=endpoint)
        return self._session

    @staticmethod
    def _context_fields(form: aiohttp.FormData, context: ProofContext) -> None:
        form.add_field("caseNumber", context.case_id)
        form.add_field("uploadedBy", context.identity)
        form.add_field("description", context.description)

    async def _post_form(self, endpoint: str, form: aiohttp.FormData) -> Dict[str, Any]:
        session = self._require_session(endpoint)
        url = f"{self._base_url}/{endpoint}"
        try:
            async with session.post(url, data=form) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise UploadFailure(
                        f"Upload rejected: {text[:200]}",
                        endpoint=url,
                        status=resp.status,
                    )
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UploadFailure(f"Upload failed: {e}", endpoint=url) from e

    async def upload(self, request: UploadRequest) -> str:
        form = aiohttp.FormData()
        form.add_field(
            "file",
            request.ciphertext,
            filename=f"{request.metadata.original_name or 'evidence'}.enc",
            content_type="application/octet-stream",
        )
        self._context_fields(form, request.context)
        form.add_field("encryptionMetadata", json.dumps(request.metadata.to_dict()))
        form.add_field("originalFileHash", str(request.content_hash))
        if request.proof_id:
            form.add_field("zkpProofId", request.proof_id)

        body = await self._post_form("upload-evidence", form)
        file_id = body.get("fileId")
        if not file_id:
            raise UploadFailure("Response did not include a fileId", endpoint="upload-evidence")
        return file_id

    async def upload_batch(
        self,
        requests: List[UploadRequest],
        merkle_root: str,
        anchor_receipt: Optional[str] = None,
    ) -> List[str]:
        if not requests:
            raise UploadFailure("Empty batch", endpoint="upload-batch-evidence")

        form = aiohttp.FormData()
        for i, request in enumerate(requests):
            form.add_field(
                f"file{i}",
                request.ciphertext,
                filename=f"{request.metadata.original_name or f'evidence{i}'}.enc",
                content_type="application/octet-stream",
            )
        self._context_fields(form, requests[0].context)
        form.add_field("encryptionMetadata", json.dumps(
            [r.metadata.to_dict() for r in requests]
        ))
        form.add_field("originalFileHashes", json.dumps([
            {
                "fileName": r.metadata.original_name,
                "hash": str(r.content_hash),
                "index": r.batch_index,
                "path": r.batch_path,
            }
            for r in requests
        ]))
        form.add_field("zkpProofs", json.dumps([r.proof_id for r in requests]))
        form.add_field("merkleRoot", merkle_root)
        if anchor_receipt:
            form.add_field("txHash", anchor_receipt)

        body = await self._post_form("upload-batch-evidence", form)
        file_ids = body.get("fileIds") or []
        if len(file_ids) != len(requests):
            raise UploadFailure(
                f"Expected {len(requests)} file ids, got {len(file_ids)}",
                endpoint="upload-batch-evidence",
            )
        return list(file_ids)

    async def download(self, file_id: str) -> bytes:
        url = f"{self._base_url}/evidence/{file_id}/download"
        if not self._session:
            raise EvidenceNotFoundError("Storage client not started", file_id=file_id)
        try:
            async with self._session.get(url) as resp:
                if resp.status == 404:
                    raise EvidenceNotFoundError(
                        f"No evidence stored under {file_id}", file_id=file_id
                    )
                if resp.status >= 400:
                    raise UploadFailure(
                        f"Download failed with status {resp.status}",
                        endpoint=url,
                        status=resp.status,
                    )
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UploadFailure(f"Download failed: {e}", endpoint=url) from e


def create_evidence_store(config: StorageConfig) -> EvidenceStore:
    """Build the configured storage collaborator."""
    if config.backend == "directory":
        return DirectoryEvidenceStore(config.path)
    if config.backend == "http":
        return HTTPEvidenceClient(
            base_url=config.base_url,
            auth_token=config.auth_token,
            timeout=config.timeout,
        )
    return InMemoryEvidenceStore()


__all__ = [
    "UploadRequest",
    "UploadCollaborator",
    "DownloadCollaborator",
    "EvidenceStore",
    "InMemoryEvidenceStore",
    "DirectoryEvidenceStore",
    "HTTPEvidenceClient",
    "create_evidence_store",
]
