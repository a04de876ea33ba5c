"""
Tests for the evidence storage collaborators.
"""

import json
from unittest.mock import MagicMock

import aiohttp
import pytest

from evidence_seal.core.config import StorageConfig
from evidence_seal.core.evidence import ProofContext
from evidence_seal.core.exceptions import EvidenceNotFoundError, UploadFailure
from evidence_seal.hashing import ContentHasher
from evidence_seal.storage import (
    DirectoryEvidenceStore,
    HTTPEvidenceClient,
    InMemoryEvidenceStore,
    UploadRequest,
    create_evidence_store,
)

from conftest import FakeResponse


@pytest.fixture
def make_request(cipher, case_key):
    hasher = ContentHasher()

    def _make(data: bytes, name: str, **kwargs) -> UploadRequest:
        ciphertext, metadata = cipher.encrypt(data, case_key, name)
        return UploadRequest(
            ciphertext=ciphertext,
            metadata=metadata,
            content_hash=hasher.hash_bytes(data),
            context=ProofContext(case_id="CASE-1", identity="a@x.gov"),
            **kwargs,
        )

    return _make


class TestInMemoryEvidenceStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_upload_and_download(self, evidence_store, make_request):
        request = make_request(b"evidence", "a.txt", proof_id="ZKP-1-00000000")

        file_id = await evidence_store.upload(request)

        assert await evidence_store.download(file_id) == request.ciphertext
        record = evidence_store.get_record(file_id)
        assert record["proof_id"] == "ZKP-1-00000000"
        assert record["content_hash"] == str(request.content_hash)

    @pytest.mark.asyncio
    async def test_record_never_contains_key(self, evidence_store, make_request, case_key):
        file_id = await evidence_store.upload(make_request(b"evidence", "a.txt"))

        record = json.dumps(evidence_store.get_record(file_id))
        assert case_key.material.hex() not in record
        assert "material" not in record

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, evidence_store, make_request):
        requests = [make_request(f"file {i}".encode(), f"{i}.txt", batch_index=i) for i in range(4)]

        file_ids = await evidence_store.upload_batch(requests, "ab" * 32, "0x" + "cd" * 32)

        assert len(set(file_ids)) == 4
        for file_id, request in zip(file_ids, requests):
            assert await evidence_store.download(file_id) == request.ciphertext
        assert evidence_store.get_batch("ab" * 32)["file_ids"] == file_ids

    @pytest.mark.asyncio
    async def test_unknown_file(self, evidence_store):
        with pytest.raises(EvidenceNotFoundError) as exc_info:
            await evidence_store.download("nope")

        assert exc_info.value.file_id == "nope"


class TestDirectoryEvidenceStore:
    """Tests for the directory-backed store."""

    @pytest.mark.asyncio
    async def test_upload_writes_payload_and_sidecar(self, tmp_path, make_request):
        store = DirectoryEvidenceStore(tmp_path / "evidence")
        await store.start()
        request = make_request(b"evidence", "a.txt")

        file_id = await store.upload(request)

        assert (tmp_path / "evidence" / f"{file_id}.bin").read_bytes() == request.ciphertext
        assert store.get_record(file_id)["encryption_metadata"]["original_name"] == "a.txt"
        assert await store.download(file_id) == request.ciphertext

    @pytest.mark.asyncio
    async def test_batch_record(self, tmp_path, make_request):
        store = DirectoryEvidenceStore(tmp_path)
        path = [{"sibling_hash": "aa" * 32, "position": "right"}]
        requests = [
            make_request(b"one", "1.txt", batch_index=0, batch_path=path),
            make_request(b"two", "2.txt", batch_index=1),
        ]
        root = "ef" * 32

        file_ids = await store.upload_batch(requests, root)

        batch = json.loads((tmp_path / f"batch_{root[:16]}.json").read_text())
        assert batch["file_ids"] == file_ids
        assert batch["merkle_root"] == root
        assert store.get_record(file_ids[0])["batch_path"] == path
        assert store.get_record(file_ids[1])["batch_path"] is None

    @pytest.mark.asyncio
    async def test_download_missing(self, tmp_path):
        with pytest.raises(EvidenceNotFoundError):
            await DirectoryEvidenceStore(tmp_path).download("missing")

    @pytest.mark.asyncio
    async def test_unwritable_root(self, tmp_path, make_request):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        with pytest.raises(UploadFailure):
            await DirectoryEvidenceStore(blocker / "sub").upload(make_request(b"x", "x"))


class TestHTTPEvidenceClient:
    """Tests for the HTTP client with a mocked session."""

    @pytest.mark.asyncio
    async def test_upload(self, make_request):
        client = HTTPEvidenceClient("https://evidence.test/api/")
        client._session = MagicMock()
        client._session.post.return_value = FakeResponse(200, {"fileId": "F-1"})

        file_id = await client.upload(make_request(b"evidence", "a.txt", proof_id="P-1"))

        assert file_id == "F-1"
        assert client._session.post.call_args.args[0] == "https://evidence.test/api/upload-evidence"
        assert isinstance(client._session.post.call_args.kwargs["data"], aiohttp.FormData)

    @pytest.mark.asyncio
    async def test_upload_rejected(self, make_request):
        client = HTTPEvidenceClient("https://evidence.test")
        client._session = MagicMock()
        client._session.post.return_value = FakeResponse(413, {"error": "too large"})

        with pytest.raises(UploadFailure) as exc_info:
            await client.upload(make_request(b"evidence", "a.txt"))

        assert exc_info.value.status == 413

    @pytest.mark.asyncio
    async def test_connection_error(self, make_request):
        client = HTTPEvidenceClient("https://evidence.test")
        client._session = MagicMock()
        client._session.post.side_effect = aiohttp.ClientConnectionError("reset")

        with pytest.raises(UploadFailure):
            await client.upload(make_request(b"evidence", "a.txt"))

    @pytest.mark.asyncio
    async def test_batch_id_count_mismatch(self, make_request):
        client = HTTPEvidenceClient("https://evidence.test")
        client._session = MagicMock()
        client._session.post.return_value = FakeResponse(200, {"fileIds": ["F-1"]})
        requests = [make_request(b"one", "1"), make_request(b"two", "2")]

        with pytest.raises(UploadFailure):
            await client.upload_batch(requests, "ab" * 32)

    @pytest.mark.asyncio
    async def test_batch_upload(self, make_request):
        client = HTTPEvidenceClient("https://evidence.test")
        client._session = MagicMock()
        client._session.post.return_value = FakeResponse(200, {"fileIds": ["F-1", "F-2"]})
        requests = [make_request(b"one", "1"), make_request(b"two", "2")]

        assert await client.upload_batch(requests, "ab" * 32, "0xabc") == ["F-1", "F-2"]

    @pytest.mark.asyncio
    async def test_download(self):
        client = HTTPEvidenceClient("https://evidence.test")
        client._session = MagicMock()
        client._session.get.return_value = FakeResponse(200, data=b"ciphertext")

        assert await client.download("F-1") == b"ciphertext"
        assert client._session.get.call_args.args[0] == "https://evidence.test/evidence/F-1/download"

    @pytest.mark.asyncio
    async def test_download_not_found(self):
        client = HTTPEvidenceClient("https://evidence.test")
        client._session = MagicMock()
        client._session.get.return_value = FakeResponse(404)

        with pytest.raises(EvidenceNotFoundError):
            await client.download("F-404")

    @pytest.mark.asyncio
    async def test_not_started(self, make_request):
        with pytest.raises(UploadFailure):
            await HTTPEvidenceClient("https://evidence.test").upload(make_request(b"x", "x"))


def test_factory(tmp_path):
    assert isinstance(create_evidence_store(StorageConfig()), InMemoryEvidenceStore)
    assert isinstance(
        create_evidence_store(StorageConfig(backend="directory", path=str(tmp_path))),
        DirectoryEvidenceStore,
    )
    assert isinstance(
        create_evidence_store(StorageConfig(backend="http", base_url="https://evidence.test")),
        HTTPEvidenceClient,
    )
