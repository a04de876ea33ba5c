"""
Evidence Seal - Test Configuration

Shared fixtures: low-cost cipher, in-memory collaborators, a wired pipeline
and fakes for the HTTP collaborators.
"""

import hashlib
import json
from typing import Any, Dict, Optional

import pytest

from evidence_seal.audit import AuditTrail, InMemoryAuditSink
from evidence_seal.cipher import SymmetricCipher
from evidence_seal.core.config import Config
from evidence_seal.core.engine import EvidencePipeline
from evidence_seal.core.exceptions import ProofIssuanceFailure
from evidence_seal.hashing import ContentHasher
from evidence_seal.keystore import InMemoryKeyValueStore
from evidence_seal.proofs import LocalLedger
from evidence_seal.storage import InMemoryEvidenceStore

# PBKDF2 at production cost makes every key derivation take ~0.1s
TEST_KDF_ITERATIONS = 1000
AUDIT_KEY = b"test-audit-master-key"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FailingLedger(LocalLedger):
    """Ledger that refuses some or all requests."""

    def __init__(self, fail_proofs: bool = True, fail_anchors: bool = True):
        super().__init__()
        self.fail_proofs = fail_proofs
        self.fail_anchors = fail_anchors

    async def issue(self, digest: str, context: Dict[str, Any]) -> str:
        is_anchor = context.get("kind") == "batch_anchor"
        if (is_anchor and self.fail_anchors) or (not is_anchor and self.fail_proofs):
            raise ProofIssuanceFailure("ledger unavailable", digest=digest)
        return await super().issue(digest, context)


class FakeResponse:
    """Stands in for an aiohttp response used as an async context manager."""

    def __init__(self, status: int = 200, body: Any = None, data: bytes = b""):
        self.status = status
        self._body = body if body is not None else {}
        self._data = data

    async def json(self):
        return self._body

    async def text(self):
        return json.dumps(self._body)

    async def read(self):
        return self._data

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def config() -> Config:
    """Default configuration with a cheap KDF."""
    config = Config()
    config.cipher.kdf_iterations = TEST_KDF_ITERATIONS
    return config


@pytest.fixture
def hasher() -> ContentHasher:
    return ContentHasher()


@pytest.fixture
def cipher() -> SymmetricCipher:
    return SymmetricCipher(kdf_iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def case_key(cipher):
    """Key for the reference investigator and case."""
    return cipher.derive_key("a@x.gov", "CASE-1")


@pytest.fixture
def ledger() -> LocalLedger:
    return LocalLedger()


@pytest.fixture
def evidence_store() -> InMemoryEvidenceStore:
    return InMemoryEvidenceStore()


@pytest.fixture
def local_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def audit_trail() -> AuditTrail:
    return AuditTrail(sink=InMemoryAuditSink(), hmac_key=AUDIT_KEY)


@pytest.fixture
def pipeline(config, ledger, evidence_store, local_store, audit_trail) -> EvidencePipeline:
    """Pipeline wired to in-memory collaborators."""
    return EvidencePipeline(
        config,
        ledger=ledger,
        store=evidence_store,
        local_store=local_store,
        audit=audit_trail,
    )


def make_pipeline(config: Config, ledger: Optional[LocalLedger] = None, **kwargs) -> EvidencePipeline:
    return EvidencePipeline(
        config,
        ledger=ledger or LocalLedger(),
        store=kwargs.pop("store", None) or InMemoryEvidenceStore(),
        local_store=kwargs.pop("local_store", None) or InMemoryKeyValueStore(),
        audit=kwargs.pop("audit", None) or AuditTrail(hmac_key=AUDIT_KEY),
        **kwargs,
    )
