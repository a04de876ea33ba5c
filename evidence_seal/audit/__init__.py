"""
Evidence Seal - Audit Trail

Tamper-evident record of evidence custody events:
- upload, batch_upload, download, verify
- SHA-256 hash chain linking every event to its predecessor
- HMAC-SHA256 signatures under an HKDF-derived key
- In-memory and append-only JSONL sinks
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

GENESIS_MARKER = b"EVIDENCE_SEAL_AUDIT_GENESIS_V1"


class AuditEventType(Enum):
    """Custody events recorded by the pipeline."""
    UPLOAD = "upload"
    BATCH_UPLOAD = "batch_upload"
    DOWNLOAD = "download"
    VERIFY = "verify"


class AuditOutcome(Enum):
    """Event outcomes."""
    SUCCESS = "success"
    FAILURE = "failure"
    TAMPERED = "tampered"
    DEGRADED = "degraded"


@dataclass
class AuditEvent:
    """One custody event with its chain integrity fields."""
    event_type: AuditEventType
    outcome: AuditOutcome
    actor: Optional[str] = None
    case_id: Optional[str] = None
    file_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Integrity fields
    sequence_number: int = 0
    previous_hash: str = ""
    event_hash: str = ""
    hmac_signature: str = ""

    def signed_content(self) -> Dict[str, Any]:
        """Fields covered by the event hash."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "outcome": self.outcome.value,
            "actor": self.actor,
            "case_id": self.case_id,
            "file_id": self.file_id,
            "data": self.data,
            "sequence": self.sequence_number,
            "previous": self.previous_hash,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.signed_content(),
            "event_hash": self.event_hash,
            "hmac_signature": self.hmac_signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            event_type=AuditEventType(data["event_type"]),
            outcome=AuditOutcome(data["outcome"]),
            actor=data.get("actor"),
            case_id=data.get("case_id"),
            file_id=data.get("file_id"),
            data=data.get("data") or {},
            event_id=data["event_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            sequence_number=data["sequence"],
            previous_hash=data["previous"],
            event_hash=data.get("event_hash", ""),
            hmac_signature=data.get("hmac_signature", ""),
        )


class HMACChain:
    """
    HMAC-based hash chain for tamper-evident logging.

    The signing key is derived from the master key with HKDF.
    """

    def __init__(self, master_key: Optional[bytes] = None):
        """Initialize HMAC chain with master key."""
        self._master_key = master_key or secrets.token_bytes(32)
        self._signing_key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"evidence_seal_audit_v1",
            info=b"audit-chain",
        ).derive(self._master_key)
        self._sequence = 0
        self._previous_hash = self.genesis_hash()

    def genesis_hash(self) -> str:
        """Hash the first event links to."""
        h = hashlib.sha256(GENESIS_MARKER + self._master_key)
        return f"genesis:{h.hexdigest()}"

    @staticmethod
    def compute_event_hash(event: AuditEvent) -> str:
        canonical = json.dumps(
            event.signed_content(), sort_keys=True, separators=(",", ":")
        )
        return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"

    def _signature(self, event: AuditEvent) -> str:
        signature_data = f"{event.event_hash}:{event.previous_hash}:{event.sequence_number}"
        mac = hmac.new(self._signing_key, signature_data.encode(), hashlib.sha256)
        return f"hmac-sha256:{mac.hexdigest()}"

    def sign_event(self, event: AuditEvent) -> AuditEvent:
        """Link the event into the chain and sign it."""
        event.sequence_number = self._sequence
        event.previous_hash = self._previous_hash
        event.event_hash = self.compute_event_hash(event)
        event.hmac_signature = self._signature(event)

        self._previous_hash = event.event_hash
        self._sequence += 1
        return event

    def verify_event(self, event: AuditEvent, expected_previous: str) -> bool:
        """Check one event's link, hash and signature."""
        if event.previous_hash != expected_previous:
            return False
        if self.compute_event_hash(event) != event.event_hash:
            return False
        return hmac.compare_digest(self._signature(event), event.hmac_signature)

    def verify_chain(self, events: List[AuditEvent]) -> Tuple[bool, List[str]]:
        """
        Verify an ordered list of events from the start of the chain.

        Returns:
            Tuple of (all_valid, list_of_errors)
        """
        errors = []
        expected_previous = self.genesis_hash()
        for position, event in enumerate(events):
            if event.sequence_number != position:
                errors.append(
                    f"event {event.event_id}: sequence {event.sequence_number}, "
                    f"expected {position}"
                )
            if not self.verify_event(event, expected_previous):
                errors.append(f"event {event.event_id}: integrity check failed")
            expected_previous = event.event_hash
        return len(errors) == 0, errors

    def get_chain_state(self) -> Dict[str, Any]:
        return {
            "sequence": self._sequence,
            "previous_hash": self._previous_hash,
        }

    def restore_chain_state(self, state: Dict[str, Any]) -> None:
        self._sequence = state.get("sequence", 0)
        self._previous_hash = state.get("previous_hash", self.genesis_hash())


class AuditSink(ABC):
    """Destination for signed audit events."""

    @abstractmethod
    async def write(self, event: AuditEvent) -> None:
        """Persist one event."""

    @abstractmethod
    async def read_all(self) -> List[AuditEvent]:
        """Return every persisted event in order."""


class InMemoryAuditSink(AuditSink):

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)

    async def read_all(self) -> List[AuditEvent]:
        return list(self.events)


class JSONLAuditSink(AuditSink):
    """
    Append-only JSON lines file.

    Each write is flushed and fsynced before returning.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def _append(self, line: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "ab") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    async def write(self, event: AuditEvent) -> None:
        line = (json.dumps(event.to_dict(), sort_keys=True) + "\n").encode("utf-8")
        await asyncio.to_thread(self._append, line)

    async def read_all(self) -> List[AuditEvent]:
        if not self.path.exists():
            return []
        events = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(AuditEvent.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Corrupted audit record at {self.path}:{line_num}: {e}")
        return events


class AuditTrail:
    """
    Custody audit trail.

    Sink write failures are logged and counted; they never abort the
    operation being audited.
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        hmac_key: Optional[bytes] = None,
    ):
        self.sink = sink or InMemoryAuditSink()
        self._chain = HMACChain(hmac_key)
        self._lock = asyncio.Lock()
        self._stats = {
            "events_logged": 0,
            "events_failed": 0,
        }

    async def start(self) -> None:
        """Resume the chain from events already in the sink."""
        events = await self.sink.read_all()
        if events:
            last = events[-1]
            self._chain.restore_chain_state({
                "sequence": last.sequence_number + 1,
                "previous_hash": last.event_hash,
            })
            logger.info(f"Audit trail resumed at sequence {last.sequence_number + 1}")

    async def record(
        self,
        event_type: AuditEventType,
        outcome: AuditOutcome,
        actor: Optional[str] = None,
        case_id: Optional[str] = None,
        file_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Sign and persist one event."""
        event = AuditEvent(
            event_type=event_type,
            outcome=outcome,
            actor=actor,
            case_id=case_id,
            file_id=file_id,
            data=data or {},
        )

        async with self._lock:
            self._chain.sign_event(event)
            try:
                await self.sink.write(event)
                self._stats["events_logged"] += 1
            except OSError as e:
                logger.error(f"Failed to write audit event {event.event_id}: {e}")
                self._stats["events_failed"] += 1

        return event

    async def verify(self) -> Tuple[bool, List[str]]:
        """Verify every event in the sink."""
        events = await self.sink.read_all()
        return self._chain.verify_chain(events)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "chain_state": self._chain.get_chain_state(),
        }


__all__ = [
    "AuditEventType",
    "AuditOutcome",
    "AuditEvent",
    "HMACChain",
    "AuditSink",
    "InMemoryAuditSink",
    "JSONLAuditSink",
    "AuditTrail",
]
