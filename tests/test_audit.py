"""
Tests for the custody audit trail.
"""

import json
from dataclasses import replace

import pytest

from evidence_seal.audit import (
    AuditEvent,
    AuditEventType,
    AuditOutcome,
    AuditTrail,
    HMACChain,
    InMemoryAuditSink,
    JSONLAuditSink,
)

from conftest import AUDIT_KEY


def make_event(n: int) -> AuditEvent:
    return AuditEvent(
        event_type=AuditEventType.UPLOAD,
        outcome=AuditOutcome.SUCCESS,
        actor="a@x.gov",
        case_id="CASE-1",
        file_id=f"F-{n}",
        data={"file_name": f"{n}.pdf"},
    )


@pytest.fixture
def chain():
    return HMACChain(AUDIT_KEY)


class TestHMACChain:
    """Tests for chain signing and verification."""

    def test_signed_chain_verifies(self, chain):
        events = [chain.sign_event(make_event(n)) for n in range(5)]

        valid, errors = HMACChain(AUDIT_KEY).verify_chain(events)

        assert valid, errors
        assert events[0].previous_hash == chain.genesis_hash()
        assert events[1].previous_hash == events[0].event_hash
        assert events[0].event_hash.startswith("sha256:")
        assert events[0].hmac_signature.startswith("hmac-sha256:")

    def test_modified_data_detected(self, chain):
        events = [chain.sign_event(make_event(n)) for n in range(3)]
        events[1].data["file_name"] = "other.pdf"

        valid, errors = HMACChain(AUDIT_KEY).verify_chain(events)

        assert not valid
        assert events[1].event_id in errors[0]

    def test_reordered_events_detected(self, chain):
        events = [chain.sign_event(make_event(n)) for n in range(3)]

        valid, _ = HMACChain(AUDIT_KEY).verify_chain([events[0], events[2], events[1]])

        assert not valid

    def test_deleted_event_detected(self, chain):
        events = [chain.sign_event(make_event(n)) for n in range(3)]

        valid, _ = HMACChain(AUDIT_KEY).verify_chain([events[0], events[2]])

        assert not valid

    def test_other_key_rejects(self, chain):
        events = [chain.sign_event(make_event(n)) for n in range(2)]

        valid, _ = HMACChain(b"another key").verify_chain(events)

        assert not valid

    def test_rehashed_event_still_needs_signature(self, chain):
        """Recomputing the hash after an edit does not forge the HMAC."""
        event = chain.sign_event(make_event(0))
        forged = replace(event, actor="mallory@x.gov")
        forged.event_hash = HMACChain.compute_event_hash(forged)

        assert not HMACChain(AUDIT_KEY).verify_event(forged, chain.genesis_hash())

    def test_chain_state_round_trip(self, chain):
        chain.sign_event(make_event(0))
        state = chain.get_chain_state()

        resumed = HMACChain(AUDIT_KEY)
        resumed.restore_chain_state(state)

        assert resumed.sign_event(make_event(1)).sequence_number == 1


class TestAuditEvent:

    def test_dict_round_trip(self, chain):
        event = chain.sign_event(make_event(0))

        restored = AuditEvent.from_dict(json.loads(json.dumps(event.to_dict())))

        assert restored == event
        assert HMACChain.compute_event_hash(restored) == event.event_hash


class TestAuditTrail:
    """Tests for the trail and its sinks."""

    @pytest.mark.asyncio
    async def test_record_and_verify(self):
        trail = AuditTrail(InMemoryAuditSink(), AUDIT_KEY)

        await trail.record(AuditEventType.UPLOAD, AuditOutcome.SUCCESS, "a@x.gov", "CASE-1", "F-1")
        await trail.record(AuditEventType.VERIFY, AuditOutcome.TAMPERED, "a@x.gov", "CASE-1", "F-1")

        valid, errors = await trail.verify()
        assert valid, errors
        assert trail.get_stats()["events_logged"] == 2

    @pytest.mark.asyncio
    async def test_jsonl_sink_persists_and_resumes(self, tmp_path):
        path = tmp_path / "audit" / "trail.jsonl"
        first = AuditTrail(JSONLAuditSink(path), AUDIT_KEY)
        await first.start()
        await first.record(AuditEventType.UPLOAD, AuditOutcome.SUCCESS, file_id="F-1")

        second = AuditTrail(JSONLAuditSink(path), AUDIT_KEY)
        await second.start()
        event = await second.record(AuditEventType.DOWNLOAD, AuditOutcome.SUCCESS, file_id="F-1")

        assert event.sequence_number == 1
        assert len(path.read_text().splitlines()) == 2
        valid, errors = await second.verify()
        assert valid, errors

    @pytest.mark.asyncio
    async def test_corrupt_line_skipped(self, tmp_path):
        path = tmp_path / "trail.jsonl"
        trail = AuditTrail(JSONLAuditSink(path), AUDIT_KEY)
        await trail.record(AuditEventType.UPLOAD, AuditOutcome.SUCCESS, file_id="F-1")
        with open(path, "a", encoding="utf-8") as f:
            f.write("{not json\n")

        events = await JSONLAuditSink(path).read_all()

        assert [e.file_id for e in events] == ["F-1"]

    @pytest.mark.asyncio
    async def test_edited_file_fails_verification(self, tmp_path):
        path = tmp_path / "trail.jsonl"
        trail = AuditTrail(JSONLAuditSink(path), AUDIT_KEY)
        await trail.record(AuditEventType.UPLOAD, AuditOutcome.SUCCESS, actor="a@x.gov")
        path.write_text(path.read_text().replace("a@x.gov", "b@x.gov"))

        valid, _ = await trail.verify()

        assert not valid

    @pytest.mark.asyncio
    async def test_sink_failure_is_counted(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        trail = AuditTrail(JSONLAuditSink(blocker / "trail.jsonl"), AUDIT_KEY)

        event = await trail.record(AuditEventType.UPLOAD, AuditOutcome.SUCCESS)

        assert event.event_hash
        assert trail.get_stats()["events_failed"] == 1
