"""Tests for tamper-evident audit trail behavior."""

import json
import threading

import pytest

from spendgate.audit import AUDIT_KEY_ENV, AuditTrail, EventType


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log(EventType.SESSION_CREATED, entity_id="s-1", success=True)
    trail.log(EventType.REQUEST_ADMITTED, entity_id="s-1", success=True, amount=500_000)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["amount"] = 9_999_999
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_event_breaks_chain(trail, tmp_path):
    for amount in (1, 2, 3):
        trail.log(EventType.REQUEST_ADMITTED, entity_id="s-1", amount=amount)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_survives_reopen(tmp_path):
    path = tmp_path / "audit.jsonl"
    key_path = tmp_path / "secret" / "audit_hmac.key"
    AuditTrail(path=path, key_path=key_path).log(EventType.POLICY_CREATED, entity_id="p-1")
    reopened = AuditTrail(path=path, key_path=key_path)
    reopened.log(EventType.SESSION_CREATED, entity_id="s-1")

    events = reopened.read_events()
    assert [e.event_type for e in events] == ["policy_created", "session_created"]
    assert events[1].prev_hash == events[0].event_hash


def test_filters_and_limit(trail):
    trail.log(EventType.SESSION_CREATED, entity_id="s-1")
    trail.log(EventType.REQUEST_ADMITTED, entity_id="s-1", amount=10)
    trail.log(EventType.REQUEST_DENIED, entity_id="s-1", amount=99, success=False, reason="budget")
    trail.log(EventType.SESSION_CREATED, entity_id="s-2")

    assert len(trail.read_events(entity_id="s-1")) == 3
    created = trail.read_events(event_type=EventType.SESSION_CREATED)
    assert [e.entity_id for e in created] == ["s-1", "s-2"]
    assert [e.entity_id for e in trail.read_events(limit=1)] == ["s-2"]


def test_summary(trail):
    trail.log(EventType.REQUEST_ADMITTED, entity_id="s-1", amount=10)
    trail.log(EventType.REQUEST_DENIED, entity_id="s-1", amount=99, success=False, reason="budget")

    summary = trail.summary(entity_id="s-1")
    assert summary["total_events"] == 2
    assert summary["failures"] == 1
    assert summary["by_type"] == {"request_admitted": 1, "request_denied": 1}
    assert json.loads(summary["last_event"])["reason"] == "budget"


def test_concurrent_logging_keeps_chain(trail):
    def log_many(n):
        for i in range(20):
            trail.log(EventType.REQUEST_ADMITTED, entity_id=f"s-{n}", amount=i + 1)

    threads = [threading.Thread(target=log_many, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(trail.read_events(limit=1000)) == 80


def test_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(AUDIT_KEY_ENV, "from-env")
    trail = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "key")
    trail.log(EventType.SESSION_CREATED, entity_id="s-1")

    explicit = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "key", hmac_key="from-env")
    assert len(explicit.read_events()) == 1

    monkeypatch.delenv(AUDIT_KEY_ENV)
    other = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "key", hmac_key="different")
    with pytest.raises(RuntimeError):
        other.read_events()


def test_verify_counts_intact_chain(trail, tmp_path):
    assert trail.verify() == 0
    trail.log(EventType.ESCROW_CREATED, entity_id="job_1", amount=2_000_000)
    trail.log(EventType.ESCROW_APPROVED, entity_id="job_1", actor="aleo1" + "z" * 58)
    assert trail.verify() == 2

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join(reversed(lines)) + "\n")
    with pytest.raises(RuntimeError, match="line 1"):
        trail.verify()
