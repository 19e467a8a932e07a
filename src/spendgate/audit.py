"""
Audit trail for policy, session and escrow lifecycle events.

Each line of the JSONL file is one event. ``event_hash`` is an HMAC over
the previous event's hash and the event's canonical payload, so editing,
dropping or reordering lines breaks the chain and is reported on read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import default_data_dir, ensure_private_dir, ensure_private_file


AUDIT_KEY_ENV = "SPENDGATE_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    POLICY_CREATED = "policy_created"
    SESSION_CREATED = "session_created"
    REQUEST_ADMITTED = "request_admitted"
    REQUEST_DENIED = "request_denied"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_CLOSED = "session_closed"
    SESSION_SETTLED = "session_settled"
    ESCROW_CREATED = "escrow_created"
    ESCROW_APPROVED = "escrow_approved"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"


@dataclass
class AuditEvent:
    """One lifecycle event; ``entity_id`` is a session id, policy id or job hash."""

    event_type: str
    timestamp: float
    entity_id: Optional[str] = None
    actor: Optional[str] = None
    counterparty: Optional[str] = None
    amount: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        """Fields covered by the HMAC (everything but the chain links)."""
        return {
            k: v
            for k, v in asdict(self).items()
            if v is not None and k not in _CHAIN_FIELDS
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))

    @classmethod
    def from_json(cls, line: str) -> AuditEvent:
        raw = json.loads(line)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})


class AuditTrail:
    """Tamper-evident append-only audit log.

    The HMAC key comes from ``hmac_key``, then ``$SPENDGATE_AUDIT_HMAC_KEY``,
    then a key file generated on first use.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        hmac_key: Optional[str] = None,
    ):
        data_dir = default_data_dir()
        self.path = path or data_dir / "audit.jsonl"
        self.key_path = key_path or data_dir / "secrets" / "audit_hmac.key"

        for directory in {self.path.parent, self.key_path.parent}:
            ensure_private_dir(directory)
        ensure_private_file(self.path)

        self._lock = threading.Lock()
        self._hmac_key = hmac_key.encode() if hmac_key else self._resolve_key()
        self._last_hash = self._tail_hash()

    def _tail_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    last = AuditEvent.from_json(line).event_hash or ""
        return last

    def _resolve_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        ensure_private_file(self.key_path)
        stored = self.key_path.read_bytes().strip()
        if stored:
            return stored
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        return key

    def _sign(self, event: AuditEvent, prev_hash: str) -> str:
        canonical = json.dumps(event.payload(), sort_keys=True, separators=(",", ":"))
        message = f"{prev_hash}|{canonical}".encode()
        return hmac.new(self._hmac_key, message, hashlib.sha256).hexdigest()

    def log(
        self,
        event_type: EventType,
        entity_id: Optional[str] = None,
        actor: Optional[str] = None,
        counterparty: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            entity_id=entity_id,
            actor=str(actor) if actor is not None else None,
            counterparty=str(counterparty) if counterparty is not None else None,
            amount=amount,
            success=success,
            reason=reason,
            details=details,
        )

        # Chain order must match file order across threads.
        with self._lock:
            event.prev_hash = self._last_hash or None
            event.event_hash = self._sign(event, self._last_hash)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = event.event_hash

        return event

    def _verified(self) -> Iterator[AuditEvent]:
        """Yield events in file order, raising on the first broken link."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                event = AuditEvent.from_json(line)
                if (event.prev_hash or "") != expected_prev:
                    raise RuntimeError(
                        f"Audit chain broken: previous hash mismatch at line {number}"
                    )
                if not hmac.compare_digest(self._sign(event, expected_prev), event.event_hash or ""):
                    raise RuntimeError(f"Audit chain broken: event hash mismatch at line {number}")
                expected_prev = event.event_hash or ""
                yield event

    def verify(self) -> int:
        """Check the whole chain and return the number of events."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        entity_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verified events, oldest first, keeping the last ``limit`` matches."""
        matches = [
            e
            for e in self._verified()
            if (not entity_id or e.entity_id == entity_id)
            and (not event_type or e.event_type == event_type.value)
        ]
        return matches[-limit:] if limit else matches

    def summary(self, entity_id: Optional[str] = None) -> dict:
        events = self.read_events(entity_id=entity_id, limit=0)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
