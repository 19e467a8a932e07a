"""
Multi-signer escrow: release gated by M-of-3 signer approvals.

Approval is a threshold counter, not a consensus protocol. Each signer
slot approves at most once; the approval that brings ``sig_count`` to
``required_sigs`` releases the escrow and is the only one that observes
``threshold_met``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from .audit import AuditTrail, EventType
from .errors import (
    AlreadyApprovedError,
    InvalidAddressError,
    InvalidSignersError,
    InvalidThresholdError,
    NotASignerError,
    NotLockedError,
    UnknownEscrowError,
    ValidationError,
)
from .locks import KeyedLock
from .models import SIGNER_SLOTS, Address, EscrowStatus, MultiSigEscrow
from .money import require_micros
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalResult:
    escrow: MultiSigEscrow
    threshold_met: bool


def parse_signers(signers: Any, required_sigs: Any) -> tuple[tuple[Optional[Address], ...], int]:
    """Validate a signer list and threshold.

    Returns the normalized slots (empty slots become None) and the
    threshold. Shared by the coordinator and the remote client so both
    reject the same inputs.
    """
    if isinstance(required_sigs, bool) or required_sigs not in (1, 2, 3):
        raise InvalidThresholdError("required_signatures must be 1, 2, or 3")
    if isinstance(signers, (str, bytes)) or not isinstance(signers, Sequence):
        raise InvalidSignersError(f"signers must be a list of exactly {SIGNER_SLOTS} slots")
    if len(signers) != SIGNER_SLOTS:
        raise InvalidSignersError(
            f"signers must be a list of exactly {SIGNER_SLOTS} slots, got {len(signers)}"
        )

    slots: list[Optional[Address]] = []
    seen: set[str] = set()
    for index, raw in enumerate(signers):
        if raw is None or raw == "":
            slots.append(None)
            continue
        try:
            address = Address.parse(raw)
        except InvalidAddressError as exc:
            raise InvalidSignersError(f"Signer slot {index}: {exc}") from exc
        if address in seen:
            raise InvalidSignersError(f"Duplicate signer address: {address}")
        seen.add(address)
        slots.append(address)

    if len(seen) < required_sigs:
        raise InvalidSignersError(
            f"{len(seen)} signer(s) cannot satisfy required_signatures {required_sigs}"
        )
    return tuple(slots), required_sigs


class MultiSigEscrowCoordinator:
    """Creates multi-signer escrows and applies approvals and refunds."""

    def __init__(
        self,
        store: Store,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit = audit
        self._clock = clock
        self._locks = KeyedLock()

    def create_escrow(
        self,
        owner: Any,
        agent: Any,
        amount: int,
        job_hash: str,
        secret_hash: str,
        signers: Sequence[Any],
        required_sigs: int,
        deadline: int = 0,
    ) -> MultiSigEscrow:
        owner_address = Address.parse(owner)
        agent_address = Address.parse(agent)
        require_micros(amount, "amount")
        if not job_hash or not isinstance(job_hash, str):
            raise ValidationError("job_hash is required")
        if not secret_hash or not isinstance(secret_hash, str):
            raise ValidationError("secret_hash is required")
        if isinstance(deadline, bool) or not isinstance(deadline, int) or deadline < 0:
            raise ValidationError(f"deadline must be a non-negative block height, got {deadline!r}")
        slots, threshold = parse_signers(signers, required_sigs)

        now = self._clock()
        escrow = MultiSigEscrow(
            job_hash=job_hash,
            owner=owner_address,
            agent=agent_address,
            amount=amount,
            secret_hash=secret_hash,
            signers=slots,
            required_sigs=threshold,
            created_at=now,
            deadline=deadline,
            updated_at=now,
        )
        self.store.insert_escrow(escrow)
        logger.info(
            "Multi-sig escrow created: %s (amount: %d, %d-of-%d)",
            job_hash,
            amount,
            threshold,
            sum(1 for s in slots if s is not None),
        )
        if self.audit:
            self.audit.log(
                EventType.ESCROW_CREATED,
                entity_id=job_hash,
                actor=owner_address,
                counterparty=agent_address,
                amount=amount,
                details={"required_sigs": threshold},
            )
        return escrow

    def get_escrow(self, job_hash: str) -> MultiSigEscrow:
        escrow = self.store.get_escrow(job_hash)
        if escrow is None:
            raise UnknownEscrowError(f"Multi-sig escrow not found: {job_hash}")
        return escrow

    def approve(self, job_hash: str, signer_address: Any) -> ApprovalResult:
        signer = Address.parse(signer_address)
        with self._locks.hold(job_hash):
            escrow = self.get_escrow(job_hash)
            if escrow.status != EscrowStatus.LOCKED:
                raise NotLockedError(f"Cannot approve escrow in status: {escrow.status.value}")
            index = escrow.signer_index(signer)
            if index is None:
                raise NotASignerError("Address is not an authorized signer for this escrow")
            if escrow.approvals[index]:
                raise AlreadyApprovedError("This signer has already approved")

            now = self._clock()
            escrow.approvals[index] = True
            threshold_met = escrow.sig_count >= escrow.required_sigs
            if threshold_met:
                escrow.status = EscrowStatus.RELEASED
                escrow.released_at = now
            escrow.updated_at = now
            self.store.update_escrow(escrow)

        logger.info(
            "Escrow %s approved by %s (%d/%d)",
            job_hash,
            signer,
            escrow.sig_count,
            escrow.required_sigs,
        )
        if self.audit:
            self.audit.log(
                EventType.ESCROW_APPROVED,
                entity_id=job_hash,
                actor=signer,
                details={"sig_count": escrow.sig_count},
            )
            if threshold_met:
                self.audit.log(
                    EventType.ESCROW_RELEASED,
                    entity_id=job_hash,
                    actor=escrow.owner,
                    counterparty=escrow.agent,
                    amount=escrow.amount,
                )
        return ApprovalResult(escrow=escrow, threshold_met=threshold_met)

    def refund(self, job_hash: str, reason: Optional[str] = None) -> MultiSigEscrow:
        with self._locks.hold(job_hash):
            escrow = self.get_escrow(job_hash)
            if escrow.status != EscrowStatus.LOCKED:
                raise NotLockedError(f"Cannot refund escrow in status: {escrow.status.value}")
            now = self._clock()
            escrow.status = EscrowStatus.REFUNDED
            escrow.refunded_at = now
            escrow.refund_reason = reason
            escrow.updated_at = now
            self.store.update_escrow(escrow)

        logger.info("Escrow refunded: %s (%s)", job_hash, reason or "no reason given")
        if self.audit:
            self.audit.log(
                EventType.ESCROW_REFUNDED,
                entity_id=job_hash,
                actor=escrow.owner,
                amount=escrow.amount,
                reason=reason,
            )
        return escrow

    def pending_for(self, address: Any) -> list[MultiSigEscrow]:
        """Locked escrows still waiting on this address's approval."""
        signer = Address.parse(address)
        return [e for e in self.store.list_escrows(EscrowStatus.LOCKED) if e.awaits(signer)]
