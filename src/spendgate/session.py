"""
Session manager: bounded spending grants from a client to an agent.

A session caps the total an agent may spend, the size of any single
request and the number of requests per rate window. Admission is checked
and recorded atomically per session; unrelated sessions never contend.

Rate windows are fixed and aligned to the session's creation time: window
``n`` covers ``[created_at + n*W, created_at + (n+1)*W)``.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .audit import AuditTrail, EventType
from .errors import (
    AlreadyClosedError,
    BudgetExceededError,
    ExceedsSpentError,
    InvalidBoundsError,
    LimitError,
    NotActiveError,
    NotPausedError,
    PerRequestCapExceededError,
    RateLimitExceededError,
    SessionExpiredError,
    SessionNotActiveError,
    UnknownSessionError,
    ValidationError,
)
from .locks import KeyedLock
from .models import Address, Policy, Receipt, Session, SessionStatus, Settlement, new_id
from .money import require_micros
from .policy import PolicyEngine
from .store import Store

logger = logging.getLogger(__name__)

# ~100 blocks at 6s per block.
DEFAULT_RATE_WINDOW_SECONDS = 600.0


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of an admitted request.

    ``duplicate`` is True when the request_hash had already been admitted;
    the original receipt is returned and nothing was charged again.
    """

    receipt: Receipt
    session: Session
    duplicate: bool = False


def _require_count(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidBoundsError(f"{field} must be a positive integer, got {value!r}")
    return value


class SessionManager:
    """Lifecycle, admission and settlement of spending sessions."""

    def __init__(
        self,
        store: Store,
        policies: PolicyEngine,
        rate_window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        block_height: Optional[Callable[[], int]] = None,
        audit: Optional[AuditTrail] = None,
    ):
        if rate_window_seconds <= 0:
            raise ValueError("rate_window_seconds must be positive")
        self.store = store
        self.policies = policies
        self.rate_window_seconds = float(rate_window_seconds)
        self.audit = audit
        self._clock = clock
        self._block_height = block_height
        self._locks = KeyedLock()

    # Creation

    def create_session(
        self,
        agent: Any,
        client: Any,
        max_total: int,
        max_per_request: int,
        rate_limit: int,
        duration_blocks: int,
        policy: Union[Policy, str, None] = None,
        session_id: Optional[str] = None,
        tier: Optional[int] = None,
        category: Optional[int] = None,
    ) -> Session:
        agent_address = Address.parse(agent)
        client_address = Address.parse(client)
        require_micros(max_total, "max_total", bound=True)
        require_micros(max_per_request, "max_per_request", bound=True)
        if max_per_request > max_total:
            raise InvalidBoundsError(
                f"max_per_request {max_per_request} exceeds max_total {max_total}"
            )
        _require_count(rate_limit, "rate_limit")
        _require_count(duration_blocks, "duration_blocks")

        if isinstance(policy, str):
            policy = self.policies.get_policy(policy)
        if policy is not None:
            self.policies.validate_session_against_policy(policy, max_total, max_per_request)
            self.policies.check_agent_allowed(policy, tier=tier, category=category)

        now = self._clock()
        height = self._block_height() if self._block_height else 0
        session = Session(
            session_id=session_id or new_id("session"),
            client=client_address,
            agent=agent_address,
            max_total=max_total,
            max_per_request=max_per_request,
            rate_limit=rate_limit,
            duration_blocks=duration_blocks,
            valid_until=height + duration_blocks,
            created_at=now,
            window_start=now,
            policy_id=policy.policy_id if policy else None,
            updated_at=now,
        )
        self.store.insert_session(session)
        logger.info(
            "Session created: %s (client: %s, agent: %s, cap: %d, per-request: %d)",
            session.session_id,
            client_address,
            agent_address,
            max_total,
            max_per_request,
        )
        if self.audit:
            self.audit.log(
                EventType.SESSION_CREATED,
                entity_id=session.session_id,
                actor=client_address,
                counterparty=agent_address,
                amount=max_total,
                details={"policy_id": session.policy_id} if session.policy_id else None,
            )
        return session

    def create_session_from_policy(self, policy_id: str, **session_fields: Any) -> Session:
        """Create a session bounded by an existing policy.

        ``client`` defaults to the policy owner.
        """
        policy = self.policies.get_policy(policy_id)
        if not session_fields.get("client"):
            session_fields["client"] = policy.owner
        session_fields.pop("policy", None)
        return self.create_session(policy=policy, **session_fields)

    # Reads

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise UnknownSessionError(f"Session not found: {session_id}")
        return session

    def list_sessions(
        self,
        client: Optional[Any] = None,
        agent: Optional[Any] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        if status:
            try:
                status = SessionStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown session status: {status}") from None
        return self.store.list_sessions(
            client=Address.parse(client) if client else None,
            agent=Address.parse(agent) if agent else None,
            status=status or None,
        )

    @staticmethod
    def remaining(session: Session) -> int:
        return session.remaining

    # Admission

    def admit_request(
        self,
        session_id: str,
        amount: int,
        request_hash: Optional[str] = None,
    ) -> AdmissionResult:
        with self._locks.hold(session_id):
            session = self.get_session(session_id)
            self._require_admissible(session)

            if request_hash:
                existing = session.find_receipt(request_hash)
                if existing is not None:
                    if existing.amount != amount:
                        raise ValidationError(
                            f"request_hash {request_hash} reused with a different amount "
                            f"({amount!r}, originally {existing.amount})"
                        )
                    logger.info(
                        "Duplicate request %s on session %s, replaying receipt",
                        request_hash,
                        session_id,
                    )
                    return AdmissionResult(receipt=existing, session=session, duplicate=True)

            try:
                result = self._admit(session, amount, request_hash)
            except LimitError as exc:
                logger.info("Request denied on session %s: %s", session_id, exc)
                if self.audit:
                    self.audit.log(
                        EventType.REQUEST_DENIED,
                        entity_id=session_id,
                        actor=session.agent,
                        amount=amount if isinstance(amount, int) else None,
                        success=False,
                        reason=str(exc),
                    )
                raise

        if self.audit:
            self.audit.log(
                EventType.REQUEST_ADMITTED,
                entity_id=session_id,
                actor=session.agent,
                amount=result.receipt.amount,
                details={"request_hash": result.receipt.request_hash},
            )
        return result

    def _require_admissible(self, session: Session) -> None:
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActiveError(f"Session is {session.status.value}, not active")
        if self._block_height is not None:
            height = self._block_height()
            if height > session.valid_until:
                raise SessionExpiredError(
                    f"Session expired at block {session.valid_until} (current {height})"
                )

    def _admit(self, session: Session, amount: int, request_hash: Optional[str]) -> AdmissionResult:
        require_micros(amount, "amount")
        if amount > session.max_per_request:
            raise PerRequestCapExceededError(amount, session.max_per_request)
        if session.spent + amount > session.max_total:
            raise BudgetExceededError(amount, session.remaining)

        now = self._clock()
        window_start = self._window_start(session, now)
        window_count = session.window_count if window_start == session.window_start else 0
        if window_count >= session.rate_limit:
            reset_at = window_start + self.rate_window_seconds
            raise RateLimitExceededError(
                "Rate limit exceeded for this session",
                retry_after=max(reset_at - now, 0.0),
                reset_at=reset_at,
            )

        receipt = Receipt(
            request_hash=request_hash or new_id("req"),
            amount=amount,
            timestamp=now,
        )
        session.spent += amount
        session.request_count += 1
        session.receipts.append(receipt)
        session.window_start = window_start
        session.window_count = window_count + 1
        session.updated_at = now
        self.store.update_session(session)

        logger.info(
            "Request admitted on session %s: %d (spent %d of %d)",
            session.session_id,
            amount,
            session.spent,
            session.max_total,
        )
        return AdmissionResult(receipt=receipt, session=session)

    def _window_start(self, session: Session, now: float) -> float:
        elapsed = max(now - session.created_at, 0.0)
        index = math.floor(elapsed / self.rate_window_seconds)
        return session.created_at + index * self.rate_window_seconds

    # Lifecycle

    def pause(self, session_id: str) -> Session:
        with self._locks.hold(session_id):
            session = self.get_session(session_id)
            if session.status != SessionStatus.ACTIVE:
                raise NotActiveError(f"Session is {session.status.value}, cannot pause")
            session.status = SessionStatus.PAUSED
            session.updated_at = self._clock()
            self.store.update_session(session)

        logger.info("Session paused: %s", session_id)
        if self.audit:
            self.audit.log(EventType.SESSION_PAUSED, entity_id=session_id, actor=session.client)
        return session

    def resume(self, session_id: str) -> Session:
        with self._locks.hold(session_id):
            session = self.get_session(session_id)
            if session.status != SessionStatus.PAUSED:
                raise NotPausedError(f"Session is {session.status.value}, cannot resume")
            session.status = SessionStatus.ACTIVE
            session.updated_at = self._clock()
            self.store.update_session(session)

        logger.info("Session resumed: %s", session_id)
        if self.audit:
            self.audit.log(EventType.SESSION_RESUMED, entity_id=session_id, actor=session.client)
        return session

    def close(self, session_id: str) -> int:
        """Close the session and return the unspent amount to refund."""
        return self.close_with_session(session_id)[0]

    def close_with_session(self, session_id: str) -> tuple[int, Session]:
        """Close the session; return the refund and the closed session."""
        with self._locks.hold(session_id):
            session = self.get_session(session_id)
            if session.status == SessionStatus.CLOSED:
                raise AlreadyClosedError("Session is already closed")
            refund_amount = session.max_total - session.spent
            now = self._clock()
            session.status = SessionStatus.CLOSED
            session.refund_amount = refund_amount
            session.closed_at = now
            session.updated_at = now
            self.store.update_session(session)

        logger.info("Session closed: %s (refund: %d)", session_id, refund_amount)
        if self.audit:
            self.audit.log(
                EventType.SESSION_CLOSED,
                entity_id=session_id,
                actor=session.client,
                counterparty=session.agent,
                amount=refund_amount,
            )
        return refund_amount, session

    def settle(self, session_id: str, settlement_amount: int) -> Settlement:
        """Record release of accounted spend to the agent.

        Settlements accumulate in ``settled_total`` and can never exceed
        ``spent`` in sum.
        """
        return self.settle_with_session(session_id, settlement_amount)[0]

    def settle_with_session(
        self, session_id: str, settlement_amount: int
    ) -> tuple[Settlement, Session]:
        with self._locks.hold(session_id):
            session = self.get_session(session_id)
            if session.status == SessionStatus.CLOSED:
                raise AlreadyClosedError("Cannot settle a closed session")
            require_micros(settlement_amount, "settlement_amount")
            if session.settled_total + settlement_amount > session.spent:
                raise ExceedsSpentError(settlement_amount, session.unsettled)

            now = self._clock()
            settlement = Settlement(
                settlement_id=new_id("settle"),
                amount=settlement_amount,
                settled_at=now,
            )
            session.settlements.append(settlement)
            session.settled_total += settlement_amount
            session.updated_at = now
            self.store.update_session(session)

        logger.info(
            "Session settled: %s (%d, total settled %d of %d)",
            session_id,
            settlement_amount,
            session.settled_total,
            session.spent,
        )
        if self.audit:
            self.audit.log(
                EventType.SESSION_SETTLED,
                entity_id=session_id,
                actor=session.client,
                counterparty=session.agent,
                amount=settlement_amount,
                details={"settlement_id": settlement.settlement_id},
            )
        return settlement, session
