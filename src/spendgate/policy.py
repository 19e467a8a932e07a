"""
Policy engine: reusable, immutable upper bounds for sessions.

A policy caps the total value and single-request size of every session
created under it, and optionally restricts agent tiers and service
categories through bitmasks.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from .audit import AuditTrail, EventType
from .errors import (
    ExceedsPolicyBoundError,
    InvalidBoundsError,
    PolicyViolationError,
    UnknownPolicyError,
)
from .models import (
    DEFAULT_ALLOWED_CATEGORIES,
    DEFAULT_ALLOWED_TIERS,
    Address,
    Policy,
    new_id,
)
from .money import require_micros
from .store import Store

logger = logging.getLogger(__name__)


def _require_mask(value: Any, field: str, bits: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidBoundsError(f"{field} must be an integer bitmask, got {value!r}")
    if value < 0 or value >= (1 << bits):
        raise InvalidBoundsError(f"{field} must fit in {bits} bits, got {value:#x}")
    return value


class PolicyEngine:
    """Creates policies and checks proposed sessions against them."""

    def __init__(
        self,
        store: Store,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit = audit
        self._clock = clock

    def create_policy(
        self,
        owner: Any,
        max_session_value: int,
        max_single_request: int,
        allowed_tiers: Optional[int] = None,
        allowed_categories: Optional[int] = None,
        require_proofs: bool = False,
    ) -> Policy:
        owner_address = Address.parse(owner)
        require_micros(max_session_value, "max_session_value", bound=True)
        require_micros(max_single_request, "max_single_request", bound=True)
        if max_single_request > max_session_value:
            raise InvalidBoundsError(
                f"max_single_request {max_single_request} exceeds "
                f"max_session_value {max_session_value}"
            )
        tiers = DEFAULT_ALLOWED_TIERS if allowed_tiers is None else allowed_tiers
        categories = (
            DEFAULT_ALLOWED_CATEGORIES if allowed_categories is None else allowed_categories
        )

        policy = Policy(
            policy_id=new_id("policy"),
            owner=owner_address,
            max_session_value=max_session_value,
            max_single_request=max_single_request,
            created_at=self._clock(),
            allowed_tiers=_require_mask(tiers, "allowed_tiers", 8),
            allowed_categories=_require_mask(categories, "allowed_categories", 32),
            require_proofs=bool(require_proofs),
        )
        self.store.insert_policy(policy)
        logger.info(
            "Policy created: %s (owner: %s, session cap: %d, request cap: %d)",
            policy.policy_id,
            owner_address,
            max_session_value,
            max_single_request,
        )
        if self.audit:
            self.audit.log(
                EventType.POLICY_CREATED,
                entity_id=policy.policy_id,
                actor=owner_address,
                amount=max_session_value,
                details={"max_single_request": max_single_request},
            )
        return policy

    def validate_session_against_policy(
        self,
        policy: Policy,
        proposed_max_total: int,
        proposed_max_per_request: int,
    ) -> None:
        if proposed_max_total > policy.max_session_value:
            raise ExceedsPolicyBoundError(
                "max_total", proposed_max_total, policy.max_session_value
            )
        if proposed_max_per_request > policy.max_single_request:
            raise ExceedsPolicyBoundError(
                "max_per_request", proposed_max_per_request, policy.max_single_request
            )

    def check_agent_allowed(
        self,
        policy: Policy,
        tier: Optional[int] = None,
        category: Optional[int] = None,
    ) -> None:
        if tier is not None and not policy.allows_tier(tier):
            raise PolicyViolationError(
                f"Agent tier {tier} not allowed by policy {policy.policy_id}"
            )
        if category is not None and not policy.allows_category(category):
            raise PolicyViolationError(
                f"Service category {category} not allowed by policy {policy.policy_id}"
            )

    def get_policy(self, policy_id: str) -> Policy:
        policy = self.store.get_policy(policy_id)
        if policy is None:
            raise UnknownPolicyError(f"Policy not found: {policy_id}")
        return policy

    def list_policies(self, owner: Optional[Any] = None) -> list[Policy]:
        owner_address = Address.parse(owner) if owner else None
        return self.store.list_policies(owner=owner_address)
