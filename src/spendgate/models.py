"""
Entities of the authorization layer.

Sessions, policies and multi-signer escrows are plain dataclasses holding
integer microcredit amounts and validated ``Address`` values. Stores hand
out copies; components mutate a copy and commit it back.
"""

from __future__ import annotations

import os
import re
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from eth_utils import keccak

from .errors import InvalidAddressError


_ALEO_RE = re.compile(r"^aleo1[qpzry9x8gf2tvdw0s3jn54khce6mua7l]{58}$")
_EVM_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

DEFAULT_ALLOWED_TIERS = 0xFF
DEFAULT_ALLOWED_CATEGORIES = 0xFFFFFFFF
SIGNER_SLOTS = 3


class Address(str):
    """A party address, validated once at the boundary.

    Accepts Aleo bech32 addresses (``aleo1`` + 58 chars) and EVM hex
    addresses; both are normalized to lower case.
    """

    __slots__ = ()

    @classmethod
    def parse(cls, value: Any) -> "Address":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidAddressError(f"Address must be a string, got {type(value).__name__}")
        candidate = value.strip()
        if candidate.startswith(("0X", "0x")):
            candidate = "0x" + candidate[2:]
            if not _EVM_RE.match(candidate):
                raise InvalidAddressError(f"Invalid EVM address: {value}")
            return cls(candidate.lower())
        candidate = candidate.lower()
        if not _ALEO_RE.match(candidate):
            raise InvalidAddressError(f"Invalid address: {value}")
        return cls(candidate)

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        try:
            cls.parse(value)
        except InvalidAddressError:
            return False
        return True


def new_id(prefix: str) -> str:
    """Generate an opaque identifier such as ``session_3f9a...``."""
    entropy = f"{prefix}:{time.time()}:{os.urandom(16).hex()}"
    return f"{prefix}_{keccak(text=entropy).hex()[:20]}"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class EscrowStatus(str, Enum):
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class Receipt:
    """Immutable record of one admitted spend."""

    request_hash: str
    amount: int
    timestamp: float


@dataclass(frozen=True)
class Settlement:
    """Release of previously accounted spend to the agent."""

    settlement_id: str
    amount: int
    settled_at: float


@dataclass
class Session:
    """A bounded spending grant from a client to an agent."""

    session_id: str
    client: Address
    agent: Address
    max_total: int
    max_per_request: int
    rate_limit: int
    duration_blocks: int
    valid_until: int
    created_at: float
    status: SessionStatus = SessionStatus.ACTIVE
    spent: int = 0
    request_count: int = 0
    receipts: list[Receipt] = field(default_factory=list)
    window_start: float = 0.0
    window_count: int = 0
    settled_total: int = 0
    settlements: list[Settlement] = field(default_factory=list)
    policy_id: Optional[str] = None
    updated_at: float = 0.0
    closed_at: Optional[float] = None
    refund_amount: Optional[int] = None

    @property
    def remaining(self) -> int:
        return self.max_total - self.spent

    @property
    def unsettled(self) -> int:
        return self.spent - self.settled_total

    def find_receipt(self, request_hash: str) -> Optional[Receipt]:
        for receipt in self.receipts:
            if receipt.request_hash == request_hash:
                return receipt
        return None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        d["client"] = str(self.client)
        d["agent"] = str(self.agent)
        d["remaining"] = self.remaining
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Session:
        data = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        data["client"] = Address.parse(data["client"])
        data["agent"] = Address.parse(data["agent"])
        data["status"] = SessionStatus(data.get("status", SessionStatus.ACTIVE.value))
        data["receipts"] = [Receipt(**r) for r in data.get("receipts", [])]
        data["settlements"] = [Settlement(**s) for s in data.get("settlements", [])]
        return cls(**data)


@dataclass(frozen=True)
class Policy:
    """Reusable upper bounds for sessions. Immutable once created."""

    policy_id: str
    owner: Address
    max_session_value: int
    max_single_request: int
    created_at: float
    allowed_tiers: int = DEFAULT_ALLOWED_TIERS
    allowed_categories: int = DEFAULT_ALLOWED_CATEGORIES
    require_proofs: bool = False

    def allows_tier(self, tier: int) -> bool:
        return 0 <= tier < 8 and bool(self.allowed_tiers & (1 << tier))

    def allows_category(self, category: int) -> bool:
        return 0 <= category < 32 and bool(self.allowed_categories & (1 << category))

    def to_dict(self) -> dict:
        d = asdict(self)
        d["owner"] = str(self.owner)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Policy:
        data = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        data["owner"] = Address.parse(data["owner"])
        return cls(**data)


@dataclass
class MultiSigEscrow:
    """An escrowed amount released by M-of-3 signer approvals."""

    job_hash: str
    owner: Address
    agent: Address
    amount: int
    secret_hash: str
    signers: tuple[Optional[Address], ...]
    required_sigs: int
    created_at: float
    deadline: int = 0
    approvals: list[bool] = field(default_factory=lambda: [False] * SIGNER_SLOTS)
    status: EscrowStatus = EscrowStatus.LOCKED
    updated_at: float = 0.0
    released_at: Optional[float] = None
    refunded_at: Optional[float] = None
    refund_reason: Optional[str] = None

    @property
    def sig_count(self) -> int:
        return sum(1 for approved in self.approvals if approved)

    def signer_index(self, address: Address) -> Optional[int]:
        for index, signer in enumerate(self.signers):
            if signer is not None and signer == address:
                return index
        return None

    def awaits(self, address: Address) -> bool:
        """True if address holds an unapproved slot on a locked escrow."""
        if self.status != EscrowStatus.LOCKED:
            return False
        index = self.signer_index(address)
        return index is not None and not self.approvals[index]

    def to_dict(self) -> dict:
        d = asdict(self)
        d["owner"] = str(self.owner)
        d["agent"] = str(self.agent)
        d["signers"] = [str(s) if s is not None else None for s in self.signers]
        d["status"] = self.status.value
        d["sig_count"] = self.sig_count
        return d

    @classmethod
    def from_dict(cls, d: dict) -> MultiSigEscrow:
        data = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        data["owner"] = Address.parse(data["owner"])
        data["agent"] = Address.parse(data["agent"])
        data["signers"] = tuple(
            Address.parse(s) if s else None for s in data["signers"]
        )
        data["approvals"] = [bool(a) for a in data.get("approvals", [False] * SIGNER_SLOTS)]
        data["status"] = EscrowStatus(data.get("status", EscrowStatus.LOCKED.value))
        return cls(**data)
