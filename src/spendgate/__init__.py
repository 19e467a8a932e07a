"""
spendgate — bounded spending authorization for agent marketplaces.

Clients pre-authorize agents within hard bounds:
Policy caps sessions → Sessions admit requests → Escrows release on M-of-3.
"""

__version__ = "0.1.0"

from .models import (
    Address,
    EscrowStatus,
    MultiSigEscrow,
    Policy,
    Receipt,
    Session,
    SessionStatus,
    Settlement,
)
from .store import MemoryStore, SqliteStore
from .policy import PolicyEngine
from .session import AdmissionResult, SessionManager
from .multisig import ApprovalResult, MultiSigEscrowCoordinator
from .resilient_client import ResilientClient
from .facilitator import FacilitatorClient, JobEscrowResult
from .config import ServiceConfig
from .audit import AuditTrail, EventType

__all__ = [
    "Address", "EscrowStatus", "MultiSigEscrow", "Policy", "Receipt",
    "Session", "SessionStatus", "Settlement",
    "MemoryStore", "SqliteStore",
    "PolicyEngine", "SessionManager", "AdmissionResult",
    "MultiSigEscrowCoordinator", "ApprovalResult",
    "ResilientClient", "FacilitatorClient", "JobEscrowResult",
    "ServiceConfig", "AuditTrail", "EventType",
]
