"""
HTTP facilitator service.

Exposes sessions, policies and multi-signer escrows over JSON. Handlers
are plain ``def`` so FastAPI runs them on its worker thread pool; the
components serialize mutations per session and per job.

Usage:
    spendgate serve --host 127.0.0.1 --port 8402
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt

from . import __version__
from .audit import AuditTrail
from .config import ServiceConfig
from .errors import (
    DuplicateEscrowError,
    DuplicatePolicyError,
    DuplicateSessionError,
    LimitError,
    NotASignerError,
    NotFoundError,
    PolicyViolationError,
    RateLimitExceededError,
    SpendGateError,
    StateConflictError,
    ValidationError,
)
from .multisig import MultiSigEscrowCoordinator
from .policy import PolicyEngine
from .session import SessionManager
from .store import MemoryStore, SqliteStore, Store

logger = logging.getLogger(__name__)


# Request models


class CreateSessionRequest(BaseModel):
    agent: str
    client: Optional[str] = None
    max_total: StrictInt
    max_per_request: StrictInt
    rate_limit: StrictInt
    duration_blocks: StrictInt
    session_id: Optional[str] = None
    tier: Optional[StrictInt] = None
    category: Optional[StrictInt] = None


class AdmitRequestBody(BaseModel):
    amount: StrictInt
    request_hash: Optional[str] = None


class SettleRequest(BaseModel):
    settlement_amount: StrictInt


class CreatePolicyRequest(BaseModel):
    owner: str
    max_session_value: StrictInt
    max_single_request: StrictInt
    allowed_tiers: Optional[StrictInt] = None
    allowed_categories: Optional[StrictInt] = None
    require_proofs: bool = False


class CreateEscrowRequest(BaseModel):
    agent: str
    owner: str
    amount: StrictInt
    job_hash: str
    secret_hash: str
    signers: list[Optional[str]] = Field(default_factory=list)
    required_signatures: StrictInt
    deadline: StrictInt = 0


class ApproveRequest(BaseModel):
    signer_address: str


class RefundRequest(BaseModel):
    reason: Optional[str] = None


# Wiring


@dataclass
class FacilitatorService:
    store: Store
    policies: PolicyEngine
    sessions: SessionManager
    escrows: MultiSigEscrowCoordinator
    audit: Optional[AuditTrail] = None


def build_service(config: Optional[ServiceConfig] = None) -> FacilitatorService:
    config = config or ServiceConfig.from_env()
    store: Store
    if config.store == "sqlite":
        store = SqliteStore(config.data_dir)
    else:
        store = MemoryStore()
    audit = None
    if config.audit:
        audit = AuditTrail(
            path=config.data_dir / "audit.jsonl",
            key_path=config.data_dir / "secrets" / "audit_hmac.key",
            hmac_key=config.audit_hmac_key,
        )
    policies = PolicyEngine(store, audit=audit)
    sessions = SessionManager(
        store,
        policies,
        rate_window_seconds=config.rate_window_seconds,
        audit=audit,
    )
    escrows = MultiSigEscrowCoordinator(store, audit=audit)
    logger.info("Service built (store: %s, data dir: %s)", config.store, config.data_dir)
    return FacilitatorService(
        store=store,
        policies=policies,
        sessions=sessions,
        escrows=escrows,
        audit=audit,
    )


# Error mapping


def status_for(exc: SpendGateError) -> int:
    if isinstance(exc, RateLimitExceededError):
        return 429
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, NotASignerError):
        return 403
    if isinstance(exc, (DuplicateSessionError, DuplicateEscrowError, DuplicatePolicyError)):
        return 409
    if isinstance(exc, (ValidationError, PolicyViolationError, StateConflictError, LimitError)):
        return 400
    return 500


def error_body(exc: SpendGateError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": str(exc), "code": exc.code}
    for attr in ("field", "value", "limit", "amount", "remaining", "unsettled"):
        if hasattr(exc, attr):
            body[attr] = getattr(exc, attr)
    if isinstance(exc, RateLimitExceededError):
        body["retry_after"] = exc.retry_after
        body["reset_at"] = exc.reset_at
    return body


def create_app(service: FacilitatorService) -> FastAPI:
    app = FastAPI(title="spendgate facilitator", version=__version__)
    app.state.service = service
    sessions = service.sessions
    policies = service.policies
    escrows = service.escrows

    @app.exception_handler(SpendGateError)
    async def _domain_error(request: Request, exc: SpendGateError) -> JSONResponse:
        status = status_for(exc)
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}
        if status >= 500:
            logger.error("Unmapped error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=error_body(exc), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:])}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": f"Invalid request: {problems}", "code": ValidationError.code},
        )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "version": __version__}

    # Policies (registered before /sessions/{session_id})

    @app.post("/sessions/policies", status_code=201)
    def create_policy(body: CreatePolicyRequest) -> dict:
        policy = policies.create_policy(
            owner=body.owner,
            max_session_value=body.max_session_value,
            max_single_request=body.max_single_request,
            allowed_tiers=body.allowed_tiers,
            allowed_categories=body.allowed_categories,
            require_proofs=body.require_proofs,
        )
        return {"policy": policy.to_dict()}

    @app.get("/sessions/policies")
    def list_policies(owner: Optional[str] = None) -> list:
        return [p.to_dict() for p in policies.list_policies(owner=owner)]

    @app.get("/sessions/policies/{policy_id}")
    def get_policy(policy_id: str) -> dict:
        return {"policy": policies.get_policy(policy_id).to_dict()}

    @app.post("/sessions/policies/{policy_id}/create-session", status_code=201)
    def create_session_from_policy(policy_id: str, body: CreateSessionRequest) -> dict:
        session = sessions.create_session_from_policy(
            policy_id, **body.model_dump(exclude_none=True)
        )
        return {"session": session.to_dict(), "policy_id": policy_id}

    # Sessions

    @app.post("/sessions", status_code=201)
    def create_session(body: CreateSessionRequest) -> dict:
        if not body.client:
            raise ValidationError("Missing required field: client")
        session = sessions.create_session(**body.model_dump(exclude_none=True))
        return {"session": session.to_dict()}

    @app.get("/sessions")
    def list_sessions(
        client: Optional[str] = None,
        agent: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list:
        return [s.to_dict() for s in sessions.list_sessions(client=client, agent=agent, status=status)]

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str) -> dict:
        return {"session": sessions.get_session(session_id).to_dict()}

    @app.post("/sessions/{session_id}/request")
    def admit_request(session_id: str, body: AdmitRequestBody) -> dict:
        result = sessions.admit_request(session_id, body.amount, request_hash=body.request_hash)
        return {
            "session": result.session.to_dict(),
            "receipt": asdict(result.receipt),
            "duplicate": result.duplicate,
        }

    @app.post("/sessions/{session_id}/settle")
    def settle(session_id: str, body: SettleRequest) -> dict:
        settlement, session = sessions.settle_with_session(session_id, body.settlement_amount)
        return {
            "session": session.to_dict(),
            "settlement": asdict(settlement),
        }

    @app.post("/sessions/{session_id}/pause")
    def pause(session_id: str) -> dict:
        return {"session": sessions.pause(session_id).to_dict()}

    @app.post("/sessions/{session_id}/resume")
    def resume(session_id: str) -> dict:
        return {"session": sessions.resume(session_id).to_dict()}

    @app.post("/sessions/{session_id}/close")
    def close(session_id: str) -> dict:
        refund_amount, session = sessions.close_with_session(session_id)
        return {
            "refund_amount": refund_amount,
            "session": session.to_dict(),
        }

    # Multi-signer escrows (pending registered before /{job_hash})

    @app.post("/escrows/multisig", status_code=201)
    def create_escrow(body: CreateEscrowRequest) -> dict:
        escrow = escrows.create_escrow(
            owner=body.owner,
            agent=body.agent,
            amount=body.amount,
            job_hash=body.job_hash,
            secret_hash=body.secret_hash,
            signers=body.signers,
            required_sigs=body.required_signatures,
            deadline=body.deadline,
        )
        return {"escrow": escrow.to_dict()}

    @app.get("/escrows/multisig/pending/{address}")
    def pending(address: str) -> list:
        return [e.to_dict() for e in escrows.pending_for(address)]

    @app.get("/escrows/multisig/{job_hash}")
    def get_escrow(job_hash: str) -> dict:
        return {"escrow": escrows.get_escrow(job_hash).to_dict()}

    @app.post("/escrows/multisig/{job_hash}/approve")
    def approve(job_hash: str, body: ApproveRequest) -> dict:
        result = escrows.approve(job_hash, body.signer_address)
        return {"escrow": result.escrow.to_dict(), "threshold_met": result.threshold_met}

    @app.post("/escrows/multisig/{job_hash}/refund")
    def refund(job_hash: str, body: Optional[RefundRequest] = None) -> dict:
        escrow = escrows.refund(job_hash, reason=body.reason if body else None)
        return {"escrow": escrow.to_dict()}

    return app


def run(service: FacilitatorService, host: str = "127.0.0.1", port: int = 8402) -> None:
    import uvicorn

    uvicorn.run(create_app(service), host=host, port=port)
