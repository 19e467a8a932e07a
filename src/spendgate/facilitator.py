"""
Remote client for the facilitator HTTP service.

All calls are routed through ``ResilientClient``. Inputs are validated
locally before anything is sent, so validation failures are never retried,
and error responses are mapped back onto the ``spendgate.errors``
taxonomy using the service's ``code`` field.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import ServiceConfig
from .errors import (
    ERRORS_BY_CODE,
    BudgetExceededError,
    DuplicateEscrowError,
    ExceedsPolicyBoundError,
    ExceedsSpentError,
    FacilitatorError,
    InvalidBoundsError,
    MaxRetriesExceededError,
    PartialFailureError,
    PerRequestCapExceededError,
    RateLimitExceededError,
    SpendGateError,
    ValidationError,
)
from .models import Address, MultiSigEscrow, Policy, Receipt, Session, Settlement, new_id
from .money import require_micros
from .multisig import ApprovalResult, parse_signers
from .resilient_client import ResilientClient
from .session import AdmissionResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobEscrowResult:
    job: dict
    escrow: MultiSigEscrow


def _error_from(response: httpx.Response) -> SpendGateError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("code")
    message = body.get("error") or response.text[:200] or response.reason_phrase

    if code == RateLimitExceededError.code:
        return RateLimitExceededError(
            message,
            retry_after=float(body.get("retry_after") or 1.0),
            reset_at=body.get("reset_at"),
        )
    if code == PerRequestCapExceededError.code:
        return PerRequestCapExceededError(body.get("amount"), body.get("limit"))
    if code == BudgetExceededError.code:
        return BudgetExceededError(body.get("amount"), body.get("remaining"))
    if code == ExceedsSpentError.code:
        return ExceedsSpentError(body.get("amount"), body.get("unsettled"))
    if code == ExceedsPolicyBoundError.code:
        return ExceedsPolicyBoundError(body.get("field"), body.get("value"), body.get("limit"))
    if code in ERRORS_BY_CODE:
        return ERRORS_BY_CODE[code](message)
    return FacilitatorError(response.status_code, message)


def _require_count(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidBoundsError(f"{field} must be a positive integer, got {value!r}")
    return value


def _reject_job_hash(escrow_fields: dict) -> None:
    # The escrow is keyed by the job the facilitator creates.
    if "job_hash" in escrow_fields:
        raise ValidationError("escrow_fields must not include job_hash; it comes from the job")


class FacilitatorClient:
    """Typed access to a remote facilitator service."""

    def __init__(self, http: ResilientClient):
        self.http = http

    @classmethod
    def from_config(cls, config: Optional[ServiceConfig] = None) -> FacilitatorClient:
        config = config or ServiceConfig.from_env()
        return cls(
            ResilientClient(
                base_url=config.facilitator_url,
                max_retries=config.max_retries,
                timeout=config.http_timeout,
                cache_ttl=config.cache_ttl,
            )
        )

    def __enter__(self) -> FacilitatorClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self.http.close()

    def _call(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Any:
        try:
            response = self.http.request(method, path, json=json, params=params, cancel=cancel)
        except MaxRetriesExceededError as exc:
            last = exc.last_response
            if last is not None and last.status_code == 429:
                error = _error_from(last)
                if isinstance(error, RateLimitExceededError):
                    raise error from exc
            raise
        if not response.is_success:
            raise _error_from(response)
        return response.json()

    # Sessions

    def create_session(
        self,
        agent: Any,
        client: Any,
        max_total: int,
        max_per_request: int,
        rate_limit: int,
        duration_blocks: int,
        session_id: Optional[str] = None,
    ) -> Session:
        payload = self._session_payload(
            agent, client, max_total, max_per_request, rate_limit, duration_blocks, session_id
        )
        body = self._call("POST", "/sessions", json=payload)
        return Session.from_dict(body["session"])

    def create_session_from_policy(
        self,
        policy_id: str,
        agent: Any,
        max_total: int,
        max_per_request: int,
        rate_limit: int,
        duration_blocks: int,
        client: Optional[Any] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        payload = self._session_payload(
            agent, client, max_total, max_per_request, rate_limit, duration_blocks, session_id
        )
        body = self._call(
            "POST", f"/sessions/policies/{policy_id}/create-session", json=payload
        )
        return Session.from_dict(body["session"])

    def _session_payload(
        self,
        agent: Any,
        client: Optional[Any],
        max_total: int,
        max_per_request: int,
        rate_limit: int,
        duration_blocks: int,
        session_id: Optional[str],
    ) -> dict:
        require_micros(max_total, "max_total", bound=True)
        require_micros(max_per_request, "max_per_request", bound=True)
        if max_per_request > max_total:
            raise InvalidBoundsError(
                f"max_per_request {max_per_request} exceeds max_total {max_total}"
            )
        payload: dict[str, Any] = {
            "agent": str(Address.parse(agent)),
            "max_total": max_total,
            "max_per_request": max_per_request,
            "rate_limit": _require_count(rate_limit, "rate_limit"),
            "duration_blocks": _require_count(duration_blocks, "duration_blocks"),
        }
        if client:
            payload["client"] = str(Address.parse(client))
        if session_id:
            payload["session_id"] = session_id
        return payload

    def get_session(self, session_id: str) -> Session:
        return Session.from_dict(self._call("GET", f"/sessions/{session_id}")["session"])

    def list_sessions(
        self,
        client: Optional[Any] = None,
        agent: Optional[Any] = None,
        status: Optional[str] = None,
    ) -> list[Session]:
        params: dict[str, Any] = {}
        if client:
            params["client"] = str(Address.parse(client))
        if agent:
            params["agent"] = str(Address.parse(agent))
        if status:
            params["status"] = str(getattr(status, "value", status))
        return [Session.from_dict(s) for s in self._call("GET", "/sessions", params=params)]

    def admit_request(
        self,
        session_id: str,
        amount: int,
        request_hash: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> AdmissionResult:
        require_micros(amount, "amount")
        # A stable hash makes transport retries replay instead of double-charging.
        request_hash = request_hash or new_id("req")
        body = self._call(
            "POST",
            f"/sessions/{session_id}/request",
            json={"amount": amount, "request_hash": request_hash},
            cancel=cancel,
        )
        return AdmissionResult(
            receipt=Receipt(**body["receipt"]),
            session=Session.from_dict(body["session"]),
            duplicate=bool(body.get("duplicate", False)),
        )

    def settle(self, session_id: str, settlement_amount: int) -> Settlement:
        require_micros(settlement_amount, "settlement_amount")
        body = self._call(
            "POST",
            f"/sessions/{session_id}/settle",
            json={"settlement_amount": settlement_amount},
        )
        return Settlement(**body["settlement"])

    def pause(self, session_id: str) -> Session:
        return Session.from_dict(self._call("POST", f"/sessions/{session_id}/pause")["session"])

    def resume(self, session_id: str) -> Session:
        return Session.from_dict(self._call("POST", f"/sessions/{session_id}/resume")["session"])

    def close_session(self, session_id: str) -> int:
        return int(self._call("POST", f"/sessions/{session_id}/close")["refund_amount"])

    # Policies

    def create_policy(
        self,
        owner: Any,
        max_session_value: int,
        max_single_request: int,
        require_proofs: bool = False,
        allowed_tiers: Optional[int] = None,
        allowed_categories: Optional[int] = None,
    ) -> Policy:
        require_micros(max_session_value, "max_session_value", bound=True)
        require_micros(max_single_request, "max_single_request", bound=True)
        if max_single_request > max_session_value:
            raise InvalidBoundsError(
                f"max_single_request {max_single_request} exceeds "
                f"max_session_value {max_session_value}"
            )
        payload: dict[str, Any] = {
            "owner": str(Address.parse(owner)),
            "max_session_value": max_session_value,
            "max_single_request": max_single_request,
            "require_proofs": bool(require_proofs),
        }
        if allowed_tiers is not None:
            payload["allowed_tiers"] = allowed_tiers
        if allowed_categories is not None:
            payload["allowed_categories"] = allowed_categories
        return Policy.from_dict(self._call("POST", "/sessions/policies", json=payload)["policy"])

    def get_policy(self, policy_id: str) -> Policy:
        return Policy.from_dict(self._call("GET", f"/sessions/policies/{policy_id}")["policy"])

    def list_policies(self, owner: Optional[Any] = None) -> list[Policy]:
        params = {"owner": str(Address.parse(owner))} if owner else None
        return [Policy.from_dict(p) for p in self._call("GET", "/sessions/policies", params=params)]

    # Multi-signer escrows

    def _escrow_payload(
        self,
        owner: Any,
        agent: Any,
        amount: int,
        job_hash: str,
        secret_hash: str,
        signers: list[Any],
        required_sigs: int,
        deadline: int = 0,
    ) -> dict:
        require_micros(amount, "amount")
        slots, threshold = parse_signers(signers, required_sigs)
        if not secret_hash:
            raise ValidationError("secret_hash is required")
        return {
            "owner": str(Address.parse(owner)),
            "agent": str(Address.parse(agent)),
            "amount": amount,
            "job_hash": job_hash,
            "secret_hash": secret_hash,
            "signers": [str(s) if s is not None else None for s in slots],
            "required_signatures": threshold,
            "deadline": deadline,
        }

    def create_escrow(
        self,
        owner: Any,
        agent: Any,
        amount: int,
        job_hash: str,
        secret_hash: str,
        signers: list[Any],
        required_sigs: int,
        deadline: int = 0,
    ) -> MultiSigEscrow:
        if not job_hash:
            raise ValidationError("job_hash is required")
        payload = self._escrow_payload(
            owner, agent, amount, job_hash, secret_hash, signers, required_sigs, deadline
        )
        return MultiSigEscrow.from_dict(self._call("POST", "/escrows/multisig", json=payload)["escrow"])

    def get_escrow(self, job_hash: str) -> MultiSigEscrow:
        return MultiSigEscrow.from_dict(self._call("GET", f"/escrows/multisig/{job_hash}")["escrow"])

    def approve(self, job_hash: str, signer_address: Any) -> ApprovalResult:
        body = self._call(
            "POST",
            f"/escrows/multisig/{job_hash}/approve",
            json={"signer_address": str(Address.parse(signer_address))},
        )
        return ApprovalResult(
            escrow=MultiSigEscrow.from_dict(body["escrow"]),
            threshold_met=bool(body["threshold_met"]),
        )

    def refund_escrow(self, job_hash: str, reason: Optional[str] = None) -> MultiSigEscrow:
        body = self._call("POST", f"/escrows/multisig/{job_hash}/refund", json={"reason": reason})
        return MultiSigEscrow.from_dict(body["escrow"])

    def pending_for(self, address: Any) -> list[MultiSigEscrow]:
        path = f"/escrows/multisig/pending/{Address.parse(address)}"
        return [MultiSigEscrow.from_dict(e) for e in self._call("GET", path)]

    # Jobs with escrow

    def create_job(self, job_fields: dict) -> dict:
        return self._call("POST", "/jobs", json=job_fields)["job"]

    def create_job_with_escrow(self, job_fields: dict, escrow_fields: dict) -> JobEscrowResult:
        """Create a job, then its multi-signer escrow.

        Escrow inputs are validated before the job is created. If the job
        exists but the escrow call fails, PartialFailureError carries the
        job; recover with ``resume_escrow(error.completed["job"], ...)``.
        """
        _reject_job_hash(escrow_fields)
        self._escrow_payload(job_hash="pending", **escrow_fields)

        job = self.create_job(job_fields)
        logger.info("Job created: %s", job.get("job_hash"))
        try:
            escrow = self.resume_escrow(job, escrow_fields)
        except SpendGateError as exc:
            logger.warning(
                "Escrow creation failed for job %s, job kept for recovery: %s",
                job.get("job_hash"),
                exc,
            )
            raise PartialFailureError("escrow", {"job": job}, exc) from exc
        return JobEscrowResult(job=job, escrow=escrow)

    def resume_escrow(self, job: dict, escrow_fields: dict) -> MultiSigEscrow:
        """Create the escrow for an already created job.

        Safe to repeat: if the escrow already exists it is fetched instead.
        """
        _reject_job_hash(escrow_fields)
        job_hash = job.get("job_hash")
        if not job_hash:
            raise ValidationError("job has no job_hash")
        try:
            return self.create_escrow(job_hash=job_hash, **escrow_fields)
        except DuplicateEscrowError:
            logger.info("Escrow for job %s already exists, fetching it", job_hash)
            return self.get_escrow(job_hash)
