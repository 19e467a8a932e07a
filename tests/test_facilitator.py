"""Tests for the remote facilitator client."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from spendgate.errors import (
    BudgetExceededError,
    DuplicateEscrowError,
    ExceedsPolicyBoundError,
    FacilitatorError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidSignersError,
    MaxRetriesExceededError,
    NotASignerError,
    PartialFailureError,
    PerRequestCapExceededError,
    RateLimitExceededError,
    UnknownSessionError,
    ValidationError,
)
from spendgate.facilitator import FacilitatorClient
from spendgate.models import EscrowStatus, SessionStatus
from spendgate.multisig import MultiSigEscrowCoordinator
from spendgate.policy import PolicyEngine
from spendgate.resilient_client import ResilientClient
from spendgate.server import FacilitatorService, create_app
from spendgate.session import SessionManager
from spendgate.store import MemoryStore


CLIENT = "aleo1" + "q" * 58
AGENT = "aleo1" + "p" * 58
A = "aleo1" + "z" * 58
B = "aleo1" + "r" * 58
C = "aleo1" + "y" * 58


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote(clock):
    store = MemoryStore()
    policies = PolicyEngine(store, clock=clock)
    service = FacilitatorService(
        store=store,
        policies=policies,
        sessions=SessionManager(store, policies, rate_window_seconds=60.0, clock=clock),
        escrows=MultiSigEscrowCoordinator(store, clock=clock),
    )
    http = ResilientClient(
        http=TestClient(create_app(service)),
        sleep=lambda delay: None,
        sweep_interval=None,
    )
    with FacilitatorClient(http) as client:
        yield client


def mock_client(handler):
    http = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://facilitator.test")
    return FacilitatorClient(ResilientClient(http=http, sleep=lambda delay: None, sweep_interval=None))


def open_session(client, **kwargs):
    fields = dict(
        agent=AGENT,
        client=CLIENT,
        max_total=10_000_000,
        max_per_request=500_000,
        rate_limit=100,
        duration_blocks=14400,
    )
    fields.update(kwargs)
    return client.create_session(**fields)


ESCROW_FIELDS = dict(
    owner=CLIENT,
    agent=AGENT,
    amount=2_000_000,
    secret_hash="secret_1",
    signers=[A, B, C],
    required_sigs=2,
)


class TestSessions:
    def test_full_flow(self, remote):
        session = open_session(remote)
        assert session.status == SessionStatus.ACTIVE

        # Prime the read cache; the admission below must invalidate it.
        assert remote.get_session(session.session_id).spent == 0

        result = remote.admit_request(session.session_id, 500_000)
        assert result.receipt.request_hash.startswith("req_")
        assert result.session.spent == 500_000
        assert remote.get_session(session.session_id).spent == 500_000

        settlement = remote.settle(session.session_id, 500_000)
        assert settlement.amount == 500_000

        assert remote.pause(session.session_id).status == SessionStatus.PAUSED
        assert remote.resume(session.session_id).status == SessionStatus.ACTIVE
        assert remote.close_session(session.session_id) == 9_500_000
        assert [s.session_id for s in remote.list_sessions(status="closed")] == [session.session_id]

    def test_duplicate_request_hash_replays(self, remote):
        session = open_session(remote)
        remote.admit_request(session.session_id, 100, request_hash="r-1")
        replay = remote.admit_request(session.session_id, 100, request_hash="r-1")
        assert replay.duplicate is True
        assert replay.session.spent == 100

    def test_domain_errors_mapped(self, remote):
        session = open_session(remote, max_total=600_000)
        with pytest.raises(PerRequestCapExceededError) as cap:
            remote.admit_request(session.session_id, 500_001)
        assert cap.value.limit == 500_000

        remote.admit_request(session.session_id, 500_000)
        with pytest.raises(BudgetExceededError) as budget:
            remote.admit_request(session.session_id, 500_000)
        assert budget.value.remaining == 100_000

        with pytest.raises(UnknownSessionError):
            remote.get_session("session_missing")

    def test_persistent_rate_limit(self, remote, clock):
        session = open_session(remote, rate_limit=1)
        remote.admit_request(session.session_id, 1)
        with pytest.raises(RateLimitExceededError) as exc_info:
            remote.admit_request(session.session_id, 1)
        assert exc_info.value.reset_at == 1060.0
        assert remote.get_session(session.session_id).request_count == 1


class TestLocalValidation:
    def _never_called(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        return mock_client(handler), calls

    def test_nothing_sent_for_invalid_input(self):
        client, calls = self._never_called()
        with pytest.raises(InvalidAddressError):
            client.create_session("bogus", CLIENT, 10, 1, 1, 1)
        with pytest.raises(InvalidAmountError):
            client.admit_request("session_1", 1.5)
        with pytest.raises(InvalidSignersError):
            client.create_escrow(job_hash="job_1", **{**ESCROW_FIELDS, "signers": [A, A, B]})
        with pytest.raises(InvalidSignersError):
            client.create_job_with_escrow({"agent": AGENT}, {**ESCROW_FIELDS, "signers": [A]})
        assert calls == []


class TestTransportRetries:
    def test_retried_admission_reuses_request_hash(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            if len(bodies) == 1:
                return httpx.Response(503)
            return httpx.Response(
                200,
                json={
                    "receipt": {"request_hash": bodies[-1]["request_hash"], "amount": 7, "timestamp": 1.0},
                    "session": {
                        "session_id": "session_1",
                        "client": CLIENT,
                        "agent": AGENT,
                        "max_total": 100,
                        "max_per_request": 10,
                        "rate_limit": 5,
                        "duration_blocks": 10,
                        "valid_until": 10,
                        "created_at": 1.0,
                        "spent": 7,
                        "request_count": 1,
                    },
                    "duplicate": False,
                },
            )

        result = mock_client(handler).admit_request("session_1", 7)
        assert len(bodies) == 2
        assert bodies[0]["request_hash"] == bodies[1]["request_hash"] == result.receipt.request_hash

    def test_get_server_error_is_facilitator_error(self):
        client = mock_client(lambda request: httpx.Response(500, text="internal"))
        with pytest.raises(FacilitatorError) as exc_info:
            client.get_session("session_1")
        assert exc_info.value.status_code == 500


class TestPoliciesAndEscrows:
    def test_policy_flow(self, remote):
        policy = remote.create_policy(CLIENT, 50_000_000, 1_000_000)
        assert remote.get_policy(policy.policy_id) == policy
        assert remote.list_policies(owner=CLIENT) == [policy]

        session = remote.create_session_from_policy(
            policy.policy_id,
            agent=AGENT,
            max_total=10_000_000,
            max_per_request=500_000,
            rate_limit=10,
            duration_blocks=100,
        )
        assert session.client == CLIENT
        assert session.policy_id == policy.policy_id

        with pytest.raises(ExceedsPolicyBoundError) as exc_info:
            remote.create_session_from_policy(
                policy.policy_id,
                agent=AGENT,
                max_total=60_000_000,
                max_per_request=500_000,
                rate_limit=10,
                duration_blocks=100,
            )
        assert exc_info.value.field == "max_total"

    def test_escrow_flow(self, remote):
        escrow = remote.create_escrow(job_hash="job_1", **ESCROW_FIELDS)
        assert escrow.status == EscrowStatus.LOCKED
        assert [e.job_hash for e in remote.pending_for(A)] == ["job_1"]

        with pytest.raises(NotASignerError):
            remote.approve("job_1", CLIENT)

        assert remote.approve("job_1", A).threshold_met is False
        released = remote.approve("job_1", B)
        assert released.threshold_met is True
        assert remote.get_escrow("job_1").status == EscrowStatus.RELEASED
        assert remote.pending_for(C) == []

        with pytest.raises(DuplicateEscrowError):
            remote.create_escrow(job_hash="job_1", **ESCROW_FIELDS)

    def test_refund(self, remote):
        remote.create_escrow(job_hash="job_9", **ESCROW_FIELDS)
        refunded = remote.refund_escrow("job_9", reason="cancelled")
        assert refunded.status == EscrowStatus.REFUNDED


class TestJobWithEscrow:
    def _facilitator(self):
        state = {"jobs": 0, "escrow_up": False}

        def handler(request):
            if request.url.path == "/jobs":
                state["jobs"] += 1
                return httpx.Response(201, json={"success": True, "job": {"job_hash": "job_77", "agent": AGENT}})
            if request.url.path == "/escrows/multisig":
                if not state["escrow_up"]:
                    return httpx.Response(503)
                payload = json.loads(request.content)
                return httpx.Response(
                    201,
                    json={
                        "escrow": {
                            "job_hash": payload["job_hash"],
                            "owner": payload["owner"],
                            "agent": payload["agent"],
                            "amount": payload["amount"],
                            "secret_hash": payload["secret_hash"],
                            "signers": payload["signers"],
                            "required_sigs": payload["required_signatures"],
                            "created_at": 1.0,
                        }
                    },
                )
            return httpx.Response(404, json={"error": "not found"})

        return mock_client(handler), state

    def test_success(self):
        client, state = self._facilitator()
        state["escrow_up"] = True
        result = client.create_job_with_escrow({"agent": AGENT}, ESCROW_FIELDS)
        assert result.job["job_hash"] == "job_77"
        assert result.escrow.job_hash == "job_77"
        assert state["jobs"] == 1

    def test_partial_failure_and_resume(self):
        client, state = self._facilitator()
        with pytest.raises(PartialFailureError) as exc_info:
            client.create_job_with_escrow({"agent": AGENT}, ESCROW_FIELDS)

        error = exc_info.value
        assert error.phase == "escrow"
        assert error.completed["job"]["job_hash"] == "job_77"
        assert isinstance(error.cause, MaxRetriesExceededError)

        state["escrow_up"] = True
        escrow = client.resume_escrow(error.completed["job"], ESCROW_FIELDS)
        assert escrow.job_hash == "job_77"
        assert state["jobs"] == 1

    def test_job_hash_in_escrow_fields_rejected(self):
        client, state = self._facilitator()
        state["escrow_up"] = True
        fields = {**ESCROW_FIELDS, "job_hash": "job_mine"}
        with pytest.raises(ValidationError, match="job_hash"):
            client.create_job_with_escrow({"agent": AGENT}, fields)
        with pytest.raises(ValidationError, match="job_hash"):
            client.resume_escrow({"job_hash": "job_77"}, fields)
        assert state["jobs"] == 0

    def test_job_failure_propagates(self):
        client = mock_client(lambda request: httpx.Response(400, json={"error": "bad job"}))
        with pytest.raises(FacilitatorError):
            client.create_job_with_escrow({"agent": AGENT}, ESCROW_FIELDS)

    def test_resume_when_escrow_already_exists(self, remote):
        remote.create_escrow(job_hash="job_5", **ESCROW_FIELDS)
        escrow = remote.resume_escrow({"job_hash": "job_5"}, ESCROW_FIELDS)
        assert escrow.job_hash == "job_5"
