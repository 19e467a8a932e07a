"""Tests for the facilitator HTTP service."""

import pytest
from fastapi.testclient import TestClient

from spendgate.config import ServiceConfig
from spendgate.multisig import MultiSigEscrowCoordinator
from spendgate.policy import PolicyEngine
from spendgate.server import FacilitatorService, build_service, create_app
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
def api(clock):
    store = MemoryStore()
    policies = PolicyEngine(store, clock=clock)
    service = FacilitatorService(
        store=store,
        policies=policies,
        sessions=SessionManager(store, policies, rate_window_seconds=60.0, clock=clock),
        escrows=MultiSigEscrowCoordinator(store, clock=clock),
    )
    with TestClient(create_app(service)) as client:
        yield client


def session_body(**kwargs):
    body = dict(
        agent=AGENT,
        client=CLIENT,
        max_total=10_000_000,
        max_per_request=500_000,
        rate_limit=100,
        duration_blocks=14400,
    )
    body.update(kwargs)
    return body


def escrow_body(**kwargs):
    body = dict(
        agent=AGENT,
        owner=CLIENT,
        amount=2_000_000,
        job_hash="job_1",
        secret_hash="secret_1",
        signers=[A, B, C],
        required_signatures=2,
    )
    body.update(kwargs)
    return body


def test_health(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestSessionRoutes:
    def test_create_and_fetch(self, api):
        response = api.post("/sessions", json=session_body())
        assert response.status_code == 201
        session = response.json()["session"]
        assert session["status"] == "active"
        assert session["remaining"] == 10_000_000

        fetched = api.get(f"/sessions/{session['session_id']}")
        assert fetched.json()["session"]["session_id"] == session["session_id"]

    def test_list_with_filters(self, api):
        api.post("/sessions", json=session_body())
        api.post("/sessions", json=session_body(agent=A))
        assert len(api.get("/sessions").json()) == 2
        assert len(api.get("/sessions", params={"agent": A}).json()) == 1
        assert api.get("/sessions", params={"status": "closed"}).json() == []

    def test_admit_settle_close(self, api):
        sid = api.post("/sessions", json=session_body()).json()["session"]["session_id"]

        admitted = api.post(f"/sessions/{sid}/request", json={"amount": 500_000, "request_hash": "r1"})
        assert admitted.status_code == 200
        body = admitted.json()
        assert body["receipt"]["request_hash"] == "r1"
        assert body["session"]["spent"] == 500_000
        assert body["duplicate"] is False

        replay = api.post(f"/sessions/{sid}/request", json={"amount": 500_000, "request_hash": "r1"})
        assert replay.json()["duplicate"] is True
        assert replay.json()["session"]["spent"] == 500_000

        settled = api.post(f"/sessions/{sid}/settle", json={"settlement_amount": 200_000})
        assert settled.status_code == 200
        assert settled.json()["settlement"]["amount"] == 200_000
        assert settled.json()["session"]["settled_total"] == 200_000

        mismatched = api.post(f"/sessions/{sid}/request", json={"amount": 1, "request_hash": "r1"})
        assert mismatched.status_code == 400
        assert mismatched.json()["code"] == "validation_error"

        closed = api.post(f"/sessions/{sid}/close")
        assert closed.json()["refund_amount"] == 9_500_000
        assert closed.json()["session"]["status"] == "closed"
        assert closed.json()["session"]["refund_amount"] == 9_500_000

        replay_after_close = api.post(
            f"/sessions/{sid}/request", json={"amount": 500_000, "request_hash": "r1"}
        )
        assert replay_after_close.status_code == 400
        assert replay_after_close.json()["code"] == "session_not_active"

        again = api.post(f"/sessions/{sid}/close")
        assert again.status_code == 400
        assert again.json()["code"] == "already_closed"

    def test_pause_resume(self, api):
        sid = api.post("/sessions", json=session_body()).json()["session"]["session_id"]
        assert api.post(f"/sessions/{sid}/pause").json()["session"]["status"] == "paused"
        blocked = api.post(f"/sessions/{sid}/request", json={"amount": 1})
        assert blocked.status_code == 400
        assert blocked.json()["code"] == "session_not_active"
        assert api.post(f"/sessions/{sid}/resume").json()["session"]["status"] == "active"

    def test_limit_errors_carry_details(self, api):
        sid = api.post("/sessions", json=session_body()).json()["session"]["session_id"]
        response = api.post(f"/sessions/{sid}/request", json={"amount": 600_000})
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "per_request_cap_exceeded"
        assert body["amount"] == 600_000
        assert body["limit"] == 500_000

    def test_rate_limit_is_429(self, api, clock):
        sid = api.post("/sessions", json=session_body(rate_limit=1)).json()["session"]["session_id"]
        api.post(f"/sessions/{sid}/request", json={"amount": 1})
        clock.now = 1010.0
        response = api.post(f"/sessions/{sid}/request", json={"amount": 1})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "50"
        body = response.json()
        assert body["code"] == "rate_limit_exceeded"
        assert body["reset_at"] == 1060.0

    def test_unknown_session_is_404(self, api):
        response = api.post("/sessions/session_missing/request", json={"amount": 1})
        assert response.status_code == 404
        assert response.json()["code"] == "unknown_session"

    def test_duplicate_session_id_is_409(self, api):
        api.post("/sessions", json=session_body(session_id="fixed"))
        response = api.post("/sessions", json=session_body(session_id="fixed"))
        assert response.status_code == 409
        assert response.json()["code"] == "duplicate_session"

    def test_float_amount_rejected(self, api):
        response = api.post("/sessions", json=session_body(max_total=10.5))
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_bad_bounds_rejected(self, api):
        response = api.post("/sessions", json=session_body(max_per_request=20_000_000))
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_bounds"

    def test_bad_address_rejected(self, api):
        response = api.post("/sessions", json=session_body(agent="nobody"))
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_address"

    def test_client_required(self, api):
        body = session_body()
        del body["client"]
        response = api.post("/sessions", json=body)
        assert response.status_code == 400


class TestPolicyRoutes:
    def test_policy_flow(self, api):
        created = api.post(
            "/sessions/policies",
            json={"owner": CLIENT, "max_session_value": 50_000_000, "max_single_request": 1_000_000},
        )
        assert created.status_code == 201
        pid = created.json()["policy"]["policy_id"]

        assert [p["policy_id"] for p in api.get("/sessions/policies").json()] == [pid]
        assert api.get(f"/sessions/policies/{pid}").json()["policy"]["owner"] == CLIENT

        body = session_body()
        del body["client"]
        session = api.post(f"/sessions/policies/{pid}/create-session", json=body)
        assert session.status_code == 201
        assert session.json()["policy_id"] == pid
        assert session.json()["session"]["client"] == CLIENT

        too_big = api.post(
            f"/sessions/policies/{pid}/create-session",
            json=session_body(max_total=60_000_000),
        )
        assert too_big.status_code == 400
        assert too_big.json()["code"] == "exceeds_policy_bound"
        assert too_big.json()["field"] == "max_total"

    def test_unknown_policy(self, api):
        response = api.post("/sessions/policies/policy_missing/create-session", json=session_body())
        assert response.status_code == 404
        assert api.get("/sessions/policies/policy_missing").status_code == 404


class TestEscrowRoutes:
    def test_two_of_three(self, api):
        created = api.post("/escrows/multisig", json=escrow_body())
        assert created.status_code == 201
        assert created.json()["escrow"]["status"] == "locked"

        pending = api.get(f"/escrows/multisig/pending/{B}").json()
        assert [e["job_hash"] for e in pending] == ["job_1"]

        first = api.post("/escrows/multisig/job_1/approve", json={"signer_address": A})
        assert first.json()["threshold_met"] is False
        second = api.post("/escrows/multisig/job_1/approve", json={"signer_address": B})
        assert second.json()["threshold_met"] is True
        assert second.json()["escrow"]["status"] == "released"

        third = api.post("/escrows/multisig/job_1/approve", json={"signer_address": C})
        assert third.status_code == 400
        assert third.json()["code"] == "not_locked"
        assert api.get(f"/escrows/multisig/pending/{C}").json() == []

    def test_not_a_signer_is_403(self, api):
        api.post("/escrows/multisig", json=escrow_body())
        response = api.post("/escrows/multisig/job_1/approve", json={"signer_address": CLIENT})
        assert response.status_code == 403

    def test_duplicate_job_is_409(self, api):
        api.post("/escrows/multisig", json=escrow_body())
        assert api.post("/escrows/multisig", json=escrow_body()).status_code == 409

    def test_duplicate_signers_rejected(self, api):
        response = api.post("/escrows/multisig", json=escrow_body(signers=[A, A, B]))
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_signers"

    def test_refund(self, api):
        api.post("/escrows/multisig", json=escrow_body())
        refunded = api.post("/escrows/multisig/job_1/refund", json={"reason": "dispute"})
        assert refunded.json()["escrow"]["status"] == "refunded"
        assert api.get("/escrows/multisig/job_1").json()["escrow"]["refund_reason"] == "dispute"
        assert api.post("/escrows/multisig/job_1/refund").status_code == 400

    def test_unknown_escrow(self, api):
        assert api.get("/escrows/multisig/job_missing").status_code == 404


def test_build_service_sqlite(tmp_path):
    config = ServiceConfig(data_dir=tmp_path, store="sqlite", audit_hmac_key="k")
    with TestClient(create_app(build_service(config))) as client:
        created = client.post("/sessions", json=session_body())
        assert created.status_code == 201
    assert (tmp_path / "spendgate.sqlite3").exists()
    assert (tmp_path / "audit.jsonl").read_text().count("session_created") == 1
