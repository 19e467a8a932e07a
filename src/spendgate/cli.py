"""
spendgate CLI — bounded spending sessions, policies and multi-signer escrows.

Commands:
    spendgate serve      Run the facilitator HTTP service
    spendgate policy     Create and inspect spending policies
    spendgate session    Create, drive and close spending sessions
    spendgate escrow     Create, approve and refund multi-signer escrows
    spendgate audit      View the audit trail
    spendgate demo       Run a full in-process demo flow

Amounts on the command line are in credits (e.g. ``0.5``); they are
converted to integer microcredits before reaching the core.
"""

from __future__ import annotations

import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, Optional

import click

from . import __version__
from .audit import AuditTrail
from .config import ServiceConfig
from .errors import SpendGateError
from .facilitator import FacilitatorClient
from .models import MultiSigEscrow, Policy, Session
from .money import amount_credits_to_micros, format_credits, limit_credits_to_micros
from .multisig import MultiSigEscrowCoordinator
from .policy import PolicyEngine
from .session import SessionManager
from .store import MemoryStore


def _make_client(config: ServiceConfig) -> FacilitatorClient:
    return FacilitatorClient.from_config(config)


@contextmanager
def _remote(ctx: click.Context) -> Iterator[FacilitatorClient]:
    client = _make_client(ctx.obj["config"])
    try:
        yield client
    except SpendGateError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    finally:
        client.close()


def _echo_session(session: Session) -> None:
    click.echo(f"   ID:        {session.session_id}")
    click.echo(f"   Status:    {session.status.value}")
    click.echo(f"   Client:    {session.client}")
    click.echo(f"   Agent:     {session.agent}")
    click.echo(
        f"   Budget:    {format_credits(session.max_total)} total, "
        f"{format_credits(session.max_per_request)}/request"
    )
    click.echo(f"   Spent:     {format_credits(session.spent)} ({session.request_count} requests)")
    click.echo(f"   Settled:   {format_credits(session.settled_total)}")
    click.echo(f"   Rate:      {session.rate_limit} requests/window")
    if session.policy_id:
        click.echo(f"   Policy:    {session.policy_id}")


def _echo_policy(policy: Policy) -> None:
    click.echo(f"   ID:        {policy.policy_id}")
    click.echo(f"   Owner:     {policy.owner}")
    click.echo(f"   Session:   {format_credits(policy.max_session_value)} max")
    click.echo(f"   Request:   {format_credits(policy.max_single_request)} max")
    click.echo(f"   Proofs:    {'required' if policy.require_proofs else 'optional'}")


def _echo_escrow(escrow: MultiSigEscrow) -> None:
    click.echo(f"   Job:       {escrow.job_hash}")
    click.echo(f"   Status:    {escrow.status.value}")
    click.echo(f"   Amount:    {format_credits(escrow.amount)}")
    click.echo(f"   Approvals: {escrow.sig_count}/{escrow.required_sigs}")
    for signer, approved in zip(escrow.signers, escrow.approvals):
        if signer is not None:
            click.echo(f"     {'✅' if approved else '⏳'} {signer}")


@click.group()
@click.version_option(version=__version__)
@click.option("--url", default=None, help="Facilitator base URL (default: $SPENDGATE_FACILITATOR_URL)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, url: Optional[str], verbose: bool):
    """spendgate — bounded spending authorization for AI agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = ServiceConfig.from_env()
    if url:
        config = replace(config, facilitator_url=url)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ── Service ───────────────────────────────────────────────────────


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8402, help="Bind port")
@click.option("--store", type=click.Choice(["memory", "sqlite"]), default=None,
              help="Backing store (default: $SPENDGATE_STORE or memory)")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, store: Optional[str]):
    """Run the facilitator HTTP service."""
    from .server import build_service, run

    config = ctx.obj["config"]
    if store:
        config = replace(config, store=store)
    click.echo(f"🚀 spendgate facilitator on http://{host}:{port} (store: {config.store})")
    run(build_service(config), host=host, port=port)


# ── Policies ──────────────────────────────────────────────────────


@main.group("policy")
def policy_group():
    """Create and inspect spending policies."""


@policy_group.command("create")
@click.option("--owner", required=True, help="Policy owner address")
@click.option("--max-session", type=str, required=True, help="Max total per session (credits)")
@click.option("--max-request", type=str, required=True, help="Max single request (credits)")
@click.option("--require-proofs", is_flag=True, help="Require proofs for sessions under this policy")
@click.pass_context
def policy_create(ctx: click.Context, owner: str, max_session: str, max_request: str, require_proofs: bool):
    with _remote(ctx) as client:
        policy = client.create_policy(
            owner=owner,
            max_session_value=limit_credits_to_micros(max_session),
            max_single_request=limit_credits_to_micros(max_request),
            require_proofs=require_proofs,
        )
    click.echo(f"✅ Policy created: {policy.policy_id}")
    _echo_policy(policy)


@policy_group.command("list")
@click.option("--owner", default=None, help="Filter by owner address")
@click.pass_context
def policy_list(ctx: click.Context, owner: Optional[str]):
    with _remote(ctx) as client:
        policies = client.list_policies(owner=owner)
    if not policies:
        click.echo("No policies found")
        return
    for policy in policies:
        click.echo(
            f"{policy.policy_id}  {format_credits(policy.max_session_value)} / "
            f"{format_credits(policy.max_single_request)}  {policy.owner}"
        )


@policy_group.command("show")
@click.argument("policy_id")
@click.pass_context
def policy_show(ctx: click.Context, policy_id: str):
    with _remote(ctx) as client:
        policy = client.get_policy(policy_id)
    click.echo(f"📜 Policy {policy.policy_id}")
    _echo_policy(policy)


# ── Sessions ──────────────────────────────────────────────────────


@main.group("session")
def session_group():
    """Create, drive and close spending sessions."""


@session_group.command("create")
@click.option("--agent", required=True, help="Agent address")
@click.option("--client", "client_address", default=None, help="Client address (default: policy owner)")
@click.option("--max-total", type=str, required=True, help="Session budget (credits)")
@click.option("--max-per-request", type=str, required=True, help="Per-request cap (credits)")
@click.option("--rate-limit", type=int, default=60, help="Requests per rate window")
@click.option("--duration-blocks", type=int, default=14400, help="Validity in blocks")
@click.option("--policy", "policy_id", default=None, help="Create under this policy")
@click.pass_context
def session_create(
    ctx: click.Context,
    agent: str,
    client_address: Optional[str],
    max_total: str,
    max_per_request: str,
    rate_limit: int,
    duration_blocks: int,
    policy_id: Optional[str],
):
    if not client_address and not policy_id:
        click.echo("❌ --client is required unless --policy is given.", err=True)
        sys.exit(1)
    fields = dict(
        agent=agent,
        max_total=limit_credits_to_micros(max_total),
        max_per_request=limit_credits_to_micros(max_per_request),
        rate_limit=rate_limit,
        duration_blocks=duration_blocks,
    )
    with _remote(ctx) as client:
        if policy_id:
            session = client.create_session_from_policy(policy_id, client=client_address, **fields)
        else:
            session = client.create_session(client=client_address, **fields)
    click.echo(f"✅ Session created: {session.session_id}")
    _echo_session(session)


@session_group.command("list")
@click.option("--client", "client_address", default=None, help="Filter by client address")
@click.option("--agent", default=None, help="Filter by agent address")
@click.option("--status", type=click.Choice(["active", "paused", "closed"]), default=None)
@click.pass_context
def session_list(ctx: click.Context, client_address: Optional[str], agent: Optional[str], status: Optional[str]):
    with _remote(ctx) as client:
        sessions = client.list_sessions(client=client_address, agent=agent, status=status)
    if not sessions:
        click.echo("No sessions found")
        return
    for session in sessions:
        click.echo(
            f"{session.session_id}  {session.status.value:<7} "
            f"{format_credits(session.spent)} of {format_credits(session.max_total)}"
        )


@session_group.command("show")
@click.argument("session_id")
@click.pass_context
def session_show(ctx: click.Context, session_id: str):
    with _remote(ctx) as client:
        session = client.get_session(session_id)
    click.echo(f"📊 Session {session.session_id}")
    _echo_session(session)


@session_group.command("request")
@click.argument("session_id")
@click.argument("amount", type=str)
@click.option("--request-hash", default=None, help="Idempotency key for this request")
@click.pass_context
def session_request(ctx: click.Context, session_id: str, amount: str, request_hash: Optional[str]):
    """Admit one request of AMOUNT credits against a session."""
    with _remote(ctx) as client:
        result = client.admit_request(
            session_id, amount_credits_to_micros(amount), request_hash=request_hash
        )
    label = "Replayed" if result.duplicate else "Admitted"
    click.echo(f"✅ {label}: {format_credits(result.receipt.amount)} ({result.receipt.request_hash})")
    click.echo(f"   Remaining: {format_credits(result.session.remaining)}")


@session_group.command("settle")
@click.argument("session_id")
@click.argument("amount", type=str)
@click.pass_context
def session_settle(ctx: click.Context, session_id: str, amount: str):
    with _remote(ctx) as client:
        settlement = client.settle(session_id, amount_credits_to_micros(amount))
    click.echo(f"✅ Settled {format_credits(settlement.amount)} ({settlement.settlement_id})")


@session_group.command("pause")
@click.argument("session_id")
@click.pass_context
def session_pause(ctx: click.Context, session_id: str):
    with _remote(ctx) as client:
        client.pause(session_id)
    click.echo(f"⏸  Session paused: {session_id}")


@session_group.command("resume")
@click.argument("session_id")
@click.pass_context
def session_resume(ctx: click.Context, session_id: str):
    with _remote(ctx) as client:
        client.resume(session_id)
    click.echo(f"▶️  Session resumed: {session_id}")


@session_group.command("close")
@click.argument("session_id")
@click.pass_context
def session_close(ctx: click.Context, session_id: str):
    with _remote(ctx) as client:
        refund = client.close_session(session_id)
    click.echo(f"✅ Session closed: {session_id}")
    click.echo(f"   Refund: {format_credits(refund)}")


# ── Escrows ───────────────────────────────────────────────────────


@main.group("escrow")
def escrow_group():
    """Create, approve and refund multi-signer escrows."""


@escrow_group.command("create")
@click.option("--owner", required=True, help="Escrow owner address")
@click.option("--agent", required=True, help="Agent address")
@click.option("--amount", type=str, required=True, help="Escrowed amount (credits)")
@click.option("--job-hash", required=True, help="Job identifier")
@click.option("--secret-hash", required=True, help="Hash of the release secret")
@click.option("--signer", "signers", multiple=True, help="Signer address (up to 3)")
@click.option("--required", "required_sigs", type=int, default=2, help="Approvals needed to release")
@click.option("--deadline", type=int, default=0, help="Deadline block height (0 = none)")
@click.pass_context
def escrow_create(
    ctx: click.Context,
    owner: str,
    agent: str,
    amount: str,
    job_hash: str,
    secret_hash: str,
    signers: tuple[str, ...],
    required_sigs: int,
    deadline: int,
):
    if len(signers) > 3:
        click.echo("❌ At most 3 --signer options are allowed.", err=True)
        sys.exit(1)
    slots = list(signers) + [None] * (3 - len(signers))
    with _remote(ctx) as client:
        escrow = client.create_escrow(
            owner=owner,
            agent=agent,
            amount=amount_credits_to_micros(amount),
            job_hash=job_hash,
            secret_hash=secret_hash,
            signers=slots,
            required_sigs=required_sigs,
            deadline=deadline,
        )
    click.echo(f"✅ Escrow created: {escrow.job_hash}")
    _echo_escrow(escrow)


@escrow_group.command("approve")
@click.argument("job_hash")
@click.option("--signer", required=True, help="Approving signer address")
@click.pass_context
def escrow_approve(ctx: click.Context, job_hash: str, signer: str):
    with _remote(ctx) as client:
        result = client.approve(job_hash, signer)
    click.echo(f"✅ Approved by {signer} ({result.escrow.sig_count}/{result.escrow.required_sigs})")
    if result.threshold_met:
        click.echo(f"🔓 Threshold met, escrow released: {job_hash}")


@escrow_group.command("refund")
@click.argument("job_hash")
@click.option("--reason", default=None, help="Reason recorded with the refund")
@click.pass_context
def escrow_refund(ctx: click.Context, job_hash: str, reason: Optional[str]):
    with _remote(ctx) as client:
        escrow = client.refund_escrow(job_hash, reason=reason)
    click.echo(f"↩️  Escrow refunded: {escrow.job_hash}")


@escrow_group.command("pending")
@click.argument("address")
@click.pass_context
def escrow_pending(ctx: click.Context, address: str):
    with _remote(ctx) as client:
        escrows = client.pending_for(address)
    if not escrows:
        click.echo("No pending escrows")
        return
    for escrow in escrows:
        click.echo(
            f"{escrow.job_hash}  {format_credits(escrow.amount)}  "
            f"{escrow.sig_count}/{escrow.required_sigs}"
        )


@escrow_group.command("show")
@click.argument("job_hash")
@click.pass_context
def escrow_show(ctx: click.Context, job_hash: str):
    with _remote(ctx) as client:
        escrow = client.get_escrow(job_hash)
    click.echo(f"🔐 Escrow {escrow.job_hash}")
    _echo_escrow(escrow)


# ── Audit & demo ──────────────────────────────────────────────────


@main.command()
@click.option("--entity-id", default=None, help="Filter by session, policy or job id")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", is_flag=True, help="Only check the hash chain")
@click.pass_context
def audit(ctx: click.Context, entity_id: Optional[str], limit: int, verify: bool):
    """View or verify the audit trail."""
    config = ctx.obj["config"]
    trail = AuditTrail(
        path=config.data_dir / "audit.jsonl",
        key_path=config.data_dir / "secrets" / "audit_hmac.key",
        hmac_key=config.audit_hmac_key,
    )
    try:
        if verify:
            count = trail.verify()
            click.echo(f"✅ Audit chain intact ({count} events)")
            return
        events = trail.read_events(entity_id=entity_id, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_credits(event.amount)}" if event.amount else ""
        entity = f" [{event.entity_id}]" if event.entity_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{entity}{reason}")


@main.command()
@click.pass_context
def demo(ctx: click.Context):
    """Run a full in-process demo: policy, session, escrow."""
    config = ctx.obj["config"]
    trail = AuditTrail(
        path=config.data_dir / "demo-audit.jsonl",
        key_path=config.data_dir / "secrets" / "audit_hmac.key",
        hmac_key=config.audit_hmac_key,
    )
    store = MemoryStore()
    policies = PolicyEngine(store, audit=trail)
    sessions = SessionManager(store, policies, audit=trail)
    escrows = MultiSigEscrowCoordinator(store, audit=trail)

    owner = "aleo1" + "q" * 58
    agent = "aleo1" + "p" * 58
    signer_a, signer_b, signer_c = ("aleo1" + c * 58 for c in "zry")

    click.echo("🎬 spendgate Demo — Bounded Spending Flow")
    click.echo("=" * 50)

    click.echo("\n1️⃣  Creating policy (50 cr per session, 1 cr per request)...")
    policy = policies.create_policy(owner, 50_000_000, 1_000_000)
    click.echo(f"   ✅ Policy: {policy.policy_id}")

    click.echo("\n2️⃣  Opening session under policy (10 cr, 0.5 cr/request)...")
    session = sessions.create_session_from_policy(
        policy.policy_id,
        agent=agent,
        max_total=10_000_000,
        max_per_request=500_000,
        rate_limit=100,
        duration_blocks=14400,
    )
    click.echo(f"   ✅ Session: {session.session_id}")

    click.echo("\n3️⃣  Admitting requests...")
    for amount in (600_000, 500_000, 500_000, 250_000):
        try:
            result = sessions.admit_request(session.session_id, amount)
            click.echo(
                f"   ✅ {format_credits(amount)} admitted "
                f"(remaining {format_credits(result.session.remaining)})"
            )
        except SpendGateError as e:
            click.echo(f"   ❌ {format_credits(amount)} denied: {e}")

    click.echo("\n4️⃣  Settling and closing...")
    settlement = sessions.settle(session.session_id, 1_000_000)
    click.echo(f"   ✅ Settled {format_credits(settlement.amount)}")
    refund = sessions.close(session.session_id)
    click.echo(f"   ✅ Closed, refund {format_credits(refund)}")

    click.echo("\n5️⃣  Multi-signer escrow (2 of 3)...")
    escrows.create_escrow(
        owner=owner,
        agent=agent,
        amount=2_000_000,
        job_hash="job_demo",
        secret_hash="secret_demo",
        signers=[signer_a, signer_b, signer_c],
        required_sigs=2,
    )
    for signer in (signer_a, signer_b, signer_c):
        try:
            approval = escrows.approve("job_demo", signer)
            click.echo(
                f"   ✅ Approval {approval.escrow.sig_count}/2"
                f"{' → released' if approval.threshold_met else ''}"
            )
        except SpendGateError as e:
            click.echo(f"   ❌ {e}")

    summary = trail.summary()
    click.echo(f"\n📜 Audit: {summary['total_events']} events, {summary['failures']} failures")


if __name__ == "__main__":
    main()
