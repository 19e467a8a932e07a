"""
Backing stores for sessions, policies and multi-signer escrows.

Components only read copies and commit whole entities back, so a failed
check never leaves a half-applied mutation behind. Entity-level mutual
exclusion is the caller's job (see ``locks.KeyedLock``); stores only keep
their own structures consistent.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Protocol

from .errors import DuplicateEscrowError, DuplicatePolicyError, DuplicateSessionError
from .models import EscrowStatus, MultiSigEscrow, Policy, Session, SessionStatus
from .storage import default_data_dir, ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)


class Store(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def insert_session(self, session: Session) -> None: ...

    def update_session(self, session: Session) -> None: ...

    def list_sessions(
        self,
        client: Optional[str] = None,
        agent: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]: ...

    def get_policy(self, policy_id: str) -> Optional[Policy]: ...

    def insert_policy(self, policy: Policy) -> None: ...

    def list_policies(self, owner: Optional[str] = None) -> list[Policy]: ...

    def get_escrow(self, job_hash: str) -> Optional[MultiSigEscrow]: ...

    def insert_escrow(self, escrow: MultiSigEscrow) -> None: ...

    def update_escrow(self, escrow: MultiSigEscrow) -> None: ...

    def list_escrows(self, status: Optional[EscrowStatus] = None) -> list[MultiSigEscrow]: ...


def _session_matches(
    session: Session,
    client: Optional[str],
    agent: Optional[str],
    status: Optional[SessionStatus],
) -> bool:
    if client and session.client != client:
        return False
    if agent and session.agent != agent:
        return False
    if status and session.status != status:
        return False
    return True


class MemoryStore:
    """In-process store. Rows are kept serialized so every read is a copy."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, dict] = {}
        self._policies: dict[str, dict] = {}
        self._escrows: dict[str, dict] = {}

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            row = self._sessions.get(session_id)
        return Session.from_dict(row) if row is not None else None

    def insert_session(self, session: Session) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise DuplicateSessionError(f"Session ID already exists: {session.session_id}")
            self._sessions[session.session_id] = session.to_dict()

    def update_session(self, session: Session) -> None:
        with self._lock:
            if session.session_id not in self._sessions:
                raise KeyError(f"Session not found: {session.session_id}")
            self._sessions[session.session_id] = session.to_dict()

    def list_sessions(
        self,
        client: Optional[str] = None,
        agent: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        with self._lock:
            rows = list(self._sessions.values())
        sessions = [Session.from_dict(r) for r in rows]
        return [s for s in sessions if _session_matches(s, client, agent, status)]

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        with self._lock:
            row = self._policies.get(policy_id)
        return Policy.from_dict(row) if row is not None else None

    def insert_policy(self, policy: Policy) -> None:
        with self._lock:
            if policy.policy_id in self._policies:
                raise DuplicatePolicyError(f"Policy already exists: {policy.policy_id}")
            self._policies[policy.policy_id] = policy.to_dict()

    def list_policies(self, owner: Optional[str] = None) -> list[Policy]:
        with self._lock:
            rows = list(self._policies.values())
        policies = [Policy.from_dict(r) for r in rows]
        return [p for p in policies if not owner or p.owner == owner]

    def get_escrow(self, job_hash: str) -> Optional[MultiSigEscrow]:
        with self._lock:
            row = self._escrows.get(job_hash)
        return MultiSigEscrow.from_dict(row) if row is not None else None

    def insert_escrow(self, escrow: MultiSigEscrow) -> None:
        with self._lock:
            if escrow.job_hash in self._escrows:
                raise DuplicateEscrowError(
                    f"Multi-sig escrow already exists for job: {escrow.job_hash}"
                )
            self._escrows[escrow.job_hash] = escrow.to_dict()

    def update_escrow(self, escrow: MultiSigEscrow) -> None:
        with self._lock:
            if escrow.job_hash not in self._escrows:
                raise KeyError(f"Escrow not found: {escrow.job_hash}")
            self._escrows[escrow.job_hash] = escrow.to_dict()

    def list_escrows(self, status: Optional[EscrowStatus] = None) -> list[MultiSigEscrow]:
        with self._lock:
            rows = list(self._escrows.values())
        escrows = [MultiSigEscrow.from_dict(r) for r in rows]
        return [e for e in escrows if status is None or e.status == status]


class SqliteStore:
    """
    SQLite-backed store.

    Each call opens its own connection (WAL, FULL sync, 30s busy timeout) so
    the store is safe to share between threads. Inserts run under
    BEGIN IMMEDIATE and rely on primary keys to reject duplicates.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = data_dir or default_data_dir()
        ensure_private_dir(self.data_dir)
        self.db_path = self.data_dir / "spendgate.sqlite3"
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    client TEXT NOT NULL,
                    agent TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS policies (
                    policy_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS escrows (
                    job_hash TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_client ON sessions (client)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions (agent)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_escrows_status ON escrows (status)")

    def _insert(self, sql: str, params: tuple, duplicate: Exception) -> None:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(sql, params)
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                raise duplicate from None
            conn.execute("COMMIT")

    def _update(self, sql: str, params: tuple, missing: str) -> None:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(sql, params)
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK")
                raise KeyError(missing)
            conn.execute("COMMIT")

    # Sessions

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return Session.from_dict(json.loads(row["data"])) if row else None

    def insert_session(self, session: Session) -> None:
        self._insert(
            """
            INSERT INTO sessions (session_id, client, agent, status, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session.session_id,
                str(session.client),
                str(session.agent),
                session.status.value,
                session.created_at,
                json.dumps(session.to_dict(), sort_keys=True),
            ),
            DuplicateSessionError(f"Session ID already exists: {session.session_id}"),
        )

    def update_session(self, session: Session) -> None:
        self._update(
            "UPDATE sessions SET status = ?, data = ? WHERE session_id = ?",
            (
                session.status.value,
                json.dumps(session.to_dict(), sort_keys=True),
                session.session_id,
            ),
            f"Session not found: {session.session_id}",
        )

    def list_sessions(
        self,
        client: Optional[str] = None,
        agent: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        clauses: list[str] = []
        params: list[str] = []
        if client:
            clauses.append("client = ?")
            params.append(str(client))
        if agent:
            clauses.append("agent = ?")
            params.append(str(agent))
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT data FROM sessions {where} ORDER BY created_at ASC", params
            ).fetchall()
        return [Session.from_dict(json.loads(r["data"])) for r in rows]

    # Policies

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM policies WHERE policy_id = ?", (policy_id,)
            ).fetchone()
        return Policy.from_dict(json.loads(row["data"])) if row else None

    def insert_policy(self, policy: Policy) -> None:
        self._insert(
            "INSERT INTO policies (policy_id, owner, created_at, data) VALUES (?, ?, ?, ?)",
            (
                policy.policy_id,
                str(policy.owner),
                policy.created_at,
                json.dumps(policy.to_dict(), sort_keys=True),
            ),
            DuplicatePolicyError(f"Policy already exists: {policy.policy_id}"),
        )

    def list_policies(self, owner: Optional[str] = None) -> list[Policy]:
        with self._connect() as conn:
            if owner:
                rows = conn.execute(
                    "SELECT data FROM policies WHERE owner = ? ORDER BY created_at ASC",
                    (str(owner),),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT data FROM policies ORDER BY created_at ASC"
                ).fetchall()
        return [Policy.from_dict(json.loads(r["data"])) for r in rows]

    # Escrows

    def get_escrow(self, job_hash: str) -> Optional[MultiSigEscrow]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM escrows WHERE job_hash = ?", (job_hash,)
            ).fetchone()
        return MultiSigEscrow.from_dict(json.loads(row["data"])) if row else None

    def insert_escrow(self, escrow: MultiSigEscrow) -> None:
        self._insert(
            "INSERT INTO escrows (job_hash, status, created_at, data) VALUES (?, ?, ?, ?)",
            (
                escrow.job_hash,
                escrow.status.value,
                escrow.created_at,
                json.dumps(escrow.to_dict(), sort_keys=True),
            ),
            DuplicateEscrowError(f"Multi-sig escrow already exists for job: {escrow.job_hash}"),
        )

    def update_escrow(self, escrow: MultiSigEscrow) -> None:
        self._update(
            "UPDATE escrows SET status = ?, data = ? WHERE job_hash = ?",
            (
                escrow.status.value,
                json.dumps(escrow.to_dict(), sort_keys=True),
                escrow.job_hash,
            ),
            f"Escrow not found: {escrow.job_hash}",
        )

    def list_escrows(self, status: Optional[EscrowStatus] = None) -> list[MultiSigEscrow]:
        with self._connect() as conn:
            if status is not None:
                rows = conn.execute(
                    "SELECT data FROM escrows WHERE status = ? ORDER BY created_at ASC",
                    (status.value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT data FROM escrows ORDER BY created_at ASC"
                ).fetchall()
        return [MultiSigEscrow.from_dict(json.loads(r["data"])) for r in rows]
