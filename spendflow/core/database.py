"""
Spendflow Database

Single source of truth for the engine's durable state:
- ledger_entries: append-only budget ledger (never updated, never deleted)
- spend_requests: request documents with their status history
- approval_chains: chain snapshots (approval and payment chains)
- approval_policies: policy documents, versioned on every save
- audit_events: write-only audit sink
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SpendflowDB:
    def __init__(self, db_path: str = "spendflow.db"):
        self.db_path = db_path
        self._initialized = False
        # ":memory:" databases vanish with their connection, so keep one open.
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()
        if db_path == ":memory:":
            self._shared_conn = sqlite3.connect(db_path, check_same_thread=False)
            self._shared_conn.row_factory = sqlite3.Row

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self._shared_conn is not None:
            with self._shared_lock:
                try:
                    yield self._shared_conn
                    self._shared_conn.commit()
                except Exception:
                    self._shared_conn.rollback()
                    raise
            return
        conn = self._sqlite_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL UNIQUE,
                    budget_line_id TEXT NOT NULL,
                    period TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    amount REAL NOT NULL,
                    related_request_id TEXT NOT NULL,
                    reason TEXT,
                    actor TEXT,
                    timestamp TEXT NOT NULL
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_ledger_line_period
                ON ledger_entries(budget_line_id, period, seq)
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_ledger_request
                ON ledger_entries(related_request_id, seq)
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS spend_requests (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    requester_id TEXT,
                    document TEXT NOT NULL,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_chains (
                    request_id TEXT NOT NULL,
                    chain_kind TEXT NOT NULL,
                    state TEXT NOT NULL,
                    document TEXT NOT NULL,
                    updated_at TEXT,
                    PRIMARY KEY(request_id, chain_kind)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_policies (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    document TEXT NOT NULL,
                    updated_by TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id TEXT PRIMARY KEY,
                    action TEXT NOT NULL,
                    entity TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    actor TEXT,
                    before_state TEXT,
                    after_state TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_entity
                ON audit_events(entity, entity_id, created_at)
            """)
        self._initialized = True

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def append_ledger_entries(self, entries: Iterable[Dict[str, Any]]) -> None:
        """Append entries in one transaction. There is no update or delete."""
        rows = [
            (
                e["entry_id"],
                e["budget_line_id"],
                e["period"],
                e["kind"],
                float(e["amount"]),
                e["related_request_id"],
                e.get("reason"),
                e.get("actor"),
                e["timestamp"],
            )
            for e in entries
        ]
        if not rows:
            return
        with self.connect() as conn:
            conn.executemany(
                """
                INSERT INTO ledger_entries
                    (entry_id, budget_line_id, period, kind, amount, related_request_id, reason, actor, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def list_ledger_entries(
        self,
        budget_line_id: Optional[str] = None,
        period: Optional[str] = None,
        related_request_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        clauses = []
        params: List[Any] = []
        if budget_line_id:
            clauses.append("budget_line_id = ?")
            params.append(budget_line_id)
        if period:
            clauses.append("period = ?")
            params.append(period)
        if related_request_id:
            clauses.append("related_request_id = ?")
            params.append(related_request_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, budget_line_id, period, kind, amount, related_request_id, reason, actor, timestamp "
                f"FROM ledger_entries {where} ORDER BY timestamp ASC, seq ASC",
                tuple(params),
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Requests and chains
    # ------------------------------------------------------------------

    def save_request(self, request_id: str, status: str, document: Dict[str, Any]) -> None:
        now = _now()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO spend_requests (id, status, requester_id, document, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status=excluded.status,
                    document=excluded.document,
                    updated_at=excluded.updated_at
                """,
                (
                    request_id,
                    status,
                    document.get("requester_id"),
                    json.dumps(document, default=str),
                    now,
                    now,
                ),
            )

    def list_requests(self, statuses: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            if statuses:
                marks = ",".join("?" for _ in statuses)
                rows = conn.execute(
                    f"SELECT document FROM spend_requests WHERE status IN ({marks}) ORDER BY created_at ASC",
                    tuple(statuses),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT document FROM spend_requests ORDER BY created_at ASC"
                ).fetchall()
        return [json.loads(row["document"]) for row in rows]

    def save_chain(self, request_id: str, chain_kind: str, state: str, document: Dict[str, Any]) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO approval_chains (request_id, chain_kind, state, document, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(request_id, chain_kind) DO UPDATE SET
                    state=excluded.state,
                    document=excluded.document,
                    updated_at=excluded.updated_at
                """,
                (request_id, chain_kind, state, json.dumps(document, default=str), _now()),
            )

    def get_chains(self, request_id: str) -> Dict[str, Dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT chain_kind, document FROM approval_chains WHERE request_id = ?",
                (request_id,),
            ).fetchall()
        return {row["chain_kind"]: json.loads(row["document"]) for row in rows}

    def delete_chains(self, request_id: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM approval_chains WHERE request_id = ?", (request_id,))

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def upsert_policy(self, document: Dict[str, Any], updated_by: str = "system") -> int:
        """Store a policy document, bumping its version. Returns the new version."""
        policy_id = document["id"]
        now = _now()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT version FROM approval_policies WHERE id = ?", (policy_id,)
            ).fetchone()
            version = (int(row["version"]) if row else 0) + 1
            stored = dict(document)
            stored["version"] = version
            conn.execute(
                """
                INSERT INTO approval_policies (id, version, status, document, updated_by, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    version=excluded.version,
                    status=excluded.status,
                    document=excluded.document,
                    updated_by=excluded.updated_by,
                    updated_at=excluded.updated_at
                """,
                (
                    policy_id,
                    version,
                    document.get("status", "active"),
                    json.dumps(stored, default=str),
                    updated_by,
                    now,
                ),
            )
        return version

    def list_policies(self) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT document FROM approval_policies ORDER BY id ASC").fetchall()
        return [json.loads(row["document"]) for row in rows]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def record_audit_event(
        self,
        action: str,
        entity: str,
        entity_id: str,
        actor: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
    ) -> str:
        event_id = str(uuid.uuid4())
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_events (id, action, entity, entity_id, actor, before_state, after_state, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    action,
                    entity,
                    entity_id,
                    actor,
                    json.dumps(before, default=str) if before is not None else None,
                    json.dumps(after, default=str) if after is not None else None,
                    _now(),
                ),
            )
        return event_id

    def list_audit_events(
        self,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        clauses = []
        params: List[Any] = []
        if entity:
            clauses.append("entity = ?")
            params.append(entity)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_events {where} ORDER BY created_at ASC, rowid ASC LIMIT ?",
                tuple(params),
            ).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            for key in ("before_state", "after_state"):
                if event.get(key):
                    event[key] = json.loads(event[key])
            events.append(event)
        return events

