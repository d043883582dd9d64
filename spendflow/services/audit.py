"""
Audit Sink

Every state-changing engine operation (reserve, settle, release, chain
transitions, request status changes, policy edits) is recorded here.

The sink is write-only and fire-and-forget: a failing sink is logged and
never fails the operation that produced the event.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from spendflow.core.database import SpendflowDB

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    # Requests
    REQUEST_SUBMIT = "request_submit"
    REQUEST_APPROVE = "request_approve"
    REQUEST_REJECT = "request_reject"
    REQUEST_CANCEL = "request_cancel"
    REQUEST_PAY = "request_pay"
    REQUEST_STATUS = "request_status"

    # Chains
    CHAIN_TRANSITION = "chain_transition"
    APPROVAL_ESCALATE = "approval_escalate"
    APPROVAL_POLICY_APPLY = "approval_policy_apply"

    # Budget ledger
    BUDGET_COMMIT = "budget_commit"
    BUDGET_SPEND = "budget_spend"
    BUDGET_RELEASE = "budget_release"


class AuditSink(Protocol):
    def record(
        self,
        action: str,
        entity: str,
        entity_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        ...


def _action_value(action) -> str:
    return action.value if isinstance(action, AuditAction) else str(action)


class DatabaseAuditSink:
    """Writes audit_events rows with before/after JSON snapshots."""

    def __init__(self, db: SpendflowDB):
        self.db = db

    def record(
        self,
        action: str,
        entity: str,
        entity_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        try:
            self.db.record_audit_event(
                action=_action_value(action),
                entity=entity,
                entity_id=entity_id,
                actor=actor,
                before=before,
                after=after,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Audit write failed for {_action_value(action)} {entity}:{entity_id}: {exc}")


@dataclass
class AuditRecord:
    action: str
    entity: str
    entity_id: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    actor: Optional[str] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "actor": self.actor,
            "recorded_at": self.recorded_at.isoformat(),
        }


class InMemoryAuditSink:
    """Keeps audit records in a list. Used by tests and local runs."""

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []

    def record(
        self,
        action: str,
        entity: str,
        entity_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        self.records.append(AuditRecord(_action_value(action), entity, entity_id, before, after, actor))

    def actions(self, entity_id: Optional[str] = None) -> List[str]:
        return [r.action for r in self.records if entity_id is None or r.entity_id == entity_id]
