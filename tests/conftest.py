from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import List, Optional

import pytest

from spendflow.core.clock import FrozenClock
from spendflow.core.config import EngineSettings
from spendflow.core.database import SpendflowDB
from spendflow.core.locks import KeyedLockManager
from spendflow.models.budgets import BudgetLine
from spendflow.models.master_data import Category, CostCenter
from spendflow.models.policies import ApprovalPolicy, ApprovalStage, Approver, PolicyKind, StageRole
from spendflow.models.requests import SpendRequestCreate
from spendflow.services.approval_chains import DelegationRegistry
from spendflow.services.audit import InMemoryAuditSink
from spendflow.services.budget_ledger import BudgetLedger
from spendflow.services.master_data import InMemoryMasterData
from spendflow.services.notifications import RecordingNotificationSink
from spendflow.services.orchestrator import RequestOrchestrator
from spendflow.services.policy_catalog import PolicyCatalog


def make_stage(role: StageRole, *approvers, **conditions) -> ApprovalStage:
    """approvers are user ids, or (user_id, is_required) pairs."""
    entries = []
    for approver in approvers:
        if isinstance(approver, tuple):
            entries.append(Approver(user_id=approver[0], is_required=approver[1]))
        else:
            entries.append(Approver(user_id=approver))
    return ApprovalStage(role=role, approvers=entries, **conditions)


def make_policy(policy_id: str, stages: List[ApprovalStage], **fields) -> ApprovalPolicy:
    return ApprovalPolicy(id=policy_id, name=policy_id, stages=stages, **fields)


def default_policies() -> List[ApprovalPolicy]:
    return [
        make_policy(
            "ap-small",
            [make_stage(StageRole.OWNER, "owner-1")],
            priority=1,
            max_amount=5000,
        ),
        make_policy(
            "ap-large",
            [
                make_stage(StageRole.OWNER, "owner-1", escalation_hours=24, escalation_target_id="finance-lead"),
                make_stage(StageRole.DIRECTOR, "director-1"),
            ],
            priority=2,
        ),
        make_policy(
            "pay-default",
            [make_stage(StageRole.PAYMENT, "treasurer")],
            kind=PolicyKind.PAYMENT,
        ),
    ]


def make_budget_line(line_id: str = "bl-eng", planned: float = 10000.0, year: int = 2025, **fields) -> BudgetLine:
    return BudgetLine(id=line_id, name=line_id, year=year, planned=[planned] * 12, owner_id="budget-owner", **fields)


def make_request(request_id: str = "req-1", amount: float = 1200.0, **overrides) -> SpendRequestCreate:
    fields = {
        "id": request_id,
        "requester_id": "alice",
        "title": "Laptop refresh",
        "amount": amount,
        "category_id": "cat-hardware",
        "cost_center_id": "cc-eng",
        "in_budget": True,
        "budget_line_id": "bl-eng",
        "competence_date": date(2025, 3, 10),
    }
    fields.update(overrides)
    if not fields["in_budget"]:
        fields["budget_line_id"] = overrides.get("budget_line_id")
    return SpendRequestCreate(**fields)


class Engine:
    def __init__(
        self,
        tmp_path: Optional[Path] = None,
        policies: Optional[List[ApprovalPolicy]] = None,
        budget_lines: Optional[List[BudgetLine]] = None,
        db: Optional[SpendflowDB] = None,
        clock: Optional[FrozenClock] = None,
    ):
        db_path = str(tmp_path / "spendflow.db") if tmp_path else ":memory:"
        self.settings = EngineSettings(
            db_path=db_path,
            lock_timeout_seconds=0.05,
            lock_retry_attempts=2,
            lock_backoff_seconds=0.01,
        )
        self.db = db or SpendflowDB(db_path)
        self.db.initialize()
        self.clock = clock or FrozenClock()
        self.master_data = InMemoryMasterData(
            categories=[Category(id="cat-hardware", name="Hardware"), Category(id="cat-old", is_active=False)],
            cost_centers=[CostCenter(id="cc-eng", name="Engineering"), CostCenter(id="cc-ops", name="Operations")],
            budget_lines=budget_lines if budget_lines is not None else [make_budget_line()],
        )
        self.notifier = RecordingNotificationSink()
        self.audit = InMemoryAuditSink()
        self.delegations = DelegationRegistry()
        self.catalog = PolicyCatalog(db=self.db)
        for policy in default_policies() if policies is None else policies:
            self.catalog.upsert(policy)
        self.ledger = BudgetLedger(
            self.master_data,
            db=self.db,
            locks=KeyedLockManager(name="ledger", timeout=0.05, attempts=2, backoff=0.01),
            clock=self.clock,
            audit=self.audit,
            notifier=self.notifier,
        )
        self.orchestrator = RequestOrchestrator(
            self.catalog,
            self.ledger,
            self.master_data,
            db=self.db,
            audit=self.audit,
            notifier=self.notifier,
            delegations=self.delegations,
            clock=self.clock,
            settings=self.settings,
        )


@pytest.fixture
def engine(tmp_path: Path) -> Engine:
    return Engine(tmp_path)
