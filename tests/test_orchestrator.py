from __future__ import annotations

import threading
from datetime import date, timedelta

import pytest

from conftest import Engine, make_policy, make_request, make_stage
from spendflow.models.budgets import LedgerEntryKind
from spendflow.models.policies import StageRole
from spendflow.models.requests import RequestStatus
from spendflow.services.approval_chains import ApprovalChainInstance, ChainStatus, Decision, Delegation
from spendflow.services.audit import AuditAction
from spendflow.services.budget_ledger import LedgerOutcome
from spendflow.services.errors import (
    BusyError,
    ChainClosedError,
    MasterDataNotFoundError,
    OverBudgetJustificationError,
    PolicyNotFoundError,
    SelfApprovalError,
    ValidationError,
)
from spendflow.services.notifications import NotificationKind

PERIOD = "2025-03"


def _statuses(request):
    return [entry.status for entry in request.status_history]


def _approve_through_payment(engine, request_id="req-1", approvers=("owner-1",)):
    for approver in approvers:
        engine.orchestrator.decide(request_id, approver, Decision.APPROVE)
    engine.orchestrator.decide(request_id, "treasurer", Decision.APPROVE)
    return engine.orchestrator.get_request(request_id)


def test_small_request_goes_from_submit_to_paid(engine):
    request = engine.orchestrator.submit(make_request(amount=1200))

    assert request.status == RequestStatus.PENDING_OWNER_APPROVAL
    assert request.period == PERIOD
    assert request.approval_policy_id == "ap-small"
    assert request.payment_policy_id == "pay-default"
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 1200

    request = _approve_through_payment(engine)
    assert request.status == RequestStatus.PENDING_PAYMENT

    paid, settlement = engine.orchestrator.mark_paid("req-1", "ap-clerk", final_amount=1150, reference="WIRE-77")

    assert paid.status == RequestStatus.PAID
    assert paid.final_amount == 1150
    assert paid.payment_reference == "WIRE-77"
    assert [e.kind for e in settlement.entries] == [LedgerEntryKind.SPEND, LedgerEntryKind.RELEASE]
    usage = engine.ledger.utilization("bl-eng", PERIOD)
    assert (usage.committed, usage.spent, usage.available) == (0, 1150, 8850)
    assert _statuses(paid) == [
        RequestStatus.PENDING_VALIDATION,
        RequestStatus.PENDING_OWNER_APPROVAL,
        RequestStatus.PENDING_PAYMENT_APPROVAL,
        RequestStatus.PENDING_PAYMENT,
        RequestStatus.PAID,
    ]


def test_large_request_walks_owner_then_director(engine):
    engine.orchestrator.submit(make_request(amount=8000))

    engine.orchestrator.decide("req-1", "owner-1", Decision.APPROVE)
    assert engine.orchestrator.get_request("req-1").status == RequestStatus.PENDING_DIRECTOR_APPROVAL
    assert engine.orchestrator.get_chain_state("req-1")["awaiting"] == ["director-1"]

    engine.orchestrator.decide("req-1", "director-1", "approve")
    state = engine.orchestrator.get_chain_state("req-1")
    assert state["status"] == RequestStatus.PENDING_PAYMENT_APPROVAL.value
    assert state["active_chain"] == "payment"
    assert state["chains"]["approval"]["state"] == ChainStatus.APPROVED.value

    requested = [n.recipient_id for n in engine.notifier.of_kind(NotificationKind.APPROVAL_REQUESTED)]
    assert requested == ["owner-1", "director-1", "treasurer"]


def test_rejection_releases_the_reservation(engine):
    engine.orchestrator.submit(make_request(amount=1200))

    result = engine.orchestrator.decide("req-1", "owner-1", Decision.REJECT, comment="use the spare pool")

    assert result.state == ChainStatus.REJECTED
    request = engine.orchestrator.get_request("req-1")
    assert request.status == RequestStatus.REJECTED
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 0
    assert engine.ledger.entries_for_request("req-1")[-1].kind == LedgerEntryKind.RELEASE
    responded = engine.notifier.of_kind(NotificationKind.APPROVAL_RESPONDED)
    assert responded[-1].recipient_id == "alice"
    assert responded[-1].payload["decision"] == "reject"


def test_closed_request_refuses_further_actions(engine):
    engine.orchestrator.submit(make_request())
    engine.orchestrator.decide("req-1", "owner-1", Decision.REJECT)

    with pytest.raises(ChainClosedError):
        engine.orchestrator.decide("req-1", "owner-1", Decision.APPROVE)
    with pytest.raises(ChainClosedError):
        engine.orchestrator.cancel_request("req-1", "alice")
    with pytest.raises(ChainClosedError):
        engine.orchestrator.mark_paid("req-1", "ap-clerk")


def test_cancel_while_awaiting_payment_releases_budget(engine):
    engine.orchestrator.submit(make_request(amount=1200))
    _approve_through_payment(engine)

    request = engine.orchestrator.cancel_request("req-1", "alice", reason="vendor went bust")

    assert request.status == RequestStatus.CANCELLED
    assert request.status_history[-1].reason == "vendor went bust"
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 0


def test_cancel_during_approval_closes_the_chain(engine):
    engine.orchestrator.submit(make_request())

    request = engine.orchestrator.cancel_request("req-1", "alice", reason="duplicate")

    assert request.status == RequestStatus.CANCELLED
    assert engine.orchestrator.get_chain_state("req-1")["state"] == ChainStatus.CANCELLED.value
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 0


def _assert_untouched(engine):
    state = engine.orchestrator.get_chain_state("req-1")
    assert (state["state"], state["awaiting"]) == (ChainStatus.OPEN.value, ["owner-1"])
    assert engine.db.get_chains("req-1")["approval"]["state"] == ChainStatus.OPEN.value
    assert engine.orchestrator.get_request("req-1").status == RequestStatus.PENDING_OWNER_APPROVAL
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 1200


def test_busy_ledger_during_reject_leaves_everything_retryable(engine):
    engine.orchestrator.submit(make_request(amount=1200))

    with engine.ledger.locks.hold(("bl-eng", PERIOD)):
        with pytest.raises(BusyError):
            engine.orchestrator.decide("req-1", "owner-1", Decision.REJECT, comment="not now")
    _assert_untouched(engine)

    result = engine.orchestrator.decide("req-1", "owner-1", Decision.REJECT, comment="not now")

    assert result.state == ChainStatus.REJECTED
    assert engine.orchestrator.get_request("req-1").status == RequestStatus.REJECTED
    assert engine.db.get_chains("req-1")["approval"]["state"] == ChainStatus.REJECTED.value
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 0


def test_busy_ledger_during_cancel_leaves_everything_retryable(engine):
    engine.orchestrator.submit(make_request(amount=1200))

    with engine.ledger.locks.hold(("bl-eng", PERIOD)):
        with pytest.raises(BusyError):
            engine.orchestrator.cancel_request("req-1", "alice", reason="duplicate")
    _assert_untouched(engine)

    request = engine.orchestrator.cancel_request("req-1", "alice", reason="duplicate")

    assert request.status == RequestStatus.CANCELLED
    assert engine.orchestrator.get_chain_state("req-1")["state"] == ChainStatus.CANCELLED.value
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 0


def test_request_cannot_be_submitted_twice(engine):
    engine.orchestrator.submit(make_request())

    with pytest.raises(ValidationError):
        engine.orchestrator.submit(make_request())
    assert len(engine.ledger.entries("bl-eng", PERIOD)) == 1


def test_missing_policy_blocks_submission_and_leaves_draft(tmp_path):
    engine = Engine(tmp_path, policies=[
        make_policy("ap-small", [make_stage(StageRole.OWNER, "owner-1")], max_amount=5000),
        make_policy("pay-default", [make_stage(StageRole.PAYMENT, "treasurer")], kind="payment"),
    ])

    with pytest.raises(PolicyNotFoundError):
        engine.orchestrator.submit(make_request(amount=8000))

    assert engine.orchestrator.get_request("req-1").status == RequestStatus.DRAFT
    assert engine.ledger.entries("bl-eng", PERIOD) == []
    with pytest.raises(ValidationError):
        engine.orchestrator.cancel_request("req-1", "alice")


def test_failure_after_reservation_rolls_back(engine, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("chain store unavailable")

    monkeypatch.setattr(ApprovalChainInstance, "start", boom)
    with pytest.raises(RuntimeError):
        engine.orchestrator.submit(make_request(amount=1200))

    assert engine.orchestrator.get_request("req-1").status == RequestStatus.DRAFT
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 0
    assert engine.orchestrator.get_chain_state("req-1")["active_chain"] is None

    monkeypatch.undo()
    request = engine.orchestrator.submit(make_request(amount=1200))

    assert request.status == RequestStatus.PENDING_OWNER_APPROVAL
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 1200


def test_rollback_drops_the_stored_chain(tmp_path, monkeypatch):
    engine = Engine(tmp_path)

    def boom(*args, **kwargs):
        raise RuntimeError("scheduler down")

    monkeypatch.setattr(engine.orchestrator.escalations, "schedule", boom)
    with pytest.raises(RuntimeError):
        engine.orchestrator.submit(make_request(amount=1200))

    assert engine.db.get_chains("req-1") == {}
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 0

    reloaded = Engine(tmp_path, db=engine.db)
    reloaded.orchestrator.restore()
    assert reloaded.orchestrator.get_request("req-1").status == RequestStatus.DRAFT
    assert reloaded.orchestrator.get_chain_state("req-1")["active_chain"] is None


class _BrokenAuditSink:
    def record(self, *args, **kwargs):
        raise RuntimeError("audit down")


def test_failing_audit_sink_does_not_block_submission(engine):
    engine.ledger.audit = _BrokenAuditSink()
    engine.orchestrator.audit = _BrokenAuditSink()

    request = engine.orchestrator.submit(make_request(amount=1200))

    assert request.status == RequestStatus.PENDING_OWNER_APPROVAL
    assert engine.ledger.utilization("bl-eng", PERIOD).committed == 1200
    assert engine.orchestrator.get_chain_state("req-1")["awaiting"] == ["owner-1"]


def test_failed_reservation_leaves_no_chain(engine):
    with engine.ledger.locks.hold(("bl-eng", PERIOD)):
        with pytest.raises(BusyError):
            engine.orchestrator.submit(make_request(amount=1200))

    assert engine.orchestrator.get_request("req-1").status == RequestStatus.DRAFT
    assert engine.ledger.entries("bl-eng", PERIOD) == []
    assert engine.db.get_chains("req-1") == {}


def test_over_budget_request_needs_a_reason(engine):
    with pytest.raises(OverBudgetJustificationError):
        engine.orchestrator.submit(make_request(amount=12000))
    assert engine.orchestrator.get_request("req-1").status == RequestStatus.DRAFT

    request = engine.orchestrator.submit(
        make_request(amount=12000, over_budget_reason="Server failure, replacement cannot wait")
    )

    assert request.is_over_budget
    usage = engine.ledger.utilization("bl-eng", PERIOD)
    assert usage.available == -2000
    assert engine.orchestrator.approval_summary()["over_budget"] == 1


def test_out_of_budget_request_never_touches_the_ledger(engine):
    engine.orchestrator.submit(make_request(in_budget=False, competence_date=None))
    _approve_through_payment(engine)

    paid, settlement = engine.orchestrator.mark_paid("req-1", "ap-clerk")

    assert paid.status == RequestStatus.PAID
    assert paid.final_amount == 1200
    assert settlement is None
    assert engine.ledger.entries("bl-eng", PERIOD) == []


def test_in_budget_request_needs_a_period(engine):
    with pytest.raises(ValidationError):
        engine.orchestrator.submit(make_request(competence_date=None))


def test_invoice_date_sets_the_period_when_competence_is_missing(engine):
    request = engine.orchestrator.submit(make_request(competence_date=None, invoice_date=date(2025, 5, 2)))

    assert request.period == "2025-05"
    assert engine.ledger.utilization("bl-eng", "2025-05").committed == 1200


def test_master_data_is_checked_before_anything_is_reserved(engine):
    with pytest.raises(ValidationError):
        engine.orchestrator.submit(make_request("req-1", category_id="cat-old"))
    with pytest.raises(MasterDataNotFoundError):
        engine.orchestrator.submit(make_request("req-2", cost_center_id="cc-none"))
    with pytest.raises(MasterDataNotFoundError):
        engine.orchestrator.submit(make_request("req-3", budget_line_id="bl-none"))

    assert engine.ledger.entries("bl-eng", PERIOD) == []


def test_requester_cannot_approve_own_request(engine):
    engine.orchestrator.submit(make_request(requester_id="owner-1"))

    with pytest.raises(SelfApprovalError):
        engine.orchestrator.decide("req-1", "owner-1", Decision.APPROVE)
    assert engine.orchestrator.get_request("req-1").status == RequestStatus.PENDING_OWNER_APPROVAL


def test_delegate_decides_in_the_principal_slot(engine):
    engine.delegations.set_delegation(Delegation(from_user_id="owner-1", to_user_id="bob"))
    engine.orchestrator.submit(make_request())

    requested = engine.notifier.of_kind(NotificationKind.APPROVAL_REQUESTED)
    assert requested[0].recipient_id == "bob"
    assert requested[0].payload["on_behalf_of"] == "owner-1"
    assert [r.id for r in engine.orchestrator.list_pending_for_approver("bob")] == ["req-1"]

    result = engine.orchestrator.decide("req-1", "bob", Decision.APPROVE)

    assert result.decision.approver_id == "owner-1"
    assert result.decision.actor == "bob"
    assert engine.orchestrator.get_request("req-1").status == RequestStatus.PENDING_PAYMENT_APPROVAL


def test_overdue_stage_escalates_and_can_still_be_approved(engine):
    engine.orchestrator.submit(make_request(amount=8000))
    assert engine.orchestrator.escalations.fire_due() == []
    assert engine.orchestrator.escalations.deadline_for("req-1") == engine.clock.now() + timedelta(hours=24)

    engine.clock.advance(hours=25)
    fired = engine.orchestrator.escalations.fire_due()

    assert fired == ["req-1"]
    state = engine.orchestrator.get_chain_state("req-1")
    assert state["state"] == ChainStatus.ESCALATED.value
    request = engine.orchestrator.get_request("req-1")
    assert request.status == RequestStatus.PENDING_OWNER_APPROVAL
    assert request.status_history[-1].reason == "escalated"
    escalations = engine.notifier.of_kind(NotificationKind.ESCALATION)
    assert [n.recipient_id for n in escalations] == ["finance-lead"]
    assert escalations[0].payload["awaiting"] == ["owner-1"]

    engine.orchestrator.decide("req-1", "owner-1", Decision.APPROVE)
    assert engine.orchestrator.get_request("req-1").status == RequestStatus.PENDING_DIRECTOR_APPROVAL
    assert engine.orchestrator.escalations.pending() == {}


def test_busy_request_lock_surfaces_busy(engine):
    engine.orchestrator.submit(make_request())
    engine.orchestrator.submit(make_request("req-2"))
    holding = threading.Event()
    done = threading.Event()

    def hold_lock():
        with engine.orchestrator.locks.hold("req-1"):
            holding.set()
            done.wait(timeout=5)

    worker = threading.Thread(target=hold_lock)
    worker.start()
    try:
        assert holding.wait(timeout=5)
        with pytest.raises(BusyError):
            engine.orchestrator.decide("req-1", "owner-1", Decision.APPROVE)
        engine.orchestrator.decide("req-2", "owner-1", Decision.APPROVE)
    finally:
        done.set()
        worker.join()

    assert engine.orchestrator.get_request("req-1").status == RequestStatus.PENDING_OWNER_APPROVAL
    assert engine.orchestrator.get_request("req-2").status == RequestStatus.PENDING_PAYMENT_APPROVAL


def test_state_is_restored_from_storage(tmp_path):
    first = Engine(tmp_path)
    first.orchestrator.submit(make_request(amount=8000))
    first.orchestrator.decide("req-1", "owner-1", Decision.APPROVE)

    second = Engine(tmp_path, db=first.db)
    second.ledger.replay()
    assert second.orchestrator.restore() == 1

    restored = second.orchestrator.get_request("req-1")
    assert restored.status == RequestStatus.PENDING_DIRECTOR_APPROVAL
    assert second.orchestrator.get_chain_state("req-1")["awaiting"] == ["director-1"]

    second.orchestrator.decide("req-1", "director-1", Decision.APPROVE)
    second.orchestrator.decide("req-1", "treasurer", Decision.APPROVE)
    _, settlement = second.orchestrator.mark_paid("req-1", "ap-clerk")

    assert settlement.outcome == LedgerOutcome.APPLIED
    assert second.ledger.utilization("bl-eng", PERIOD).spent == 8000


def test_audit_trail_covers_the_request_lifecycle(engine):
    engine.orchestrator.submit(make_request())
    _approve_through_payment(engine)
    engine.orchestrator.mark_paid("req-1", "ap-clerk")

    actions = engine.audit.actions("req-1")
    for action in (
        AuditAction.REQUEST_SUBMIT,
        AuditAction.APPROVAL_POLICY_APPLY,
        AuditAction.REQUEST_APPROVE,
        AuditAction.CHAIN_TRANSITION,
        AuditAction.REQUEST_STATUS,
        AuditAction.REQUEST_PAY,
    ):
        assert action.value in actions
    assert engine.audit.actions("bl-eng") == [AuditAction.BUDGET_COMMIT.value, AuditAction.BUDGET_SPEND.value]


def test_summary_and_listing(engine):
    engine.orchestrator.submit(make_request("req-1"))
    engine.orchestrator.submit(make_request("req-2", amount=300))
    engine.orchestrator.decide("req-2", "owner-1", Decision.REJECT)

    summary = engine.orchestrator.approval_summary()

    assert summary["total"] == 2
    assert summary["pending"] == 1
    assert summary["by_status"]["rejected"] == 1
    assert [r.id for r in engine.orchestrator.list_requests(RequestStatus.REJECTED)] == ["req-2"]
    assert [r.id for r in engine.orchestrator.list_pending_for_approver("owner-1")] == ["req-1"]
    assert engine.orchestrator.get_utilization("bl-eng", PERIOD).committed == 1200
