"""
Request Orchestrator

Owns spend requests once submitted and sequences the engines:

    submit -> resolve policies -> reserve budget -> start approval chain
    approval chain approved -> payment chain -> pending_payment -> paid (settle)
    rejected / cancelled -> release

Every request is a unit of concurrency: submit, decide, cancel, mark_paid and
escalation all run under one bounded lock per request id. Requests on
different ids never share a lock.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from spendflow.core.clock import SystemClock
from spendflow.core.config import EngineSettings
from spendflow.core.database import SpendflowDB
from spendflow.core.locks import KeyedLockManager
from spendflow.models.budgets import LedgerEntry, Utilization
from spendflow.models.policies import ApprovalPolicy, PolicyKind
from spendflow.models.requests import (
    ROLE_STATUS,
    RequestStatus,
    SpendRequest,
    SpendRequestCreate,
    StatusHistoryEntry,
    can_move,
    derive_period,
    is_pending,
)
from spendflow.services import metrics
from spendflow.services.approval_chains import (
    ApprovalChainInstance,
    ChainKind,
    ChainResult,
    ChainStatus,
    ChainTransition,
    Decision,
    DelegationRegistry,
)
from spendflow.services.audit import AuditAction
from spendflow.services.budget_ledger import BudgetLedger, LedgerResult
from spendflow.services.errors import (
    ChainClosedError,
    RequestNotFoundError,
    ValidationError,
)
from spendflow.services.escalation import EscalationScheduler
from spendflow.services.logging import log_chain_transition, log_error
from spendflow.services.notifications import NotificationKind
from spendflow.services.policy_catalog import PolicyCatalog

logger = logging.getLogger(__name__)

REQUEST_ENTITY = "spend_request"


class RequestOrchestrator:
    def __init__(
        self,
        catalog: PolicyCatalog,
        ledger: BudgetLedger,
        master_data,
        db: Optional[SpendflowDB] = None,
        audit=None,
        notifier=None,
        delegations: Optional[DelegationRegistry] = None,
        clock=None,
        locks: Optional[KeyedLockManager] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or EngineSettings()
        self.catalog = catalog
        self.ledger = ledger
        self.master_data = master_data
        self.db = db
        self.audit = audit
        self.notifier = notifier
        self.delegations = delegations or DelegationRegistry()
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLockManager(
            name="requests",
            timeout=self.settings.lock_timeout_seconds,
            attempts=self.settings.lock_retry_attempts,
            backoff=self.settings.lock_backoff_seconds,
        )
        self.escalations = EscalationScheduler(
            self.handle_escalation,
            clock=self.clock,
            timers_enabled=self.settings.escalation_timers_enabled,
        )
        self._requests: Dict[str, SpendRequest] = {}
        self._chains: Dict[str, Dict[ChainKind, ApprovalChainInstance]] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def restore(self) -> int:
        """Load requests and chains from storage and re-arm escalation deadlines."""
        if self.db is None:
            return 0
        for document in self.db.list_requests():
            request = SpendRequest.model_validate(document)
            self._requests[request.id] = request
            chains = {
                ChainKind(kind): ApprovalChainInstance.from_dict(chain_doc)
                for kind, chain_doc in self.db.get_chains(request.id).items()
            }
            if chains:
                self._chains[request.id] = chains
            active = self._active_chain(request.id)
            if active is not None and active.state == ChainStatus.OPEN:
                self.escalations.schedule(request.id, active.stage_deadline)
        logger.info(f"Restored {len(self._requests)} spend requests")
        return len(self._requests)

    def _save_request(self, request: SpendRequest) -> None:
        self._requests[request.id] = request
        if self.db is not None:
            self.db.save_request(request.id, request.status.value, request.model_dump(mode="json"))

    def _save_chain(self, chain: ApprovalChainInstance) -> None:
        self._chains.setdefault(chain.request_id, {})[chain.chain_kind] = chain
        if self.db is not None:
            self.db.save_chain(chain.request_id, chain.chain_kind.value, chain.state.value, chain.to_dict())

    # ------------------------------------------------------------------
    # Sinks (fire-and-forget)
    # ------------------------------------------------------------------

    def _audit(self, action: AuditAction, entity_id: str, before=None, after=None, actor: Optional[str] = None) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(action, REQUEST_ENTITY, entity_id, before=before, after=after, actor=actor)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Audit sink failed for {action.value} on {entity_id}: {exc}")

    def _notify(self, recipient_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        if self.notifier is None or not recipient_id:
            return
        try:
            self.notifier.notify(recipient_id, kind, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Notification {kind.value} to {recipient_id} failed: {exc}")

    def _request_approvals(self, request: SpendRequest, chain: ApprovalChainInstance) -> None:
        now = self.clock.now()
        stage = chain.current_stage
        for approver_id in chain.awaiting():
            delegate = self.delegations.get_delegate(approver_id, now, request.amount)
            self._notify(delegate or approver_id, NotificationKind.APPROVAL_REQUESTED, {
                "request_id": request.id,
                "title": request.title,
                "amount": request.amount,
                "chain_kind": chain.chain_kind.value,
                "stage_index": chain.stage_index,
                "role": stage.role.value,
                "on_behalf_of": approver_id if delegate else None,
                "deadline": chain.stage_deadline.isoformat() if chain.stage_deadline else None,
            })

    # ------------------------------------------------------------------
    # Status bookkeeping
    # ------------------------------------------------------------------

    def _set_status(self, request: SpendRequest, status: RequestStatus, actor: str, reason: Optional[str] = None) -> SpendRequest:
        if not can_move(request.status, status):
            raise ValidationError(
                f"Request {request.id} cannot move from {request.status.value} to {status.value}",
                context={"request_id": request.id},
            )
        entry = StatusHistoryEntry(status=status, actor=actor, timestamp=self.clock.now(), reason=reason)
        before = request.status
        request = request.model_copy(update={
            "status": status,
            "status_history": [*request.status_history, entry],
        })
        if before != status:
            self._audit(
                AuditAction.REQUEST_STATUS, request.id,
                before={"status": before.value}, after={"status": status.value, "reason": reason}, actor=actor,
            )
        return request

    def _get(self, request_id: str) -> SpendRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    def _active_chain(self, request_id: str) -> Optional[ApprovalChainInstance]:
        """Payment chain once started, otherwise the approval chain."""
        chains = self._chains.get(request_id) or {}
        return chains.get(ChainKind.PAYMENT) or chains.get(ChainKind.APPROVAL)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _validate_master_data(self, request: SpendRequest) -> Optional[str]:
        """Look up category, cost center and budget line. Returns the period."""
        category = self.master_data.get_category(request.category_id)
        if not category.is_active:
            raise ValidationError(f"Category '{category.id}' is inactive", context={"category_id": category.id})
        cost_center = self.master_data.get_cost_center(request.cost_center_id)
        if not cost_center.is_active:
            raise ValidationError(
                f"Cost center '{cost_center.id}' is inactive", context={"cost_center_id": cost_center.id},
            )
        period = derive_period(request.competence_date, request.invoice_date)
        if not request.in_budget:
            return period
        if period is None:
            raise ValidationError(
                "In-budget requests need a competence date or an invoice date",
                context={"request_id": request.id},
            )
        budget_line = self.master_data.get_budget_line(request.budget_line_id)
        try:
            budget_line.planned_for(period)
        except ValueError as exc:
            raise ValidationError(str(exc), context={"budget_line_id": budget_line.id, "period": period})
        return period

    def submit(self, payload: Union[SpendRequestCreate, SpendRequest], actor: Optional[str] = None) -> SpendRequest:
        """
        Resolve policies, reserve budget and start the approval chain.

        Policy resolution and the reservation either both hold or neither
        does: any failure after the reservation releases it again and the
        request stays in draft.
        """
        actor = actor or payload.requester_id
        with self.locks.hold(payload.id):
            existing = self._requests.get(payload.id)
            if existing is not None and existing.status != RequestStatus.DRAFT:
                raise ValidationError(
                    f"Request {payload.id} was already submitted ({existing.status.value})",
                    context={"request_id": payload.id, "status": existing.status.value},
                )
            draft = SpendRequest.model_validate(payload.model_dump(include=set(SpendRequestCreate.model_fields)))
            self._save_request(draft)

            period = self._validate_master_data(draft)
            approval_policy = self.catalog.resolve(draft.amount, draft.category_id, draft.cost_center_id, PolicyKind.APPROVAL)
            payment_policy = self.catalog.resolve(draft.amount, draft.category_id, draft.cost_center_id, PolicyKind.PAYMENT)

            reservation: Optional[LedgerResult] = None
            try:
                if draft.in_budget:
                    reservation = self.ledger.reserve(
                        draft.budget_line_id, period, draft.amount, draft.id,
                        over_budget_reason=draft.over_budget_reason, actor=actor,
                    )
                request, chain = self._open_request(draft, period, approval_policy, payment_policy, reservation, actor)
            except Exception:
                self._roll_back_submission(draft, reservation, actor)
                raise

        metrics.record_chain_transition(chain.chain_kind.value, chain.state.value)
        self._audit(
            AuditAction.APPROVAL_POLICY_APPLY, request.id,
            after={"approval_policy": approval_policy.id, "approval_policy_version": approval_policy.version,
                   "payment_policy": payment_policy.id, "payment_policy_version": payment_policy.version},
            actor=actor,
        )
        self._request_approvals(request, chain)
        logger.info(
            f"Submitted request {request.id} ({request.amount:,.2f}) under policy {approval_policy.id}; "
            f"status {request.status.value}"
        )
        return request

    def _roll_back_submission(self, draft: SpendRequest, reservation: Optional[LedgerResult], actor: str) -> None:
        """Put a failed submission back to draft with no reservation and no chain."""
        if reservation is not None:
            logger.warning(f"Submission of {draft.id} failed after reserving budget; releasing")
            try:
                self.ledger.release(draft.id, reason="submission_rolled_back", actor=actor)
            except Exception as exc:  # noqa: BLE001
                log_error(
                    "submission_release_failed",
                    f"Reservation for {draft.id} still held after a failed submission",
                    {"request_id": draft.id},
                    exc,
                )
        self._chains.pop(draft.id, None)
        if self.db is not None:
            self.db.delete_chains(draft.id)
        self.escalations.cancel(draft.id)
        self._save_request(draft)

    def _open_request(
        self,
        draft: SpendRequest,
        period: Optional[str],
        approval_policy: ApprovalPolicy,
        payment_policy: ApprovalPolicy,
        reservation: Optional[LedgerResult],
        actor: str,
    ) -> Tuple[SpendRequest, ApprovalChainInstance]:
        now = self.clock.now()
        request = draft.model_copy(update={
            "period": period,
            "approval_policy_id": approval_policy.id,
            "payment_policy_id": payment_policy.id,
            "payment_policy": payment_policy,
            "is_over_budget": bool(reservation and reservation.utilization.is_over_budget),
            "submitted_at": now,
        })
        request = self._set_status(request, RequestStatus.PENDING_VALIDATION, actor)
        chain = ApprovalChainInstance.start(
            request.id, ChainKind.APPROVAL, approval_policy, request.requester_id, request.amount, now,
        )
        request = self._set_status(request, ROLE_STATUS[chain.current_stage.role], actor, f"policy {approval_policy.id}")
        self._save_chain(chain)
        self._save_request(request)
        self.escalations.schedule(request.id, chain.stage_deadline)
        self._audit(
            AuditAction.REQUEST_SUBMIT, request.id,
            before={"status": RequestStatus.DRAFT.value},
            after={"status": request.status.value, "period": period, "is_over_budget": request.is_over_budget},
            actor=actor,
        )
        return request, chain

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _resolve_slot(self, chain: ApprovalChainInstance, user_id: str, amount: float) -> Tuple[str, str]:
        """(slot, actor): a delegate decides in their principal's slot."""
        if chain.is_terminal or chain.current_stage.approver(user_id) is not None:
            return user_id, user_id
        principals = self.delegations.principals_for(user_id, self.clock.now(), amount)
        in_stage = [p for p in principals if chain.current_stage.approver(p) is not None]
        if not in_stage:
            return user_id, user_id
        awaiting = set(chain.awaiting())
        in_stage.sort(key=lambda p: (p not in awaiting, p))
        return in_stage[0], user_id

    def decide(
        self,
        request_id: str,
        approver_id: str,
        decision: Union[Decision, str],
        comment: Optional[str] = None,
    ) -> ChainResult:
        decision = Decision(decision)
        with self.locks.hold(request_id):
            request = self._get(request_id)
            chain = self._active_chain(request_id)
            if chain is None:
                raise ValidationError(
                    f"Request {request_id} has no approval chain ({request.status.value})",
                    context={"request_id": request_id},
                )
            slot, actor = self._resolve_slot(chain, approver_id, request.amount)
            chain = chain.snapshot()
            result = chain.decide(slot, decision, self.clock.now(), comment=comment, actor=actor)
            request = self._commit(request, chain, result.transition)

        self._audit(
            AuditAction.REQUEST_APPROVE if decision == Decision.APPROVE else AuditAction.REQUEST_REJECT,
            request_id,
            after=result.to_dict(),
            actor=actor,
        )
        self._notify(request.requester_id, NotificationKind.APPROVAL_RESPONDED, {
            "request_id": request_id,
            "decision": decision.value,
            "actor": actor,
            "on_behalf_of": slot if slot != actor else None,
            "chain_kind": chain.chain_kind.value,
            "stage_index": result.decision.stage_index,
            "comment": comment,
            "status": request.status.value,
        })
        advanced = result.transition is not None and result.transition.to_state == ChainStatus.OPEN
        payment_started = result.state == ChainStatus.APPROVED and chain.chain_kind == ChainKind.APPROVAL
        # sequential stages hand over to the next approver without a transition
        next_in_line = (
            result.transition is None
            and decision == Decision.APPROVE
            and not chain.current_stage.allow_parallel_approval
        )
        if advanced or payment_started or next_in_line:
            self._request_approvals(request, self._active_chain(request_id))
        return result

    def _commit(
        self,
        request: SpendRequest,
        chain: ApprovalChainInstance,
        transition: Optional[ChainTransition],
    ) -> SpendRequest:
        """
        Store a chain snapshot the caller has applied an operation to.

        The transition's side effects (ledger release, payment chain, request
        status) run first. If any of them raises, nothing is stored and the
        chain, request and ledger stay as they were, so the caller can retry.
        """
        if transition is not None:
            request = self._on_transition(request, chain, transition)
        self._save_chain(chain)
        if transition is not None:
            self._save_request(request)
            self._reschedule(request.id)
        return request

    def _reschedule(self, request_id: str) -> None:
        active = self._active_chain(request_id)
        if active is not None and active.state == ChainStatus.OPEN:
            self.escalations.schedule(request_id, active.stage_deadline)
        else:
            self.escalations.cancel(request_id)

    def _on_transition(
        self,
        request: SpendRequest,
        chain: ApprovalChainInstance,
        transition: ChainTransition,
    ) -> SpendRequest:
        """Map a chain transition onto the request. Caller holds the request lock and stores the result."""
        to_state = transition.to_state
        if to_state in (ChainStatus.REJECTED, ChainStatus.CANCELLED):
            self.ledger.release(request.id, reason=to_state.value, actor=transition.actor)
            status = RequestStatus.REJECTED if to_state == ChainStatus.REJECTED else RequestStatus.CANCELLED
            request = self._set_status(request, status, transition.actor, transition.reason)
        elif to_state == ChainStatus.OPEN:
            request = self._set_status(
                request, ROLE_STATUS[chain.current_stage.role], transition.actor, f"stage {chain.stage_index}",
            )
        elif to_state == ChainStatus.ESCALATED:
            request = self._set_status(request, request.status, transition.actor, "escalated")
        elif chain.chain_kind == ChainKind.APPROVAL:
            request = self._start_payment_chain(request, transition.actor)
        else:
            request = self._set_status(request, RequestStatus.PENDING_PAYMENT, transition.actor, "payment approved")

        log_chain_transition(
            request.id, chain.chain_kind.value, transition.from_state.value, to_state.value,
            transition.to_stage, transition.actor,
        )
        metrics.record_chain_transition(chain.chain_kind.value, to_state.value)
        if self.audit is not None:
            try:
                self.audit.record(
                    AuditAction.CHAIN_TRANSITION, f"{chain.chain_kind.value}_chain", request.id,
                    before={"state": transition.from_state.value, "stage_index": transition.from_stage},
                    after={"state": to_state.value, "stage_index": transition.to_stage,
                           "reason": transition.reason},
                    actor=transition.actor,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Audit sink failed for chain transition on {request.id}: {exc}")
        return request

    def _start_payment_chain(self, request: SpendRequest, actor: str) -> SpendRequest:
        policy = request.payment_policy
        if policy is None:
            policy = self.catalog.resolve(request.amount, request.category_id, request.cost_center_id, PolicyKind.PAYMENT)
        chain = ApprovalChainInstance.start(
            request.id, ChainKind.PAYMENT, policy, request.requester_id, request.amount, self.clock.now(),
        )
        request = self._set_status(request, RequestStatus.PENDING_PAYMENT_APPROVAL, actor, f"payment policy {policy.id}")
        self._save_chain(chain)
        metrics.record_chain_transition(chain.chain_kind.value, chain.state.value)
        return request

    # ------------------------------------------------------------------
    # Escalation, cancellation, payment
    # ------------------------------------------------------------------

    def handle_escalation(self, request_id: str, now=None) -> ChainResult:
        """Timer callback. A no-op unless the open stage is past its deadline."""
        now = now or self.clock.now()
        with self.locks.hold(request_id):
            request = self._get(request_id)
            chain = self._active_chain(request_id)
            if chain is None:
                raise ValidationError(f"Request {request_id} has no approval chain")
            chain = chain.snapshot()
            result = chain.escalate_if_due(now)
            if result.transition is None:
                return result
            request = self._commit(request, chain, result.transition)

        stage = chain.current_stage
        target = stage.escalation_target_id or self.settings.escalation_target_id
        self._audit(
            AuditAction.APPROVAL_ESCALATE, request_id,
            after={"stage_index": chain.stage_index, "target": target, "awaiting": chain.awaiting()},
        )
        self._notify(target, NotificationKind.ESCALATION, {
            "request_id": request_id,
            "title": request.title,
            "amount": request.amount,
            "chain_kind": chain.chain_kind.value,
            "stage_index": chain.stage_index,
            "role": stage.role.value,
            "awaiting": chain.awaiting(),
            "escalated_at": result.transition.timestamp.isoformat(),
        })
        logger.warning(f"Request {request_id} escalated to {target} at stage {chain.stage_index}")
        return result

    def cancel_request(self, request_id: str, actor: str, reason: Optional[str] = None) -> SpendRequest:
        with self.locks.hold(request_id):
            request = self._get(request_id)
            if request.is_terminal:
                raise ChainClosedError(request_id, request.status.value)
            if not is_pending(request.status):
                raise ValidationError(
                    f"Only submitted requests can be cancelled ({request.status.value})",
                    context={"request_id": request_id},
                )
            chain = self._active_chain(request_id)
            if chain is not None and not chain.is_terminal:
                chain = chain.snapshot()
                result = chain.cancel(actor, self.clock.now(), reason)
                request = self._commit(request, chain, result.transition)
            else:
                # pending_payment: both chains are closed, only the budget is held
                self.ledger.release(request_id, reason="cancelled", actor=actor)
                request = self._set_status(request, RequestStatus.CANCELLED, actor, reason)
                self._save_request(request)

        self._audit(AuditAction.REQUEST_CANCEL, request_id, after={"status": request.status.value, "reason": reason}, actor=actor)
        logger.info(f"Request {request_id} cancelled by {actor}")
        return request

    def mark_paid(
        self,
        request_id: str,
        actor: str,
        final_amount: Optional[float] = None,
        reference: Optional[str] = None,
    ) -> Tuple[SpendRequest, Optional[LedgerResult]]:
        """Settle the reservation at the final amount and close the request as paid."""
        with self.locks.hold(request_id):
            request = self._get(request_id)
            if request.is_terminal:
                raise ChainClosedError(request_id, request.status.value)
            if request.status != RequestStatus.PENDING_PAYMENT:
                raise ValidationError(
                    f"Request {request_id} is not awaiting payment ({request.status.value})",
                    context={"request_id": request_id},
                )
            amount = request.amount if final_amount is None else final_amount
            if amount <= 0:
                raise ValidationError("Final amount must be positive", context={"final_amount": amount})
            settlement = None
            if request.in_budget:
                settlement = self.ledger.settle(request_id, amount, actor=actor)
            request = request.model_copy(update={"final_amount": round(float(amount), 2), "payment_reference": reference})
            request = self._set_status(request, RequestStatus.PAID, actor, reference)
            self._save_request(request)

        self._audit(
            AuditAction.REQUEST_PAY, request_id,
            after={"final_amount": request.final_amount, "reference": reference},
            actor=actor,
        )
        logger.info(f"Request {request_id} paid ({request.final_amount:,.2f})")
        return request, settlement

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> SpendRequest:
        return self._get(request_id)

    def get_chain_state(self, request_id: str) -> Dict[str, Any]:
        request = self._get(request_id)
        chains = self._chains.get(request_id) or {}
        active = self._active_chain(request_id)
        return {
            "request_id": request_id,
            "status": request.status.value,
            "active_chain": active.chain_kind.value if active else None,
            "state": active.state.value if active else None,
            "stage_index": active.stage_index if active else None,
            "awaiting": active.awaiting() if active else [],
            "escalation_due_at": (
                active.stage_deadline.isoformat() if active and active.stage_deadline else None
            ),
            "chains": {kind.value: chain.to_dict() for kind, chain in chains.items()},
        }

    def list_pending_for_approver(self, user_id: str) -> List[SpendRequest]:
        """Requests currently waiting on user_id, directly or as a delegate."""
        now = self.clock.now()
        pending = []
        for request_id, request in sorted(self._requests.items()):
            chain = self._active_chain(request_id)
            if chain is None or chain.is_terminal:
                continue
            awaiting = chain.awaiting()
            principals = self.delegations.principals_for(user_id, now, request.amount)
            if user_id in awaiting or any(p in awaiting for p in principals):
                pending.append(request)
        return pending

    def list_requests(self, status: Optional[RequestStatus] = None) -> List[SpendRequest]:
        requests = sorted(self._requests.values(), key=lambda r: r.id)
        if status is not None:
            requests = [r for r in requests if r.status == status]
        return requests

    def approval_summary(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {status.value: 0 for status in RequestStatus}
        over_budget = 0
        for request in self._requests.values():
            counts[request.status.value] += 1
            if request.is_over_budget:
                over_budget += 1
        pending = sum(count for status, count in counts.items() if status.startswith("pending_"))
        return {
            "total": len(self._requests),
            "pending": pending,
            "over_budget": over_budget,
            "by_status": counts,
        }

    def get_utilization(self, budget_line_id: str, period: str) -> Utilization:
        return self.ledger.utilization(budget_line_id, period)

    def ledger_entries(self, budget_line_id: str, period: str) -> List[LedgerEntry]:
        return self.ledger.entries(budget_line_id, period)
