"""
Multi-Stage Approval Chain

One chain per request and chain kind (approval, payment), built from a frozen
policy snapshot:
- Open(i): stage i waits for its approvers
- Escalated(i): stage i missed its deadline; behaves like Open(i)
- Approved / Rejected / Cancelled: terminal, no further decisions

Stage satisfaction:
- requires_all_approvers: every approver approved
- otherwise: every required approver approved (optional approvers ignored)

A reject from a blocking approver ends the whole chain. Earlier stages are
never re-evaluated.

The chain is plain state. Callers own locking, persistence and side effects.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from spendflow.models.policies import ApprovalPolicy, ApprovalStage, Approver
from spendflow.services.errors import (
    ChainClosedError,
    OutOfTurnError,
    SelfApprovalError,
    StageClosedError,
    UnknownApproverError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class ChainStatus(str, Enum):
    OPEN = "open"
    ESCALATED = "escalated"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ChainKind(str, Enum):
    APPROVAL = "approval"
    PAYMENT = "payment"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


TERMINAL_STATES = {ChainStatus.APPROVED, ChainStatus.REJECTED, ChainStatus.CANCELLED}

VALID_TRANSITIONS: Dict[ChainStatus, set] = {
    ChainStatus.OPEN: {ChainStatus.OPEN, ChainStatus.ESCALATED, ChainStatus.APPROVED, ChainStatus.REJECTED, ChainStatus.CANCELLED},
    ChainStatus.ESCALATED: {ChainStatus.OPEN, ChainStatus.APPROVED, ChainStatus.REJECTED, ChainStatus.CANCELLED},
    ChainStatus.APPROVED: set(),
    ChainStatus.REJECTED: set(),
    ChainStatus.CANCELLED: set(),
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class StageDecision:
    """Decision recorded in an approver's slot. actor differs when delegated."""
    stage_index: int
    approver_id: str
    decision: Decision
    actor: str
    timestamp: datetime
    comment: Optional[str] = None

    @property
    def delegated(self) -> bool:
        return self.actor != self.approver_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_index": self.stage_index,
            "approver_id": self.approver_id,
            "decision": self.decision.value,
            "actor": self.actor,
            "timestamp": _iso(self.timestamp),
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageDecision":
        return cls(
            stage_index=int(data["stage_index"]),
            approver_id=data["approver_id"],
            decision=Decision(data["decision"]),
            actor=data["actor"],
            timestamp=_parse(data["timestamp"]),
            comment=data.get("comment"),
        )


@dataclass
class ChainTransition:
    from_state: ChainStatus
    from_stage: int
    to_state: ChainStatus
    to_stage: int
    actor: str
    timestamp: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "from_stage": self.from_stage,
            "to_state": self.to_state.value,
            "to_stage": self.to_stage,
            "actor": self.actor,
            "timestamp": _iso(self.timestamp),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainTransition":
        return cls(
            from_state=ChainStatus(data["from_state"]),
            from_stage=int(data["from_stage"]),
            to_state=ChainStatus(data["to_state"]),
            to_stage=int(data["to_stage"]),
            actor=data["actor"],
            timestamp=_parse(data["timestamp"]),
            reason=data.get("reason"),
        )


@dataclass
class ChainResult:
    """What a chain operation did. transition is None when the state held."""
    state: ChainStatus
    stage_index: int
    decision: Optional[StageDecision] = None
    transition: Optional[ChainTransition] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "stage_index": self.stage_index,
            "decision": self.decision.to_dict() if self.decision else None,
            "transition": self.transition.to_dict() if self.transition else None,
        }


@dataclass
class ApprovalChainInstance:
    request_id: str
    chain_kind: ChainKind
    policy: ApprovalPolicy
    requester_id: str
    amount: float
    started_at: datetime
    state: ChainStatus = ChainStatus.OPEN
    stage_index: int = 0
    stage_started_at: Optional[datetime] = None
    stage_deadline: Optional[datetime] = None
    decisions: Dict[int, Dict[str, StageDecision]] = field(default_factory=dict)
    transitions: List[ChainTransition] = field(default_factory=list)
    reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def start(
        cls,
        request_id: str,
        chain_kind: ChainKind,
        policy: ApprovalPolicy,
        requester_id: str,
        amount: float,
        now: datetime,
    ) -> "ApprovalChainInstance":
        chain = cls(
            request_id=request_id,
            chain_kind=chain_kind,
            policy=policy,
            requester_id=requester_id,
            amount=amount,
            started_at=now,
        )
        chain._open_stage(0, now)
        return chain

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def current_stage(self) -> ApprovalStage:
        return self.policy.stages[self.stage_index]

    def stage_decisions(self, stage_index: Optional[int] = None) -> Dict[str, StageDecision]:
        index = self.stage_index if stage_index is None else stage_index
        return self.decisions.get(index, {})

    def _approved_by(self, user_id: str, stage_index: int) -> bool:
        decision = self.stage_decisions(stage_index).get(user_id)
        return decision is not None and decision.decision == Decision.APPROVE

    def awaiting(self) -> List[str]:
        """Approvers the open stage is waiting on right now."""
        if self.is_terminal:
            return []
        stage = self.current_stage
        pending = [
            a.user_id for a in stage.counted_approvers()
            if not self._approved_by(a.user_id, self.stage_index)
        ]
        if not stage.allow_parallel_approval:
            return pending[:1]
        return pending

    def is_stage_satisfied(self, stage_index: Optional[int] = None) -> bool:
        index = self.stage_index if stage_index is None else stage_index
        stage = self.policy.stages[index]
        return all(self._approved_by(a.user_id, index) for a in stage.counted_approvers())

    def result(self, decision: Optional[StageDecision] = None, transition: Optional[ChainTransition] = None) -> ChainResult:
        return ChainResult(self.state, self.stage_index, decision, transition)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _open_stage(self, index: int, now: datetime) -> None:
        self.stage_index = index
        self.stage_started_at = now
        hours = self.policy.stages[index].escalation_hours
        self.stage_deadline = now + timedelta(hours=hours) if hours else None

    def _move(self, to_state: ChainStatus, to_stage: int, actor: str, now: datetime, reason: Optional[str] = None) -> ChainTransition:
        if to_state not in VALID_TRANSITIONS[self.state]:
            raise ValidationError(
                f"Invalid chain transition: {self.state.value} -> {to_state.value}",
                context={"request_id": self.request_id},
            )
        transition = ChainTransition(self.state, self.stage_index, to_state, to_stage, actor, now, reason)
        self.state = to_state
        if to_state in TERMINAL_STATES:
            self.closed_at = now
            self.reason = reason
            self.stage_deadline = None
        elif to_stage != self.stage_index:
            self._open_stage(to_stage, now)
        self.transitions.append(transition)
        return transition

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise ChainClosedError(self.request_id, self.state.value)

    def _locate(self, approver_id: str) -> Approver:
        """Approver entry in the open stage, or the right error for where they sit."""
        approver = self.current_stage.approver(approver_id)
        if approver is not None:
            return approver
        stages = self.policy.stages
        for index in range(self.stage_index):
            if stages[index].approver(approver_id) is not None:
                raise StageClosedError(self.request_id, approver_id, index)
        for index in range(self.stage_index + 1, len(stages)):
            if stages[index].approver(approver_id) is not None:
                awaiting = self.awaiting()
                raise OutOfTurnError(self.request_id, approver_id, awaiting[0] if awaiting else "")
        raise UnknownApproverError(self.request_id, approver_id)

    def decide(
        self,
        approver_id: str,
        decision: Decision,
        now: datetime,
        comment: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ChainResult:
        """
        Record a decision in approver_id's slot of the open stage.

        actor is who actually acted (a delegate); defaults to approver_id.
        Validation failures raise before anything is recorded.
        """
        actor = actor or approver_id
        self._ensure_open()
        approver = self._locate(approver_id)
        stage = self.current_stage

        if not self.policy.allow_self_approval and self.requester_id in (approver_id, actor):
            raise SelfApprovalError(self.request_id, actor)

        counted = {a.user_id for a in stage.counted_approvers()}
        if not stage.allow_parallel_approval and approver_id in counted:
            awaiting = self.awaiting()
            already_approved = self._approved_by(approver_id, self.stage_index)
            if awaiting and awaiting[0] != approver_id and not already_approved:
                raise OutOfTurnError(self.request_id, approver_id, awaiting[0])

        recorded = StageDecision(self.stage_index, approver_id, decision, actor, now, comment)
        self.decisions.setdefault(self.stage_index, {})[approver_id] = recorded

        if decision == Decision.REJECT:
            if approver.is_required or stage.requires_all_approvers:
                transition = self._move(ChainStatus.REJECTED, self.stage_index, actor, now, comment or "rejected")
                return self.result(recorded, transition)
            logger.warning(
                f"Optional approver {approver_id} rejected request {self.request_id} at stage "
                f"{self.stage_index}; recorded as advisory"
            )
            return self.result(recorded)

        if not self.is_stage_satisfied():
            return self.result(recorded)
        if self.stage_index == len(self.policy.stages) - 1:
            transition = self._move(ChainStatus.APPROVED, self.stage_index, actor, now)
        else:
            transition = self._move(ChainStatus.OPEN, self.stage_index + 1, actor, now)
        return self.result(recorded, transition)

    def escalate_if_due(self, now: datetime, actor: str = "system") -> ChainResult:
        """Open(i) past its deadline becomes Escalated(i); anything else is left alone."""
        if self.state != ChainStatus.OPEN or self.stage_deadline is None or now < self.stage_deadline:
            return self.result()
        transition = self._move(ChainStatus.ESCALATED, self.stage_index, actor, now, "deadline elapsed")
        return self.result(transition=transition)

    def cancel(self, actor: str, now: datetime, reason: Optional[str] = None) -> ChainResult:
        self._ensure_open()
        transition = self._move(ChainStatus.CANCELLED, self.stage_index, actor, now, reason or "cancelled")
        return self.result(transition=transition)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "chain_kind": self.chain_kind.value,
            "policy_id": self.policy.id,
            "policy_version": self.policy.version,
            "policy": self.policy.model_dump(mode="json"),
            "requester_id": self.requester_id,
            "amount": self.amount,
            "state": self.state.value,
            "stage_index": self.stage_index,
            "stage_role": self.current_stage.role.value,
            "stage_count": len(self.policy.stages),
            "awaiting": self.awaiting(),
            "started_at": _iso(self.started_at),
            "stage_started_at": _iso(self.stage_started_at),
            "stage_deadline": _iso(self.stage_deadline),
            "decisions": {
                str(index): {user_id: d.to_dict() for user_id, d in slots.items()}
                for index, slots in self.decisions.items()
            },
            "transitions": [t.to_dict() for t in self.transitions],
            "reason": self.reason,
            "closed_at": _iso(self.closed_at),
        }

    def snapshot(self) -> "ApprovalChainInstance":
        """Independent copy to apply an operation on before committing it."""
        return ApprovalChainInstance.from_dict(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalChainInstance":
        return cls(
            request_id=data["request_id"],
            chain_kind=ChainKind(data["chain_kind"]),
            policy=ApprovalPolicy.model_validate(data["policy"]),
            requester_id=data["requester_id"],
            amount=float(data["amount"]),
            started_at=_parse(data["started_at"]),
            state=ChainStatus(data["state"]),
            stage_index=int(data["stage_index"]),
            stage_started_at=_parse(data.get("stage_started_at")),
            stage_deadline=_parse(data.get("stage_deadline")),
            decisions={
                int(index): {user_id: StageDecision.from_dict(d) for user_id, d in slots.items()}
                for index, slots in (data.get("decisions") or {}).items()
            },
            transitions=[ChainTransition.from_dict(t) for t in data.get("transitions") or []],
            reason=data.get("reason"),
            closed_at=_parse(data.get("closed_at")),
        )


@dataclass
class Delegation:
    """Out-of-office delegation from one approver to another."""
    from_user_id: str
    to_user_id: str
    until: Optional[datetime] = None
    starts_at: Optional[datetime] = None
    max_amount: Optional[float] = None

    def covers(self, now: datetime, amount: float) -> bool:
        if self.starts_at is not None and now < self.starts_at:
            return False
        if self.until is not None and now >= self.until:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "until": _iso(self.until),
            "starts_at": _iso(self.starts_at),
            "max_amount": self.max_amount,
        }


class DelegationRegistry:
    """One active delegation per delegator."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._delegations: Dict[str, Delegation] = {}

    def set_delegation(self, delegation: Delegation) -> None:
        if delegation.from_user_id == delegation.to_user_id:
            raise ValidationError("An approver cannot delegate to themselves")
        with self._lock:
            self._delegations[delegation.from_user_id] = delegation
        logger.info(f"Delegation set: {delegation.from_user_id} -> {delegation.to_user_id}")

    def remove_delegation(self, from_user_id: str) -> None:
        with self._lock:
            self._delegations.pop(from_user_id, None)

    def get_delegate(self, from_user_id: str, now: datetime, amount: float) -> Optional[str]:
        with self._lock:
            delegation = self._delegations.get(from_user_id)
        if delegation and delegation.covers(now, amount):
            return delegation.to_user_id
        return None

    def principals_for(self, delegate_id: str, now: datetime, amount: float) -> List[str]:
        """Approvers whose slot delegate_id may currently fill."""
        with self._lock:
            delegations = list(self._delegations.values())
        return [
            d.from_user_id for d in delegations
            if d.to_user_id == delegate_id and d.covers(now, amount)
        ]

    def list(self) -> List[Delegation]:
        with self._lock:
            return list(self._delegations.values())
