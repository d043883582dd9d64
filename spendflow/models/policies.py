"""Approval policy models.

A policy is a frozen value: edits produce a new version, and chains keep the
snapshot they were started from.
"""
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from spendflow.models.base import SFFrozenModel


class PolicyKind(str, Enum):
    APPROVAL = "approval"
    PAYMENT = "payment"


class PolicyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class StageRole(str, Enum):
    """Who owns a stage. Drives the request status while the stage is open."""
    OWNER = "owner"
    FPA = "fpa"
    DIRECTOR = "director"
    CFO = "cfo"
    CEO = "ceo"
    PAYMENT = "payment"


# Stage roles in the order their request statuses appear
ROLE_ORDER: List[StageRole] = [
    StageRole.OWNER,
    StageRole.FPA,
    StageRole.DIRECTOR,
    StageRole.CFO,
    StageRole.CEO,
    StageRole.PAYMENT,
]


class Approver(SFFrozenModel):
    user_id: str = Field(min_length=1)
    user_name: Optional[str] = None
    is_required: bool = True


class ApprovalStage(SFFrozenModel):
    role: StageRole
    approvers: List[Approver] = Field(min_length=1)
    name: Optional[str] = None
    requires_all_approvers: bool = False
    allow_parallel_approval: bool = True
    escalation_hours: Optional[float] = Field(default=None, gt=0)
    escalation_target_id: Optional[str] = None

    @field_validator("approvers")
    @classmethod
    def _unique_approvers(cls, approvers: List[Approver]) -> List[Approver]:
        seen = set()
        for approver in approvers:
            if approver.user_id in seen:
                raise ValueError(f"approver '{approver.user_id}' listed twice in one stage")
            seen.add(approver.user_id)
        return approvers

    @model_validator(mode="after")
    def _has_counted_approver(self) -> "ApprovalStage":
        if not self.requires_all_approvers and not any(a.is_required for a in self.approvers):
            raise ValueError("a stage needs at least one required approver unless it requires all approvers")
        return self

    def approver(self, user_id: str) -> Optional[Approver]:
        for approver in self.approvers:
            if approver.user_id == user_id:
                return approver
        return None

    def counted_approvers(self) -> List[Approver]:
        """Approvers whose approval the stage waits for."""
        if self.requires_all_approvers:
            return list(self.approvers)
        return [a for a in self.approvers if a.is_required]


class ApprovalPolicy(SFFrozenModel):
    id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    kind: PolicyKind = PolicyKind.APPROVAL
    priority: int = 100
    min_amount: float = Field(default=0.0, ge=0)
    # None means unbounded
    max_amount: Optional[float] = None
    category_id: Optional[str] = None
    cost_center_id: Optional[str] = None
    stages: List[ApprovalStage] = Field(min_length=1)
    allow_self_approval: bool = False
    status: PolicyStatus = PolicyStatus.ACTIVE
    version: int = 0

    @model_validator(mode="after")
    def _check_shape(self) -> "ApprovalPolicy":
        if self.max_amount is not None and self.max_amount <= self.min_amount:
            raise ValueError("max_amount must be greater than min_amount")
        ranks = [ROLE_ORDER.index(stage.role) for stage in self.stages]
        if ranks != sorted(ranks):
            raise ValueError("stage roles must follow owner, fpa, director, cfo, ceo order")
        payment_stages = [s for s in self.stages if s.role == StageRole.PAYMENT]
        if self.kind == PolicyKind.PAYMENT and len(payment_stages) != len(self.stages):
            raise ValueError("payment policies may only contain payment stages")
        if self.kind == PolicyKind.APPROVAL and payment_stages:
            raise ValueError("approval policies cannot contain payment stages")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == PolicyStatus.ACTIVE

    def covers_amount(self, amount: float) -> bool:
        """Amount range is half-open: [min, max)."""
        if amount < self.min_amount:
            return False
        if self.max_amount is not None and amount >= self.max_amount:
            return False
        return True

    def matches(self, amount: float, category_id: Optional[str], cost_center_id: Optional[str]) -> bool:
        if not self.covers_amount(amount):
            return False
        if self.category_id is not None and self.category_id != category_id:
            return False
        if self.cost_center_id is not None and self.cost_center_id != cost_center_id:
            return False
        return True

    @property
    def specificity(self) -> int:
        """2 = category and cost center scoped, 1 = one of them, 0 = wildcard."""
        return int(self.category_id is not None) + int(self.cost_center_id is not None)
