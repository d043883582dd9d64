"""Spend request models and the request status vocabulary."""
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field, model_validator

from spendflow.models.base import SFBaseModel
from spendflow.models.policies import ApprovalPolicy, StageRole


class RequestStatus(str, Enum):
    DRAFT = "draft"
    PENDING_VALIDATION = "pending_validation"
    PENDING_OWNER_APPROVAL = "pending_owner_approval"
    PENDING_FPA_APPROVAL = "pending_fpa_approval"
    PENDING_DIRECTOR_APPROVAL = "pending_director_approval"
    PENDING_CFO_APPROVAL = "pending_cfo_approval"
    PENDING_CEO_APPROVAL = "pending_ceo_approval"
    PENDING_PAYMENT_APPROVAL = "pending_payment_approval"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Forward progression. rejected/cancelled sit outside it and are reachable
# from any pending_* status.
STATUS_ORDER: List[RequestStatus] = [
    RequestStatus.DRAFT,
    RequestStatus.PENDING_VALIDATION,
    RequestStatus.PENDING_OWNER_APPROVAL,
    RequestStatus.PENDING_FPA_APPROVAL,
    RequestStatus.PENDING_DIRECTOR_APPROVAL,
    RequestStatus.PENDING_CFO_APPROVAL,
    RequestStatus.PENDING_CEO_APPROVAL,
    RequestStatus.PENDING_PAYMENT_APPROVAL,
    RequestStatus.PENDING_PAYMENT,
    RequestStatus.PAID,
]

TERMINAL_STATUSES = {RequestStatus.PAID, RequestStatus.REJECTED, RequestStatus.CANCELLED}

ROLE_STATUS: Dict[StageRole, RequestStatus] = {
    StageRole.OWNER: RequestStatus.PENDING_OWNER_APPROVAL,
    StageRole.FPA: RequestStatus.PENDING_FPA_APPROVAL,
    StageRole.DIRECTOR: RequestStatus.PENDING_DIRECTOR_APPROVAL,
    StageRole.CFO: RequestStatus.PENDING_CFO_APPROVAL,
    StageRole.CEO: RequestStatus.PENDING_CEO_APPROVAL,
    StageRole.PAYMENT: RequestStatus.PENDING_PAYMENT_APPROVAL,
}


def is_pending(status: RequestStatus) -> bool:
    return status.value.startswith("pending_")


def can_move(from_status: RequestStatus, to_status: RequestStatus) -> bool:
    """Forward-only along STATUS_ORDER; rejected/cancelled only from pending_*."""
    if from_status in TERMINAL_STATUSES:
        return False
    if to_status in (RequestStatus.REJECTED, RequestStatus.CANCELLED):
        return is_pending(from_status)
    return STATUS_ORDER.index(to_status) >= STATUS_ORDER.index(from_status)


def derive_period(competence_date: Optional[date], invoice_date: Optional[date]) -> Optional[str]:
    """Accounting period (YYYY-MM): competence date first, then invoice date."""
    source = competence_date or invoice_date
    if source is None:
        return None
    return f"{source.year:04d}-{source.month:02d}"


class StatusHistoryEntry(SFBaseModel):
    status: RequestStatus
    actor: str
    timestamp: datetime
    reason: Optional[str] = None


class SpendRequestCreate(SFBaseModel):
    """Submission payload as it arrives from the UI/API layer."""
    id: str = Field(min_length=1)
    requester_id: str = Field(min_length=1)
    title: str = ""
    amount: float = Field(gt=0)
    category_id: str = Field(min_length=1)
    cost_center_id: str = Field(min_length=1)
    vendor_id: Optional[str] = None
    in_budget: bool = False
    budget_line_id: Optional[str] = None
    competence_date: Optional[date] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    over_budget_reason: Optional[str] = None

    @model_validator(mode="after")
    def _budget_line_iff_in_budget(self):
        if self.in_budget and not self.budget_line_id:
            raise ValueError("budget_line_id is required for in-budget requests")
        if not self.in_budget and self.budget_line_id:
            raise ValueError("budget_line_id is only allowed for in-budget requests")
        if self.over_budget_reason is not None and not self.over_budget_reason.strip():
            raise ValueError("over_budget_reason cannot be blank")
        return self


class SpendRequest(SpendRequestCreate):
    """A request as owned by the orchestrator once submitted."""
    status: RequestStatus = RequestStatus.DRAFT
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    is_over_budget: bool = False
    period: Optional[str] = None
    approval_policy_id: Optional[str] = None
    payment_policy_id: Optional[str] = None
    # Snapshot taken at submission; the payment chain starts from it later
    payment_policy: Optional[ApprovalPolicy] = None
    final_amount: Optional[float] = None
    payment_reference: Optional[str] = None
    submitted_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
