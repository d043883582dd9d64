from spendflow.models.base import SFBaseModel, SFFrozenModel
from spendflow.models.policies import (
    ApprovalPolicy,
    ApprovalStage,
    Approver,
    PolicyKind,
    PolicyStatus,
    StageRole,
)
from spendflow.models.requests import (
    RequestStatus,
    SpendRequest,
    SpendRequestCreate,
    StatusHistoryEntry,
    derive_period,
)
from spendflow.models.budgets import BudgetLine, LedgerEntry, LedgerEntryKind, Utilization, parse_period
from spendflow.models.master_data import Category, CostCenter

__all__ = [
    "ApprovalPolicy",
    "ApprovalStage",
    "Approver",
    "BudgetLine",
    "Category",
    "CostCenter",
    "LedgerEntry",
    "LedgerEntryKind",
    "PolicyKind",
    "PolicyStatus",
    "RequestStatus",
    "SFBaseModel",
    "SFFrozenModel",
    "SpendRequest",
    "SpendRequestCreate",
    "StageRole",
    "StatusHistoryEntry",
    "Utilization",
    "derive_period",
    "parse_period",
]
