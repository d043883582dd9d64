"""Budget line utilization and ledger APIs (read-only)."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from spendflow.api.deps import get_budget_ledger
from spendflow.models.budgets import parse_period
from spendflow.services.budget_ledger import BudgetLedger
from spendflow.services.errors import ValidationError


router = APIRouter(prefix="/api/budget-lines", tags=["budgets"])


def _checked_period(period: str) -> str:
    try:
        parse_period(period)
    except ValueError as exc:
        raise ValidationError(str(exc), context={"period": period})
    return period


@router.get("/{budget_line_id}/utilization")
def get_utilization(
    budget_line_id: str,
    period: str = Query(..., description="Accounting period, YYYY-MM"),
    ledger: BudgetLedger = Depends(get_budget_ledger),
):
    utilization = ledger.utilization(budget_line_id, _checked_period(period))
    return {
        **utilization.model_dump(mode="json"),
        "utilization_ratio": utilization.ratio if utilization.planned > 0 else None,
    }


@router.get("/{budget_line_id}/entries")
def list_entries(
    budget_line_id: str,
    period: str = Query(..., description="Accounting period, YYYY-MM"),
    ledger: BudgetLedger = Depends(get_budget_ledger),
):
    entries = ledger.entries(budget_line_id, _checked_period(period))
    return {
        "budget_line_id": budget_line_id,
        "period": period,
        "entries": [e.model_dump(mode="json") for e in entries],
    }


@router.get("/reservations/{request_id}")
def get_reservation(
    request_id: str,
    ledger: BudgetLedger = Depends(get_budget_ledger),
):
    reservation = ledger.reservation(request_id)
    return {
        "reservation": reservation.to_dict() if reservation else None,
        "entries": [e.model_dump(mode="json") for e in ledger.entries_for_request(request_id)],
    }
