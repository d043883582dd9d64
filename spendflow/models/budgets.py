"""Budget line, ledger entry and utilization models."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator

from spendflow.models.base import SFBaseModel, SFFrozenModel


def parse_period(period: str) -> tuple:
    """'2025-03' -> (2025, 3). Raises ValueError on anything else."""
    try:
        year_text, month_text = period.split("-")
        year, month = int(year_text), int(month_text)
    except (AttributeError, ValueError):
        raise ValueError(f"period must look like YYYY-MM, got {period!r}")
    if not 1 <= month <= 12 or len(year_text) != 4:
        raise ValueError(f"period must look like YYYY-MM, got {period!r}")
    return year, month


class BudgetLine(SFBaseModel):
    """Planned spend per month for one year. Read-only master data."""
    id: str = Field(min_length=1)
    name: str = ""
    year: int
    planned: List[float] = Field(min_length=12, max_length=12)
    owner_id: Optional[str] = None
    cost_center_id: Optional[str] = None

    @field_validator("planned")
    @classmethod
    def _non_negative(cls, planned: List[float]) -> List[float]:
        if any(value < 0 for value in planned):
            raise ValueError("planned amounts cannot be negative")
        return planned

    def planned_for(self, period: str) -> float:
        year, month = parse_period(period)
        if year != self.year:
            raise ValueError(f"budget line {self.id} covers {self.year}, not {year}")
        return float(self.planned[month - 1])


class LedgerEntryKind(str, Enum):
    COMMIT = "commit"
    SPEND = "spend"
    RELEASE = "release"


class LedgerEntry(SFFrozenModel):
    entry_id: str
    budget_line_id: str
    period: str
    kind: LedgerEntryKind
    amount: float = Field(ge=0)
    related_request_id: str
    timestamp: datetime
    reason: Optional[str] = None
    actor: Optional[str] = None

    @property
    def exposure_delta(self) -> float:
        """Effect on committed + spent. A spend moves capacity from committed
        to spent, so it nets to zero."""
        if self.kind == LedgerEntryKind.COMMIT:
            return self.amount
        if self.kind == LedgerEntryKind.RELEASE:
            return -self.amount
        return 0.0


class Utilization(SFBaseModel):
    budget_line_id: str
    period: str
    planned: float
    committed: float
    spent: float
    available: float
    is_over_budget: bool

    @property
    def ratio(self) -> float:
        if self.planned <= 0:
            return float("inf") if (self.committed + self.spent) > 0 else 0.0
        return (self.committed + self.spent) / self.planned
