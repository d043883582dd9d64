"""
Master Data Lookups

Categories, cost centers and budget lines are owned elsewhere; the engine
only reads them. A miss is a MasterDataNotFoundError for the operation that
needed the record.
"""

import logging
import threading
from typing import Dict, Iterable, Optional, Protocol

import httpx

from spendflow.models.budgets import BudgetLine
from spendflow.models.master_data import Category, CostCenter
from spendflow.services.errors import MasterDataNotFoundError

logger = logging.getLogger(__name__)


class MasterDataSource(Protocol):
    def get_category(self, category_id: str) -> Category:
        ...

    def get_cost_center(self, cost_center_id: str) -> CostCenter:
        ...

    def get_budget_line(self, budget_line_id: str) -> BudgetLine:
        ...


class InMemoryMasterData:
    """Seedable master data for tests, demos and single-process deployments."""

    def __init__(
        self,
        categories: Optional[Iterable[Category]] = None,
        cost_centers: Optional[Iterable[CostCenter]] = None,
        budget_lines: Optional[Iterable[BudgetLine]] = None,
    ):
        self._lock = threading.Lock()
        self._categories: Dict[str, Category] = {c.id: c for c in categories or []}
        self._cost_centers: Dict[str, CostCenter] = {c.id: c for c in cost_centers or []}
        self._budget_lines: Dict[str, BudgetLine] = {b.id: b for b in budget_lines or []}

    def add_category(self, category: Category) -> None:
        with self._lock:
            self._categories[category.id] = category

    def add_cost_center(self, cost_center: CostCenter) -> None:
        with self._lock:
            self._cost_centers[cost_center.id] = cost_center

    def add_budget_line(self, budget_line: BudgetLine) -> None:
        with self._lock:
            self._budget_lines[budget_line.id] = budget_line

    def get_category(self, category_id: str) -> Category:
        with self._lock:
            category = self._categories.get(category_id)
        if category is None:
            raise MasterDataNotFoundError("Category", category_id)
        return category

    def get_cost_center(self, cost_center_id: str) -> CostCenter:
        with self._lock:
            cost_center = self._cost_centers.get(cost_center_id)
        if cost_center is None:
            raise MasterDataNotFoundError("Cost center", cost_center_id)
        return cost_center

    def get_budget_line(self, budget_line_id: str) -> BudgetLine:
        with self._lock:
            budget_line = self._budget_lines.get(budget_line_id)
        if budget_line is None:
            raise MasterDataNotFoundError("Budget line", budget_line_id)
        return budget_line


class HttpMasterDataClient:
    """
    Reads master data from the console's REST API.

    GET {base_url}/categories/{id}, /cost-centers/{id}, /budget-lines/{id};
    404 means the record does not exist. Other failures propagate as
    httpx errors.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def _fetch(self, path: str, entity: str, entity_id: str) -> dict:
        response = self._client.get(f"{path}/{entity_id}")
        if response.status_code == 404:
            raise MasterDataNotFoundError(entity, entity_id)
        response.raise_for_status()
        return response.json()

    def get_category(self, category_id: str) -> Category:
        return Category.model_validate(self._fetch("/categories", "Category", category_id))

    def get_cost_center(self, cost_center_id: str) -> CostCenter:
        return CostCenter.model_validate(self._fetch("/cost-centers", "Cost center", cost_center_id))

    def get_budget_line(self, budget_line_id: str) -> BudgetLine:
        return BudgetLine.model_validate(self._fetch("/budget-lines", "Budget line", budget_line_id))

    def close(self) -> None:
        self._client.close()
