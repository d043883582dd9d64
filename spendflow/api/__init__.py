from spendflow.api.requests import router as requests_router
from spendflow.api.budgets import router as budgets_router
from spendflow.api.policies import router as policies_router

__all__ = ["requests_router", "budgets_router", "policies_router"]
