"""FastAPI dependencies for Spendflow engine services."""
from spendflow.di.container import container


def get_orchestrator():
    return container.orchestrator()


def get_policy_catalog():
    return container.catalog()


def get_budget_ledger():
    return container.ledger()


def get_settings():
    return container.settings()


def get_database():
    return container.db()
