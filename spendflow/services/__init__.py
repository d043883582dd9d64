# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "PolicyCatalog":
        from spendflow.services.policy_catalog import PolicyCatalog
        return PolicyCatalog
    elif name == "BudgetLedger":
        from spendflow.services.budget_ledger import BudgetLedger
        return BudgetLedger
    elif name == "ApprovalChainInstance":
        from spendflow.services.approval_chains import ApprovalChainInstance
        return ApprovalChainInstance
    elif name == "RequestOrchestrator":
        from spendflow.services.orchestrator import RequestOrchestrator
        return RequestOrchestrator
    elif name == "NotificationService":
        from spendflow.services.notifications import NotificationService
        return NotificationService
    elif name == "DatabaseAuditSink":
        from spendflow.services.audit import DatabaseAuditSink
        return DatabaseAuditSink
    raise AttributeError(f"module 'spendflow.services' has no attribute '{name}'")
