"""Dependency injection container for engine services."""
from typing import Optional

from spendflow.core.clock import SystemClock
from spendflow.core.config import EngineSettings, load_settings
from spendflow.core.database import SpendflowDB
from spendflow.core.locks import KeyedLockManager
from spendflow.services.approval_chains import DelegationRegistry
from spendflow.services.audit import DatabaseAuditSink
from spendflow.services.budget_ledger import BudgetLedger
from spendflow.services.master_data import HttpMasterDataClient, InMemoryMasterData
from spendflow.services.notifications import NotificationService
from spendflow.services.orchestrator import RequestOrchestrator
from spendflow.services.policy_catalog import PolicyCatalog


class ServiceContainer:
    def __init__(self) -> None:
        self.reset()

    def reset(
        self,
        settings: Optional[EngineSettings] = None,
        master_data=None,
        notifier=None,
        audit=None,
        clock=None,
        db: Optional[SpendflowDB] = None,
    ) -> None:
        """Drop every built service. Anything passed in is used instead of the default."""
        self._settings = settings
        self._db = db
        self._master_data = master_data
        self._notifier = notifier
        self._audit = audit
        self._clock = clock
        self._catalog = None
        self._ledger = None
        self._delegations = None
        self._orchestrator = None

    def settings(self) -> EngineSettings:
        if not self._settings:
            self._settings = load_settings()
        return self._settings

    def db(self) -> SpendflowDB:
        if not self._db:
            self._db = SpendflowDB(self.settings().db_path)
            self._db.initialize()
        return self._db

    def clock(self):
        if not self._clock:
            self._clock = SystemClock()
        return self._clock

    def master_data(self):
        if not self._master_data:
            url = self.settings().master_data_url
            self._master_data = HttpMasterDataClient(url) if url else InMemoryMasterData()
        return self._master_data

    def notifier(self):
        if not self._notifier:
            self._notifier = NotificationService(self.settings().slack_webhook_url)
        return self._notifier

    def audit(self):
        if not self._audit:
            self._audit = DatabaseAuditSink(self.db())
        return self._audit

    def catalog(self) -> PolicyCatalog:
        if not self._catalog:
            self._catalog = PolicyCatalog(db=self.db())
        return self._catalog

    def delegations(self) -> DelegationRegistry:
        if not self._delegations:
            self._delegations = DelegationRegistry()
        return self._delegations

    def ledger(self) -> BudgetLedger:
        if not self._ledger:
            settings = self.settings()
            self._ledger = BudgetLedger(
                self.master_data(),
                db=self.db(),
                locks=KeyedLockManager(
                    name="ledger",
                    timeout=settings.lock_timeout_seconds,
                    attempts=settings.lock_retry_attempts,
                    backoff=settings.lock_backoff_seconds,
                ),
                clock=self.clock(),
                audit=self.audit(),
                notifier=self.notifier(),
                warning_threshold=settings.budget_warning_threshold,
                critical_threshold=settings.budget_critical_threshold,
            )
            self._ledger.replay()
        return self._ledger

    def orchestrator(self) -> RequestOrchestrator:
        if not self._orchestrator:
            self._orchestrator = RequestOrchestrator(
                self.catalog(),
                self.ledger(),
                self.master_data(),
                db=self.db(),
                audit=self.audit(),
                notifier=self.notifier(),
                delegations=self.delegations(),
                clock=self.clock(),
                settings=self.settings(),
            )
            self._orchestrator.restore()
        return self._orchestrator

    def shutdown(self) -> None:
        if self._orchestrator:
            self._orchestrator.escalations.shutdown()
        if isinstance(self._master_data, HttpMasterDataClient):
            self._master_data.close()


container = ServiceContainer()
