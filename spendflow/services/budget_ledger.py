"""
Budget Ledger

Append-only log of commit / spend / release entries per (budget line, period).
Committed and spent totals are a fold over the log:

    committed = sum(commit) - sum(release) - sum(spend)
    spent     = sum(spend)

Operations are idempotent per request:
- reserve: one commit per request; same amount again is a replay, a different
  amount is AlreadyReservedError
- settle: spend the final amount, releasing or topping up the difference
- release: give back whatever the request still holds; nothing held is a no-op

Undo is always a new compensating entry. Nothing is updated or deleted, so
replaying the stored entries in (timestamp, seq) order rebuilds the totals.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from spendflow.core.clock import SystemClock
from spendflow.core.database import SpendflowDB
from spendflow.core.locks import KeyedLockManager
from spendflow.models.budgets import BudgetLine, LedgerEntry, LedgerEntryKind, Utilization
from spendflow.services import metrics
from spendflow.services.audit import AuditAction
from spendflow.services.errors import (
    AlreadyReleasedError,
    AlreadyReservedError,
    AlreadySettledError,
    NoReservationError,
    OverBudgetJustificationError,
    ValidationError,
)
from spendflow.services.logging import log_ledger_operation
from spendflow.services.notifications import NotificationKind

logger = logging.getLogger(__name__)

SETTLEMENT_ADJUSTMENT = "settlement_adjustment"
SETTLEMENT_RELEASE = "settlement_release"

CENT = Decimal("0.01")


def _money(value: float) -> float:
    """Round half-up to whole cents. Equal cent amounts compare equal as floats."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)) + 0.0


class LedgerOutcome(str, Enum):
    APPLIED = "applied"
    REPLAYED = "replayed"
    NOOP = "noop"


@dataclass
class LedgerResult:
    """Outcome of a ledger operation plus the line's utilization afterwards."""
    outcome: LedgerOutcome
    utilization: Utilization
    entries: List[LedgerEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "entries": [e.model_dump(mode="json") for e in self.entries],
            "utilization": self.utilization.model_dump(mode="json"),
        }


@dataclass
class _Totals:
    committed: float = 0.0
    spent: float = 0.0

    def apply(self, entry: LedgerEntry) -> None:
        if entry.kind == LedgerEntryKind.COMMIT:
            self.committed = _money(self.committed + entry.amount)
        elif entry.kind == LedgerEntryKind.RELEASE:
            self.committed = _money(self.committed - entry.amount)
        else:
            self.committed = _money(self.committed - entry.amount)
            self.spent = _money(self.spent + entry.amount)


@dataclass
class Reservation:
    """Per-request fold of the entries a request owns."""
    request_id: str
    budget_line_id: str
    period: str
    reserved_amount: float = 0.0
    committed: float = 0.0
    released: float = 0.0
    spent: float = 0.0
    settled: bool = False

    @property
    def outstanding(self) -> float:
        return _money(self.committed - self.released - self.spent)

    @property
    def is_released(self) -> bool:
        return not self.settled and self.released > 0 and self.outstanding <= 0

    def apply(self, entry: LedgerEntry) -> None:
        if entry.kind == LedgerEntryKind.COMMIT:
            if entry.reason != SETTLEMENT_ADJUSTMENT:
                self.reserved_amount = entry.amount
            self.committed = _money(self.committed + entry.amount)
        elif entry.kind == LedgerEntryKind.RELEASE:
            self.released = _money(self.released + entry.amount)
        else:
            self.spent = _money(self.spent + entry.amount)
            self.settled = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "budget_line_id": self.budget_line_id,
            "period": self.period,
            "reserved_amount": self.reserved_amount,
            "outstanding": self.outstanding,
            "spent": self.spent,
            "settled": self.settled,
            "released": self.is_released,
        }


class BudgetLedger:
    """
    Ledger writes are serialized per (budget_line_id, period); unrelated lines
    never contend. Budget lines come from master data and are read-only here.
    """

    def __init__(
        self,
        master_data,
        db: Optional[SpendflowDB] = None,
        locks: Optional[KeyedLockManager] = None,
        clock=None,
        audit=None,
        notifier=None,
        warning_threshold: float = 0.8,
        critical_threshold: float = 1.0,
    ):
        self.master_data = master_data
        self.db = db
        self.locks = locks or KeyedLockManager(name="ledger")
        self.clock = clock or SystemClock()
        self.audit = audit
        self.notifier = notifier
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold

        self._guard = threading.RLock()
        self._log: Dict[Tuple[str, str], List[LedgerEntry]] = {}
        self._totals: Dict[Tuple[str, str], _Totals] = {}
        self._reservations: Dict[str, Reservation] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _budget_line(self, budget_line_id: str) -> BudgetLine:
        return self.master_data.get_budget_line(budget_line_id)

    def _planned(self, budget_line: BudgetLine, period: str) -> float:
        try:
            return budget_line.planned_for(period)
        except ValueError as exc:
            raise ValidationError(
                str(exc),
                context={"budget_line_id": budget_line.id, "period": period},
            )

    def utilization(self, budget_line_id: str, period: str) -> Utilization:
        """Pure fold over the entries recorded for the line and period."""
        planned = self._planned(self._budget_line(budget_line_id), period)
        with self._guard:
            totals = self._totals.get((budget_line_id, period)) or _Totals()
            committed, spent = totals.committed, totals.spent
        return Utilization(
            budget_line_id=budget_line_id,
            period=period,
            planned=_money(planned),
            committed=committed,
            spent=spent,
            available=_money(planned - committed - spent),
            is_over_budget=_money(committed + spent) > _money(planned),
        )

    def entries(self, budget_line_id: str, period: str) -> List[LedgerEntry]:
        with self._guard:
            return list(self._log.get((budget_line_id, period), []))

    def entries_for_request(self, request_id: str) -> List[LedgerEntry]:
        reservation = self.reservation(request_id)
        if reservation is None:
            return []
        return [
            e for e in self.entries(reservation.budget_line_id, reservation.period)
            if e.related_request_id == request_id
        ]

    def reservation(self, request_id: str) -> Optional[Reservation]:
        with self._guard:
            return self._reservations.get(request_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _entry(
        self,
        kind: LedgerEntryKind,
        budget_line_id: str,
        period: str,
        amount: float,
        request_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> LedgerEntry:
        return LedgerEntry(
            entry_id=uuid.uuid4().hex,
            budget_line_id=budget_line_id,
            period=period,
            kind=kind,
            amount=_money(amount),
            related_request_id=request_id,
            timestamp=self.clock.now(),
            reason=reason,
            actor=actor,
        )

    def _append(self, entries: List[LedgerEntry]) -> None:
        """Persist, then fold into memory. Caller holds the line lock."""
        if self.db is not None:
            self.db.append_ledger_entries(e.model_dump(mode="json") for e in entries)
        with self._guard:
            for entry in entries:
                self._fold(entry)

    def _fold(self, entry: LedgerEntry) -> None:
        key = (entry.budget_line_id, entry.period)
        self._log.setdefault(key, []).append(entry)
        self._totals.setdefault(key, _Totals()).apply(entry)
        reservation = self._reservations.get(entry.related_request_id)
        if reservation is None:
            reservation = Reservation(entry.related_request_id, entry.budget_line_id, entry.period)
            self._reservations[entry.related_request_id] = reservation
        reservation.apply(entry)

    def reserve(
        self,
        budget_line_id: str,
        period: str,
        amount: float,
        request_id: str,
        over_budget_reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> LedgerResult:
        """
        Commit capacity for a request.

        Exceeding planned capacity is allowed only with an over-budget reason;
        the check runs under the line lock so two reservations cannot both
        squeeze into the same remaining capacity unnoticed.
        """
        amount = _money(amount)
        if amount <= 0:
            raise ValidationError("Reservation amount must be positive", context={"amount": amount})
        budget_line = self._budget_line(budget_line_id)
        planned = self._planned(budget_line, period)

        with self.locks.hold((budget_line_id, period)):
            existing = self.reservation(request_id)
            if existing is not None and existing.reserved_amount > 0 and not existing.is_released:
                if existing.budget_line_id != budget_line_id or existing.period != period \
                        or existing.reserved_amount != amount:
                    logger.warning(
                        f"Conflicting reservation for {request_id}: held {existing.reserved_amount} "
                        f"on {existing.budget_line_id}/{existing.period}, asked {amount} on {budget_line_id}/{period}"
                    )
                    metrics.record_ledger_operation("reserve", "conflict")
                    raise AlreadyReservedError(request_id, existing.reserved_amount, amount)
                return self._replayed("reserve", request_id, budget_line_id, period, amount)

            before = self.utilization(budget_line_id, period)
            exposure = _money(before.committed + before.spent + amount)
            over_budget = exposure > _money(planned)
            if over_budget and not (over_budget_reason and over_budget_reason.strip()):
                raise OverBudgetJustificationError(budget_line_id, period, before.available, amount)

            entry = self._entry(
                LedgerEntryKind.COMMIT, budget_line_id, period, amount, request_id,
                reason=over_budget_reason if over_budget else None,
                actor=actor,
            )
            self._append([entry])
            after = self.utilization(budget_line_id, period)

        self._applied(AuditAction.BUDGET_COMMIT, "reserve", request_id, amount, [entry], before, after, actor)
        self._check_alert(budget_line, before, after)
        return LedgerResult(LedgerOutcome.APPLIED, after, [entry])

    def settle(self, request_id: str, final_amount: float, actor: Optional[str] = None) -> LedgerResult:
        """
        Turn the reservation into spend at the final (invoiced) amount.

        final < committed: spend(final) + release(committed - final)
        final > committed: commit(final - committed) + spend(final)
        """
        final_amount = _money(final_amount)
        if final_amount < 0:
            raise ValidationError("Final amount cannot be negative", context={"final_amount": final_amount})
        reservation = self.reservation(request_id)
        if reservation is None or reservation.reserved_amount <= 0:
            raise NoReservationError(request_id)
        budget_line_id, period = reservation.budget_line_id, reservation.period
        budget_line = self._budget_line(budget_line_id)

        with self.locks.hold((budget_line_id, period)):
            if reservation.settled:
                if reservation.spent != final_amount:
                    logger.warning(
                        f"Conflicting settlement for {request_id}: settled {reservation.spent}, asked {final_amount}"
                    )
                    metrics.record_ledger_operation("settle", "conflict")
                    raise AlreadySettledError(request_id, reservation.spent, final_amount)
                return self._replayed("settle", request_id, budget_line_id, period, final_amount)
            if reservation.is_released:
                raise AlreadyReleasedError(request_id)

            before = self.utilization(budget_line_id, period)
            held = reservation.outstanding
            entries: List[LedgerEntry] = []
            if final_amount > held:
                entries.append(self._entry(
                    LedgerEntryKind.COMMIT, budget_line_id, period, final_amount - held, request_id,
                    reason=SETTLEMENT_ADJUSTMENT, actor=actor,
                ))
            entries.append(self._entry(
                LedgerEntryKind.SPEND, budget_line_id, period, final_amount, request_id, actor=actor,
            ))
            if final_amount < held:
                entries.append(self._entry(
                    LedgerEntryKind.RELEASE, budget_line_id, period, held - final_amount, request_id,
                    reason=SETTLEMENT_RELEASE, actor=actor,
                ))
            self._append(entries)
            after = self.utilization(budget_line_id, period)

        self._applied(AuditAction.BUDGET_SPEND, "settle", request_id, final_amount, entries, before, after, actor)
        self._check_alert(budget_line, before, after)
        return LedgerResult(LedgerOutcome.APPLIED, after, entries)

    def release(
        self,
        request_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """
        Give back whatever the request still holds.

        Returns None when the request never reserved anything (out-of-budget
        requests); a NOOP result when nothing is outstanding.
        """
        reservation = self.reservation(request_id)
        if reservation is None:
            logger.debug(f"Release for {request_id}: no reservation, nothing to do")
            return None
        budget_line_id, period = reservation.budget_line_id, reservation.period

        with self.locks.hold((budget_line_id, period)):
            held = reservation.outstanding
            if held <= 0:
                logger.info(f"Release for {request_id}: nothing outstanding, no-op")
                metrics.record_ledger_operation("release", LedgerOutcome.NOOP.value)
                return LedgerResult(LedgerOutcome.NOOP, self.utilization(budget_line_id, period), [])

            before = self.utilization(budget_line_id, period)
            entry = self._entry(
                LedgerEntryKind.RELEASE, budget_line_id, period, held, request_id, reason=reason, actor=actor,
            )
            self._append([entry])
            after = self.utilization(budget_line_id, period)

        self._applied(AuditAction.BUDGET_RELEASE, "release", request_id, held, [entry], before, after, actor)
        return LedgerResult(LedgerOutcome.APPLIED, after, [entry])

    def replay(self) -> int:
        """Rebuild every fold from stored entries. Returns the entry count."""
        if self.db is not None:
            entries = [LedgerEntry.model_validate(row) for row in self.db.list_ledger_entries()]
        else:
            with self._guard:
                entries = [e for log in self._log.values() for e in log]
            entries.sort(key=lambda e: e.timestamp)
        with self._guard:
            self._log.clear()
            self._totals.clear()
            self._reservations.clear()
            for entry in entries:
                self._fold(entry)
        logger.info(f"Ledger replayed {len(entries)} entries across {len(self._log)} budget line periods")
        return len(entries)

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _replayed(self, operation: str, request_id: str, budget_line_id: str, period: str, amount: float) -> LedgerResult:
        log_ledger_operation(operation, LedgerOutcome.REPLAYED.value, request_id, budget_line_id, period, amount)
        metrics.record_ledger_operation(operation, LedgerOutcome.REPLAYED.value)
        return LedgerResult(LedgerOutcome.REPLAYED, self.utilization(budget_line_id, period), [])

    def _applied(
        self,
        action: AuditAction,
        operation: str,
        request_id: str,
        amount: float,
        entries: List[LedgerEntry],
        before: Utilization,
        after: Utilization,
        actor: Optional[str],
    ) -> None:
        log_ledger_operation(
            operation, LedgerOutcome.APPLIED.value, request_id, after.budget_line_id, after.period, amount,
        )
        metrics.record_ledger_operation(operation, LedgerOutcome.APPLIED.value)
        if self.audit is None:
            return
        try:
            self.audit.record(
                action,
                "budget_line",
                after.budget_line_id,
                before=before.model_dump(mode="json"),
                after={
                    **after.model_dump(mode="json"),
                    "request_id": request_id,
                    "entries": [e.model_dump(mode="json") for e in entries],
                },
                actor=actor,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Audit sink failed for {action.value} on {after.budget_line_id}: {exc}")

    def _check_alert(self, budget_line: BudgetLine, before: Utilization, after: Utilization) -> None:
        """Notify the line owner when utilization crosses a threshold upwards."""
        if self.notifier is None:
            return
        level = None
        if before.ratio < self.critical_threshold <= after.ratio:
            level = "critical"
        elif before.ratio < self.warning_threshold <= after.ratio:
            level = "warning"
        if level is None:
            return
        if not budget_line.owner_id:
            logger.info(f"Budget {level} on {budget_line.id}/{after.period} but the line has no owner")
            return
        payload = {
            "level": level,
            "budget_line_id": budget_line.id,
            "period": after.period,
            "planned": after.planned,
            "committed": after.committed,
            "spent": after.spent,
            "available": after.available,
            "utilization_ratio": after.ratio,
        }
        try:
            self.notifier.notify(budget_line.owner_id, NotificationKind.BUDGET_ALERT, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Budget {level} alert for {budget_line.id}/{after.period} not delivered: {exc}")
