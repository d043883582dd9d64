"""
Escalation Scheduling

Tracks one deadline per request whose open stage has escalation hours. Three
ways to fire:
- fire_due(now): deterministic sweep, used by tests and cron-style runners
- EscalationSweeper: asyncio loop calling fire_due in the API process
- threading.Timer per deadline when timers are enabled

All of them call the orchestrator's handler, which takes the same per-request lock
as a human decision, so a timer and a decision never interleave.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from spendflow.core.clock import SystemClock
from spendflow.services.errors import BusyError
from spendflow.services.logging import log_error

logger = logging.getLogger(__name__)

EscalationHandler = Callable[[str, datetime], object]


class EscalationScheduler:
    def __init__(
        self,
        handler: EscalationHandler,
        clock=None,
        timers_enabled: bool = False,
    ):
        self.handler = handler
        self.clock = clock or SystemClock()
        self.timers_enabled = timers_enabled
        self._lock = threading.Lock()
        self._deadlines: Dict[str, datetime] = {}
        self._timers: Dict[str, threading.Timer] = {}

    def schedule(self, request_id: str, deadline: Optional[datetime]) -> None:
        """Replace whatever was scheduled for the request."""
        self.cancel(request_id)
        if deadline is None:
            return
        with self._lock:
            self._deadlines[request_id] = deadline
            if self.timers_enabled:
                delay = max(0.0, (deadline - self.clock.now()).total_seconds())
                timer = threading.Timer(delay, self._fire, args=(request_id, deadline))
                timer.daemon = True
                self._timers[request_id] = timer
                timer.start()
        logger.debug(f"Escalation for {request_id} scheduled at {deadline.isoformat()}")

    def cancel(self, request_id: str) -> None:
        with self._lock:
            self._deadlines.pop(request_id, None)
            timer = self._timers.pop(request_id, None)
        if timer is not None:
            timer.cancel()

    def deadline_for(self, request_id: str) -> Optional[datetime]:
        with self._lock:
            return self._deadlines.get(request_id)

    def pending(self) -> Dict[str, datetime]:
        with self._lock:
            return dict(self._deadlines)

    def fire_due(self, now: Optional[datetime] = None) -> List[str]:
        """Fire every deadline at or before now. Returns the request ids fired."""
        now = now or self.clock.now()
        with self._lock:
            due = sorted(
                (deadline, request_id) for request_id, deadline in self._deadlines.items() if deadline <= now
            )
        fired = []
        for deadline, request_id in due:
            if self._run(request_id, deadline, now):
                fired.append(request_id)
        return fired

    def _fire(self, request_id: str, deadline: datetime) -> None:
        self._run(request_id, deadline, self.clock.now())

    def _run(self, request_id: str, deadline: datetime, now: datetime) -> bool:
        with self._lock:
            if self._deadlines.get(request_id) != deadline:
                return False
            self._deadlines.pop(request_id, None)
            self._timers.pop(request_id, None)
        try:
            self.handler(request_id, now)
        except BusyError as exc:
            # Lost the request lock to a decision in flight; try again shortly
            logger.info(f"Escalation for {request_id} busy, retrying in {exc.retry_after:.1f}s")
            with self._lock:
                self._deadlines.setdefault(request_id, deadline)
                if self.timers_enabled and request_id not in self._timers:
                    timer = threading.Timer(exc.retry_after, self._fire, args=(request_id, deadline))
                    timer.daemon = True
                    self._timers[request_id] = timer
                    timer.start()
            return False
        except Exception as exc:  # noqa: BLE001
            log_error("escalation_failed", f"Escalation for {request_id} failed", {"request_id": request_id}, exc)
            return False
        return True

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._deadlines.clear()
        for timer in timers:
            timer.cancel()


class EscalationSweeper:
    """Background loop that fires due escalations every interval_seconds."""

    def __init__(self, scheduler: EscalationScheduler, interval_seconds: float = 60.0):
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.enabled = interval_seconds > 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._fired_total = 0
        self._status: Dict[str, Any] = {"state": "idle"}

    def get_status(self) -> Dict[str, Any]:
        return self._status

    async def start(self) -> None:
        if not self.enabled:
            self._status = {"state": "disabled"}
            return
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        self._status = {"state": "running", "fired_total": self._fired_total}
        logger.info(f"Escalation sweep started every {self.interval_seconds:g}s")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._status = {"state": "stopped", "fired_total": self._fired_total}
        logger.info("Escalation sweep stopped")

    async def sweep(self) -> List[str]:
        fired = await asyncio.to_thread(self.scheduler.fire_due)
        self._fired_total += len(fired)
        self._status = {
            "state": "running",
            "fired": len(fired),
            "fired_total": self._fired_total,
            "last_run": datetime.now(timezone.utc).isoformat(),
        }
        return fired

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Escalation sweep error: %s", exc)
                self._status = {"state": "error", "error": str(exc), "fired_total": self._fired_total}
            await asyncio.sleep(self.interval_seconds)
