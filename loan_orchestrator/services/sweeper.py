"""Background default sweeper - forces overdue ACTIVE loans into DEFAULTED"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from loan_orchestrator.config import settings
from loan_orchestrator.domain.exceptions import DefaultNotDueError, StateConflictError
from loan_orchestrator.infrastructure.observability.metrics import sweep_duration_histogram, sweep_loans_counter
from loan_orchestrator.services.lifecycle import LoanStateMachine

logger = logging.getLogger(__name__)


class DefaultSweeper:
    """
    Periodically default loans past due date plus grace period.

    The sweep keeps no bookkeeping of its own: every run re-reads the
    ACTIVE loans, and a loan already defaulted by an earlier or concurrent
    run is skipped by the state machine's state check.
    """

    def __init__(
        self,
        state_machine: LoanStateMachine,
        interval_seconds: Optional[float] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        self._state_machine = state_machine
        self._interval = settings.sweeper_interval_seconds if interval_seconds is None else interval_seconds
        self._enabled = settings.sweeper_enabled if enabled is None else enabled
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """
        Default every eligible loan; return the ids that transitioned.

        Raises:
            InvalidEvaluationTimeError: now is later than the state machine clock
        """
        now = self._state_machine.as_of(now)
        defaulted: List[str] = []

        with sweep_duration_histogram.time():
            candidates = self._state_machine.list_default_candidates(now)
            logger.info("Default sweep started", extra={"candidates": len(candidates), "now": now.isoformat()})

            for loan_id in candidates:
                try:
                    await self._state_machine.evaluate_default(loan_id, now)
                except (StateConflictError, DefaultNotDueError) as e:
                    # Repaid, defaulted or changed since the scan
                    sweep_loans_counter.labels(outcome="skipped").inc()
                    logger.info("Loan skipped by sweep", extra={"loan_id": loan_id, "reason": str(e)})
                except Exception:
                    sweep_loans_counter.labels(outcome="failed").inc()
                    logger.exception("Failed to default loan during sweep", extra={"loan_id": loan_id})
                else:
                    sweep_loans_counter.labels(outcome="defaulted").inc()
                    defaulted.append(loan_id)

        logger.info("Default sweep finished", extra={"defaulted": len(defaulted), "candidates": len(candidates)})
        return defaulted

    async def start(self) -> None:
        """Start the sweep loop in a background task if enabled"""
        if not self._enabled:
            logger.info("Default sweeper disabled by SWEEPER_ENABLED=false")
            return
        if self.running:
            logger.info("Default sweeper already running.")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="default-sweeper")
        logger.info("Default sweeper started.", extra={"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Gracefully stop the background sweep task"""
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Default sweeper task cancelled.")
        except Exception:
            logger.exception("Unexpected error while stopping default sweeper.")
        finally:
            self._task = None

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Unhandled error during default sweep.")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=float(self._interval))
            except asyncio.TimeoutError:
                continue
