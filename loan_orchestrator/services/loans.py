"""Loan service - the operations the HTTP layer and operators call

Wires the state machine to the settlement watcher (lock and repayment
requests are watched until they resolve) and to the default sweeper.
"""

import logging
from typing import Callable, List, Optional, Tuple

from loan_orchestrator.domain.exceptions import (
    DisbursementFailedError,
    DomainException,
    DownstreamError,
    SettlementNotConfirmedError,
    StateConflictError,
)
from loan_orchestrator.domain.models import (
    Borrower,
    DisbursementStatus,
    Loan,
    LoanApplication,
    LoanStatus,
    PortfolioMetrics,
    Repayment,
    RequestState,
    RequestStatus,
    RiskProfile,
)
from loan_orchestrator.domain.portfolio import compute_portfolio_metrics
from loan_orchestrator.domain.risk import classify
from loan_orchestrator.services.lifecycle import LoanStateMachine
from loan_orchestrator.services.sweeper import DefaultSweeper
from loan_orchestrator.services.watcher import SettlementWatcher, SubscriptionHandle

logger = logging.getLogger(__name__)


def lock_context(loan_id: str) -> str:
    return f"lock:{loan_id}"


def repayment_context(loan_id: str) -> str:
    return f"repayment:{loan_id}"


class LoanService:
    """Facade over the lifecycle core"""

    def __init__(
        self,
        state_machine: LoanStateMachine,
        watcher: Optional[SettlementWatcher] = None,
        sweeper: Optional[DefaultSweeper] = None,
    ):
        self.state_machine = state_machine
        self.watcher = watcher or SettlementWatcher(state_machine.gateway.request_status)
        self.sweeper = sweeper or DefaultSweeper(state_machine)

    @classmethod
    def build(cls) -> "LoanService":
        """Production wiring from settings"""
        from loan_orchestrator.infrastructure.clients.score import ScoreOracleClient
        from loan_orchestrator.infrastructure.database.session import SessionLocal
        from loan_orchestrator.infrastructure.gateway import XrplCollateralGateway

        state_machine = LoanStateMachine(
            session_factory=SessionLocal,
            gateway=XrplCollateralGateway(),
            score_oracle=ScoreOracleClient(),
        )
        return cls(state_machine)

    # ------------------------------------------------------------------
    # Lifecycle hooks

    async def start(self) -> None:
        await self.resume_watches()
        await self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.watcher.close()

    async def resume_watches(self) -> int:
        """
        Re-subscribe to every request still awaiting a signature.

        Subscriptions live in memory only; after a restart the store is
        the source of truth for what is still outstanding.
        """
        resumed = 0
        for loan in self.state_machine.list_loans(LoanStatus.PENDING):
            if loan.lock_request_id and loan.disbursement_status == DisbursementStatus.NOT_STARTED:
                self._watch_lock(loan)
                resumed += 1
        for loan in self.state_machine.list_loans(LoanStatus.ACTIVE):
            pending = loan.pending_repayment
            if pending is not None and pending.request_id:
                self._watch_repayment(loan, pending)
                resumed += 1
        logger.info("Resumed request watches", extra={"count": resumed})
        return resumed

    # ------------------------------------------------------------------
    # Borrower operations

    async def apply_for_loan(self, borrower: str, amount, term_days: int, collateral_amount) -> LoanApplication:
        application = await self.state_machine.create_application(borrower, amount, term_days, collateral_amount)
        self._watch_lock(application.loan)
        return application

    async def request_repayment(self, loan_id: str, amount, borrower: str) -> Tuple[Loan, Repayment]:
        loan, repayment = await self.state_machine.request_repayment(loan_id, amount, borrower)
        self._watch_repayment(loan, repayment)
        return loan, repayment

    def get_loan(self, loan_id: str) -> Loan:
        return self.state_machine.get_loan(loan_id)

    def list_loans_for_borrower(self, borrower: str) -> List[Loan]:
        return self.state_machine.list_loans_for_borrower(borrower)

    async def get_credit_score(self, address: str, refresh: bool = False) -> Tuple[Borrower, RiskProfile]:
        borrower = await self.state_machine.resolve_score(address, refresh=refresh)
        return borrower, classify(borrower.credit_score, self.state_machine.bands)

    # ------------------------------------------------------------------
    # Confirmations (direct calls; the watcher uses the same state machine entry points)

    async def confirm_lock(self, loan_id: str, request_id: str, signer_address: str) -> Loan:
        loan = await self.state_machine.on_lock_confirmed(loan_id, request_id, signer_address)
        self._drop_watch(lock_context(loan_id), request_id)
        return loan

    async def reject_lock(self, loan_id: str, reason: Optional[str] = None) -> Loan:
        if reason:
            loan = await self.state_machine.on_lock_rejected(loan_id, reason=reason)
        else:
            loan = await self.state_machine.reject_application(loan_id)
        self._drop_watch(lock_context(loan_id), loan.lock_request_id)
        return loan

    async def confirm_repayment(self, loan_id: str, repayment_id: str, request_id: str) -> Loan:
        loan = await self.state_machine.on_repayment_confirmed(loan_id, repayment_id, request_id)
        self._drop_watch(repayment_context(loan_id), request_id)
        return loan

    async def reject_repayment(self, loan_id: str, repayment_id: str) -> Loan:
        loan = await self.state_machine.on_repayment_rejected(loan_id, repayment_id)
        repayment = loan.find_repayment(repayment_id)
        self._drop_watch(repayment_context(loan_id), repayment.request_id if repayment else None)
        return loan

    async def handle_signing_event(
        self,
        request_id: str,
        signed: bool,
        signer_address: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> bool:
        """Push path from the signing platform; True if it resolved a watched request"""
        status = RequestStatus(
            request_id=request_id,
            state=RequestState.CONFIRMED if signed else RequestState.REJECTED,
            signer_address=signer_address,
            tx_hash=tx_hash,
        )
        delivered = await self.watcher.notify(status)
        if not delivered:
            logger.info("Signing event for unwatched request ignored", extra={"request_id": request_id})
        return delivered

    # ------------------------------------------------------------------
    # Operator operations

    async def sweep_defaults(self, now=None) -> List[str]:
        return await self.sweeper.sweep(now)

    async def force_default(self, loan_id: str, reason: str) -> Loan:
        return await self.state_machine.force_default(loan_id, reason)

    async def reconcile_collateral(self, loan_id: str) -> Loan:
        return await self.state_machine.reconcile_collateral(loan_id)

    async def retry_disbursement(self, loan_id: str) -> Loan:
        return await self.state_machine.retry_disbursement(loan_id)

    def get_metrics(self) -> PortfolioMetrics:
        loans = self.state_machine.list_loans()
        return compute_portfolio_metrics(loans, categories=[band.label for band in self.state_machine.bands])

    # ------------------------------------------------------------------
    # Watches

    def _watch_lock(self, loan: Loan) -> SubscriptionHandle:
        loan_id, request_id = loan.id, loan.lock_request_id

        async def confirm(status: RequestStatus) -> None:
            if not status.signer_address:
                # Push events may omit the signer; ask the platform
                status = await self.state_machine.gateway.request_status(status.request_id)
            await self.state_machine.on_lock_confirmed(loan_id, status.request_id, status.signer_address or "")

        async def confirmed(status: RequestStatus) -> None:
            await self._apply_event("lock confirmation", loan_id, confirm(status), rewatch)

        async def rejected(status: RequestStatus) -> None:
            await self._apply_event(
                "lock rejection", loan_id, self.state_machine.on_lock_rejected(loan_id), rewatch
            )

        def rewatch() -> bool:
            current = self.state_machine.get_loan(loan_id)
            if (
                current.status != LoanStatus.PENDING
                or current.disbursement_status != DisbursementStatus.NOT_STARTED
                or current.lock_request_id != request_id
            ):
                return False
            self._watch_lock(current)
            return True

        return self.watcher.subscribe(request_id, lock_context(loan_id), confirmed, rejected)

    def _watch_repayment(self, loan: Loan, repayment: Repayment) -> SubscriptionHandle:
        loan_id, repayment_id = loan.id, repayment.id

        async def confirmed(status: RequestStatus) -> None:
            await self._apply_event(
                "repayment confirmation",
                loan_id,
                self.state_machine.on_repayment_confirmed(loan_id, repayment_id, status.request_id),
                rewatch,
            )

        async def rejected(status: RequestStatus) -> None:
            await self._apply_event(
                "repayment rejection",
                loan_id,
                self.state_machine.on_repayment_rejected(loan_id, repayment_id),
                rewatch,
            )

        def rewatch() -> bool:
            current = self.state_machine.get_loan(loan_id)
            pending = current.pending_repayment
            if current.status != LoanStatus.ACTIVE or pending is None or pending.id != repayment_id:
                return False
            self._watch_repayment(current, pending)
            return True

        return self.watcher.subscribe(repayment.request_id, repayment_context(loan_id), confirmed, rejected)

    @staticmethod
    async def _apply_event(event: str, loan_id: str, transition, rewatch: Callable[[], bool]) -> None:
        """
        Run a watcher-triggered transition.

        A downstream failure or a signature not yet settled on ledger leaves
        the loan in its source state; the request is watched again so a
        later push or poll can still apply it.
        """
        try:
            await transition
        except StateConflictError as e:
            # Already applied through the other path
            logger.info(f"{event.capitalize()} already applied", extra={"loan_id": loan_id, "reason": str(e)})
        except DisbursementFailedError as e:
            # Logged CRITICAL by the state machine; loan awaits operator retry
            logger.warning(f"{event.capitalize()} left loan awaiting disbursement", extra={"loan_id": loan_id, "reason": e.reason})
        except (DownstreamError, SettlementNotConfirmedError) as e:
            rewatched = rewatch()
            logger.warning(
                f"{event.capitalize()} not applied yet: {e}",
                extra={"loan_id": loan_id, "code": e.code, "rewatched": rewatched},
            )
        except DomainException as e:
            logger.error(f"{event.capitalize()} not applied: {e}", extra={"loan_id": loan_id, "code": e.code})

    def _drop_watch(self, context: str, request_id: Optional[str]) -> None:
        handle = self.watcher.get(context)
        if handle is not None and handle.request_id == request_id:
            handle.cancel()


