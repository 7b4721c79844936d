"""Loan lifecycle state machine - guarded, persisted transitions

    (none) --apply--> PENDING --lock confirmed + disbursed--> ACTIVE
                         |                                    |  repay / confirm, repeated
                         +--lock rejected--> REJECTED         +--confirmed total >= owed--> REPAID
                                                              +--past due + grace / forced--> DEFAULTED

Every transition runs under the loan's lock, re-reads the loan from the
store, checks the source state, and commits before returning. Waiting for
a wallet signature never happens here; the watcher calls back in.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, sessionmaker

from loan_orchestrator.config import settings
from loan_orchestrator.domain.exceptions import (
    AuthorizationMismatchError,
    DefaultNotDueError,
    DisbursementFailedError,
    DownstreamError,
    InvalidAmountError,
    InvalidEvaluationTimeError,
    NotFoundError,
    RepaymentExceedsBalanceError,
    RepaymentPendingError,
    RequestMismatchError,
    SettlementFailedError,
    SettlementNotConfirmedError,
    StateConflictError,
    ValidationError,
)
from loan_orchestrator.domain.models import (
    Borrower,
    CollateralClaim,
    DisbursementStatus,
    Loan,
    LoanApplication,
    LoanStatus,
    Repayment,
    RiskBand,
)
from loan_orchestrator.domain.ports import CollateralGateway, ScoreOracle
from loan_orchestrator.domain.risk import bands_from_config, classify
from loan_orchestrator.domain.terms import (
    build_default_record,
    confirmed_total,
    outstanding_balance,
    to_amount,
    total_owed,
    validate_application,
)
from loan_orchestrator.infrastructure.database.repositories import BorrowerRepository, LoanRepository
from loan_orchestrator.infrastructure.observability.logging import log_transition
from loan_orchestrator.infrastructure.observability.metrics import (
    disbursement_failure_counter,
    record_application,
    record_transition,
)
from loan_orchestrator.services.locks import LoanLocks

logger = logging.getLogger(__name__)

# Ledger transactions the borrower signs
LOCK_TRANSACTION = "EscrowCreate"
PAYMENT_TRANSACTION = "Payment"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoanStateMachine:
    """Owns every write to a Loan"""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: CollateralGateway,
        score_oracle: ScoreOracle,
        bands: Optional[Sequence[RiskBand]] = None,
        grace_period: Optional[timedelta] = None,
        score_ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now,
        locks: Optional[LoanLocks] = None,
    ):
        self._session_factory = session_factory
        self.gateway = gateway
        self.score_oracle = score_oracle
        self.bands = list(bands) if bands is not None else bands_from_config(settings.risk_bands)
        self.grace_period = grace_period if grace_period is not None else timedelta(days=settings.grace_period_days)
        self.score_ttl = score_ttl if score_ttl is not None else timedelta(seconds=settings.score_ttl_seconds)
        self.clock = clock
        self.locks = locks or LoanLocks()

    # ------------------------------------------------------------------
    # Unit of work helpers

    @contextmanager
    def _unit_of_work(self) -> Iterator[Tuple[Session, LoanRepository]]:
        db = self._session_factory()
        try:
            yield db, LoanRepository(db)
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _load(repo: LoanRepository, loan_id: str) -> Loan:
        loan = repo.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    @staticmethod
    def _require_status(loan: Loan, expected: LoanStatus, action: str) -> None:
        if loan.status != expected:
            raise StateConflictError(
                f"Cannot {action} loan {loan.id} with status {loan.status.value} (expected {expected.value})"
            )

    @staticmethod
    def _transition(loan: Loan, to_status: LoanStatus, reason: Optional[str] = None) -> None:
        from_status = loan.status
        loan.status = to_status
        record_transition(from_status.value, to_status.value)
        log_transition(loan.id, loan.borrower, from_status.value, to_status.value, reason)

    # ------------------------------------------------------------------
    # Scores

    async def resolve_score(self, borrower: str, refresh: bool = False) -> Borrower:
        """
        Return the borrower with a usable score.

        The cached score is used while younger than score_ttl; otherwise the
        oracle is asked. Only the score is cached: the risk profile is
        always derived from it on demand.

        Raises:
            ScoreUnavailableError: Oracle failed and no fresh score is cached
        """
        now = self.clock()
        with self._session_factory() as db:
            borrowers = BorrowerRepository(db)
            profile = borrowers.get_or_create(borrower, now)
            db.commit()

            fresh = (
                profile.credit_score is not None
                and profile.last_score_update is not None
                and now - profile.last_score_update < self.score_ttl
            )
            if fresh and not refresh:
                return profile

            score = await self.score_oracle.get_score(borrower)
            borrowers.update_score(borrower, score, now)
            db.commit()
            return borrowers.get(borrower)

    # ------------------------------------------------------------------
    # PENDING

    async def create_application(
        self,
        borrower: str,
        amount,
        term_days: int,
        collateral_amount,
    ) -> LoanApplication:
        """
        Validate an application and open a PENDING loan with its collateral
        lock request.

        The loan row and the lock request id are committed together: if the
        gateway cannot create the lock request the loan is rolled back, so a
        persisted loan always has a lock request.
        """
        try:
            principal = to_amount(amount)
            collateral = to_amount(collateral_amount)
            if not isinstance(term_days, int) or isinstance(term_days, bool):
                raise InvalidAmountError(f"Loan term must be a whole number of days: {term_days!r}")

            scored = await self.resolve_score(borrower)
            profile = classify(scored.credit_score, self.bands)
            validate_application(profile, principal, term_days, collateral)
        except ValidationError:
            record_application("rejected")
            raise

        if not (Decimal("0") <= profile.interest_rate < Decimal("1")):
            raise ValueError(f"Interest rate must be a decimal fraction, got {profile.interest_rate}")

        loan = Loan(
            id=str(uuid.uuid4()),
            borrower=borrower,
            amount=principal,
            collateral_amount=collateral,
            interest_rate=profile.interest_rate,
            term_days=term_days,
            created_at=self.clock(),
            risk_category=profile.category,
            risk_score=profile.score,
        )

        with self._unit_of_work() as (db, repo):
            repo.add(loan)
            try:
                loan.lock_request_id = await self.gateway.create_lock_request(borrower, collateral, term_days)
            except DownstreamError:
                record_application("error")
                logger.error(
                    "Lock request failed, application rolled back",
                    extra={"loan_id": loan.id, "borrower": borrower},
                )
                raise
            repo.save(loan)
            db.commit()

        record_application("accepted")
        log_transition(loan.id, borrower, "NONE", LoanStatus.PENDING.value, profile.category)
        return LoanApplication(loan=loan, profile=profile)

    async def on_lock_confirmed(self, loan_id: str, request_id: str, signer_address: str) -> Loan:
        """
        Collateral lock signed: verify it independently, disburse the full
        principal, and activate.

        The lock and an IN_PROGRESS disbursement marker are committed before
        the payout is submitted, so a crash or failure mid-payout leaves the
        loan flagged for review instead of eligible for a second payout.

        Raises:
            DisbursementFailedError: Lock confirmed but payout failed (operator review)
        """
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.PENDING, "confirm lock for")
                if loan.disbursement_status != DisbursementStatus.NOT_STARTED:
                    raise StateConflictError(
                        f"Lock for loan {loan_id} already confirmed (disbursement {loan.disbursement_status.value})"
                    )
                if request_id != loan.lock_request_id:
                    raise RequestMismatchError(f"Request {request_id} is not the lock request of loan {loan_id}")
                if signer_address != loan.borrower:
                    raise AuthorizationMismatchError(f"Lock for loan {loan_id} signed by {signer_address}, not the borrower")

                verification = await self.gateway.verify_request(
                    request_id, expected_amount=loan.collateral_amount, transaction_type=LOCK_TRANSACTION
                )
                if not verification.confirmed:
                    raise SettlementNotConfirmedError(f"Lock request {request_id} is not settled on ledger")
                if verification.signer_address and verification.signer_address != loan.borrower:
                    raise AuthorizationMismatchError(
                        f"Ledger shows lock for loan {loan_id} signed by {verification.signer_address}"
                    )

                loan.lock_tx_hash = verification.settlement_tx_hash
                loan.lock_reference = (
                    str(verification.ledger_sequence)
                    if verification.ledger_sequence is not None
                    else verification.settlement_tx_hash
                )
                loan.disbursement_status = DisbursementStatus.IN_PROGRESS
                repo.save(loan)
                db.commit()

                return await self._disburse(db, repo, loan)

    async def retry_disbursement(self, loan_id: str) -> Loan:
        """Operator-triggered single payout attempt for a loan stuck after lock confirmation"""
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.PENDING, "retry disbursement for")
                if loan.disbursement_status not in (DisbursementStatus.FAILED, DisbursementStatus.IN_PROGRESS):
                    raise StateConflictError(
                        f"Loan {loan_id} has no failed disbursement (status {loan.disbursement_status.value})"
                    )
                logger.warning(
                    "Operator disbursement retry",
                    extra={"loan_id": loan_id, "previous_error": loan.disbursement_error},
                )
                loan.disbursement_status = DisbursementStatus.IN_PROGRESS
                loan.disbursement_error = None
                repo.save(loan)
                db.commit()

                return await self._disburse(db, repo, loan)

    async def _disburse(self, db: Session, repo: LoanRepository, loan: Loan) -> Loan:
        try:
            tx_hash = await self.gateway.disburse(loan.borrower, loan.amount)
        except SettlementFailedError as e:
            loan.disbursement_status = DisbursementStatus.FAILED
            loan.disbursement_error = str(e)
            repo.save(loan)
            db.commit()
            disbursement_failure_counter.inc()
            logger.critical(
                "Disbursement failed after confirmed collateral lock; operator review required",
                extra={"loan_id": loan.id, "borrower": loan.borrower, "amount": str(loan.amount), "error": str(e)},
            )
            raise DisbursementFailedError(loan.id, str(e)) from e

        now = self.clock()
        loan.disbursement_status = DisbursementStatus.COMPLETED
        loan.disbursement_tx_hash = tx_hash
        loan.activated_at = now
        loan.due_date = now + timedelta(days=loan.term_days)
        self._transition(loan, LoanStatus.ACTIVE, "disbursed")
        repo.save(loan)
        db.commit()
        return loan

    async def on_lock_rejected(self, loan_id: str, reason: str = "collateral lock rejected") -> Loan:
        """PENDING -> REJECTED; not allowed once the lock has been confirmed"""
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.PENDING, "reject")
                if loan.disbursement_status != DisbursementStatus.NOT_STARTED:
                    raise StateConflictError(f"Lock for loan {loan_id} is already confirmed")
                self._transition(loan, LoanStatus.REJECTED, reason)
                repo.save(loan)
                db.commit()
                return loan

    async def reject_application(self, loan_id: str) -> Loan:
        return await self.on_lock_rejected(loan_id, reason="rejected by operator")

    # ------------------------------------------------------------------
    # ACTIVE: repayments

    async def request_repayment(self, loan_id: str, amount, borrower: str) -> Tuple[Loan, Repayment]:
        """
        Open a repayment attempt and its payment request.

        Only one unconfirmed attempt may exist per loan, so a payment can
        never be counted twice.
        """
        value = to_amount(amount)
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.ACTIVE, "repay")
                if borrower != loan.borrower:
                    raise AuthorizationMismatchError(f"{borrower} is not the borrower of loan {loan_id}")
                if value <= 0:
                    raise InvalidAmountError("Repayment amount must be positive")
                outstanding = outstanding_balance(loan)
                if value > outstanding:
                    raise RepaymentExceedsBalanceError(
                        f"Repayment {value} exceeds outstanding balance {outstanding}"
                    )
                if loan.pending_repayment is not None:
                    raise RepaymentPendingError(
                        f"Repayment {loan.pending_repayment.id} on loan {loan_id} is still awaiting confirmation"
                    )

                repayment = Repayment(id=str(uuid.uuid4()), amount=value, requested_at=self.clock())
                loan.repayments.append(repayment)
                repo.save(loan)

                repayment.request_id = await self.gateway.create_payment_request(loan.borrower, value, loan.id)
                repo.save(loan)
                db.commit()
                return loan, repayment

    async def on_repayment_confirmed(self, loan_id: str, repayment_id: str, request_id: str) -> Loan:
        """
        Count a verified repayment; settle the loan once confirmed
        repayments cover principal plus interest.

        Collateral release after REPAID is best effort: a failure is stored
        on the loan for reconciliation and does not undo the transition.
        """
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.ACTIVE, "confirm repayment for")
                repayment = loan.find_repayment(repayment_id)
                if repayment is None:
                    raise NotFoundError(f"Repayment {repayment_id} not found on loan {loan_id}")
                if repayment.request_id != request_id:
                    raise RequestMismatchError(f"Request {request_id} does not belong to repayment {repayment_id}")
                if not repayment.is_pending:
                    raise StateConflictError(f"Repayment {repayment_id} is already resolved")

                verification = await self.gateway.verify_request(
                    request_id, expected_amount=repayment.amount, transaction_type=PAYMENT_TRANSACTION
                )
                if not verification.confirmed:
                    raise SettlementNotConfirmedError(f"Payment request {request_id} is not settled on ledger")
                if verification.signer_address and verification.signer_address != loan.borrower:
                    raise AuthorizationMismatchError(
                        f"Payment {request_id} signed by {verification.signer_address}, not the borrower"
                    )

                now = self.clock()
                repayment.confirmed = True
                repayment.settlement_tx_hash = verification.settlement_tx_hash
                repayment.resolved_at = now

                repaid = confirmed_total(loan.repayments)
                if repaid >= total_owed(loan):
                    loan.repaid_at = now
                    self._transition(loan, LoanStatus.REPAID, "fully repaid")
                repo.save(loan)
                db.commit()

                if loan.status == LoanStatus.REPAID:
                    await self._release(db, repo, loan)
                return loan

    async def on_repayment_rejected(self, loan_id: str, repayment_id: str) -> Loan:
        """Borrower declined the payment; the loan stays ACTIVE and may be repaid again"""
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.ACTIVE, "reject repayment for")
                repayment = loan.find_repayment(repayment_id)
                if repayment is None:
                    raise NotFoundError(f"Repayment {repayment_id} not found on loan {loan_id}")
                if not repayment.is_pending:
                    raise StateConflictError(f"Repayment {repayment_id} is already resolved")

                repayment.rejected = True
                repayment.resolved_at = self.clock()
                repo.save(loan)
                db.commit()
                logger.info("Repayment rejected", extra={"loan_id": loan_id, "repayment_id": repayment_id})
                return loan

    async def _release(self, db: Session, repo: LoanRepository, loan: Loan) -> None:
        try:
            if not loan.lock_reference:
                raise DownstreamError("No collateral lock reference recorded")
            tx_hash = await self.gateway.release_collateral(loan.lock_reference, loan.borrower)
        except DownstreamError as e:
            loan.release_error = str(e)
            logger.error(
                "Collateral release failed; loan stays REPAID pending reconciliation",
                extra={"loan_id": loan.id, "borrower": loan.borrower, "error": str(e)},
            )
        else:
            loan.collateral_released = True
            loan.collateral_released_at = self.clock()
            loan.release_tx_hash = tx_hash
            loan.release_error = None
        repo.save(loan)
        db.commit()

    # ------------------------------------------------------------------
    # ACTIVE: default

    def as_of(self, now: Optional[datetime] = None) -> datetime:
        """
        Moment a default evaluation runs at: the clock when omitted, naive
        values read as UTC. Never later than the clock.

        Raises:
            InvalidEvaluationTimeError: now is later than the clock
        """
        current = self.clock()
        if now is None:
            return current
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        if now > current:
            raise InvalidEvaluationTimeError(
                f"Cannot evaluate defaults as of {now.isoformat()}, later than {current.isoformat()}"
            )
        return now

    def default_cutoff(self, now: datetime) -> datetime:
        """Loans due at or before this moment are past their grace period"""
        return now - self.grace_period

    async def evaluate_default(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """
        Default an ACTIVE loan that is past due date plus grace period.

        Raises:
            DefaultNotDueError: Still inside the due date or grace period
            InvalidEvaluationTimeError: now is later than the clock
        """
        now = self.as_of(now)
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.ACTIVE, "default")
                deadline = loan.due_date + self.grace_period
                if now < deadline:
                    raise DefaultNotDueError(f"Loan {loan_id} cannot default before {deadline.isoformat()}")
                return await self._default(db, repo, loan, "Past due date and grace period", now)

    async def force_default(self, loan_id: str, reason: str) -> Loan:
        """Operator override: default an ACTIVE loan regardless of its due date"""
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                self._require_status(loan, LoanStatus.ACTIVE, "default")
                return await self._default(db, repo, loan, reason, self.clock())

    async def _default(self, db: Session, repo: LoanRepository, loan: Loan, reason: str, now: datetime) -> Loan:
        claim = await self._claim(loan)
        loan.default_record = build_default_record(loan, claim, reason, now)
        loan.defaulted_at = now
        self._transition(loan, LoanStatus.DEFAULTED, reason)
        repo.save(loan)
        db.commit()
        return loan

    async def _claim(self, loan: Loan) -> CollateralClaim:
        """A claim failure is recorded, never raised: defaulting must not block on it"""
        try:
            if not loan.lock_reference:
                raise DownstreamError("No collateral lock reference recorded")
            return CollateralClaim.claimed(await self.gateway.claim_collateral(loan.borrower, loan.lock_reference))
        except DownstreamError as e:
            logger.error(
                "Collateral claim failed; defaulting without claim",
                extra={"loan_id": loan.id, "borrower": loan.borrower, "error": str(e)},
            )
            return CollateralClaim.failed(str(e))

    # ------------------------------------------------------------------
    # Reconciliation

    async def reconcile_collateral(self, loan_id: str) -> Loan:
        """Retry a failed collateral release (REPAID) or claim (DEFAULTED); no-op otherwise"""
        async with self.locks.hold(loan_id):
            with self._unit_of_work() as (db, repo):
                loan = self._load(repo, loan_id)
                if loan.status == LoanStatus.REPAID and not loan.collateral_released:
                    await self._release(db, repo, loan)
                elif (
                    loan.status == LoanStatus.DEFAULTED
                    and loan.default_record is not None
                    and not loan.default_record.claim.succeeded
                ):
                    loan.default_record.claim = await self._claim(loan)
                    repo.save(loan)
                    db.commit()
                return loan

    # ------------------------------------------------------------------
    # Reads

    def get_loan(self, loan_id: str) -> Loan:
        with self._unit_of_work() as (_, repo):
            return self._load(repo, loan_id)

    def list_loans_for_borrower(self, borrower: str) -> List[Loan]:
        with self._unit_of_work() as (_, repo):
            return repo.list_by_borrower(borrower)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        with self._unit_of_work() as (_, repo):
            return repo.list_by_status(status) if status else repo.list_all()

    def list_default_candidates(self, now: datetime) -> List[str]:
        now = self.as_of(now)
        with self._unit_of_work() as (_, repo):
            return repo.list_overdue_ids(self.default_cutoff(now))
