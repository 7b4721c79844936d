"""Data access layer for loans and borrowers"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from sqlalchemy.orm import Session
from loan_orchestrator.infrastructure.database.models import BorrowerRecord, LoanRecord, RepaymentRecord
from loan_orchestrator.domain.models import (
    Borrower,
    ClaimStatus,
    CollateralClaim,
    DefaultRecord,
    DisbursementStatus,
    Loan,
    LoanStatus,
    Repayment,
)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Some backends (SQLite) drop tzinfo; stored values are always UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


class LoanRepository:
    """Repository for loans and their repayment ledger"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, loan: Loan) -> None:
        """Stage a new loan; the caller owns the commit"""
        record = LoanRecord(id=loan.id)
        self._apply(record, loan)
        self.db.add(record)
        self.db.flush()  # Surface constraint errors before external calls

    def save(self, loan: Loan) -> None:
        """Write domain state back to the existing row"""
        record = self.db.get(LoanRecord, loan.id)
        if record is None:
            self.add(loan)
            return
        self._apply(record, loan)
        self.db.flush()

    def get(self, loan_id: str) -> Optional[Loan]:
        record = self.db.get(LoanRecord, loan_id)
        return self._to_domain(record) if record else None

    def list_by_borrower(self, borrower: str) -> List[Loan]:
        records = (
            self.db.query(LoanRecord)
            .filter(LoanRecord.borrower == borrower)
            .order_by(LoanRecord.created_at.desc())
            .all()
        )
        return [self._to_domain(r) for r in records]

    def list_by_status(self, status: LoanStatus) -> List[Loan]:
        records = (
            self.db.query(LoanRecord)
            .filter(LoanRecord.status == status.value)
            .order_by(LoanRecord.created_at)
            .all()
        )
        return [self._to_domain(r) for r in records]

    def list_overdue_ids(self, cutoff: datetime) -> List[str]:
        """IDs of ACTIVE loans whose due date is at or before cutoff"""
        rows = (
            self.db.query(LoanRecord.id)
            .filter(LoanRecord.status == LoanStatus.ACTIVE.value)
            .filter(LoanRecord.due_date <= cutoff)
            .order_by(LoanRecord.due_date)
            .all()
        )
        return [row.id for row in rows]

    def list_all(self) -> List[Loan]:
        return [self._to_domain(r) for r in self.db.query(LoanRecord).all()]

    @staticmethod
    def _apply(record: LoanRecord, loan: Loan) -> None:
        record.borrower = loan.borrower
        record.status = loan.status.value
        record.amount = loan.amount
        record.collateral_amount = loan.collateral_amount
        record.interest_rate = loan.interest_rate
        record.term_days = loan.term_days
        record.risk_category = loan.risk_category
        record.risk_score = loan.risk_score

        record.created_at = loan.created_at
        record.activated_at = loan.activated_at
        record.due_date = loan.due_date
        record.repaid_at = loan.repaid_at
        record.defaulted_at = loan.defaulted_at

        record.lock_request_id = loan.lock_request_id
        record.lock_tx_hash = loan.lock_tx_hash
        record.lock_reference = loan.lock_reference

        record.disbursement_status = loan.disbursement_status.value
        record.disbursement_tx_hash = loan.disbursement_tx_hash
        record.disbursement_error = loan.disbursement_error

        record.collateral_released = loan.collateral_released
        record.collateral_released_at = loan.collateral_released_at
        record.release_tx_hash = loan.release_tx_hash
        record.release_error = loan.release_error

        dr = loan.default_record
        if dr is not None:
            record.default_total_owed = dr.total_owed
            record.default_total_repaid = dr.total_repaid
            record.default_remaining_owed = dr.remaining_owed
            record.default_collateral_claimed = dr.collateral_claimed
            record.default_uncovered_loss = dr.uncovered_loss
            record.default_reason = dr.reason
            record.claim_status = dr.claim.status.value
            record.claim_tx_hash = dr.claim.tx_hash
            record.claim_error = dr.claim.error

        # Repayments are append-only; match existing rows by id
        existing = {r.id: r for r in record.repayments}
        for sequence, repayment in enumerate(loan.repayments):
            row = existing.pop(repayment.id, None)
            if row is None:
                row = RepaymentRecord(id=repayment.id, sequence=sequence)
                record.repayments.append(row)
            row.amount = repayment.amount
            row.request_id = repayment.request_id
            row.confirmed = repayment.confirmed
            row.rejected = repayment.rejected
            row.settlement_tx_hash = repayment.settlement_tx_hash
            row.requested_at = repayment.requested_at
            row.resolved_at = repayment.resolved_at
        # Rows absent from the domain object were never committed (rolled-back requests)
        for stale in existing.values():
            record.repayments.remove(stale)

    @staticmethod
    def _to_domain(record: LoanRecord) -> Loan:
        default_record = None
        if record.claim_status is not None:
            default_record = DefaultRecord(
                total_owed=_decimal(record.default_total_owed),
                total_repaid=_decimal(record.default_total_repaid),
                remaining_owed=_decimal(record.default_remaining_owed),
                collateral_claimed=_decimal(record.default_collateral_claimed),
                uncovered_loss=_decimal(record.default_uncovered_loss),
                claim=CollateralClaim(
                    status=ClaimStatus(record.claim_status),
                    tx_hash=record.claim_tx_hash,
                    error=record.claim_error,
                ),
                reason=record.default_reason or "",
                defaulted_at=_utc(record.defaulted_at),
            )

        return Loan(
            id=record.id,
            borrower=record.borrower,
            amount=_decimal(record.amount),
            collateral_amount=_decimal(record.collateral_amount),
            interest_rate=_decimal(record.interest_rate),
            term_days=record.term_days,
            created_at=_utc(record.created_at),
            status=LoanStatus(record.status),
            risk_category=record.risk_category,
            risk_score=record.risk_score,
            activated_at=_utc(record.activated_at),
            due_date=_utc(record.due_date),
            repaid_at=_utc(record.repaid_at),
            defaulted_at=_utc(record.defaulted_at),
            lock_request_id=record.lock_request_id,
            lock_tx_hash=record.lock_tx_hash,
            lock_reference=record.lock_reference,
            disbursement_status=DisbursementStatus(record.disbursement_status),
            disbursement_tx_hash=record.disbursement_tx_hash,
            disbursement_error=record.disbursement_error,
            collateral_released=bool(record.collateral_released),
            collateral_released_at=_utc(record.collateral_released_at),
            release_tx_hash=record.release_tx_hash,
            release_error=record.release_error,
            repayments=[
                Repayment(
                    id=r.id,
                    amount=_decimal(r.amount),
                    requested_at=_utc(r.requested_at),
                    request_id=r.request_id,
                    confirmed=bool(r.confirmed),
                    rejected=bool(r.rejected),
                    settlement_tx_hash=r.settlement_tx_hash,
                    resolved_at=_utc(r.resolved_at),
                )
                for r in record.repayments
            ],
            default_record=default_record,
        )


class BorrowerRepository:
    """Repository for borrower profiles"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, wallet_address: str) -> Optional[Borrower]:
        record = self.db.get(BorrowerRecord, wallet_address)
        return self._to_domain(record) if record else None

    def get_or_create(self, wallet_address: str, now: datetime) -> Borrower:
        """Borrowers are created lazily on first application or score lookup"""
        record = self.db.get(BorrowerRecord, wallet_address)
        if record is None:
            record = BorrowerRecord(wallet_address=wallet_address, created_at=now)
            self.db.add(record)
            self.db.flush()
        return self._to_domain(record)

    def update_score(self, wallet_address: str, score: float, updated_at: datetime) -> None:
        record = self.db.get(BorrowerRecord, wallet_address)
        if record is None:
            record = BorrowerRecord(wallet_address=wallet_address, created_at=updated_at)
            self.db.add(record)
        record.credit_score = score
        record.last_score_update = updated_at
        self.db.flush()

    def _to_domain(self, record: BorrowerRecord) -> Borrower:
        loan_ids = [
            row.id
            for row in self.db.query(LoanRecord.id)
            .filter(LoanRecord.borrower == record.wallet_address)
            .order_by(LoanRecord.created_at)
            .all()
        ]
        return Borrower(
            wallet_address=record.wallet_address,
            created_at=_utc(record.created_at),
            credit_score=record.credit_score,
            last_score_update=_utc(record.last_score_update),
            loan_ids=loan_ids,
        )
