"""Pydantic schemas for API request/response validation

Amounts are XRP decimals and serialize as strings, so no precision is lost
in JSON.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from loan_orchestrator.domain.models import Borrower, Loan, LoanApplication, PortfolioMetrics, Repayment, RiskProfile
from loan_orchestrator.domain.terms import confirmed_total, outstanding_balance, total_owed


class ApplicationRequest(BaseModel):
    """Request body for POST /v1/loans"""

    borrower: str = Field(..., min_length=1, description="Borrower wallet address")
    amount: Decimal = Field(..., description="Requested principal in XRP")
    term_days: int = Field(..., description="Loan term in days")
    collateral_amount: Decimal = Field(..., description="Collateral to lock in escrow, in XRP")


class RepaymentRequest(BaseModel):
    """Request body for POST /v1/loans/{loan_id}/repayments"""

    borrower: str = Field(..., min_length=1)
    amount: Decimal


class LockConfirmation(BaseModel):
    request_id: str = Field(..., min_length=1)
    signer_address: str = Field(..., min_length=1)


class RequestConfirmation(BaseModel):
    request_id: str = Field(..., min_length=1)


class RejectionRequest(BaseModel):
    reason: Optional[str] = None


class DefaultRequest(BaseModel):
    reason: str = Field("Defaulted by operator", min_length=1)


class SweepRequest(BaseModel):
    now: Optional[datetime] = Field(None, description="Evaluate as of this instant, not later than now (defaults to now; naive values are UTC)")


class RiskProfileSchema(BaseModel):
    category: str
    score: float
    interest_rate: Decimal
    collateral_ratio: Decimal
    max_term_days: int
    max_amount: Decimal
    eligible: bool

    @classmethod
    def from_domain(cls, profile: RiskProfile) -> "RiskProfileSchema":
        return cls(
            category=profile.category,
            score=profile.score,
            interest_rate=profile.interest_rate,
            collateral_ratio=profile.collateral_ratio,
            max_term_days=profile.max_term_days,
            max_amount=profile.max_amount,
            eligible=profile.eligible,
        )


class RepaymentSchema(BaseModel):
    repayment_id: str
    amount: Decimal
    request_id: Optional[str] = None
    confirmed: bool
    rejected: bool
    settlement_tx_hash: Optional[str] = None
    requested_at: datetime
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, repayment: Repayment) -> "RepaymentSchema":
        return cls(
            repayment_id=repayment.id,
            amount=repayment.amount,
            request_id=repayment.request_id,
            confirmed=repayment.confirmed,
            rejected=repayment.rejected,
            settlement_tx_hash=repayment.settlement_tx_hash,
            requested_at=repayment.requested_at,
            resolved_at=repayment.resolved_at,
        )


class DefaultRecordSchema(BaseModel):
    total_owed: Decimal
    total_repaid: Decimal
    remaining_owed: Decimal
    collateral_claimed: Decimal
    uncovered_loss: Decimal
    claim_status: str
    claim_tx_hash: Optional[str] = None
    claim_error: Optional[str] = None
    reason: str
    defaulted_at: datetime


class LoanResponse(BaseModel):
    """Loan as seen by borrowers and operators"""

    loan_id: str
    borrower: str
    status: str
    amount: Decimal
    collateral_amount: Decimal
    interest_rate: Decimal
    term_days: int
    risk_category: Optional[str] = None
    risk_score: Optional[float] = None
    total_owed: Decimal
    total_repaid: Decimal
    outstanding_balance: Decimal
    created_at: datetime
    activated_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    repaid_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    lock_request_id: Optional[str] = None
    lock_tx_hash: Optional[str] = None
    disbursement_status: str
    disbursement_tx_hash: Optional[str] = None
    disbursement_error: Optional[str] = None
    collateral_released: bool
    release_tx_hash: Optional[str] = None
    release_error: Optional[str] = None
    repayments: List[RepaymentSchema] = []
    default_record: Optional[DefaultRecordSchema] = None

    @classmethod
    def from_domain(cls, loan: Loan) -> "LoanResponse":
        record = None
        if loan.default_record is not None:
            d = loan.default_record
            record = DefaultRecordSchema(
                total_owed=d.total_owed,
                total_repaid=d.total_repaid,
                remaining_owed=d.remaining_owed,
                collateral_claimed=d.collateral_claimed,
                uncovered_loss=d.uncovered_loss,
                claim_status=d.claim.status.value,
                claim_tx_hash=d.claim.tx_hash,
                claim_error=d.claim.error,
                reason=d.reason,
                defaulted_at=d.defaulted_at,
            )
        return cls(
            loan_id=loan.id,
            borrower=loan.borrower,
            status=loan.status.value,
            amount=loan.amount,
            collateral_amount=loan.collateral_amount,
            interest_rate=loan.interest_rate,
            term_days=loan.term_days,
            risk_category=loan.risk_category,
            risk_score=loan.risk_score,
            total_owed=total_owed(loan),
            total_repaid=confirmed_total(loan.repayments),
            outstanding_balance=outstanding_balance(loan),
            created_at=loan.created_at,
            activated_at=loan.activated_at,
            due_date=loan.due_date,
            repaid_at=loan.repaid_at,
            defaulted_at=loan.defaulted_at,
            lock_request_id=loan.lock_request_id,
            lock_tx_hash=loan.lock_tx_hash,
            disbursement_status=loan.disbursement_status.value,
            disbursement_tx_hash=loan.disbursement_tx_hash,
            disbursement_error=loan.disbursement_error,
            collateral_released=loan.collateral_released,
            release_tx_hash=loan.release_tx_hash,
            release_error=loan.release_error,
            repayments=[RepaymentSchema.from_domain(r) for r in loan.repayments],
            default_record=record,
        )


class ApplicationResponse(BaseModel):
    """Response for POST /v1/loans: the PENDING loan and the signing request to complete"""

    loan: LoanResponse
    risk_profile: RiskProfileSchema
    undercollateralized_amount: Decimal
    lock_request_id: str

    @classmethod
    def from_domain(cls, application: LoanApplication) -> "ApplicationResponse":
        return cls(
            loan=LoanResponse.from_domain(application.loan),
            risk_profile=RiskProfileSchema.from_domain(application.profile),
            undercollateralized_amount=application.undercollateralized_amount,
            lock_request_id=application.loan.lock_request_id,
        )


class RepaymentResponse(BaseModel):
    """Response for POST /v1/loans/{loan_id}/repayments"""

    loan_id: str
    repayment: RepaymentSchema
    outstanding_balance: Decimal


class LoanListResponse(BaseModel):
    borrower: str
    loans: List[LoanResponse]


class SweepResponse(BaseModel):
    defaulted_loan_ids: List[str]


class CreditScoreResponse(BaseModel):
    """Response for GET /v1/credit-score"""

    address: str
    score: float
    last_score_update: Optional[datetime] = None
    risk_profile: RiskProfileSchema

    @classmethod
    def from_domain(cls, borrower: Borrower, profile: RiskProfile) -> "CreditScoreResponse":
        return cls(
            address=borrower.wallet_address,
            score=borrower.credit_score,
            last_score_update=borrower.last_score_update,
            risk_profile=RiskProfileSchema.from_domain(profile),
        )


class PortfolioMetricsResponse(BaseModel):
    """Response for GET /v1/portfolio/metrics"""

    total_loans: int
    pending_loans: int
    active_loans: int
    repaid_loans: int
    defaulted_loans: int
    rejected_loans: int
    total_loan_volume: Decimal
    total_collateral_locked: Decimal
    total_undercollateralized_exposure: Decimal
    default_rate: float
    total_uncovered_loss: Decimal
    avg_collateral_ratio: float
    risk_distribution: Dict[str, int]

    @classmethod
    def from_domain(cls, metrics: PortfolioMetrics) -> "PortfolioMetricsResponse":
        return cls(**vars(metrics))


class SigningEvent(BaseModel):
    """
    Signing platform webhook body (XUMM callback).

    Only the fields needed to resolve the request are read; the state
    machine re-verifies everything against the ledger.
    """

    class PayloadResponse(BaseModel):
        payload_uuidv4: str
        signed: bool
        txid: Optional[str] = None
        account: Optional[str] = None

    payloadResponse: PayloadResponse


class SigningEventResponse(BaseModel):
    request_id: str
    delivered: bool
