"""Domain models - pure Python dataclasses representing business entities"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional


class LoanStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REPAID = "REPAID"
    DEFAULTED = "DEFAULTED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.REPAID, LoanStatus.DEFAULTED, LoanStatus.REJECTED)


class DisbursementStatus(str, enum.Enum):
    """Sub-state of a PENDING loan once its collateral lock is confirmed"""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"  # submitted, outcome not yet recorded
    FAILED = "FAILED"  # needs operator review
    COMPLETED = "COMPLETED"


class RequestState(str, enum.Enum):
    """Status of a signing request on the external signing platform"""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ClaimStatus(str, enum.Enum):
    CLAIMED = "CLAIMED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RiskBand:
    """Score band: scores up to max_score (inclusive) map to this profile"""

    label: str
    max_score: Optional[float]
    interest_rate: Decimal
    collateral_ratio: Decimal
    max_term_days: int
    max_amount: Decimal
    eligible: bool


@dataclass(frozen=True)
class RiskProfile:
    """Derived loan terms for a risk score"""

    category: str
    score: float
    interest_rate: Decimal  # decimal fraction, 0.12 == 12%
    collateral_ratio: Decimal
    max_term_days: int
    max_amount: Decimal
    eligible: bool


@dataclass(frozen=True)
class RequestStatus:
    """Observed status of a lock or payment request"""

    request_id: str
    state: RequestState
    signer_address: Optional[str] = None
    tx_hash: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != RequestState.PENDING


@dataclass(frozen=True)
class Verification:
    """Gateway's independent answer about a signed request"""

    confirmed: bool
    settlement_tx_hash: Optional[str] = None
    signer_address: Optional[str] = None
    ledger_sequence: Optional[int] = None  # escrow sequence for collateral locks


@dataclass
class Repayment:
    """One repayment attempt; only confirmed ones reduce the balance"""

    id: str
    amount: Decimal
    requested_at: datetime
    request_id: Optional[str] = None
    confirmed: bool = False
    rejected: bool = False
    settlement_tx_hash: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return not self.confirmed and not self.rejected


@dataclass(frozen=True)
class CollateralClaim:
    """Outcome of claiming collateral: a tx hash, or an error and no hash"""

    status: ClaimStatus
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def claimed(cls, tx_hash: str) -> "CollateralClaim":
        return cls(status=ClaimStatus.CLAIMED, tx_hash=tx_hash)

    @classmethod
    def failed(cls, error: str) -> "CollateralClaim":
        return cls(status=ClaimStatus.FAILED, error=error)

    @property
    def succeeded(self) -> bool:
        return self.status == ClaimStatus.CLAIMED


@dataclass
class DefaultRecord:
    """Loss accounting written once on the DEFAULTED transition"""

    total_owed: Decimal
    total_repaid: Decimal
    remaining_owed: Decimal
    collateral_claimed: Decimal
    uncovered_loss: Decimal
    claim: CollateralClaim
    reason: str
    defaulted_at: datetime


@dataclass
class Loan:
    """Undercollateralized loan and its on-ledger linkage"""

    id: str
    borrower: str
    amount: Decimal
    collateral_amount: Decimal
    interest_rate: Decimal
    term_days: int
    created_at: datetime
    status: LoanStatus = LoanStatus.PENDING
    risk_category: Optional[str] = None
    risk_score: Optional[float] = None

    activated_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    repaid_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None

    lock_request_id: Optional[str] = None
    lock_tx_hash: Optional[str] = None
    lock_reference: Optional[str] = None

    disbursement_status: DisbursementStatus = DisbursementStatus.NOT_STARTED
    disbursement_tx_hash: Optional[str] = None
    disbursement_error: Optional[str] = None

    collateral_released: bool = False
    collateral_released_at: Optional[datetime] = None
    release_tx_hash: Optional[str] = None
    release_error: Optional[str] = None

    repayments: List[Repayment] = field(default_factory=list)
    default_record: Optional[DefaultRecord] = None

    def find_repayment(self, repayment_id: str) -> Optional[Repayment]:
        return next((r for r in self.repayments if r.id == repayment_id), None)

    @property
    def pending_repayment(self) -> Optional[Repayment]:
        return next((r for r in self.repayments if r.is_pending), None)


@dataclass
class Borrower:
    """Borrower profile keyed by wallet address"""

    wallet_address: str
    created_at: datetime
    credit_score: Optional[float] = None
    last_score_update: Optional[datetime] = None
    loan_ids: List[str] = field(default_factory=list)


@dataclass
class PortfolioMetrics:
    """Read-only portfolio statistics"""

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
    risk_distribution: dict = field(default_factory=dict)


@dataclass
class LoanApplication:
    """Accepted application: the PENDING loan and the terms it was priced on"""

    loan: Loan
    profile: RiskProfile

    @property
    def undercollateralized_amount(self) -> Decimal:
        return self.loan.amount - self.loan.collateral_amount
