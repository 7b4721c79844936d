"""SQLAlchemy ORM models for borrowers, loans and repayment attempts"""

import uuid
from sqlalchemy import Column, String, Boolean, Float, DateTime, Integer, ForeignKey, Text, Numeric
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

AMOUNT = Numeric(20, 6)
RATE = Numeric(9, 6)


class BorrowerRecord(Base):
    """Borrower profile with cached risk score"""

    __tablename__ = "borrower"

    wallet_address = Column(Text, primary_key=True)
    credit_score = Column(Float, nullable=True)
    last_score_update = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class LoanRecord(Base):
    """Loan with terms, lifecycle timestamps and ledger linkage"""

    __tablename__ = "loan"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Back-reference by address only; deleting a borrower never cascades
    borrower = Column(Text, nullable=False, index=True)
    status = Column(String(16), nullable=False, index=True, default="PENDING")

    amount = Column(AMOUNT, nullable=False)
    collateral_amount = Column(AMOUNT, nullable=False)
    interest_rate = Column(RATE, nullable=False)
    term_days = Column(Integer, nullable=False)
    risk_category = Column(Text, nullable=True)
    risk_score = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    repaid_at = Column(DateTime(timezone=True), nullable=True)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)

    lock_request_id = Column(Text, nullable=True, unique=True)
    lock_tx_hash = Column(Text, nullable=True)
    lock_reference = Column(Text, nullable=True)

    disbursement_status = Column(String(16), nullable=False, default="NOT_STARTED")
    disbursement_tx_hash = Column(Text, nullable=True)
    disbursement_error = Column(Text, nullable=True)

    collateral_released = Column(Boolean, nullable=False, default=False)
    collateral_released_at = Column(DateTime(timezone=True), nullable=True)
    release_tx_hash = Column(Text, nullable=True)
    release_error = Column(Text, nullable=True)

    # Default record, populated only on DEFAULTED
    default_total_owed = Column(AMOUNT, nullable=True)
    default_total_repaid = Column(AMOUNT, nullable=True)
    default_remaining_owed = Column(AMOUNT, nullable=True)
    default_collateral_claimed = Column(AMOUNT, nullable=True)
    default_uncovered_loss = Column(AMOUNT, nullable=True)
    default_reason = Column(Text, nullable=True)
    claim_status = Column(String(16), nullable=True)  # CLAIMED | FAILED
    claim_tx_hash = Column(Text, nullable=True)  # NULL unless CLAIMED
    claim_error = Column(Text, nullable=True)

    repayments = relationship(
        "RepaymentRecord",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="RepaymentRecord.sequence",
    )


class RepaymentRecord(Base):
    """Repayment attempt; kept for audit whether confirmed or not"""

    __tablename__ = "loan_repayment"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    loan_id = Column(String(36), ForeignKey("loan.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    amount = Column(AMOUNT, nullable=False)
    request_id = Column(Text, nullable=True)
    confirmed = Column(Boolean, nullable=False, default=False)
    rejected = Column(Boolean, nullable=False, default=False)
    settlement_tx_hash = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    loan = relationship("LoanRecord", back_populates="repayments")
