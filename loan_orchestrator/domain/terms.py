"""Loan arithmetic - simple interest, balances and application constraints"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Union
from loan_orchestrator.domain.models import CollateralClaim, DefaultRecord, Loan, Repayment, RiskProfile
from loan_orchestrator.domain.exceptions import (
    AmountExceedsCapError,
    CollateralTooHighError,
    CollateralTooLowError,
    IneligibleRiskError,
    InvalidAmountError,
    TermExceedsCapError,
)

# Ledger precision: 1 drop = 0.000001 XRP
AMOUNT_QUANTUM = Decimal("0.000001")

Number = Union[Decimal, int, float, str]


def to_amount(value: Number) -> Decimal:
    """
    Convert an external amount to a Decimal at ledger precision.

    Raises:
        InvalidAmountError: Not a number, or finer than one drop
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Not a valid amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmountError(f"Not a valid amount: {value!r}")
    if amount != amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP):
        raise InvalidAmountError(f"Amount {amount} is finer than ledger precision {AMOUNT_QUANTUM}")
    return amount.quantize(AMOUNT_QUANTUM)


def quantize(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def normalize_rate(value: Number) -> Decimal:
    """
    Normalize an interest rate to a decimal fraction.

    Values above 1 are read as percentages (12 -> 0.12). Applied once where
    rates enter the system; everything downstream assumes fractions.
    """
    rate = Decimal(str(value))
    if rate < 0:
        raise ValueError(f"Interest rate cannot be negative: {value}")
    if rate > 1:
        rate = rate / 100
    return rate


def total_owed(loan: Loan) -> Decimal:
    """Principal plus simple interest"""
    return quantize(loan.amount * (1 + loan.interest_rate))


def confirmed_total(repayments: Iterable[Repayment]) -> Decimal:
    """Sum of confirmed repayments; pending and rejected attempts are excluded"""
    return sum((r.amount for r in repayments if r.confirmed), Decimal("0"))


def outstanding_balance(loan: Loan) -> Decimal:
    return max(Decimal("0"), total_owed(loan) - confirmed_total(loan.repayments))


def validate_application(
    profile: RiskProfile,
    amount: Decimal,
    term_days: int,
    collateral_amount: Decimal,
) -> None:
    """
    Check a loan request against the borrower's risk profile.

    Order of checks: eligibility, positive inputs, caps, then collateral
    bounds (strictly below principal, at least amount * collateral_ratio).
    """
    if not profile.eligible:
        raise IneligibleRiskError(
            f"Risk profile ({profile.category}) does not qualify for undercollateralized lending"
        )
    if amount <= 0 or collateral_amount <= 0:
        raise InvalidAmountError("Loan and collateral amounts must be positive")
    if term_days <= 0:
        raise InvalidAmountError("Loan term must be at least one day")

    if amount > profile.max_amount:
        raise AmountExceedsCapError(
            f"Loan amount exceeds maximum for your risk profile ({profile.max_amount})"
        )
    if term_days > profile.max_term_days:
        raise TermExceedsCapError(
            f"Loan term exceeds maximum for your risk profile ({profile.max_term_days} days)"
        )

    if collateral_amount >= amount:
        raise CollateralTooHighError(
            f"Collateral ({collateral_amount}) must be less than loan amount ({amount})"
        )
    min_collateral = quantize(amount * profile.collateral_ratio)
    if collateral_amount < min_collateral:
        raise CollateralTooLowError(
            f"Insufficient collateral. Minimum required for your risk profile: {min_collateral} "
            f"({profile.collateral_ratio * 100}% of loan amount)"
        )


def build_default_record(loan: Loan, claim: CollateralClaim, reason: str, defaulted_at) -> DefaultRecord:
    """
    Loss accounting for a defaulting loan.

    remaining = max(0, owed - repaid); uncovered = max(0, remaining - collateral)
    """
    owed = total_owed(loan)
    repaid = confirmed_total(loan.repayments)
    remaining = max(Decimal("0"), owed - repaid)
    uncovered = max(Decimal("0"), remaining - loan.collateral_amount)
    return DefaultRecord(
        total_owed=owed,
        total_repaid=repaid,
        remaining_owed=remaining,
        collateral_claimed=loan.collateral_amount,
        uncovered_loss=uncovered,
        claim=claim,
        reason=reason,
        defaulted_at=defaulted_at,
    )
