"""Portfolio metrics - read-only fold over the loan book"""

from decimal import Decimal
from typing import Iterable, Sequence
from loan_orchestrator.domain.models import Loan, LoanStatus, PortfolioMetrics

UNKNOWN_CATEGORY = "Unknown"


def compute_portfolio_metrics(loans: Sequence[Loan], categories: Iterable[str] = ()) -> PortfolioMetrics:
    """
    Aggregate portfolio statistics for undercollateralized lending.

    - Collateral locked and undercollateralized exposure count ACTIVE loans only
    - Default rate = defaulted / all loans
    - Uncovered loss sums default records of DEFAULTED loans
    - Risk histogram is keyed by each loan's stored category; configured
      categories start at 0, unlabeled loans go to "Unknown"
    """
    counts = {status: 0 for status in LoanStatus}
    for loan in loans:
        counts[loan.status] += 1

    active = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]
    total = len(loans)

    uncovered_loss = sum(
        (
            loan.default_record.uncovered_loss
            for loan in loans
            if loan.status == LoanStatus.DEFAULTED and loan.default_record is not None
        ),
        Decimal("0"),
    )

    avg_ratio = (
        float(sum(loan.collateral_amount / loan.amount for loan in loans) / total)
        if total > 0
        else 0.0
    )

    distribution = {category: 0 for category in categories}
    for loan in loans:
        key = loan.risk_category or UNKNOWN_CATEGORY
        distribution[key] = distribution.get(key, 0) + 1

    return PortfolioMetrics(
        total_loans=total,
        pending_loans=counts[LoanStatus.PENDING],
        active_loans=counts[LoanStatus.ACTIVE],
        repaid_loans=counts[LoanStatus.REPAID],
        defaulted_loans=counts[LoanStatus.DEFAULTED],
        rejected_loans=counts[LoanStatus.REJECTED],
        total_loan_volume=sum((loan.amount for loan in loans), Decimal("0")),
        total_collateral_locked=sum((loan.collateral_amount for loan in active), Decimal("0")),
        total_undercollateralized_exposure=sum(
            (loan.amount - loan.collateral_amount for loan in active), Decimal("0")
        ),
        default_rate=counts[LoanStatus.DEFAULTED] / total if total > 0 else 0.0,
        total_uncovered_loss=uncovered_loss,
        avg_collateral_ratio=round(avg_ratio, 6),
        risk_distribution=distribution,
    )
