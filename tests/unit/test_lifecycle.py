"""Unit tests for the loan lifecycle state machine"""

import asyncio
import logging
import pytest
from datetime import timedelta
from decimal import Decimal
from loan_orchestrator.domain.exceptions import (
    AuthorizationMismatchError,
    CollateralTooHighError,
    CollateralTooLowError,
    DefaultNotDueError,
    DisbursementFailedError,
    GatewayUnavailableError,
    IneligibleRiskError,
    InvalidAmountError,
    NotFoundError,
    RepaymentExceedsBalanceError,
    RepaymentPendingError,
    RequestMismatchError,
    ScoreUnavailableError,
    SettlementNotConfirmedError,
    StateConflictError,
)
from loan_orchestrator.domain.models import ClaimStatus, DisbursementStatus, LoanStatus
from loan_orchestrator.domain.terms import confirmed_total, outstanding_balance, total_owed
from conftest import BORROWER, OTHER_WALLET, open_active_loan


async def repay(state_machine, loan_id, amount, borrower=BORROWER):
    """Request and confirm one repayment"""
    _, repayment = await state_machine.request_repayment(loan_id, Decimal(amount), borrower)
    return await state_machine.on_repayment_confirmed(loan_id, repayment.id, repayment.request_id)


# Applications


async def test_very_low_risk_full_journey(state_machine, gateway, score_oracle):
    """Score 20: apply 1000/90d/600, activate, repay 1120 in full, collateral released"""
    score_oracle.scores[BORROWER] = 20

    application = await state_machine.create_application(BORROWER, Decimal("1000"), 90, Decimal("600"))
    loan = application.loan

    assert application.profile.category == "Very Low Risk"
    assert application.undercollateralized_amount == Decimal("400")
    assert loan.status == LoanStatus.PENDING
    assert loan.interest_rate == Decimal("0.12")
    assert loan.lock_request_id == "lock-1"
    assert gateway.lock_requests == [(BORROWER, Decimal("600"), 90)]

    loan = await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)

    assert loan.status == LoanStatus.ACTIVE
    assert gateway.disbursements == [(BORROWER, Decimal("1000"))]
    assert loan.disbursement_status == DisbursementStatus.COMPLETED
    assert loan.disbursement_tx_hash is not None
    assert loan.lock_tx_hash == "TXLOCK-1"
    assert loan.due_date == loan.activated_at + timedelta(days=90)

    loan = await repay(state_machine, loan.id, "1120")

    assert loan.status == LoanStatus.REPAID
    assert loan.repaid_at is not None
    assert loan.collateral_released is True
    assert loan.release_tx_hash is not None
    assert len(gateway.releases) == 1

    stored = state_machine.get_loan(loan.id)
    assert stored.status == LoanStatus.REPAID
    assert [r.amount for r in stored.repayments if r.confirmed] == [Decimal("1120")]


async def test_very_high_risk_is_ineligible(state_machine, score_oracle, gateway):
    score_oracle.scores[BORROWER] = 90

    with pytest.raises(IneligibleRiskError):
        await state_machine.create_application(BORROWER, Decimal("100"), 10, Decimal("50"))

    assert state_machine.list_loans() == []
    assert gateway.lock_requests == []


@pytest.mark.parametrize(
    "amount,collateral,error",
    [
        ("100", "100", CollateralTooHighError),
        ("100", "59.999999", CollateralTooLowError),
        ("100", "0.0000001", InvalidAmountError),
    ],
)
async def test_invalid_collateral_creates_no_loan(state_machine, amount, collateral, error):
    with pytest.raises(error):
        await state_machine.create_application(BORROWER, amount, 30, collateral)

    assert state_machine.list_loans() == []


async def test_term_must_be_whole_days(state_machine):
    with pytest.raises(InvalidAmountError):
        await state_machine.create_application(BORROWER, "100", 30.5, "60")


async def test_score_unavailable_aborts_application(state_machine, score_oracle):
    score_oracle.fail = True

    with pytest.raises(ScoreUnavailableError):
        await state_machine.create_application(BORROWER, "100", 30, "60")

    assert state_machine.list_loans() == []


async def test_lock_request_failure_rolls_back_loan(state_machine, gateway):
    gateway.fail_lock_request = True

    with pytest.raises(GatewayUnavailableError):
        await state_machine.create_application(BORROWER, "100", 30, "60")

    assert state_machine.list_loans() == []


async def test_cached_score_is_reused_until_stale(state_machine, score_oracle, clock):
    await state_machine.create_application(BORROWER, "100", 30, "60")
    await state_machine.create_application(BORROWER, "100", 30, "60")
    assert score_oracle.calls == [BORROWER]

    clock.advance(hours=25)
    await state_machine.create_application(BORROWER, "100", 30, "60")
    assert score_oracle.calls == [BORROWER, BORROWER]


async def test_score_refresh_reclassifies(state_machine, score_oracle, clock):
    """Only the score is cached: a new score yields new terms"""
    await state_machine.create_application(BORROWER, "100", 30, "60")
    score_oracle.scores[BORROWER] = 60
    clock.advance(days=2)

    application = await state_machine.create_application(BORROWER, "100", 30, "90")

    assert application.profile.category == "High Risk"
    assert application.loan.interest_rate == Decimal("0.35")


# Lock confirmation


async def test_lock_confirmation_twice_does_not_double_disburse(state_machine, gateway):
    loan = await open_active_loan(state_machine)

    with pytest.raises(StateConflictError):
        await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)

    assert len(gateway.disbursements) == 1


async def test_concurrent_lock_confirmations_disburse_once(state_machine, gateway):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")
    loan = application.loan

    results = await asyncio.gather(
        state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER),
        state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, StateConflictError)) == 1
    assert len(gateway.disbursements) == 1


async def test_lock_confirmation_guards(state_machine, gateway):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")
    loan = application.loan

    with pytest.raises(NotFoundError):
        await state_machine.on_lock_confirmed("missing", loan.lock_request_id, BORROWER)
    with pytest.raises(RequestMismatchError):
        await state_machine.on_lock_confirmed(loan.id, "lock-999", BORROWER)
    with pytest.raises(AuthorizationMismatchError):
        await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, OTHER_WALLET)

    assert gateway.disbursements == []
    assert state_machine.get_loan(loan.id).status == LoanStatus.PENDING


async def test_lock_confirmation_reverifies_with_gateway(state_machine, gateway):
    """The caller's word is not enough: the ledger must agree"""
    application = await state_machine.create_application(BORROWER, "100", 30, "60")
    loan = application.loan

    gateway.unsettled.add(loan.lock_request_id)
    with pytest.raises(SettlementNotConfirmedError):
        await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)

    gateway.unsettled.clear()
    gateway.signed_by[loan.lock_request_id] = OTHER_WALLET
    with pytest.raises(AuthorizationMismatchError):
        await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)

    assert gateway.disbursements == []
    assert state_machine.get_loan(loan.id).disbursement_status == DisbursementStatus.NOT_STARTED


async def test_disbursement_failure_is_flagged_not_retried(state_machine, gateway, caplog):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")
    loan = application.loan
    gateway.fail_disburse = True

    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(DisbursementFailedError):
            await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)

    stored = state_machine.get_loan(loan.id)
    assert stored.status == LoanStatus.PENDING
    assert stored.disbursement_status == DisbursementStatus.FAILED
    assert "503" in stored.disbursement_error
    assert stored.lock_tx_hash is not None
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    # A replayed confirmation must not pay out
    gateway.fail_disburse = False
    with pytest.raises(StateConflictError):
        await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)
    assert gateway.disbursements == []


async def test_operator_retry_disbursement(state_machine, gateway):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")
    loan = application.loan
    gateway.fail_disburse = True
    with pytest.raises(DisbursementFailedError):
        await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)

    gateway.fail_disburse = False
    loan = await state_machine.retry_disbursement(loan.id)

    assert loan.status == LoanStatus.ACTIVE
    assert loan.disbursement_status == DisbursementStatus.COMPLETED
    assert loan.disbursement_error is None
    assert len(gateway.disbursements) == 1

    with pytest.raises(StateConflictError):
        await state_machine.retry_disbursement(loan.id)


async def test_retry_disbursement_requires_failed_payout(state_machine):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")

    with pytest.raises(StateConflictError):
        await state_machine.retry_disbursement(application.loan.id)


async def test_lock_rejection(state_machine):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")

    loan = await state_machine.on_lock_rejected(application.loan.id)

    assert loan.status == LoanStatus.REJECTED
    with pytest.raises(StateConflictError):
        await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, BORROWER)


async def test_cannot_reject_after_lock_confirmed(state_machine, gateway):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")
    gateway.fail_disburse = True
    with pytest.raises(DisbursementFailedError):
        await state_machine.on_lock_confirmed(application.loan.id, application.loan.lock_request_id, BORROWER)

    with pytest.raises(StateConflictError):
        await state_machine.reject_application(application.loan.id)


# Repayments


async def test_partial_repayments_keep_loan_active(state_machine):
    loan = await open_active_loan(state_machine)
    owed = total_owed(loan)

    for amount in ("30", "40", "41.999999"):
        loan = await repay(state_machine, loan.id, amount)
        assert loan.status == LoanStatus.ACTIVE
        assert confirmed_total(loan.repayments) < owed

    loan = await repay(state_machine, loan.id, "0.000001")
    assert loan.status == LoanStatus.REPAID
    assert confirmed_total(loan.repayments) == owed


async def test_repayment_boundary(state_machine):
    loan = await open_active_loan(state_machine)
    remaining = outstanding_balance(loan)

    with pytest.raises(RepaymentExceedsBalanceError):
        await state_machine.request_repayment(loan.id, remaining + Decimal("0.000001"), BORROWER)

    loan = await repay(state_machine, loan.id, str(remaining))
    assert loan.status == LoanStatus.REPAID


async def test_repayment_guards(state_machine):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")
    with pytest.raises(StateConflictError):
        await state_machine.request_repayment(application.loan.id, "10", BORROWER)

    loan = await state_machine.on_lock_confirmed(application.loan.id, application.loan.lock_request_id, BORROWER)
    with pytest.raises(AuthorizationMismatchError):
        await state_machine.request_repayment(loan.id, "10", OTHER_WALLET)
    with pytest.raises(InvalidAmountError):
        await state_machine.request_repayment(loan.id, "0", BORROWER)
    with pytest.raises(InvalidAmountError):
        await state_machine.request_repayment(loan.id, "-5", BORROWER)


async def test_only_one_pending_repayment(state_machine):
    loan = await open_active_loan(state_machine)
    await state_machine.request_repayment(loan.id, "10", BORROWER)

    with pytest.raises(RepaymentPendingError):
        await state_machine.request_repayment(loan.id, "10", BORROWER)


async def test_unconfirmed_repayment_never_counts(state_machine, gateway):
    loan = await open_active_loan(state_machine)
    _, repayment = await state_machine.request_repayment(loan.id, "112", BORROWER)
    gateway.unsettled.add(repayment.request_id)

    with pytest.raises(SettlementNotConfirmedError):
        await state_machine.on_repayment_confirmed(loan.id, repayment.id, repayment.request_id)

    stored = state_machine.get_loan(loan.id)
    assert stored.status == LoanStatus.ACTIVE
    assert confirmed_total(stored.repayments) == 0


async def test_repayment_confirmation_is_not_double_counted(state_machine):
    loan = await open_active_loan(state_machine)
    _, repayment = await state_machine.request_repayment(loan.id, "50", BORROWER)
    await state_machine.on_repayment_confirmed(loan.id, repayment.id, repayment.request_id)

    with pytest.raises(StateConflictError):
        await state_machine.on_repayment_confirmed(loan.id, repayment.id, repayment.request_id)
    with pytest.raises(RequestMismatchError):
        await state_machine.on_repayment_confirmed(loan.id, repayment.id, "pay-999")

    assert confirmed_total(state_machine.get_loan(loan.id).repayments) == Decimal("50")


async def test_rejected_repayment_frees_the_slot(state_machine):
    loan = await open_active_loan(state_machine)
    _, repayment = await state_machine.request_repayment(loan.id, "50", BORROWER)

    loan = await state_machine.on_repayment_rejected(loan.id, repayment.id)

    assert loan.status == LoanStatus.ACTIVE
    assert loan.find_repayment(repayment.id).rejected is True
    _, retry = await state_machine.request_repayment(loan.id, "50", BORROWER)
    assert retry.id != repayment.id


async def test_payment_request_failure_leaves_no_repayment(state_machine, gateway):
    loan = await open_active_loan(state_machine)
    gateway.fail_payment_request = True

    with pytest.raises(GatewayUnavailableError):
        await state_machine.request_repayment(loan.id, "50", BORROWER)

    assert state_machine.get_loan(loan.id).repayments == []


async def test_release_failure_keeps_loan_repaid(state_machine, gateway):
    loan = await open_active_loan(state_machine)
    gateway.fail_release = True

    loan = await repay(state_machine, loan.id, "112")

    assert loan.status == LoanStatus.REPAID
    assert loan.collateral_released is False
    assert "escrows/cancel" in loan.release_error

    gateway.fail_release = False
    loan = await state_machine.reconcile_collateral(loan.id)

    assert loan.collateral_released is True
    assert loan.release_error is None
    assert len(gateway.releases) == 1


# Defaults


async def test_evaluate_default_within_grace_is_not_due(state_machine, clock):
    loan = await open_active_loan(state_machine)
    clock.advance(days=31)

    with pytest.raises(DefaultNotDueError):
        await state_machine.evaluate_default(loan.id)

    assert state_machine.get_loan(loan.id).status == LoanStatus.ACTIVE


async def test_evaluate_default_past_grace(state_machine, clock, gateway):
    loan = await open_active_loan(state_machine)
    clock.advance(days=37)

    loan = await state_machine.evaluate_default(loan.id)

    assert loan.status == LoanStatus.DEFAULTED
    assert loan.defaulted_at == clock.now
    record = loan.default_record
    assert record.total_owed == Decimal("112.000000")
    assert record.uncovered_loss == Decimal("52.000000")
    assert record.collateral_claimed == Decimal("60.000000")
    assert record.claim.status == ClaimStatus.CLAIMED
    assert gateway.claims == [(BORROWER, loan.lock_reference)]


async def test_evaluate_default_twice_is_state_conflict(state_machine, clock, gateway):
    loan = await open_active_loan(state_machine)
    clock.advance(days=37)
    await state_machine.evaluate_default(loan.id)

    with pytest.raises(StateConflictError):
        await state_machine.evaluate_default(loan.id)

    assert len(gateway.claims) == 1


async def test_claim_failure_still_defaults(state_machine, gateway):
    loan = await open_active_loan(state_machine)
    await repay(state_machine, loan.id, "12")
    gateway.fail_claim = True

    loan = await state_machine.force_default(loan.id, "fraud review")

    assert loan.status == LoanStatus.DEFAULTED
    claim = loan.default_record.claim
    assert claim.status == ClaimStatus.FAILED
    assert claim.tx_hash is None
    assert "escrows/finish" in claim.error
    assert loan.default_record.total_repaid == Decimal("12.000000")
    assert loan.default_record.uncovered_loss == Decimal("40.000000")

    gateway.fail_claim = False
    loan = await state_machine.reconcile_collateral(loan.id)
    assert loan.default_record.claim.status == ClaimStatus.CLAIMED
    assert loan.default_record.reason == "fraud review"


async def test_force_default_requires_active(state_machine):
    application = await state_machine.create_application(BORROWER, "100", 30, "60")

    with pytest.raises(StateConflictError):
        await state_machine.force_default(application.loan.id, "operator")


async def test_reconcile_is_noop_when_nothing_failed(state_machine, gateway):
    loan = await open_active_loan(state_machine)

    reconciled = await state_machine.reconcile_collateral(loan.id)

    assert reconciled.status == LoanStatus.ACTIVE
    assert gateway.releases == [] and gateway.claims == []


# Reads


async def test_list_loans_for_borrower(state_machine):
    await state_machine.create_application(BORROWER, "100", 30, "60")
    await state_machine.create_application(OTHER_WALLET, "100", 30, "60")

    loans = state_machine.list_loans_for_borrower(BORROWER)

    assert [loan.borrower for loan in loans] == [BORROWER]
    assert len(state_machine.list_loans(LoanStatus.PENDING)) == 2


async def test_get_missing_loan(state_machine):
    with pytest.raises(NotFoundError):
        state_machine.get_loan("missing")
