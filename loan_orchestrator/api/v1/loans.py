"""Loan lifecycle endpoints - applications, confirmations, repayments"""

import logging
from fastapi import APIRouter, Depends, Query

from loan_orchestrator.api.dependencies import get_loan_service, get_request_id
from loan_orchestrator.api.v1.schemas import (
    ApplicationRequest,
    ApplicationResponse,
    DefaultRequest,
    LoanListResponse,
    LoanResponse,
    LockConfirmation,
    RejectionRequest,
    RepaymentRequest,
    RepaymentResponse,
    RepaymentSchema,
    RequestConfirmation,
)
from loan_orchestrator.domain.terms import outstanding_balance
from loan_orchestrator.services.loans import LoanService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/loans", response_model=ApplicationResponse, status_code=201)
async def apply_for_loan(
    body: ApplicationRequest,
    service: LoanService = Depends(get_loan_service),
    request_id: str = Depends(get_request_id),
):
    """
    Apply for an undercollateralized loan.

    Flow:
    1. Resolve the borrower's risk score (cached or from the score oracle)
    2. Classify it and check amount, term and collateral against the band
    3. Persist the PENDING loan with its collateral lock signing request
    4. Watch the signing request until the borrower signs or declines
    """
    application = await service.apply_for_loan(body.borrower, body.amount, body.term_days, body.collateral_amount)
    logger.info(
        "Loan application accepted",
        extra={"request_id": request_id, "loan_id": application.loan.id, "borrower": body.borrower},
    )
    return ApplicationResponse.from_domain(application)


@router.get("/loans", response_model=LoanListResponse)
def list_loans(
    borrower: str = Query(..., min_length=1, description="Borrower wallet address"),
    service: LoanService = Depends(get_loan_service),
):
    loans = service.list_loans_for_borrower(borrower)
    return LoanListResponse(borrower=borrower, loans=[LoanResponse.from_domain(loan) for loan in loans])


@router.get("/loans/{loan_id}", response_model=LoanResponse)
def get_loan(loan_id: str, service: LoanService = Depends(get_loan_service)):
    return LoanResponse.from_domain(service.get_loan(loan_id))


@router.post("/loans/{loan_id}/lock/confirm", response_model=LoanResponse)
async def confirm_lock(loan_id: str, body: LockConfirmation, service: LoanService = Depends(get_loan_service)):
    """Collateral lock signed: verify on ledger, disburse and activate"""
    loan = await service.confirm_lock(loan_id, body.request_id, body.signer_address)
    return LoanResponse.from_domain(loan)


@router.post("/loans/{loan_id}/lock/reject", response_model=LoanResponse)
async def reject_lock(
    loan_id: str,
    body: RejectionRequest = RejectionRequest(),
    service: LoanService = Depends(get_loan_service),
):
    loan = await service.reject_lock(loan_id, body.reason)
    return LoanResponse.from_domain(loan)


@router.post("/loans/{loan_id}/repayments", response_model=RepaymentResponse, status_code=201)
async def request_repayment(
    loan_id: str,
    body: RepaymentRequest,
    service: LoanService = Depends(get_loan_service),
):
    """Open a repayment signing request; the balance changes only once it is confirmed"""
    loan, repayment = await service.request_repayment(loan_id, body.amount, body.borrower)
    return RepaymentResponse(
        loan_id=loan.id,
        repayment=RepaymentSchema.from_domain(repayment),
        outstanding_balance=outstanding_balance(loan),
    )


@router.post("/loans/{loan_id}/repayments/{repayment_id}/confirm", response_model=LoanResponse)
async def confirm_repayment(
    loan_id: str,
    repayment_id: str,
    body: RequestConfirmation,
    service: LoanService = Depends(get_loan_service),
):
    loan = await service.confirm_repayment(loan_id, repayment_id, body.request_id)
    return LoanResponse.from_domain(loan)


@router.post("/loans/{loan_id}/repayments/{repayment_id}/reject", response_model=LoanResponse)
async def reject_repayment(loan_id: str, repayment_id: str, service: LoanService = Depends(get_loan_service)):
    loan = await service.reject_repayment(loan_id, repayment_id)
    return LoanResponse.from_domain(loan)


# Operator endpoints


@router.post("/loans/{loan_id}/default", response_model=LoanResponse)
async def force_default(
    loan_id: str,
    body: DefaultRequest = DefaultRequest(),
    service: LoanService = Depends(get_loan_service),
    request_id: str = Depends(get_request_id),
):
    logger.warning("Operator forced default", extra={"request_id": request_id, "loan_id": loan_id})
    loan = await service.force_default(loan_id, body.reason)
    return LoanResponse.from_domain(loan)


@router.post("/loans/{loan_id}/reconcile", response_model=LoanResponse)
async def reconcile_collateral(loan_id: str, service: LoanService = Depends(get_loan_service)):
    """Retry a failed collateral release or claim"""
    loan = await service.reconcile_collateral(loan_id)
    return LoanResponse.from_domain(loan)


@router.post("/loans/{loan_id}/disbursement/retry", response_model=LoanResponse)
async def retry_disbursement(loan_id: str, service: LoanService = Depends(get_loan_service)):
    """One payout attempt for a loan whose disbursement failed after its lock was confirmed"""
    loan = await service.retry_disbursement(loan_id)
    return LoanResponse.from_domain(loan)
