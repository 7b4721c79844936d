"""GET /v1/credit-score - borrower risk score and the terms it qualifies for"""

from fastapi import APIRouter, Depends, Query

from loan_orchestrator.api.dependencies import get_loan_service
from loan_orchestrator.api.v1.schemas import CreditScoreResponse
from loan_orchestrator.services.loans import LoanService

router = APIRouter()


@router.get("/credit-score", response_model=CreditScoreResponse)
async def get_credit_score(
    address: str = Query(..., min_length=1, description="Borrower wallet address"),
    refresh: bool = Query(False, description="Bypass the cached score"),
    service: LoanService = Depends(get_loan_service),
):
    borrower, profile = await service.get_credit_score(address, refresh=refresh)
    return CreditScoreResponse.from_domain(borrower, profile)
