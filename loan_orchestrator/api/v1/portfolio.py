"""Portfolio endpoints - metrics and the default sweep"""

from fastapi import APIRouter, Depends

from loan_orchestrator.api.dependencies import get_loan_service
from loan_orchestrator.api.v1.schemas import PortfolioMetricsResponse, SweepRequest, SweepResponse
from loan_orchestrator.services.loans import LoanService

router = APIRouter()


@router.get("/portfolio/metrics", response_model=PortfolioMetricsResponse)
def get_portfolio_metrics(service: LoanService = Depends(get_loan_service)):
    """Computed from the loan book on every request"""
    return PortfolioMetricsResponse.from_domain(service.get_metrics())


@router.post("/defaults/sweep", response_model=SweepResponse)
async def sweep_defaults(body: SweepRequest = SweepRequest(), service: LoanService = Depends(get_loan_service)):
    """Run one default sweep now; safe to trigger while the scheduled sweeper runs"""
    defaulted = await service.sweep_defaults(body.now)
    return SweepResponse(defaulted_loan_ids=defaulted)
