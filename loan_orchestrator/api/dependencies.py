"""Dependency injection for FastAPI endpoints"""

from fastapi import Request
from loan_orchestrator.services.loans import LoanService


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_loan_service(request: Request) -> LoanService:
    """Loan service wired at application startup"""
    return request.app.state.loan_service
