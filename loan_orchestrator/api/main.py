"""FastAPI application factory"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from loan_orchestrator.api.errors import register_exception_handlers
from loan_orchestrator.api.middleware import RequestIDMiddleware, MetricsMiddleware
from loan_orchestrator.api.v1 import credit, loans, portfolio, webhooks
from loan_orchestrator.infrastructure.observability.logging import setup_logging
from loan_orchestrator.config import settings
from loan_orchestrator.services.loans import LoanService

# Setup structured logging
setup_logging(settings.log_level)


def create_app(service: Optional[LoanService] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        service: Pre-wired loan service (tests); built from settings otherwise
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loan_service = service or LoanService.build()
        app.state.loan_service = loan_service
        # Resume outstanding signing watches and start the default sweeper
        await loan_service.start()
        try:
            yield
        finally:
            await loan_service.close()

    app = FastAPI(
        title="Loan Orchestrator",
        description="Undercollateralized XRPL loan lifecycle service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(loans.router, prefix="/v1", tags=["loans"])
    app.include_router(portfolio.router, prefix="/v1", tags=["portfolio"])
    app.include_router(credit.router, prefix="/v1", tags=["credit"])
    app.include_router(webhooks.router, prefix="/v1", tags=["webhooks"])

    return app


app = create_app()
