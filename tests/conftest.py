"""Pytest fixtures for testing"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Generator, List, Optional, Set
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from loan_orchestrator.api.main import create_app
from loan_orchestrator.domain.exceptions import (
    ClaimFailedError,
    CollateralReleaseError,
    GatewayUnavailableError,
    ScoreUnavailableError,
    SettlementFailedError,
)
from loan_orchestrator.domain.models import RequestState, RequestStatus, Verification
from loan_orchestrator.domain.risk import default_bands
from loan_orchestrator.infrastructure.database.models import Base
from loan_orchestrator.services.lifecycle import LoanStateMachine
from loan_orchestrator.services.loans import LoanService
from loan_orchestrator.services.sweeper import DefaultSweeper
from loan_orchestrator.services.watcher import SettlementWatcher


# Test database: one in-memory SQLite connection shared by every session
TEST_DATABASE_URL = "sqlite://"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

BORROWER = "rBorrower1111111111111111111111111"
OTHER_WALLET = "rOther22222222222222222222222222222"
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock the tests move by hand"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeScoreOracle:
    """In-memory score oracle; scores default to the Very Low Risk band"""

    def __init__(self, default_score: float = 20.0):
        self.default_score = default_score
        self.scores: Dict[str, float] = {}
        self.fail = False
        self.calls: List[str] = []

    async def get_score(self, borrower_address: str) -> float:
        self.calls.append(borrower_address)
        if self.fail:
            raise ScoreUnavailableError("Score API timeout after 10.0s")
        return self.scores.get(borrower_address, self.default_score)


class FakeGateway:
    """
    In-memory collateral gateway.

    Requests verify as settled and signed by the borrower they were issued
    to, unless listed in ``unsettled`` or ``signed_by``. Failure switches
    make each ledger operation raise its gateway error; ``verify_outages``
    fails that many verifications before recovering.
    """

    def __init__(self):
        self.request_owner: Dict[str, str] = {}
        self.statuses: Dict[str, RequestStatus] = {}
        self.unsettled: Set[str] = set()
        self.signed_by: Dict[str, str] = {}

        self.fail_lock_request = False
        self.fail_payment_request = False
        self.fail_disburse = False
        self.fail_release = False
        self.fail_claim = False
        self.verify_outages = 0

        self.lock_requests: List[tuple] = []
        self.payment_requests: List[tuple] = []
        self.disbursements: List[tuple] = []
        self.releases: List[tuple] = []
        self.claims: List[tuple] = []
        self.verifications: List[str] = []
        self.expected: Dict[str, tuple] = {}
        self._sequence = 0

    def _next(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}-{self._sequence}"

    async def create_lock_request(self, borrower: str, amount: Decimal, term_days: int) -> str:
        if self.fail_lock_request:
            raise GatewayUnavailableError("Signing platform unreachable")
        request_id = self._next("lock")
        self.lock_requests.append((borrower, amount, term_days))
        self.request_owner[request_id] = borrower
        self.statuses[request_id] = RequestStatus(request_id=request_id, state=RequestState.PENDING)
        return request_id

    async def create_payment_request(self, borrower: str, amount: Decimal, loan_id: str) -> str:
        if self.fail_payment_request:
            raise GatewayUnavailableError("Signing platform unreachable")
        request_id = self._next("pay")
        self.payment_requests.append((borrower, amount, loan_id))
        self.request_owner[request_id] = borrower
        self.statuses[request_id] = RequestStatus(request_id=request_id, state=RequestState.PENDING)
        return request_id

    def sign(self, request_id: str, signer: Optional[str] = None) -> RequestStatus:
        status = RequestStatus(
            request_id=request_id,
            state=RequestState.CONFIRMED,
            signer_address=signer or self.request_owner[request_id],
            tx_hash=f"TX{request_id.upper()}",
        )
        self.statuses[request_id] = status
        return status

    def decline(self, request_id: str) -> RequestStatus:
        status = RequestStatus(request_id=request_id, state=RequestState.REJECTED)
        self.statuses[request_id] = status
        return status

    async def request_status(self, request_id: str) -> RequestStatus:
        return self.statuses[request_id]

    async def verify_request(
        self,
        request_id: str,
        expected_amount: Optional[Decimal] = None,
        transaction_type: Optional[str] = None,
    ) -> Verification:
        self.verifications.append(request_id)
        self.expected[request_id] = (expected_amount, transaction_type)
        if self.verify_outages > 0:
            self.verify_outages -= 1
            raise GatewayUnavailableError("Ledger node unreachable")
        if request_id in self.unsettled:
            return Verification(confirmed=False)
        return Verification(
            confirmed=True,
            settlement_tx_hash=f"TX{request_id.upper()}",
            signer_address=self.signed_by.get(request_id, self.request_owner.get(request_id)),
            ledger_sequence=1000 + len(self.verifications),
        )

    async def disburse(self, borrower: str, amount: Decimal) -> str:
        if self.fail_disburse:
            raise SettlementFailedError("Payment submission failed: 503")
        self.disbursements.append((borrower, amount))
        return self._next("DISB")

    async def release_collateral(self, lock_reference: str, borrower: str) -> str:
        if self.fail_release:
            raise CollateralReleaseError("Escrow operation /escrows/cancel failed")
        self.releases.append((lock_reference, borrower))
        return self._next("RELEASE")

    async def claim_collateral(self, borrower: str, lock_reference: str) -> str:
        if self.fail_claim:
            raise ClaimFailedError("Escrow operation /escrows/finish failed")
        self.claims.append((borrower, lock_reference))
        return self._next("CLAIM")


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Create test schema and hand out the session factory"""
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def score_oracle() -> FakeScoreOracle:
    return FakeScoreOracle()


@pytest.fixture
def state_machine(session_factory, gateway, score_oracle, clock) -> LoanStateMachine:
    return LoanStateMachine(
        session_factory=session_factory,
        gateway=gateway,
        score_oracle=score_oracle,
        bands=default_bands(),
        grace_period=timedelta(days=7),
        score_ttl=timedelta(hours=24),
        clock=clock,
    )


@pytest.fixture
def watcher(gateway) -> SettlementWatcher:
    """Push-only watcher; tests drive polling explicitly"""
    return SettlementWatcher(gateway.request_status, poll_interval=0, timeout=60)


@pytest.fixture
def service(state_machine, watcher) -> LoanService:
    sweeper = DefaultSweeper(state_machine, interval_seconds=3600, enabled=False)
    return LoanService(state_machine, watcher=watcher, sweeper=sweeper)


@pytest.fixture
def client(service: LoanService) -> Generator[TestClient, None, None]:
    """Create FastAPI test client wired to the in-memory fakes"""
    app = create_app(service)
    with TestClient(app) as test_client:
        yield test_client


async def open_active_loan(
    state_machine: LoanStateMachine,
    borrower: str = BORROWER,
    amount: str = "100",
    term_days: int = 30,
    collateral: str = "60",
):
    """Apply and confirm the lock; returns the ACTIVE loan"""
    application = await state_machine.create_application(borrower, Decimal(amount), term_days, Decimal(collateral))
    loan = application.loan
    return await state_machine.on_lock_confirmed(loan.id, loan.lock_request_id, borrower)
