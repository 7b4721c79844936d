"""Capabilities the lifecycle core consumes from external collaborators"""

from decimal import Decimal
from typing import Optional, Protocol
from loan_orchestrator.domain.models import RequestStatus, Verification


class ScoreOracle(Protocol):
    async def get_score(self, borrower_address: str) -> float:
        """Raises ScoreUnavailableError"""
        ...


class CollateralGateway(Protocol):
    """
    Escrow, payment and verification operations on the ledger.

    Implementations are stateless: no connect/disconnect lifecycle is
    visible to callers, and concurrent calls never share a connection
    handshake.
    """

    async def create_lock_request(self, borrower: str, amount: Decimal, term_days: int) -> str:
        """Signing request for the borrower's collateral escrow. Raises GatewayUnavailableError"""
        ...

    async def create_payment_request(self, borrower: str, amount: Decimal, loan_id: str) -> str:
        """Signing request for a repayment. Raises GatewayUnavailableError"""
        ...

    async def verify_request(
        self,
        request_id: str,
        expected_amount: Optional[Decimal] = None,
        transaction_type: Optional[str] = None,
    ) -> Verification:
        """Confirmed only if signed, validated on ledger and matching the requested transfer"""
        ...

    async def request_status(self, request_id: str) -> RequestStatus:
        """Current status of a signing request, used by the watcher's poll path"""
        ...

    async def disburse(self, borrower: str, amount: Decimal) -> str:
        """Pay out the principal. Raises SettlementFailedError; never retried automatically"""
        ...

    async def release_collateral(self, lock_reference: str, borrower: str) -> str:
        """Raises CollateralReleaseError"""
        ...

    async def claim_collateral(self, borrower: str, lock_reference: str) -> str:
        """Raises ClaimFailedError"""
        ...
