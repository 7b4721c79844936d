"""Collateral/disbursement gateway backed by the signing platform and treasury"""

import logging
from decimal import Decimal
from loan_orchestrator.config import settings
from loan_orchestrator.domain.exceptions import (
    ClaimFailedError,
    CollateralReleaseError,
    GatewayUnavailableError,
    SettlementFailedError,
)
from loan_orchestrator.domain.models import RequestState, RequestStatus, Verification
from loan_orchestrator.infrastructure.clients.signing import SigningClient, xrp_to_drops
from loan_orchestrator.infrastructure.clients.treasury import SUCCESS_RESULT, TreasuryClient, TreasuryError
from loan_orchestrator.infrastructure.observability.metrics import gateway_failure_counter, gateway_latency_histogram

logger = logging.getLogger(__name__)


class XrplCollateralGateway:
    """
    Stateless gateway: every call opens its own HTTP client, so concurrent
    loan operations never share a connection or a connect/disconnect cycle.

    Borrower-side transactions (escrow lock, repayment) go through signing
    requests; platform-side ones (payout, release, claim) through treasury.
    """

    def __init__(
        self,
        signing: SigningClient | None = None,
        treasury: TreasuryClient | None = None,
        escrow_address: str | None = None,
    ):
        self.signing = signing or SigningClient()
        self.treasury = treasury or TreasuryClient()
        self.escrow_address = escrow_address or settings.platform_escrow_address

    async def create_lock_request(self, borrower: str, amount: Decimal, term_days: int) -> str:
        with gateway_latency_histogram.labels(operation="create_lock_request").time():
            try:
                return await self.signing.create_escrow_payload(borrower, amount, term_days, self.escrow_address)
            except GatewayUnavailableError:
                gateway_failure_counter.labels(operation="create_lock_request").inc()
                raise

    async def create_payment_request(self, borrower: str, amount: Decimal, loan_id: str) -> str:
        with gateway_latency_histogram.labels(operation="create_payment_request").time():
            try:
                return await self.signing.create_repayment_payload(borrower, amount, loan_id, self.escrow_address)
            except GatewayUnavailableError:
                gateway_failure_counter.labels(operation="create_payment_request").inc()
                raise

    async def request_status(self, request_id: str) -> RequestStatus:
        return await self.signing.get_status(request_id)

    async def verify_request(
        self,
        request_id: str,
        expected_amount: Decimal | None = None,
        transaction_type: str | None = None,
    ) -> Verification:
        """
        Independently check a signing request: it must be signed on the
        signing platform AND its transaction validated with tesSUCCESS on ledger.

        The settled transaction must also match what was requested: sent to
        the platform escrow address, of ``transaction_type`` and moving
        exactly ``expected_amount`` (the delivered amount for payments).
        """
        with gateway_latency_histogram.labels(operation="verify_request").time():
            try:
                status = await self.signing.get_status(request_id)
                if status.state != RequestState.CONFIRMED or not status.tx_hash:
                    return Verification(confirmed=False, signer_address=status.signer_address)

                tx = await self.treasury.get_transaction(status.tx_hash)
            except (GatewayUnavailableError, TreasuryError) as e:
                gateway_failure_counter.labels(operation="verify_request").inc()
                raise GatewayUnavailableError(f"Could not verify request {request_id}: {e}") from e

        meta = tx.get("meta") or {}
        result = meta.get("TransactionResult")
        validated = bool(tx.get("validated")) and result == SUCCESS_RESULT
        if not validated:
            logger.warning(
                "Signed request not settled on ledger",
                extra={"request_id": request_id, "tx_hash": status.tx_hash, "result": result},
            )

        mismatch = self._mismatch(tx, meta, expected_amount, transaction_type)
        if validated and mismatch:
            logger.warning(
                "Settled transaction does not match request",
                extra={"request_id": request_id, "tx_hash": status.tx_hash, "mismatch": mismatch},
            )

        return Verification(
            confirmed=validated and not mismatch,
            settlement_tx_hash=status.tx_hash,
            signer_address=tx.get("Account") or status.signer_address,
            ledger_sequence=tx.get("Sequence"),
        )

    def _mismatch(
        self,
        tx: dict,
        meta: dict,
        expected_amount: Decimal | None,
        transaction_type: str | None,
    ) -> str | None:
        if transaction_type and tx.get("TransactionType") != transaction_type:
            return f"type {tx.get('TransactionType')} != {transaction_type}"
        if tx.get("Destination") != self.escrow_address:
            return f"destination {tx.get('Destination')} != {self.escrow_address}"
        if expected_amount is not None:
            settled = meta.get("delivered_amount") or tx.get("Amount")
            expected = xrp_to_drops(expected_amount)
            if str(settled) != expected:
                return f"amount {settled} drops != {expected}"
        return None

    async def disburse(self, borrower: str, amount: Decimal) -> str:
        with gateway_latency_histogram.labels(operation="disburse").time():
            try:
                return await self.treasury.send_payment(borrower, amount)
            except TreasuryError as e:
                gateway_failure_counter.labels(operation="disburse").inc()
                raise SettlementFailedError(str(e)) from e

    async def release_collateral(self, lock_reference: str, borrower: str) -> str:
        with gateway_latency_histogram.labels(operation="release_collateral").time():
            try:
                return await self.treasury.cancel_escrow(borrower, lock_reference)
            except TreasuryError as e:
                gateway_failure_counter.labels(operation="release_collateral").inc()
                raise CollateralReleaseError(str(e)) from e

    async def claim_collateral(self, borrower: str, lock_reference: str) -> str:
        with gateway_latency_histogram.labels(operation="claim_collateral").time():
            try:
                return await self.treasury.finish_escrow(borrower, lock_reference)
            except TreasuryError as e:
                gateway_failure_counter.labels(operation="claim_collateral").inc()
                raise ClaimFailedError(str(e)) from e
