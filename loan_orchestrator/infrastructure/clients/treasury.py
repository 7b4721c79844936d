"""Treasury service client - platform-signed ledger transactions with retry logic"""

import asyncio
from decimal import Decimal
from typing import Any, Dict
import httpx
from loan_orchestrator.config import settings
from loan_orchestrator.infrastructure.clients.signing import xrp_to_drops

SUCCESS_RESULT = "tesSUCCESS"


class TreasuryError(Exception):
    """Treasury refused or failed a transaction"""


class TreasuryClient:
    """
    Client for the custody service that holds the platform keys.

    The service signs and submits platform-side transactions (payouts,
    escrow finish/cancel) and reports ledger results; this client never
    sees key material.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.treasury_api_base
        self.token = token if token is not None else settings.treasury_api_token
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = settings.gateway_max_retries
        self.backoff_base = settings.gateway_backoff_base
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.token}"},
        )

    async def send_payment(self, destination: str, amount: Decimal) -> str:
        """
        Pay out from the platform treasury. Submitted exactly once: a
        failure here may still have reached the ledger, so the caller decides.
        """
        async with self._client() as client:
            try:
                response = await client.post(
                    "/payments",
                    json={"destination": destination, "amount_drops": xrp_to_drops(amount)},
                )
                response.raise_for_status()
                return self._settled_hash(response.json())
            except (httpx.HTTPError, ValueError) as e:
                raise TreasuryError(f"Payment submission failed: {e}") from e

    async def finish_escrow(self, owner: str, sequence: str) -> str:
        """Finish the borrower's escrow, delivering collateral to the platform"""
        return await self._submit_with_retry(
            "/escrows/finish", {"owner": owner, "offer_sequence": sequence}
        )

    async def cancel_escrow(self, owner: str, sequence: str) -> str:
        """Cancel the borrower's escrow, returning collateral to the owner"""
        return await self._submit_with_retry(
            "/escrows/cancel", {"owner": owner, "offer_sequence": sequence}
        )

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        """Look up a validated ledger transaction"""
        async with self._client() as client:
            try:
                response = await client.get(f"/transactions/{tx_hash}")
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                raise TreasuryError(f"Transaction lookup failed: {e}") from e
            except ValueError as e:
                raise TreasuryError(f"Invalid transaction data: {e}") from e

    async def _submit_with_retry(self, path: str, payload: Dict[str, Any]) -> str:
        """
        Submit an escrow operation with retry logic.

        Retry strategy:
        - Exponential backoff: base * 2^(attempt-1)
        - Retries on 5xx errors and network failures only
        - Escrow finish/cancel on a consumed escrow fails on ledger, so a
          duplicate submission cannot move funds twice
        """
        attempt = 0
        async with self._client() as client:
            while True:
                try:
                    response = await client.post(path, json=payload)
                    response.raise_for_status()
                    return self._settled_hash(response.json())

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    retryable = not isinstance(e, httpx.HTTPStatusError) or e.response.status_code >= 500
                    if not retryable or attempt >= self.max_retries:
                        raise TreasuryError(f"Escrow operation {path} failed: {e}") from e

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)

                except ValueError as e:
                    raise TreasuryError(f"Invalid treasury response: {e}") from e

    @staticmethod
    def _settled_hash(data: Dict[str, Any]) -> str:
        try:
            result = data["engine_result"]
            tx_hash = data["hash"]
        except (KeyError, TypeError) as e:
            raise TreasuryError(f"Invalid treasury response: {e}") from e
        if result != SUCCESS_RESULT:
            raise TreasuryError(f"Ledger rejected transaction {tx_hash}: {result}")
        return tx_hash
