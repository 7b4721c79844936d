"""Wallet signing platform (XUMM) client for borrower-signed transactions"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict
import httpx
from loan_orchestrator.config import settings
from loan_orchestrator.domain.exceptions import GatewayUnavailableError
from loan_orchestrator.domain.models import RequestState, RequestStatus

DROPS_PER_XRP = Decimal("1000000")
RIPPLE_EPOCH_OFFSET = 946684800  # seconds between 1970-01-01 and 2000-01-01


def xrp_to_drops(amount: Decimal) -> str:
    return str(int((amount * DROPS_PER_XRP).to_integral_value()))


def to_ripple_time(moment: datetime) -> int:
    return int(moment.timestamp()) - RIPPLE_EPOCH_OFFSET


def _hex(text: str) -> str:
    return text.encode("utf-8").hex().upper()


class SigningClient:
    """Creates sign requests (payloads) and reads their resolution"""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.xumm_api_base
        self.api_key = api_key if api_key is not None else settings.xumm_api_key
        self.api_secret = api_secret if api_secret is not None else settings.xumm_api_secret
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # One client per call: no shared connection state between loans
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"X-API-Key": self.api_key, "X-API-Secret": self.api_secret},
        )

    async def create_escrow_payload(
        self,
        borrower: str,
        collateral_amount: Decimal,
        term_days: int,
        destination: str,
    ) -> str:
        """Ask the borrower to escrow collateral until the end of the term"""
        release_after = datetime.now(timezone.utc) + timedelta(days=term_days)
        return await self._create_payload(
            {
                "txjson": {
                    "TransactionType": "EscrowCreate",
                    "Account": borrower,
                    "Amount": xrp_to_drops(collateral_amount),
                    "Destination": destination,
                    "FinishAfter": to_ripple_time(release_after),
                }
            }
        )

    async def create_repayment_payload(
        self,
        borrower: str,
        amount: Decimal,
        loan_id: str,
        destination: str,
    ) -> str:
        """Ask the borrower to sign a repayment tagged with the loan id"""
        return await self._create_payload(
            {
                "txjson": {
                    "TransactionType": "Payment",
                    "Account": borrower,
                    "Amount": xrp_to_drops(amount),
                    "Destination": destination,
                    "Memos": [
                        {
                            "Memo": {
                                "MemoType": _hex("repayment"),
                                "MemoFormat": _hex("text/plain"),
                                "MemoData": _hex(loan_id),
                            }
                        }
                    ],
                },
                "custom_meta": {
                    "identifier": loan_id,
                    "instruction": f"This transaction will repay {amount} XRP toward your loan.",
                },
            }
        )

    async def get_status(self, request_id: str) -> RequestStatus:
        """
        Resolve a payload to pending/confirmed/rejected.

        Signed payloads are confirmed; declined, cancelled or expired ones
        are rejected; anything else is still pending.
        """
        data = await self._get_payload(request_id)
        try:
            meta = data["meta"]
            response = data.get("response") or {}
        except (KeyError, TypeError) as e:
            raise GatewayUnavailableError(f"Invalid payload data for {request_id}: {e}") from e

        if meta.get("signed") is True:
            state = RequestState.CONFIRMED
        elif meta.get("cancelled") or meta.get("expired") or (meta.get("resolved") and meta.get("signed") is False):
            state = RequestState.REJECTED
        else:
            state = RequestState.PENDING

        return RequestStatus(
            request_id=request_id,
            state=state,
            signer_address=response.get("account"),
            tx_hash=response.get("txid"),
        )

    async def _create_payload(self, body: Dict[str, Any]) -> str:
        async with self._client() as client:
            try:
                response = await client.post("/platform/payload", json=body)
                response.raise_for_status()
                return response.json()["uuid"]
            except httpx.TimeoutException as e:
                raise GatewayUnavailableError(f"Signing platform timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise GatewayUnavailableError(f"Signing platform error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise GatewayUnavailableError(f"Signing platform unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise GatewayUnavailableError(f"Invalid payload response: {e}") from e

    async def _get_payload(self, request_id: str) -> Dict[str, Any]:
        async with self._client() as client:
            try:
                response = await client.get(f"/platform/payload/{request_id}")
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as e:
                raise GatewayUnavailableError(f"Signing platform timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise GatewayUnavailableError(f"Signing platform error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise GatewayUnavailableError(f"Signing platform unreachable: {e}") from e
            except ValueError as e:
                raise GatewayUnavailableError(f"Invalid payload data: {e}") from e
