"""Score oracle HTTP client for fetching borrower risk scores"""

import httpx
from loan_orchestrator.domain.exceptions import ScoreUnavailableError
from loan_orchestrator.config import settings
from loan_orchestrator.infrastructure.observability.metrics import score_fetch_failures_counter


class ScoreOracleClient:
    """Client for the external risk-scoring model"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.ml_api_url
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    async def get_score(self, borrower_address: str) -> float:
        """
        Fetch the risk score (0-100, lower is safer) for a wallet address.

        Raises:
            ScoreUnavailableError: On timeout, HTTP errors, or invalid response
        """
        if not borrower_address:
            raise ValueError("Wallet address cannot be empty")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(
                    f"{self.base_url}/score",
                    params={"address": borrower_address},
                )
                response.raise_for_status()
                data = response.json()

                # Older model versions answer with "score"
                raw = data["risk_score"] if "risk_score" in data else data["score"]
                return float(raw)

            except httpx.TimeoutException as e:
                score_fetch_failures_counter.inc()
                raise ScoreUnavailableError(f"Score API timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                score_fetch_failures_counter.inc()
                raise ScoreUnavailableError(f"Score API error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                score_fetch_failures_counter.inc()
                raise ScoreUnavailableError(f"Score API unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                score_fetch_failures_counter.inc()
                raise ScoreUnavailableError(f"Invalid score response: {e}") from e
