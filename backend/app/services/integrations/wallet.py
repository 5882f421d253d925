"""
Wallet ledger client.

settle() is idempotent on the payout request id, which is sent as the
Idempotency-Key. A timeout is an unknown outcome, not a failure: the
caller keeps the request approved and retries later. 5xx responses are
retried under the same key before surfacing as TransientError.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

from ...config import WALLET_LEDGER_URL, EXTERNAL_TIMEOUT_SEC, EXTERNAL_MAX_ATTEMPTS
from ..errors import TransientError
from .retrying import is_retryable

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class WalletLedgerClient:
    """settle(payoutRequestId, amount, currency) -> {success, transactionId}"""

    def __init__(
        self,
        base_url: str = WALLET_LEDGER_URL,
        timeout: float = EXTERNAL_TIMEOUT_SEC,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @retry(
        stop=stop_after_attempt(EXTERNAL_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(is_retryable),
        reraise=True,
    )
    def _post_settlement(self, payout_request_id: str, amount: Decimal, currency: str) -> httpx.Response:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(
                f"{self.base_url}/settlements",
                json={
                    "payoutRequestId": payout_request_id,
                    "amount": str(amount),
                    "currency": currency,
                },
                headers={"Idempotency-Key": payout_request_id},
            )
            if response.status_code >= 500:
                response.raise_for_status()
            return response

    def settle(self, payout_request_id: str, amount: Decimal, currency: str) -> SettlementResult:
        try:
            response = self._post_settlement(payout_request_id, amount, currency)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.warning(f"Settlement of {payout_request_id} outcome unknown: {e}")
            raise TransientError(f"Wallet ledger unavailable: {e}") from e
        except httpx.HTTPStatusError as e:
            logger.warning(f"Settlement of {payout_request_id} failed upstream: {e}")
            raise TransientError(f"Wallet ledger returned {e.response.status_code}") from e

        if response.status_code >= 500:
            raise TransientError(f"Wallet ledger returned {response.status_code}")

        payload = response.json() if response.content else {}
        if response.status_code >= 400 or not payload.get("success", False):
            return SettlementResult(
                success=False,
                error=payload.get("error") or f"HTTP {response.status_code}",
            )
        return SettlementResult(success=True, transaction_id=payload.get("transactionId"))
