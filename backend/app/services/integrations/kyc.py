"""
Identity/KYC service client.
"""
import logging
from typing import Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

from ...config import KYC_SERVICE_URL, EXTERNAL_TIMEOUT_SEC, EXTERNAL_MAX_ATTEMPTS
from ..errors import TransientError
from .retrying import is_retryable

logger = logging.getLogger(__name__)


class KycClient:
    """isVerified(userId) against the identity service."""

    def __init__(
        self,
        base_url: str = KYC_SERVICE_URL,
        timeout: float = EXTERNAL_TIMEOUT_SEC,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @retry(
        stop=stop_after_attempt(EXTERNAL_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception(is_retryable),
        reraise=True,
    )
    def _fetch(self, user_id: str) -> dict:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.get(f"{self.base_url}/users/{user_id}/verification")
            response.raise_for_status()
            return response.json()

    def is_verified(self, user_id: str) -> bool:
        try:
            payload = self._fetch(user_id)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                # Unknown to the identity service means not verified
                return False
            logger.warning(f"KYC lookup for {user_id} failed: {e}")
            raise TransientError(f"KYC service returned {e.response.status_code}") from e
        except (httpx.TimeoutException, httpx.TransportError, ValueError) as e:
            logger.warning(f"KYC lookup for {user_id} unavailable: {e}")
            raise TransientError(f"KYC service unavailable: {e}") from e
        return bool(payload.get("verified", False))
