"""
AML / dispute service client.
"""
import logging
from enum import Enum
from typing import Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

from ...config import AML_SERVICE_URL, EXTERNAL_TIMEOUT_SEC, EXTERNAL_MAX_ATTEMPTS
from ..errors import TransientError
from .retrying import is_retryable

logger = logging.getLogger(__name__)


class AmlRiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return [AmlRiskLevel.LOW, AmlRiskLevel.MEDIUM, AmlRiskLevel.HIGH].index(self)


class AmlDisputeClient:
    """hasOpenDispute(actorId) and amlRiskLevel(actorId)."""

    def __init__(
        self,
        base_url: str = AML_SERVICE_URL,
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
    def _get(self, path: str) -> dict:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.get(f"{self.base_url}{path}")
            response.raise_for_status()
            return response.json()

    def _get_or_transient(self, path: str) -> dict:
        try:
            return self._get(path)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"AML service call {path} failed: {e}")
            raise TransientError(f"AML service unavailable: {e}") from e

    def has_open_dispute(self, actor_id: str) -> bool:
        payload = self._get_or_transient(f"/actors/{actor_id}/disputes")
        return bool(payload.get("openDispute", False))

    def aml_risk_level(self, actor_id: str) -> AmlRiskLevel:
        payload = self._get_or_transient(f"/actors/{actor_id}/aml")
        try:
            return AmlRiskLevel(str(payload.get("riskLevel", "low")).lower())
        except ValueError:
            # Unknown levels are treated as the most severe
            return AmlRiskLevel.HIGH
