"""
External collaborators

HTTP clients for the identity/KYC service, the wallet ledger, the
AML/dispute service and IP intelligence. All calls use bounded timeouts;
transient failures are retried with exponential backoff and surface as
TransientError once retries are exhausted.
"""

from .kyc import KycClient
from .wallet import WalletLedgerClient, SettlementResult
from .aml import AmlDisputeClient, AmlRiskLevel
from .ip_intel import IpIntelligence

__all__ = [
    'KycClient',
    'WalletLedgerClient',
    'SettlementResult',
    'AmlDisputeClient',
    'AmlRiskLevel',
    'IpIntelligence',
]
