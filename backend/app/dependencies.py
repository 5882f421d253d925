"""
Attribution Engine - Collaborator Dependencies

One client per process for each external collaborator. Tests replace
these through app.dependency_overrides.
"""
from functools import lru_cache

from .services.integrations import (
    AmlDisputeClient,
    IpIntelligence,
    KycClient,
    WalletLedgerClient,
)


@lru_cache()
def get_kyc_client() -> KycClient:
    return KycClient()


@lru_cache()
def get_wallet_client() -> WalletLedgerClient:
    return WalletLedgerClient()


@lru_cache()
def get_aml_client() -> AmlDisputeClient:
    return AmlDisputeClient()


@lru_cache()
def get_ip_intel() -> IpIntelligence:
    return IpIntelligence()
