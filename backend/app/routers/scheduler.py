"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Fraud detection, ring detection, payout evaluation, settlement and tier
promotion.
Every sweep returns a summary with its failure count and whether it was
interrupted.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..database import get_db
from ..dependencies import get_aml_client, get_ip_intel, get_wallet_client
from ..services.fraud import run_fraud_sweep, run_ring_sweep
from ..services.integrations import AmlDisputeClient, IpIntelligence, WalletLedgerClient
from ..services.payouts import ComplianceGate, run_tier_promotion_sweep


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/fraud-sweep", response_model=dict)
def run_detection_sweep(
    db: Session = Depends(get_db),
    ip_intel: IpIntelligence = Depends(get_ip_intel),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the real-time detector battery over the recent ledger window.

    System-automatic - signals, fraud scores, risk recomputation and
    verification of records that stayed clean.
    """
    return run_fraud_sweep(db, ip_intel=ip_intel)


@router.post("/ring-sweep", response_model=dict)
def run_coordinated_ring_sweep(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Run the nightly coordinated-ring detector."""
    return run_ring_sweep(db)


@router.post("/payout-evaluation-sweep", response_model=dict)
def run_payout_evaluation_sweep(
    db: Session = Depends(get_db),
    aml_client: AmlDisputeClient = Depends(get_aml_client),
    wallet_client: WalletLedgerClient = Depends(get_wallet_client),
    _: bool = Depends(verify_internal_key),
):
    """Re-evaluate payout requests left pending by an unavailable collaborator."""
    gate = ComplianceGate(db, aml_client=aml_client, wallet_client=wallet_client)
    return gate.run_evaluation_sweep()


@router.post("/settlement-sweep", response_model=dict)
def run_settlement_sweep(
    db: Session = Depends(get_db),
    aml_client: AmlDisputeClient = Depends(get_aml_client),
    wallet_client: WalletLedgerClient = Depends(get_wallet_client),
    _: bool = Depends(verify_internal_key),
):
    """One settlement attempt for every approved request."""
    gate = ComplianceGate(db, aml_client=aml_client, wallet_client=wallet_client)
    return gate.run_settlement_sweep()


@router.post("/tier-promotion-sweep", response_model=dict)
def run_tier_sweep(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Promote actors whose clean referral volume earned a higher tier."""
    return run_tier_promotion_sweep(db)


# =============================================================================
# MANUAL TRIGGER ENDPOINTS (FOR TESTING)
# =============================================================================

@router.post("/trigger-all", response_model=dict)
def trigger_all_tasks(
    db: Session = Depends(get_db),
    ip_intel: IpIntelligence = Depends(get_ip_intel),
    aml_client: AmlDisputeClient = Depends(get_aml_client),
    wallet_client: WalletLedgerClient = Depends(get_wallet_client),
    _: bool = Depends(verify_internal_key),
):
    """
    Trigger all scheduler tasks in order.

    For testing/manual intervention only.
    """
    gate = ComplianceGate(db, aml_client=aml_client, wallet_client=wallet_client)

    results = {
        "fraud_sweep": run_fraud_sweep(db, ip_intel=ip_intel),
        "ring_sweep": run_ring_sweep(db),
        "payout_evaluation": gate.run_evaluation_sweep(),
        "settlement": gate.run_settlement_sweep(),
        "tier_promotion": run_tier_promotion_sweep(db),
    }

    return {
        "run_date": datetime.now(timezone.utc).isoformat(),
        "results": results,
    }
