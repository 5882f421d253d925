"""
Payout API Routes

Calculation (read-only, safe to poll), request creation, admin decisions
and single settlement attempts. Actors may only see their own payouts;
admins see all.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import Principal, get_current_principal, require_admin
from ..database import get_db
from ..dependencies import get_aml_client, get_wallet_client
from ..models.db_models import PayoutRequestDB
from ..services.integrations import AmlDisputeClient, WalletLedgerClient
from ..services.payouts import ComplianceGate, PayoutCalculator


router = APIRouter(prefix="/payout", tags=["payouts"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreatePayoutRequest(BaseModel):
    """Request a payout for an actor."""
    actorId: str = Field(..., description="Actor requesting the payout")
    model: str = Field(..., description="Compensation model (CPI, CPA, CPS, RevShare, hybrid)")


class DecisionRequest(BaseModel):
    """Admin decision on a held payout request."""
    decision: str = Field(..., pattern="^(approve|reject)$", description="approve or reject")
    reason: Optional[str] = Field(None, description="Reason recorded with the decision")


class TransitionEntry(BaseModel):
    fromStatus: Optional[str] = None
    toStatus: str
    trigger: str
    actor: str
    createdAt: str


class PayoutRequestResponse(BaseModel):
    """Payout request with its transition history."""
    id: str
    actorId: str
    compensationModel: str
    status: str
    totalTokens: str
    currency: str
    breakdown: dict
    fraudChecked: bool
    fraudCheckResult: Optional[str] = None
    holdReasons: List[str] = []
    reviewerId: Optional[str] = None
    decisionReason: Optional[str] = None
    settlementAttempts: int = 0
    lastSettlementError: Optional[str] = None
    transactionId: Optional[str] = None
    createdAt: Optional[str] = None
    settledAt: Optional[str] = None
    transitions: List[TransitionEntry] = []


def serialize_request(request: PayoutRequestDB) -> PayoutRequestResponse:
    return PayoutRequestResponse(
        id=request.id,
        actorId=request.actor_id,
        compensationModel=request.compensation_model.value,
        status=request.status.value,
        totalTokens=str(request.total_tokens),
        currency=request.currency,
        breakdown=request.breakdown or {},
        fraudChecked=request.fraud_checked,
        fraudCheckResult=request.fraud_check_result.value if request.fraud_check_result else None,
        holdReasons=list(request.hold_reasons or []),
        reviewerId=request.reviewer_id,
        decisionReason=request.decision_reason,
        settlementAttempts=request.settlement_attempts or 0,
        lastSettlementError=request.last_settlement_error,
        transactionId=request.transaction_id,
        createdAt=request.created_at.isoformat() if request.created_at else None,
        settledAt=request.settled_at.isoformat() if request.settled_at else None,
        transitions=[
            TransitionEntry(
                fromStatus=t.from_status.value if t.from_status else None,
                toStatus=t.to_status.value,
                trigger=t.trigger,
                actor=t.actor.value,
                createdAt=t.created_at.isoformat(),
            )
            for t in request.transitions
        ],
    )


def _authorize_actor(principal: Principal, actor_id: str) -> None:
    if not principal.is_admin and principal.subject != actor_id:
        raise HTTPException(status_code=403, detail="Not permitted for this actor")


def _gate(db: Session, aml_client: AmlDisputeClient, wallet_client: WalletLedgerClient) -> ComplianceGate:
    return ComplianceGate(db, aml_client=aml_client, wallet_client=wallet_client)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/calculate", response_model=dict)
def calculate_payout(
    actorId: str = Query(..., description="Actor id"),
    model: str = Query(..., description="Compensation model"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """PayoutBreakdown for an actor. Read-only and deterministic."""
    _authorize_actor(principal, actorId)
    breakdown = PayoutCalculator(db).calculate(actorId, model)
    return {**breakdown.to_dict(), "digest": breakdown.digest()}


@router.post("/request", response_model=PayoutRequestResponse, status_code=201)
def create_payout_request(
    request: CreatePayoutRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    aml_client: AmlDisputeClient = Depends(get_aml_client),
    wallet_client: WalletLedgerClient = Depends(get_wallet_client),
):
    """
    Create a payout request.

    409 if the actor already has a non-terminal request; 403 with a reason
    if the calculation is not eligible.
    """
    _authorize_actor(principal, request.actorId)
    payout = _gate(db, aml_client, wallet_client).create_request(request.actorId, request.model)
    return serialize_request(payout)


@router.get("/{request_id}", response_model=PayoutRequestResponse)
def get_payout_request(
    request_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    payout = db.query(PayoutRequestDB).filter(PayoutRequestDB.id == request_id).first()
    if payout is None:
        raise HTTPException(status_code=404, detail="Payout request not found")
    _authorize_actor(principal, payout.actor_id)
    return serialize_request(payout)


@router.post("/{request_id}/decision", response_model=PayoutRequestResponse)
def decide_payout_request(
    request_id: str,
    decision: DecisionRequest,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    aml_client: AmlDisputeClient = Depends(get_aml_client),
    wallet_client: WalletLedgerClient = Depends(get_wallet_client),
):
    """Approve or reject a request held for review."""
    payout = _gate(db, aml_client, wallet_client).admin_decide(
        request_id,
        approve=decision.decision == "approve",
        reviewer_id=admin.subject,
        reason=decision.reason,
    )
    return serialize_request(payout)


@router.post("/{request_id}/settle", response_model=PayoutRequestResponse)
def settle_payout_request(
    request_id: str,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
    aml_client: AmlDisputeClient = Depends(get_aml_client),
    wallet_client: WalletLedgerClient = Depends(get_wallet_client),
):
    """
    One settlement attempt. The request stays approved if the wallet
    ledger fails or times out.
    """
    payout = _gate(db, aml_client, wallet_client).settle(request_id)
    return serialize_request(payout)
