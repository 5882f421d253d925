"""
Fraud API Routes (admin only)

Signal review, signal listing and actor risk lookups.
Signals are immutable; a review appends a decision and recomputes the
actor's risk state.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import Principal, require_admin
from ..database import get_db
from ..models.db_models import AccountStatus, ReviewDecision
from ..services.fraud import FraudSignalDetector, RiskScoringEngine


router = APIRouter(prefix="/fraud", tags=["fraud"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class ReviewRequest(BaseModel):
    """Admin decision on a fraud signal."""
    signalId: str = Field(..., description="Signal being reviewed")
    decision: ReviewDecision = Field(..., description="confirmed or overturned")
    notes: Optional[str] = Field(None, description="Free-form reviewer notes")


class SignalResponse(BaseModel):
    id: str
    type: str
    severity: str
    confidence: float
    actorId: str
    evidence: dict
    detectedAt: str
    review: Optional[str] = None


class RiskResponse(BaseModel):
    actorId: str
    riskScore: float
    accountStatus: str
    signalCount: int
    lastRecalculatedAt: Optional[str] = None
    version: Optional[int] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/review", response_model=dict)
def review_signal(
    request: ReviewRequest,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    """
    Confirm or overturn a signal.

    An overturn may move the actor one status level toward clean.
    """
    engine = RiskScoringEngine(db)
    review, result = engine.review_signal(
        request.signalId,
        request.decision,
        reviewer_id=admin.subject,
        notes=request.notes,
    )
    return {
        "signalId": request.signalId,
        "decision": review.decision.value,
        "reviewerId": review.reviewer_id,
        "decidedAt": review.decided_at.isoformat(),
        "risk": result.to_dict(),
    }


@router.get("/signals", response_model=List[SignalResponse])
def list_signals(
    actorId: str = Query(..., description="Actor id"),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    """All signals for an actor with their effective review decision."""
    signals = FraudSignalDetector(db).signals_for_actor(actorId)
    return [
        SignalResponse(
            id=s.id,
            type=s.signal_type.value,
            severity=s.severity.value,
            confidence=s.confidence,
            actorId=s.actor_id,
            evidence=s.evidence,
            detectedAt=s.detected_at.isoformat(),
            review=s.effective_review.value if s.effective_review else None,
        )
        for s in signals
    ]


@router.get("/risk/{actor_id}", response_model=RiskResponse)
def get_actor_risk(
    actor_id: str,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    """Current risk state. Actors never scored read as clean."""
    state = RiskScoringEngine(db).get_state(actor_id)
    if state is None:
        return RiskResponse(
            actorId=actor_id,
            riskScore=0.0,
            accountStatus=AccountStatus.CLEAN.value,
            signalCount=0,
        )

    return RiskResponse(
        actorId=state.actor_id,
        riskScore=state.risk_score,
        accountStatus=state.account_status.value,
        signalCount=state.signal_count,
        lastRecalculatedAt=state.last_recalculated_at.isoformat() if state.last_recalculated_at else None,
        version=state.version,
    )
