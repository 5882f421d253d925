"""
Attribution API Routes

Connector-facing event intake and ledger lookups.
Tracking is best-effort: a transient failure is acknowledged with
202 {"tracked": false} instead of an error.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import Principal, require_admin, verify_internal_key
from ..database import get_db
from ..dependencies import get_kyc_client
from ..models.events import ConnectorEvent
from ..services.attribution import AttributionLedger, EventIngest
from ..services.errors import TransientError
from ..services.integrations import KycClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/attribution", tags=["attribution"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class TrackResponse(BaseModel):
    """Result of one tracked connector event."""
    tracked: bool
    attributionId: Optional[str] = None
    actorId: Optional[str] = None
    eventType: Optional[str] = None
    attributed: bool = False
    created: bool = False
    applied: bool = False


class AttributionResponse(BaseModel):
    """Attribution record as seen by admins."""
    id: str
    userId: str
    actorId: str
    method: str
    firstTouchAt: str
    deviceId: Optional[str] = None
    ip: Optional[str] = None
    registeredAt: Optional[str] = None
    kycCompletedAt: Optional[str] = None
    firstChatAt: Optional[str] = None
    firstPurchaseAt: Optional[str] = None
    lifetimeRevenue: str
    subscriptionTier: str
    verified: bool
    fraudScore: float
    locked: bool
    frozen: bool
    fraudulent: bool


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/track", response_model=TrackResponse)
def track_event(
    event: ConnectorEvent,
    db: Session = Depends(get_db),
    kyc_client: KycClient = Depends(get_kyc_client),
    _: bool = Depends(verify_internal_key),
):
    """
    Ingest one connector event.

    Qualifying events (install, check_in) return the attribution record id,
    which may belong to an earlier touch by a different actor.
    """
    ingest = EventIngest(db, kyc_client=kyc_client)
    try:
        result = ingest.ingest(event)
    except TransientError as e:
        db.rollback()
        logger.warning(f"Tracking deferred for user {event.user_id}: {e}")
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"tracked": False})

    return TrackResponse(
        tracked=True,
        attributionId=result.attribution_id,
        actorId=result.actor_id,
        eventType=result.event_type,
        attributed=result.attributed,
        created=result.created,
        applied=result.applied,
    )


@router.get("/{user_id}", response_model=AttributionResponse)
def get_attribution(
    user_id: str,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    """Current attribution record for a user."""
    record = AttributionLedger(db).get(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No attribution for user {user_id}")

    return AttributionResponse(
        id=record.id,
        userId=record.user_id,
        actorId=record.actor_id,
        method=record.method.value,
        firstTouchAt=record.first_touch_at.isoformat(),
        deviceId=record.device_id,
        ip=record.ip_address,
        registeredAt=_iso(record.registered_at),
        kycCompletedAt=_iso(record.kyc_completed_at),
        firstChatAt=_iso(record.first_chat_at),
        firstPurchaseAt=_iso(record.first_purchase_at),
        lifetimeRevenue=str(record.lifetime_revenue),
        subscriptionTier=record.subscription_tier.value,
        verified=record.verified,
        fraudScore=record.fraud_score,
        locked=record.locked,
        frozen=record.frozen,
        fraudulent=record.fraudulent,
    )
