"""
Attribution Engine - Event Contracts

Two layers:
- ConnectorEvent: the loosely-typed payload ad/referral connectors send us.
- Canonical events: a closed union of frozen dataclasses produced by EventIngest.

Nothing past EventIngest ever sees a ConnectorEvent.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .db_models import AttributionMethod, EventKind, FunnelStage, SubscriptionTier


# =============================================================================
# CONNECTOR PAYLOAD
# =============================================================================

class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class ConnectorEvent(BaseModel):
    """Raw event as emitted by ad/referral connectors."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    actor_id: Optional[str] = Field(None, alias="actorId", max_length=64)
    referral_code: Optional[str] = Field(None, alias="referralCode", max_length=64)
    device_id: Optional[str] = Field(None, alias="deviceId", max_length=128)
    ip: Optional[str] = Field(None, max_length=64)
    geo: Optional[GeoPoint] = None
    timestamp: datetime
    type: str = Field(..., min_length=1)

    method: Optional[str] = None
    amount: Optional[Decimal] = None
    subscription_tier: Optional[str] = Field(None, alias="subscriptionTier")
    transaction_id: Optional[str] = Field(None, alias="transactionId")

    @field_validator("type")
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return value.strip().lower().replace("-", "_")

    @field_validator("timestamp")
    @classmethod
    def to_naive_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


# =============================================================================
# CANONICAL EVENTS
# =============================================================================

@dataclass(frozen=True)
class Provenance:
    """Where a touch came from."""
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class InstallEvent:
    """First-touch install via code, QR or link."""
    kind: ClassVar[EventKind] = EventKind.INSTALL

    user_id: str
    actor_id: str
    method: AttributionMethod
    occurred_at: datetime
    provenance: Provenance


@dataclass(frozen=True)
class CheckInEvent:
    """First-touch check-in at an offline partner event."""
    kind: ClassVar[EventKind] = EventKind.CHECK_IN

    user_id: str
    actor_id: str
    occurred_at: datetime
    provenance: Provenance

    @property
    def method(self) -> AttributionMethod:
        return AttributionMethod.EVENT_CHECKIN


@dataclass(frozen=True)
class FunnelEvent:
    """Registration, KYC, first chat or first purchase milestone."""
    user_id: str
    stage: FunnelStage
    occurred_at: datetime
    provenance: Provenance
    amount: Optional[Decimal] = None  # first_purchase carries its revenue

    @property
    def kind(self) -> EventKind:
        return EventKind(self.stage.value)


@dataclass(frozen=True)
class PurchaseEvent:
    """Repeat purchase; adds to lifetime revenue."""
    kind: ClassVar[EventKind] = EventKind.PURCHASE

    user_id: str
    amount: Decimal
    occurred_at: datetime
    provenance: Provenance
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class ActivityEvent:
    """In-app session; counts as engagement."""
    kind: ClassVar[EventKind] = EventKind.SESSION

    user_id: str
    occurred_at: datetime
    provenance: Provenance


@dataclass(frozen=True)
class SubscriptionEvent:
    """Subscription tier change for the referred user."""
    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION

    user_id: str
    tier: SubscriptionTier
    occurred_at: datetime
    provenance: Provenance


CanonicalEvent = Union[
    InstallEvent,
    CheckInEvent,
    FunnelEvent,
    PurchaseEvent,
    ActivityEvent,
    SubscriptionEvent,
]

QualifyingEvent = Union[InstallEvent, CheckInEvent]
