"""
Event Ingest

Normalizes connector payloads into canonical events and applies them to
the AttributionLedger. This is the only place that looks at loosely-typed
connector data.

Connector types accepted:
- install, click_install         -> InstallEvent (qualifying)
- check_in, checkin              -> CheckInEvent (qualifying)
- registered, kyc_completed/kyc  -> FunnelEvent
- first_chat, first_purchase     -> FunnelEvent
- purchase                       -> PurchaseEvent
- session, activity              -> ActivityEvent
- subscription                   -> SubscriptionEvent
"""
import ipaddress
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Union

import pydantic
from sqlalchemy.orm import Session

from ...models.db_models import (
    ActorDB,
    AttributionMethod,
    FunnelStage,
    SubscriptionTier,
)
from ...models.events import (
    ActivityEvent,
    CanonicalEvent,
    CheckInEvent,
    ConnectorEvent,
    FunnelEvent,
    InstallEvent,
    Provenance,
    PurchaseEvent,
    SubscriptionEvent,
)
from ..errors import ValidationError
from .ledger import AttributionLedger

logger = logging.getLogger(__name__)


TYPE_ALIASES = {
    "install": "install",
    "click_install": "install",
    "check_in": "check_in",
    "checkin": "check_in",
    "event_checkin": "check_in",
    "registered": "registered",
    "registration": "registered",
    "kyc": "kyc_completed",
    "kyc_completed": "kyc_completed",
    "first_chat": "first_chat",
    "first_purchase": "first_purchase",
    "purchase": "purchase",
    "session": "session",
    "activity": "session",
    "subscription": "subscription",
}

FUNNEL_TYPES = {
    "registered": FunnelStage.REGISTERED,
    "kyc_completed": FunnelStage.KYC_COMPLETED,
    "first_chat": FunnelStage.FIRST_CHAT,
    "first_purchase": FunnelStage.FIRST_PURCHASE,
}

METHOD_ALIASES = {
    "code": AttributionMethod.CODE,
    "qr": AttributionMethod.QR,
    "link": AttributionMethod.LINK,
    "event-checkin": AttributionMethod.EVENT_CHECKIN,
    "event_checkin": AttributionMethod.EVENT_CHECKIN,
}


@dataclass
class IngestResult:
    """What happened to one connector event."""
    event_type: str
    user_id: str
    attributed: bool
    applied: bool
    attribution_id: Optional[str] = None
    actor_id: Optional[str] = None
    created: bool = False

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "user_id": self.user_id,
            "attributed": self.attributed,
            "applied": self.applied,
            "attribution_id": self.attribution_id,
            "actor_id": self.actor_id,
            "created": self.created,
        }


class EventIngest:
    """
    Connector boundary.

    Usage:
        ingest = EventIngest(db, kyc_client=KycClient())
        result = ingest.ingest(payload)
    """

    def __init__(self, db: Session, kyc_client=None):
        self.db = db
        self.ledger = AttributionLedger(db)
        self.kyc_client = kyc_client

    # =========================================================================
    # NORMALIZATION
    # =========================================================================

    def normalize(self, raw: Union[ConnectorEvent, Mapping[str, Any]]) -> CanonicalEvent:
        """Validate a connector payload and convert it to a canonical event."""
        if isinstance(raw, ConnectorEvent):
            payload = raw
        else:
            try:
                payload = ConnectorEvent.model_validate(raw)
            except pydantic.ValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(p) for p in first.get("loc", ()))
                raise ValidationError(f"Malformed event: {first.get('msg')}", field=field or None) from e

        event_type = TYPE_ALIASES.get(payload.type)
        if event_type is None:
            raise ValidationError(f"Unsupported event type '{payload.type}'", field="type")

        provenance = self._provenance(payload)

        if event_type in ("install", "check_in"):
            actor_id = self._resolve_actor(payload)
            if event_type == "check_in":
                return CheckInEvent(
                    user_id=payload.user_id,
                    actor_id=actor_id,
                    occurred_at=payload.timestamp,
                    provenance=provenance,
                )
            return InstallEvent(
                user_id=payload.user_id,
                actor_id=actor_id,
                method=self._resolve_method(payload),
                occurred_at=payload.timestamp,
                provenance=provenance,
            )

        if event_type in FUNNEL_TYPES:
            amount = None
            if event_type == "first_purchase" and payload.amount is not None:
                amount = self._positive_amount(payload.amount)
            return FunnelEvent(
                user_id=payload.user_id,
                stage=FUNNEL_TYPES[event_type],
                occurred_at=payload.timestamp,
                provenance=provenance,
                amount=amount,
            )

        if event_type == "purchase":
            if payload.amount is None:
                raise ValidationError("Purchase events require an amount", field="amount")
            return PurchaseEvent(
                user_id=payload.user_id,
                amount=self._positive_amount(payload.amount),
                occurred_at=payload.timestamp,
                provenance=provenance,
                transaction_id=payload.transaction_id,
            )

        if event_type == "session":
            return ActivityEvent(
                user_id=payload.user_id,
                occurred_at=payload.timestamp,
                provenance=provenance,
            )

        try:
            tier = SubscriptionTier((payload.subscription_tier or "").lower())
        except ValueError:
            raise ValidationError(
                f"Unknown subscription tier '{payload.subscription_tier}'",
                field="subscriptionTier",
            )
        return SubscriptionEvent(
            user_id=payload.user_id,
            tier=tier,
            occurred_at=payload.timestamp,
            provenance=provenance,
        )

    # =========================================================================
    # APPLICATION
    # =========================================================================

    def ingest(self, raw: Union[ConnectorEvent, Mapping[str, Any]]) -> IngestResult:
        """Normalize and apply one event. Commits on success."""
        event = self.normalize(raw)
        result = self.apply(event)
        self.db.commit()
        return result

    def apply(self, event: CanonicalEvent) -> IngestResult:
        if isinstance(event, (InstallEvent, CheckInEvent)):
            lock = self.ledger.lock_attribution(
                user_id=event.user_id,
                actor_id=event.actor_id,
                method=event.method,
                provenance=event.provenance,
                first_touch_at=event.occurred_at,
            )
            return IngestResult(
                event_type=event.kind.value,
                user_id=event.user_id,
                attributed=True,
                applied=lock.created,
                attribution_id=lock.record.id,
                actor_id=lock.record.actor_id,
                created=lock.created,
            )

        record = self.ledger.get(event.user_id)
        if record is None:
            # Funnel traffic for users nobody referred is expected
            return IngestResult(event_type=event.kind.value, user_id=event.user_id, attributed=False, applied=False)

        applied = False
        if isinstance(event, FunnelEvent):
            applied = self._apply_funnel(event)
        elif isinstance(event, PurchaseEvent):
            applied = self.ledger.record_revenue(event.user_id, event.amount)
        elif isinstance(event, SubscriptionEvent):
            applied = self.ledger.set_subscription(event.user_id, event.tier)
        elif isinstance(event, ActivityEvent):
            applied = True

        metadata = None
        if isinstance(event, PurchaseEvent) and event.transaction_id:
            metadata = {"transaction_id": event.transaction_id}
        elif isinstance(event, SubscriptionEvent):
            metadata = {"tier": event.tier.value}

        self.ledger.append_event(
            user_id=event.user_id,
            event_type=event.kind,
            occurred_at=event.occurred_at,
            provenance=event.provenance,
            amount=getattr(event, "amount", None),
            metadata=metadata,
        )

        return IngestResult(
            event_type=event.kind.value,
            user_id=event.user_id,
            attributed=True,
            applied=applied,
            attribution_id=record.id,
            actor_id=record.actor_id,
        )

    def _apply_funnel(self, event: FunnelEvent) -> bool:
        if event.stage == FunnelStage.KYC_COMPLETED and self.kyc_client is not None:
            if not self.kyc_client.is_verified(event.user_id):
                logger.warning(f"KYC event for {event.user_id} not confirmed by identity service")
                return False

        advanced = self.ledger.advance_funnel(event.user_id, event.stage, event.occurred_at)
        if event.stage == FunnelStage.FIRST_PURCHASE and event.amount is not None:
            # Every purchase counts toward revenue, including a duplicate "first" one
            self.ledger.record_revenue(event.user_id, event.amount)
        return advanced

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _resolve_actor(self, payload: ConnectorEvent) -> str:
        if payload.actor_id:
            actor = self.db.query(ActorDB).filter(ActorDB.id == payload.actor_id).first()
            if actor is None:
                raise ValidationError(f"Unknown actor '{payload.actor_id}'", field="actorId")
            return actor.id

        if payload.referral_code:
            actor = self.db.query(ActorDB).filter(
                ActorDB.referral_code == payload.referral_code
            ).first()
            if actor is None:
                raise ValidationError(f"Unknown referral code '{payload.referral_code}'", field="referralCode")
            return actor.id

        raise ValidationError("Qualifying events require actorId or referralCode", field="actorId")

    @staticmethod
    def _resolve_method(payload: ConnectorEvent) -> AttributionMethod:
        if payload.method:
            method = METHOD_ALIASES.get(payload.method.strip().lower())
            if method is None:
                raise ValidationError(f"Unknown attribution method '{payload.method}'", field="method")
            return method
        if payload.referral_code:
            return AttributionMethod.CODE
        return AttributionMethod.LINK

    @staticmethod
    def _provenance(payload: ConnectorEvent) -> Provenance:
        ip = None
        if payload.ip:
            try:
                ip = str(ipaddress.ip_address(payload.ip.strip()))
            except ValueError:
                raise ValidationError(f"Invalid IP address '{payload.ip}'", field="ip")
        return Provenance(
            device_id=payload.device_id,
            ip_address=ip,
            latitude=payload.geo.lat if payload.geo else None,
            longitude=payload.geo.lng if payload.geo else None,
        )

    @staticmethod
    def _positive_amount(amount: Decimal) -> Decimal:
        if amount <= 0:
            raise ValidationError("Amount must be positive", field="amount")
        return amount.quantize(Decimal("0.01"))
