"""
Ledger Snapshot

Immutable, detached copy of the ledger slice a sweep looks at.
Detectors only ever see this object, never the session.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import BURST_WINDOW_HOURS, DETECTION_LOOKBACK_DAYS
from ...models.db_models import (
    ActorDB,
    AttributionDB,
    AttributionEventDB,
    AttributionMethod,
    EventKind,
)

logger = logging.getLogger(__name__)

_IN_CHUNK = 500


@dataclass(frozen=True)
class AttributionView:
    user_id: str
    actor_id: str
    method: AttributionMethod
    first_touch_at: datetime
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    registered_at: Optional[datetime] = None
    first_purchase_at: Optional[datetime] = None
    verified: bool = False
    frozen: bool = False
    fraudulent: bool = False

    @classmethod
    def from_row(cls, row: AttributionDB) -> "AttributionView":
        return cls(
            user_id=row.user_id,
            actor_id=row.actor_id,
            method=row.method,
            first_touch_at=row.first_touch_at,
            device_id=row.device_id,
            ip_address=row.ip_address,
            latitude=row.latitude,
            longitude=row.longitude,
            registered_at=row.registered_at,
            first_purchase_at=row.first_purchase_at,
            verified=bool(row.verified),
            frozen=bool(row.frozen),
            fraudulent=bool(row.fraudulent),
        )


@dataclass(frozen=True)
class EventView:
    user_id: str
    event_type: EventKind
    occurred_at: datetime
    actor_id: Optional[str] = None


@dataclass(frozen=True)
class ActorView:
    id: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerSnapshot:
    """Everything the detectors need, resolved up front."""
    taken_at: datetime
    window_start: datetime
    attributions: Tuple[AttributionView, ...] = ()
    events: Tuple[EventView, ...] = ()
    actors: Mapping[str, ActorView] = field(default_factory=lambda: MappingProxyType({}))
    ip_locations: Mapping[str, Tuple[float, float]] = field(default_factory=lambda: MappingProxyType({}))
    vpn_ips: FrozenSet[str] = frozenset()
    skipped_records: int = 0

    def events_by_user(self) -> Dict[str, List[EventView]]:
        grouped: Dict[str, List[EventView]] = {}
        for event in self.events:
            grouped.setdefault(event.user_id, []).append(event)
        for events in grouped.values():
            events.sort(key=lambda e: e.occurred_at)
        return grouped

    def attributions_by_actor(self) -> Dict[str, List[AttributionView]]:
        grouped: Dict[str, List[AttributionView]] = {}
        for record in self.attributions:
            grouped.setdefault(record.actor_id, []).append(record)
        return grouped


def build_snapshot(
    attributions,
    events=(),
    actors=(),
    taken_at: Optional[datetime] = None,
    window_start: Optional[datetime] = None,
    ip_locations: Optional[Mapping[str, Tuple[float, float]]] = None,
    vpn_ips=(),
    skipped_records: int = 0,
) -> LedgerSnapshot:
    """Assemble a snapshot from already-detached views."""
    taken_at = taken_at or datetime.utcnow()
    attributions = tuple(sorted(attributions, key=lambda a: (a.first_touch_at, a.user_id)))
    return LedgerSnapshot(
        taken_at=taken_at,
        window_start=window_start or taken_at - timedelta(days=DETECTION_LOOKBACK_DAYS),
        attributions=attributions,
        events=tuple(sorted(events, key=lambda e: (e.occurred_at, e.user_id))),
        actors=MappingProxyType({actor.id: actor for actor in actors}),
        ip_locations=MappingProxyType(dict(ip_locations or {})),
        vpn_ips=frozenset(vpn_ips),
        skipped_records=skipped_records,
    )


def load_snapshot(
    db: Session,
    lookback_days: int = DETECTION_LOOKBACK_DAYS,
    now: Optional[datetime] = None,
    ip_intel=None,
    include_events: bool = True,
) -> LedgerSnapshot:
    """
    Read the detection window out of the store.

    The window covers lookback_days plus one burst window so the burst
    detector has a full baseline behind the most recent hours.

    Args:
        db: Database session
        lookback_days: Days of attributions to include
        now: Snapshot time (defaults to utcnow)
        ip_intel: Optional IpIntelligence used to pre-resolve IP geolocation
            and VPN membership
        include_events: Load the event log for the selected users
    """
    now = now or datetime.utcnow()
    window_start = now - timedelta(days=lookback_days) - timedelta(hours=BURST_WINDOW_HOURS)

    rows = db.query(AttributionDB).filter(
        or_(
            AttributionDB.first_touch_at >= window_start,
            AttributionDB.first_purchase_at >= window_start,
        )
    ).all()
    attributions: List[AttributionView] = []
    skipped = 0
    for row in rows:
        if not row.actor_id or row.first_touch_at is None:
            logger.error(f"Skipping malformed attribution {row.id} for user {row.user_id}")
            skipped += 1
            continue
        attributions.append(AttributionView.from_row(row))

    user_ids = sorted({a.user_id for a in attributions})
    actor_ids = sorted({a.actor_id for a in attributions})

    events: List[EventView] = []
    if include_events:
        for start in range(0, len(user_ids), _IN_CHUNK):
            chunk = user_ids[start:start + _IN_CHUNK]
            for row in db.query(AttributionEventDB).filter(AttributionEventDB.user_id.in_(chunk)).all():
                events.append(EventView(
                    user_id=row.user_id,
                    event_type=row.event_type,
                    occurred_at=row.occurred_at,
                    actor_id=row.actor_id,
                ))

    actors: List[ActorView] = []
    for start in range(0, len(actor_ids), _IN_CHUNK):
        chunk = actor_ids[start:start + _IN_CHUNK]
        for row in db.query(ActorDB).filter(ActorDB.id.in_(chunk)).all():
            actors.append(ActorView(id=row.id, user_id=row.user_id))

    ip_locations: Dict[str, Tuple[float, float]] = {}
    vpn_ips = set()
    if ip_intel is not None:
        geotagged = {a.ip_address for a in attributions if a.ip_address and a.latitude is not None}
        for ip in sorted({a.ip_address for a in attributions if a.ip_address}):
            if ip_intel.is_vpn(ip):
                vpn_ips.add(ip)
            if ip in geotagged:
                location = ip_intel.locate(ip)
                if location is not None:
                    ip_locations[ip] = location

    return build_snapshot(
        attributions=attributions,
        events=events,
        actors=actors,
        taken_at=now,
        window_start=window_start,
        ip_locations=ip_locations,
        vpn_ips=vpn_ips,
        skipped_records=skipped,
    )
