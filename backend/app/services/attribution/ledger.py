"""
Attribution Ledger

Owns the one-actor-per-user invariant.

Core Principles:
1. The first qualifying touch wins. Later touches get the existing record back.
2. actor_id is immutable once written.
3. Funnel timestamps are write-once and never regress.
4. lifetime_revenue only grows, via SQL-side increments.
5. Nothing is deleted. Fraud handling flips flags, history stays.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import (
    AttributionDB,
    AttributionEventDB,
    AttributionMethod,
    EventKind,
    FunnelStage,
    FUNNEL_COLUMNS,
    SubscriptionTier,
)
from ...models.events import Provenance
from ..errors import TransientError, ValidationError
from ..locks import ATTRIBUTION_LOCKS


logger = logging.getLogger(__name__)


@dataclass
class LockResult:
    """Outcome of lock_attribution: the record every caller converges on."""
    record: AttributionDB
    created: bool


class AttributionLedger:
    """
    Service for the attribution ledger.

    lock_attribution commits its own unit of work so the winning row is
    visible to racing callers. Every other write is flushed and left for
    the caller to commit.
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, user_id: str) -> Optional[AttributionDB]:
        return self.db.query(AttributionDB).filter(
            AttributionDB.user_id == user_id
        ).first()

    def get_by_id(self, attribution_id: str) -> Optional[AttributionDB]:
        return self.db.query(AttributionDB).filter(
            AttributionDB.id == attribution_id
        ).first()

    def records_for_actor(
        self,
        actor_id: str,
        verified_only: bool = False,
    ) -> List[AttributionDB]:
        """All records for an actor in a stable order."""
        query = self.db.query(AttributionDB).filter(AttributionDB.actor_id == actor_id)
        if verified_only:
            query = query.filter(AttributionDB.verified.is_(True))
        return query.order_by(AttributionDB.first_touch_at, AttributionDB.user_id).all()

    def events_for_user(self, user_id: str) -> List[AttributionEventDB]:
        return self.db.query(AttributionEventDB).filter(
            AttributionEventDB.user_id == user_id
        ).order_by(AttributionEventDB.occurred_at).all()

    # =========================================================================
    # FIRST TOUCH
    # =========================================================================

    def lock_attribution(
        self,
        user_id: str,
        actor_id: str,
        method: AttributionMethod,
        provenance: Provenance,
        first_touch_at: Optional[datetime] = None,
    ) -> LockResult:
        """
        Bind user_id to actor_id unless it is already bound.

        The INSERT on the unique user_id column is the conditional write.
        Losers of a race, in-process or across processes, receive the
        winner's record.
        """
        existing = self.get(user_id)
        if existing is not None:
            if existing.actor_id != actor_id:
                logger.warning(
                    f"Re-attribution ignored: user {user_id} stays with actor "
                    f"{existing.actor_id} (requested {actor_id})"
                )
            return LockResult(record=existing, created=False)

        with ATTRIBUTION_LOCKS.hold(user_id):
            existing = self.get(user_id)
            if existing is not None:
                return LockResult(record=existing, created=False)

            touched_at = first_touch_at or datetime.utcnow()
            record = AttributionDB(
                id=str(uuid4()),
                user_id=user_id,
                actor_id=actor_id,
                method=method,
                device_id=provenance.device_id,
                ip_address=provenance.ip_address,
                latitude=provenance.latitude,
                longitude=provenance.longitude,
                first_touch_at=touched_at,
                lifetime_revenue=Decimal("0"),
                subscription_tier=SubscriptionTier.NONE,
                verified=False,
                fraud_score=0.0,
                locked=True,
                frozen=False,
                fraudulent=False,
            )
            kind = EventKind.CHECK_IN if method == AttributionMethod.EVENT_CHECKIN else EventKind.INSTALL
            try:
                self.db.add(record)
                self.db.flush()
                self._append(user_id, record, kind, touched_at, provenance)
                self.db.commit()
            except IntegrityError:
                # Another writer committed first
                self.db.rollback()
                winner = self.get(user_id)
                if winner is None:
                    raise TransientError(f"Attribution write for {user_id} failed without a winner")
                logger.info(f"Attribution race for {user_id} lost; winner actor {winner.actor_id}")
                return LockResult(record=winner, created=False)

        logger.info(f"Attribution created: {record.id} user={user_id} actor={actor_id} method={method.value}")
        return LockResult(record=record, created=True)

    # =========================================================================
    # FUNNEL
    # =========================================================================

    def advance_funnel(self, user_id: str, stage: FunnelStage, timestamp: datetime) -> bool:
        """
        Set a funnel timestamp only if it is unset.

        Returns True when this call performed the write. Stages may arrive
        out of order; an earlier stage arriving late never touches later ones.
        """
        column = getattr(AttributionDB, FUNNEL_COLUMNS[stage])
        result = self.db.execute(
            update(AttributionDB)
            .where(AttributionDB.user_id == user_id, column.is_(None))
            .values({column: timestamp, AttributionDB.updated_at: datetime.utcnow()})
            .execution_options(synchronize_session=False)
        )
        advanced = result.rowcount == 1
        if advanced:
            self._expire(user_id)
        return advanced

    def record_revenue(self, user_id: str, amount: Decimal) -> bool:
        """Atomically add to lifetime_revenue. Returns False if the user is unattributed."""
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Revenue amount must be positive", field="amount")

        result = self.db.execute(
            update(AttributionDB)
            .where(AttributionDB.user_id == user_id)
            .values(
                lifetime_revenue=AttributionDB.lifetime_revenue + amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        if applied:
            self._expire(user_id)
        return applied

    def set_subscription(self, user_id: str, tier: SubscriptionTier) -> bool:
        result = self.db.execute(
            update(AttributionDB)
            .where(AttributionDB.user_id == user_id)
            .values(subscription_tier=tier, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        if applied:
            self._expire(user_id)
        return applied

    def append_event(
        self,
        user_id: str,
        event_type: EventKind,
        occurred_at: datetime,
        provenance: Provenance,
        amount: Optional[Decimal] = None,
        metadata: Optional[dict] = None,
    ) -> AttributionEventDB:
        """Append to the event log, linking the user's attribution if there is one."""
        return self._append(user_id, self.get(user_id), event_type, occurred_at, provenance, amount, metadata)

    # =========================================================================
    # FRAUD HANDLING (RiskScoringEngine and sweeps only)
    # =========================================================================

    def freeze(self, user_id: str) -> bool:
        """Stop a record from counting toward payouts. History is kept."""
        return self._set_flags(user_id, verified=False, frozen=True)

    def mark_fraudulent(self, user_id: str) -> bool:
        return self._set_flags(user_id, verified=False, frozen=True, fraudulent=True, fraud_score=1.0)

    def raise_fraud_score(self, user_id: str, score: float) -> bool:
        """Monotonic max on the per-record fraud score (0..1)."""
        score = max(0.0, min(1.0, score))
        result = self.db.execute(
            update(AttributionDB)
            .where(AttributionDB.user_id == user_id, AttributionDB.fraud_score < score)
            .values(fraud_score=score, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            self._expire(user_id)
        return result.rowcount == 1

    def verify_clean(
        self,
        actor_id: str,
        cutoff: datetime,
        excluded_user_ids: Iterable[str] = (),
    ) -> int:
        """
        Mark records first touched before cutoff as verified.

        Frozen or fraudulent records and any user named in signal
        evidence stay unverified.
        """
        excluded = set(excluded_user_ids)
        candidates = self.db.query(AttributionDB).filter(
            AttributionDB.actor_id == actor_id,
            AttributionDB.verified.is_(False),
            AttributionDB.frozen.is_(False),
            AttributionDB.fraudulent.is_(False),
            AttributionDB.first_touch_at <= cutoff,
        ).all()

        now = datetime.utcnow()
        count = 0
        for record in candidates:
            if record.user_id in excluded:
                continue
            record.verified = True
            record.verified_at = now
            count += 1
        self.db.flush()
        return count

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _set_flags(self, user_id: str, **values) -> bool:
        values["updated_at"] = datetime.utcnow()
        result = self.db.execute(
            update(AttributionDB)
            .where(AttributionDB.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        if applied:
            self._expire(user_id)
        return applied

    def _append(
        self,
        user_id: str,
        record: Optional[AttributionDB],
        event_type: EventKind,
        occurred_at: datetime,
        provenance: Provenance,
        amount: Optional[Decimal] = None,
        metadata: Optional[dict] = None,
    ) -> AttributionEventDB:
        event = AttributionEventDB(
            id=str(uuid4()),
            user_id=user_id,
            attribution_id=record.id if record is not None else None,
            actor_id=record.actor_id if record is not None else None,
            event_type=event_type,
            occurred_at=occurred_at,
            device_id=provenance.device_id,
            ip_address=provenance.ip_address,
            latitude=provenance.latitude,
            longitude=provenance.longitude,
            amount=amount,
            event_metadata=metadata,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def _expire(self, user_id: str) -> None:
        """Drop a stale in-session copy after a SQL-side update."""
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, AttributionDB) and obj.user_id == user_id:
                self.db.expire(obj)
