"""
Tier Promotion Sweep

Moves actors up the tier ladder (bronze -> titan) once their verified,
clean referrals and the revenue those referrals brought in meet the
configured thresholds. Tiers never move down here, and actors under any
fraud status are skipped until they are clean again.

Each promotion writes a TierPromotionDB row with the figures it was based on.
"""
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import TIER_THRESHOLDS
from ...models.db_models import AccountStatus, ActorDB, ActorTier, TierPromotionDB
from ..attribution.ledger import AttributionLedger
from ..fraud.risk_engine import RiskScoringEngine
from ..locks import PAYOUT_LOCKS

logger = logging.getLogger(__name__)

TIER_ORDER = [ActorTier.BRONZE, ActorTier.SILVER, ActorTier.GOLD, ActorTier.PLATINUM, ActorTier.TITAN]


def tier_rank(tier: ActorTier) -> int:
    return TIER_ORDER.index(tier)


def qualifying_tier(
    referrals: int,
    revenue: Decimal,
    thresholds: List[Tuple[str, int, Decimal]] = TIER_THRESHOLDS,
) -> ActorTier:
    """Highest tier whose referral and revenue thresholds are both met."""
    tier = ActorTier.BRONZE
    for name, min_referrals, min_revenue in thresholds:
        if referrals >= min_referrals and revenue >= min_revenue:
            candidate = ActorTier(name)
            if tier_rank(candidate) > tier_rank(tier):
                tier = candidate
    return tier


class TierPromotionSweep:
    """
    Usage:
        summary = TierPromotionSweep(db).run()
    """

    def __init__(self, db: Session, thresholds: List[Tuple[str, int, Decimal]] = TIER_THRESHOLDS):
        self.db = db
        self.thresholds = thresholds
        self.ledger = AttributionLedger(db)
        self.risk_engine = RiskScoringEngine(db)

    def performance(self, actor_id: str) -> Tuple[int, Decimal]:
        records = [
            r for r in self.ledger.records_for_actor(actor_id, verified_only=True)
            if not r.frozen and not r.fraudulent
        ]
        revenue = sum((Decimal(r.lifetime_revenue or 0) for r in records), Decimal("0"))
        return len(records), revenue

    def promote(self, actor_id: str) -> Optional[TierPromotionDB]:
        """Promote one actor if it qualifies for a higher tier. Commits."""
        with PAYOUT_LOCKS.hold(actor_id):
            actor = self.db.query(ActorDB).filter(ActorDB.id == actor_id).first()
            if actor is None:
                return None
            if self.risk_engine.current_status(actor_id) != AccountStatus.CLEAN:
                return None

            referrals, revenue = self.performance(actor_id)
            target = qualifying_tier(referrals, revenue, self.thresholds)
            current = actor.tier or ActorTier.BRONZE
            if tier_rank(target) <= tier_rank(current):
                return None

            promotion = TierPromotionDB(
                id=str(uuid4()),
                actor_id=actor_id,
                from_tier=current,
                to_tier=target,
                verified_referrals=referrals,
                attributed_revenue=revenue,
            )
            actor.tier = target
            self.db.add(promotion)
            self.db.commit()

        logger.info(
            f"Actor {actor_id} promoted {current.value} -> {target.value} "
            f"({referrals} referrals, {revenue} revenue)"
        )
        return promotion

    def run(self, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        started_at = datetime.now(timezone.utc)
        actor_ids = [
            actor_id for (actor_id,) in self.db.query(ActorDB.id).filter(
                ActorDB.tier != ActorTier.TITAN
            ).order_by(ActorDB.id).all()
        ]

        results = {
            "sweep": "tier-promotion",
            "started_at": started_at.isoformat(),
            "candidates": len(actor_ids),
            "promoted": [],
            "failures": 0,
            "interrupted": False,
        }
        for actor_id in actor_ids:
            if cancel is not None and cancel.is_set():
                results["interrupted"] = True
                break
            try:
                promotion = self.promote(actor_id)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Tier promotion failed for {actor_id}: {e}")
                results["failures"] += 1
                continue
            if promotion is not None:
                results["promoted"].append({
                    "actor_id": actor_id,
                    "from_tier": promotion.from_tier.value,
                    "to_tier": promotion.to_tier.value,
                })

        completed_at = datetime.now(timezone.utc)
        results["completed_at"] = completed_at.isoformat()
        results["duration_seconds"] = (completed_at - started_at).total_seconds()
        logger.info(f"Tier promotion sweep complete: {len(results['promoted'])} promoted, {results['failures']} failed")
        return results


def run_tier_promotion_sweep(db: Session, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    return TierPromotionSweep(db).run(cancel=cancel)
