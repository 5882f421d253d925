"""
Risk Scoring Engine

Sole writer of ActorRiskState.account_status.

Core Principles:
1. Risk is recomputed from the full set of non-overturned signals every time.
   Nothing is patched incrementally. A ring finding counts once per actor:
   the newest one supersedes earlier findings about the same ring.
2. score = min(100, sum(weight[severity] * confidence / 100))
3. Status only worsens, except on an overturn-driven recompute, which may
   improve it one level per run and never below what the score supports.
4. A worsening transition freezes unverified attributions, flags the users
   named in evidence (suspended and above) and forces open payouts into review.
5. All of it commits together or not at all.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...config import SEVERITY_WEIGHTS, STATUS_BANDS
from ...models.db_models import (
    ACCOUNT_STATUS_ORDER,
    AccountStatus,
    ActorRiskDB,
    ActorRiskTransitionDB,
    AttributionDB,
    FraudCheckResult,
    FraudSignalDB,
    FraudSignalReviewDB,
    FraudSignalType,
    ReviewDecision,
    Severity,
)
from ..attribution.ledger import AttributionLedger
from ..errors import TransientError, ValidationError
from ..locks import PAYOUT_LOCKS, RISK_LOCKS

logger = logging.getLogger(__name__)


# Fraud check result an open payout is forced to when status worsens
STATUS_FRAUD_CHECK = {
    AccountStatus.CLEAN: FraudCheckResult.PASS,
    AccountStatus.WATCH_LIST: FraudCheckResult.REVIEW,
    AccountStatus.SUSPENDED: FraudCheckResult.FAIL,
    AccountStatus.BANNED: FraudCheckResult.FAIL,
}


def status_rank(status: AccountStatus) -> int:
    return ACCOUNT_STATUS_ORDER.index(status)


def score_signals(signals: Iterable[FraudSignalDB]) -> float:
    """Additive, capped score over non-overturned signals."""
    total = 0.0
    for signal in signals:
        if signal.effective_review == ReviewDecision.OVERTURNED:
            continue
        weight = SEVERITY_WEIGHTS.get(signal.severity.value, 0)
        total += weight * float(signal.confidence) / 100.0
    return round(min(100.0, total), 4)


def status_for_score(score: float) -> AccountStatus:
    status = AccountStatus.CLEAN
    for name, lower_bound in STATUS_BANDS:
        if score >= lower_bound:
            status = AccountStatus(name)
    return status


def current_signals(signals: Iterable[FraudSignalDB]) -> List[FraudSignalDB]:
    """
    Non-overturned signals, with older coordinated-ring findings dropped.

    An actor sits in one connected component per ring run, so a ring that
    grew since the last run supersedes the earlier finding about it.
    """
    active = [s for s in signals if s.effective_review != ReviewDecision.OVERTURNED]
    rings = [s for s in active if s.signal_type == FraudSignalType.COORDINATED_RING]
    if len(rings) < 2:
        return active
    newest = max(rings, key=lambda s: (s.detected_at, (s.evidence or {}).get("size", 0)))
    return [s for s in active if s.signal_type != FraudSignalType.COORDINATED_RING or s is newest]


def implicated_user_ids(signals: Iterable[FraudSignalDB]) -> Set[str]:
    """Every user id named in signal evidence."""
    users: Set[str] = set()
    for signal in signals:
        evidence = signal.evidence or {}
        if evidence.get("userId"):
            users.add(evidence["userId"])
        users.update(evidence.get("userIds") or [])
        for mismatch in evidence.get("mismatches") or []:
            if mismatch.get("userId"):
                users.add(mismatch["userId"])
    return users


@dataclass
class RiskResult:
    actor_id: str
    risk_score: float
    account_status: AccountStatus
    previous_status: AccountStatus
    signal_count: int
    version: int
    recalculated_at: datetime
    actions: Dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.account_status != self.previous_status

    @property
    def worsened(self) -> bool:
        return status_rank(self.account_status) > status_rank(self.previous_status)

    def to_dict(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "risk_score": self.risk_score,
            "account_status": self.account_status.value,
            "previous_status": self.previous_status.value,
            "signal_count": self.signal_count,
            "version": self.version,
            "recalculated_at": self.recalculated_at.isoformat(),
            "changed": self.changed,
            "actions": self.actions,
        }


class RiskScoringEngine:
    """
    Per-actor risk state.

    Usage:
        engine = RiskScoringEngine(db)
        result = engine.recompute_risk(actor_id)
    """

    def __init__(self, db: Session):
        self.db = db
        self.ledger = AttributionLedger(db)

    # =========================================================================
    # STATE
    # =========================================================================

    def get_state(self, actor_id: str) -> Optional[ActorRiskDB]:
        return self.db.query(ActorRiskDB).filter(ActorRiskDB.actor_id == actor_id).first()

    def ensure_state(self, actor_id: str) -> ActorRiskDB:
        """Lazily create the risk state (first signal or first payout request)."""
        state = self.get_state(actor_id)
        if state is None:
            state = ActorRiskDB(
                actor_id=actor_id,
                risk_score=0.0,
                account_status=AccountStatus.CLEAN,
                signal_count=0,
            )
            self.db.add(state)
            self.db.flush()
        return state

    def current_status(self, actor_id: str) -> AccountStatus:
        state = self.get_state(actor_id)
        return state.account_status if state is not None else AccountStatus.CLEAN

    # =========================================================================
    # RECOMPUTATION
    # =========================================================================

    def recompute_risk(
        self,
        actor_id: str,
        allow_recovery: bool = False,
        trigger: str = "recompute",
    ) -> RiskResult:
        """
        Recompute an actor's score and status from its signals and commit.

        Serialized per actor in-process, and against the compliance gate
        since enforcement may hold the actor's open payout. Lock order is
        always risk then payout. The version columns reject a concurrent
        writer from another process with TransientError.
        """
        with RISK_LOCKS.hold(actor_id), PAYOUT_LOCKS.hold(actor_id):
            try:
                result = self._recompute(actor_id, allow_recovery, trigger)
                self.db.commit()
            except (StaleDataError, IntegrityError) as e:
                self.db.rollback()
                logger.warning(f"Concurrent risk update for actor {actor_id}: {e}")
                raise TransientError(f"Risk state for {actor_id} changed concurrently") from e
            except Exception:
                self.db.rollback()
                raise

        if result.changed:
            logger.info(
                f"Actor {actor_id} status {result.previous_status.value} -> "
                f"{result.account_status.value} (score {result.risk_score}, trigger {trigger})"
            )
        return result

    def _recompute(self, actor_id: str, allow_recovery: bool, trigger: str) -> RiskResult:
        state = self.ensure_state(actor_id)
        signals = self.db.query(FraudSignalDB).filter(FraudSignalDB.actor_id == actor_id).all()
        active = current_signals(signals)

        score = score_signals(active)
        derived = status_for_score(score)
        if derived == AccountStatus.CLEAN and any(s.severity == Severity.CRITICAL for s in active):
            # A critical finding never leaves an actor clean, whatever its confidence
            derived = AccountStatus.WATCH_LIST
        previous = state.account_status
        target = self._next_status(previous, derived, allow_recovery)

        now = datetime.utcnow()
        state.risk_score = score
        state.signal_count = len(active)
        state.last_recalculated_at = now

        actions: Dict[str, Any] = {}
        if target != previous:
            state.account_status = target
            self.db.add(ActorRiskTransitionDB(
                id=str(uuid4()),
                actor_id=actor_id,
                from_status=previous,
                to_status=target,
                risk_score=score,
                trigger=trigger[:100],
            ))
            if status_rank(target) > status_rank(previous):
                actions = self._enforce(actor_id, target, active)

        self.db.flush()
        return RiskResult(
            actor_id=actor_id,
            risk_score=score,
            account_status=target,
            previous_status=previous,
            signal_count=len(active),
            version=state.version,
            recalculated_at=now,
            actions=actions,
        )

    @staticmethod
    def _next_status(
        current: AccountStatus,
        derived: AccountStatus,
        allow_recovery: bool,
    ) -> AccountStatus:
        if status_rank(derived) > status_rank(current):
            return derived
        if allow_recovery and status_rank(derived) < status_rank(current):
            return ACCOUNT_STATUS_ORDER[status_rank(current) - 1]
        return current

    def _enforce(
        self,
        actor_id: str,
        status: AccountStatus,
        signals: List[FraudSignalDB],
    ) -> Dict[str, Any]:
        """Side effects of a worsening transition. Flushes, never commits."""
        from ..payouts.compliance_gate import ComplianceGate

        unverified = self.db.query(AttributionDB.user_id).filter(
            AttributionDB.actor_id == actor_id,
            AttributionDB.verified.is_(False),
            AttributionDB.frozen.is_(False),
        ).all()
        frozen = sum(1 for (user_id,) in unverified if self.ledger.freeze(user_id))

        flagged = 0
        if status_rank(status) >= status_rank(AccountStatus.SUSPENDED):
            named = implicated_user_ids(signals)
            if named:
                owned = self.db.query(AttributionDB.user_id).filter(
                    AttributionDB.actor_id == actor_id,
                    AttributionDB.user_id.in_(sorted(named)),
                ).all()
                flagged = sum(1 for (user_id,) in owned if self.ledger.mark_fraudulent(user_id))

        forced = ComplianceGate(self.db).force_fraud_review(
            actor_id,
            STATUS_FRAUD_CHECK[status],
            reason=f"account status {status.value}",
        )

        logger.warning(
            f"Enforcement for actor {actor_id} ({status.value}): froze {frozen}, "
            f"flagged {flagged}, payouts held {len(forced)}"
        )
        return {
            "attributions_frozen": frozen,
            "attributions_flagged": flagged,
            "payouts_held": [p.id for p in forced],
        }

    # =========================================================================
    # REVIEW
    # =========================================================================

    def review_signal(
        self,
        signal_id: str,
        decision: ReviewDecision,
        reviewer_id: str,
        notes: Optional[str] = None,
    ) -> Tuple[FraudSignalReviewDB, RiskResult]:
        """
        Append a review decision and recompute the signal's actor.

        An overturn permits one step of recovery; a confirmation never does.
        """
        signal = self.db.query(FraudSignalDB).filter(FraudSignalDB.id == signal_id).first()
        if signal is None:
            raise ValidationError(f"Fraud signal {signal_id} not found", field="signalId")

        review = FraudSignalReviewDB(
            id=str(uuid4()),
            decision=decision,
            reviewer_id=reviewer_id,
            notes=notes,
            decided_at=datetime.utcnow(),
        )
        signal.reviews.append(review)
        self.db.flush()

        logger.info(f"Signal {signal_id} reviewed by {reviewer_id}: {decision.value}")
        result = self.recompute_risk(
            signal.actor_id,
            allow_recovery=decision == ReviewDecision.OVERTURNED,
            trigger=f"review:{decision.value}",
        )
        return review, result
