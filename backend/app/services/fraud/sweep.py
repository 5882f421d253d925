"""
Fraud Sweeps

Orchestrates the periodic fraud jobs.

Detection sweep (near-real-time cadence):
1. Load a LedgerSnapshot for the detection window
2. Run the realtime detector battery and persist new signals
3. Raise per-record fraud scores for users named in findings
4. Recompute risk for every actor with a new signal
5. Verify attributions that survived the hold period untouched

Ring sweep (hourly/daily cadence):
1. Load a longer snapshot without the event log
2. Run the coordinated-ring detector alone
3. Persist, score records and recompute as above

Every step is idempotent; a cancelled sweep leaves the rest for the next run.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from ...config import DETECTION_LOOKBACK_DAYS, RING_LOOKBACK_DAYS, VERIFICATION_HOLD_HOURS
from ...models.db_models import (
    AccountStatus,
    AttributionDB,
    FraudSignalType,
    ReviewDecision,
)
from ..attribution.ledger import AttributionLedger
from .detectors import SignalFinding
from .risk_engine import RiskScoringEngine, implicated_user_ids
from .signal_detector import DetectionRun, FraudSignalDetector
from .snapshot import load_snapshot

logger = logging.getLogger(__name__)


# Contribution of one finding to a record's fraud score (0..1)
RECORD_SCORE_WEIGHTS = {
    FraudSignalType.SELF_REFERRAL: 1.0,
    FraudSignalType.COORDINATED_RING: 0.5,
    FraudSignalType.DUPLICATE_DEVICE: 0.3,
    FraudSignalType.RAPID_INSTALL_BURST: 0.3,
    FraudSignalType.CONVERSION_WITHOUT_ENGAGEMENT: 0.3,
    FraudSignalType.CLICK_FARM: 0.2,
    FraudSignalType.VPN_PROXY: 0.2,
    FraudSignalType.GEO_SPOOF: 0.2,
}

UNVERIFIABLE_STATUSES = {AccountStatus.SUSPENDED, AccountStatus.BANNED}


def record_scores(findings: Iterable[SignalFinding]) -> Dict[str, float]:
    """Per-user fraud score: weighted sum of findings naming the user, capped at 1."""
    scores: Dict[str, float] = {}
    for finding in findings:
        weight = RECORD_SCORE_WEIGHTS.get(finding.signal_type, 0.0) * finding.confidence / 100.0
        for user_id in finding.user_ids:
            scores[user_id] = min(1.0, scores.get(user_id, 0.0) + weight)
    return scores


class FraudSweep:
    """
    Runs the fraud jobs against one session.

    Usage:
        sweep = FraudSweep(db, ip_intel=IpIntelligence())
        summary = sweep.run_detection_sweep(cancel=stop_event)
    """

    def __init__(self, db: Session, ip_intel=None):
        self.db = db
        self.ip_intel = ip_intel
        self.detector = FraudSignalDetector(db)
        self.risk_engine = RiskScoringEngine(db)
        self.ledger = AttributionLedger(db)

    # =========================================================================
    # SWEEPS
    # =========================================================================

    def run_detection_sweep(
        self,
        cancel: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
        lookback_days: int = DETECTION_LOOKBACK_DAYS,
    ) -> Dict[str, Any]:
        started_at = datetime.now(timezone.utc)
        now = now or datetime.utcnow()
        results = self._start(started_at, "detection", lookback_days)

        snapshot = load_snapshot(self.db, lookback_days=lookback_days, now=now, ip_intel=self.ip_intel)
        results["records_scanned"] = len(snapshot.attributions)
        results["failures"] += snapshot.skipped_records

        run = self.detector.detect(snapshot, cancel=cancel)
        self._follow_up(run, results, cancel)

        if not results["interrupted"]:
            excluded = {u for f in run.findings for u in f.user_ids}
            self._verify(results, now, excluded, cancel)

        return self._finish(results, started_at)

    def run_ring_sweep(
        self,
        cancel: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
        lookback_days: int = RING_LOOKBACK_DAYS,
    ) -> Dict[str, Any]:
        started_at = datetime.now(timezone.utc)
        now = now or datetime.utcnow()
        results = self._start(started_at, "ring", lookback_days)

        snapshot = load_snapshot(self.db, lookback_days=lookback_days, now=now, include_events=False)
        results["records_scanned"] = len(snapshot.attributions)
        results["failures"] += snapshot.skipped_records

        if cancel is not None and cancel.is_set():
            results["interrupted"] = True
            return self._finish(results, started_at)

        run = self.detector.run_ring_detector(snapshot)
        self.detector.persist(run, cancel=cancel)
        self._follow_up(run, results, cancel)
        return self._finish(results, started_at)

    # =========================================================================
    # STEPS
    # =========================================================================

    def _follow_up(self, run: DetectionRun, results: Dict[str, Any], cancel: Optional[threading.Event]) -> None:
        results["findings"] = len(run.findings)
        results["new_signals"] = len(run.new_signals)
        results["duplicates"] = run.duplicates
        results["failures"] += run.failures
        results["failed_detectors"] = run.failed_detectors
        if run.interrupted:
            results["interrupted"] = True
            return

        # Record scores
        raised = 0
        for user_id, score in sorted(record_scores(run.findings).items()):
            if cancel is not None and cancel.is_set():
                results["interrupted"] = True
                return
            try:
                if self.ledger.raise_fraud_score(user_id, score):
                    raised += 1
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to raise fraud score for {user_id}: {e}")
                results["failures"] += 1
        results["records_scored"] = raised

        # Risk recomputation for actors with new signals
        recomputed: List[dict] = []
        for actor_id in sorted({s.actor_id for s in run.new_signals}):
            if cancel is not None and cancel.is_set():
                results["interrupted"] = True
                return
            try:
                result = self.risk_engine.recompute_risk(actor_id, trigger="fraud-sweep")
            except Exception as e:
                logger.error(f"Risk recomputation failed for actor {actor_id}: {e}")
                results["failures"] += 1
                continue
            recomputed.append({
                "actor_id": actor_id,
                "risk_score": result.risk_score,
                "account_status": result.account_status.value,
                "changed": result.changed,
            })
        results["actors_recomputed"] = recomputed

    def _verify(
        self,
        results: Dict[str, Any],
        now: datetime,
        excluded: Set[str],
        cancel: Optional[threading.Event],
    ) -> None:
        """Verify records older than the hold period for actors in good standing."""
        cutoff = now - timedelta(hours=VERIFICATION_HOLD_HOURS)
        actor_ids = [
            actor_id for (actor_id,) in self.db.query(AttributionDB.actor_id).filter(
                AttributionDB.verified.is_(False),
                AttributionDB.frozen.is_(False),
                AttributionDB.fraudulent.is_(False),
                AttributionDB.first_touch_at <= cutoff,
            ).distinct().order_by(AttributionDB.actor_id).all()
        ]

        verified = 0
        for actor_id in actor_ids:
            if cancel is not None and cancel.is_set():
                results["interrupted"] = True
                break
            try:
                if self.risk_engine.current_status(actor_id) in UNVERIFIABLE_STATUSES:
                    continue
                signals = self.detector.signals_for_actor(actor_id)
                named = implicated_user_ids(
                    s for s in signals if s.effective_review != ReviewDecision.OVERTURNED
                )
                verified += self.ledger.verify_clean(actor_id, cutoff, excluded | named)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Verification failed for actor {actor_id}: {e}")
                results["failures"] += 1
        results["records_verified"] = verified

    # =========================================================================
    # SUMMARY
    # =========================================================================

    @staticmethod
    def _start(started_at: datetime, kind: str, lookback_days: int) -> Dict[str, Any]:
        return {
            "sweep": kind,
            "started_at": started_at.isoformat(),
            "lookback_days": lookback_days,
            "failures": 0,
            "interrupted": False,
        }

    @staticmethod
    def _finish(results: Dict[str, Any], started_at: datetime) -> Dict[str, Any]:
        completed_at = datetime.now(timezone.utc)
        results["completed_at"] = completed_at.isoformat()
        results["duration_seconds"] = (completed_at - started_at).total_seconds()
        level = logging.WARNING if results["failures"] or results["interrupted"] else logging.INFO
        logger.log(
            level,
            f"Fraud {results['sweep']} sweep: {results.get('new_signals', 0)} new signals, "
            f"{results['failures']} failures, interrupted={results['interrupted']}",
        )
        return results


def run_fraud_sweep(db: Session, ip_intel=None, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Convenience function for the scheduler."""
    return FraudSweep(db, ip_intel=ip_intel).run_detection_sweep(cancel=cancel)


def run_ring_sweep(db: Session, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
    return FraudSweep(db).run_ring_sweep(cancel=cancel)
