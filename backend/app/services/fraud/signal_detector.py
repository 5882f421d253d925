"""
Fraud Signal Detector

Runs detector batteries over a LedgerSnapshot and persists their findings
as immutable FraudSignal rows. The only writer of fraud_signals.

A finding whose (type, actor, dedupe_key) already exists is not written
again, so overlapping sweep windows never double-count.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import DETECTOR_WORKERS
from ...models.db_models import FraudSignalDB, ReviewDecision
from .detectors import REALTIME_DETECTORS, SignalFinding
from .ring_detector import detect_coordinated_rings
from .snapshot import LedgerSnapshot

logger = logging.getLogger(__name__)

Detector = Callable[[LedgerSnapshot], List[SignalFinding]]


@dataclass
class DetectionRun:
    """Findings of one battery run and what was persisted from them."""
    findings: List[SignalFinding] = field(default_factory=list)
    new_signals: List[FraudSignalDB] = field(default_factory=list)
    duplicates: int = 0
    failures: int = 0
    failed_detectors: List[str] = field(default_factory=list)
    interrupted: bool = False

    def summary(self) -> dict:
        return {
            "findings": len(self.findings),
            "new_signals": len(self.new_signals),
            "duplicates": self.duplicates,
            "failures": self.failures,
            "failed_detectors": self.failed_detectors,
            "interrupted": self.interrupted,
        }


class FraudSignalDetector:
    """
    Detector runner and signal store.

    Usage:
        detector = FraudSignalDetector(db)
        run = detector.detect(snapshot)
    """

    def __init__(self, db: Session, workers: int = DETECTOR_WORKERS):
        self.db = db
        self.workers = max(1, workers)

    # =========================================================================
    # DETECTION
    # =========================================================================

    def run_battery(
        self,
        snapshot: LedgerSnapshot,
        detectors: Optional[Dict[str, Detector]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> DetectionRun:
        """
        Run independent detectors concurrently.

        Detectors share nothing but the immutable snapshot. A detector that
        raises is logged and counted; the others still contribute.
        """
        detectors = detectors if detectors is not None else REALTIME_DETECTORS
        run = DetectionRun()

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="fraud-detector") as pool:
            futures = {}
            for name, fn in detectors.items():
                if cancel is not None and cancel.is_set():
                    run.interrupted = True
                    break
                futures[name] = pool.submit(fn, snapshot)

            for name, future in futures.items():
                try:
                    findings = future.result()
                except Exception as e:
                    logger.error(f"Detector {name} failed: {e}")
                    run.failures += 1
                    run.failed_detectors.append(name)
                    continue
                run.findings.extend(findings)

        run.findings.sort(key=lambda f: (f.actor_id, f.signal_type.value, f.dedupe_key))
        return run

    def run_ring_detector(self, snapshot: LedgerSnapshot) -> DetectionRun:
        """Ring detection is single-threaded; its graph never leaves this call."""
        run = DetectionRun()
        try:
            run.findings = detect_coordinated_rings(snapshot)
        except Exception as e:
            logger.error(f"Ring detector failed: {e}")
            run.failures += 1
            run.failed_detectors.append("coordinated_ring")
        return run

    def detect(
        self,
        snapshot: LedgerSnapshot,
        detectors: Optional[Dict[str, Detector]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> DetectionRun:
        run = self.run_battery(snapshot, detectors=detectors, cancel=cancel)
        self.persist(run, cancel=cancel)
        return run

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def persist(self, run: DetectionRun, cancel: Optional[threading.Event] = None) -> List[FraudSignalDB]:
        """
        Write each new finding as its own committed signal.

        Stops early (and marks the run interrupted) when cancel is set.
        Anything not written is found again by the next sweep.
        """
        for finding in run.findings:
            if cancel is not None and cancel.is_set():
                run.interrupted = True
                break
            try:
                signal = self.record(finding)
            except Exception as e:
                self.db.rollback()
                logger.error(
                    f"Failed to persist {finding.signal_type.value} signal for actor {finding.actor_id}: {e}"
                )
                run.failures += 1
                continue
            if signal is None:
                run.duplicates += 1
            else:
                run.new_signals.append(signal)
        return run.new_signals

    def record(self, finding: SignalFinding) -> Optional[FraudSignalDB]:
        """Persist one finding. Returns None if it was already recorded."""
        if self._existing(finding) is not None:
            return None

        signal = FraudSignalDB(
            id=str(uuid4()),
            signal_type=finding.signal_type,
            severity=finding.severity,
            confidence=float(max(0.0, min(100.0, finding.confidence))),
            actor_id=finding.actor_id,
            evidence=finding.evidence,
            dedupe_key=finding.dedupe_key[:128],
            detected_at=datetime.utcnow(),
        )
        try:
            self.db.add(signal)
            self.db.commit()
        except IntegrityError:
            # A concurrent sweep recorded the same finding
            self.db.rollback()
            return None

        logger.info(
            f"Fraud signal {signal.id}: {finding.signal_type.value} actor={finding.actor_id} "
            f"severity={finding.severity.value} confidence={signal.confidence}"
        )
        return signal

    def _existing(self, finding: SignalFinding) -> Optional[FraudSignalDB]:
        return self.db.query(FraudSignalDB).filter(
            FraudSignalDB.signal_type == finding.signal_type,
            FraudSignalDB.actor_id == finding.actor_id,
            FraudSignalDB.dedupe_key == finding.dedupe_key[:128],
        ).first()

    # =========================================================================
    # READS
    # =========================================================================

    def signals_for_actor(self, actor_id: str, include_overturned: bool = True) -> List[FraudSignalDB]:
        signals = self.db.query(FraudSignalDB).filter(
            FraudSignalDB.actor_id == actor_id
        ).order_by(FraudSignalDB.detected_at, FraudSignalDB.id).all()
        if include_overturned:
            return signals
        return [s for s in signals if s.effective_review != ReviewDecision.OVERTURNED]

    def get_signal(self, signal_id: str) -> Optional[FraudSignalDB]:
        return self.db.query(FraudSignalDB).filter(FraudSignalDB.id == signal_id).first()
