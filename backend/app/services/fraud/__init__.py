"""
Fraud Services

Signal detection and actor risk.

- LedgerSnapshot: immutable detector input
- detectors / ring_detector: pure rule-based classifiers
- FraudSignalDetector: runs detectors, sole writer of fraud signals
- RiskScoringEngine: sole writer of actor account status
- FraudSweep: scheduled orchestration with cancellation
"""

from .snapshot import LedgerSnapshot, AttributionView, EventView, ActorView, build_snapshot, load_snapshot
from .detectors import SignalFinding, REALTIME_DETECTORS
from .ring_detector import detect_coordinated_rings
from .signal_detector import FraudSignalDetector, DetectionRun
from .risk_engine import RiskScoringEngine, RiskResult, current_signals, score_signals, status_for_score
from .sweep import FraudSweep, run_fraud_sweep, run_ring_sweep

__all__ = [
    "LedgerSnapshot",
    "AttributionView",
    "EventView",
    "ActorView",
    "build_snapshot",
    "load_snapshot",
    "SignalFinding",
    "REALTIME_DETECTORS",
    "detect_coordinated_rings",
    "FraudSignalDetector",
    "DetectionRun",
    "RiskScoringEngine",
    "RiskResult",
    "current_signals",
    "score_signals",
    "status_for_score",
    "FraudSweep",
    "run_fraud_sweep",
    "run_ring_sweep",
]
