"""
Tests for the scheduled fraud sweeps.

Detection sweep: snapshot -> signals -> record scores -> risk -> verification.
Ring sweep: snapshot -> coordinated-ring signals -> risk.
"""
import threading
from datetime import datetime, timedelta

import pytest

from app.models.db_models import AccountStatus, FraudSignalType
from app.services.attribution import AttributionLedger
from app.services.fraud import FraudSignalDetector, FraudSweep, RiskScoringEngine, load_snapshot

NOW = datetime(2024, 6, 15, 12, 0, 0)


@pytest.fixture
def click_farm(make_actor, make_attribution):
    """Seven installs for actor-a from one IP thirty hours ago."""
    make_actor("actor-a")
    start = NOW - timedelta(hours=30)
    return [
        make_attribution(
            "actor-a", user_id=f"farm-{i}", ip_address="198.51.100.9",
            first_touch_at=start + timedelta(minutes=10 * i),
        )
        for i in range(7)
    ]


@pytest.fixture
def honest_actor(make_actor, make_attribution):
    make_actor("actor-b")
    make_attribution("actor-b", user_id="honest-1", first_touch_at=NOW - timedelta(days=3))
    make_attribution("actor-b", user_id="honest-2", first_touch_at=NOW - timedelta(days=3))
    make_attribution("actor-b", user_id="too-recent", first_touch_at=NOW - timedelta(hours=2))


# =============================================================================
# TEST: SNAPSHOT
# =============================================================================

class TestLoadSnapshot:

    def test_window_and_ip_resolution(self, db, make_actor, make_attribution, ip_intel):
        make_actor("actor-a", user_id="alice")
        make_attribution("actor-a", user_id="u1", ip_address="203.0.113.1", latitude=52.23, longitude=21.01)
        make_attribution("actor-a", user_id="u2", ip_address="203.0.113.2")
        make_attribution("actor-a", user_id="ancient", first_touch_at=NOW - timedelta(days=90))
        ip_intel.is_vpn.side_effect = lambda ip: ip == "203.0.113.2"
        ip_intel.locate.return_value = (40.71, -74.0)

        snapshot = load_snapshot(db, lookback_days=7, now=NOW, ip_intel=ip_intel)

        assert [a.user_id for a in snapshot.attributions] == ["u1", "u2"]
        assert snapshot.vpn_ips == frozenset({"203.0.113.2"})
        assert dict(snapshot.ip_locations) == {"203.0.113.1": (40.71, -74.0)}
        assert snapshot.actors["actor-a"].user_id == "alice"
        ip_intel.locate.assert_called_once_with("203.0.113.1")


# =============================================================================
# TEST: DETECTION SWEEP
# =============================================================================

class TestDetectionSweep:

    def test_click_farm_is_signalled_and_honest_records_verified(self, db, click_farm, honest_actor, ip_intel):
        summary = FraudSweep(db, ip_intel=ip_intel).run_detection_sweep(now=NOW)

        assert summary["records_scanned"] == 10
        assert summary["new_signals"] == 1
        assert summary["failures"] == 0
        assert summary["interrupted"] is False
        assert summary["records_scored"] == 7
        assert summary["records_verified"] == 2
        assert [a["actor_id"] for a in summary["actors_recomputed"]] == ["actor-a"]

        signals = FraudSignalDetector(db).signals_for_actor("actor-a")
        assert [s.signal_type for s in signals] == [FraudSignalType.CLICK_FARM]
        assert signals[0].evidence["count"] == 7

        ledger = AttributionLedger(db)
        assert ledger.get("farm-0").verified is False
        assert ledger.get("farm-0").fraud_score > 0
        assert ledger.get("honest-1").verified is True
        assert ledger.get("too-recent").verified is False

    def test_rerun_adds_no_duplicate_signals(self, db, click_farm, ip_intel):
        sweep = FraudSweep(db, ip_intel=ip_intel)
        sweep.run_detection_sweep(now=NOW)
        summary = sweep.run_detection_sweep(now=NOW)

        assert summary["new_signals"] == 0
        assert summary["duplicates"] == 1
        assert len(FraudSignalDetector(db).signals_for_actor("actor-a")) == 1

    def test_self_referral_suspends_and_blocks_verification(self, db, make_actor, make_attribution, ip_intel):
        make_actor("actor-c", user_id="c-own")
        make_attribution("actor-c", user_id="c-own", first_touch_at=NOW - timedelta(days=3))
        make_attribution("actor-c", user_id="c-other", first_touch_at=NOW - timedelta(days=3))

        summary = FraudSweep(db, ip_intel=ip_intel).run_detection_sweep(now=NOW)

        assert RiskScoringEngine(db).current_status("actor-c") == AccountStatus.SUSPENDED
        assert summary["records_verified"] == 0
        ledger = AttributionLedger(db)
        assert ledger.get("c-own").fraudulent is True
        assert ledger.get("c-other").frozen is True

    def test_cancelled_sweep_reports_interruption(self, db, click_farm, honest_actor, ip_intel):
        cancel = threading.Event()
        cancel.set()

        summary = FraudSweep(db, ip_intel=ip_intel).run_detection_sweep(cancel=cancel, now=NOW)

        assert summary["interrupted"] is True
        assert summary["new_signals"] == 0
        assert AttributionLedger(db).get("honest-1").verified is False


# =============================================================================
# TEST: RING SWEEP
# =============================================================================

class TestRingSweep:

    def test_ring_members_are_signalled(self, db, make_actor, make_attribution):
        actors = ["r1", "r2", "r3"]
        for actor_id in actors:
            make_actor(actor_id)
        for index, (a, b) in enumerate(zip(actors, actors[1:])):
            for actor_id in (a, b):
                make_attribution(
                    actor_id, user_id=f"{actor_id}-{index}",
                    device_id=f"shared-dev-{index}", ip_address=f"198.51.100.{index + 1}",
                    first_touch_at=NOW - timedelta(days=10),
                )

        summary = FraudSweep(db).run_ring_sweep(now=NOW)

        assert summary["new_signals"] == 3
        assert summary["failures"] == 0
        detector = FraudSignalDetector(db)
        for actor_id in actors:
            signals = detector.signals_for_actor(actor_id)
            assert [s.signal_type for s in signals] == [FraudSignalType.COORDINATED_RING]
            assert signals[0].evidence["members"] == actors

    def test_growing_ring_is_scored_once(self, db, make_actor, make_attribution):
        def link(a, b, index):
            for actor_id in (a, b):
                make_attribution(
                    actor_id, user_id=f"{actor_id}-{index}",
                    device_id=f"grow-dev-{index}", ip_address=f"203.0.113.{index + 1}",
                    first_touch_at=NOW - timedelta(days=10),
                )

        for actor_id in ("r1", "r2", "r3", "r4"):
            make_actor(actor_id)
        link("r1", "r2", 0)
        link("r2", "r3", 1)
        FraudSweep(db).run_ring_sweep(now=NOW)
        assert RiskScoringEngine(db).get_state("r1").risk_score == pytest.approx(10.5)

        link("r3", "r4", 2)
        FraudSweep(db).run_ring_sweep(now=NOW)

        signals = FraudSignalDetector(db).signals_for_actor("r1")
        assert sorted(s.evidence["size"] for s in signals) == [3, 4]
        state = RiskScoringEngine(db).get_state("r1")
        # high severity, confidence 80: only the four-actor finding counts
        assert state.risk_score == pytest.approx(24.0)
        assert state.signal_count == 1
        assert state.account_status == AccountStatus.CLEAN
