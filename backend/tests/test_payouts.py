"""
Tests for payouts.

1. PayoutCalculator: per-model components, multipliers, eligibility, determinism
2. PayoutStateMachine: allowed transitions and terminal states
3. ComplianceGate: one active request per actor, holds, admin decisions, settlement,
   earnings claimed once
4. TierPromotionSweep: upward only, audited
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.models.db_models import (
    AccountStatus,
    ActorDB,
    ActorTier,
    CompensationModel,
    FraudCheckResult,
    FraudSignalType,
    PayoutRequestDB,
    PayoutStatus,
    Severity,
    SubscriptionTier,
    TierPromotionDB,
)
from app.services.errors import ComplianceBlock, ConflictError, TransientError, ValidationError
from app.services.fraud import FraudSignalDetector, RiskScoringEngine, SignalFinding
from app.services.integrations import AmlRiskLevel, SettlementResult
from app.services.locks import PAYOUT_LOCKS
from app.services.payouts import (
    ComplianceGate,
    PayoutCalculator,
    PayoutStateMachine,
    TierPromotionSweep,
    qualifying_tier,
)

NOW = datetime(2024, 6, 15, 12, 0, 0)
AS_OF = NOW.date()


def set_status(db, actor_id, status):
    state = RiskScoringEngine(db).ensure_state(actor_id)
    state.account_status = status
    db.commit()


# =============================================================================
# TEST: CALCULATOR
# =============================================================================

class TestPayoutCalculator:

    def test_cpi_at_minimum_is_eligible(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 100)

        breakdown = PayoutCalculator(db).calculate("actor-a", "CPI", as_of=AS_OF)

        assert breakdown.components == {"cpi": Decimal("1000.00")}
        assert breakdown.counts == {"cpi": 100}
        assert breakdown.total_tokens == Decimal("1000.00")
        assert breakdown.eligible is True
        assert breakdown.reason is None

    def test_below_minimum_is_ineligible_with_reason(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 50)

        breakdown = PayoutCalculator(db).calculate("actor-a", CompensationModel.CPI, as_of=AS_OF)

        assert breakdown.total_tokens == Decimal("500.00")
        assert breakdown.eligible is False
        assert breakdown.reason == "minimum payout is 1000 tokens"

    def test_suspended_or_banned_is_ineligible(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 200)
        set_status(db, "actor-a", AccountStatus.BANNED)

        breakdown = PayoutCalculator(db).calculate("actor-a", "CPI", as_of=AS_OF)

        assert breakdown.total_tokens == Decimal("2000.00")
        assert breakdown.eligible is False
        assert breakdown.reason == "account suspended or banned"
        assert breakdown.account_status == AccountStatus.BANNED

    def test_only_verified_clean_records_count(self, db, make_actor, verified_referrals, make_attribution):
        make_actor("actor-a")
        verified_referrals("actor-a", 3)
        make_attribution("actor-a", registered_at=NOW)
        make_attribution("actor-a", registered_at=NOW, verified=True, frozen=True)
        make_attribution("actor-a", registered_at=NOW, verified=True, fraudulent=True)

        breakdown = PayoutCalculator(db).calculate("actor-a", "CPI", as_of=AS_OF)

        assert breakdown.counts == {"cpi": 3}
        assert breakdown.verified_attributions == 3

    def test_tier_and_regional_multipliers(self, db, make_actor, verified_referrals):
        make_actor("actor-a", tier=ActorTier.SILVER, country="BR")
        verified_referrals("actor-a", 100)

        breakdown = PayoutCalculator(db).calculate("actor-a", "CPI", as_of=AS_OF)

        assert breakdown.base_amount == Decimal("1000.00")
        assert breakdown.tier_multiplier == Decimal("1.1")
        assert breakdown.regional_multiplier == Decimal("0.7")
        assert breakdown.total_tokens == Decimal("770.00")

    def test_rev_share_window(self, db, make_actor, make_attribution):
        make_actor("actor-a", rev_share_duration_days=90)
        make_attribution("actor-a", verified=True, lifetime_revenue=Decimal("100.00"))
        make_attribution("actor-a", verified=True, lifetime_revenue=Decimal("100.00"))
        make_attribution(
            "actor-a", verified=True, lifetime_revenue=Decimal("5000.00"),
            first_touch_at=NOW - timedelta(days=200),
        )

        breakdown = PayoutCalculator(db).calculate("actor-a", "revshare", as_of=AS_OF)

        assert breakdown.compensation_model == CompensationModel.REV_SHARE
        assert breakdown.components == {"rev_share": Decimal("30.00")}
        assert breakdown.counts == {"rev_share": 2}

    def test_hybrid_sums_all_components(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals(
            "actor-a", 10,
            kyc_completed_at=NOW, subscription_tier=SubscriptionTier.PREMIUM, first_touch_at=NOW,
        )

        breakdown = PayoutCalculator(db).calculate("actor-a", "hybrid", as_of=AS_OF)

        assert set(breakdown.components) == {"cpi", "cpa", "cps", "rev_share"}
        # 10 x (10 + 25 + 50)
        assert breakdown.total_tokens == Decimal("850.00")

    def test_same_state_gives_identical_output(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 120)
        calculator = PayoutCalculator(db)

        first = calculator.calculate("actor-a", "CPI", as_of=AS_OF)
        second = calculator.calculate("actor-a", "CPI", as_of=AS_OF)

        assert first.canonical_json() == second.canonical_json()
        assert first.digest() == second.digest()

    def test_unknown_model_and_actor_rejected(self, db, make_actor):
        make_actor("actor-a")
        with pytest.raises(ValidationError):
            PayoutCalculator(db).calculate("actor-a", "CPM")
        with pytest.raises(ValidationError):
            PayoutCalculator(db).calculate("ghost", "CPI")


# =============================================================================
# TEST: STATE MACHINE
# =============================================================================

class TestPayoutStateMachine:

    def test_allowed_and_refused_transitions(self):
        machine = PayoutStateMachine(db_session=None)

        assert machine.can_transition(None, PayoutStatus.PENDING)[0] is True
        assert machine.can_transition(PayoutStatus.PENDING, PayoutStatus.APPROVED)[0] is True
        assert machine.can_transition(PayoutStatus.APPROVED, PayoutStatus.HELD_FOR_REVIEW)[0] is True
        assert machine.can_transition(PayoutStatus.PENDING, PayoutStatus.SETTLED)[0] is False
        assert machine.can_transition(PayoutStatus.SETTLED, PayoutStatus.APPROVED)[0] is False

    def test_terminal_states(self):
        machine = PayoutStateMachine(db_session=None)
        assert machine.is_terminal_state(PayoutStatus.SETTLED)
        assert machine.is_terminal_state(PayoutStatus.REJECTED)
        assert not machine.is_terminal_state(PayoutStatus.HELD_FOR_REVIEW)


# =============================================================================
# TEST: COMPLIANCE GATE
# =============================================================================

class TestComplianceGate:

    @pytest.fixture
    def eligible_actor(self, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 150)
        return "actor-a"

    @pytest.fixture
    def gate(self, db, aml_client, wallet_client):
        return ComplianceGate(db, aml_client=aml_client, wallet_client=wallet_client)

    def test_clean_request_is_auto_approved(self, gate, eligible_actor):
        request = gate.create_request(eligible_actor, "CPI")

        assert request.status == PayoutStatus.APPROVED
        assert request.total_tokens == Decimal("1500.00")
        assert request.fraud_checked is True
        assert request.fraud_check_result == FraudCheckResult.PASS
        assert request.active_actor_id == eligible_actor
        assert [t.to_status for t in request.transitions] == [PayoutStatus.PENDING, PayoutStatus.APPROVED]

    def test_second_active_request_conflicts(self, gate, eligible_actor):
        first = gate.create_request(eligible_actor, "CPI")

        with pytest.raises(ConflictError) as exc:
            gate.create_request(eligible_actor, "CPA")
        assert exc.value.existing.id == first.id

    def test_new_request_allowed_after_settlement(self, gate, eligible_actor, verified_referrals):
        first = gate.create_request(eligible_actor, "CPI")
        settled = gate.settle(first.id)
        assert settled.status == PayoutStatus.SETTLED
        assert settled.active_actor_id is None

        verified_referrals(eligible_actor, 100)
        second = gate.create_request(eligible_actor, "CPI")

        assert second.id != first.id
        assert second.total_tokens == Decimal("1000.00")
        assert second.breakdown["counts"] == {"cpi": 100}

    def test_settled_earnings_are_not_paid_twice(self, gate, eligible_actor, wallet_client):
        first = gate.create_request(eligible_actor, "CPI")
        gate.settle(first.id)

        with pytest.raises(ComplianceBlock) as exc:
            gate.create_request(eligible_actor, "CPI")

        assert exc.value.reason == "minimum payout is 1000 tokens"
        assert exc.value.details["totalTokens"] == "0.00"
        wallet_client.settle.assert_called_once()

    def test_other_components_stay_payable_after_a_claim(self, gate, eligible_actor, verified_referrals):
        gate.settle(gate.create_request(eligible_actor, "CPI").id)
        verified_referrals(eligible_actor, 40, kyc_completed_at=NOW)

        second = gate.create_request(eligible_actor, "CPA")

        # 40 x 25
        assert second.total_tokens == Decimal("1000.00")

    def test_rejected_request_releases_its_earnings(self, db, gate, eligible_actor):
        set_status(db, eligible_actor, AccountStatus.WATCH_LIST)
        held = gate.create_request(eligible_actor, "CPI")
        gate.admin_decide(held.id, approve=False, reviewer_id="admin-1", reason="not yet")

        retried = gate.create_request(eligible_actor, "CPI")

        assert retried.id != held.id
        assert retried.total_tokens == Decimal("1500.00")

    def test_rev_share_pays_only_new_revenue(self, db, gate, make_actor, make_attribution):
        make_actor("actor-r")
        record = make_attribution(
            "actor-r", verified=True, lifetime_revenue=Decimal("8000.00"),
            first_touch_at=datetime.utcnow() - timedelta(days=1),
        )
        first = gate.create_request("actor-r", "revshare")
        assert first.total_tokens == Decimal("1200.00")
        gate.settle(first.id)

        record.lifetime_revenue = Decimal("10000.00")
        db.commit()
        breakdown = PayoutCalculator(db).calculate("actor-r", "revshare")

        assert breakdown.components == {"rev_share": Decimal("300.00")}
        assert breakdown.counts == {"rev_share": 1}
        assert breakdown.claims == (("rev_share", record.user_id, Decimal("2000.00")),)

    def test_concurrent_requests_create_exactly_one(self, session_factory, eligible_actor, aml_client, wallet_client):
        barrier = threading.Barrier(6)

        def request_payout(_):
            session = session_factory()
            try:
                barrier.wait()
                gate = ComplianceGate(session, aml_client=aml_client, wallet_client=wallet_client)
                return gate.create_request(eligible_actor, "CPI").id
            except ConflictError as e:
                return ("conflict", e.existing.id if e.existing is not None else None)
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(request_payout, range(6)))

        created = [o for o in outcomes if isinstance(o, str)]
        conflicts = [o for o in outcomes if isinstance(o, tuple)]
        assert len(created) == 1
        assert len(conflicts) == 5
        assert all(existing == created[0] for _, existing in conflicts)

        session = session_factory()
        try:
            assert session.query(PayoutRequestDB).count() == 1
        finally:
            session.close()

    def test_ineligible_request_is_blocked_with_reason(self, db, gate, make_actor, verified_referrals):
        make_actor("actor-small")
        verified_referrals("actor-small", 20)

        with pytest.raises(ComplianceBlock) as exc:
            gate.create_request("actor-small", "CPI")

        assert exc.value.reason == "minimum payout is 1000 tokens"
        assert exc.value.details["totalTokens"] == "200.00"
        assert db.query(PayoutRequestDB).count() == 0

    def test_watch_listed_actor_is_held(self, db, gate, eligible_actor):
        set_status(db, eligible_actor, AccountStatus.WATCH_LIST)

        request = gate.create_request(eligible_actor, "CPI")

        assert request.status == PayoutStatus.HELD_FOR_REVIEW
        assert request.fraud_check_result == FraudCheckResult.REVIEW
        assert request.hold_reasons == ["fraud check review"]

    def test_aml_flags_hold_the_request(self, gate, eligible_actor, aml_client):
        aml_client.has_open_dispute.return_value = True
        aml_client.aml_risk_level.return_value = AmlRiskLevel.HIGH

        request = gate.create_request(eligible_actor, "CPI")

        assert request.status == PayoutStatus.HELD_FOR_REVIEW
        assert request.hold_reasons == ["open dispute", "AML risk level high"]

    def test_aml_outage_leaves_request_pending_for_sweep(self, gate, eligible_actor, aml_client):
        aml_client.has_open_dispute.side_effect = TransientError("aml down")

        request = gate.create_request(eligible_actor, "CPI")
        assert request.status == PayoutStatus.PENDING

        aml_client.has_open_dispute.side_effect = None
        aml_client.has_open_dispute.return_value = False
        summary = gate.run_evaluation_sweep()

        assert summary["approved"] == 1
        assert summary["failures"] == 0
        assert gate.get(request.id).status == PayoutStatus.APPROVED

    def test_admin_approves_and_rejects_held_requests(self, db, gate, eligible_actor, make_actor, verified_referrals):
        set_status(db, eligible_actor, AccountStatus.WATCH_LIST)
        held = gate.create_request(eligible_actor, "CPI")

        approved = gate.admin_decide(held.id, approve=True, reviewer_id="admin-1", reason="checked")
        assert approved.status == PayoutStatus.APPROVED
        assert approved.reviewer_id == "admin-1"

        make_actor("actor-b")
        verified_referrals("actor-b", 150)
        set_status(db, "actor-b", AccountStatus.WATCH_LIST)
        other = gate.create_request("actor-b", "CPI")

        rejected = gate.admin_decide(other.id, approve=False, reviewer_id="admin-1", reason="duplicate accounts")
        assert rejected.status == PayoutStatus.REJECTED
        assert rejected.active_actor_id is None

    def test_admin_decision_requires_held_request(self, gate, eligible_actor):
        request = gate.create_request(eligible_actor, "CPI")

        with pytest.raises(ConflictError):
            gate.admin_decide(request.id, approve=True, reviewer_id="admin-1")

    def test_admin_cannot_approve_suspended_actor(self, db, gate, eligible_actor):
        set_status(db, eligible_actor, AccountStatus.WATCH_LIST)
        held = gate.create_request(eligible_actor, "CPI")
        set_status(db, eligible_actor, AccountStatus.SUSPENDED)

        with pytest.raises(ComplianceBlock) as exc:
            gate.admin_decide(held.id, approve=True, reviewer_id="admin-1")
        assert exc.value.reason == "account suspended or banned"

    def test_failed_settlement_stays_approved(self, gate, eligible_actor, wallet_client):
        wallet_client.settle.return_value = SettlementResult(success=False, error="ledger rejected")
        request = gate.create_request(eligible_actor, "CPI")

        result = gate.settle(request.id)

        assert result.status == PayoutStatus.APPROVED
        assert result.settlement_attempts == 1
        assert result.last_settlement_error == "ledger rejected"

    def test_settlement_timeout_is_retried_by_sweep(self, gate, eligible_actor, wallet_client):
        wallet_client.settle.side_effect = TransientError("timeout")
        request = gate.create_request(eligible_actor, "CPI")

        assert gate.settle(request.id).status == PayoutStatus.APPROVED

        wallet_client.settle.side_effect = None
        wallet_client.settle.return_value = SettlementResult(success=True, transaction_id="tx-42")
        summary = gate.run_settlement_sweep()

        settled = gate.get(request.id)
        assert summary["settled"] == 1
        assert settled.status == PayoutStatus.SETTLED
        assert settled.transaction_id == "tx-42"
        assert settled.settlement_attempts == 2
        wallet_client.settle.assert_called_with(request.id, Decimal("1500.00"), "TOKEN")

    def test_risk_worsening_pulls_approved_request_into_review(self, db, gate, eligible_actor):
        request = gate.create_request(eligible_actor, "CPI")
        assert request.status == PayoutStatus.APPROVED

        FraudSignalDetector(db).record(SignalFinding(
            signal_type=FraudSignalType.SELF_REFERRAL,
            severity=Severity.CRITICAL,
            confidence=100.0,
            actor_id=eligible_actor,
            dedupe_key="own-account",
            evidence={"userId": "own-account"},
            user_ids=("own-account",),
        ))
        result = RiskScoringEngine(db).recompute_risk(eligible_actor)

        held = gate.get(request.id)
        assert result.account_status == AccountStatus.SUSPENDED
        assert result.actions["payouts_held"] == [request.id]
        assert held.status == PayoutStatus.HELD_FOR_REVIEW
        assert held.fraud_check_result == FraudCheckResult.FAIL
        assert "account status suspended" in held.hold_reasons

    def test_risk_recompute_waits_for_payout_writes(self, session_factory, eligible_actor):
        finished = threading.Event()

        def recompute():
            session = session_factory()
            try:
                RiskScoringEngine(session).recompute_risk(eligible_actor)
                finished.set()
            finally:
                session.close()

        worker = threading.Thread(target=recompute)
        with PAYOUT_LOCKS.hold(eligible_actor):
            worker.start()
            worker.join(timeout=0.2)
            assert worker.is_alive()
            assert not finished.is_set()
        worker.join(timeout=5)

        assert finished.is_set()

    def test_settlement_racing_a_review_keeps_the_hold(self, db, session_factory, gate, eligible_actor, wallet_client):
        request = gate.create_request(eligible_actor, "CPI")

        def settle_while_reviewed(*args):
            other = session_factory()
            try:
                ComplianceGate(other).force_fraud_review(
                    eligible_actor, FraudCheckResult.FAIL, reason="account status suspended",
                )
                other.commit()
            finally:
                other.close()
            return SettlementResult(success=True, transaction_id="tx-1")

        wallet_client.settle.side_effect = settle_while_reviewed
        result = gate.settle(request.id)

        assert result.status == PayoutStatus.HELD_FOR_REVIEW
        assert result.transaction_id == "tx-1"
        assert result.active_actor_id == eligible_actor
        assert "tx-1" in result.last_settlement_error
        assert [t.to_status for t in result.transitions][-1] == PayoutStatus.HELD_FOR_REVIEW


# =============================================================================
# TEST: TIER PROMOTION
# =============================================================================

class TestTierPromotion:

    def test_qualifying_tier_needs_both_thresholds(self):
        assert qualifying_tier(50, Decimal("500")) == ActorTier.SILVER
        assert qualifying_tier(199, Decimal("100000")) == ActorTier.SILVER
        assert qualifying_tier(49, Decimal("100000")) == ActorTier.BRONZE
        assert qualifying_tier(1500, Decimal("50000")) == ActorTier.TITAN

    def test_sweep_promotes_and_records_the_figures(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 60, lifetime_revenue=Decimal("10"))
        make_actor("actor-b")
        verified_referrals("actor-b", 10, lifetime_revenue=Decimal("10"))

        summary = TierPromotionSweep(db).run()

        assert summary["promoted"] == [{"actor_id": "actor-a", "from_tier": "bronze", "to_tier": "silver"}]
        assert summary["failures"] == 0
        assert db.query(ActorDB).filter(ActorDB.id == "actor-a").one().tier == ActorTier.SILVER
        promotion = db.query(TierPromotionDB).one()
        assert promotion.verified_referrals == 60
        assert promotion.attributed_revenue == Decimal("600.00")

        assert TierPromotionSweep(db).run()["promoted"] == []
        assert db.query(TierPromotionDB).count() == 1

    def test_tiers_never_move_down(self, db, make_actor, verified_referrals):
        make_actor("actor-g", tier=ActorTier.GOLD)
        verified_referrals("actor-g", 60, lifetime_revenue=Decimal("10"))

        summary = TierPromotionSweep(db).run()

        assert summary["promoted"] == []
        assert db.query(ActorDB).filter(ActorDB.id == "actor-g").one().tier == ActorTier.GOLD

    def test_flagged_actor_is_not_promoted(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 60, lifetime_revenue=Decimal("10"))
        set_status(db, "actor-a", AccountStatus.WATCH_LIST)

        assert TierPromotionSweep(db).run()["promoted"] == []
        assert db.query(TierPromotionDB).count() == 0

    def test_promotion_raises_the_payout_multiplier(self, db, make_actor, verified_referrals):
        make_actor("actor-a")
        verified_referrals("actor-a", 100, lifetime_revenue=Decimal("10"))
        TierPromotionSweep(db).run()

        breakdown = PayoutCalculator(db).calculate("actor-a", "CPI", as_of=AS_OF)

        assert breakdown.tier == "silver"
        assert breakdown.total_tokens == Decimal("1100.00")
