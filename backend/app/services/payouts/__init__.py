"""
Payout Services

- PayoutCalculator: deterministic earnings and eligibility
- PayoutStateMachine: status transitions and their audit log
- ComplianceGate: request lifecycle, holds and settlement
- TierPromotionSweep: upward tier moves with an audit row each
"""

from .calculator import PayoutCalculator, PayoutBreakdown, minimum_payout_reason
from .state_machine import PayoutStateMachine, STATE_CONFIG
from .compliance_gate import ComplianceGate
from .tiers import TierPromotionSweep, qualifying_tier, run_tier_promotion_sweep

__all__ = [
    "PayoutCalculator",
    "PayoutBreakdown",
    "minimum_payout_reason",
    "PayoutStateMachine",
    "STATE_CONFIG",
    "ComplianceGate",
    "TierPromotionSweep",
    "qualifying_tier",
    "run_tier_promotion_sweep",
]
