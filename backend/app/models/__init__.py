"""Attribution Engine - Data Models"""
from .db_models import (
    # Enums
    AttributionMethod, FunnelStage, EventKind, SubscriptionTier, ActorTier,
    FraudSignalType, Severity, ReviewDecision, AccountStatus,
    CompensationModel, PayoutStatus, FraudCheckResult, TransitionActor,
    # Tables
    ActorDB, AttributionDB, AttributionEventDB,
    FraudSignalDB, FraudSignalReviewDB,
    ActorRiskDB, ActorRiskTransitionDB,
    PayoutRequestDB, PayoutTransitionDB, PayoutClaimDB,
    TierPromotionDB,
)
from .events import ConnectorEvent

__all__ = [
    "AttributionMethod", "FunnelStage", "EventKind", "SubscriptionTier", "ActorTier",
    "FraudSignalType", "Severity", "ReviewDecision", "AccountStatus",
    "CompensationModel", "PayoutStatus", "FraudCheckResult", "TransitionActor",
    "ActorDB", "AttributionDB", "AttributionEventDB",
    "FraudSignalDB", "FraudSignalReviewDB",
    "ActorRiskDB", "ActorRiskTransitionDB",
    "PayoutRequestDB", "PayoutTransitionDB", "PayoutClaimDB",
    "TierPromotionDB",
    "ConnectorEvent",
]
