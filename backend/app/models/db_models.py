"""
Attribution Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage

Four logical collections carry the engine state:
- attributions       (AttributionLedger)
- fraud_signals      (FraudSignalDetector, append-only)
- actor_risk         (RiskScoringEngine)
- payout_requests    (PayoutCalculator / ComplianceGate)
- tier_promotions    (TierPromotionSweep)

Everything else is append-only audit history around them.
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Boolean, Numeric, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class AttributionMethod(str, Enum):
    """How the user reached the referring actor."""
    CODE = "code"
    QR = "qr"
    EVENT_CHECKIN = "event-checkin"
    LINK = "link"


class FunnelStage(str, Enum):
    """Write-once funnel stages on an attribution record."""
    REGISTERED = "registered"
    KYC_COMPLETED = "kyc_completed"
    FIRST_CHAT = "first_chat"
    FIRST_PURCHASE = "first_purchase"


# Column holding the timestamp for each funnel stage
FUNNEL_COLUMNS = {
    FunnelStage.REGISTERED: "registered_at",
    FunnelStage.KYC_COMPLETED: "kyc_completed_at",
    FunnelStage.FIRST_CHAT: "first_chat_at",
    FunnelStage.FIRST_PURCHASE: "first_purchase_at",
}


class EventKind(str, Enum):
    """Canonical event kinds recorded in the attribution event log."""
    INSTALL = "install"
    CHECK_IN = "check_in"
    REGISTERED = "registered"
    KYC_COMPLETED = "kyc_completed"
    FIRST_CHAT = "first_chat"
    FIRST_PURCHASE = "first_purchase"
    PURCHASE = "purchase"
    SESSION = "session"
    SUBSCRIPTION = "subscription"


class SubscriptionTier(str, Enum):
    NONE = "none"
    PREMIUM = "premium"
    VIP = "vip"


class ActorTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    TITAN = "titan"


class FraudSignalType(str, Enum):
    SELF_REFERRAL = "self-referral"
    CLICK_FARM = "click-farm"
    DUPLICATE_DEVICE = "duplicate-device"
    RAPID_INSTALL_BURST = "rapid-install-burst"
    VPN_PROXY = "vpn-proxy"
    COORDINATED_RING = "coordinated-ring"
    CONVERSION_WITHOUT_ENGAGEMENT = "conversion-without-engagement"
    GEO_SPOOF = "geo-spoof"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReviewDecision(str, Enum):
    CONFIRMED = "confirmed"
    OVERTURNED = "overturned"


class AccountStatus(str, Enum):
    """Actor account status, ordered from best to worst."""
    CLEAN = "clean"
    WATCH_LIST = "watch_list"
    SUSPENDED = "suspended"
    BANNED = "banned"


ACCOUNT_STATUS_ORDER = [
    AccountStatus.CLEAN,
    AccountStatus.WATCH_LIST,
    AccountStatus.SUSPENDED,
    AccountStatus.BANNED,
]


class CompensationModel(str, Enum):
    CPI = "CPI"
    CPA = "CPA"
    CPS = "CPS"
    REV_SHARE = "RevShare"
    HYBRID = "hybrid"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    HELD_FOR_REVIEW = "held_for_review"
    APPROVED = "approved"
    SETTLED = "settled"
    REJECTED = "rejected"


TERMINAL_PAYOUT_STATUSES = {PayoutStatus.SETTLED, PayoutStatus.REJECTED}


class FraudCheckResult(str, Enum):
    PASS = "pass"
    REVIEW = "review"
    FAIL = "fail"


class TransitionActor(str, Enum):
    """Who triggered a state transition."""
    SYSTEM = "SYSTEM"
    ADMIN = "ADMIN"


# =============================================================================
# ACTORS
# =============================================================================

class ActorDB(Base):
    """A creator/ambassador/partner eligible to earn referral compensation."""
    __tablename__ = "actors"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=True, index=True)  # Underlying app account
    referral_code = Column(String(64), unique=True, nullable=True, index=True)
    display_name = Column(String(255), nullable=True)

    tier = Column(SQLEnum(ActorTier), nullable=False, default=ActorTier.BRONZE)
    country = Column(String(2), nullable=True)

    # Compensation configuration (token amounts)
    cpi_rate = Column(Numeric(12, 2), nullable=False, default=0)
    cpa_rate = Column(Numeric(12, 2), nullable=False, default=0)
    cps_rate = Column(Numeric(12, 2), nullable=False, default=0)
    rev_share_percentage = Column(Numeric(6, 4), nullable=False, default=0)  # 0.15 == 15%
    rev_share_duration_days = Column(Integer, nullable=True)
    regional_multiplier = Column(Numeric(6, 3), nullable=True)  # Overrides the country table

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# ATTRIBUTION LEDGER
# =============================================================================

class AttributionDB(Base):
    """
    Permanent binding of one end-user to one referring actor.

    user_id is unique: the INSERT is the conditional write that decides
    which actor wins a first-touch race. actor_id is never updated.
    """
    __tablename__ = "attributions"
    __table_args__ = (
        Index("ix_attributions_ip_time", "ip_address", "first_touch_at"),
        Index("ix_attributions_actor_time", "actor_id", "first_touch_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    actor_id = Column(String(64), nullable=False, index=True)
    method = Column(SQLEnum(AttributionMethod), nullable=False)

    # Provenance
    device_id = Column(String(128), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    first_touch_at = Column(DateTime, nullable=False)

    # Funnel (write-once)
    registered_at = Column(DateTime, nullable=True)
    kyc_completed_at = Column(DateTime, nullable=True)
    first_chat_at = Column(DateTime, nullable=True)
    first_purchase_at = Column(DateTime, nullable=True)
    lifetime_revenue = Column(Numeric(14, 2), nullable=False, default=0)
    subscription_tier = Column(SQLEnum(SubscriptionTier), nullable=False, default=SubscriptionTier.NONE)

    # Verification
    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime, nullable=True)
    fraud_score = Column(Float, nullable=False, default=0.0)  # 0..1
    locked = Column(Boolean, nullable=False, default=True)
    frozen = Column(Boolean, nullable=False, default=False)
    fraudulent = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AttributionEventDB(Base):
    """Append-only log of funnel and activity events per attributed user."""
    __tablename__ = "attribution_events"
    __table_args__ = (
        Index("ix_attribution_events_user_time", "user_id", "occurred_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(64), nullable=False)
    attribution_id = Column(String(36), ForeignKey("attributions.id"), nullable=True, index=True)
    actor_id = Column(String(64), nullable=True, index=True)
    event_type = Column(SQLEnum(EventKind), nullable=False)
    occurred_at = Column(DateTime, nullable=False)

    device_id = Column(String(128), nullable=True)
    ip_address = Column(String(64), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    amount = Column(Numeric(14, 2), nullable=True)

    event_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# FRAUD SIGNALS
# =============================================================================

class FraudSignalDB(Base):
    """
    Immutable, evidence-bearing finding.
    Review decisions are appended to fraud_signal_reviews, never written here.
    """
    __tablename__ = "fraud_signals"
    __table_args__ = (
        UniqueConstraint("signal_type", "actor_id", "dedupe_key", name="uq_fraud_signal_identity"),
        Index("ix_fraud_signals_actor_time", "actor_id", "detected_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    signal_type = Column(SQLEnum(FraudSignalType), nullable=False)
    severity = Column(SQLEnum(Severity), nullable=False)
    confidence = Column(Float, nullable=False)  # 0..100
    actor_id = Column(String(64), nullable=False)
    evidence = Column(JSON, nullable=False)
    dedupe_key = Column(String(128), nullable=False)
    detected_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    reviews = relationship(
        "FraudSignalReviewDB",
        back_populates="signal",
        order_by="FraudSignalReviewDB.decided_at",
    )

    @property
    def effective_review(self):
        """Most recent review decision, or None if never reviewed."""
        if not self.reviews:
            return None
        return self.reviews[-1].decision


class FraudSignalReviewDB(Base):
    """Append-only review decision attached to a signal."""
    __tablename__ = "fraud_signal_reviews"

    id = Column(String(36), primary_key=True)  # UUID
    signal_id = Column(String(36), ForeignKey("fraud_signals.id"), nullable=False, index=True)
    decision = Column(SQLEnum(ReviewDecision), nullable=False)
    reviewer_id = Column(String(64), nullable=False)
    notes = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    signal = relationship("FraudSignalDB", back_populates="reviews")


# =============================================================================
# ACTOR RISK
# =============================================================================

class ActorRiskDB(Base):
    """
    Current risk state for one actor.
    Fully recomputed from signals on each run; `version` guards concurrent writers.
    """
    __tablename__ = "actor_risk"

    actor_id = Column(String(64), primary_key=True)
    risk_score = Column(Float, nullable=False, default=0.0)
    account_status = Column(SQLEnum(AccountStatus), nullable=False, default=AccountStatus.CLEAN)
    signal_count = Column(Integer, nullable=False, default=0)
    last_recalculated_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}


class ActorRiskTransitionDB(Base):
    """Immutable record of every account status change."""
    __tablename__ = "actor_risk_transitions"

    id = Column(String(36), primary_key=True)  # UUID
    actor_id = Column(String(64), nullable=False, index=True)
    from_status = Column(SQLEnum(AccountStatus), nullable=False)
    to_status = Column(SQLEnum(AccountStatus), nullable=False)
    risk_score = Column(Float, nullable=False)
    trigger = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# PAYOUTS
# =============================================================================

class PayoutRequestDB(Base):
    """
    A payout request moving through the compliance gate.

    active_actor_id mirrors actor_id while the request is non-terminal and is
    cleared on settle/reject; its unique constraint enforces one active
    request per actor at the store level. `version` guards the gate against
    a concurrent risk recompute pulling the same row into review.
    """
    __tablename__ = "payout_requests"

    id = Column(String(36), primary_key=True)  # UUID
    actor_id = Column(String(64), nullable=False, index=True)
    active_actor_id = Column(String(64), nullable=True, unique=True)

    compensation_model = Column(SQLEnum(CompensationModel), nullable=False)
    breakdown = Column(JSON, nullable=False)
    total_tokens = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(16), nullable=False)

    status = Column(SQLEnum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)
    fraud_checked = Column(Boolean, nullable=False, default=False)
    fraud_check_result = Column(SQLEnum(FraudCheckResult), nullable=True)
    hold_reasons = Column(JSON, nullable=True, default=list)

    # Admin review
    reviewer_id = Column(String(64), nullable=True)
    decision_reason = Column(Text, nullable=True)

    # Settlement
    settlement_attempts = Column(Integer, nullable=False, default=0)
    last_settlement_error = Column(Text, nullable=True)
    transaction_id = Column(String(128), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)

    transitions = relationship(
        "PayoutTransitionDB",
        back_populates="payout_request",
        order_by="PayoutTransitionDB.created_at",
    )
    claims = relationship("PayoutClaimDB", back_populates="payout_request")

    __mapper_args__ = {"version_id_col": version}


class PayoutTransitionDB(Base):
    """Immutable log entry for each payout status transition."""
    __tablename__ = "payout_transitions"

    id = Column(String(36), primary_key=True)  # UUID
    payout_request_id = Column(String(36), ForeignKey("payout_requests.id"), nullable=False, index=True)
    from_status = Column(SQLEnum(PayoutStatus), nullable=True)  # None on creation
    to_status = Column(SQLEnum(PayoutStatus), nullable=False)
    trigger = Column(String(100), nullable=False)
    actor = Column(SQLEnum(TransitionActor), nullable=False)
    event_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    payout_request = relationship("PayoutRequestDB", back_populates="transitions")


class PayoutClaimDB(Base):
    """
    Earnings a payout request has claimed.

    One row per (user, component) a request paid for; rev share rows also
    carry the revenue amount claimed. Claims of rejected requests are
    released: the calculator only subtracts claims whose request was not
    rejected.
    """
    __tablename__ = "payout_claims"
    __table_args__ = (
        Index("ix_payout_claims_actor_component", "actor_id", "component"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    payout_request_id = Column(String(36), ForeignKey("payout_requests.id"), nullable=False, index=True)
    actor_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    component = Column(String(16), nullable=False)  # cpi / cpa / cps / rev_share
    revenue = Column(Numeric(14, 2), nullable=True)  # rev_share only
    created_at = Column(DateTime, default=datetime.utcnow)

    payout_request = relationship("PayoutRequestDB", back_populates="claims")


# =============================================================================
# TIERS
# =============================================================================

class TierPromotionDB(Base):
    """Append-only record of an actor's tier promotion and the figures behind it."""
    __tablename__ = "tier_promotions"

    id = Column(String(36), primary_key=True)  # UUID
    actor_id = Column(String(64), nullable=False, index=True)
    from_tier = Column(SQLEnum(ActorTier), nullable=False)
    to_tier = Column(SQLEnum(ActorTier), nullable=False)
    verified_referrals = Column(Integer, nullable=False)
    attributed_revenue = Column(Numeric(14, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
