"""
Payout Calculator

Read-only earnings computation over verified attributions.

Components:
- CPI        count(registered) x cpi_rate
- CPA        count(kyc_completed) x cpa_rate
- CPS        count(premium/vip subscribers) x cps_rate
- RevShare   sum(lifetime_revenue within the rev share window) x rev_share_percentage
- hybrid     all of the above

base x tier multiplier x regional multiplier = total, rounded half-up to cents.

Earnings already claimed by a payout request that was not rejected are
excluded: a referral pays each component once, and rev share pays only
revenue accrued since the last claim.

All arithmetic is Decimal and the window is anchored to an explicit as_of
date, so two calls over the same ledger state return byte-identical output.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Set, Tuple, Union

from sqlalchemy.orm import Session

from ...config import (
    DEFAULT_REV_SHARE_DURATION_DAYS,
    MIN_PAYOUT_TOKENS,
    PAYOUT_CURRENCY,
    REGIONAL_MULTIPLIERS,
    TIER_MULTIPLIERS,
)
from ...models.db_models import (
    AccountStatus,
    ActorDB,
    CompensationModel,
    PayoutClaimDB,
    PayoutRequestDB,
    PayoutStatus,
    SubscriptionTier,
)
from ..attribution.ledger import AttributionLedger
from ..errors import ValidationError
from ..fraud.risk_engine import RiskScoringEngine

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

PAID_SUBSCRIPTIONS = {SubscriptionTier.PREMIUM, SubscriptionTier.VIP}
BLOCKED_STATUSES = {AccountStatus.SUSPENDED, AccountStatus.BANNED}

MODEL_COMPONENTS = {
    CompensationModel.CPI: ("cpi",),
    CompensationModel.CPA: ("cpa",),
    CompensationModel.CPS: ("cps",),
    CompensationModel.REV_SHARE: ("rev_share",),
    CompensationModel.HYBRID: ("cpi", "cpa", "cps", "rev_share"),
}

REASON_BLOCKED = "account suspended or banned"

# (component, user_id, revenue claimed or None)
Claim = Tuple[str, str, Optional[Decimal]]


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def minimum_payout_reason(minimum: Decimal = MIN_PAYOUT_TOKENS) -> str:
    return f"minimum payout is {minimum.normalize():f} tokens"


@dataclass(frozen=True)
class PayoutBreakdown:
    """Per-component earnings and the eligibility verdict for one actor."""
    actor_id: str
    compensation_model: CompensationModel
    as_of: date
    components: Dict[str, Decimal]
    counts: Dict[str, int]
    base_amount: Decimal
    tier: str
    tier_multiplier: Decimal
    region: Optional[str]
    regional_multiplier: Decimal
    total_tokens: Decimal
    currency: str
    minimum_payout: Decimal
    account_status: AccountStatus
    eligible: bool
    reason: Optional[str] = None
    verified_attributions: int = 0
    claims: Tuple[Claim, ...] = field(default=(), repr=False)

    def to_dict(self) -> dict:
        return {
            "actorId": self.actor_id,
            "compensationModel": self.compensation_model.value,
            "asOf": self.as_of.isoformat(),
            "components": {k: str(v) for k, v in sorted(self.components.items())},
            "counts": dict(sorted(self.counts.items())),
            "baseAmount": str(self.base_amount),
            "tier": self.tier,
            "tierMultiplier": str(self.tier_multiplier),
            "region": self.region,
            "regionalMultiplier": str(self.regional_multiplier),
            "totalTokens": str(self.total_tokens),
            "currency": self.currency,
            "minimumPayout": str(self.minimum_payout),
            "accountStatus": self.account_status.value,
            "eligible": self.eligible,
            "reason": self.reason,
            "verifiedAttributions": self.verified_attributions,
        }

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def digest(self) -> str:
        """sha256 of the canonical JSON; identical inputs give identical digests."""
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


class PayoutCalculator:
    """
    Pure earnings calculation.

    Usage:
        calculator = PayoutCalculator(db)
        breakdown = calculator.calculate(actor_id, "CPI")
    """

    def __init__(self, db: Session, minimum_payout: Decimal = MIN_PAYOUT_TOKENS, currency: str = PAYOUT_CURRENCY):
        self.db = db
        self.ledger = AttributionLedger(db)
        self.minimum_payout = Decimal(minimum_payout)
        self.currency = currency

    @staticmethod
    def parse_model(model: Union[str, CompensationModel]) -> CompensationModel:
        if isinstance(model, CompensationModel):
            return model
        for candidate in CompensationModel:
            if str(model).strip().lower() in (candidate.value.lower(), candidate.name.lower()):
                return candidate
        raise ValidationError(f"Unknown compensation model '{model}'", field="model")

    def calculate(
        self,
        actor_id: str,
        compensation_model: Union[str, CompensationModel],
        as_of: Optional[date] = None,
    ) -> PayoutBreakdown:
        model = self.parse_model(compensation_model)
        actor = self.db.query(ActorDB).filter(ActorDB.id == actor_id).first()
        if actor is None:
            raise ValidationError(f"Unknown actor '{actor_id}'", field="actorId")

        as_of = as_of or datetime.utcnow().date()
        records = [
            r for r in self.ledger.records_for_actor(actor_id, verified_only=True)
            if not r.frozen and not r.fraudulent
        ]

        duration_days = actor.rev_share_duration_days or DEFAULT_REV_SHARE_DURATION_DAYS
        window_start = datetime.combine(as_of, time.min) - timedelta(days=duration_days)
        window_end = datetime.combine(as_of, time.max)

        claimed_users, claimed_revenue = self.claimed(actor_id)
        earning = {
            "cpi": [r.user_id for r in records if r.registered_at is not None],
            "cpa": [r.user_id for r in records if r.kyc_completed_at is not None],
            "cps": [r.user_id for r in records if r.subscription_tier in PAID_SUBSCRIPTIONS],
        }
        earning = {
            name: sorted(u for u in user_ids if u not in claimed_users.get(name, set()))
            for name, user_ids in earning.items()
        }
        unclaimed_revenue: Dict[str, Decimal] = {}
        for r in records:
            if not window_start <= r.first_touch_at <= window_end:
                continue
            remaining = Decimal(r.lifetime_revenue or 0) - claimed_revenue.get(r.user_id, Decimal("0"))
            if remaining > 0:
                unclaimed_revenue[r.user_id] = remaining

        counts = {name: len(user_ids) for name, user_ids in earning.items()}
        counts["rev_share"] = len(unclaimed_revenue)
        revenue = sum(unclaimed_revenue.values(), Decimal("0"))

        amounts = {
            "cpi": counts["cpi"] * Decimal(actor.cpi_rate or 0),
            "cpa": counts["cpa"] * Decimal(actor.cpa_rate or 0),
            "cps": counts["cps"] * Decimal(actor.cps_rate or 0),
            "rev_share": revenue * Decimal(actor.rev_share_percentage or 0),
        }
        included = MODEL_COMPONENTS[model]
        components = {name: _money(amounts[name]) for name in included}
        claims = [(name, user_id, None) for name in included if name in earning for user_id in earning[name]]
        if "rev_share" in included:
            claims.extend(("rev_share", user_id, unclaimed_revenue[user_id]) for user_id in sorted(unclaimed_revenue))
        base = _money(sum(components.values(), Decimal("0")))

        tier = actor.tier.value if actor.tier is not None else "bronze"
        tier_multiplier = TIER_MULTIPLIERS.get(tier, Decimal("1.0"))
        region = actor.country.upper() if actor.country else None
        if actor.regional_multiplier is not None:
            regional_multiplier = Decimal(actor.regional_multiplier)
        else:
            regional_multiplier = REGIONAL_MULTIPLIERS.get(region, Decimal("1.0"))

        total = _money(base * tier_multiplier * regional_multiplier)

        status = RiskScoringEngine(self.db).current_status(actor_id)

        eligible, reason = True, None
        if status in BLOCKED_STATUSES:
            eligible, reason = False, REASON_BLOCKED
        elif total < self.minimum_payout:
            eligible, reason = False, minimum_payout_reason(self.minimum_payout)

        return PayoutBreakdown(
            actor_id=actor_id,
            compensation_model=model,
            as_of=as_of,
            components=components,
            counts={name: counts[name] for name in included},
            base_amount=base,
            tier=tier,
            tier_multiplier=tier_multiplier,
            region=region,
            regional_multiplier=regional_multiplier,
            total_tokens=total,
            currency=self.currency,
            minimum_payout=self.minimum_payout,
            account_status=status,
            eligible=eligible,
            reason=reason,
            verified_attributions=len(records),
            claims=tuple(claims),
        )

    def claimed(self, actor_id: str) -> Tuple[Dict[str, Set[str]], Dict[str, Decimal]]:
        """Users already paid per component, and rev share revenue already paid per user."""
        rows = self.db.query(PayoutClaimDB).join(
            PayoutRequestDB, PayoutClaimDB.payout_request_id == PayoutRequestDB.id
        ).filter(
            PayoutClaimDB.actor_id == actor_id,
            PayoutRequestDB.status != PayoutStatus.REJECTED,
        ).all()

        users: Dict[str, Set[str]] = {}
        revenue: Dict[str, Decimal] = {}
        for row in rows:
            if row.component == "rev_share":
                revenue[row.user_id] = revenue.get(row.user_id, Decimal("0")) + Decimal(row.revenue or 0)
            else:
                users.setdefault(row.component, set()).add(row.user_id)
        return users, revenue
