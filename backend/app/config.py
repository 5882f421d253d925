"""
Attribution Engine - Configuration

All tunables are read from the environment once at import time.
Defaults are the production values used by the detectors and the payout gate.
"""
import os
from decimal import Decimal


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_list(name: str, default: str) -> list:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# =============================================================================
# SERVICE
# =============================================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/attribution_engine"
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "attribution-engine-secret-key-change-in-production")
JWT_ALGORITHM = "HS256"

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")

# =============================================================================
# FRAUD DETECTION
# =============================================================================

CLICK_FARM_THRESHOLD = _env_int("CLICK_FARM_THRESHOLD", 6)
CLICK_FARM_WINDOW_HOURS = _env_int("CLICK_FARM_WINDOW_HOURS", 24)

DUPLICATE_DEVICE_MIN_RECORDS = _env_int("DUPLICATE_DEVICE_MIN_RECORDS", 2)

BURST_FLOOR_PER_HOUR = _env_int("BURST_FLOOR_PER_HOUR", 100)
BURST_BASELINE_FACTOR = _env_float("BURST_BASELINE_FACTOR", 3.0)
BURST_BASELINE_DAYS = _env_int("BURST_BASELINE_DAYS", 7)
BURST_WINDOW_HOURS = _env_int("BURST_WINDOW_HOURS", 24)

RING_MIN_SHARED_IDENTIFIERS = _env_int("RING_MIN_SHARED_IDENTIFIERS", 2)
RING_MIN_COMPONENT_SIZE = _env_int("RING_MIN_COMPONENT_SIZE", 3)
RING_LOOKBACK_DAYS = _env_int("RING_LOOKBACK_DAYS", 30)

GEO_MISMATCH_KM = _env_float("GEO_MISMATCH_KM", 500.0)
VPN_CIDRS = _env_list("VPN_CIDRS", "")

DETECTION_LOOKBACK_DAYS = _env_int("DETECTION_LOOKBACK_DAYS", 7)
DETECTOR_WORKERS = _env_int("DETECTOR_WORKERS", 4)

# Attributions become payable once they survive this long without a signal
VERIFICATION_HOLD_HOURS = _env_int("VERIFICATION_HOLD_HOURS", 24)

# =============================================================================
# RISK SCORING
# =============================================================================

SEVERITY_WEIGHTS = {
    "low": 5,
    "medium": 15,
    "high": 30,
    "critical": 60,
}

# Lower bound (inclusive) of each status band, ordered from clean to banned
STATUS_BANDS = [
    ("clean", 0),
    ("watch_list", 30),
    ("suspended", 60),
    ("banned", 80),
]

# =============================================================================
# PAYOUTS
# =============================================================================

MIN_PAYOUT_TOKENS = Decimal(os.getenv("MIN_PAYOUT_TOKENS", "1000"))
PAYOUT_CURRENCY = os.getenv("PAYOUT_CURRENCY", "TOKEN")
DEFAULT_REV_SHARE_DURATION_DAYS = _env_int("DEFAULT_REV_SHARE_DURATION_DAYS", 365)

TIER_MULTIPLIERS = {
    "bronze": Decimal("1.0"),
    "silver": Decimal("1.1"),
    "gold": Decimal("1.25"),
    "platinum": Decimal("1.5"),
    "titan": Decimal("2.0"),
}

REGIONAL_MULTIPLIERS = {
    "US": Decimal("1.0"),
    "GB": Decimal("1.0"),
    "DE": Decimal("1.0"),
    "FR": Decimal("1.0"),
    "PL": Decimal("0.8"),
    "BR": Decimal("0.7"),
    "IN": Decimal("0.6"),
}

# Verified clean referrals and their lifetime revenue needed to hold a tier.
# Both must be met; promotions only ever move upward.
TIER_THRESHOLDS = [
    ("silver", _env_int("TIER_SILVER_REFERRALS", 50), Decimal(os.getenv("TIER_SILVER_REVENUE", "500"))),
    ("gold", _env_int("TIER_GOLD_REFERRALS", 200), Decimal(os.getenv("TIER_GOLD_REVENUE", "2500"))),
    ("platinum", _env_int("TIER_PLATINUM_REFERRALS", 500), Decimal(os.getenv("TIER_PLATINUM_REVENUE", "10000"))),
    ("titan", _env_int("TIER_TITAN_REFERRALS", 1500), Decimal(os.getenv("TIER_TITAN_REVENUE", "50000"))),
]

AML_HOLD_LEVEL = os.getenv("AML_HOLD_LEVEL", "high")

# =============================================================================
# EXTERNAL COLLABORATORS
# =============================================================================

KYC_SERVICE_URL = os.getenv("KYC_SERVICE_URL", "http://identity:8080")
WALLET_LEDGER_URL = os.getenv("WALLET_LEDGER_URL", "http://wallet-ledger:8080")
AML_SERVICE_URL = os.getenv("AML_SERVICE_URL", "http://aml:8080")
IP_INTEL_URL = os.getenv("IP_INTEL_URL", "https://ipinfo.io")

EXTERNAL_TIMEOUT_SEC = _env_float("EXTERNAL_TIMEOUT_SEC", 5.0)
EXTERNAL_MAX_ATTEMPTS = _env_int("EXTERNAL_MAX_ATTEMPTS", 3)
