"""
Fraud Detectors

Rule-based, auditable classifiers over a LedgerSnapshot.

Every detector is a pure function: snapshot in, findings out. Detectors
never touch the session; FraudSignalDetector persists what they return.
Each finding carries a dedupe_key so the same pattern seen again by a
later sweep maps onto the signal that already exists.

Detectors:
- self-referral                  critical, confidence 100
- click-farm                     high, installs per IP per 24h above threshold
- duplicate-device               medium, one fingerprint on 2+ records
- rapid-install-burst            high, hourly velocity above 3x trailing median (floor 100/h)
- conversion-without-engagement  medium, first purchase with no engagement after registration
- vpn-proxy                      medium, IP inside a known VPN/proxy range
- geo-spoof                      medium, device coordinates far from IP location
"""
import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Tuple

from ...config import (
    BURST_BASELINE_DAYS,
    BURST_BASELINE_FACTOR,
    BURST_FLOOR_PER_HOUR,
    BURST_WINDOW_HOURS,
    CLICK_FARM_THRESHOLD,
    CLICK_FARM_WINDOW_HOURS,
    DUPLICATE_DEVICE_MIN_RECORDS,
    GEO_MISMATCH_KM,
)
from ...models.db_models import EventKind, FraudSignalType, Severity
from .snapshot import AttributionView, LedgerSnapshot

ENGAGEMENT_EVENTS = {EventKind.SESSION, EventKind.FIRST_CHAT, EventKind.CHECK_IN}

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class SignalFinding:
    """One detector finding, not yet persisted."""
    signal_type: FraudSignalType
    severity: Severity
    confidence: float
    actor_id: str
    dedupe_key: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    user_ids: Tuple[str, ...] = ()


# =============================================================================
# HELPERS
# =============================================================================

def _hour(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


def _iso(ts: datetime) -> str:
    return ts.isoformat()


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _group(records, key) -> Dict[Any, List[AttributionView]]:
    grouped: Dict[Any, List[AttributionView]] = {}
    for record in records:
        value = key(record)
        if value:
            grouped.setdefault(value, []).append(record)
    return grouped


def _densest_window(records: List[AttributionView], window: timedelta) -> List[AttributionView]:
    """Largest run of records (sorted by first touch) that fits inside one window."""
    best_start, best_end = 0, 0
    start = 0
    for end in range(len(records)):
        while records[end].first_touch_at - records[start].first_touch_at >= window:
            start += 1
        if end - start > best_end - best_start:
            best_start, best_end = start, end
    return records[best_start:best_end + 1] if records else []


# =============================================================================
# DETECTORS
# =============================================================================

def detect_self_referral(snapshot: LedgerSnapshot) -> List[SignalFinding]:
    findings = []
    for record in snapshot.attributions:
        actor = snapshot.actors.get(record.actor_id)
        actor_user_id = actor.user_id if actor is not None else None
        if record.user_id != record.actor_id and record.user_id != actor_user_id:
            continue
        findings.append(SignalFinding(
            signal_type=FraudSignalType.SELF_REFERRAL,
            severity=Severity.CRITICAL,
            confidence=100.0,
            actor_id=record.actor_id,
            dedupe_key=record.user_id,
            evidence={
                "userId": record.user_id,
                "actorUserId": actor_user_id or record.actor_id,
                "firstTouchAt": _iso(record.first_touch_at),
            },
            user_ids=(record.user_id,),
        ))
    return findings


def detect_click_farm(
    snapshot: LedgerSnapshot,
    threshold: int = CLICK_FARM_THRESHOLD,
    window_hours: int = CLICK_FARM_WINDOW_HOURS,
) -> List[SignalFinding]:
    """
    Count attributions created from one IP inside a 24h window.

    Above the threshold, every actor with records in that window gets one
    signal carrying the full IP cluster as evidence.
    """
    findings = []
    window = timedelta(hours=window_hours)
    for ip, records in sorted(_group(snapshot.attributions, lambda r: r.ip_address).items()):
        cluster = _densest_window(records, window)
        count = len(cluster)
        if count <= threshold:
            continue

        started = cluster[0].first_touch_at
        user_ids = sorted(r.user_id for r in cluster)
        confidence = min(100.0, round(100.0 * count / (2 * threshold), 2))
        for actor_id in sorted({r.actor_id for r in cluster}):
            findings.append(SignalFinding(
                signal_type=FraudSignalType.CLICK_FARM,
                severity=Severity.HIGH,
                confidence=confidence,
                actor_id=actor_id,
                dedupe_key=f"{ip}|{started.date().isoformat()}",
                evidence={
                    "ip": ip,
                    "count": count,
                    "userIds": user_ids,
                    "windowStart": _iso(started),
                    "windowEnd": _iso(cluster[-1].first_touch_at),
                },
                user_ids=tuple(r.user_id for r in cluster if r.actor_id == actor_id),
            ))
    return findings


def detect_duplicate_device(
    snapshot: LedgerSnapshot,
    min_records: int = DUPLICATE_DEVICE_MIN_RECORDS,
) -> List[SignalFinding]:
    findings = []
    for device_id, records in sorted(_group(snapshot.attributions, lambda r: r.device_id).items()):
        count = len(records)
        if count < min_records:
            continue

        user_ids = sorted(r.user_id for r in records)
        confidence = float(min(100, 30 + 20 * (count - 1)))
        for actor_id in sorted({r.actor_id for r in records}):
            findings.append(SignalFinding(
                signal_type=FraudSignalType.DUPLICATE_DEVICE,
                severity=Severity.MEDIUM,
                confidence=confidence,
                actor_id=actor_id,
                dedupe_key=device_id,
                evidence={"deviceId": device_id, "count": count, "userIds": user_ids},
                user_ids=tuple(r.user_id for r in records if r.actor_id == actor_id),
            ))
    return findings


def detect_rapid_install_burst(
    snapshot: LedgerSnapshot,
    floor_per_hour: int = BURST_FLOOR_PER_HOUR,
    baseline_factor: float = BURST_BASELINE_FACTOR,
    baseline_days: int = BURST_BASELINE_DAYS,
    window_hours: int = BURST_WINDOW_HOURS,
) -> List[SignalFinding]:
    """
    Per-actor install velocity against the actor's own trailing baseline.

    The baseline is the median of hourly install counts over the
    baseline_days before the recent window, counting empty hours as zero.
    An hour in the recent window is a burst when it exceeds both the hard
    floor and baseline_factor times that median.
    """
    findings = []
    recent_start = _hour(snapshot.taken_at) - timedelta(hours=window_hours - 1)
    baseline_hours = [recent_start - timedelta(hours=h) for h in range(baseline_days * 24, 0, -1)]

    for actor_id, records in sorted(snapshot.attributions_by_actor().items()):
        buckets: Dict[datetime, List[str]] = {}
        for record in records:
            buckets.setdefault(_hour(record.first_touch_at), []).append(record.user_id)

        median = statistics.median([len(buckets.get(h, ())) for h in baseline_hours]) if baseline_hours else 0
        threshold = max(float(floor_per_hour), baseline_factor * median)

        recent = [(h, users) for h, users in buckets.items() if h >= recent_start]
        if not recent:
            continue
        peak_hour, peak_users = max(recent, key=lambda item: (len(item[1]), item[0]))
        peak = len(peak_users)
        if peak <= threshold:
            continue

        findings.append(SignalFinding(
            signal_type=FraudSignalType.RAPID_INSTALL_BURST,
            severity=Severity.HIGH,
            confidence=min(100.0, round(60.0 * peak / threshold, 2)),
            actor_id=actor_id,
            dedupe_key=_iso(peak_hour),
            evidence={
                "peakHour": _iso(peak_hour),
                "installs": peak,
                "threshold": threshold,
                "baselineMedian": median,
                "userIds": sorted(peak_users),
            },
            user_ids=tuple(sorted(peak_users)),
        ))
    return findings


def detect_conversion_without_engagement(snapshot: LedgerSnapshot) -> List[SignalFinding]:
    findings = []
    events_by_user = snapshot.events_by_user()
    for record in snapshot.attributions:
        if record.first_purchase_at is None:
            continue
        started = record.registered_at or record.first_touch_at
        engaged = any(
            event.event_type in ENGAGEMENT_EVENTS and started <= event.occurred_at <= record.first_purchase_at
            for event in events_by_user.get(record.user_id, ())
        )
        if engaged:
            continue
        findings.append(SignalFinding(
            signal_type=FraudSignalType.CONVERSION_WITHOUT_ENGAGEMENT,
            severity=Severity.MEDIUM,
            confidence=60.0,
            actor_id=record.actor_id,
            dedupe_key=record.user_id,
            evidence={
                "userId": record.user_id,
                "registeredAt": _iso(started),
                "firstPurchaseAt": _iso(record.first_purchase_at),
            },
            user_ids=(record.user_id,),
        ))
    return findings


def detect_vpn_proxy(snapshot: LedgerSnapshot) -> List[SignalFinding]:
    """One signal per actor per day listing the users seen on VPN/proxy ranges."""
    grouped = _group(
        (r for r in snapshot.attributions if r.ip_address in snapshot.vpn_ips),
        lambda r: (r.actor_id, r.first_touch_at.date().isoformat()),
    )
    findings = []
    for (actor_id, day), records in sorted(grouped.items()):
        findings.append(SignalFinding(
            signal_type=FraudSignalType.VPN_PROXY,
            severity=Severity.MEDIUM,
            confidence=float(min(100, 20 + 10 * len(records))),
            actor_id=actor_id,
            dedupe_key=day,
            evidence={
                "day": day,
                "count": len(records),
                "userIds": sorted(r.user_id for r in records),
                "ips": sorted({r.ip_address for r in records}),
            },
            user_ids=tuple(sorted(r.user_id for r in records)),
        ))
    return findings


def detect_geo_spoof(
    snapshot: LedgerSnapshot,
    mismatch_km: float = GEO_MISMATCH_KM,
) -> List[SignalFinding]:
    """One signal per actor per day for provenance coordinates far from the IP location."""
    mismatches: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
    for record in snapshot.attributions:
        if record.latitude is None or record.longitude is None:
            continue
        location = snapshot.ip_locations.get(record.ip_address) if record.ip_address else None
        if location is None:
            continue
        distance = haversine_km(record.latitude, record.longitude, location[0], location[1])
        if distance <= mismatch_km:
            continue
        key = (record.actor_id, record.first_touch_at.date().isoformat())
        mismatches.setdefault(key, []).append({
            "userId": record.user_id,
            "ip": record.ip_address,
            "distanceKm": round(distance, 1),
        })

    findings = []
    for (actor_id, day), entries in sorted(mismatches.items()):
        entries.sort(key=lambda e: e["userId"])
        findings.append(SignalFinding(
            signal_type=FraudSignalType.GEO_SPOOF,
            severity=Severity.MEDIUM,
            confidence=float(min(100, 40 + 10 * len(entries))),
            actor_id=actor_id,
            dedupe_key=day,
            evidence={"day": day, "count": len(entries), "mismatches": entries},
            user_ids=tuple(e["userId"] for e in entries),
        ))
    return findings


# Near-real-time battery; each entry is independent and safe to run concurrently
REALTIME_DETECTORS: Dict[str, Callable[[LedgerSnapshot], List[SignalFinding]]] = {
    "self_referral": detect_self_referral,
    "click_farm": detect_click_farm,
    "duplicate_device": detect_duplicate_device,
    "rapid_install_burst": detect_rapid_install_burst,
    "conversion_without_engagement": detect_conversion_without_engagement,
    "vpn_proxy": detect_vpn_proxy,
    "geo_spoof": detect_geo_spoof,
}
