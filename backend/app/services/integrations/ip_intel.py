"""
IP intelligence: geolocation and VPN/proxy range checks.

VPN checks run locally against configured CIDR ranges. Geolocation uses an
ipinfo-compatible HTTP endpoint with a bounded in-process cache. Lookups never
raise to callers; an unresolvable address returns None so detectors skip it.
"""
from __future__ import annotations

import ipaddress
import logging
import threading
import time
from typing import Dict, Iterable, Optional, Tuple

import httpx

from ...config import IP_INTEL_URL, VPN_CIDRS, EXTERNAL_TIMEOUT_SEC

logger = logging.getLogger(__name__)

Coordinates = Tuple[float, float]


class IpIntelligence:
    """Resolve IP addresses to coordinates and flag anonymizing networks."""

    def __init__(
        self,
        base_url: str = IP_INTEL_URL,
        vpn_cidrs: Iterable[str] = VPN_CIDRS,
        timeout: float = EXTERNAL_TIMEOUT_SEC,
        cache_ttl: int = 3600,
        max_entries: int = 10000,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.max_entries = max_entries
        self._networks = []
        for cidr in vpn_cidrs:
            try:
                self._networks.append(ipaddress.ip_network(cidr, strict=False))
            except ValueError:
                logger.error(f"Ignoring invalid VPN CIDR '{cidr}'")
        self._cache: Dict[str, Tuple[Optional[Coordinates], float]] = {}
        self._cache_lock = threading.Lock()

    def is_vpn(self, ip: str) -> bool:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(address in network for network in self._networks)

    def locate(self, ip: str) -> Optional[Coordinates]:
        """Return (lat, lng) for a public address, or None."""
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return None
        if address.is_private or address.is_loopback or address.is_reserved:
            return None

        cached = self._cache.get(ip)
        if cached and time.time() - cached[1] < self.cache_ttl:
            return cached[0]

        coordinates = self._lookup(ip)
        self._remember(ip, coordinates)
        return coordinates

    def _remember(self, ip: str, coordinates: Optional[Coordinates]) -> None:
        now = time.time()
        with self._cache_lock:
            self._cache.pop(ip, None)
            self._prune(now)
            self._cache[ip] = (coordinates, now)

    def _prune(self, now: float) -> None:
        """Drop expired entries, then the oldest, until one slot is free."""
        if len(self._cache) >= self.max_entries:
            expired = [key for key, (_, stored_at) in self._cache.items() if now - stored_at >= self.cache_ttl]
            for key in expired:
                del self._cache[key]
        while len(self._cache) >= self.max_entries:
            # Insertion order is age order
            del self._cache[next(iter(self._cache))]

    def _lookup(self, ip: str) -> Optional[Coordinates]:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(f"{self.base_url}/{ip}/json")
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"IP geolocation failed for {ip}: {e}")
            return None

        loc = payload.get("loc")
        if not loc or "," not in loc:
            return None
        lat, lng = loc.split(",", 1)
        try:
            return float(lat), float(lng)
        except ValueError:
            return None
