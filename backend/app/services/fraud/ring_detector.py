"""
Coordinated Ring Detector

Batch detector. Builds an undirected actor graph where an edge joins two
actors whose referred users share at least N devices/IPs, then flags every
connected component at or above the size threshold.

Runs single-threaded on its own cadence; the graph is local to one call.
"""
import hashlib
import logging
from itertools import combinations
from typing import Dict, List, Set, Tuple

import networkx as nx

from ...config import RING_MIN_COMPONENT_SIZE, RING_MIN_SHARED_IDENTIFIERS
from ...models.db_models import FraudSignalType, Severity
from .detectors import SignalFinding
from .snapshot import LedgerSnapshot

logger = logging.getLogger(__name__)

# Carrier NAT and public wifi addresses are shared by unrelated actors
MAX_ACTORS_PER_IDENTIFIER = 50


def ring_severity(size: int) -> Severity:
    if size >= 6:
        return Severity.CRITICAL
    if size >= 4:
        return Severity.HIGH
    return Severity.MEDIUM


def build_actor_graph(
    snapshot: LedgerSnapshot,
    min_shared: int = RING_MIN_SHARED_IDENTIFIERS,
) -> nx.Graph:
    """Actor graph; each edge carries the shared identifiers as `shared`."""
    holders: Dict[str, Set[str]] = {}
    for record in snapshot.attributions:
        if record.device_id:
            holders.setdefault(f"device:{record.device_id}", set()).add(record.actor_id)
        if record.ip_address:
            holders.setdefault(f"ip:{record.ip_address}", set()).add(record.actor_id)

    shared: Dict[Tuple[str, str], Set[str]] = {}
    for identifier, actors in holders.items():
        if len(actors) < 2:
            continue
        if len(actors) > MAX_ACTORS_PER_IDENTIFIER:
            logger.info(f"Ring graph skipping {identifier}: shared by {len(actors)} actors")
            continue
        for pair in combinations(sorted(actors), 2):
            shared.setdefault(pair, set()).add(identifier)

    graph = nx.Graph()
    for (a, b), identifiers in shared.items():
        if len(identifiers) >= min_shared:
            graph.add_edge(a, b, shared=sorted(identifiers))
    return graph


def detect_coordinated_rings(
    snapshot: LedgerSnapshot,
    min_shared: int = RING_MIN_SHARED_IDENTIFIERS,
    min_size: int = RING_MIN_COMPONENT_SIZE,
) -> List[SignalFinding]:
    graph = build_actor_graph(snapshot, min_shared=min_shared)

    identifiers_by_actor: Dict[str, Set[str]] = {}
    for a, b, data in graph.edges(data=True):
        identifiers_by_actor.setdefault(a, set()).update(data["shared"])
        identifiers_by_actor.setdefault(b, set()).update(data["shared"])

    findings = []
    for component in nx.connected_components(graph):
        size = len(component)
        if size < min_size:
            continue

        members = sorted(component)
        ring_id = hashlib.sha256("|".join(members).encode()).hexdigest()[:32]
        subgraph = graph.subgraph(members)
        edges = sorted([sorted([a, b]) + [len(d["shared"])] for a, b, d in subgraph.edges(data=True)])
        severity = ring_severity(size)
        confidence = float(min(100, 40 + 10 * size))

        logger.info(f"Coordinated ring {ring_id}: {size} actors, severity {severity.value}")

        for actor_id in members:
            identifiers = identifiers_by_actor.get(actor_id, set())
            user_ids = sorted(
                r.user_id for r in snapshot.attributions
                if r.actor_id == actor_id
                and (f"device:{r.device_id}" in identifiers or f"ip:{r.ip_address}" in identifiers)
            )
            findings.append(SignalFinding(
                signal_type=FraudSignalType.COORDINATED_RING,
                severity=severity,
                confidence=confidence,
                actor_id=actor_id,
                dedupe_key=ring_id,
                evidence={
                    "ringId": ring_id,
                    "size": size,
                    "members": members,
                    "edges": edges,
                    "userIds": user_ids,
                },
                user_ids=tuple(user_ids),
            ))
    return findings
