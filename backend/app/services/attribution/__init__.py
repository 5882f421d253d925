"""
Attribution Services

First-touch binding of end users to referring actors.

- EventIngest: connector payload normalization
- AttributionLedger: one-actor-per-user ledger, funnel and revenue
"""

from .ledger import AttributionLedger, LockResult
from .event_ingest import EventIngest, IngestResult

__all__ = [
    "AttributionLedger",
    "LockResult",
    "EventIngest",
    "IngestResult",
]
