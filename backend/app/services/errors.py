"""
Engine error taxonomy.

ValidationError  - malformed event or request, rejected synchronously, never retried
ConflictError    - duplicate attribution or active payout, resolved by handing back the existing object
TransientError   - store or collaborator unavailable, retried with backoff
ComplianceBlock  - explicit blocked outcome, always carries a human-readable reason
"""
from typing import Any, Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError):
    """Malformed event or request."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ConflictError(EngineError):
    """An invariant collision; `existing` is the object that already holds the slot."""

    def __init__(self, message: str, existing: Any = None):
        super().__init__(message)
        self.message = message
        self.existing = existing


class TransientError(EngineError):
    """Store unavailable or external call timed out. State is unchanged."""


class ComplianceBlock(EngineError):
    """Payout blocked by compliance rules."""

    def __init__(self, reason: str, details: Optional[dict] = None):
        if not reason:
            raise ValueError("ComplianceBlock requires a reason")
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}
