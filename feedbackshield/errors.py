"""
Error taxonomy for the scoring engine.

ValidationError is never retried. UpstreamUnavailable is retried only when
flagged transient, and analyzers degrade instead of propagating it.
PersistenceError always reaches the caller.
"""

from typing import Optional


class FraudEngineError(Exception):
    """Base class for every engine error."""


class ValidationError(FraudEngineError, ValueError):
    """Input rejected: out-of-bounds score, malformed hash, unknown enum value."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UpstreamUnavailable(FraudEngineError):
    """An external provider failed or timed out."""

    def __init__(self, message: str, provider: str = "unknown", transient: bool = True):
        super().__init__(message)
        self.provider = provider
        self.transient = transient


class PersistenceError(FraudEngineError):
    """A database write failed and was rolled back."""


class RecordNotFound(FraudEngineError, LookupError):
    """No row with the requested id."""

    def __init__(self, kind: str, record_id):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id
