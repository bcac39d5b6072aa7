"""
Error taxonomy for the reconciliation engine.

Validation errors are raised before any backend call. Transport errors wrap
backend failures and never mutate in-memory drafts.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for all engine errors."""


class ValidationError(ReconcileError):
    """Input rejected locally; no backend call was made."""


class InvalidRowsError(ValidationError):
    """Raised when a batch of timeline rows cannot be saved."""
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class HistoryFloorError(ValidationError):
    """Raised when a history edit claims less than tracked + scheduled cost."""
    def __init__(self, minimum: float, requested: float):
        super().__init__(
            f"Effective $ cannot be lower than tracked + scheduled "
            f"(${requested:.4f} < ${minimum:.4f})"
        )
        self.minimum = minimum
        self.requested = requested


class PricingAmountError(ValidationError):
    """Raised when a pricing amount is missing or not positive."""
    def __init__(self, message: str = "Pricing amount must be > 0"):
        super().__init__(message)


class TransportError(ReconcileError):
    """Raised when the persistence or telemetry backend fails."""
    def __init__(self, operation: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.cause = cause
